"""Post sentiment analysis and ranking."""

import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from pydantic import BaseModel
from vaderSentiment.vaderSentiment import SentimentIntensityAnalyzer

from hourstats.core.posts import Post
from hourstats.core.run_state import SentimentSummary, TopPost

POST_POSITIVE_THRESHOLD = 0.2
POST_NEGATIVE_THRESHOLD = -0.2
OVERALL_POSITIVE_THRESHOLD = 0.3
OVERALL_NEGATIVE_THRESHOLD = -0.3
POSITIVE_ENGAGEMENT_BOOST = 1.1

POSITIVE_WORDS = frozenset(
    """
    great awesome amazing wonderful fantastic excellent love loved best good nice happy
    excited thrilled brilliant perfect incredible outstanding superb delighted pleased
    satisfied impressed grateful blessed lucky successful victory win progress improvement
    breakthrough inspiring hopeful optimistic confident proud celebrate cheer smile laugh
    joy fun enjoy beautiful gorgeous stunning magnificent spectacular uplifting positive
    cheerful peaceful calm relaxed thankful triumph
    """.split()
)

NEGATIVE_WORDS = frozenset(
    """
    bad terrible awful horrible disgusting hate hated worst evil nasty sad angry mad furious
    rage frustrated annoyed irritated upset disappointed devastated crushed broken hurt pain
    suffering nightmare disaster catastrophe tragedy crisis danger threat fear afraid scared
    terrified panic anxiety worry stress struggle violence hostility bitterness toxic harmful
    destructive tragic depressed gloomy bleak miserable pathetic hopeless helpless
    pessimistic negative
    """.split()
)

_WORD_RE = re.compile(r"[a-z']+")


class SentimentScorer(Protocol):
    def score(self, text: str) -> float:
        """Compound sentiment score in [-1, 1]."""
        ...


def keyword_sentiment(text: str) -> str:
    """Classify ``text`` by counting positive and negative keywords."""
    words = _WORD_RE.findall(text.lower())
    positive = sum(1 for word in words if word in POSITIVE_WORDS)
    negative = sum(1 for word in words if word in NEGATIVE_WORDS)
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


class VaderSentimentScorer:
    """VADER compound score, aware of negation, intensifiers and punctuation."""

    def __init__(self, analyzer: Optional[SentimentIntensityAnalyzer] = None):
        self.analyzer = analyzer or SentimentIntensityAnalyzer()

    def score(self, text: str) -> float:
        return self.analyzer.polarity_scores(text)["compound"]


class AnalyzedPost(BaseModel):
    """A post with its sentiment and engagement score."""

    post: Post
    compound_score: float
    sentiment: str
    engagement_score: float

    def to_top_post(self) -> TopPost:
        return TopPost(
            uri=self.post.uri,
            author=self.post.author,
            text=self.post.text,
            likes=self.post.likes,
            reposts=self.post.reposts,
            replies=self.post.replies,
            sentiment=self.sentiment,
            compound_score=self.compound_score,
            engagement_score=self.engagement_score,
        )


def categorize(compound: float) -> str:
    if compound >= POST_POSITIVE_THRESHOLD:
        return "positive"
    if compound <= POST_NEGATIVE_THRESHOLD:
        return "negative"
    return "neutral"


def engagement_score(post: Post, compound: float) -> float:
    score = float(post.likes + post.reposts + post.replies)
    if compound > 0:
        score *= POSITIVE_ENGAGEMENT_BOOST
    return score


def analyze_post(post: Post, scorer: SentimentScorer) -> AnalyzedPost:
    compound = scorer.score(post.text)
    sentiment = categorize(compound)
    if sentiment == "neutral":
        # Lexicon fallback for texts the scorer rates as flat
        sentiment = keyword_sentiment(post.text)
    return AnalyzedPost(
        post=post,
        compound_score=compound,
        sentiment=sentiment,
        engagement_score=engagement_score(post, compound),
    )


def analyze_posts(
    posts: Iterable[Post], scorer: Optional[SentimentScorer] = None
) -> List[AnalyzedPost]:
    scorer = scorer or VaderSentimentScorer()
    return [analyze_post(post, scorer) for post in posts]


def filter_by_cutoff(posts: Iterable[Post], cutoff_time: datetime) -> List[Post]:
    """Posts created at or after ``cutoff_time``."""
    return [post for post in posts if post.created_at >= cutoff_time]


def deduplicate_by_uri(analyzed: Iterable[AnalyzedPost]) -> List[AnalyzedPost]:
    """One entry per URI, keeping the highest engagement score."""
    best: Dict[str, AnalyzedPost] = {}
    for entry in analyzed:
        current = best.get(entry.post.uri)
        if current is None or entry.engagement_score > current.engagement_score:
            best[entry.post.uri] = entry
    return list(best.values())


def top_posts(
    analyzed: Sequence[AnalyzedPost], count: int = 5, min_engagement: float = 0
) -> List[AnalyzedPost]:
    """Highest-engagement posts; falls back to all posts when none meet the minimum."""
    ranked = sorted(analyzed, key=lambda a: (-a.engagement_score, a.post.uri))
    qualified = [a for a in ranked if a.engagement_score >= min_engagement]
    return (qualified or ranked)[:count]


def summarize(
    analyzed: Sequence[AnalyzedPost], top_count: int = 5, min_engagement: float = 0
) -> SentimentSummary:
    """Overall sentiment of ``analyzed`` plus its top posts."""
    total = len(analyzed)
    if total == 0:
        return SentimentSummary(
            overall_sentiment="neutral",
            average_compound_score=0.0,
            net_sentiment_percentage=0.0,
        )

    average = sum(a.compound_score for a in analyzed) / total
    if average >= OVERALL_POSITIVE_THRESHOLD:
        overall = "positive"
    elif average <= OVERALL_NEGATIVE_THRESHOLD:
        overall = "negative"
    else:
        overall = "neutral"

    counts = {"positive": 0, "negative": 0, "neutral": 0}
    for entry in analyzed:
        counts[entry.sentiment] += 1

    return SentimentSummary(
        overall_sentiment=overall,
        average_compound_score=average,
        net_sentiment_percentage=average * 100,
        positive_percent=counts["positive"] * 100 / total,
        negative_percent=counts["negative"] * 100 / total,
        neutral_percent=counts["neutral"] * 100 / total,
        analyzed_post_count=total,
        top_posts=[a.to_top_post() for a in top_posts(analyzed, top_count, min_engagement)],
    )
