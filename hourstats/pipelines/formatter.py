"""Summary post text."""

from hourstats.core.run_state import SentimentSummary

SENTIMENT_SYMBOLS = {"positive": "+", "negative": "-", "neutral": "x"}


def format_time_period(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} minutes"
    hours, rest = divmod(minutes, 60)
    hour_part = "1 hour" if hours == 1 else f"{hours} hours"
    return hour_part if rest == 0 else f"{hour_part} {rest} minutes"


def format_summary(summary: SentimentSummary, interval_minutes: int, total_posts: int) -> str:
    net = summary.positive_percent - summary.negative_percent
    lines = [
        f"Bluesky mood {net:+.0f}% from {total_posts} posts in "
        f"{format_time_period(interval_minutes)}",
        "",
    ]
    for rank, post in enumerate(summary.top_posts, start=1):
        engagement = post.likes + post.reposts + post.replies
        symbol = SENTIMENT_SYMBOLS.get(post.sentiment, "x")
        lines.append(f"{rank}. @{post.author} ({engagement}) {symbol}")
    return "\n".join(lines)
