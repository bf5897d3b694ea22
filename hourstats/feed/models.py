"""Feed item and page models."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class FeedItem(BaseModel):
    """One item returned by a feed page."""

    uri: str
    author: str
    text: str = ""
    created_at: datetime
    likes: int = 0
    reposts: int = 0
    replies: int = 0
    labels: List[str] = Field(default_factory=list)


class FeedPage(BaseModel):
    """One page of a newest-first feed."""

    items: List[FeedItem] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False

    def oldest(self) -> Optional[FeedItem]:
        if not self.items:
            return None
        return min(self.items, key=lambda item: item.created_at)
