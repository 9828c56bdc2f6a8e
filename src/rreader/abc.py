from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ResolvedFeed(BaseModel):
    """
    Result of feed discovery: the machine readable feed behind an URL.
    """
    model_config = ConfigDict(frozen=True)

    feed_url: str = Field(..., description="URL the feed body was fetched from.")
    site_url: Optional[str] = Field(None, description="HTML page the feed was discovered from, if any.")
    body: bytes = Field(..., repr=False, description="Raw feed document.")
    content_type: Optional[str] = Field(None, description="Content-Type header of the feed response.")

    @property
    def direct(self) -> bool:
        """ True when the URL pointed at the feed itself. """
        return self.site_url is None


class ParsedEntry(BaseModel):
    """
    Normalized article record parsed from a RSS item or Atom entry.
    """
    guid: str = Field(..., min_length=1)
    title: Optional[str] = None
    author: Optional[str] = None
    content: Optional[str] = Field(None, description="Full content, only when the feed format carries one.")
    summary: Optional[str] = Field(None, description="Description or summary as plain text.")
    url: Optional[str] = None
    image_url: Optional[str] = None
    published_at: Optional[datetime] = None

    orig_link: Optional[str] = Field(None, description="Original article link behind a FeedBurner proxy link.")


class ParsedFeed(BaseModel):
    feed_url: str
    site_url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    favicon_url: Optional[str] = Field(None, description="Placeholder favicon derived from the site host.")

    entries: list[ParsedEntry] = Field(default_factory=list)


class ExtractedContent(BaseModel):
    """
    Readable article body extracted from a web page.
    """
    content: str = Field(..., description="Main article content as HTML.")
    excerpt: Optional[str] = None

    source_url: Optional[str] = Field(None, description="URL the HTML was fetched from.")
    from_archive: bool = Field(False, description="Body came from a web archive snapshot.")
    paywalled: bool = Field(False, description="Page declares its content is not accessible for free.")


class CycleOutcome(str, Enum):
    """
    Result of a single ingestion cycle for a feed.
    """
    UPDATED = "updated"
    SKIPPED = "skipped"
    BUSY = "busy"
    FAILED = "failed"
    MISSING = "missing"
