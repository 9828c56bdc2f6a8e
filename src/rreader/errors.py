"""
Errors raised by the ingestion pipeline.

Discovery and parsing errors never leave an ingestion cycle; they are turned into feed health state. Extraction
errors never leave the content extractor.
"""
from typing import Optional


class FeedError(Exception):
    """
    Base class for feed ingestion errors.
    """
    pass


class FetchError(FeedError):
    """
    Network or HTTP failure while reaching a URL.
    """

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class NoFeedFoundError(FeedError):
    """
    The page was fetched but it does not link to a RSS or Atom feed.
    """
    pass


class InvalidFeedError(FeedError):
    """
    Fetched body could not be parsed as RSS or Atom.
    """
    pass


class ExtractionEmptyError(FeedError):
    """
    Readability extraction produced no usable text.
    """
    pass
