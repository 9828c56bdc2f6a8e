"""
Discovery module for resolving subscription URLs into feed documents.

Usage:
    from rreader.discovery import FeedDiscoverer

    resolved = FeedDiscoverer().discover("example.com/blog")
"""

from ._base import SourceDiscoverer
from ._links import FEED_TYPES, find_feed_link, looks_like_feed, normalize_url, resolve_href
from .feed import FeedDiscoverer

__all__ = [
    "SourceDiscoverer",
    "FeedDiscoverer",
    "FEED_TYPES",
    "find_feed_link",
    "looks_like_feed",
    "normalize_url",
    "resolve_href",
]
