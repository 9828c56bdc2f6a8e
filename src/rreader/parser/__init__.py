"""
Feed document parsing.

Usage:
    from rreader.parser import FeedParser

    parsed = FeedParser().parse(resolved.body, resolved.feed_url, resolved.site_url)
"""

from ._dates import parse_date
from ._entries import AtomEntry, Entry, RssItem, read_feed
from ._html import first_image_src, strip_tags
from .feed import FeedParser, entry_guid, entry_image, parse

__all__ = [
    "FeedParser",
    "parse",
    "entry_guid",
    "entry_image",
    "parse_date",
    "AtomEntry",
    "RssItem",
    "Entry",
    "read_feed",
    "first_image_src",
    "strip_tags",
]
