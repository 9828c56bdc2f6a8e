"""
The extractor module turns article URLs into readable content.

Usage:
    from rreader.extractor import ContentExtractor

    extracted = ContentExtractor().extract("https://example.com/2024/01/article")
    if extracted:
        print(extracted.excerpt)
"""

from ._paywalled import is_paywalled_content
from .content import ContentExtractor
from .wayback import WaybackClient, raw_snapshot_url

__all__ = [
    "ContentExtractor",
    "WaybackClient",
    "is_paywalled_content",
    "raw_snapshot_url",
]
