"""
Helpers for finding feed links in HTML pages.
"""
import re
from typing import Optional
from urllib.parse import urljoin

from lxml import etree, html
from structlog import get_logger

logger = get_logger(__name__)

FEED_TYPES = (
    "application/rss+xml",
    "application/atom+xml",
    "application/xml",
    "text/xml",
)
""" `<link type>` values that point to a feed. """

FEED_CONTENT_TYPE_MARKERS = ("xml", "rss", "atom")
FEED_BODY_PREFIXES = (b"<?xml", b"<rss", b"<feed")
UTF8_BOM = b"\xef\xbb\xbf"

_scheme_re = re.compile(r"^https?://", re.IGNORECASE)


def normalize_url(url: str) -> str:
    """
    Trim the URL and add a `https://` scheme when it has none.
    """
    url = url.strip()
    if not _scheme_re.match(url):
        url = "https://" + url
    return url


def looks_like_feed(content_type: Optional[str], body: bytes) -> bool:
    """
    Check from the response headers and body whether the document is a feed rather than a HTML page.
    """
    content_type = (content_type or "").lower()
    if any(marker in content_type for marker in FEED_CONTENT_TYPE_MARKERS):
        return True

    return body.lstrip().removeprefix(UTF8_BOM).lstrip().startswith(FEED_BODY_PREFIXES)


def resolve_href(href: str, base_url: str) -> str:
    """
    Resolve a possibly relative `href` against the page it was found on.

    Absolute URLs are kept, protocol relative URLs inherit the scheme of the page, absolute paths replace the path
    and relative paths are resolved against the directory of the page path.
    """
    href = href.strip()
    if _scheme_re.match(href):
        return href
    return urljoin(base_url, href)


def find_feed_link(page: bytes | str, base_url: str) -> Optional[str]:
    """
    Find the first `<link>` in the page that advertises a feed, and return its resolved URL.
    """
    try:
        tree = html.fromstring(page)
    except (etree.ParserError, ValueError) as e:
        logger.debug("Could not parse page as HTML", url=base_url, error=str(e))
        return None

    for link in tree.iter("link"):
        link_type = (link.get("type") or "").split(";")[0].strip().lower()
        if link_type not in FEED_TYPES:
            continue

        href = link.get("href")
        if not href or not href.strip():
            continue

        return resolve_href(href, base_url)

    return None
