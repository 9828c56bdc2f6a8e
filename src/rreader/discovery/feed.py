"""
Discoverer resolving arbitrary URLs into RSS/Atom feeds.
"""
from typing import Optional

from opentelemetry import trace
from structlog import get_logger

from rreader.abc import ResolvedFeed
from rreader.errors import FetchError, NoFeedFoundError
from rreader.scraper import BotSession
from rreader.settings import settings

from ._base import SourceDiscoverer
from ._links import find_feed_link, looks_like_feed, normalize_url

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)


class FeedDiscoverer(SourceDiscoverer):
    """
    Find the machine readable feed behind an URL.

    The URL may point directly to a feed, or to a HTML page advertising its feed with a
    ``<link rel="alternate" type="application/rss+xml">`` tag. In the latter case the feed is fetched with a second
    request.
    """

    def __init__(self, session: Optional[BotSession] = None, timeout: float = settings.DISCOVERY_TIMEOUT):
        self.session = session or BotSession(timeout=timeout)

    @tracer.start_as_current_span("discovery.discover")
    def discover(self, url: str) -> ResolvedFeed:
        """
        Fetch the URL and return the feed document it resolves to.

        :param url: Feed or web page URL, scheme is optional.
        :raises FetchError: When the page or the feed cannot be fetched.
        :raises NoFeedFoundError: When the page does not link to a feed.
        """
        url = normalize_url(url)
        span = trace.get_current_span()
        span.set_attribute("discovery.url", url)

        response = self.session.fetch(url)
        content_type = response.headers.get("Content-Type")
        body = response.content

        if looks_like_feed(content_type, body):
            logger.debug("URL is a feed", url=url, content_type=content_type)
            return ResolvedFeed(feed_url=url, site_url=None, body=body, content_type=content_type)

        feed_url = find_feed_link(body, url)
        if not feed_url:
            raise NoFeedFoundError(f"No RSS or Atom feed found at {url}")

        logger.debug("Discovered feed link from page", url=url, feed_url=feed_url)
        span.set_attribute("discovery.feed_url", feed_url)

        try:
            feed_response = self.session.fetch(feed_url)
        except FetchError as e:
            raise FetchError(
                f"Found a feed link at {url} but could not fetch it: {e}",
                url=feed_url,
                status_code=e.status_code,
            ) from e

        return ResolvedFeed(
            feed_url=feed_url,
            site_url=url,
            body=feed_response.content,
            content_type=feed_response.headers.get("Content-Type"),
        )
