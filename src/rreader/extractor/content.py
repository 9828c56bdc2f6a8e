"""
Readable article content from web pages, with the Wayback Machine as a fallback source.
"""
from typing import Optional

from opentelemetry import trace
from structlog import get_logger

from rreader.abc import ExtractedContent
from rreader.errors import ExtractionEmptyError, FetchError
from rreader.scraper import BotSession
from rreader.settings import settings
from rreader.utils import clean_url

from ._paywalled import is_paywalled_content
from ._readability import readability
from .wayback import WaybackClient

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)


class ContentExtractor:
    """
    Fetch an article page and extract its main content.

    The live page is tried first. When it cannot be fetched, the closest archived copy is used instead.
    """

    def __init__(self, session: Optional[BotSession] = None, wayback: Optional[WaybackClient] = None,
                 timeout: float = settings.EXTRACT_TIMEOUT):
        self.session = session or BotSession(timeout=timeout)
        self.wayback = wayback or WaybackClient()
        self.timeout = timeout

    def fetch_live(self, url: str) -> Optional[str]:
        try:
            response = self.session.fetch(url, timeout=self.timeout)
        except FetchError as e:
            logger.info("Could not fetch article", url=url, error=str(e), status=e.status_code)
            return None

        return response.text if response.text and response.text.strip() else None

    @tracer.start_as_current_span("extractor.extract")
    def extract(self, url: str) -> Optional[ExtractedContent]:
        """
        Extract the readable content of the page at `url`.

        :return: Extracted content, or None when neither the page nor an archived copy yields any text.
        """
        span = trace.get_current_span()
        try:
            url = clean_url(url)
        except ValueError as e:
            logger.debug("Could not normalize URL, using it as is", url=url, error=str(e))
        span.set_attribute("extractor.url", url)

        from_archive = False
        page = self.fetch_live(url)
        if page is None:
            page = self.wayback.fetch_snapshot(url)
            from_archive = page is not None

        if page is None:
            logger.info("No source for article content", url=url)
            return None

        span.set_attribute("extractor.from_archive", from_archive)

        try:
            content, excerpt = readability(page, url=url)
        except ExtractionEmptyError as e:
            logger.info("Extraction produced no content", url=url, error=str(e))
            return None

        return ExtractedContent(
            content=content,
            excerpt=excerpt,
            source_url=url,
            from_archive=from_archive,
            paywalled=is_paywalled_content(page),
        )
