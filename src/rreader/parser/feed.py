"""
Parse RSS and Atom documents into :class:`~rreader.abc.ParsedFeed`.
"""
import re
from hashlib import md5
from typing import Optional

from lxml import etree
from opentelemetry import trace
from structlog import get_logger

from rreader.abc import ParsedEntry, ParsedFeed
from rreader.errors import InvalidFeedError
from rreader.utils import favicon_url

from ._entries import Entry, UnsupportedFeedError, read_feed
from ._html import first_image_src, strip_tags

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

_xml_declaration_re = re.compile(r"^\s*<\?xml[^>]*\?>")


def _xml_parser() -> etree.XMLParser:
    # No entity expansion and no network access for untrusted documents.
    return etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False, recover=False)


def entry_guid(entry: Entry) -> str:
    """
    Stable identifier of an entry: its id, else its link, else a hash of its title and creation date.
    """
    if guid := entry.id:
        return guid
    if link := entry.link:
        return link

    created = entry.created
    seed = (entry.title or "") + (created.isoformat() if created else "")
    return md5(seed.encode("utf-8")).hexdigest()


def entry_image(entry: Entry, content: Optional[str], description: Optional[str]) -> Optional[str]:
    """
    Pick the article image: inline image in the body, then an image enclosure, then Media RSS.
    """
    if src := first_image_src(content or description):
        return src

    enclosure = entry.enclosure
    if enclosure is not None and enclosure.type.lower().startswith("image/"):
        return enclosure.url

    return entry.media_image


class FeedParser:
    """
    RSS 2.0, RSS 1.0 (RDF) and Atom 1.0 parser.

    Entries are returned in document order.
    """

    @tracer.start_as_current_span("parser.parse")
    def parse(self, body: bytes | str, feed_url: str, site_url_hint: Optional[str] = None) -> ParsedFeed:
        """
        Parse a feed document.

        :param body: Raw document as fetched.
        :param feed_url: URL the document was fetched from.
        :param site_url_hint: Page the feed was discovered from, used when the feed does not name its site.
        :raises InvalidFeedError: When the document is not well formed XML, or not a supported feed format.
        """
        if isinstance(body, str):
            # lxml refuses unicode strings carrying an encoding declaration
            body = _xml_declaration_re.sub("", body, count=1).encode("utf-8")

        body = body.lstrip()
        if not body:
            raise InvalidFeedError(f"Empty feed document from {feed_url}")

        try:
            root = etree.fromstring(body, parser=_xml_parser())
        except etree.XMLSyntaxError as e:
            raise InvalidFeedError(f"Malformed feed document from {feed_url}: {e}") from e

        if root is None:
            raise InvalidFeedError(f"Empty feed document from {feed_url}")

        try:
            head = read_feed(root)
        except UnsupportedFeedError as e:
            raise InvalidFeedError(f"{e} in {feed_url}") from e

        site_url = head.link or site_url_hint
        entries = [self._entry(entry) for entry in head]

        span = trace.get_current_span()
        span.set_attribute("parser.format", head.kind)
        span.set_attribute("parser.entries", len(entries))
        logger.debug("Parsed feed", feed_url=feed_url, format=head.kind, entries=len(entries))

        return ParsedFeed(
            feed_url=feed_url,
            site_url=site_url,
            title=head.title,
            description=head.description,
            favicon_url=favicon_url(site_url or feed_url),
            entries=entries,
        )

    def _entry(self, entry: Entry) -> ParsedEntry:
        content = entry.content
        description = entry.description

        return ParsedEntry(
            guid=entry_guid(entry),
            title=entry.title,
            author=entry.author,
            content=content,
            summary=strip_tags(description),
            url=entry.link,
            image_url=entry_image(entry, content, description),
            published_at=entry.created or entry.modified,
            orig_link=entry.orig_link,
        )


def parse(body: bytes | str, feed_url: str, site_url_hint: Optional[str] = None) -> ParsedFeed:
    """
    Shorthand for :meth:`FeedParser.parse`.
    """
    return FeedParser().parse(body, feed_url, site_url_hint)
