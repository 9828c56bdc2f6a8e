"""
Supported feed document shapes.

Every supported format is an explicit class with namespace qualified lookups: RSS 2.0 (and the older 0.9x and
RDF based 1.0 dialects) items are read by :class:`RssItem`, Atom entries by :class:`AtomEntry`. Both expose the same
accessors, so the parser only deals with the :data:`Entry` union.
"""
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Literal, Optional

from lxml import etree

from ._dates import parse_date

ATOM_NS = "http://www.w3.org/2005/Atom"
CONTENT_NS = "http://purl.org/rss/1.0/modules/content/"
DC_NS = "http://purl.org/dc/elements/1.1/"
DCTERMS_NS = "http://purl.org/dc/terms/"
MEDIA_NS = "http://search.yahoo.com/mrss/"
FEEDBURNER_NS = "http://rssnamespace.org/feedburner/ext/1.0"
RDF_NS = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"
RSS1_NS = "http://purl.org/rss/1.0/"
RSS090_NS = "http://my.netscape.com/rdf/simple/0.9/"
XHTML_NS = "http://www.w3.org/1999/xhtml"

_email_name_re = re.compile(r"^\S+@\S+\s*\((?P<name>.+)\)\s*$")
_email_re = re.compile(r"^\S+@\S+$")


@dataclass(frozen=True)
class Enclosure:
    url: str
    type: str = ""


def _q(ns: str, tag: str) -> str:
    return f"{{{ns}}}{tag}" if ns else tag


def _text(element: Optional[etree._Element]) -> Optional[str]:
    if element is None:
        return None
    text = "".join(element.itertext()).strip()
    return text or None


def _child_text(element: etree._Element, *tags: str) -> Optional[str]:
    """ First non-empty text of the given child tags, in order of preference. """
    for tag in tags:
        if (text := _text(element.find(tag))) is not None:
            return text
    return None


def _media_image(element: etree._Element) -> Optional[str]:
    """
    Image from the Media RSS extension: an image `media:content`, or else the first `media:thumbnail`.

    Media elements may be nested in `media:group`, so descendants are searched.
    """
    for media in element.iter(_q(MEDIA_NS, "content")):
        url = (media.get("url") or "").strip()
        medium = media.get("medium") or ""
        mime_type = media.get("type") or ""
        if url and (medium == "image" or mime_type.startswith("image/")):
            return url

    for thumbnail in element.iter(_q(MEDIA_NS, "thumbnail")):
        url = (thumbnail.get("url") or "").strip()
        if url:
            return url

    return None


def _rss_author_name(value: Optional[str]) -> Optional[str]:
    """
    Display name from a RSS `<author>`, which is formatted as ``mail@example.com (Display Name)``.
    """
    if not value:
        return None
    if m := _email_name_re.match(value):
        return m.group("name").strip() or None
    if _email_re.match(value):
        return None
    return value


def _atom_link(element: etree._Element, rel: str = "alternate") -> Optional[etree._Element]:
    for link in element.findall(_q(ATOM_NS, "link")):
        if (link.get("rel") or "alternate") == rel and (link.get("href") or "").strip():
            return link
    return None


@dataclass(frozen=True)
class RssItem:
    """
    RSS `<item>`. For RSS 1.0 the item lives in the RSS 1.0 namespace, otherwise it is unqualified.
    """
    element: etree._Element
    ns: str = ""
    kind: Literal["rss"] = "rss"

    @property
    def id(self) -> Optional[str]:
        return _child_text(self.element, _q(self.ns, "guid"), _q(DC_NS, "identifier"))

    @property
    def link(self) -> Optional[str]:
        if link := _child_text(self.element, _q(self.ns, "link")):
            return link
        if (atom_link := _atom_link(self.element)) is not None:
            return atom_link.get("href").strip()
        return None

    @property
    def orig_link(self) -> Optional[str]:
        return _child_text(self.element, _q(FEEDBURNER_NS, "origLink"))

    @property
    def title(self) -> Optional[str]:
        return _child_text(self.element, _q(self.ns, "title"), _q(DC_NS, "title"))

    @property
    def author(self) -> Optional[str]:
        if name := _rss_author_name(_child_text(self.element, _q(self.ns, "author"))):
            return name
        return _child_text(self.element, _q(DC_NS, "creator"))

    @property
    def content(self) -> Optional[str]:
        return _child_text(self.element, _q(CONTENT_NS, "encoded"))

    @property
    def description(self) -> Optional[str]:
        return _child_text(self.element, _q(self.ns, "description"), _q(DC_NS, "description"))

    @property
    def created(self) -> Optional[datetime]:
        return parse_date(_child_text(self.element, _q(self.ns, "pubDate"), _q(DC_NS, "date")))

    @property
    def modified(self) -> Optional[datetime]:
        return parse_date(_child_text(self.element, _q(DCTERMS_NS, "modified"), _q(ATOM_NS, "updated")))

    @property
    def enclosure(self) -> Optional[Enclosure]:
        enclosure = self.element.find(_q(self.ns, "enclosure"))
        if enclosure is None or not (enclosure.get("url") or "").strip():
            return None
        return Enclosure(url=enclosure.get("url").strip(), type=enclosure.get("type") or "")

    @property
    def media_image(self) -> Optional[str]:
        return _media_image(self.element)


@dataclass(frozen=True)
class AtomEntry:
    """
    Atom 1.0 `<entry>`. Authors fall back to the feed level author, as Atom allows.
    """
    element: etree._Element
    feed_author: Optional[str] = None
    kind: Literal["atom"] = "atom"

    @property
    def id(self) -> Optional[str]:
        return _child_text(self.element, _q(ATOM_NS, "id"))

    @property
    def link(self) -> Optional[str]:
        link = _atom_link(self.element)
        if link is None:
            links = [l for l in self.element.findall(_q(ATOM_NS, "link")) if (l.get("href") or "").strip()]
            if not links:
                return None
            link = links[0]
        return link.get("href").strip()

    @property
    def orig_link(self) -> Optional[str]:
        return _child_text(self.element, _q(FEEDBURNER_NS, "origLink"))

    @property
    def title(self) -> Optional[str]:
        return _child_text(self.element, _q(ATOM_NS, "title"))

    @property
    def author(self) -> Optional[str]:
        for author in self.element.findall(_q(ATOM_NS, "author")):
            if name := _child_text(author, _q(ATOM_NS, "name")):
                return name
        return self.feed_author

    @property
    def content(self) -> Optional[str]:
        content = self.element.find(_q(ATOM_NS, "content"))
        if content is None or content.get("src"):
            return None
        if content.get("type") == "xhtml":
            return _inner_xhtml(content)
        return _text(content)

    @property
    def description(self) -> Optional[str]:
        return _child_text(self.element, _q(ATOM_NS, "summary"))

    @property
    def created(self) -> Optional[datetime]:
        return parse_date(_child_text(self.element, _q(ATOM_NS, "published")))

    @property
    def modified(self) -> Optional[datetime]:
        return parse_date(_child_text(self.element, _q(ATOM_NS, "updated")))

    @property
    def enclosure(self) -> Optional[Enclosure]:
        link = _atom_link(self.element, rel="enclosure")
        if link is None:
            return None
        return Enclosure(url=link.get("href").strip(), type=link.get("type") or "")

    @property
    def media_image(self) -> Optional[str]:
        return _media_image(self.element)


Entry = RssItem | AtomEntry


def _inner_xhtml(element: etree._Element) -> Optional[str]:
    """ Serialize the children of an inline XHTML construct without the XHTML namespace declarations. """
    parts = [element.text or ""]
    for child in element:
        parts.append(etree.tostring(child, encoding="unicode", with_tail=True))
    markup = "".join(parts).replace(f' xmlns="{XHTML_NS}"', "").strip()
    return markup or None


@dataclass(frozen=True)
class FeedHead:
    """
    Feed level metadata and the entries of a feed document.
    """
    kind: Literal["rss", "atom"]
    title: Optional[str]
    description: Optional[str]
    link: Optional[str]
    entries: list[Entry]

    def __iter__(self) -> Iterator[Entry]:
        return iter(self.entries)


class UnsupportedFeedError(ValueError):
    pass


def read_feed(root: etree._Element) -> FeedHead:
    """
    Map a parsed XML document to its feed shape.

    :raises UnsupportedFeedError: When the root element is not a known feed format.
    """
    tag = etree.QName(root)

    match (tag.namespace, tag.localname):
        case (None, "rss"):
            channel = root.find("channel")
            if channel is None:
                raise UnsupportedFeedError("RSS document without a <channel>")
            return FeedHead(
                kind="rss",
                title=_child_text(channel, "title"),
                description=_child_text(channel, "description"),
                link=_child_text(channel, "link"),
                entries=[RssItem(item) for item in channel.findall("item")],
            )

        case (ns, "RDF") if ns == RDF_NS:
            for rss_ns in (RSS1_NS, RSS090_NS):
                channel = root.find(_q(rss_ns, "channel"))
                if channel is not None:
                    break
            else:
                raise UnsupportedFeedError("RDF document without a RSS <channel>")
            return FeedHead(
                kind="rss",
                title=_child_text(channel, _q(rss_ns, "title")),
                description=_child_text(channel, _q(rss_ns, "description")),
                link=_child_text(channel, _q(rss_ns, "link")),
                entries=[RssItem(item, ns=rss_ns) for item in root.findall(_q(rss_ns, "item"))],
            )

        case (ns, "feed") if ns == ATOM_NS:
            feed_author = None
            if (author := root.find(_q(ATOM_NS, "author"))) is not None:
                feed_author = _child_text(author, _q(ATOM_NS, "name"))
            link = _atom_link(root)
            return FeedHead(
                kind="atom",
                title=_child_text(root, _q(ATOM_NS, "title")),
                description=_child_text(root, _q(ATOM_NS, "subtitle")),
                link=link.get("href").strip() if link is not None else None,
                entries=[AtomEntry(entry, feed_author=feed_author) for entry in root.findall(_q(ATOM_NS, "entry"))],
            )

    raise UnsupportedFeedError(f"Unsupported feed root element <{tag.localname}>")
