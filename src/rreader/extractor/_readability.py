from typing import Optional

from lxml import etree, html
from structlog import get_logger
from trafilatura import extract
from trafilatura.metadata import extract_metadata

from rreader.errors import ExtractionEmptyError
from rreader.parser import strip_tags

logger = get_logger(__name__)

EXCERPT_LENGTH = 300


def _first_paragraph(content: str) -> Optional[str]:
    try:
        fragment = html.fragment_fromstring(content, create_parent="div")
    except (etree.ParserError, ValueError):
        return None

    for p in fragment.iter("p"):
        text = " ".join(p.text_content().split())
        if text:
            return text[:EXCERPT_LENGTH]

    return None


def readability(page: str, url: Optional[str] = None) -> tuple[str, Optional[str]]:
    """
    Extract the main article content of a page.

    :return: Tuple of content as HTML and a short excerpt.
    :raises ExtractionEmptyError: When the page has no readable text.
    """
    content = extract(
        page,
        url=url,
        output_format="html",
        include_comments=False,
        include_formatting=True,
        include_images=True,
        include_links=True,
        include_tables=True,
    )

    if not content or strip_tags(content) is None:
        raise ExtractionEmptyError(f"No readable content in {url or 'page'}")

    excerpt = None
    metadata = extract_metadata(page, default_url=url)
    if metadata is not None and metadata.description:
        excerpt = " ".join(metadata.description.split()) or None

    if excerpt is None:
        excerpt = _first_paragraph(content)

    return content, excerpt
