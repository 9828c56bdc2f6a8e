from typing import Optional

from lxml import etree, html


def _fragment(text: Optional[str]):
    if not text or not text.strip():
        return None
    try:
        return html.fragment_fromstring(text, create_parent="div")
    except (etree.ParserError, ValueError):
        return None


def strip_tags(text: Optional[str]) -> Optional[str]:
    """
    Remove all markup from a HTML snippet, returning plain text.
    """
    fragment = _fragment(text)
    if fragment is None:
        return None

    plain = fragment.text_content().strip()
    return plain or None


def first_image_src(text: Optional[str]) -> Optional[str]:
    """
    Return the `src` of the first `<img>` in a HTML snippet.
    """
    fragment = _fragment(text)
    if fragment is None:
        return None

    for img in fragment.iter("img"):
        src = (img.get("src") or "").strip()
        if src:
            return src

    return None
