"""
Paywalled content detection using structured data in HTML.

Supports JSON-LD, Microdata, and RDFa formats.

See:
 - <https://developers.google.com/search/docs/appearance/structured-data/paywalled-content>
 - <https://schema.org/isAccessibleForFree>

"""

import json
from typing import Any

from lxml import etree, html
from structlog import get_logger

logger = get_logger(__name__)

ARTICLE_TYPES = ("NewsArticle", "Article", "BlogPosting", "WebPage", "CreativeWork")
NOT_FREE_VALUES = ("false", "no", "0")


def is_paywalled_content(html_string: str) -> bool:
    """
    Detect if HTML content is marked as paywalled using structured data.

    Technically, page might contain paywalled and non-paywalled content, so this function may return True even if only
    part of the content is paywalled.

    :param html_string: The HTML content as a string.
    :return: True if paywalled indicators are found, False otherwise.
    """
    try:
        tree = html.fromstring(html_string)
    except (etree.ParserError, ValueError) as e:
        logger.debug("Failed to parse HTML for paywall detection", error=str(e))
        return False

    return _check_jsonld_paywall(tree) or _check_attribute_paywall(tree, "itemprop") or \
        _check_attribute_paywall(tree, "property")


def _not_free(value: Any) -> bool:
    if value is False:
        return True
    return isinstance(value, str) and value.strip().lower() in NOT_FREE_VALUES


def _check_jsonld_paywall(tree) -> bool:
    """Check JSON-LD structured data for paywall indicators."""
    for script in tree.xpath('//script[@type="application/ld+json"]'):
        if script.text is None:
            continue

        try:
            data = json.loads(script.text)
        except (json.JSONDecodeError, TypeError):
            logger.debug("Invalid JSON in JSON-LD script, skipping")
            continue

        if _is_jsonld_paywalled(data):
            return True

    return False


def _is_jsonld_paywalled(data: dict | list) -> bool:
    """
    Recursively check JSON-LD data for `isAccessibleForFree: false`, on articles or their `hasPart` sections.
    """
    if isinstance(data, list):
        return any(_is_jsonld_paywalled(item) for item in data)

    if not isinstance(data, dict):
        return False

    schema_type = data.get("@type", "")
    if isinstance(schema_type, list):
        schema_type = " ".join(str(t) for t in schema_type)

    if any(t in str(schema_type) for t in ARTICLE_TYPES) and _not_free(data.get("isAccessibleForFree")):
        return True

    has_part = data.get("hasPart", [])
    if isinstance(has_part, dict):
        has_part = [has_part]
    if isinstance(has_part, list):
        for part in has_part:
            if isinstance(part, dict) and _not_free(part.get("isAccessibleForFree")):
                return True

    return any(
        isinstance(value, (dict, list)) and _is_jsonld_paywalled(value)
        for value in data.values()
    )


def _check_attribute_paywall(tree, attribute: str) -> bool:
    """
    Check Microdata (``itemprop``) or RDFa (``property``) markup for paywall indicators.

    HTML attribute names are case insensitive, lxml lowercases them when parsing.
    """
    for element in tree.xpath(f'//*[contains(@{attribute}, "isAccessibleForFree")]'):
        if _not_free(element.get("content", "")) or _not_free(element.text or ""):
            return True

    return False
