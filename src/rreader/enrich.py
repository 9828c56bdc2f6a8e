"""
Fill in article bodies for feeds that only publish summaries.
"""
from typing import Optional

from structlog import get_logger

from rreader.extractor import ContentExtractor
from rreader.store import Database, FeedRepository

logger = get_logger(__name__)


def enrich_article(db: Database, article_id: int, extractor: Optional[ContentExtractor] = None) -> bool:
    """
    Extract the content of an article from its web page.

    An empty summary is backfilled from the page excerpt. When nothing can be extracted the article is left as is.

    :return: True when the article was updated.
    """
    extractor = extractor or ContentExtractor()

    with db.session_scope() as session:
        article = FeedRepository(session).get_article(article_id)
        if article is None:
            logger.warning("Article not found", article_id=article_id)
            return False
        if article.content or not article.url:
            return False
        url = article.url

    # Network access outside the transaction
    extracted = extractor.extract(url)
    if extracted is None:
        return False

    with db.session_scope() as session:
        article = FeedRepository(session).get_article(article_id)
        if article is None or article.content:
            return False

        article.content = extracted.content
        if not article.summary and extracted.excerpt:
            article.summary = extracted.excerpt

    logger.info("Article enriched", article_id=article_id, url=url, from_archive=extracted.from_archive,
                paywalled=extracted.paywalled)
    return True


def enrich_feed(db: Database, feed_id: int, limit: Optional[int] = None,
                extractor: Optional[ContentExtractor] = None) -> int:
    """
    Enrich the articles of a feed that have no content, newest first.

    :return: Number of articles updated.
    """
    extractor = extractor or ContentExtractor()

    with db.session_scope() as session:
        article_ids = [a.id for a in FeedRepository(session).articles_missing_content(feed_id=feed_id, limit=limit)]

    updated = sum(1 for article_id in article_ids if enrich_article(db, article_id, extractor))
    logger.info("Feed enriched", feed_id=feed_id, candidates=len(article_ids), updated=updated)
    return updated
