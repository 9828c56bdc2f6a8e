"""
Repair articles linking to the retired FeedBurner redirector.

FeedBurner proxied article links as ``http://feedproxy.google.com/~r/<slug>/~3/<token>/``, which no longer resolve.
The original links can be recovered from archived copies of ``feeds.feedburner.com/<slug>``, where every item
carries its ``feedburner:origLink``. Articles are matched to archived items by title.
"""
import html
import re
import time
from collections import defaultdict
from typing import Optional

import requests
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from structlog import get_logger

from rreader.errors import FetchError, InvalidFeedError
from rreader.extractor import ContentExtractor, WaybackClient
from rreader.parser import FeedParser
from rreader.scraper import BotSession
from rreader.store import Database, FeedRepository

logger = get_logger(__name__)

FEEDBURNER_FEED_URL = "feeds.feedburner.com/{slug}"
HTTPS_CHECK_TIMEOUT = 5

_slug_re = re.compile(r"feedproxy\.google\.com/~r/([^/]+)/")
_whitespace_re = re.compile(r"\s+")


def feedproxy_slug(url: str) -> Optional[str]:
    if m := _slug_re.search(url or ""):
        return m.group(1)
    return None


def normalize_title(title: Optional[str]) -> str:
    """
    Title as a match key: entities decoded, whitespace collapsed, lowercased.
    """
    title = html.unescape(title or "")
    return _whitespace_re.sub(" ", title).strip().lower()


class Resolution(BaseModel):
    article_id: int
    title: Optional[str] = None
    old_url: str
    new_url: Optional[str] = None
    updated: bool = False


class FeedproxyResolver:

    def __init__(self, db: Database, wayback: Optional[WaybackClient] = None,
                 extractor: Optional[ContentExtractor] = None, parser: Optional[FeedParser] = None,
                 session: Optional[BotSession] = None, snapshot_limit: int = 20, delay: float = 0.5):
        self.db = db
        self.wayback = wayback or WaybackClient()
        self.extractor = extractor or ContentExtractor()
        self.parser = parser or FeedParser()
        self.session = session or BotSession(timeout=HTTPS_CHECK_TIMEOUT)
        self.snapshot_limit = snapshot_limit
        self.delay = delay

    def mine_feed(self, slug: str) -> dict[str, str]:
        """
        Map normalized item titles to original links from the archived copies of a FeedBurner feed.

        Later snapshots override earlier ones.
        """
        feed_url = FEEDBURNER_FEED_URL.format(slug=slug)
        try:
            timestamps = self.wayback.list_snapshots(feed_url, limit=self.snapshot_limit)
        except FetchError as e:
            logger.warning("Could not list archived feed snapshots", slug=slug, error=str(e))
            return {}

        mappings: dict[str, str] = {}
        for i, timestamp in enumerate(timestamps):
            if i and self.delay:
                time.sleep(self.delay)

            body = self.wayback.fetch_capture(timestamp, feed_url)
            if not body:
                continue

            try:
                parsed = self.parser.parse(body, feed_url)
            except InvalidFeedError as e:
                logger.debug("Archived snapshot is not a feed", slug=slug, timestamp=timestamp, error=str(e))
                continue

            for entry in parsed.entries:
                title = normalize_title(entry.title)
                link = entry.orig_link or entry.url
                if title and link:
                    mappings[title] = link

        logger.info("Mined archived feed", slug=slug, snapshots=len(timestamps), mappings=len(mappings))
        return mappings

    def upgrade_to_https(self, url: str) -> str:
        """
        Switch a ``http://`` link to ``https://`` when the secure URL answers.
        """
        if not url.startswith("http://"):
            return url

        https_url = "https://" + url[len("http://"):]
        try:
            response = self.session.head(https_url, timeout=HTTPS_CHECK_TIMEOUT, allow_redirects=True)
        except requests.RequestException:
            return url

        return https_url if response.ok else url

    def resolve(self, dry_run: bool = False, limit: Optional[int] = None) -> list[Resolution]:
        """
        Find the original links of all FeedBurner proxied articles, and rewrite them unless `dry_run`.
        """
        with self.db.session_scope() as session:
            articles = FeedRepository(session).feedproxy_articles(limit=limit)
            pending = [Resolution(article_id=a.id, title=a.title, old_url=a.url) for a in articles]

        if not pending:
            logger.info("No feedproxy articles found")
            return []

        by_slug: dict[str, list[Resolution]] = defaultdict(list)
        for item in pending:
            by_slug[feedproxy_slug(item.old_url) or "unknown"].append(item)

        for slug, items in by_slug.items():
            mappings = self.mine_feed(slug) if slug != "unknown" else {}

            for item in items:
                real_url = mappings.get(normalize_title(item.title))
                if not real_url:
                    logger.info("No original link found", article_id=item.article_id, title=item.title)
                    continue

                item.new_url = self.upgrade_to_https(real_url)
                logger.info("Resolved feedproxy link", article_id=item.article_id, old_url=item.old_url,
                            new_url=item.new_url, dry_run=dry_run)

                if not dry_run:
                    item.updated = self.update_article(item.article_id, item.new_url)

        return pending

    def update_article(self, article_id: int, real_url: str) -> bool:
        """
        Point the article and its guid at the original link, extracting its content when it has none.
        """
        with self.db.session_scope() as session:
            article = FeedRepository(session).get_article(article_id)
            if article is None:
                return False
            needs_content = not article.content

        extracted = self.extractor.extract(real_url) if needs_content else None

        try:
            with self.db.session_scope() as session:
                article = FeedRepository(session).get_article(article_id)
                if article is None:
                    return False

                article.url = real_url
                article.guid = real_url
                if extracted is not None and not article.content:
                    article.content = extracted.content
                    article.summary = extracted.excerpt
        except IntegrityError:
            logger.warning("Original link already stored for the feed, leaving article as is",
                           article_id=article_id, url=real_url)
            return False

        return True
