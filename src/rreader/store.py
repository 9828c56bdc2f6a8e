"""
Persistence of feeds and articles.

:class:`Database` owns the engine and hands out transactional sessions, :class:`FeedRepository` holds the queries
and writes the ingestion pipeline needs, bound to one session.
"""
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import case, create_engine, event, or_, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from structlog import get_logger

from rreader.abc import ParsedEntry, ParsedFeed
from rreader.health import DISABLE_AFTER_FAILURES, FeedHealth
from rreader.models import Article, Base, Feed
from rreader.settings import settings

logger = get_logger(__name__)

FEEDPROXY_PATTERN = "%feedproxy.google.com/~r/%"


def _sqlite_connect(dbapi_connection, _connection_record):
    # Let SQLAlchemy emit BEGIN itself so savepoints nest inside the session transaction
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _sqlite_begin(connection):
    connection.exec_driver_sql("BEGIN")


class Database:
    """
    Engine and session factory for a database URL.
    """

    def __init__(self, database_url: str = settings.DATABASE_URL, **engine_kwargs):
        url = make_url(database_url)
        is_sqlite = url.get_backend_name() == "sqlite"

        if is_sqlite:
            if url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
            # Sessions are used from the ingestion worker threads
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": 30})

        self.engine = create_engine(url, **engine_kwargs)
        if is_sqlite:
            event.listen(self.engine, "connect", _sqlite_connect)
            event.listen(self.engine, "begin", _sqlite_begin)

        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self):
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """
        Session committed when the block exits cleanly, rolled back when it raises.
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self):
        self.engine.dispose()


def apply_entry(article: Article, entry: ParsedEntry):
    """
    Update an existing article from a later sighting of its entry.

    `guid` and `published_at` are left alone, and stored content is kept when the entry carries none.

    Keeping the content is a deliberate departure from a plain overwrite of every field: bodies filled in by
    :func:`rreader.enrich.enrich_article` would otherwise be wiped by the next fetch of a summary-only feed.
    """
    article.title = entry.title
    article.author = entry.author
    if entry.content is not None:
        article.content = entry.content
    article.summary = entry.summary
    article.url = entry.url
    article.image_url = entry.image_url


class FeedRepository:

    def __init__(self, session: Session):
        self.session = session

    # Feeds

    def get_feed_by_id(self, feed_id: int) -> Optional[Feed]:
        return self.session.get(Feed, feed_id)

    def list_feeds(self, include_disabled: bool = False) -> list[Feed]:
        query = select(Feed).order_by(Feed.id)
        if not include_disabled:
            query = query.where(Feed.disabled_at.is_(None))
        return list(self.session.scalars(query))

    def create_feed(self, user_id: int, feed_url: str, title: Optional[str] = None, site_url: Optional[str] = None,
                    description: Optional[str] = None, favicon_url: Optional[str] = None) -> Feed:
        feed = Feed(
            user_id=user_id,
            feed_url=feed_url,
            title=title,
            site_url=site_url,
            description=description,
            favicon_url=favicon_url,
        )
        self.session.add(feed)
        self.session.flush()
        logger.info("Created feed", feed_id=feed.id, feed_url=feed_url, user_id=user_id)
        return feed

    def update_feed_metadata(self, feed: Feed, parsed: ParsedFeed, fetched_at: Optional[datetime] = None) -> dict:
        """
        Merge feed level metadata from a fetch.

        Title and favicon follow the feed when it provides them; site URL and description are only filled in when
        missing. Stored values are never replaced with empty ones.

        :return: Changed fields and their new values.
        """
        changes = {}

        for field in ("title", "favicon_url"):
            value = getattr(parsed, field)
            if value and value != getattr(feed, field):
                changes[field] = value

        for field in ("site_url", "description"):
            value = getattr(parsed, field)
            if value and not getattr(feed, field):
                changes[field] = value

        for field, value in changes.items():
            setattr(feed, field, value)

        if fetched_at is not None:
            feed.last_fetched_at = fetched_at

        return changes

    def save_feed_health(self, feed: Feed, health: FeedHealth):
        feed.consecutive_failures = health.consecutive_failures
        feed.last_error = health.last_error
        feed.last_failed_at = health.last_failed_at
        feed.disabled_at = health.disabled_at

    def record_feed_failure(self, feed_id: int, error: str, now: datetime) -> Optional[FeedHealth]:
        """
        Count a failed cycle in one statement, so that concurrent failures all add up.

        Same transition as :meth:`FeedHealth.record_failure`.

        :return: Health after the failure, or None when the feed does not exist.
        """
        failures = Feed.consecutive_failures + 1
        result = self.session.execute(
            update(Feed)
            .where(Feed.id == feed_id)
            .values(
                consecutive_failures=failures,
                last_error=error,
                last_failed_at=now,
                disabled_at=case((failures >= DISABLE_AFTER_FAILURES, now), else_=None),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        feed = self.session.get(Feed, feed_id, populate_existing=True)
        return FeedHealth.from_feed(feed)

    def acquire_fetch_lease(self, feed_id: int, now: datetime, until: datetime) -> bool:
        """
        Claim the feed for one cycle until `until`, unless another cycle holds an unexpired claim.
        """
        result = self.session.execute(
            update(Feed)
            .where(Feed.id == feed_id, or_(Feed.fetch_lease_until.is_(None), Feed.fetch_lease_until < now))
            .values(fetch_lease_until=until)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def release_fetch_lease(self, feed_id: int, until: datetime):
        # Only our own claim: an expired one may have been taken over
        self.session.execute(
            update(Feed)
            .where(Feed.id == feed_id, Feed.fetch_lease_until == until)
            .values(fetch_lease_until=None)
            .execution_options(synchronize_session=False)
        )

    # Articles

    def get_article(self, article_id: int) -> Optional[Article]:
        return self.session.get(Article, article_id)

    def get_article_guid_index(self, feed_id: int) -> dict[str, int]:
        """
        Map of article guids to ids within a feed.
        """
        rows = self.session.execute(select(Article.guid, Article.id).where(Article.feed_id == feed_id))
        return {guid: article_id for guid, article_id in rows}

    def update_article(self, article_id: int, entry: ParsedEntry) -> Optional[Article]:
        article = self.get_article(article_id)
        if article is None:
            return None
        apply_entry(article, entry)
        return article

    def insert_article(self, feed_id: int, entry: ParsedEntry, now: datetime) -> Article:
        """
        Insert a new article, or update the stored one when the guid appeared in the meantime.
        """
        article = Article(
            feed_id=feed_id,
            guid=entry.guid,
            title=entry.title,
            author=entry.author,
            content=entry.content,
            summary=entry.summary,
            url=entry.url,
            image_url=entry.image_url,
            published_at=entry.published_at or now,
        )

        try:
            with self.session.begin_nested():
                self.session.add(article)
        except IntegrityError:
            logger.debug("Article inserted concurrently, updating instead", feed_id=feed_id, guid=entry.guid)
            article = self.session.scalars(
                select(Article).where(Article.feed_id == feed_id, Article.guid == entry.guid)
            ).one()
            apply_entry(article, entry)

        return article

    def upsert_article(self, feed_id: int, entry: ParsedEntry, guid_index: dict[str, int], now: datetime) -> Article:
        """
        Reconcile one parsed entry against the feed's guid index, keeping the index current.
        """
        if (article_id := guid_index.get(entry.guid)) is not None:
            article = self.update_article(article_id, entry)
            if article is not None:
                return article

        article = self.insert_article(feed_id, entry, now)
        guid_index[entry.guid] = article.id
        return article

    def articles_missing_content(self, feed_id: Optional[int] = None, limit: Optional[int] = None) -> list[Article]:
        query = select(Article).where(Article.content.is_(None), Article.url.is_not(None)).order_by(
            Article.published_at.desc()
        )
        if feed_id is not None:
            query = query.where(Article.feed_id == feed_id)
        if limit:
            query = query.limit(limit)
        return list(self.session.scalars(query))

    def feedproxy_articles(self, limit: Optional[int] = None) -> list[Article]:
        """
        Articles whose link still points at the retired FeedBurner redirector.
        """
        query = select(Article).where(Article.url.like(FEEDPROXY_PATTERN)).order_by(Article.id)
        if limit:
            query = query.limit(limit)
        return list(self.session.scalars(query))
