"""
Feed ingestion cycles.

One cycle fetches a feed, parses it and reconciles its entries with the stored articles. Cycles for different feeds
run concurrently on a thread pool, a feed never has two cycles in flight.

Failures never leave a cycle: they are recorded on the feed's health, which decides when the feed is tried next.
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

from opentelemetry import trace
from structlog import get_logger

from rreader.abc import CycleOutcome
from rreader.discovery import FeedDiscoverer, SourceDiscoverer
from rreader.health import FeedHealth, HealthState
from rreader.models import Feed
from rreader.parser import FeedParser
from rreader.settings import settings
from rreader.store import Database, FeedRepository

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FeedLocks:
    """
    One lock per feed id. Locks are taken without waiting.
    """

    def __init__(self):
        self._locks: dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock(self, feed_id: int) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(feed_id, threading.Lock())

    @contextmanager
    def hold(self, feed_id: int) -> Iterator[bool]:
        """
        Try to take the lock of a feed. Yields whether the lock was taken.
        """
        lock = self._lock(feed_id)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()


class Ingestor:
    """
    Runs ingestion cycles against a database.
    """

    def __init__(self, db: Database, discoverer: Optional[SourceDiscoverer] = None,
                 parser: Optional[FeedParser] = None, locks: Optional[FeedLocks] = None,
                 first_fetch_limit: int = settings.FIRST_FETCH_LIMIT, now: Callable[[], datetime] = utcnow,
                 lease_timeout: float = settings.FETCH_LEASE_TIMEOUT):
        self.db = db
        self.discoverer = discoverer or FeedDiscoverer()
        self.parser = parser or FeedParser()
        self.locks = locks or FeedLocks()
        self.first_fetch_limit = first_fetch_limit
        self.now = now
        self.lease_timeout = timedelta(seconds=lease_timeout)

    def run_cycle(self, feed_id: int, forced: bool = False) -> CycleOutcome:
        """
        Fetch one feed and store its entries.

        Never raises, the result is reported as a :class:`~rreader.abc.CycleOutcome`.

        A feed is claimed twice: by the in-process lock, and by a lease on its row that keeps out cycles running in
        other processes.

        :param feed_id: Feed to fetch.
        :param forced: Ignore the failure backoff. Disabled feeds are still skipped.
        """
        log = logger.bind(feed_id=feed_id, forced=forced)

        with tracer.start_as_current_span("ingestion.run_cycle") as span:
            span.set_attribute("feed.id", feed_id)
            span.set_attribute("ingestion.forced", forced)

            with self.locks.hold(feed_id) as acquired:
                if not acquired:
                    log.info("Cycle already in flight, dropping")
                    outcome = CycleOutcome.BUSY
                else:
                    try:
                        outcome = self._leased_cycle(feed_id, forced, log)
                    except Exception:
                        log.exception("Ingestion cycle crashed")
                        outcome = CycleOutcome.FAILED

            span.set_attribute("ingestion.outcome", outcome.value)
            return outcome

    def _leased_cycle(self, feed_id: int, forced: bool, log) -> CycleOutcome:
        now = self.now()
        until = now + self.lease_timeout

        with self.db.session_scope() as session:
            repo = FeedRepository(session)
            if not repo.acquire_fetch_lease(feed_id, now, until):
                if repo.get_feed_by_id(feed_id) is None:
                    log.warning("Feed not found")
                    return CycleOutcome.MISSING
                log.info("Cycle in flight in another worker, dropping")
                return CycleOutcome.BUSY

        try:
            return self._cycle(feed_id, forced, log)
        finally:
            with self.db.session_scope() as session:
                FeedRepository(session).release_fetch_lease(feed_id, until)

    def _cycle(self, feed_id: int, forced: bool, log) -> CycleOutcome:
        now = self.now()

        with self.db.session_scope() as session:
            feed = FeedRepository(session).get_feed_by_id(feed_id)
            if feed is None:
                log.warning("Feed not found")
                return CycleOutcome.MISSING

            health = FeedHealth.from_feed(feed)
            feed_url = feed.feed_url
            site_url = feed.site_url
            first_fetch = feed.last_fetched_at is None

        if health.disabled:
            log.debug("Feed is disabled, skipping", disabled_at=health.disabled_at)
            return CycleOutcome.SKIPPED

        if not forced and health.should_skip(now):
            log.debug("Feed is backing off, skipping", failures=health.consecutive_failures)
            return CycleOutcome.SKIPPED

        try:
            resolved = self.discoverer.discover(feed_url)
            parsed = self.parser.parse(resolved.body, resolved.feed_url, resolved.site_url or site_url)
        except Exception as e:
            log.info("Feed fetch failed", feed_url=feed_url, error=str(e), error_type=type(e).__name__)
            self.record_failure(feed_id, str(e) or type(e).__name__, now)
            return CycleOutcome.FAILED

        entries = parsed.entries
        if first_fetch:
            entries = entries[:self.first_fetch_limit]

        try:
            with self.db.session_scope() as session:
                repo = FeedRepository(session)
                feed = repo.get_feed_by_id(feed_id)
                if feed is None:
                    log.warning("Feed removed during fetch")
                    return CycleOutcome.MISSING

                guid_index = repo.get_article_guid_index(feed_id)
                known = len(guid_index)
                for entry in entries:
                    repo.upsert_article(feed_id, entry, guid_index, now)

                changes = repo.update_feed_metadata(feed, parsed, fetched_at=now)
                repo.save_feed_health(feed, FeedHealth.from_feed(feed).record_success())
        except Exception as e:
            log.exception("Storing feed entries failed")
            self.record_failure(feed_id, f"Storage error: {e}", now)
            return CycleOutcome.FAILED

        log.info(
            "Feed updated",
            entries=len(entries),
            new_articles=len(guid_index) - known,
            first_fetch=first_fetch,
            metadata_changes=sorted(changes),
        )
        return CycleOutcome.UPDATED

    def record_failure(self, feed_id: int, error: str, now: datetime) -> Optional[FeedHealth]:
        """
        Persist a failed cycle on the feed's health.
        """
        with self.db.session_scope() as session:
            health = FeedRepository(session).record_feed_failure(feed_id, error, now)

        if health is None:
            return None
        if health.state is HealthState.DISABLED:
            logger.warning("Feed disabled after repeated failures", feed_id=feed_id,
                           failures=health.consecutive_failures, error=error)

        return health


class IngestionScheduler:
    """
    Dispatch ingestion cycles onto a bounded thread pool.

    Usage:
        with IngestionScheduler(Ingestor(Database())) as scheduler:
            for future in scheduler.fetch_all():
                future.result()
    """

    def __init__(self, ingestor: Ingestor, max_workers: int = settings.MAX_WORKERS):
        self.ingestor = ingestor
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rreader-ingest")

    @property
    def db(self) -> Database:
        return self.ingestor.db

    def enqueue_fetch(self, feed_id: int, forced: bool = False) -> Future:
        return self.executor.submit(self.ingestor.run_cycle, feed_id, forced)

    def fetch_all(self) -> list[Future]:
        """
        Queue a scheduled cycle for every feed that is not disabled.
        """
        with self.db.session_scope() as session:
            feed_ids = [feed.id for feed in FeedRepository(session).list_feeds()]

        logger.info("Queueing scheduled fetches", feeds=len(feed_ids))
        return [self.enqueue_fetch(feed_id) for feed_id in feed_ids]

    def reenable(self, feed_id: int) -> Optional[Future]:
        """
        Reset the health of a feed and fetch it right away.

        :return: Future of the forced cycle, or None when the feed does not exist.
        """
        with self.db.session_scope() as session:
            repo = FeedRepository(session)
            feed = repo.get_feed_by_id(feed_id)
            if feed is None:
                return None
            repo.save_feed_health(feed, FeedHealth.from_feed(feed).record_success())

        logger.info("Feed re-enabled", feed_id=feed_id)
        return self.enqueue_fetch(feed_id, forced=True)

    def subscribe(self, url: str, user_id: int, title: Optional[str] = None) -> tuple[Feed, Future]:
        """
        Subscribe a user to the feed behind `url`, and queue its first fetch.

        :raises FetchError: When the URL cannot be fetched.
        :raises NoFeedFoundError: When the page does not link to a feed.
        :raises InvalidFeedError: When the feed cannot be parsed.
        """
        resolved = self.ingestor.discoverer.discover(url)
        parsed = self.ingestor.parser.parse(resolved.body, resolved.feed_url, resolved.site_url)

        with self.db.session_scope() as session:
            feed = FeedRepository(session).create_feed(
                user_id=user_id,
                feed_url=resolved.feed_url,
                title=title or parsed.title,
                site_url=parsed.site_url,
                description=parsed.description,
                favicon_url=parsed.favicon_url,
            )

        return feed, self.enqueue_fetch(feed.id, forced=True)

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
        return False
