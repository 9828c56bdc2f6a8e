import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from rreader.abc import CycleOutcome
from rreader.discovery import SourceDiscoverer
from rreader.errors import FetchError
from rreader.ingestion import FeedLocks, IngestionScheduler, Ingestor
from rreader.models import Article, Feed
from rreader.store import FeedRepository

FEED_URL = "https://example.com/feed.xml"
NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def aware(dt):
    return dt.replace(tzinfo=timezone.utc) if dt is not None and dt.tzinfo is None else dt


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def ingestor(db, clock):
    return Ingestor(db, now=clock)


@pytest.fixture
def serve(requests_mock):
    """Serve a document as the feed."""

    def _serve(document: str, url: str = FEED_URL, **kwargs):
        kwargs.setdefault("headers", {"Content-Type": "application/rss+xml"})
        return requests_mock.get(url, text=document, **kwargs)

    return _serve


def load_feed(db, feed_id) -> Feed:
    with db.session_scope() as session:
        return FeedRepository(session).get_feed_by_id(feed_id)


def load_articles(db, feed_id) -> list[Article]:
    with db.session_scope() as session:
        return list(session.scalars(select(Article).where(Article.feed_id == feed_id).order_by(Article.id)))


def test_missing_feed(ingestor):
    assert ingestor.run_cycle(404) is CycleOutcome.MISSING


def test_cycle_stores_articles(db, ingestor, make_feed, serve, rss):
    feed_id = make_feed()
    serve(rss(range(3)))

    assert ingestor.run_cycle(feed_id) is CycleOutcome.UPDATED

    articles = load_articles(db, feed_id)
    assert [a.guid for a in articles] == [f"https://example.com/?p={n}" for n in range(3)]
    assert articles[0].title == "Article 0"
    assert articles[0].summary == "Summary of article 0"
    assert articles[0].url == "https://example.com/articles/0"

    feed = load_feed(db, feed_id)
    assert aware(feed.last_fetched_at) == NOW
    assert feed.title == "Example blog"
    assert feed.site_url == "https://example.com/"
    assert feed.description == "Posts about examples"
    assert feed.favicon_url == "https://example.com/favicon.ico"
    assert feed.consecutive_failures == 0


def test_cycle_is_idempotent(db, ingestor, make_feed, serve, rss):
    feed_id = make_feed()
    serve(rss(range(3)))

    ingestor.run_cycle(feed_id)
    first = [(a.id, a.guid, a.title, a.published_at) for a in load_articles(db, feed_id)]

    assert ingestor.run_cycle(feed_id) is CycleOutcome.UPDATED
    second = [(a.id, a.guid, a.title, a.published_at) for a in load_articles(db, feed_id)]

    assert first == second


def test_resighting_updates_in_place(db, ingestor, clock, make_feed, serve, rss, rss_item_factory):
    feed_id = make_feed()
    serve(rss([rss_item_factory(1)]))
    ingestor.run_cycle(feed_id)
    original, = load_articles(db, feed_id)

    clock.advance(hours=1)
    serve(rss([rss_item_factory(
        1,
        title="Article 1 (updated)",
        pubDate="Fri, 01 Aug 2025 00:00:00 GMT",
        link="https://example.com/articles/1-moved",
    )]))
    ingestor.run_cycle(feed_id)

    updated, = load_articles(db, feed_id)
    assert updated.id == original.id
    assert updated.guid == original.guid
    assert updated.published_at == original.published_at
    assert updated.title == "Article 1 (updated)"
    assert updated.url == "https://example.com/articles/1-moved"


def test_stored_content_survives_resighting(db, ingestor, make_feed, serve, rss):
    feed_id = make_feed()
    serve(rss(range(1)))
    ingestor.run_cycle(feed_id)

    with db.session_scope() as session:
        article = session.scalars(select(Article).where(Article.feed_id == feed_id)).one()
        article.content = "<p>Extracted body</p>"

    ingestor.run_cycle(feed_id)

    article, = load_articles(db, feed_id)
    assert article.content == "<p>Extracted body</p>"


def test_unknown_publish_date_defaults_to_now(db, ingestor, make_feed, serve, rss, rss_item_factory):
    feed_id = make_feed()
    serve(rss([rss_item_factory(1, pubDate=None)]))

    ingestor.run_cycle(feed_id)

    article, = load_articles(db, feed_id)
    assert aware(article.published_at) == NOW


def test_duplicate_guids_collapse(db, ingestor, make_feed, serve, rss, rss_item_factory):
    feed_id = make_feed()
    serve(rss([
        rss_item_factory(1, title="First copy"),
        rss_item_factory(1, title="Second copy"),
    ]))

    assert ingestor.run_cycle(feed_id) is CycleOutcome.UPDATED

    article, = load_articles(db, feed_id)
    assert article.title == "Second copy"


def test_first_fetch_is_truncated(db, ingestor, make_feed, serve, rss):
    feed_id = make_feed()
    serve(rss(range(25)))

    ingestor.run_cycle(feed_id)

    articles = load_articles(db, feed_id)
    assert [a.title for a in articles] == [f"Article {n}" for n in range(10)]

    # Later fetches take everything
    ingestor.run_cycle(feed_id)
    assert len(load_articles(db, feed_id)) == 25


def test_malformed_feed_records_one_failure(db, ingestor, make_feed, serve):
    feed_id = make_feed()
    serve("<not-xml>")

    assert ingestor.run_cycle(feed_id) is CycleOutcome.FAILED

    feed = load_feed(db, feed_id)
    assert feed.consecutive_failures == 1
    assert "Malformed feed" in feed.last_error
    assert aware(feed.last_failed_at) == NOW
    assert feed.last_fetched_at is None
    assert feed.title is None
    assert load_articles(db, feed_id) == []


def test_http_error_records_failure(db, ingestor, make_feed, serve):
    feed_id = make_feed()
    serve("", status_code=503)

    assert ingestor.run_cycle(feed_id) is CycleOutcome.FAILED
    assert "HTTP 503" in load_feed(db, feed_id).last_error


def test_metadata_merge(db, ingestor, make_feed, serve, rss):
    feed_id = make_feed(title="Old title", site_url="https://mine.example/", description="Own description")
    serve(rss(range(1), title="New title", link="https://example.com/"))

    ingestor.run_cycle(feed_id)

    feed = load_feed(db, feed_id)
    assert feed.title == "New title"
    assert feed.site_url == "https://mine.example/"
    assert feed.description == "Own description"


def test_empty_metadata_never_overwrites(db, ingestor, make_feed, serve):
    feed_id = make_feed(title="Kept", favicon_url="https://example.com/icon.png")
    serve('<rss version="2.0"><channel><title></title></channel></rss>')

    assert ingestor.run_cycle(feed_id) is CycleOutcome.UPDATED

    feed = load_feed(db, feed_id)
    assert feed.title == "Kept"
    # The placeholder favicon from the feed host differs and is not empty
    assert feed.favicon_url == "https://example.com/favicon.ico"


def test_backoff_skips_without_network(db, ingestor, make_feed, serve, rss, requests_mock):
    feed_id = make_feed(consecutive_failures=5, last_failed_at=NOW - timedelta(hours=1), last_error="HTTP 500")
    serve(rss(range(2)))

    assert ingestor.run_cycle(feed_id) is CycleOutcome.SKIPPED
    assert requests_mock.call_count == 0
    assert load_feed(db, feed_id).consecutive_failures == 5


def test_forced_run_bypasses_backoff(db, ingestor, make_feed, serve, rss):
    feed_id = make_feed(consecutive_failures=9, last_failed_at=NOW - timedelta(hours=1), last_error="HTTP 500")
    serve(rss(range(2)))

    assert ingestor.run_cycle(feed_id, forced=True) is CycleOutcome.UPDATED

    feed = load_feed(db, feed_id)
    assert feed.consecutive_failures == 0
    assert feed.last_error is None
    assert feed.last_failed_at is None
    assert len(load_articles(db, feed_id)) == 2


def test_backoff_expires(db, ingestor, clock, make_feed, serve, rss):
    feed_id = make_feed(consecutive_failures=5, last_failed_at=NOW - timedelta(hours=7), last_error="HTTP 500")
    serve(rss(range(1)))

    assert ingestor.run_cycle(feed_id) is CycleOutcome.UPDATED


def test_disabled_feed_is_skipped_even_when_forced(db, ingestor, make_feed, serve, rss, requests_mock):
    feed_id = make_feed(consecutive_failures=11, last_failed_at=NOW - timedelta(days=3), disabled_at=NOW - timedelta(days=3))
    serve(rss(range(1)))

    assert ingestor.run_cycle(feed_id) is CycleOutcome.SKIPPED
    assert ingestor.run_cycle(feed_id, forced=True) is CycleOutcome.SKIPPED
    assert requests_mock.call_count == 0


def test_feed_disabled_after_eleven_failures(db, ingestor, clock, make_feed, serve):
    feed_id = make_feed()
    serve("", status_code=500)

    for attempt in range(1, 12):
        assert ingestor.run_cycle(feed_id, forced=True) is CycleOutcome.FAILED
        feed = load_feed(db, feed_id)
        assert feed.consecutive_failures == attempt
        assert (feed.disabled_at is not None) is (attempt == 11)
        clock.advance(hours=1)

    assert ingestor.run_cycle(feed_id, forced=True) is CycleOutcome.SKIPPED


def test_busy_feed_is_dropped(db, make_feed, serve, rss, requests_mock, clock):
    locks = FeedLocks()
    ingestor = Ingestor(db, locks=locks, now=clock)
    feed_id = make_feed()
    serve(rss(range(1)))

    with locks.hold(feed_id) as acquired:
        assert acquired
        assert ingestor.run_cycle(feed_id) is CycleOutcome.BUSY

    assert requests_mock.call_count == 0
    assert ingestor.run_cycle(feed_id) is CycleOutcome.UPDATED


def test_storage_error_is_recorded_as_failure(db, ingestor, make_feed, serve, rss, monkeypatch):
    feed_id = make_feed()
    serve(rss(range(3)))

    def broken_upsert(*args, **kwargs):
        raise OperationalError("INSERT INTO articles", {}, Exception("disk I/O error"))

    monkeypatch.setattr(FeedRepository, "upsert_article", broken_upsert)

    assert ingestor.run_cycle(feed_id) is CycleOutcome.FAILED

    feed = load_feed(db, feed_id)
    assert feed.consecutive_failures == 1
    assert feed.last_error.startswith("Storage error")
    assert feed.last_fetched_at is None
    assert feed.title is None
    assert load_articles(db, feed_id) == []


def test_feed_locks_are_per_feed():
    locks = FeedLocks()

    with locks.hold(1) as first, locks.hold(2) as other:
        assert first and other
        with locks.hold(1) as second:
            assert not second

    with locks.hold(1) as again:
        assert again


class TestScheduler:

    @pytest.fixture
    def scheduler(self, ingestor):
        with IngestionScheduler(ingestor, max_workers=2) as scheduler:
            yield scheduler

    def test_enqueue_fetch(self, db, scheduler, make_feed, serve, rss):
        feed_id = make_feed()
        serve(rss(range(2)))

        assert scheduler.enqueue_fetch(feed_id).result() is CycleOutcome.UPDATED
        assert len(load_articles(db, feed_id)) == 2

    def test_fetch_all_skips_disabled(self, db, scheduler, make_feed, serve, rss):
        active = make_feed()
        make_feed(feed_url="https://dead.example.com/feed", consecutive_failures=11, disabled_at=NOW)
        serve(rss(range(1)))

        futures = scheduler.fetch_all()

        assert [f.result() for f in futures] == [CycleOutcome.UPDATED]
        assert len(load_articles(db, active)) == 1

    def test_reenable(self, db, scheduler, make_feed, serve, rss):
        feed_id = make_feed(consecutive_failures=11, last_error="HTTP 500", last_failed_at=NOW, disabled_at=NOW)
        serve(rss(range(1)))

        assert scheduler.reenable(feed_id).result() is CycleOutcome.UPDATED

        feed = load_feed(db, feed_id)
        assert feed.disabled_at is None
        assert feed.consecutive_failures == 0
        assert len(load_articles(db, feed_id)) == 1

    def test_reenable_missing_feed(self, scheduler):
        assert scheduler.reenable(12345) is None

    def test_subscribe(self, db, scheduler, requests_mock, rss):
        page = '<html><head><link rel="alternate" type="application/rss+xml" href="/feed.xml"></head></html>'
        requests_mock.get("https://example.com/", text=page, headers={"Content-Type": "text/html"})
        requests_mock.get(FEED_URL, text=rss(range(12)), headers={"Content-Type": "application/rss+xml"})

        feed, future = scheduler.subscribe("example.com/", user_id=7, title="My blog")

        assert future.result() is CycleOutcome.UPDATED

        stored = load_feed(db, feed.id)
        assert stored.user_id == 7
        assert stored.feed_url == FEED_URL
        assert stored.title == "Example blog"
        assert len(load_articles(db, feed.id)) == 10


class HeldDiscoverer(SourceDiscoverer):
    """Holds the cycle open until released, then fails the fetch."""

    def __init__(self):
        self.entered = threading.Event()
        self.released = threading.Event()

    def discover(self, url: str):
        self.entered.set()
        self.released.wait(5)
        raise FetchError(f"Could not fetch {url}: HTTP 500", url=url, status_code=500)


def test_cycle_running_in_another_process_is_dropped(db, make_feed, clock):
    feed_id = make_feed()
    held = HeldDiscoverer()
    # Separate FeedLocks, as in two worker processes
    first = Ingestor(db, discoverer=held, now=clock)
    second = Ingestor(db, discoverer=held, now=clock)

    with ThreadPoolExecutor(max_workers=1) as pool:
        running = pool.submit(first.run_cycle, feed_id)
        assert held.entered.wait(5)

        assert second.run_cycle(feed_id) is CycleOutcome.BUSY

        held.released.set()
        assert running.result(timeout=5) is CycleOutcome.FAILED

    assert second.run_cycle(feed_id) is CycleOutcome.FAILED

    feed = load_feed(db, feed_id)
    assert feed.consecutive_failures == 2
    assert feed.fetch_lease_until is None


def test_expired_lease_is_taken_over(db, ingestor, clock, make_feed, serve, rss):
    feed_id = make_feed()
    serve(rss(range(1)))
    with db.session_scope() as session:
        assert FeedRepository(session).acquire_fetch_lease(feed_id, NOW, NOW + timedelta(minutes=5))

    assert ingestor.run_cycle(feed_id) is CycleOutcome.BUSY

    clock.advance(minutes=6)
    assert ingestor.run_cycle(feed_id) is CycleOutcome.UPDATED
    assert load_feed(db, feed_id).fetch_lease_until is None
