from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select

from rreader.abc import ParsedEntry, ParsedFeed
from rreader.health import FeedHealth
from rreader.models import Article, Feed
from rreader.store import FeedRepository

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def entry(guid: str = "guid-1", **fields) -> ParsedEntry:
    fields.setdefault("title", "Title")
    return ParsedEntry(guid=guid, **fields)


def count_articles(session) -> int:
    return session.scalar(select(func.count()).select_from(Article))


def test_insert_article_upserts_on_duplicate_guid(db, make_feed):
    feed_id = make_feed()

    with db.session_scope() as session:
        repo = FeedRepository(session)
        first = repo.insert_article(feed_id, entry(title="Original"), NOW)
        second = repo.insert_article(feed_id, entry(title="Replaced", content="<p>Body</p>"), NOW)

        assert first.id == second.id
        assert count_articles(session) == 1

    with db.session_scope() as session:
        article = session.scalars(select(Article)).one()
        assert article.title == "Replaced"
        assert article.content == "<p>Body</p>"


def test_same_guid_in_different_feeds(db, make_feed):
    feed_a = make_feed()
    feed_b = make_feed(feed_url="https://other.example.com/feed", user_id=2)

    with db.session_scope() as session:
        repo = FeedRepository(session)
        repo.insert_article(feed_a, entry(), NOW)
        repo.insert_article(feed_b, entry(), NOW)

    with db.session_scope() as session:
        assert count_articles(session) == 2


def test_guid_index(db, make_feed):
    feed_id = make_feed()

    with db.session_scope() as session:
        repo = FeedRepository(session)
        a = repo.insert_article(feed_id, entry("a"), NOW)
        b = repo.insert_article(feed_id, entry("b"), NOW)

        assert repo.get_article_guid_index(feed_id) == {"a": a.id, "b": b.id}


def test_deleting_feed_deletes_articles(db, make_feed):
    feed_id = make_feed()

    with db.session_scope() as session:
        FeedRepository(session).insert_article(feed_id, entry(), NOW)

    with db.session_scope() as session:
        session.execute(delete(Feed).where(Feed.id == feed_id))

    with db.session_scope() as session:
        assert count_articles(session) == 0


def test_update_feed_metadata(db, make_feed):
    feed_id = make_feed(title="Old", site_url="https://mine.example/")

    parsed = ParsedFeed(
        feed_url="https://example.com/feed.xml",
        site_url="https://example.com/",
        title="New",
        description="Described",
        favicon_url=None,
    )

    with db.session_scope() as session:
        repo = FeedRepository(session)
        feed = repo.get_feed_by_id(feed_id)
        changes = repo.update_feed_metadata(feed, parsed, fetched_at=NOW)

        assert changes == {"title": "New", "description": "Described"}
        assert feed.site_url == "https://mine.example/"
        assert feed.favicon_url is None
        assert feed.last_fetched_at == NOW


def test_list_feeds_excludes_disabled(db, make_feed):
    active = make_feed()
    disabled = make_feed(feed_url="https://dead.example.com/feed")

    with db.session_scope() as session:
        repo = FeedRepository(session)
        repo.save_feed_health(repo.get_feed_by_id(disabled), FeedHealth(consecutive_failures=11, disabled_at=NOW))

    with db.session_scope() as session:
        repo = FeedRepository(session)
        assert [f.id for f in repo.list_feeds()] == [active]
        assert [f.id for f in repo.list_feeds(include_disabled=True)] == [active, disabled]


def test_articles_missing_content(db, make_feed):
    feed_id = make_feed()

    with db.session_scope() as session:
        repo = FeedRepository(session)
        repo.insert_article(feed_id, entry("old", url="https://example.com/old",
                                           published_at=datetime(2024, 1, 1, tzinfo=timezone.utc)), NOW)
        repo.insert_article(feed_id, entry("new", url="https://example.com/new"), NOW)
        repo.insert_article(feed_id, entry("full", url="https://example.com/full", content="<p>x</p>"), NOW)
        repo.insert_article(feed_id, entry("nolink"), NOW)

    with db.session_scope() as session:
        missing = FeedRepository(session).articles_missing_content(feed_id)
        assert [a.guid for a in missing] == ["new", "old"]


def test_record_feed_failure_counts_in_sql(db, make_feed):
    feed_id = make_feed(consecutive_failures=9)

    # Both writers start from the same stored count
    for error in ("HTTP 500", "HTTP 502"):
        with db.session_scope() as session:
            health = FeedRepository(session).record_feed_failure(feed_id, error, NOW)

    assert health.consecutive_failures == 11
    assert health.last_error == "HTTP 502"
    assert health.disabled

    with db.session_scope() as session:
        assert FeedRepository(session).record_feed_failure(404, "HTTP 500", NOW) is None


def test_fetch_lease(db, make_feed):
    feed_id = make_feed()
    until = NOW + timedelta(minutes=5)

    with db.session_scope() as session:
        repo = FeedRepository(session)
        assert repo.acquire_fetch_lease(feed_id, NOW, until)
        assert not repo.acquire_fetch_lease(feed_id, NOW + timedelta(minutes=1), NOW + timedelta(minutes=6))

        # Someone else's claim is left in place
        repo.release_fetch_lease(feed_id, NOW)
        assert not repo.acquire_fetch_lease(feed_id, NOW, until)

        repo.release_fetch_lease(feed_id, until)
        assert repo.acquire_fetch_lease(feed_id, NOW, until)
        assert not repo.acquire_fetch_lease(404, NOW, until)
