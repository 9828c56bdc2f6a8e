"""Pytest-wide fixtures for the ingestion tests."""

import os

# Settings are read on import
os.environ.setdefault("RREADER_TRACING_ENABLED", "false")

from datetime import datetime, timezone
from email.utils import format_datetime

import pytest

from rreader.store import Database, FeedRepository

FEED_URL = "https://example.com/feed.xml"


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'rreader.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def make_feed(db):
    """Factory creating a stored feed and returning its id."""

    def _make_feed(feed_url: str = FEED_URL, user_id: int = 1, **fields) -> int:
        with db.session_scope() as session:
            feed = FeedRepository(session).create_feed(user_id=user_id, feed_url=feed_url)
            for key, value in fields.items():
                setattr(feed, key, value)
            session.flush()
            return feed.id

    return _make_feed


def rss_item(n: int, **overrides) -> str:
    values = {
        "title": f"Article {n}",
        "link": f"https://example.com/articles/{n}",
        "guid": f"https://example.com/?p={n}",
        "description": f"Summary of article {n}",
        "pubDate": format_datetime(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc).replace(minute=n % 60)),
    }
    values.update(overrides)

    parts = [f"<{tag}>{value}</{tag}>" for tag, value in values.items() if value is not None]
    return "<item>" + "".join(parts) + "</item>"


def rss_document(items, title: str = "Example blog", link: str = "https://example.com/") -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel>'
        f"<title>{title}</title><link>{link}</link><description>Posts about examples</description>"
        + "".join(items)
        + "</channel></rss>"
    )


@pytest.fixture
def rss():
    """Builder for RSS 2.0 documents: ``rss(range(3))`` or ``rss([rss_item(...), ...])``."""

    def _rss(items, **kwargs) -> str:
        items = [rss_item(i) if isinstance(i, int) else i for i in items]
        return rss_document(items, **kwargs)

    return _rss


@pytest.fixture
def rss_item_factory():
    return rss_item
