import io
import time

import pytest
import requests

from rreader.discovery import FeedDiscoverer, find_feed_link, looks_like_feed, normalize_url
from rreader.errors import FetchError, NoFeedFoundError
from rreader.scraper import BotSession
from rreader.settings import settings

FEED_BODY = b'<?xml version="1.0"?><rss version="2.0"><channel><title>Blog</title></channel></rss>'


def page_with_links(*links: str) -> str:
    return "<html><head><title>Blog</title>" + "".join(links) + "</head><body><p>Hello</p></body></html>"


@pytest.fixture
def discoverer():
    return FeedDiscoverer()


def test_normalize_url_adds_https_scheme():
    assert normalize_url("  example.com/blog ") == "https://example.com/blog"
    assert normalize_url("http://example.com/") == "http://example.com/"
    assert normalize_url("HTTPS://example.com/") == "HTTPS://example.com/"


@pytest.mark.parametrize("content_type,body,expected", [
    ("application/rss+xml; charset=utf-8", b"", True),
    ("application/atom+xml", b"", True),
    ("text/xml", b"", True),
    ("text/plain", b"  \n<?xml version='1.0'?><rss/>", True),
    ("text/plain", b"<feed xmlns='http://www.w3.org/2005/Atom'/>", True),
    ("text/html", b"\xef\xbb\xbf<?xml version='1.0'?><rss/>", True),
    ("text/html; charset=utf-8", b"<!doctype html><html></html>", False),
    (None, b"<html></html>", False),
])
def test_looks_like_feed(content_type, body, expected):
    assert looks_like_feed(content_type, body) is expected


def test_direct_feed(discoverer, requests_mock):
    requests_mock.get("https://example.com/feed.xml", content=FEED_BODY,
                      headers={"Content-Type": "application/rss+xml"})

    resolved = discoverer.discover("example.com/feed.xml")

    assert resolved.feed_url == "https://example.com/feed.xml"
    assert resolved.site_url is None
    assert resolved.direct
    assert resolved.body == FEED_BODY
    assert requests_mock.last_request.headers["User-Agent"] == settings.BOT_USER_AGENT


def test_direct_feed_sniffed_from_body(discoverer, requests_mock):
    requests_mock.get("https://example.com/rss", content=b"\n\n" + FEED_BODY, headers={"Content-Type": "text/plain"})

    resolved = discoverer.discover("https://example.com/rss")

    assert resolved.direct
    assert requests_mock.call_count == 1


def test_feed_link_in_page(discoverer, requests_mock):
    page = page_with_links(
        '<link rel="stylesheet" href="/style.css" type="text/css">',
        '<link rel="alternate" type="application/rss+xml" href="/feed.xml">',
        '<link rel="alternate" type="application/atom+xml" href="/atom.xml">',
    )
    requests_mock.get("https://example.com/blog", text=page, headers={"Content-Type": "text/html"})
    requests_mock.get("https://example.com/feed.xml", content=FEED_BODY,
                      headers={"Content-Type": "application/rss+xml"})

    resolved = discoverer.discover("https://example.com/blog")

    assert resolved.feed_url == "https://example.com/feed.xml"
    assert resolved.site_url == "https://example.com/blog"
    assert not resolved.direct
    assert resolved.body == FEED_BODY
    assert requests_mock.call_count == 2


@pytest.mark.parametrize("href,expected", [
    ("https://feeds.example.org/main", "https://feeds.example.org/main"),
    ("//cdn.example.com/rss", "https://cdn.example.com/rss"),
    ("/feed.xml", "https://example.com/feed.xml"),
    ("feed.xml", "https://example.com/blog/feed.xml"),
    ("../rss/", "https://example.com/rss/"),
])
def test_find_feed_link_resolves_relative_href(href, expected):
    page = page_with_links(f'<link rel="alternate" type="application/atom+xml" href="{href}">')
    assert find_feed_link(page, "https://example.com/blog/index.html") == expected


def test_find_feed_link_skips_links_without_href():
    page = page_with_links(
        '<link rel="alternate" type="application/rss+xml">',
        '<link rel="alternate" type="text/xml" href=" ">',
        '<link rel="alternate" type="application/xml" href="/comments.xml">',
    )
    assert find_feed_link(page, "https://example.com/") == "https://example.com/comments.xml"


def test_no_feed_link(discoverer, requests_mock):
    requests_mock.get("https://example.com/", text=page_with_links(), headers={"Content-Type": "text/html"})

    with pytest.raises(NoFeedFoundError):
        discoverer.discover("https://example.com/")


def test_http_error(discoverer, requests_mock):
    requests_mock.get("https://example.com/missing", status_code=404)

    with pytest.raises(FetchError) as exc_info:
        discoverer.discover("https://example.com/missing")

    assert exc_info.value.status_code == 404
    assert exc_info.value.url == "https://example.com/missing"


def test_timeout(discoverer, requests_mock):
    requests_mock.get("https://example.com/slow", exc=requests.exceptions.ConnectTimeout)

    with pytest.raises(FetchError, match="Timed out"):
        discoverer.discover("https://example.com/slow")


class TrickleBody(io.BytesIO):
    """Body that arrives one byte at a time."""

    def read1(self, size=-1):
        time.sleep(0.05)
        return super().read1(1)


def test_slow_body_hits_deadline(requests_mock):
    requests_mock.get("https://example.com/trickle", body=TrickleBody(FEED_BODY),
                      headers={"Content-Type": "application/rss+xml"})
    discoverer = FeedDiscoverer(session=BotSession(timeout=0.5))

    started = time.monotonic()
    with pytest.raises(FetchError, match="Timed out"):
        discoverer.discover("https://example.com/trickle")

    assert time.monotonic() - started < 2


def test_fetch_reads_whole_body(requests_mock):
    requests_mock.get("https://example.com/feed.xml", content=FEED_BODY)

    response = BotSession(timeout=5).fetch("https://example.com/feed.xml")

    assert response.content == FEED_BODY
    assert response.text == FEED_BODY.decode()


def test_linked_feed_unreachable(discoverer, requests_mock):
    page = page_with_links('<link rel="alternate" type="application/rss+xml" href="/feed.xml">')
    requests_mock.get("https://example.com/", text=page, headers={"Content-Type": "text/html"})
    requests_mock.get("https://example.com/feed.xml", status_code=500)

    with pytest.raises(FetchError) as exc_info:
        discoverer.discover("https://example.com/")

    assert exc_info.value.status_code == 500
    assert exc_info.value.url == "https://example.com/feed.xml"
