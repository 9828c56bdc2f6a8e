"""
Wayback Machine client.

Used as the fallback source of article HTML when the live page is gone, and to list archived copies of feeds.

..seealso:: https://archive.org/help/wayback_api.php
"""
import math
import re
from typing import Optional

from opentelemetry import trace
from structlog import get_logger

from rreader.errors import FetchError
from rreader.scraper import BotSession
from rreader.settings import settings

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

SNAPSHOT_URL = "https://web.archive.org/web/{timestamp}id_/{url}"
""" Raw snapshot, without the replay toolbar and link rewriting. """

_replay_timestamp_re = re.compile(r"/web/(\d+)/")


def raw_snapshot_url(snapshot_url: str) -> str:
    """
    Rewrite a replay URL ``/web/<timestamp>/<url>`` to its raw variant ``/web/<timestamp>id_/<url>``.
    """
    return _replay_timestamp_re.sub(r"/web/\1id_/", snapshot_url, count=1)


def sample(items: list, limit: int) -> list:
    """
    Evenly spaced subset of at most `limit` items, keeping the first one.
    """
    if limit < 1:
        return []
    if len(items) <= limit:
        return list(items)
    step = math.ceil(len(items) / limit)
    return items[::step]


class WaybackClient:

    def __init__(self, session: Optional[BotSession] = None, timeout: float = settings.ARCHIVE_TIMEOUT,
                 availability_url: str = settings.WAYBACK_AVAILABILITY_URL, cdx_url: str = settings.WAYBACK_CDX_URL):
        self.session = session or BotSession(timeout=timeout)
        self.timeout = timeout
        self.availability_url = availability_url
        self.cdx_url = cdx_url

    def closest_snapshot(self, url: str) -> Optional[str]:
        """
        Replay URL of the snapshot closest to now, or None when the page has not been archived.

        :raises FetchError: When the availability API cannot be reached.
        """
        response = self.session.fetch(self.availability_url, params={"url": url}, timeout=self.timeout)
        try:
            data = response.json()
        except ValueError as e:
            raise FetchError(f"Invalid response from the Wayback availability API for {url}", url=url) from e

        snapshots = data.get("archived_snapshots") if isinstance(data, dict) else None
        closest = snapshots.get("closest") if isinstance(snapshots, dict) else None
        if not isinstance(closest, dict) or not closest.get("available") or not closest.get("url"):
            logger.debug("No usable snapshot in availability response", url=url)
            return None

        return closest["url"]

    @tracer.start_as_current_span("wayback.fetch_snapshot")
    def fetch_snapshot(self, url: str) -> Optional[str]:
        """
        Raw HTML of the closest archived copy of the page, or None when there is none.

        Errors are logged and reported as no snapshot.
        """
        try:
            snapshot = self.closest_snapshot(url)
            if not snapshot:
                logger.debug("No archived snapshot", url=url)
                return None

            snapshot = raw_snapshot_url(snapshot)
            response = self.session.fetch(snapshot, timeout=self.timeout)
        except FetchError as e:
            logger.info("Could not fetch archived snapshot", url=url, error=str(e))
            return None

        logger.debug("Fetched archived snapshot", url=url, snapshot=snapshot)
        return response.text or None

    def list_snapshots(self, url: str, limit: int = 20, mimetype: str = "text/xml") -> list[str]:
        """
        Timestamps of successful captures of the URL, sampled down to at most `limit`.

        :raises FetchError: When the CDX API cannot be reached.
        """
        params = {
            "url": url,
            "output": "json",
            "filter": ["statuscode:200", f"mimetype:{mimetype}"],
        }
        response = self.session.fetch(self.cdx_url, params=params, timeout=self.timeout)
        try:
            rows = response.json() or []
        except ValueError as e:
            raise FetchError(f"Invalid response from the Wayback CDX API for {url}", url=url) from e

        # First row is the field header
        if len(rows) < 2:
            return []
        header, *captures = rows

        index = header.index("timestamp") if "timestamp" in header else 1
        timestamps = [row[index] for row in captures if len(row) > index]

        return sample(timestamps, limit)

    def fetch_capture(self, timestamp: str, url: str) -> Optional[bytes]:
        """
        Raw body of a specific capture, or None when it cannot be fetched.
        """
        try:
            response = self.session.fetch(SNAPSHOT_URL.format(timestamp=timestamp, url=url), timeout=self.timeout)
        except FetchError as e:
            logger.debug("Could not fetch capture", url=url, timestamp=timestamp, error=str(e))
            return None
        return response.content or None
