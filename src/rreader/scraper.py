import time

import requests
from structlog import get_logger
from urllib3.exceptions import HTTPError as TransportError, ReadTimeoutError

from rreader.errors import FetchError
from rreader.settings import settings

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


def get_user_agent():
    """
    Return the user-agent string to be used for requests.
    """

    return settings.BOT_USER_AGENT


class BotSession(requests.Session):
    """
    :class:`requests.Session` with the bot user agent and a default timeout.

    Requests are never retried here: a failing feed is handled by its health state instead.
    """

    def __init__(self, timeout: float = settings.DISCOVERY_TIMEOUT):
        super().__init__()
        self.timeout = timeout
        self.headers.update({
            "User-Agent": get_user_agent(),
        })

    def request(self, method, url, *args, **kwargs):
        kwargs.setdefault("timeout", self.timeout)
        return super().request(method, url, *args, **kwargs)

    def fetch(self, url: str, **kwargs) -> requests.Response:
        """
        GET the URL and return the response, raising :class:`FetchError` on transport errors and non-2xx responses.

        The timeout is a deadline for the whole fetch, body included, not only for each socket read.
        """
        timeout = kwargs.setdefault("timeout", self.timeout)
        if isinstance(timeout, tuple):
            timeout = sum(t for t in timeout if t)
        deadline = time.monotonic() + timeout if timeout else None

        kwargs["stream"] = True
        try:
            response = self.get(url, **kwargs)
        except requests.Timeout as e:
            raise FetchError(f"Timed out fetching {url}", url=url) from e
        except requests.RequestException as e:
            raise FetchError(f"Could not fetch {url}: {e}", url=url) from e

        with response:
            if not response.ok:
                logger.debug("Unsuccessful response", url=url, status=response.status_code)
                raise FetchError(
                    f"Could not fetch {url}: HTTP {response.status_code}",
                    url=url,
                    status_code=response.status_code,
                )

            # Body is read here, later `.content` and `.text` use it
            response._content = self._read_body(response, url, deadline)

        return response

    @staticmethod
    def _read_body(response: requests.Response, url: str, deadline: float | None) -> bytes:
        body = bytearray()
        try:
            # read1() returns what has arrived instead of blocking until a full chunk is in
            while chunk := response.raw.read1(CHUNK_SIZE, decode_content=True):
                body += chunk
                if deadline is not None and time.monotonic() > deadline:
                    raise FetchError(f"Timed out fetching {url}", url=url)
        except ReadTimeoutError as e:
            raise FetchError(f"Timed out fetching {url}", url=url) from e
        except (TransportError, OSError) as e:
            raise FetchError(f"Could not fetch {url}: {e}", url=url) from e

        return bytes(body)
