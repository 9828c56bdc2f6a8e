from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

from dateutil import parser as dateutil_parser
from structlog import get_logger

logger = get_logger(__name__)


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a feed date into a timezone aware datetime.

    RSS uses RFC 822 dates and Atom uses RFC 3339, but feeds in the wild use whatever they like, so anything
    :mod:`dateutil` understands is accepted too. Naive dates are assumed to be UTC.
    """
    if not value or not value.strip():
        return None
    value = value.strip()

    dt: Optional[datetime] = None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        pass

    if dt is None:
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            pass

    if dt is None:
        try:
            dt = dateutil_parser.parse(value)
        except (ValueError, OverflowError):
            logger.debug("Unparseable date", value=value)
            return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt
