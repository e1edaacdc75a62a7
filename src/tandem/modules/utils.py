from __future__ import annotations

import sedate

from datetime import datetime, timedelta
from dateutil.parser import isoparse

from tandem.modules import errors


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterable
    from sedate.types import TzInfoOrName


def parse_labels(text: str | None) -> list[str]:
    """ Turns a comma separated string of labels into a list. Labels are
    trimmed, empty labels are dropped and duplicates are only kept once.
    The order is preserved.

    """
    if not text:
        return []

    labels: list[str] = []
    for label in text.split(','):
        label = label.strip()
        if label and label not in labels:
            labels.append(label)

    return labels


def join_labels(labels: Iterable[str] | str | None) -> str | None:
    """ The inverse of :func:`parse_labels`, returns None if there are no
    labels at all.

    """
    if labels is None:
        return None

    if isinstance(labels, str):
        labels = parse_labels(labels)
    else:
        labels = parse_labels(','.join(labels))

    return ', '.join(labels) or None


def strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None

    return value.strip() or None


def as_utc(value: datetime | str, timezone: TzInfoOrName) -> datetime:
    """ Returns the given datetime or ISO 8601 string as timezone-aware
    UTC datetime. Naive values are assumed to be of the given timezone.

    """
    if isinstance(value, str):
        try:
            value = isoparse(value.strip())
        except ValueError as e:
            raise errors.InvalidTimestampError(
                f'{value!r} is not a valid timestamp'
            ) from e

    if not isinstance(value, datetime):
        raise errors.InvalidTimestampError(
            f'{value!r} is not a valid timestamp'
        )

    return sedate.standardize_date(value, timezone)


def expiry_presets(
    now: datetime,
    timezone: TzInfoOrName
) -> dict[str, datetime]:
    """ The expiry dates offered when booking or extending: in one, two or
    four hours or at the end of the current day (in the given timezone).

    """
    return {
        '1h': now + timedelta(hours=1),
        '2h': now + timedelta(hours=2),
        '4h': now + timedelta(hours=4),
        'eod': sedate.align_date_to_day(
            sedate.to_timezone(now, timezone), timezone, 'up'
        ),
    }


def time_until_expiry(expires_at: datetime, now: datetime) -> str:
    seconds = int((expires_at - now).total_seconds())

    if seconds <= 0:
        return 'Expired'

    hours, seconds = divmod(seconds, 3600)
    minutes = seconds // 60

    if hours:
        return f'{hours}h {minutes}m'

    return f'{minutes}m'
