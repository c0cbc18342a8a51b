# canonical instants and ids shared by both backends
from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone

_lock = threading.Lock()
_last_millis = 0


def _format(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def now_iso() -> str:
    """Current UTC instant as sortable text, e.g. ``2025-11-01T12:00:00.000Z``.

    Strictly increasing within a process: two calls landing on the same
    millisecond are pushed one millisecond apart.
    """
    global _last_millis
    with _lock:
        millis = int(datetime.now(timezone.utc).timestamp() * 1000)
        if millis <= _last_millis:
            millis = _last_millis + 1
        _last_millis = millis
    return _format(datetime.fromtimestamp(millis / 1000, tz=timezone.utc))


def parse_instant(text: str) -> datetime:
    return datetime.fromisoformat(text.replace("Z", "+00:00"))


def canonical_instant(text: str) -> str:
    """
    Rewrites any ISO-8601 date or date-time as ``...Z`` UTC text.

    Values without an offset are taken to be UTC. Raises ``ValueError`` when
    ``text`` is not a date.
    """
    if not isinstance(text, str):
        raise ValueError(f"Not a date: {text!r}")
    try:
        moment = parse_instant(text.strip())
    except ValueError:
        raise ValueError(f"Not a date: {text!r}") from None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return _format(moment.astimezone(timezone.utc))


def shift_iso(text: str, days: float = 0, seconds: float = 0) -> str:
    moment = parse_instant(text) + timedelta(days=days, seconds=seconds)
    return _format(moment.astimezone(timezone.utc))


def epoch_millis() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())
