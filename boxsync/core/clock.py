from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)
