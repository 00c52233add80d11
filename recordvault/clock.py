"""Clock collaborator. All engine timestamps are naive UTC."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Wall clock. Tick subscription is provided by the APScheduler wiring."""

    def now(self) -> datetime:
        return utcnow()
