from datetime import datetime, timezone


class Clock:
    """Source of the current UTC time, injected into every subsystem."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
