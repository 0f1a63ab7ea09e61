from datetime import date, datetime, timezone
from typing import Iterable, Optional


def date_prefix(as_of: date) -> str:
    return as_of.strftime("%Y-%m-%d")


def next_version(existing: Iterable[str], as_of: date) -> str:
    prefix = date_prefix(as_of)
    highest = 0
    for version in existing:
        day, _, suffix = version.partition(".")
        if day != prefix or not suffix.isdigit():
            continue
        highest = max(highest, int(suffix))
    return f"{prefix}.{highest + 1}"


class VersionAllocator:
    """Allocates ``YYYY-MM-DD.N`` versions for an app.

    The scan covers publish records and reservations, so a version reserved by
    a publish that later failed (even after its upload) is never reused.
    Callers hold the app's publish lock; the reservation primary key catches
    anything that slips past it.
    """

    def __init__(self, records):
        self.records = records

    def allocate(self, app_id: str, as_of: Optional[date] = None) -> str:
        as_of = as_of or datetime.now(timezone.utc).date()
        existing = self.records.versions_with_prefix(app_id, date_prefix(as_of) + ".")
        return next_version(existing, as_of)

    def reserve(self, app_id: str, now: datetime) -> str:
        version = self.allocate(app_id, now.astimezone(timezone.utc).date())
        self.records.reserve_version(app_id, version, now)
        return version
