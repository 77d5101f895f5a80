"""
Workshop Discovery: Session Lock Model

SessionLock: one exclusive-access lease per discovery session.

Validity is never stored. It is derived from ``acquired_at`` and
``lease_duration_seconds`` against the current time, so a client that vanishes
without releasing simply lets its lease lapse.
"""

from datetime import datetime, timedelta, timezone

from discovery.models import db


__all__ = ["SessionLock", "as_utc"]


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SessionLock(db.Model):
    """Lease record. Absent row == unclaimed session."""

    __tablename__ = "session_locks"

    session_id = db.Column(
        db.Integer, db.ForeignKey("discovery_sessions.id", ondelete="CASCADE"),
        primary_key=True,
    )
    holder_id = db.Column(db.String(150), nullable=False)
    acquired_at = db.Column(db.DateTime(timezone=True), nullable=False)
    lease_duration_seconds = db.Column(db.Integer, nullable=False, default=120)

    def expires_at(self) -> datetime:
        return as_utc(self.acquired_at) + timedelta(seconds=self.lease_duration_seconds)

    def is_valid(self, now: datetime) -> bool:
        """True while ``now - acquired_at < lease_duration_seconds``."""
        return now < self.expires_at()

    def to_dict(self, now: datetime):
        valid = self.is_valid(now)
        expires = self.expires_at()
        return {
            "session_id": self.session_id,
            "locked": valid,
            "holder_id": self.holder_id if valid else None,
            "acquired_at": as_utc(self.acquired_at).isoformat(),
            "expires_at": expires.isoformat(),
            "lease_duration_seconds": self.lease_duration_seconds,
            "remaining_seconds": max(0.0, round((expires - now).total_seconds(), 3)),
        }

    def __repr__(self):
        return f"<SessionLock session={self.session_id} holder={self.holder_id}>"
