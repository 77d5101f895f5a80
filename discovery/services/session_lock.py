"""
Session Access Lock: lease-based exclusive access to a discovery session.

One row per locked session in ``session_locks``. A lease is valid while
``now - acquired_at < lease_duration_seconds``; nothing ever sweeps expired
rows, the next ``acquire`` simply reclaims them.

Every state change is a single conditional statement against the row that
was observed, so two racers never both believe they won:

    acquire   - INSERT when no row exists (unique PK decides a tie), otherwise
                UPDATE ... WHERE holder_id = <observed> AND acquired_at = <observed>
    heartbeat - UPDATE ... WHERE holder_id = <caller>
    release   - DELETE ... WHERE holder_id = <caller>

A successful acquire or heartbeat hands out a signed lock token (HS256 JWT).
Guarded operations present it back through ``require_holder``; the token only
names the holder, lease validity is always re-derived from the database.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from discovery.core.exceptions import LockConflictError, NotFoundError, NotHolderError
from discovery.models import db
from discovery.models.audit import write_audit
from discovery.models.session_lock import SessionLock, as_utc
from discovery.models.workshop import DiscoverySession

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE = "session_lock"
DEFAULT_LEASE_SECONDS = 120
DEFAULT_TOKEN_TTL_SECONDS = 24 * 3600


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LockGrant:
    """Result of a successful acquire / heartbeat."""
    session_id: int
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    lease_duration_seconds: int
    token: str
    taken_over_from: str | None = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "holder_id": self.holder_id,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "lease_duration_seconds": self.lease_duration_seconds,
            "token": self.token,
            "taken_over_from": self.taken_over_from,
        }


class SessionAccessLock:
    """
    Lease lock service.

    Args:
        secret_key: HMAC key for lock tokens.
        lease_seconds: Lease window; clients must heartbeat more often than this.
        token_ttl_seconds: Lifetime of a lock token (independent of the lease).
        clock: Callable returning an aware UTC ``datetime``; injected by tests.
    """

    def __init__(self, secret_key: str, *, lease_seconds: int = DEFAULT_LEASE_SECONDS,
                 token_ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS, clock=utcnow):
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        self._secret_key = secret_key
        self.lease_seconds = lease_seconds
        self.token_ttl_seconds = token_ttl_seconds
        self._clock = clock

    def _now(self) -> datetime:
        return as_utc(self._clock())

    # ── reads ────────────────────────────────────────────────────────────

    @staticmethod
    def _read(session_id: int) -> SessionLock | None:
        return db.session.execute(
            select(SessionLock)
            .where(SessionLock.session_id == session_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @staticmethod
    def _ensure_session(session_id: int):
        if db.session.get(DiscoverySession, session_id) is None:
            raise NotFoundError(resource="DiscoverySession", resource_id=session_id)

    def status(self, session_id: int) -> dict:
        """Current lease state. An expired record reports ``locked = False``."""
        self._ensure_session(session_id)
        lock = self._read(session_id)
        if lock is None:
            return {
                "session_id": session_id,
                "locked": False,
                "holder_id": None,
                "acquired_at": None,
                "expires_at": None,
                "lease_duration_seconds": self.lease_seconds,
                "remaining_seconds": 0.0,
            }
        return lock.to_dict(self._now())

    # ── acquire ──────────────────────────────────────────────────────────

    def acquire(self, session_id: int, holder_id: str) -> LockGrant:
        """
        Take (or re-take) the lease.

        Succeeds when the session is unclaimed, already held by ``holder_id``,
        or held under a lapsed lease. Never waits.

        Raises:
            LockConflictError: another holder has a valid lease.
            NotFoundError: unknown session.
        """
        if not holder_id:
            raise ValueError("holder_id is required")
        self._ensure_session(session_id)
        now = self._now()
        lock = self._read(session_id)
        previous_holder = None

        if lock is None:
            try:
                db.session.execute(insert(SessionLock).values(
                    session_id=session_id,
                    holder_id=holder_id,
                    acquired_at=now,
                    lease_duration_seconds=self.lease_seconds,
                ))
            except IntegrityError:
                db.session.rollback()
                self._raise_conflict(session_id, holder_id)
        else:
            if lock.holder_id != holder_id and lock.is_valid(now):
                logger.info("Lock conflict: %s blocked by %s", holder_id, lock.holder_id,
                            extra={"session_id": session_id})
                raise LockConflictError(session_id, lock.holder_id, lock.expires_at())

            if lock.holder_id != holder_id:
                previous_holder = lock.holder_id
            result = db.session.execute(
                update(SessionLock)
                .where(
                    SessionLock.session_id == session_id,
                    SessionLock.holder_id == lock.holder_id,
                    SessionLock.acquired_at == lock.acquired_at,
                )
                .values(holder_id=holder_id, acquired_at=now,
                        lease_duration_seconds=self.lease_seconds)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Someone else reclaimed or renewed between our read and write
                db.session.rollback()
                self._raise_conflict(session_id, holder_id)

        write_audit(
            entity_type="session_lock",
            entity_id=session_id,
            action="lock.takeover" if previous_holder else "lock.acquire",
            actor=holder_id,
            session_id=session_id,
            diff={"previous_holder": previous_holder} if previous_holder else None,
        )
        db.session.commit()

        if previous_holder:
            logger.warning("Lease of %s lapsed; taken over by %s", previous_holder, holder_id,
                           extra={"session_id": session_id, "holder_id": holder_id})
        else:
            logger.info("Lock acquired by %s", holder_id,
                        extra={"session_id": session_id, "holder_id": holder_id})
        return self._grant(session_id, holder_id, now, taken_over_from=previous_holder)

    def _raise_conflict(self, session_id: int, holder_id: str):
        winner = self._read(session_id)
        if winner is None:
            # Row vanished again (released mid-race); report the loser's own race
            raise LockConflictError(session_id, holder_id="unknown")
        logger.info("Lock race lost: %s lost to %s", holder_id, winner.holder_id,
                    extra={"session_id": session_id})
        raise LockConflictError(session_id, winner.holder_id, winner.expires_at())

    # ── heartbeat ────────────────────────────────────────────────────────

    def heartbeat(self, session_id: int, holder_id: str) -> LockGrant:
        """
        Renew the lease to now.

        A lease that lapsed but was never reclaimed is renewed as well.

        Raises:
            NotHolderError: no record, or the record belongs to someone else.
        """
        now = self._now()
        result = db.session.execute(
            update(SessionLock)
            .where(SessionLock.session_id == session_id, SessionLock.holder_id == holder_id)
            .values(acquired_at=now, lease_duration_seconds=self.lease_seconds)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            current = self._read(session_id)
            reason = f"lock now held by {current.holder_id!r}" if current else "lock not held"
            raise NotHolderError(session_id, holder_id, reason)
        db.session.commit()
        return self._grant(session_id, holder_id, now)

    # ── release ──────────────────────────────────────────────────────────

    def release(self, session_id: int, holder_id: str) -> bool:
        """Drop the lease if ``holder_id`` holds it. Returns whether a row was removed."""
        result = db.session.execute(
            delete(SessionLock)
            .where(SessionLock.session_id == session_id, SessionLock.holder_id == holder_id)
            .execution_options(synchronize_session=False)
        )
        released = result.rowcount == 1
        if released:
            write_audit(
                entity_type="session_lock",
                entity_id=session_id,
                action="lock.release",
                actor=holder_id,
                session_id=session_id,
            )
            logger.info("Lock released by %s", holder_id,
                        extra={"session_id": session_id, "holder_id": holder_id})
        db.session.commit()
        return released

    # ── tokens ───────────────────────────────────────────────────────────

    def _grant(self, session_id: int, holder_id: str, acquired_at: datetime,
               taken_over_from: str | None = None) -> LockGrant:
        expires_at = acquired_at + timedelta(seconds=self.lease_seconds)
        return LockGrant(
            session_id=session_id,
            holder_id=holder_id,
            acquired_at=acquired_at,
            expires_at=expires_at,
            lease_duration_seconds=self.lease_seconds,
            token=self.issue_token(session_id, holder_id, expires_at),
            taken_over_from=taken_over_from,
        )

    def issue_token(self, session_id: int, holder_id: str, lease_expires_at: datetime) -> str:
        # Token lifetime is wall-clock; only the lease follows the injected clock
        issued = int(time.time())
        payload = {
            "sid": session_id,
            "sub": holder_id,
            "type": TOKEN_TYPE,
            "iat": issued,
            "exp": issued + self.token_ttl_seconds,
            "lease_exp": lease_expires_at.isoformat(),
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    def decode_token(self, token: str) -> dict:
        payload = jwt.decode(token, self._secret_key, algorithms=[ALGORITHM])
        if payload.get("type") != TOKEN_TYPE:
            raise jwt.InvalidTokenError(f"Expected {TOKEN_TYPE} token, got {payload.get('type')}")
        return payload

    def require_holder(self, session_id: int, token: str | None) -> str:
        """
        Check that ``token`` belongs to the current valid lease holder.

        Returns the holder id.

        Raises:
            NotHolderError: missing/invalid token, token for another session,
                lapsed lease, or the lease changed hands.
        """
        if not token:
            raise NotHolderError(session_id, None, "lock token required", token_missing=True)
        try:
            payload = self.decode_token(token)
        except jwt.InvalidTokenError as e:
            raise NotHolderError(session_id, None, f"invalid lock token: {e}") from e

        holder_id = payload.get("sub")
        if payload.get("sid") != session_id:
            raise NotHolderError(session_id, holder_id, "token issued for another session")

        lock = self._read(session_id)
        if lock is None or lock.holder_id != holder_id:
            raise NotHolderError(session_id, holder_id, "lock not held")
        if not lock.is_valid(self._now()):
            raise NotHolderError(session_id, holder_id, "lease expired")
        return holder_id
