"""
Workshop Discovery
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for checklist, lock and
      reanalysis lifecycle events.
"""

import json
from datetime import UTC, datetime

from discovery.models import db


AUDIT_ENTITY_TYPES = {
    "checklist_item", "session", "finding", "session_lock", "reanalysis_run",
}

AUDIT_ACTIONS = {
    # Checklist item lifecycle
    "checklist.obtain",
    "checklist.reset",
    "checklist.manual_update",
    "checklist.regenerate",
    # Session access lock
    "lock.acquire",
    "lock.takeover",
    "lock.release",
    # Reanalysis
    "reanalysis.run",
    # Findings ledger
    "finding.delete",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action. ``diff_json`` carries the old→new snapshot of the
    fields a transition touched.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_session", "session_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer,
        db.ForeignKey("discovery_sessions.id", ondelete="CASCADE"),
        nullable=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="checklist_item | session | finding | session_lock | reanalysis_run",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(
        db.String(60), nullable=False,
        comment="checklist.obtain | checklist.reset | lock.takeover | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    session_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        session_id=session_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
