"""
Workshop Discovery: Workshop & Session Models

Workshop, DiscoverySession.

A workshop carries the engagement context (mission, module, industry); each
discovery session under it owns one checklist, one evidence ledger, one
findings ledger and at most one access lease.
"""

from datetime import datetime, timezone

from discovery.models import db


__all__ = [
    "Workshop",
    "DiscoverySession",
    "SESSION_STATUSES",
]


SESSION_STATUSES = {"draft", "active", "completed"}


def _utcnow():
    return datetime.now(timezone.utc)


class Workshop(db.Model):
    """Discovery workshop. Groups sessions that share one mission statement."""

    __tablename__ = "workshops"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    mission_statement = db.Column(db.Text, nullable=True)
    industry_context = db.Column(db.Text, nullable=True)
    module = db.Column(
        db.String(10), nullable=True,
        comment="SAP module code: MM, FICO, SD, PP, WM, QM, PM",
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    sessions = db.relationship(
        "DiscoverySession", backref="workshop", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_sessions=False):
        d = {
            "id": self.id,
            "name": self.name,
            "mission_statement": self.mission_statement,
            "industry_context": self.industry_context,
            "module": self.module,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_sessions:
            d["sessions"] = [s.to_dict() for s in self.sessions.order_by(DiscoverySession.id)]
        return d

    def __repr__(self):
        return f"<Workshop {self.id}: {self.name}>"


class DiscoverySession(db.Model):
    """
    One discovery session of a workshop.

    ``checklist_generated`` flips to True the first time a checklist is stored
    for the session; regeneration replaces the items but keeps the flag.
    """

    __tablename__ = "discovery_sessions"
    __table_args__ = (
        db.Index("idx_ds_workshop", "workshop_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workshop_id = db.Column(
        db.Integer, db.ForeignKey("workshops.id", ondelete="CASCADE"),
        nullable=False,
    )
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | active | completed",
    )
    topics = db.Column(db.Text, nullable=True, comment="Key topics the session should cover")
    checklist_generated = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    def context(self) -> dict:
        """Session context handed to the evidence interpreter."""
        ws = self.workshop
        return {
            "session_name": self.name,
            "workshop_name": ws.name if ws else "",
            "mission_statement": (ws.mission_statement if ws else None) or "Not specified",
            "module": (ws.module if ws else None) or "Not specified",
            "industry_context": (ws.industry_context if ws else None) or "Not specified",
            "topics": self.topics or "",
        }

    def to_dict(self):
        return {
            "id": self.id,
            "workshop_id": self.workshop_id,
            "name": self.name,
            "status": self.status,
            "topics": self.topics,
            "checklist_generated": self.checklist_generated,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<DiscoverySession {self.id}: {self.name}>"
