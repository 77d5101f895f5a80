"""
Workshop Discovery: Checklist Domain Models

ChecklistItem, EvidenceRecord, Finding, ReanalysisRun.

Item state lives in exactly two statuses (missing / obtained). The obtained
columns are all-or-nothing with ``status = 'obtained'``; a table CHECK keeps the
database honest even if a writer bypasses the services.
"""

import hashlib
from datetime import datetime, timezone

from sqlalchemy.orm import validates

from discovery.models import db


__all__ = [
    "ChecklistItem",
    "EvidenceRecord",
    "Finding",
    "ReanalysisRun",
    "ITEM_STATUSES",
    "IMPORTANCE_LEVELS",
    "CONFIDENCE_LEVELS",
    "OBTAINED_SOURCES",
    "EVIDENCE_SOURCES",
    "RISK_LEVELS",
    "FINDING_ORIGINS",
]


ITEM_STATUSES = {"missing", "obtained"}
IMPORTANCE_LEVELS = {"critical", "important", "nice-to-have"}
CONFIDENCE_LEVELS = {"high", "medium", "low"}
EVIDENCE_SOURCES = {"audio", "document", "manual"}
OBTAINED_SOURCES = EVIDENCE_SOURCES | {"reanalysis"}
RISK_LEVELS = {"high", "medium", "low"}
FINDING_ORIGINS = {"incremental", "reanalysis"}


def _utcnow():
    return datetime.now(timezone.utc)


def content_hash(text: str) -> str:
    """sha256 of the evidence text, used to recognise replayed chunks."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


# ═════════════════════════════════════════════════════════════════════════════
# 1. ChecklistItem: one discovery requirement of a session
# ═════════════════════════════════════════════════════════════════════════════

class ChecklistItem(db.Model):
    """
    A single discrete fact the session aims to collect.

    item_number is assigned at (re)generation and never changes afterwards.
    """

    __tablename__ = "checklist_items"
    __table_args__ = (
        db.UniqueConstraint("session_id", "item_number", name="uq_ci_session_number"),
        db.Index("idx_ci_session_status", "session_id", "status"),
        db.CheckConstraint(
            "(status = 'obtained' AND obtained_text IS NOT NULL AND confidence IS NOT NULL"
            " AND obtained_source IS NOT NULL AND obtained_at IS NOT NULL)"
            " OR (status = 'missing' AND obtained_text IS NULL AND confidence IS NULL"
            " AND obtained_source IS NULL AND obtained_at IS NULL)",
            name="ck_ci_obtained_fields",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey("discovery_sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    item_number = db.Column(db.Integer, nullable=False)
    text = db.Column(db.Text, nullable=False)
    importance = db.Column(
        db.String(20), nullable=False, default="important",
        comment="critical | important | nice-to-have",
    )
    category = db.Column(db.String(100), nullable=False, default="General")
    suggested_question = db.Column(db.Text, nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default="missing",
        comment="missing | obtained",
    )
    obtained_text = db.Column(db.Text, nullable=True)
    confidence = db.Column(db.String(10), nullable=True, comment="high | medium | low")
    obtained_source = db.Column(
        db.String(20), nullable=True,
        comment="audio | document | manual | reanalysis",
    )
    obtained_at = db.Column(db.DateTime(timezone=True), nullable=True)

    last_reset_reason = db.Column(db.Text, nullable=True)
    last_reset_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @validates("item_number")
    def _freeze_item_number(self, key, value):
        if self.item_number is not None and value != self.item_number:
            raise ValueError("item_number is immutable once assigned")
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "session_id": self.session_id,
            "item_number": self.item_number,
            "text": self.text,
            "importance": self.importance,
            "category": self.category,
            "suggested_question": self.suggested_question,
            "status": self.status,
            "obtained_text": self.obtained_text,
            "confidence": self.confidence,
            "obtained_source": self.obtained_source,
            "obtained_at": self.obtained_at.isoformat() if self.obtained_at else None,
            "last_reset_reason": self.last_reset_reason,
            "last_reset_at": self.last_reset_at.isoformat() if self.last_reset_at else None,
        }

    def __repr__(self):
        return f"<ChecklistItem {self.session_id}#{self.item_number} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. EvidenceRecord: append-only evidence ledger
# ═════════════════════════════════════════════════════════════════════════════

class EvidenceRecord(db.Model):
    """
    One chunk of evidence: a transcribed recording segment or extracted document.

    Immutable once created; only ``processed_at`` is stamped after the chunk's
    incremental analysis has run.
    """

    __tablename__ = "evidence_records"
    __table_args__ = (
        db.UniqueConstraint("session_id", "sequence_index", name="uq_er_session_seq"),
        db.Index("idx_er_session_hash", "session_id", "content_hash"),
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey("discovery_sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    sequence_index = db.Column(db.Integer, nullable=False)
    source = db.Column(db.String(20), nullable=False, default="audio",
                       comment="audio | document | manual")
    label = db.Column(db.String(255), nullable=True, comment="e.g. original document name")
    raw_text = db.Column(db.Text, nullable=False)
    content_hash = db.Column(db.String(64), nullable=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self, include_text=True):
        d = {
            "id": self.id,
            "session_id": self.session_id,
            "sequence_index": self.sequence_index,
            "source": self.source,
            "label": self.label,
            "chars": len(self.raw_text or ""),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_text:
            d["raw_text"] = self.raw_text
        return d

    def __repr__(self):
        return f"<EvidenceRecord {self.session_id}#{self.sequence_index}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. Finding: out-of-checklist information
# ═════════════════════════════════════════════════════════════════════════════

class Finding(db.Model):
    """Information relevant to the engagement but outside the fixed checklist. Append-only."""

    __tablename__ = "findings"
    __table_args__ = (
        db.Index("idx_fd_session_risk", "session_id", "risk_level"),
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey("discovery_sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    evidence_id = db.Column(
        db.Integer, db.ForeignKey("evidence_records.id", ondelete="SET NULL"),
        nullable=True,
    )
    origin = db.Column(db.String(20), nullable=False, default="incremental",
                       comment="incremental | reanalysis")
    topic = db.Column(db.String(300), nullable=False)
    finding_type = db.Column(db.String(40), nullable=False, default="general")
    risk_level = db.Column(db.String(10), nullable=False, default="medium")
    details = db.Column(db.Text, nullable=True)
    analysis = db.Column(db.Text, nullable=True)
    recommendation = db.Column(db.Text, nullable=True)
    best_practice = db.Column(db.Text, nullable=True)
    source_quote = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    evidence = db.relationship("EvidenceRecord", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "session_id": self.session_id,
            "evidence_id": self.evidence_id,
            "evidence_sequence_index": self.evidence.sequence_index if self.evidence else None,
            "origin": self.origin,
            "topic": self.topic,
            "finding_type": self.finding_type,
            "risk_level": self.risk_level,
            "details": self.details,
            "analysis": self.analysis,
            "recommendation": self.recommendation,
            "best_practice": self.best_practice,
            "source_quote": self.source_quote,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Finding {self.id}: {self.topic[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. ReanalysisRun: audit summary of one full-corpus pass
# ═════════════════════════════════════════════════════════════════════════════

class ReanalysisRun(db.Model):
    """Persisted outcome of ``ReanalysisCoordinator.reanalyze_all``."""

    __tablename__ = "reanalysis_runs"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey("discovery_sessions.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    requested_by = db.Column(db.String(150), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="completed",
                       comment="completed | failed")
    items_obtained = db.Column(db.Integer, nullable=False, default=0)
    items_reset = db.Column(db.Integer, nullable=False, default=0)
    findings_recorded = db.Column(db.Integer, nullable=False, default=0)
    dropped_proposals = db.Column(db.Integer, nullable=False, default=0)
    obtained_total = db.Column(db.Integer, nullable=False, default=0)
    missing_total = db.Column(db.Integer, nullable=False, default=0)
    evidence_records = db.Column(db.Integer, nullable=False, default=0)
    evidence_chars = db.Column(db.Integer, nullable=False, default=0)
    truncated = db.Column(db.Boolean, nullable=False, default=False)
    truncated_chars = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "session_id": self.session_id,
            "requested_by": self.requested_by,
            "status": self.status,
            "items_obtained": self.items_obtained,
            "items_reset": self.items_reset,
            "findings_recorded": self.findings_recorded,
            "dropped_proposals": self.dropped_proposals,
            "obtained_total": self.obtained_total,
            "missing_total": self.missing_total,
            "evidence_records": self.evidence_records,
            "evidence_chars": self.evidence_chars,
            "truncated": self.truncated,
            "truncated_chars": self.truncated_chars,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
