"""
Evidence Ledger: ordered, append-only evidence chunks per session.

``sequence_index`` is MAX+1 per session, guarded by the
(session_id, sequence_index) unique constraint; a collision with a concurrent
writer is retried with the next index.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from discovery.core.exceptions import ValidationError
from discovery.models import db
from discovery.models.checklist import EVIDENCE_SOURCES, EvidenceRecord, content_hash

logger = logging.getLogger(__name__)

_APPEND_ATTEMPTS = 5


@dataclass
class EvidenceCorpus:
    """Concatenated evidence handed to a reanalysis pass."""
    text: str
    truncated: bool
    truncated_chars: int
    record_count: int

    def to_dict(self) -> dict:
        return {
            "chars": len(self.text),
            "truncated": self.truncated,
            "truncated_chars": self.truncated_chars,
            "record_count": self.record_count,
        }


def _chunk_header(record: EvidenceRecord) -> str:
    header = f"[Chunk {record.sequence_index}]"
    if record.label:
        header += f" {record.label}"
    return header


def _chunk_block(record: EvidenceRecord) -> str:
    return f"{_chunk_header(record)}\n{record.raw_text}"


class EvidenceLedger:
    """Append-only evidence storage."""

    def append(self, session_id: int, raw_text: str, *, source: str = "audio",
               label: str | None = None, commit: bool = True) -> EvidenceRecord:
        """
        Append one chunk and return the stored record.

        Raises:
            ValidationError: empty text or unknown source.
        """
        if not raw_text or not raw_text.strip():
            raise ValidationError("Evidence text is required")
        if source not in EVIDENCE_SOURCES:
            raise ValidationError(
                f"Unknown evidence source {source!r}",
                details={"allowed": sorted(EVIDENCE_SOURCES)},
            )

        digest = content_hash(raw_text)
        for attempt in range(1, _APPEND_ATTEMPTS + 1):
            next_index = (db.session.execute(
                select(func.max(EvidenceRecord.sequence_index))
                .where(EvidenceRecord.session_id == session_id)
            ).scalar() or 0) + 1
            record = EvidenceRecord(
                session_id=session_id,
                sequence_index=next_index,
                source=source,
                label=label,
                raw_text=raw_text,
                content_hash=digest,
            )
            db.session.add(record)
            try:
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                logger.info("Evidence sequence %d taken, retrying (%d/%d)",
                            next_index, attempt, _APPEND_ATTEMPTS,
                            extra={"session_id": session_id})
                continue
            if commit:
                db.session.commit()
            return record

        raise RuntimeError(f"Could not allocate an evidence sequence index for session {session_id}")

    def latest(self, session_id: int) -> EvidenceRecord | None:
        """Most recently appended chunk of the session."""
        return db.session.execute(
            select(EvidenceRecord)
            .where(EvidenceRecord.session_id == session_id)
            .order_by(EvidenceRecord.sequence_index.desc())
            .limit(1)
        ).scalar_one_or_none()

    def list(self, session_id: int) -> list[EvidenceRecord]:
        return list(db.session.execute(
            select(EvidenceRecord)
            .where(EvidenceRecord.session_id == session_id)
            .order_by(EvidenceRecord.sequence_index)
        ).scalars())

    def prior_text(self, session_id: int, before_sequence: int) -> str:
        """Evidence recorded before ``before_sequence``; context only, never re-analyzed."""
        records = db.session.execute(
            select(EvidenceRecord)
            .where(
                EvidenceRecord.session_id == session_id,
                EvidenceRecord.sequence_index < before_sequence,
            )
            .order_by(EvidenceRecord.sequence_index)
        ).scalars()
        return "\n\n".join(_chunk_block(r) for r in records)

    def corpus(self, session_id: int, max_chars: int) -> EvidenceCorpus:
        """
        Full evidence in ledger order with ``[Chunk n]`` headers.

        When the text exceeds ``max_chars`` the OLDEST content is trimmed so the
        most recent evidence (which may carry corrections) always survives.
        Whole chunks are dropped first; the oldest chunk still kept loses the
        start of its text but keeps its header.
        """
        records = self.list(session_id)
        text = "\n\n".join(_chunk_block(r) for r in records)
        if max_chars is None or len(text) <= max_chars:
            return EvidenceCorpus(text=text, truncated=False, truncated_chars=0,
                                  record_count=len(records))

        kept: list[str] = []
        used = 0
        for record in reversed(records):
            sep = 2 if kept else 0
            block = _chunk_block(record)
            if used + sep + len(block) <= max_chars:
                kept.append(block)
                used += sep + len(block)
                continue
            header = _chunk_header(record) + "\n"
            room = max_chars - used - sep - len(header)
            if room > 0:
                kept.append(header + record.raw_text[-room:])
            elif not kept:
                # Not even the header fits; keep the newest text only
                kept.append(record.raw_text[-max_chars:])
            break

        bounded = "\n\n".join(reversed(kept))
        trimmed = len(text) - len(bounded)
        logger.warning("Evidence corpus trimmed by %d chars (limit %d)", trimmed, max_chars,
                       extra={"session_id": session_id})
        return EvidenceCorpus(text=bounded, truncated=True, truncated_chars=trimmed,
                              record_count=len(records))

    @staticmethod
    def mark_processed(record: EvidenceRecord):
        # The only write an evidence record ever receives after creation
        if record.processed_at is None:
            record.processed_at = datetime.now(timezone.utc)
