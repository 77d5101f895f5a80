"""
Checklist State Machine: turns interpreter proposals into checklist transitions.

Transitions:
    missing  → obtained   evidence provides a specific, concrete value
    obtained → missing    later evidence explicitly contradicts the value
                          (reanalysis may also reset for insufficient evidence)

There is no terminal state and no transition is ever inferred from silence.

Three steps, kept apart:
    propose   - the injected EvidenceInterpreter (pure, never writes)
    validate  - ``validate_proposal``: pure function of a proposal and a
                snapshot of item states; invalid entries are dropped with a reason
    apply     - ``apply_transitions``: per-item conditional writes, audit rows and
                findings in ONE transaction (all-or-nothing)

Evidence is committed to the ledger before the interpreter runs, so it survives
interpreter failure and is picked up by the next reanalysis.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from discovery.ai.interpreter import (
    MODE_INCREMENTAL,
    MODE_REANALYSIS,
    RESET_CONTRADICTION,
    RESET_KINDS,
    InterpreterProposal,
    ObtainProposal,
    ResetProposal,
)
from discovery.core.exceptions import InterpreterError, InvalidTransitionTarget, ValidationError
from discovery.models import db
from discovery.models.audit import write_audit
from discovery.models.checklist import CONFIDENCE_LEVELS, ChecklistItem, EvidenceRecord, content_hash
from discovery.services.checklist_store import ChecklistStore
from discovery.services.evidence_ledger import EvidenceLedger
from discovery.services.findings_ledger import FindingsLedger
from discovery.services.workshop_service import get_session

logger = logging.getLogger(__name__)

# Reset kinds accepted per analysis mode
ALLOWED_RESET_KINDS = {
    MODE_INCREMENTAL: {RESET_CONTRADICTION},
    MODE_REANALYSIS: RESET_KINDS,
}


# ── Results ──────────────────────────────────────────────────────────────────

@dataclass
class DroppedProposal:
    """A proposal entry that failed validation."""
    action: str
    item_id: int | None
    reason: str

    def to_dict(self) -> dict:
        return {"action": self.action, "item_id": self.item_id, "reason": self.reason}


@dataclass
class ValidatedBatch:
    to_obtain: list[ObtainProposal] = field(default_factory=list)
    to_reset: list[ResetProposal] = field(default_factory=list)
    findings: list = field(default_factory=list)
    dropped: list[DroppedProposal] = field(default_factory=list)


@dataclass
class AppliedTransitions:
    obtained: list[dict] = field(default_factory=list)
    reset: list[dict] = field(default_factory=list)
    findings_recorded: int = 0
    lost_races: list[DroppedProposal] = field(default_factory=list)


@dataclass
class AnalysisOutcome:
    """Result of one ``analyze_incremental`` call."""
    session_id: int
    evidence: EvidenceRecord | None
    replayed: bool = False
    obtained: list[dict] = field(default_factory=list)
    reset: list[dict] = field(default_factory=list)
    remaining_missing: list[dict] = field(default_factory=list)
    findings_recorded: int = 0
    dropped: list[DroppedProposal] = field(default_factory=list)
    interpreter_failed: bool = False
    interpreter_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "evidence": self.evidence.to_dict(include_text=False) if self.evidence else None,
            "replayed": self.replayed,
            "obtained": self.obtained,
            "reset": self.reset,
            "remaining_missing": self.remaining_missing,
            "findings_recorded": self.findings_recorded,
            "dropped": [d.to_dict() for d in self.dropped],
            "interpreter_failed": self.interpreter_failed,
            "interpreter_error": self.interpreter_error,
        }


# ── Validation (pure) ────────────────────────────────────────────────────────

def _check_obtain(entry: ObtainProposal, snapshot: dict[int, str], seen: set):
    if entry.item_id is None or entry.item_id not in snapshot:
        raise InvalidTransitionTarget(entry.item_id, "obtain", "item does not belong to this session")
    if entry.item_id in seen:
        raise InvalidTransitionTarget(entry.item_id, "obtain", "duplicate target in batch")
    if snapshot[entry.item_id] != "missing":
        raise InvalidTransitionTarget(entry.item_id, "obtain", "item is not missing")
    if not (entry.obtained_text or "").strip():
        raise InvalidTransitionTarget(entry.item_id, "obtain", "no concrete value provided")
    if entry.confidence not in CONFIDENCE_LEVELS:
        raise InvalidTransitionTarget(entry.item_id, "obtain", f"unknown confidence {entry.confidence!r}")


def _check_reset(entry: ResetProposal, snapshot: dict[int, str], seen: set, mode: str):
    if entry.item_id is None or entry.item_id not in snapshot:
        raise InvalidTransitionTarget(entry.item_id, "reset", "item does not belong to this session")
    if entry.item_id in seen:
        raise InvalidTransitionTarget(entry.item_id, "reset", "duplicate target in batch")
    if snapshot[entry.item_id] != "obtained":
        raise InvalidTransitionTarget(entry.item_id, "reset", "item is not obtained")
    if entry.kind not in ALLOWED_RESET_KINDS[mode]:
        raise InvalidTransitionTarget(entry.item_id, "reset", f"reset kind {entry.kind!r} not allowed in {mode}")
    if not (entry.reason or "").strip():
        raise InvalidTransitionTarget(entry.item_id, "reset", "no reason given")


def validate_proposal(proposal: InterpreterProposal, snapshot: dict[int, str],
                      *, mode: str = MODE_INCREMENTAL) -> ValidatedBatch:
    """
    Validate a proposal against ``{item_id: status}`` captured before the
    interpreter ran.

    Resets are checked before obtains and against the same snapshot, so one
    batch can never reset and re-obtain the same item.
    """
    batch = ValidatedBatch(findings=list(proposal.findings))
    seen: set = set()

    for entry in proposal.to_reset:
        try:
            _check_reset(entry, snapshot, seen, mode)
        except InvalidTransitionTarget as e:
            batch.dropped.append(DroppedProposal("reset", e.item_id, e.reason))
            continue
        seen.add(entry.item_id)
        batch.to_reset.append(entry)

    for entry in proposal.to_obtain:
        try:
            _check_obtain(entry, snapshot, seen)
        except InvalidTransitionTarget as e:
            batch.dropped.append(DroppedProposal("obtain", e.item_id, e.reason))
            continue
        seen.add(entry.item_id)
        batch.to_obtain.append(entry)

    return batch


def _item_brief(item: ChecklistItem) -> dict:
    return {
        "id": item.id,
        "item_number": item.item_number,
        "text": item.text,
        "category": item.category,
        "importance": item.importance,
        "obtained_text": item.obtained_text,
    }


# ── State machine ────────────────────────────────────────────────────────────

class ChecklistStateMachine:
    """
    Incremental evidence analysis for a session.

    Calls for the same session are serialized within the process so evidence
    chunks are analyzed in submission order.
    """

    def __init__(self, interpreter, *, store: ChecklistStore | None = None,
                 evidence: EvidenceLedger | None = None, findings: FindingsLedger | None = None):
        self.interpreter = interpreter
        self.store = store or ChecklistStore()
        self.evidence = evidence or EvidenceLedger()
        self.findings = findings or FindingsLedger()
        # session_id -> [lock, number of callers holding or waiting on it]
        self._locks: dict[int, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def session_guard(self, session_id: int):
        """Serialize work on one session; the entry is dropped once nobody uses it."""
        with self._locks_guard:
            entry = self._locks.setdefault(session_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[session_id]

    # ── snapshot / propose ───────────────────────────────────────────────

    def snapshot(self, session_id: int) -> tuple[list[ChecklistItem], list[ChecklistItem]]:
        items = self.store.list_items(session_id)
        missing = [i for i in items if i.status == "missing"]
        obtained = [i for i in items if i.status == "obtained"]
        return missing, obtained

    def propose(self, *, session, missing, obtained, evidence_text, prior_evidence="",
                mode=MODE_INCREMENTAL, evidence_source=None) -> tuple[InterpreterProposal, str | None]:
        """Run the interpreter. Failures become an empty proposal plus the error text."""
        context = session.context()
        context["session_id"] = session.id
        if evidence_source:
            context["evidence_source"] = evidence_source
        try:
            proposal = self.interpreter.propose(
                outstanding_items=[_item_brief(i) for i in missing],
                obtained_items=[_item_brief(i) for i in obtained],
                evidence_text=evidence_text,
                prior_evidence=prior_evidence,
                session_context=context,
                mode=mode,
            )
        except InterpreterError as e:
            logger.warning("Interpreter failed (%s): %s", mode, e, extra={"session_id": session.id})
            return InterpreterProposal(), str(e)
        except Exception as e:
            # Any interpreter implementation may time out or break; that is zero transitions
            logger.exception("Interpreter raised unexpectedly (%s)", mode, extra={"session_id": session.id})
            return InterpreterProposal(), f"{type(e).__name__}: {e}"
        if not isinstance(proposal, InterpreterProposal):
            logger.warning("Interpreter returned %s instead of a proposal (%s)",
                           type(proposal).__name__, mode, extra={"session_id": session.id})
            return InterpreterProposal(), f"Interpreter returned {type(proposal).__name__}"
        return proposal, None

    # ── apply ────────────────────────────────────────────────────────────

    def apply_transitions(self, session_id: int, batch: ValidatedBatch, *, source: str,
                          evidence_id: int | None = None, finding_origin: str = "incremental",
                          actor: str = "system") -> AppliedTransitions:
        """
        Stage a validated batch in the current transaction (caller commits).

        Each write is conditional on the prior state; a write that matches no
        row lost a race and is reported, not applied.
        """
        applied = AppliedTransitions()
        now = datetime.now(timezone.utc)

        for entry in batch.to_reset:
            if not self.store.mark_missing(session_id, entry.item_id, reason=entry.reason, at=now):
                applied.lost_races.append(DroppedProposal("reset", entry.item_id, "item changed concurrently"))
                continue
            write_audit(
                entity_type="checklist_item", entity_id=entry.item_id,
                action="checklist.reset", actor=actor, session_id=session_id,
                diff={"status": ["obtained", "missing"], "reason": entry.reason,
                      "kind": entry.kind, "quote": entry.quote, "evidence_id": evidence_id},
            )
            applied.reset.append(entry.to_dict())

        for entry in batch.to_obtain:
            if not self.store.mark_obtained(session_id, entry.item_id, obtained_text=entry.obtained_text,
                                            confidence=entry.confidence, source=source, at=now):
                applied.lost_races.append(DroppedProposal("obtain", entry.item_id, "item changed concurrently"))
                continue
            write_audit(
                entity_type="checklist_item", entity_id=entry.item_id,
                action="checklist.obtain", actor=actor, session_id=session_id,
                diff={"status": ["missing", "obtained"], "obtained_text": entry.obtained_text,
                      "confidence": entry.confidence, "source": source, "evidence_id": evidence_id},
            )
            applied.obtained.append(entry.to_dict())

        if batch.findings:
            rows = self.findings.append(session_id, batch.findings,
                                        evidence_id=evidence_id, origin=finding_origin)
            applied.findings_recorded = len(rows)

        return applied

    # ── incremental analysis ─────────────────────────────────────────────

    def analyze_incremental(self, session_id: int, evidence_text: str, *, source: str = "audio",
                            label: str | None = None, actor: str = "system") -> AnalysisOutcome:
        """
        Record one evidence chunk and apply what the interpreter finds in it.

        Raises:
            NotFoundError: unknown session.
            ValidationError: empty evidence, unknown source, or no checklist yet.
        """
        with self.session_guard(session_id):
            return self._analyze_incremental(session_id, evidence_text, source=source,
                                             label=label, actor=actor)

    def _analyze_incremental(self, session_id, evidence_text, *, source, label, actor):
        session = get_session(session_id)
        missing, obtained = self.snapshot(session_id)
        if not missing and not obtained:
            raise ValidationError("Session has no checklist; generate one before submitting evidence")

        # Only a resubmission of the latest chunk is a replay; older text restated
        # after newer evidence is new evidence and gets its own sequence index
        record = self.evidence.latest(session_id)
        replayed = record is not None and record.content_hash == content_hash(evidence_text or "")
        if replayed:
            logger.info("Evidence replay of chunk %d", record.sequence_index,
                        extra={"session_id": session_id, "evidence_id": record.id})
        else:
            record = self.evidence.append(session_id, evidence_text, source=source, label=label)

        snapshot = {i.id: i.status for i in missing + obtained}
        proposal, error = self.propose(
            session=session, missing=missing, obtained=obtained,
            evidence_text=record.raw_text,
            prior_evidence=self.evidence.prior_text(session_id, record.sequence_index),
            mode=MODE_INCREMENTAL,
            evidence_source=record.source,
        )
        batch = validate_proposal(proposal, snapshot, mode=MODE_INCREMENTAL)
        for d in batch.dropped:
            logger.info("Dropped %s proposal for item %s: %s", d.action, d.item_id, d.reason,
                        extra={"session_id": session_id})

        if replayed and self.findings.count_for_evidence(record.id):
            batch.findings = []

        try:
            applied = self.apply_transitions(
                session_id, batch, source=record.source, evidence_id=record.id,
                finding_origin="incremental", actor=actor,
            )
            self.evidence.mark_processed(record)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Applying transitions failed; batch rolled back",
                             extra={"session_id": session_id})
            raise

        remaining = self.store.list_items(session_id, status="missing")
        return AnalysisOutcome(
            session_id=session_id,
            evidence=record,
            replayed=replayed,
            obtained=applied.obtained,
            reset=applied.reset,
            remaining_missing=[_item_brief(i) for i in remaining],
            findings_recorded=applied.findings_recorded,
            dropped=batch.dropped + applied.lost_races,
            interpreter_failed=error is not None,
            interpreter_error=error,
        )

    # ── manual override ──────────────────────────────────────────────────

    def manual_update(self, session_id: int, item_id: int, *, status: str,
                      obtained_text: str | None = None, confidence: str | None = None,
                      actor: str = "system") -> ChecklistItem:
        """
        Operator override of one item.

        Obtaining requires a value and records ``obtained_source = manual``;
        setting ``missing`` clears the obtained fields. Setting the current
        status again replaces the recorded value.

        Raises:
            NotFoundError: unknown item.
            ValidationError: bad status, missing text or unknown confidence.
        """
        get_session(session_id)
        item = self.store.get_item(session_id, item_id)

        if status not in ("missing", "obtained"):
            raise ValidationError(f"Unknown status {status!r}", details={"allowed": ["missing", "obtained"]})
        confidence = (confidence or "high").lower()
        if status == "obtained":
            if not (obtained_text or "").strip():
                raise ValidationError("obtained_text is required to mark an item obtained")
            if confidence not in CONFIDENCE_LEVELS:
                raise ValidationError(f"Unknown confidence {confidence!r}",
                                      details={"allowed": sorted(CONFIDENCE_LEVELS)})

        before = {"status": item.status, "obtained_text": item.obtained_text}
        with self.session_guard(session_id):
            if status == "obtained":
                if item.status == "obtained":
                    self.store.mark_missing(session_id, item_id)
                changed = self.store.mark_obtained(session_id, item_id, obtained_text=obtained_text,
                                                   confidence=confidence, source="manual")
            else:
                changed = self.store.mark_missing(session_id, item_id, reason="Manually reset by operator")

            if changed:
                write_audit(
                    entity_type="checklist_item", entity_id=item_id,
                    action="checklist.manual_update", actor=actor, session_id=session_id,
                    diff={"before": before, "after": {"status": status, "obtained_text": obtained_text}},
                )
            db.session.commit()

        return self.store.get_item(session_id, item_id)
