"""
Reanalysis Coordinator: re-evaluate the whole checklist against the whole corpus.

Runs only on explicit request. Uses the same validation and apply path as
incremental analysis, with two differences:

    - every item is in scope (missing and obtained)
    - a reset may also be justified by insufficient evidence, not only by an
      explicit contradiction

Every call leaves a ``ReanalysisRun`` row behind, including failed ones.
"""

import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from discovery.ai.interpreter import MODE_REANALYSIS
from discovery.core.exceptions import ValidationError
from discovery.models import db
from discovery.models.audit import write_audit
from discovery.models.checklist import ReanalysisRun
from discovery.services.checklist_state_machine import validate_proposal
from discovery.services.workshop_service import get_session

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVIDENCE_CHARS = 80_000


class ReanalysisCoordinator:

    def __init__(self, state_machine, *, max_evidence_chars: int | None = None):
        self.state_machine = state_machine
        self._max_evidence_chars = max_evidence_chars

    @property
    def max_evidence_chars(self) -> int:
        if self._max_evidence_chars is not None:
            return self._max_evidence_chars
        return current_app.config.get("REANALYSIS_MAX_EVIDENCE_CHARS", DEFAULT_MAX_EVIDENCE_CHARS)

    def reanalyze_all(self, session_id: int, *, requested_by: str) -> ReanalysisRun:
        """
        Full-corpus pass over every checklist item.

        Raises:
            NotFoundError: unknown session.
            ValidationError: no requester, or the session has no checklist.
        """
        if not requested_by:
            raise ValidationError("requested_by is required for a reanalysis")
        sm = self.state_machine
        with sm.session_guard(session_id):
            return self._run(session_id, requested_by)

    def _run(self, session_id: int, requested_by: str) -> ReanalysisRun:
        sm = self.state_machine
        session = get_session(session_id)
        missing, obtained = sm.snapshot(session_id)
        if not missing and not obtained:
            raise ValidationError("Session has no checklist items to reanalyze")

        corpus = sm.evidence.corpus(session_id, self.max_evidence_chars)
        run = ReanalysisRun(
            session_id=session_id,
            requested_by=requested_by,
            evidence_records=corpus.record_count,
            evidence_chars=len(corpus.text),
            truncated=corpus.truncated,
            truncated_chars=corpus.truncated_chars,
        )

        snapshot = {i.id: i.status for i in missing + obtained}
        proposal, error = sm.propose(
            session=session, missing=missing, obtained=obtained,
            evidence_text=corpus.text or "(No evidence recorded yet)",
            mode=MODE_REANALYSIS,
        )

        if error is not None:
            run.status = "failed"
            run.error_message = error[:2000]
            run.obtained_total = len(obtained)
            run.missing_total = len(missing)
            db.session.add(run)
            db.session.commit()
            logger.warning("Reanalysis failed: %s", error, extra={"session_id": session_id})
            return run

        batch = validate_proposal(proposal, snapshot, mode=MODE_REANALYSIS)
        for d in batch.dropped:
            logger.info("Dropped reanalysis %s proposal for item %s: %s", d.action, d.item_id, d.reason,
                        extra={"session_id": session_id})

        try:
            applied = sm.apply_transitions(
                session_id, batch, source="reanalysis", evidence_id=None,
                finding_origin="reanalysis", actor=requested_by,
            )
            stats = sm.store.stats(session_id)
            run.status = "completed"
            run.items_obtained = len(applied.obtained)
            run.items_reset = len(applied.reset)
            run.findings_recorded = applied.findings_recorded
            run.dropped_proposals = len(batch.dropped) + len(applied.lost_races)
            run.obtained_total = stats["obtained"]
            run.missing_total = stats["missing"]
            db.session.add(run)
            db.session.flush()

            write_audit(
                entity_type="reanalysis_run", entity_id=run.id,
                action="reanalysis.run", actor=requested_by, session_id=session_id,
                diff={
                    "items_obtained": run.items_obtained,
                    "items_reset": run.items_reset,
                    "findings_recorded": run.findings_recorded,
                    "truncated": run.truncated,
                },
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Reanalysis apply failed; batch rolled back", extra={"session_id": session_id})
            raise

        logger.info(
            "Reanalysis completed: +%d obtained, %d reset, %d findings, %d dropped",
            run.items_obtained, run.items_reset, run.findings_recorded, run.dropped_proposals,
            extra={"session_id": session_id},
        )
        return run

    @staticmethod
    def list_runs(session_id: int) -> list[ReanalysisRun]:
        get_session(session_id)
        return (
            ReanalysisRun.query
            .filter_by(session_id=session_id)
            .order_by(ReanalysisRun.created_at.desc(), ReanalysisRun.id.desc())
            .all()
        )
