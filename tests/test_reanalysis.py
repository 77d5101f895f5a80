"""
Reanalysis coordinator tests: full-corpus passes over every checklist item.
"""

import pytest

from discovery.ai.interpreter import (
    MODE_REANALYSIS,
    RESET_INSUFFICIENT_EVIDENCE,
    FindingProposal,
    InterpreterProposal,
    LLMEvidenceInterpreter,
    ObtainProposal,
    ResetProposal,
)
from discovery.core.exceptions import InterpreterUnavailableError, NotFoundError, ValidationError
from discovery.models.audit import AuditLog
from discovery.models.checklist import Finding, ReanalysisRun
from discovery.services.checklist_state_machine import ChecklistStateMachine
from discovery.services.reanalysis import ReanalysisCoordinator


class CannedGateway:
    def __init__(self, content):
        self.content = content

    def chat(self, messages, model=None, **kwargs):
        return {"content": self.content}


@pytest.fixture()
def obtained_setup(make_session, items_by_number, services, interpreter):
    """Session with item 1 obtained from an early chunk and item 2 still missing."""
    sess = make_session()
    items = items_by_number(sess.id)
    interpreter.push(InterpreterProposal(to_obtain=[
        ObtainProposal(items[1].id, "Yes, we have warehouses", "low"),
    ]))
    services.state_machine.analyze_incremental(sess.id, "Yes, we have warehouses.")
    services.state_machine.analyze_incremental(sess.id, "Payment terms are Net 30 for retailers.")
    return sess.id, items[1], items[2]


class TestReanalyzeAll:

    def test_interpreter_sees_full_corpus_and_all_items(self, obtained_setup, services, interpreter):
        sid, item1, item2 = obtained_setup
        services.reanalysis.reanalyze_all(sid, requested_by="alice")

        call = interpreter.calls[-1]
        assert call["mode"] == MODE_REANALYSIS
        assert [i["id"] for i in call["outstanding_items"]] == [item2.id]
        assert [i["id"] for i in call["obtained_items"]] == [item1.id]
        assert "[Chunk 1]" in call["evidence_text"]
        assert "Net 30" in call["evidence_text"]
        assert call["evidence_text"].index("[Chunk 1]") < call["evidence_text"].index("[Chunk 2]")

    def test_insufficient_evidence_reset_and_obtain(self, obtained_setup, services, interpreter,
                                                    items_by_number):
        sid, item1, item2 = obtained_setup
        interpreter.push(InterpreterProposal(
            to_obtain=[ObtainProposal(item2.id, "Net 30 for retailers", "high")],
            to_reset=[ResetProposal(item1.id, "Only an acknowledgment, no count or locations",
                                    kind=RESET_INSUFFICIENT_EVIDENCE)],
            findings=[FindingProposal(topic="Retailer credit risk", risk_level="medium")],
        ))

        run = services.reanalysis.reanalyze_all(sid, requested_by="alice")

        assert run.status == "completed"
        assert (run.items_obtained, run.items_reset, run.findings_recorded) == (1, 1, 1)
        assert (run.obtained_total, run.missing_total) == (1, 1)
        assert run.evidence_records == 2
        assert run.truncated is False

        items = items_by_number(sid)
        assert items[1].status == "missing"
        assert items[2].status == "obtained"
        assert items[2].obtained_source == "reanalysis"

        finding = Finding.query.filter_by(session_id=sid).one()
        assert finding.origin == "reanalysis"
        assert finding.evidence_id is None
        assert AuditLog.query.filter_by(action="reanalysis.run").one().actor == "alice"

    def test_findings_are_not_deduplicated(self, obtained_setup, services, interpreter):
        sid, _, _ = obtained_setup
        same = InterpreterProposal(findings=[FindingProposal(topic="Manual stock counts")])
        interpreter.push(same, same)
        services.reanalysis.reanalyze_all(sid, requested_by="alice")
        services.reanalysis.reanalyze_all(sid, requested_by="alice")
        assert Finding.query.filter_by(session_id=sid, topic="Manual stock counts").count() == 2

    def test_invalid_entries_counted_as_dropped(self, obtained_setup, services, interpreter):
        sid, item1, _ = obtained_setup
        interpreter.push(InterpreterProposal(to_obtain=[ObtainProposal(item1.id, "again", "high")]))
        run = services.reanalysis.reanalyze_all(sid, requested_by="alice")
        assert run.dropped_proposals == 1
        assert run.items_obtained == 0

    def test_interpreter_failure_persists_failed_run(self, obtained_setup, services, interpreter,
                                                     items_by_number):
        sid, _, _ = obtained_setup
        interpreter.push(InterpreterUnavailableError("timeout"))

        run = services.reanalysis.reanalyze_all(sid, requested_by="alice")

        assert run.status == "failed"
        assert run.error_message == "timeout"
        assert items_by_number(sid)[1].status == "obtained"
        assert ReanalysisRun.query.filter_by(session_id=sid).count() == 1

    def test_unexpected_interpreter_error_persists_failed_run(self, obtained_setup, services, interpreter,
                                                             items_by_number):
        sid, _, _ = obtained_setup
        interpreter.push(TimeoutError("interpreter timed out"))

        run = services.reanalysis.reanalyze_all(sid, requested_by="alice")

        assert run.status == "failed"
        assert run.error_message == "TimeoutError: interpreter timed out"
        assert items_by_number(sid)[1].status == "obtained"
        assert ReanalysisRun.query.filter_by(session_id=sid, status="failed").count() == 1

    def test_non_list_model_payload_persists_failed_run(self, obtained_setup, services):
        sid, _, _ = obtained_setup
        llm = LLMEvidenceInterpreter(CannedGateway('{"stray_topics": true}'), services.prompt_registry,
                                     model="local-stub")
        coordinator = ReanalysisCoordinator(ChecklistStateMachine(
            llm, store=services.store, evidence=services.evidence, findings=services.findings,
        ))

        run = coordinator.reanalyze_all(sid, requested_by="alice")

        assert run.status == "failed"
        assert "'findings'" in run.error_message
        assert Finding.query.filter_by(session_id=sid).count() == 0

    def test_truncation_trims_oldest_and_is_reported(self, make_session, services, interpreter):
        sid = make_session().id
        services.evidence.append(sid, "A" * 500)
        services.evidence.append(sid, "latest correction")

        coordinator = ReanalysisCoordinator(services.state_machine, max_evidence_chars=100)
        run = coordinator.reanalyze_all(sid, requested_by="alice")

        assert run.truncated is True
        assert run.truncated_chars > 0
        text = interpreter.calls[-1]["evidence_text"]
        assert len(text) == 100
        assert text.endswith("latest correction")

    def test_requires_requester(self, obtained_setup, services):
        sid, _, _ = obtained_setup
        with pytest.raises(ValidationError):
            services.reanalysis.reanalyze_all(sid, requested_by="")

    def test_requires_checklist(self, make_session, services):
        sid = make_session(items=[]).id
        with pytest.raises(ValidationError):
            services.reanalysis.reanalyze_all(sid, requested_by="alice")

    def test_list_runs_newest_first(self, obtained_setup, services):
        sid, _, _ = obtained_setup
        first = services.reanalysis.reanalyze_all(sid, requested_by="alice")
        second = services.reanalysis.reanalyze_all(sid, requested_by="bob")
        runs = ReanalysisCoordinator.list_runs(sid)
        assert [r.id for r in runs] == [second.id, first.id]

    def test_list_runs_unknown_session(self):
        with pytest.raises(NotFoundError):
            ReanalysisCoordinator.list_runs(9999)
