"""
Checklist state machine tests.

    1. validate_proposal: pure validation against a status snapshot
    2. analyze_incremental: idempotence, monotonic obtain, conservative
       transitions, interpreter failure, replay, lost races, batch atomicity
    3. The warehouse correction scenario (obtain → contradiction reset → re-obtain)
    4. manual_update: operator overrides
"""

import pytest
from sqlalchemy.exc import SQLAlchemyError

from discovery.ai.interpreter import (
    MODE_INCREMENTAL,
    MODE_REANALYSIS,
    RESET_INSUFFICIENT_EVIDENCE,
    FindingProposal,
    InterpreterProposal,
    LLMEvidenceInterpreter,
    ObtainProposal,
    ResetProposal,
)
from discovery.core.exceptions import (
    InterpreterUnavailableError,
    MalformedInterpreterOutputError,
    NotFoundError,
    ValidationError,
)
from discovery.models.audit import AuditLog
from discovery.models.checklist import EvidenceRecord, Finding
from discovery.services.checklist_state_machine import ChecklistStateMachine, validate_proposal


class CannedGateway:
    """Gateway double answering every chat with the same content."""

    def __init__(self, content):
        self.content = content

    def chat(self, messages, model=None, **kwargs):
        return {"content": self.content}


def _obtain(item, text="value", confidence="high", quote=""):
    return ObtainProposal(item_id=item.id, obtained_text=text, confidence=confidence, quote=quote)


def _reset(item, reason="contradicted", **kw):
    return ResetProposal(item_id=item.id, reason=reason, **kw)


@pytest.fixture()
def setup(make_session, items_by_number, services):
    sess = make_session()
    items = items_by_number(sess.id)
    return sess.id, items[1], items[2]


# ═════════════════════════════════════════════════════════════════════════════
# 1. validate_proposal
# ═════════════════════════════════════════════════════════════════════════════


class TestValidateProposal:

    SNAPSHOT = {10: "missing", 11: "obtained", 12: "missing"}

    def test_valid_entries_pass(self):
        proposal = InterpreterProposal(
            to_obtain=[ObtainProposal(10, "5 plants", "high")],
            to_reset=[ResetProposal(11, "corrected by later evidence")],
            findings=[FindingProposal(topic="Manual price overrides")],
        )
        batch = validate_proposal(proposal, self.SNAPSHOT)
        assert [e.item_id for e in batch.to_obtain] == [10]
        assert [e.item_id for e in batch.to_reset] == [11]
        assert len(batch.findings) == 1
        assert batch.dropped == []

    def test_unknown_item_dropped(self):
        proposal = InterpreterProposal(to_obtain=[ObtainProposal(99, "x", "high")])
        batch = validate_proposal(proposal, self.SNAPSHOT)
        assert batch.to_obtain == []
        assert batch.dropped[0].reason == "item does not belong to this session"

    def test_obtain_of_obtained_item_dropped(self):
        proposal = InterpreterProposal(to_obtain=[ObtainProposal(11, "x", "high")])
        batch = validate_proposal(proposal, self.SNAPSHOT)
        assert batch.dropped[0].reason == "item is not missing"

    def test_reset_of_missing_item_dropped(self):
        proposal = InterpreterProposal(to_reset=[ResetProposal(10, "wrong")])
        batch = validate_proposal(proposal, self.SNAPSHOT)
        assert batch.dropped[0].reason == "item is not obtained"

    def test_obtain_without_value_dropped(self):
        proposal = InterpreterProposal(to_obtain=[ObtainProposal(10, "   ", "high")])
        batch = validate_proposal(proposal, self.SNAPSHOT)
        assert batch.dropped[0].reason == "no concrete value provided"

    def test_unknown_confidence_dropped(self):
        proposal = InterpreterProposal(to_obtain=[ObtainProposal(10, "x", "certain")])
        batch = validate_proposal(proposal, self.SNAPSHOT)
        assert "unknown confidence" in batch.dropped[0].reason

    def test_duplicate_obtain_dropped(self):
        proposal = InterpreterProposal(to_obtain=[
            ObtainProposal(10, "first", "high"),
            ObtainProposal(10, "second", "medium"),
        ])
        batch = validate_proposal(proposal, self.SNAPSHOT)
        assert [e.obtained_text for e in batch.to_obtain] == ["first"]
        assert batch.dropped[0].reason == "duplicate target in batch"

    def test_reset_without_reason_dropped(self):
        proposal = InterpreterProposal(to_reset=[ResetProposal(11, "")])
        batch = validate_proposal(proposal, self.SNAPSHOT)
        assert batch.dropped[0].reason == "no reason given"

    def test_insufficient_evidence_reset_only_in_reanalysis(self):
        proposal = InterpreterProposal(
            to_reset=[ResetProposal(11, "only acknowledged", kind=RESET_INSUFFICIENT_EVIDENCE)],
        )
        incremental = validate_proposal(proposal, self.SNAPSHOT, mode=MODE_INCREMENTAL)
        assert incremental.to_reset == []
        assert "not allowed in incremental" in incremental.dropped[0].reason

        reanalysis = validate_proposal(proposal, self.SNAPSHOT, mode=MODE_REANALYSIS)
        assert [e.item_id for e in reanalysis.to_reset] == [11]

    def test_invalid_entries_do_not_block_valid_ones(self):
        proposal = InterpreterProposal(to_obtain=[
            ObtainProposal(None, "x", "high"),
            ObtainProposal(12, "Net 30", "medium"),
        ])
        batch = validate_proposal(proposal, self.SNAPSHOT)
        assert [e.item_id for e in batch.to_obtain] == [12]
        assert len(batch.dropped) == 1


# ═════════════════════════════════════════════════════════════════════════════
# 2. analyze_incremental
# ═════════════════════════════════════════════════════════════════════════════


class TestAnalyzeIncremental:

    def test_obtain_records_value_and_audit(self, setup, services, interpreter, items_by_number):
        sid, item1, item2 = setup
        interpreter.push(InterpreterProposal(to_obtain=[_obtain(item1, "5 DCs")]))

        outcome = services.state_machine.analyze_incremental(
            sid, "We run 5 DCs", source="document", label="org.pdf", actor="alice",
        )

        assert [o["item_id"] for o in outcome.obtained] == [item1.id]
        assert [r["id"] for r in outcome.remaining_missing] == [item2.id]
        items = items_by_number(sid)
        assert items[1].status == "obtained"
        assert items[1].obtained_text == "5 DCs"
        assert items[1].obtained_source == "document"
        assert items[1].confidence == "high"

        audit = AuditLog.query.filter_by(action="checklist.obtain").one()
        assert audit.actor == "alice"
        assert audit.diff["evidence_id"] == outcome.evidence.id

    def test_interpreter_receives_split_item_sets(self, setup, services, interpreter):
        sid, item1, item2 = setup
        interpreter.push(InterpreterProposal(to_obtain=[_obtain(item1)]))
        services.state_machine.analyze_incremental(sid, "chunk one")
        services.state_machine.analyze_incremental(sid, "chunk two")

        second = interpreter.calls[1]
        assert [i["id"] for i in second["outstanding_items"]] == [item2.id]
        assert [i["id"] for i in second["obtained_items"]] == [item1.id]
        assert second["obtained_items"][0]["obtained_text"] == "value"
        assert second["evidence_text"] == "chunk two"
        assert "chunk one" in second["prior_evidence"]
        assert second["mode"] == MODE_INCREMENTAL
        assert second["session_context"]["module"] == "MM"

    def test_idempotent_on_identical_evidence(self, setup, services, interpreter, items_by_number):
        sid, item1, _ = setup
        proposal = InterpreterProposal(
            to_obtain=[_obtain(item1, "3 warehouses")],
            findings=[FindingProposal(topic="Excel-based stock reconciliation")],
        )
        interpreter.push(proposal, proposal)

        first = services.state_machine.analyze_incremental(sid, "same text")
        state_after_first = {n: (i.status, i.obtained_text) for n, i in items_by_number(sid).items()}

        second = services.state_machine.analyze_incremental(sid, "same text")
        state_after_second = {n: (i.status, i.obtained_text) for n, i in items_by_number(sid).items()}

        assert state_after_first == state_after_second
        assert second.replayed is True
        assert second.obtained == []
        assert second.dropped[0].reason == "item is not missing"
        assert second.evidence.id == first.evidence.id
        assert EvidenceRecord.query.filter_by(session_id=sid).count() == 1
        assert Finding.query.filter_by(session_id=sid).count() == 1

    def test_obtained_set_never_shrinks_without_reset(self, setup, services, interpreter, items_by_number):
        sid, item1, item2 = setup
        interpreter.push(
            InterpreterProposal(to_obtain=[_obtain(item1)]),
            InterpreterProposal(),
            # Reset aimed at a missing item never touches item 1
            InterpreterProposal(to_reset=[_reset(item2)]),
        )
        for text in ("chunk 1", "chunk 2 talks about something else", "chunk 3"):
            services.state_machine.analyze_incremental(sid, text)
            assert items_by_number(sid)[1].status == "obtained"

    def test_items_stay_missing_without_concrete_value(self, setup, services, items_by_number):
        sid, _, _ = setup
        for text in ("We should talk about warehouses.", "Yes, we have payment terms.",
                     "Let me get back to you on that."):
            outcome = services.state_machine.analyze_incremental(sid, text)
            assert outcome.obtained == []
        assert {i.status for i in items_by_number(sid).values()} == {"missing"}

    @pytest.mark.parametrize("error", [
        InterpreterUnavailableError("provider timeout"),
        MalformedInterpreterOutputError("not json", raw_excerpt="<html>"),
    ])
    def test_interpreter_failure_proposes_nothing(self, setup, services, interpreter, items_by_number, error):
        sid, _, _ = setup
        interpreter.push(error)

        outcome = services.state_machine.analyze_incremental(sid, "We have 4 plants")

        assert outcome.interpreter_failed is True
        assert outcome.interpreter_error == str(error)
        assert outcome.obtained == [] and outcome.reset == []
        assert {i.status for i in items_by_number(sid).values()} == {"missing"}
        record = EvidenceRecord.query.filter_by(session_id=sid).one()
        assert record.raw_text == "We have 4 plants"

    @pytest.mark.parametrize("error", [
        TimeoutError("interpreter timed out"),
        KeyError("item_id"),
    ])
    def test_unexpected_interpreter_error_proposes_nothing(self, setup, services, interpreter,
                                                           items_by_number, error):
        sid, _, _ = setup
        interpreter.push(error)

        outcome = services.state_machine.analyze_incremental(sid, "We have 4 plants")

        assert outcome.interpreter_failed is True
        assert outcome.interpreter_error.startswith(type(error).__name__)
        assert outcome.obtained == [] and outcome.reset == []
        assert {i.status for i in items_by_number(sid).values()} == {"missing"}
        record = EvidenceRecord.query.filter_by(session_id=sid).one()
        assert record.processed_at is not None

    def test_interpreter_returning_no_proposal(self, setup, services, interpreter):
        sid, _, _ = setup
        interpreter.push(lambda **kwargs: None)
        outcome = services.state_machine.analyze_incremental(sid, "We have 4 plants")
        assert outcome.interpreter_failed is True
        assert outcome.interpreter_error == "Interpreter returned NoneType"

    def test_non_list_model_payload_proposes_nothing(self, setup, services, items_by_number):
        sid, _, _ = setup
        llm = LLMEvidenceInterpreter(CannedGateway('{"to_obtain": 5}'), services.prompt_registry,
                                     model="local-stub")
        sm = ChecklistStateMachine(llm, store=services.store, evidence=services.evidence,
                                   findings=services.findings)

        outcome = sm.analyze_incremental(sid, "We have 4 plants")

        assert outcome.interpreter_failed is True
        assert "'to_obtain'" in outcome.interpreter_error
        assert {i.status for i in items_by_number(sid).values()} == {"missing"}
        assert outcome.evidence.processed_at is not None

    def test_restated_evidence_after_correction_is_appended(self, setup, services, interpreter,
                                                             items_by_number):
        sid, item1, _ = setup
        claim = "we operate 3 warehouses in Dubai and Sharjah"
        correction = "correction: we closed the Sharjah site"
        interpreter.push(
            InterpreterProposal(to_obtain=[_obtain(item1, "3 warehouses")]),
            InterpreterProposal(to_reset=[_reset(item1, "Sharjah site closed")]),
            InterpreterProposal(to_obtain=[_obtain(item1, "3 warehouses")]),
        )
        sm = services.state_machine

        sm.analyze_incremental(sid, claim)
        sm.analyze_incremental(sid, correction)
        third = sm.analyze_incremental(sid, claim)

        assert third.replayed is False
        assert third.evidence.sequence_index == 3
        assert [r.raw_text for r in services.evidence.list(sid)] == [claim, correction, claim]
        assert correction in interpreter.calls[2]["prior_evidence"]
        assert items_by_number(sid)[1].status == "obtained"

    def test_replay_of_failed_chunk_records_findings(self, setup, services, interpreter):
        sid, _, _ = setup
        interpreter.push(
            InterpreterUnavailableError("provider timeout"),
            InterpreterProposal(findings=[FindingProposal(topic="Manual picking lists")]),
        )
        services.state_machine.analyze_incremental(sid, "Picking lists are printed by hand")
        retry = services.state_machine.analyze_incremental(sid, "Picking lists are printed by hand")

        assert retry.replayed is True
        assert retry.findings_recorded == 1
        assert Finding.query.filter_by(session_id=sid).one().evidence_id == retry.evidence.id

    def test_session_guards_are_released(self, setup, services):
        sid, _, _ = setup
        services.state_machine.analyze_incremental(sid, "anything")
        services.reanalysis.reanalyze_all(sid, requested_by="alice")
        assert services.state_machine._locks == {}

    def test_findings_tagged_with_evidence(self, setup, services, interpreter):
        sid, _, _ = setup
        interpreter.push(InterpreterProposal(findings=[
            FindingProposal(topic="Manual rebate calculation", risk_level="high",
                            finding_type="workaround"),
        ]))
        outcome = services.state_machine.analyze_incremental(sid, "Rebates are computed in Excel")
        assert outcome.findings_recorded == 1
        finding = Finding.query.filter_by(session_id=sid).one()
        assert finding.evidence_id == outcome.evidence.id
        assert finding.origin == "incremental"
        assert finding.risk_level == "high"

    def test_sequence_follows_submission_order(self, setup, services):
        sid, _, _ = setup
        for text in ("first", "second", "third"):
            services.state_machine.analyze_incremental(sid, text)
        records = services.evidence.list(sid)
        assert [(r.sequence_index, r.raw_text) for r in records] == [
            (1, "first"), (2, "second"), (3, "third"),
        ]
        assert all(r.processed_at is not None for r in records)

    def test_lost_race_is_reported_not_applied(self, setup, services, interpreter, items_by_number):
        sid, item1, _ = setup

        def concurrent_writer(**kwargs):
            # Another writer obtains item 1 after the snapshot was taken
            services.store.mark_obtained(sid, item1.id, obtained_text="from elsewhere",
                                         confidence="medium", source="manual")
            return InterpreterProposal(to_obtain=[_obtain(item1, "from this chunk")])

        interpreter.push(concurrent_writer)
        outcome = services.state_machine.analyze_incremental(sid, "racing chunk")

        assert outcome.obtained == []
        assert outcome.dropped[-1].reason == "item changed concurrently"
        assert items_by_number(sid)[1].obtained_text == "from elsewhere"

    def test_batch_is_all_or_nothing(self, setup, services, interpreter, items_by_number, monkeypatch):
        sid, item1, _ = setup
        interpreter.push(InterpreterProposal(
            to_obtain=[_obtain(item1)],
            findings=[FindingProposal(topic="boom")],
        ))

        def failing_append(*args, **kwargs):
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr(services.findings, "append", failing_append)
        with pytest.raises(SQLAlchemyError):
            services.state_machine.analyze_incremental(sid, "evidence kept")

        assert items_by_number(sid)[1].status == "missing"
        assert AuditLog.query.filter_by(action="checklist.obtain").count() == 0
        # The evidence was committed before the interpreter ran
        assert EvidenceRecord.query.filter_by(session_id=sid).count() == 1

    def test_requires_checklist(self, make_session, services):
        sess = make_session(items=[])
        with pytest.raises(ValidationError):
            services.state_machine.analyze_incremental(sess.id, "anything")

    def test_rejects_empty_evidence(self, setup, services):
        sid, _, _ = setup
        with pytest.raises(ValidationError):
            services.state_machine.analyze_incremental(sid, "   ")

    def test_unknown_session(self, services):
        with pytest.raises(NotFoundError):
            services.state_machine.analyze_incremental(424242, "text")


# ═════════════════════════════════════════════════════════════════════════════
# 3. Warehouse correction scenario
# ═════════════════════════════════════════════════════════════════════════════


def test_warehouse_correction_scenario(setup, services, interpreter, items_by_number):
    sid, item1, item2 = setup
    interpreter.push(
        InterpreterProposal(to_obtain=[_obtain(
            item1, "3 warehouses: Dubai and Sharjah", "high",
            quote="we operate 3 warehouses in Dubai and Sharjah",
        )]),
        InterpreterProposal(to_reset=[_reset(
            item1, "Contradiction: the Sharjah site was closed, now 2 warehouses",
            quote="correction: we actually closed the Sharjah site",
        )]),
        InterpreterProposal(to_obtain=[_obtain(
            item1, "2 warehouses: Dubai and Abu Dhabi", "high",
        )]),
    )
    sm = services.state_machine

    sm.analyze_incremental(sid, "we operate 3 warehouses in Dubai and Sharjah")
    items = items_by_number(sid)
    assert items[1].status == "obtained"
    assert "3 warehouses" in items[1].obtained_text and "Sharjah" in items[1].obtained_text
    assert items[1].confidence == "high"
    assert items[2].status == "missing"

    outcome = sm.analyze_incremental(sid, "correction: we actually closed the Sharjah site, now 2 warehouses")
    items = items_by_number(sid)
    assert [r["item_id"] for r in outcome.reset] == [item1.id]
    assert items[1].status == "missing"
    assert items[1].obtained_text is None
    assert "Contradiction" in items[1].last_reset_reason
    # The interpreter saw item 1 among the obtained items for the contradiction check
    assert [i["id"] for i in interpreter.calls[1]["obtained_items"]] == [item1.id]

    sm.analyze_incremental(sid, "we have 2 warehouses, Dubai and Abu Dhabi")
    items = items_by_number(sid)
    assert items[1].status == "obtained"
    assert items[1].obtained_text == "2 warehouses: Dubai and Abu Dhabi"
    assert items[2].status == "missing"

    actions = [a.action for a in AuditLog.query.filter_by(entity_type="checklist_item")
               .order_by(AuditLog.id)]
    assert actions == ["checklist.obtain", "checklist.reset", "checklist.obtain"]


# ═════════════════════════════════════════════════════════════════════════════
# 4. manual_update
# ═════════════════════════════════════════════════════════════════════════════


class TestManualUpdate:

    def test_manual_obtain(self, setup, services):
        sid, item1, _ = setup
        item = services.state_machine.manual_update(
            sid, item1.id, status="obtained", obtained_text="Net 30", actor="alice",
        )
        assert item.status == "obtained"
        assert item.obtained_source == "manual"
        assert item.confidence == "high"
        audit = AuditLog.query.filter_by(action="checklist.manual_update").one()
        assert audit.actor == "alice"

    def test_manual_replace_obtained_value(self, setup, services, interpreter):
        sid, item1, _ = setup
        interpreter.push(InterpreterProposal(to_obtain=[_obtain(item1, "3 warehouses")]))
        services.state_machine.analyze_incremental(sid, "3 warehouses")

        item = services.state_machine.manual_update(
            sid, item1.id, status="obtained", obtained_text="4 warehouses", confidence="medium",
        )
        assert item.obtained_text == "4 warehouses"
        assert item.confidence == "medium"
        assert item.obtained_source == "manual"

    def test_manual_reset(self, setup, services):
        sid, item1, _ = setup
        services.state_machine.manual_update(sid, item1.id, status="obtained", obtained_text="x")
        item = services.state_machine.manual_update(sid, item1.id, status="missing")
        assert item.status == "missing"
        assert item.obtained_text is None
        assert item.last_reset_reason == "Manually reset by operator"

    def test_obtain_requires_text(self, setup, services):
        sid, item1, _ = setup
        with pytest.raises(ValidationError):
            services.state_machine.manual_update(sid, item1.id, status="obtained", obtained_text=" ")

    def test_unknown_status(self, setup, services):
        sid, item1, _ = setup
        with pytest.raises(ValidationError):
            services.state_machine.manual_update(sid, item1.id, status="done")

    def test_item_of_other_session(self, setup, services, make_session):
        _, item1, _ = setup
        other = make_session(items=[{"text": "Other"}])
        with pytest.raises(NotFoundError):
            services.state_machine.manual_update(other.id, item1.id, status="missing")
