"""
Evidence ledger, findings ledger and checklist store tests.
"""

import pytest
from sqlalchemy import literal, select
from sqlalchemy.exc import IntegrityError

from discovery.core.exceptions import NotFoundError, ValidationError
from discovery.models import db
from discovery.models.audit import AuditLog
from discovery.models.checklist import ChecklistItem, EvidenceRecord, Finding, content_hash
from discovery.services import evidence_ledger


# ═════════════════════════════════════════════════════════════════════════════
# Evidence ledger
# ═════════════════════════════════════════════════════════════════════════════


class TestEvidenceLedger:

    def test_append_assigns_sequence_and_hash(self, make_session, services):
        sid = make_session().id
        first = services.evidence.append(sid, "chunk one", source="audio")
        second = services.evidence.append(sid, "chunk two", source="document", label="terms.pdf")
        assert (first.sequence_index, second.sequence_index) == (1, 2)
        assert second.label == "terms.pdf"
        assert first.content_hash == content_hash("chunk one")

    def test_sequences_are_per_session(self, make_session, services):
        a, b = make_session().id, make_session().id
        services.evidence.append(a, "x")
        assert services.evidence.append(b, "y").sequence_index == 1

    def test_rejects_empty_text_and_unknown_source(self, make_session, services):
        sid = make_session().id
        with pytest.raises(ValidationError):
            services.evidence.append(sid, "")
        with pytest.raises(ValidationError):
            services.evidence.append(sid, "text", source="email")

    def test_sequence_collision_retries_next_index(self, make_session, services, monkeypatch):
        sid = make_session().id
        services.evidence.append(sid, "first")

        calls = {"n": 0}

        def stale_select(*columns):
            # First MAX read misses the existing chunk, as a racing writer would
            calls["n"] += 1
            if calls["n"] == 1:
                return select(literal(0))
            return select(*columns)

        monkeypatch.setattr(evidence_ledger, "select", stale_select)
        record = services.evidence.append(sid, "second")

        assert calls["n"] == 2
        assert record.sequence_index == 2
        assert EvidenceRecord.query.filter_by(session_id=sid).count() == 2

    def test_latest(self, make_session, services):
        sid = make_session().id
        assert services.evidence.latest(sid) is None
        services.evidence.append(sid, "first")
        second = services.evidence.append(sid, "second")
        assert services.evidence.latest(sid).id == second.id

    def test_prior_text_only_includes_earlier_chunks(self, make_session, services):
        sid = make_session().id
        for text in ("one", "two", "three"):
            services.evidence.append(sid, text)
        prior = services.evidence.prior_text(sid, 3)
        assert "one" in prior and "two" in prior
        assert "three" not in prior

    def test_corpus_without_limit_pressure(self, make_session, services):
        sid = make_session().id
        services.evidence.append(sid, "alpha", label="kickoff.docx")
        services.evidence.append(sid, "beta")
        corpus = services.evidence.corpus(sid, 10_000)
        assert corpus.text == "[Chunk 1] kickoff.docx\nalpha\n\n[Chunk 2]\nbeta"
        assert corpus.truncated is False
        assert corpus.record_count == 2

    def test_corpus_trims_oldest_first(self, make_session, services):
        sid = make_session().id
        services.evidence.append(sid, "old " * 50)
        services.evidence.append(sid, "newest value")
        corpus = services.evidence.corpus(sid, 40)
        assert corpus.truncated is True
        assert len(corpus.text) == 40
        assert corpus.text.startswith("[Chunk 1]\n")
        assert corpus.text.endswith("newest value")
        assert corpus.to_dict()["truncated_chars"] == corpus.truncated_chars

    def test_corpus_drops_whole_chunks_before_trimming(self, make_session, services):
        sid = make_session().id
        services.evidence.append(sid, "x" * 300)
        services.evidence.append(sid, "y" * 30)
        services.evidence.append(sid, "closing remark")
        newest = "[Chunk 3]\nclosing remark"
        middle = "[Chunk 2]\n" + "y" * 30

        # Room for both newer chunks, but not for the header of the oldest
        corpus = services.evidence.corpus(sid, len(middle) + len(newest) + 2 + 5)

        assert corpus.text.startswith(middle)
        assert corpus.text.endswith(newest)
        assert "[Chunk 1]" not in corpus.text
        assert corpus.truncated_chars == len("[Chunk 1]\n" + "x" * 300) + 2


# ═════════════════════════════════════════════════════════════════════════════
# Findings ledger
# ═════════════════════════════════════════════════════════════════════════════


class TestFindingsLedger:

    def test_append_normalises_fields(self, make_session, services):
        sid = make_session().id
        rows = services.findings.append(sid, [
            {"topic": "  Consignment stock  ", "risk_level": "HIGH"},
            {"topic": "Unknown risk", "risk_level": "extreme"},
            {"topic": ""},
        ])
        db.session.commit()
        assert [r.topic for r in rows] == ["Consignment stock", "Unknown risk"]
        assert [r.risk_level for r in rows] == ["high", "medium"]
        assert rows[0].finding_type == "other"

    def test_unknown_origin(self, make_session, services):
        sid = make_session().id
        with pytest.raises(ValueError):
            services.findings.append(sid, [{"topic": "x"}], origin="guess")

    def test_grouped(self, make_session, services):
        sid = make_session().id
        services.findings.append(sid, [
            {"topic": "A", "finding_type": "pain_point", "risk_level": "low"},
            {"topic": "B", "finding_type": "pain_point", "risk_level": "high"},
            {"topic": "C", "finding_type": "integration", "risk_level": "medium"},
        ])
        db.session.commit()

        grouped = services.findings.grouped(sid)
        assert grouped["total"] == 3
        assert grouped["by_risk"] == {"high": 1, "medium": 1, "low": 1}
        first = grouped["groups"][0]
        assert first["finding_type"] == "pain_point"
        assert [f["topic"] for f in first["findings"]] == ["B", "A"]

    def test_delete_is_audited(self, make_session, services):
        sid = make_session().id
        row = services.findings.append(sid, [{"topic": "Obsolete"}])[0]
        db.session.commit()

        services.findings.delete(sid, row.id, actor="alice")

        assert Finding.query.count() == 0
        audit = AuditLog.query.filter_by(action="finding.delete").one()
        assert audit.diff["topic"] == "Obsolete"

    def test_delete_other_session(self, make_session, services):
        sid, other = make_session().id, make_session().id
        row = services.findings.append(sid, [{"topic": "Mine"}])[0]
        db.session.commit()
        with pytest.raises(NotFoundError):
            services.findings.delete(other, row.id, actor="alice")


# ═════════════════════════════════════════════════════════════════════════════
# Checklist store
# ═════════════════════════════════════════════════════════════════════════════


class TestChecklistStore:

    def test_replace_items_numbers_and_normalises(self, make_session, services):
        sid = make_session(items=[]).id
        rows = services.store.replace_items(sid, [
            {"item_text": "Company codes", "importance": "CRITICAL"},
            {"text": "Chart of accounts", "importance": "whatever", "category": ""},
        ])
        assert [r.item_number for r in rows] == [1, 2]
        assert [r.importance for r in rows] == ["critical", "important"]
        assert rows[1].category == "General"

    def test_regeneration_replaces_without_merging(self, make_session, services):
        sess = make_session()
        services.store.mark_obtained(sess.id, services.store.list_items(sess.id)[0].id,
                                     obtained_text="3", confidence="high", source="audio")
        db.session.commit()

        services.store.replace_items(sess.id, [{"text": "Only item"}], actor="alice")

        items = services.store.list_items(sess.id)
        assert [(i.item_number, i.text, i.status) for i in items] == [(1, "Only item", "missing")]
        assert sess.checklist_generated is True
        assert AuditLog.query.filter_by(action="checklist.regenerate").count() == 2

    def test_replace_rejects_empty(self, make_session, services):
        sid = make_session(items=[]).id
        with pytest.raises(ValidationError):
            services.store.replace_items(sid, [])
        with pytest.raises(ValidationError):
            services.store.replace_items(sid, [{"text": "ok"}, {"text": " "}])

    def test_replace_items_coerces_model_values(self, make_session, services):
        sid = make_session(items=[]).id
        rows = services.store.replace_items(sid, [
            {"text": 42, "importance": None, "category": 7, "suggested_question": ["How many?"]},
        ])
        assert rows[0].text == "42"
        assert rows[0].importance == "important"
        assert rows[0].category == "7"
        assert rows[0].suggested_question == "['How many?']"

    def test_replace_items_rejects_non_objects(self, make_session, services):
        sid = make_session(items=[]).id
        with pytest.raises(ValidationError):
            services.store.replace_items(sid, ["Company codes"])

    def test_conditional_writes(self, make_session, services):
        sid = make_session().id
        item_id = services.store.list_items(sid)[0].id

        assert services.store.mark_missing(sid, item_id) is False
        assert services.store.mark_obtained(sid, item_id, obtained_text="x",
                                            confidence="high", source="audio") is True
        assert services.store.mark_obtained(sid, item_id, obtained_text="y",
                                            confidence="high", source="audio") is False
        assert services.store.mark_missing(sid, item_id, reason="contradicted") is True
        db.session.commit()

        item = services.store.get_item(sid, item_id)
        assert item.status == "missing"
        assert item.last_reset_reason == "contradicted"

    def test_obtained_fields_are_all_or_nothing(self, make_session, services):
        sid = make_session().id
        item = services.store.list_items(sid)[0]
        item.status = "obtained"
        with pytest.raises(IntegrityError):
            db.session.flush()
        db.session.rollback()

    def test_item_number_is_immutable(self, make_session, services):
        item = services.store.list_items(make_session().id)[0]
        with pytest.raises(ValueError):
            item.item_number = 7

    def test_stats_and_categories(self, make_session, services):
        sid = make_session().id
        first = services.store.list_items(sid)[0]
        services.store.mark_obtained(sid, first.id, obtained_text="2", confidence="high", source="manual")
        db.session.commit()

        stats = services.store.stats(sid)
        assert (stats["total"], stats["obtained"], stats["missing"]) == (2, 1, 1)
        assert stats["critical"] == {"total": 1, "obtained": 1}
        assert stats["completion_percent"] == 50

        categories = services.store.by_category(sid)
        assert [c["category"] for c in categories] == ["Organizational Structure", "Master Data"]

    def test_get_item_unknown(self, make_session, services):
        sid = make_session().id
        with pytest.raises(NotFoundError):
            services.store.get_item(sid, 12345)

    def test_rows_cascade_with_session(self, make_session):
        sess = make_session()
        db.session.delete(sess)
        db.session.commit()
        assert ChecklistItem.query.count() == 0
