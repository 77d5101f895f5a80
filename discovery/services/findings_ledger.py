"""
Findings Ledger: append-only record of information outside the checklist.

Findings are never merged or deduplicated: every interpreter pass that reports
a topic appends its own row. Removal is an explicit, audited operator action.
"""

import logging

from sqlalchemy import func, select

from discovery.core.exceptions import NotFoundError
from discovery.models import db
from discovery.models.audit import write_audit
from discovery.models.checklist import FINDING_ORIGINS, RISK_LEVELS, Finding

logger = logging.getLogger(__name__)

_RISK_ORDER = {"high": 0, "medium": 1, "low": 2}


class FindingsLedger:

    def append(self, session_id: int, findings, *, evidence_id: int | None = None,
               origin: str = "incremental") -> list[Finding]:
        """Stage findings (``FindingProposal`` objects or dicts) in the current transaction."""
        if origin not in FINDING_ORIGINS:
            raise ValueError(f"Unknown finding origin {origin!r}")

        rows = []
        for f in findings:
            data = f.to_dict() if hasattr(f, "to_dict") else dict(f)
            topic = (data.get("topic") or "").strip()
            if not topic:
                continue
            risk = (data.get("risk_level") or "medium").lower()
            rows.append(Finding(
                session_id=session_id,
                evidence_id=evidence_id,
                origin=origin,
                topic=topic[:300],
                finding_type=(data.get("finding_type") or "other")[:40],
                risk_level=risk if risk in RISK_LEVELS else "medium",
                details=data.get("details") or None,
                analysis=data.get("analysis") or None,
                recommendation=data.get("recommendation") or None,
                best_practice=data.get("best_practice") or None,
                source_quote=data.get("source_quote") or None,
            ))
        db.session.add_all(rows)
        db.session.flush()
        return rows

    def list(self, session_id: int):
        """Newest first."""
        return list(db.session.execute(
            select(Finding)
            .where(Finding.session_id == session_id)
            .order_by(Finding.created_at.desc(), Finding.id.desc())
        ).unique().scalars())

    @staticmethod
    def count_for_evidence(evidence_id: int) -> int:
        return db.session.execute(
            select(func.count(Finding.id)).where(Finding.evidence_id == evidence_id)
        ).scalar()

    def grouped(self, session_id: int) -> dict:
        findings = self.list(session_id)
        by_type: dict[str, list] = {}
        for f in findings:
            by_type.setdefault(f.finding_type, []).append(f)

        return {
            "total": len(findings),
            "by_risk": {
                level: sum(1 for f in findings if f.risk_level == level)
                for level in ("high", "medium", "low")
            },
            "groups": [
                {
                    "finding_type": finding_type,
                    "count": len(items),
                    "findings": [
                        f.to_dict()
                        for f in sorted(items, key=lambda x: _RISK_ORDER.get(x.risk_level, 9))
                    ],
                }
                for finding_type, items in sorted(by_type.items(), key=lambda kv: -len(kv[1]))
            ],
        }

    def delete(self, session_id: int, finding_id: int, *, actor: str):
        finding = db.session.get(Finding, finding_id)
        if finding is None or finding.session_id != session_id:
            raise NotFoundError(resource="Finding", resource_id=finding_id, session_id=session_id)

        write_audit(
            entity_type="finding",
            entity_id=finding_id,
            action="finding.delete",
            actor=actor,
            session_id=session_id,
            diff={"topic": finding.topic, "risk_level": finding.risk_level},
        )
        db.session.delete(finding)
        db.session.commit()
        logger.info("Finding %d deleted by %s", finding_id, actor, extra={"session_id": session_id})
