"""
Checklist Store: persisted checklist items and their state.

Item state only changes through conditional writes:

    mark_obtained  - UPDATE ... WHERE id = ? AND status = 'missing'
    mark_missing   - UPDATE ... WHERE id = ? AND status = 'obtained'

Both return whether the row changed, so a caller that lost a race (or replays
a proposal) simply sees ``False``. Nothing here commits; the state machine and
the blueprints own transaction boundaries, except ``replace_items`` which is a
self-contained regeneration.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timezone

from sqlalchemy import delete, select, update

from discovery.core.exceptions import NotFoundError, ValidationError
from discovery.models import db
from discovery.models.audit import write_audit
from discovery.models.checklist import (
    CONFIDENCE_LEVELS,
    IMPORTANCE_LEVELS,
    OBTAINED_SOURCES,
    ChecklistItem,
)
from discovery.services.workshop_service import get_session

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


def _clean(value) -> str:
    """Model output may put numbers or lists where text belongs."""
    if value is None:
        return ""
    return str(value).strip()


class ChecklistStore:
    """Checklist item persistence for a discovery session."""

    # ── reads ────────────────────────────────────────────────────────────

    def list_items(self, session_id: int, status: str | None = None) -> list[ChecklistItem]:
        stmt = (
            select(ChecklistItem)
            .where(ChecklistItem.session_id == session_id)
            .order_by(ChecklistItem.item_number)
            .execution_options(populate_existing=True)
        )
        if status:
            stmt = stmt.where(ChecklistItem.status == status)
        return list(db.session.execute(stmt).scalars())

    def get_item(self, session_id: int, item_id: int) -> ChecklistItem:
        item = db.session.get(ChecklistItem, item_id, populate_existing=True)
        if item is None or item.session_id != session_id:
            raise NotFoundError(resource="ChecklistItem", resource_id=item_id, session_id=session_id)
        return item

    def stats(self, session_id: int) -> dict:
        items = self.list_items(session_id)
        total = len(items)
        obtained = sum(1 for i in items if i.status == "obtained")

        def _bucket(importance):
            subset = [i for i in items if i.importance == importance]
            return {
                "total": len(subset),
                "obtained": sum(1 for i in subset if i.status == "obtained"),
            }

        return {
            "total": total,
            "obtained": obtained,
            "missing": total - obtained,
            "critical": _bucket("critical"),
            "important": _bucket("important"),
            "nice_to_have": _bucket("nice-to-have"),
            "completion_percent": round(obtained / total * 100) if total else 0,
        }

    def by_category(self, session_id: int) -> list[dict]:
        """Items grouped by category, categories in first-appearance order."""
        groups: "OrderedDict[str, list]" = OrderedDict()
        for item in self.list_items(session_id):
            groups.setdefault(item.category or "General", []).append(item)
        return [
            {
                "category": category,
                "total": len(items),
                "obtained": sum(1 for i in items if i.status == "obtained"),
                "items": [i.to_dict() for i in items],
            }
            for category, items in groups.items()
        ]

    # ── regeneration ─────────────────────────────────────────────────────

    def replace_items(self, session_id: int, items: list[dict], *, actor: str = "system") -> list[ChecklistItem]:
        """
        Discard the session's checklist and store ``items`` in its place.

        Each dict carries ``text`` (or ``item_text``), ``importance``,
        ``category``, ``suggested_question``. Items are numbered from 1 in the
        given order. Never merges with the previous checklist.

        Raises:
            ValidationError: empty list or an item without text.
        """
        session = get_session(session_id)
        if not items:
            raise ValidationError("A checklist needs at least one item")

        rows = []
        for number, raw in enumerate(items, start=1):
            if not isinstance(raw, dict):
                raise ValidationError(
                    f"Checklist item {number} must be an object", details={"item_number": number},
                )
            text = _clean(raw.get("text") or raw.get("item_text"))
            if not text:
                raise ValidationError(
                    f"Checklist item {number} has no text", details={"item_number": number},
                )
            importance = _clean(raw.get("importance")).lower() or "important"
            if importance not in IMPORTANCE_LEVELS:
                importance = "important"
            rows.append(ChecklistItem(
                session_id=session_id,
                item_number=number,
                text=text,
                importance=importance,
                category=_clean(raw.get("category")) or "General",
                suggested_question=_clean(raw.get("suggested_question")) or None,
                status="missing",
            ))

        removed = db.session.execute(
            delete(ChecklistItem).where(ChecklistItem.session_id == session_id)
        ).rowcount
        db.session.add_all(rows)
        session.checklist_generated = True
        db.session.flush()

        write_audit(
            entity_type="session",
            entity_id=session_id,
            action="checklist.regenerate",
            actor=actor,
            session_id=session_id,
            diff={"removed": removed, "created": len(rows)},
        )
        db.session.commit()
        logger.info("Checklist regenerated: %d items (replaced %d)", len(rows), removed,
                    extra={"session_id": session_id})
        return rows

    # ── conditional transitions ──────────────────────────────────────────

    def mark_obtained(self, session_id: int, item_id: int, *, obtained_text: str,
                      confidence: str, source: str, at: datetime | None = None) -> bool:
        """Set obtained only if the item is currently missing."""
        if not obtained_text or not obtained_text.strip():
            raise ValidationError("obtained_text is required", details={"item_id": item_id})
        if confidence not in CONFIDENCE_LEVELS:
            raise ValidationError(f"Unknown confidence {confidence!r}", details={"item_id": item_id})
        if source not in OBTAINED_SOURCES:
            raise ValidationError(f"Unknown source {source!r}", details={"item_id": item_id})

        result = db.session.execute(
            update(ChecklistItem)
            .where(
                ChecklistItem.id == item_id,
                ChecklistItem.session_id == session_id,
                ChecklistItem.status == "missing",
            )
            .values(
                status="obtained",
                obtained_text=obtained_text.strip(),
                confidence=confidence,
                obtained_source=source,
                obtained_at=at or _utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_missing(self, session_id: int, item_id: int, *, reason: str | None = None,
                     at: datetime | None = None) -> bool:
        """Revert to missing only if the item is currently obtained. Keeps the reset reason."""
        values = {
            "status": "missing",
            "obtained_text": None,
            "confidence": None,
            "obtained_source": None,
            "obtained_at": None,
        }
        if reason:
            values["last_reset_reason"] = reason
            values["last_reset_at"] = at or _utcnow()

        result = db.session.execute(
            update(ChecklistItem)
            .where(
                ChecklistItem.id == item_id,
                ChecklistItem.session_id == session_id,
                ChecklistItem.status == "obtained",
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
