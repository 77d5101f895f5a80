"""
Workshop Service: workshops and their discovery sessions.

Plain module functions, commits included.

Session lifecycle:
    draft → active → completed
    active → draft        (back to preparation)
    completed → active    (reopened for follow-up evidence)
"""

import logging

from sqlalchemy import case, func, select

from discovery.core.exceptions import ConflictError, NotFoundError, ValidationError
from discovery.models import db
from discovery.models.audit import write_audit
from discovery.models.checklist import ChecklistItem
from discovery.models.workshop import SESSION_STATUSES, DiscoverySession, Workshop

logger = logging.getLogger(__name__)

SESSION_TRANSITIONS = {
    "draft": {"active"},
    "active": {"completed", "draft"},
    "completed": {"active"},
}


def create_workshop(data: dict) -> Workshop:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    workshop = Workshop(
        name=name[:200],
        mission_statement=data.get("mission_statement"),
        industry_context=data.get("industry_context"),
        module=(data.get("module") or "").strip().upper() or None,
    )
    db.session.add(workshop)
    db.session.commit()
    logger.info("Workshop %d created: %s", workshop.id, workshop.name)
    return workshop


def list_workshops() -> list[Workshop]:
    """Newest first."""
    return list(db.session.execute(
        select(Workshop).order_by(Workshop.created_at.desc(), Workshop.id.desc())
    ).scalars())


def get_workshop(workshop_id: int) -> Workshop:
    workshop = db.session.get(Workshop, workshop_id)
    if workshop is None:
        raise NotFoundError(resource="Workshop", resource_id=workshop_id)
    return workshop


def create_session(workshop_id: int, data: dict) -> DiscoverySession:
    """
    Raises:
        NotFoundError: unknown workshop.
        ValidationError: missing name or unknown status.
        ConflictError: the workshop already has a session with that name.
    """
    get_workshop(workshop_id)
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    name = name[:200]
    status = data.get("status") or "draft"
    if status not in SESSION_STATUSES:
        raise ValidationError(f"Unknown status {status!r}", details={"allowed": sorted(SESSION_STATUSES)})

    duplicate = db.session.execute(
        select(DiscoverySession.id).where(
            DiscoverySession.workshop_id == workshop_id,
            func.lower(DiscoverySession.name) == name.lower(),
        )
    ).first()
    if duplicate is not None:
        raise ConflictError(resource="DiscoverySession", field="name", value=name)

    session = DiscoverySession(
        workshop_id=workshop_id,
        name=name,
        status=status,
        topics=data.get("topics"),
    )
    db.session.add(session)
    db.session.commit()
    logger.info("Discovery session %d created in workshop %d", session.id, workshop_id,
                extra={"session_id": session.id})
    return session


def get_session(session_id: int) -> DiscoverySession:
    session = db.session.get(DiscoverySession, session_id)
    if session is None:
        raise NotFoundError(resource="DiscoverySession", resource_id=session_id)
    return session


def list_sessions(*, workshop_id: int | None = None, status: str | None = None) -> list[dict]:
    """
    Sessions with checklist progress, ordered by workshop then creation.

    Each entry is ``DiscoverySession.to_dict()`` plus ``workshop_name``,
    ``items_total`` and ``items_obtained``.
    """
    if status is not None and status not in SESSION_STATUSES:
        raise ValidationError(f"Unknown status {status!r}", details={"allowed": sorted(SESSION_STATUSES)})
    if workshop_id is not None:
        get_workshop(workshop_id)

    progress = (
        select(
            ChecklistItem.session_id.label("session_id"),
            func.count(ChecklistItem.id).label("total"),
            func.sum(case((ChecklistItem.status == "obtained", 1), else_=0)).label("obtained"),
        )
        .group_by(ChecklistItem.session_id)
        .subquery()
    )
    stmt = (
        select(DiscoverySession, Workshop.name, progress.c.total, progress.c.obtained)
        .join(Workshop, Workshop.id == DiscoverySession.workshop_id)
        .outerjoin(progress, progress.c.session_id == DiscoverySession.id)
        .order_by(DiscoverySession.workshop_id, DiscoverySession.id)
    )
    if workshop_id is not None:
        stmt = stmt.where(DiscoverySession.workshop_id == workshop_id)
    if status is not None:
        stmt = stmt.where(DiscoverySession.status == status)

    result = []
    for session, workshop_name, total, obtained in db.session.execute(stmt):
        d = session.to_dict()
        d["workshop_name"] = workshop_name
        d["items_total"] = int(total or 0)
        d["items_obtained"] = int(obtained or 0)
        result.append(d)
    return result


def update_session_status(session_id: int, status: str, *, actor: str = "system") -> DiscoverySession:
    """
    Move a session along its lifecycle. Setting the current status again is a no-op.

    Raises:
        NotFoundError: unknown session.
        ValidationError: unknown status or a transition the lifecycle does not allow.
    """
    session = get_session(session_id)
    if status not in SESSION_STATUSES:
        raise ValidationError(f"Unknown status {status!r}", details={"allowed": sorted(SESSION_STATUSES)})
    if status == session.status:
        return session

    allowed = SESSION_TRANSITIONS.get(session.status, set())
    if status not in allowed:
        raise ValidationError(
            f"Cannot move session from {session.status!r} to {status!r}",
            details={"from": session.status, "to": status, "allowed": sorted(allowed)},
        )

    previous = session.status
    session.status = status
    write_audit(
        entity_type="session", entity_id=session_id,
        action="session.status", actor=actor, session_id=session_id,
        diff={"status": [previous, status]},
    )
    db.session.commit()
    logger.info("Session status %s -> %s by %s", previous, status, actor,
                extra={"session_id": session_id})
    return session
