"""Attempt ledger: the only code path that writes attempts or audit rows.

Lifecycle per (competitor, node)::

    EMPTY --create(1)--> ATTEMPT1_LOCKED --create(2)--> BOTH_LOCKED

Attempts are locked on creation. Corrections are update-in-place by a
calculator or admin; there is no unlock and no delete. Every mutation is
committed together with exactly one audit row.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .auth import ActorContext
from .errors import Conflict, Forbidden, InternalError, Invalid, NotFound
from .schemas import AttemptCreate, AttemptUpdate, FaultResult, TimeResult
from .settings import settings

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
TOKEN_MAX_TRIES = 50

# ---------------------------
# Shared helpers
# ---------------------------

def write_audit(
    session: Session,
    *,
    event_id: int,
    action: str,
    actor: ActorContext,
    attempt: Optional[models.Attempt] = None,
    competitor_id: Optional[int] = None,
    previous_value: Optional[dict] = None,
    new_value: Optional[dict] = None,
) -> models.AuditLog:
    """Stage an audit row in the caller's transaction. The caller commits."""
    entry = models.AuditLog(
        event_id=event_id,
        attempt_id=attempt.id if attempt is not None else None,
        competitor_id=attempt.competitor_id if attempt is not None else competitor_id,
        node_id=attempt.node_id if attempt is not None else None,
        attempt_number=attempt.attempt_number if attempt is not None else None,
        action=action,
        previous_value=previous_value,
        new_value=new_value,
        changed_by=actor.user_id,
        changed_role=actor.role,
        changed_ip=actor.client_ip,
    )
    session.add(entry)
    return entry

def commit_or_fail(session: Session, what: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Failed to commit %s", what)
        raise InternalError(f"Failed to commit {what}") from e

def get_competitor(session: Session, event_id: int, competitor_id: int) -> models.Competitor:
    competitor = session.get(models.Competitor, competitor_id)
    if not competitor or competitor.event_id != event_id:
        raise NotFound("Competitor not found")
    return competitor

def _get_node(session: Session, event_id: int, node_id: int) -> models.Node:
    node = session.get(models.Node, node_id)
    if not node or node.event_id != event_id:
        raise NotFound("Node not found")
    return node

def _attempts_for(session: Session, competitor_id: int, node_ids: list[int]) -> list[models.Attempt]:
    if not node_ids:
        return []
    return session.execute(
        select(models.Attempt)
        .where(and_(models.Attempt.competitor_id == competitor_id, models.Attempt.node_id.in_(node_ids)))
        .order_by(models.Attempt.node_id.asc(), models.Attempt.attempt_number.asc())
    ).scalars().all()

def _check_range(result: TimeResult | FaultResult) -> None:
    if isinstance(result, TimeResult):
        if not 0 <= result.centiseconds <= settings.MAX_ATTEMPT_CENTISECONDS:
            raise Invalid("Time out of range")

def _apply_result(attempt: models.Attempt, result: TimeResult | FaultResult) -> None:
    # time and fault are exclusive; never leave both columns populated
    if isinstance(result, TimeResult):
        attempt.result_kind = models.RESULT_TIME
        attempt.centiseconds = result.centiseconds
        attempt.fault_code = None
    else:
        attempt.result_kind = models.RESULT_FAULT
        attempt.centiseconds = None
        attempt.fault_code = result.fault_code

# ---------------------------
# Attempts
# ---------------------------

def record_attempt(session: Session, actor: ActorContext, payload: AttemptCreate) -> models.Attempt:
    competitor = get_competitor(session, actor.event_id, payload.competitor_id)

    if competitor.category_code not in actor.allowed_category_codes:
        raise Forbidden("Category not permitted")
    if actor.is_judge and payload.node_id not in actor.assigned_node_ids:
        raise Forbidden("Node not assigned")
    _get_node(session, actor.event_id, payload.node_id)

    existing = {a.attempt_number: a for a in _attempts_for(session, competitor.id, [payload.node_id])}
    attempt1 = existing.get(1)
    if payload.attempt_number == 1:
        if attempt1:
            raise Conflict("Attempt 1 already exists")
    elif payload.attempt_number == 2:
        if not attempt1 or not attempt1.locked:
            raise Conflict("Attempt 1 missing or unlocked")
        if existing.get(2):
            raise Conflict("Attempt 2 already exists")
    else:
        raise Invalid("Attempt number must be 1 or 2")

    _check_range(payload.result)

    attempt = models.Attempt(
        event_id=actor.event_id,
        competitor_id=competitor.id,
        node_id=payload.node_id,
        attempt_number=payload.attempt_number,
        note=payload.note,
        locked=True,
        recorded_by=actor.user_id,
        recorded_role=actor.role,
        recorded_ip=actor.client_ip,
    )
    _apply_result(attempt, payload.result)
    session.add(attempt)
    try:
        session.flush()
    except IntegrityError as e:
        # a concurrent writer won the (competitor, node, attempt_number) slot
        session.rollback()
        raise Conflict("Attempt already exists") from e
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Failed to insert attempt")
        raise InternalError("Failed to insert attempt") from e

    write_audit(
        session,
        event_id=actor.event_id,
        action=models.AUDIT_ATTEMPT_CREATED,
        actor=actor,
        attempt=attempt,
        new_value=attempt.snapshot(),
    )
    commit_or_fail(session, "attempt")
    logger.info(
        "attempt %s created: competitor=%s node=%s no=%s by %s/%s",
        attempt.id, attempt.competitor_id, attempt.node_id, attempt.attempt_number, actor.role, actor.user_id,
    )
    return attempt

def amend_attempt(session: Session, actor: ActorContext, attempt_id: int, payload: AttemptUpdate) -> models.Attempt:
    if not actor.can_amend:
        raise Forbidden("Role not permitted to amend attempts")
    attempt = session.get(models.Attempt, attempt_id)
    if not attempt or attempt.event_id != actor.event_id:
        raise NotFound("Attempt not found")
    _check_range(payload.result)

    previous = attempt.snapshot()
    _apply_result(attempt, payload.result)
    attempt.note = payload.note
    attempt.locked = True
    try:
        session.flush()
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Failed to update attempt %s", attempt_id)
        raise InternalError("Failed to update attempt") from e

    write_audit(
        session,
        event_id=attempt.event_id,
        action=models.AUDIT_ATTEMPT_UPDATED,
        actor=actor,
        attempt=attempt,
        previous_value=previous,
        new_value=attempt.snapshot(),
    )
    commit_or_fail(session, "attempt update")
    logger.info("attempt %s updated by %s/%s", attempt.id, actor.role, actor.user_id)
    return attempt

# ---------------------------
# QR tokens
# ---------------------------

def _token_candidate(length: int) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))

def _unique_token(session: Session, event_id: int) -> str:
    for _ in range(TOKEN_MAX_TRIES):
        candidate = _token_candidate(settings.TOKEN_LENGTH)
        taken = session.execute(
            select(models.QrToken.id).where(
                and_(models.QrToken.event_id == event_id, models.QrToken.token == candidate)
            )
        ).first()
        if not taken:
            return candidate
    raise InternalError("Unable to generate unique token")

def issue_token(
    session: Session, actor: ActorContext, competitor: models.Competitor, regenerate: bool = True, commit: bool = True
) -> str:
    """Give the competitor a fresh station token, revoking older ones.

    Token history stays in ``qr_tokens``; revocation only stamps ``revoked_at``.
    """
    if not regenerate and competitor.qr_token:
        return competitor.qr_token

    now = datetime.utcnow()
    if competitor.qr_token:
        active = session.execute(
            select(models.QrToken).where(
                and_(
                    models.QrToken.competitor_id == competitor.id,
                    models.QrToken.event_id == competitor.event_id,
                    models.QrToken.revoked_at.is_(None),
                )
            )
        ).scalars().all()
        for row in active:
            row.revoked_at = now
        write_audit(
            session,
            event_id=competitor.event_id,
            action=models.AUDIT_TOKEN_REVOKED,
            actor=actor,
            competitor_id=competitor.id,
            previous_value={"token": competitor.qr_token},
        )

    token = _unique_token(session, competitor.event_id)
    competitor.qr_token = token
    competitor.qr_token_issued_at = now
    session.add(
        models.QrToken(
            event_id=competitor.event_id,
            competitor_id=competitor.id,
            token=token,
            issued_by=actor.user_id,
            issued_at=now,
        )
    )
    write_audit(
        session,
        event_id=competitor.event_id,
        action=models.AUDIT_TOKEN_GENERATED,
        actor=actor,
        competitor_id=competitor.id,
        new_value={"token": token},
    )
    if commit:
        commit_or_fail(session, "token")
        logger.info("token issued for competitor %s by %s", competitor.id, actor.user_id)
    return token

def find_competitor_by_token(session: Session, event_id: int, token: str) -> models.Competitor:
    token = token.strip()
    competitor = session.execute(
        select(models.Competitor).where(
            and_(models.Competitor.event_id == event_id, models.Competitor.qr_token == token)
        )
    ).scalar_one_or_none()
    if competitor:
        return competitor
    history = session.execute(
        select(models.QrToken).where(
            and_(
                models.QrToken.event_id == event_id,
                models.QrToken.token == token,
                models.QrToken.revoked_at.is_(None),
            )
        )
    ).scalar_one_or_none()
    if not history:
        raise NotFound("Competitor not found")
    return get_competitor(session, event_id, history.competitor_id)

def station_lookup(session: Session, actor: ActorContext, token: str) -> tuple[models.Competitor, list[models.Attempt]]:
    """Resolve a scanned token to the competitor and their attempts on the judge's nodes."""
    competitor = find_competitor_by_token(session, actor.event_id, token)
    if competitor.category_code not in actor.allowed_category_codes:
        raise Forbidden("Category not permitted")
    node_ids = sorted(actor.assigned_node_ids)
    if not node_ids:
        raise Forbidden("Judge has no assigned nodes")
    return competitor, _attempts_for(session, competitor.id, node_ids)

# ---------------------------
# Audit trail
# ---------------------------

def list_audit(
    session: Session, actor: ActorContext, attempt_id: Optional[int] = None, limit: int = 200
) -> list[models.AuditLog]:
    q = select(models.AuditLog).where(models.AuditLog.event_id == actor.event_id)
    if attempt_id is not None:
        q = q.where(models.AuditLog.attempt_id == attempt_id)
    q = q.order_by(models.AuditLog.created_at.desc(), models.AuditLog.id.desc()).limit(limit)
    return session.execute(q).scalars().all()
