from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from . import ranking
from .auth import ActorContext
from .errors import Conflict, Invalid, NotFound
from .ledger import commit_or_fail, get_competitor, issue_token, write_audit
from .schemas import CategoryCreate, CompetitorCreate, CompetitorUpdate, EventCreate, NodeCreate
from .timefmt import format_centiseconds

logger = logging.getLogger(__name__)

# ---------------------------
# Catalog
# ---------------------------

def _flush_or_conflict(session: Session, message: str) -> None:
    try:
        session.flush()
    except IntegrityError as e:
        # a concurrent writer took the same unique key
        session.rollback()
        raise Conflict(message) from e

def create_event(session: Session, payload: EventCreate) -> models.Event:
    if get_event_by_slug(session, payload.slug):
        raise Conflict("Event already exists")
    ev = models.Event(name=payload.name, slug=payload.slug)
    session.add(ev)
    _flush_or_conflict(session, "Event already exists")
    commit_or_fail(session, "event")
    return ev

def get_event(session: Session, event_id: int) -> models.Event:
    ev = session.get(models.Event, event_id)
    if not ev:
        raise NotFound("Event not found")
    return ev

def get_event_by_slug(session: Session, slug: str) -> Optional[models.Event]:
    return session.execute(select(models.Event).where(models.Event.slug == slug)).scalar_one_or_none()

def require_event_by_slug(session: Session, slug: str) -> models.Event:
    ev = get_event_by_slug(session, slug)
    if not ev:
        raise NotFound("Event not found")
    return ev

def create_category(session: Session, event_id: int, payload: CategoryCreate) -> models.Category:
    get_event(session, event_id)
    if get_category(session, event_id, payload.code):
        raise Conflict("Category already exists")
    cat = models.Category(
        event_id=event_id,
        code=payload.code,
        name=payload.name,
        description=payload.description,
        display_order=payload.display_order,
    )
    session.add(cat)
    _flush_or_conflict(session, "Category already exists")
    commit_or_fail(session, "category")
    return cat

def get_category(session: Session, event_id: int, code: str) -> Optional[models.Category]:
    return session.execute(
        select(models.Category).where(and_(models.Category.event_id == event_id, models.Category.code == code))
    ).scalar_one_or_none()

def list_categories(session: Session, event_id: int) -> list[models.Category]:
    return session.execute(
        select(models.Category)
        .where(models.Category.event_id == event_id)
        .order_by(models.Category.display_order.asc(), models.Category.code.asc())
    ).scalars().all()

def create_node(session: Session, event_id: int, payload: NodeCreate) -> models.Node:
    get_event(session, event_id)
    existing = session.execute(
        select(models.Node).where(and_(models.Node.event_id == event_id, models.Node.code == payload.code))
    ).scalar_one_or_none()
    if existing:
        raise Conflict("Node already exists")
    node = models.Node(event_id=event_id, **payload.model_dump())
    session.add(node)
    _flush_or_conflict(session, "Node already exists")
    commit_or_fail(session, "node")
    return node

def list_nodes(session: Session, event_id: int) -> list[models.Node]:
    return session.execute(
        select(models.Node).where(models.Node.event_id == event_id).order_by(models.Node.sequence.asc(), models.Node.id.asc())
    ).scalars().all()

def assign_node_to_category(
    session: Session, event_id: int, category_code: str, node_id: int, sequence: int = 100
) -> models.CategoryNode:
    if not get_category(session, event_id, category_code):
        raise NotFound("Category not found")
    node = session.get(models.Node, node_id)
    if not node or node.event_id != event_id:
        raise NotFound("Node not found")
    row = session.execute(
        select(models.CategoryNode).where(
            and_(
                models.CategoryNode.event_id == event_id,
                models.CategoryNode.category_code == category_code,
                models.CategoryNode.node_id == node_id,
            )
        )
    ).scalar_one_or_none()
    if row:
        row.sequence = sequence
    else:
        row = models.CategoryNode(event_id=event_id, category_code=category_code, node_id=node_id, sequence=sequence)
        session.add(row)
    _flush_or_conflict(session, "Node already assigned to category")
    commit_or_fail(session, "category node")
    return row

def create_competitor(
    session: Session, actor: ActorContext, event_id: int, payload: CompetitorCreate
) -> models.Competitor:
    get_event(session, event_id)
    if not get_category(session, event_id, payload.category_code):
        raise NotFound("Category not found")
    competitor = models.Competitor(
        event_id=event_id,
        **payload.model_dump(exclude={"generate_token"}),
    )
    session.add(competitor)
    _flush_or_conflict(session, "Competitor with this start number already exists")
    if payload.generate_token:
        issue_token(session, actor, competitor, commit=False)
    commit_or_fail(session, "competitor")
    logger.info("competitor %s created in event %s", competitor.id, event_id)
    return competitor

def update_competitor(
    session: Session, actor: ActorContext, competitor_id: int, payload: CompetitorUpdate
) -> models.Competitor:
    competitor = get_competitor(session, actor.event_id, competitor_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        return competitor
    for key in ("display_name", "category_code"):
        if key in changes and changes[key] is None:
            raise Invalid(f"{key} cannot be cleared")
    if "category_code" in changes and not get_category(session, actor.event_id, changes["category_code"]):
        raise NotFound("Category not found")

    previous = competitor_snapshot(competitor)
    for key, value in changes.items():
        setattr(competitor, key, value)
    _flush_or_conflict(session, "Competitor with this start number already exists")
    write_audit(
        session,
        event_id=actor.event_id,
        action=models.AUDIT_COMPETITOR_UPDATED,
        actor=actor,
        competitor_id=competitor.id,
        previous_value=previous,
        new_value=competitor_snapshot(competitor),
    )
    commit_or_fail(session, "competitor update")
    return competitor

def list_competitors(session: Session, event_id: int) -> list[models.Competitor]:
    return session.execute(
        select(models.Competitor)
        .where(models.Competitor.event_id == event_id)
        .order_by(models.Competitor.category_code.asc(), models.Competitor.start_number.asc(), models.Competitor.id.asc())
    ).scalars().all()

def competitor_snapshot(c: models.Competitor) -> dict:
    return {
        "id": c.id,
        "event_id": c.event_id,
        "category_code": c.category_code,
        "display_name": c.display_name,
        "club": c.club,
        "start_number": c.start_number,
        "birth_year": c.birth_year,
        "notes": c.notes,
    }

def competitor_public(c: models.Competitor) -> dict:
    return {
        "id": c.id,
        "display_name": c.display_name,
        "category_code": c.category_code,
        "club": c.club,
        "start_number": c.start_number,
    }

def competitor_detail(session: Session, actor: ActorContext, competitor_id: int) -> dict:
    """Everything a calculator needs to correct one competitor's results."""
    competitor = get_competitor(session, actor.event_id, competitor_id)
    nodes = list_nodes(session, actor.event_id)
    attempts = session.execute(
        select(models.Attempt)
        .where(models.Attempt.competitor_id == competitor.id)
        .order_by(models.Attempt.node_id.asc(), models.Attempt.attempt_number.asc())
    ).scalars().all()

    by_node: dict[int, list[models.Attempt]] = {}
    for a in attempts:
        by_node.setdefault(a.node_id, []).append(a)

    best_by_node = {}
    for node in nodes:
        best = ranking.best_attempt(_facts(by_node.get(node.id, [])))
        best_by_node[node.id] = {
            "status": best.status,
            "best_centiseconds": best.best_centiseconds,
            "best_display": format_centiseconds(best.best_centiseconds),
        }
    return {
        "competitor": dict(competitor_public(competitor), qr_token=competitor.qr_token),
        "nodes": [node_public(n) for n in nodes],
        "attempts_by_node": {node_id: [a.snapshot() for a in rows] for node_id, rows in by_node.items()},
        "best_by_node": best_by_node,
    }

def node_public(n: models.Node) -> dict:
    return {
        "id": n.id,
        "code": n.code,
        "name": n.name,
        "sequence": n.sequence,
        "is_relay": n.is_relay,
        "counts_to_overall": n.counts_to_overall,
        "max_time_centiseconds": n.max_time_centiseconds,
    }

def event_context(session: Session, event_id: int) -> dict:
    """Catalog overview for the admin console."""
    ev = get_event(session, event_id)
    competitor_count = session.execute(
        select(func.count(models.Competitor.id)).where(models.Competitor.event_id == event_id)
    ).scalar_one()
    return {
        "event": {
            "id": ev.id,
            "name": ev.name,
            "slug": ev.slug,
            "starts_at": ev.starts_at.isoformat() if ev.starts_at else None,
            "ends_at": ev.ends_at.isoformat() if ev.ends_at else None,
        },
        "categories": [
            {"code": c.code, "name": c.name, "description": c.description, "display_order": c.display_order}
            for c in list_categories(session, event_id)
        ],
        "nodes": [dict(node_public(n), note=n.note) for n in list_nodes(session, event_id)],
        "competitor_count": competitor_count,
    }

# ---------------------------
# Rankings (recomputed on every read)
# ---------------------------

def _facts(attempts) -> list[ranking.AttemptFact]:
    return [
        ranking.AttemptFact(
            competitor_id=a.competitor_id,
            node_id=a.node_id,
            result_kind=a.result_kind,
            centiseconds=a.centiseconds,
        )
        for a in attempts
    ]

def load_snapshot(session: Session, event_id: int) -> ranking.Snapshot:
    get_event(session, event_id)
    stations = session.execute(
        select(models.CategoryNode, models.Node)
        .join(models.Node, models.Node.id == models.CategoryNode.node_id)
        .where(models.CategoryNode.event_id == event_id)
    ).all()
    competitors = session.execute(
        select(models.Competitor.id, models.Competitor.category_code).where(models.Competitor.event_id == event_id)
    ).all()
    attempts = session.execute(select(models.Attempt).where(models.Attempt.event_id == event_id)).scalars().all()

    return ranking.Snapshot(
        event_id=event_id,
        stations=tuple(
            ranking.Station(
                category_code=cn.category_code,
                node_id=node.id,
                sequence=cn.sequence,
                is_relay=node.is_relay,
                counts_to_overall=node.counts_to_overall,
            )
            for cn, node in stations
        ),
        entrants=tuple(ranking.Entrant(competitor_id=cid, category_code=code) for cid, code in competitors),
        attempts=tuple(_facts(attempts)),
        category_order={c.code: c.display_order for c in list_categories(session, event_id)},
    )

def node_rankings(session: Session, event_id: int, category_code: Optional[str] = None) -> list[ranking.NodeRanking]:
    return ranking.compute_node_rankings(load_snapshot(session, event_id), category_code=category_code)

def category_leaderboard(session: Session, event_id: int) -> list[ranking.LeaderboardEntry]:
    return ranking.compute_category_leaderboard(load_snapshot(session, event_id))

def relay_leaderboard(session: Session, event_id: int) -> list[ranking.RelayLeaderboardEntry]:
    return ranking.compute_relay_leaderboard(load_snapshot(session, event_id))

def event_leaderboards(session: Session, slug: str) -> dict:
    """Public leaderboard bundle for one event, computed from one snapshot."""
    ev = require_event_by_slug(session, slug)
    snapshot = load_snapshot(session, ev.id)
    node_rows = ranking.compute_node_rankings(snapshot)
    overall = ranking.compute_category_leaderboard(snapshot, node_rows)
    relay = ranking.compute_relay_leaderboard(snapshot, node_rows)
    competitors = {c.id: competitor_public(c) for c in list_competitors(session, ev.id)}

    nodes_by_competitor: dict[tuple[str, int], list[dict]] = {}
    for r in node_rows:
        nodes_by_competitor.setdefault((r.category_code, r.competitor_id), []).append(node_ranking_dict(r))

    return {
        "event": {"id": ev.id, "name": ev.name, "slug": ev.slug},
        "category_leaderboards": [
            dict(
                leaderboard_dict(e),
                competitor=competitors.get(e.competitor_id),
                nodes=nodes_by_competitor.get((e.category_code, e.competitor_id), []),
            )
            for e in overall
        ],
        "relay_leaderboards": [
            dict(relay_dict(e), competitor=competitors.get(e.competitor_id))
            for e in relay
        ],
    }

def node_ranking_dict(r: ranking.NodeRanking) -> dict:
    return {
        "category_code": r.category_code,
        "node_id": r.node_id,
        "sequence": r.sequence,
        "competitor_id": r.competitor_id,
        "best_centiseconds": r.best_centiseconds,
        "best_display": format_centiseconds(r.best_centiseconds),
        "has_fault": r.has_fault,
        "has_any_attempt": r.has_any_attempt,
        "status": r.status,
        "time_rank": r.time_rank,
        "competitor_count": r.competitor_count,
        "placement": r.placement,
        "tie_break_centiseconds": r.tie_break_centiseconds,
    }

def leaderboard_dict(e: ranking.LeaderboardEntry) -> dict:
    return {
        "category_code": e.category_code,
        "competitor_id": e.competitor_id,
        "placement_sum": e.placement_sum,
        "tie_break_centiseconds_sum": e.tie_break_centiseconds_sum,
        "counted_nodes": e.counted_nodes,
        "has_non_time": e.has_non_time,
        "competitor_count": e.competitor_count,
        "overall_rank": e.overall_rank,
    }

def relay_dict(e: ranking.RelayLeaderboardEntry) -> dict:
    return {
        "category_code": e.category_code,
        "competitor_id": e.competitor_id,
        "placement_sum": e.placement_sum,
        "tie_break_centiseconds_sum": e.tie_break_centiseconds_sum,
        "counted_nodes": e.counted_nodes,
        "competitor_count": e.competitor_count,
        "relay_rank": e.relay_rank,
    }
