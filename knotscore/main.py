import logging
from typing import Optional

from fastapi import FastAPI, Request, Depends, Query
from fastapi.responses import JSONResponse

from .settings import settings
from .db import init_db, get_session, session_scope
from . import ledger, services
from .auth import ActorContext, admin_required, calculator_required, judge_required
from .csv_export import router as csv_router
from .errors import Forbidden, InternalError, KnotScoreError
from .schemas import AttemptCreate, AttemptUpdate, CompetitorCreate, CompetitorUpdate, TokenIssue
from .seed import ensure_default_event

logger = logging.getLogger(__name__)

app = FastAPI(title="Knot Score")
app.include_router(csv_router)

@app.exception_handler(KnotScoreError)
def _knotscore_error(request: Request, exc: KnotScoreError):
    if isinstance(exc, InternalError):
        return JSONResponse(status_code=exc.status_code, content={"error": "Internal server error"})
    logger.debug("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

@app.on_event("startup")
def _startup() -> None:
    logging.basicConfig(level=settings.LOG_LEVEL)
    init_db()
    if settings.KNOT_SEED_ON_STARTUP:
        with session_scope() as s:
            ensure_default_event(s)

@app.get("/health")
def health():
    return {"status": "ok"}

# ---------------------------
# Judge
# ---------------------------

@app.get("/judge/competitors/lookup")
def judge_lookup(
    token: str = Query(..., min_length=1),
    actor: ActorContext = Depends(judge_required),
    session=Depends(get_session),
):
    competitor, attempts = ledger.station_lookup(session, actor, token)
    return {
        "competitor": services.competitor_public(competitor),
        "attempts": [a.snapshot() for a in attempts],
        "node_ids": sorted(actor.assigned_node_ids),
    }

@app.post("/judge/attempts", status_code=201)
def judge_record_attempt(
    payload: AttemptCreate,
    actor: ActorContext = Depends(judge_required),
    session=Depends(get_session),
):
    attempt = ledger.record_attempt(session, actor, payload)
    return {"attempt": attempt.snapshot()}

# ---------------------------
# Calculator
# ---------------------------

@app.get("/calculator/competitors/lookup")
def calculator_lookup(
    token: str = Query(..., min_length=1),
    actor: ActorContext = Depends(calculator_required),
    session=Depends(get_session),
):
    # no category or node scoping here, unlike the judge station
    competitor = ledger.find_competitor_by_token(session, actor.event_id, token)
    return {"competitor": dict(services.competitor_public(competitor), qr_token=competitor.qr_token)}

@app.get("/calculator/competitors/{competitor_id}")
def calculator_competitor(
    competitor_id: int,
    actor: ActorContext = Depends(calculator_required),
    session=Depends(get_session),
):
    return services.competitor_detail(session, actor, competitor_id)

@app.put("/calculator/attempts/{attempt_id}")
def calculator_amend_attempt(
    attempt_id: int,
    payload: AttemptUpdate,
    actor: ActorContext = Depends(calculator_required),
    session=Depends(get_session),
):
    attempt = ledger.amend_attempt(session, actor, attempt_id, payload)
    return {"attempt": attempt.snapshot()}

# ---------------------------
# Admin
# ---------------------------

def _same_event(actor: ActorContext, event_id: int) -> None:
    if actor.event_id != event_id:
        raise Forbidden("Access to this event is not permitted")

@app.get("/admin/events/{event_id}/context")
def admin_event_context(
    event_id: int,
    actor: ActorContext = Depends(admin_required),
    session=Depends(get_session),
):
    _same_event(actor, event_id)
    return services.event_context(session, event_id)

@app.post("/admin/events/{event_id}/competitors", status_code=201)
def admin_create_competitor(
    event_id: int,
    payload: CompetitorCreate,
    actor: ActorContext = Depends(admin_required),
    session=Depends(get_session),
):
    _same_event(actor, event_id)
    competitor = services.create_competitor(session, actor, event_id, payload)
    return {"competitor": dict(services.competitor_public(competitor), qr_token=competitor.qr_token)}

@app.patch("/admin/competitors/{competitor_id}")
def admin_update_competitor(
    competitor_id: int,
    payload: CompetitorUpdate,
    actor: ActorContext = Depends(admin_required),
    session=Depends(get_session),
):
    competitor = services.update_competitor(session, actor, competitor_id, payload)
    return {"competitor": services.competitor_snapshot(competitor)}

@app.post("/admin/competitors/{competitor_id}/token")
def admin_issue_token(
    competitor_id: int,
    payload: Optional[TokenIssue] = None,
    actor: ActorContext = Depends(admin_required),
    session=Depends(get_session),
):
    competitor = ledger.get_competitor(session, actor.event_id, competitor_id)
    regenerate = payload.regenerate if payload else True
    return {"token": ledger.issue_token(session, actor, competitor, regenerate=regenerate)}

@app.get("/admin/audit")
def admin_audit(
    attempt_id: Optional[int] = None,
    limit: int = Query(default=200, ge=1, le=1000),
    actor: ActorContext = Depends(admin_required),
    session=Depends(get_session),
):
    rows = ledger.list_audit(session, actor, attempt_id=attempt_id, limit=limit)
    return {
        "entries": [
            {
                "id": r.id,
                "attempt_id": r.attempt_id,
                "competitor_id": r.competitor_id,
                "node_id": r.node_id,
                "attempt_number": r.attempt_number,
                "action": r.action,
                "previous_value": r.previous_value,
                "new_value": r.new_value,
                "changed_by": r.changed_by,
                "changed_role": r.changed_role,
                "changed_ip": r.changed_ip,
                "created_at": r.created_at.isoformat(),
            }
            for r in rows
        ]
    }

# ---------------------------
# Leaderboards (public)
# ---------------------------

@app.get("/leaderboard/events/{slug}")
def leaderboard(slug: str, session=Depends(get_session)):
    return services.event_leaderboards(session, slug)

@app.get("/leaderboard/events/{slug}/node-rankings")
def leaderboard_node_rankings(slug: str, category: Optional[str] = None, session=Depends(get_session)):
    ev = services.require_event_by_slug(session, slug)
    rows = services.node_rankings(session, ev.id, category_code=category)
    return {"node_rankings": [services.node_ranking_dict(r) for r in rows]}
