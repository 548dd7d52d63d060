from __future__ import annotations

import csv
from io import StringIO

from fastapi import APIRouter, Depends
from starlette.responses import Response
from sqlalchemy.orm import Session

from .db import get_session
from . import services
from .timefmt import format_centiseconds

router = APIRouter()

def _csv_response(filename: str, text: str) -> Response:
    return Response(
        content=text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

def _competitor_cells(competitors: dict, competitor_id: int) -> list:
    c = competitors.get(competitor_id)
    if not c:
        return ["", "", ""]
    return [c.start_number if c.start_number is not None else "", c.display_name, c.club or ""]

@router.get("/leaderboard/events/{slug}/category.csv")
def category_leaderboard_csv(slug: str, session: Session = Depends(get_session)):
    ev = services.require_event_by_slug(session, slug)
    rows = services.category_leaderboard(session, ev.id)
    competitors = {c.id: c for c in services.list_competitors(session, ev.id)}
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow([
        "category", "rank", "start_number", "name", "club",
        "placement_sum", "tie_break", "counted_nodes", "has_non_time", "competitor_count",
    ])
    for r in rows:
        w.writerow(
            [r.category_code, r.overall_rank]
            + _competitor_cells(competitors, r.competitor_id)
            + [
                r.placement_sum,
                format_centiseconds(r.tie_break_centiseconds_sum),
                r.counted_nodes,
                int(r.has_non_time),
                r.competitor_count,
            ]
        )
    return _csv_response(f"{ev.slug}-category.csv", buf.getvalue())

@router.get("/leaderboard/events/{slug}/relay.csv")
def relay_leaderboard_csv(slug: str, session: Session = Depends(get_session)):
    ev = services.require_event_by_slug(session, slug)
    rows = services.relay_leaderboard(session, ev.id)
    competitors = {c.id: c for c in services.list_competitors(session, ev.id)}
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["category", "rank", "start_number", "name", "club", "placement_sum", "tie_break", "competitor_count"])
    for r in rows:
        w.writerow(
            [r.category_code, r.relay_rank]
            + _competitor_cells(competitors, r.competitor_id)
            + [r.placement_sum, format_centiseconds(r.tie_break_centiseconds_sum), r.competitor_count]
        )
    return _csv_response(f"{ev.slug}-relay.csv", buf.getvalue())
