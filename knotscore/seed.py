from __future__ import annotations

import logging

from sqlalchemy import select, and_
from sqlalchemy.orm import Session

from . import models
from .settings import settings

logger = logging.getLogger(__name__)

DEFAULT_EVENT_NAME = "Dračí smyčka"

# code, name, description, display_order
CATEGORIES = [
    ("N", "Nováčci", "Nejmladší kategorie", 1),
    ("M", "Mladší", "Mladší závodníci", 2),
    ("S", "Starší", "Starší závodníci", 3),
    ("R", "Roveři", "Nejstarší kategorie", 4),
]

# code, name, sequence, is_relay, counts_to_overall, max_time_centiseconds
NODES = [
    ("AMB", "Ambulanční uzel", 10, False, True, 120000),
    ("LOD", "Lodní smyčka", 20, False, True, 120000),
    ("OSM", "Osmičková smyčka", 30, False, True, 120000),
    ("RYB", "Rybářský uzel", 40, False, True, 120000),
    ("ZKR", "Zkracovačka", 50, False, True, 120000),
    ("STF", "Štafeta", 60, True, False, 60000),
]

CATEGORY_NODES = {
    "N": ["AMB", "LOD", "OSM", "STF"],
    "M": ["AMB", "LOD", "OSM", "RYB", "STF"],
    "S": ["AMB", "LOD", "OSM", "RYB", "ZKR", "STF"],
    "R": ["AMB", "LOD", "OSM", "RYB", "ZKR", "STF"],
}

def ensure_default_event(session: Session, slug: str | None = None) -> models.Event:
    """Create or refresh the default event configuration. Safe to run repeatedly."""
    slug = slug or settings.KNOT_DEFAULT_EVENT_SLUG
    ev = session.execute(select(models.Event).where(models.Event.slug == slug)).scalar_one_or_none()
    if not ev:
        ev = models.Event(name=DEFAULT_EVENT_NAME, slug=slug)
        session.add(ev)
        session.flush()
        logger.info("seeded event %s", slug)

    existing_cats = {
        c.code: c
        for c in session.execute(select(models.Category).where(models.Category.event_id == ev.id)).scalars()
    }
    for code, name, description, order in CATEGORIES:
        cat = existing_cats.get(code)
        if not cat:
            session.add(models.Category(event_id=ev.id, code=code, name=name, description=description, display_order=order))
        else:
            cat.name, cat.description, cat.display_order = name, description, order

    existing_nodes = {
        n.code: n
        for n in session.execute(select(models.Node).where(models.Node.event_id == ev.id)).scalars()
    }
    for code, name, sequence, is_relay, counts, max_cs in NODES:
        node = existing_nodes.get(code)
        if not node:
            node = models.Node(event_id=ev.id, code=code)
            session.add(node)
            existing_nodes[code] = node
        node.name = name
        node.sequence = sequence
        node.is_relay = is_relay
        node.counts_to_overall = counts
        node.max_time_centiseconds = max_cs
    session.flush()

    for category_code, node_codes in CATEGORY_NODES.items():
        for idx, node_code in enumerate(node_codes, start=1):
            node = existing_nodes[node_code]
            row = session.execute(
                select(models.CategoryNode).where(
                    and_(
                        models.CategoryNode.event_id == ev.id,
                        models.CategoryNode.category_code == category_code,
                        models.CategoryNode.node_id == node.id,
                    )
                )
            ).scalar_one_or_none()
            if row:
                row.sequence = idx
            else:
                session.add(
                    models.CategoryNode(event_id=ev.id, category_code=category_code, node_id=node.id, sequence=idx)
                )

    session.commit()
    return ev
