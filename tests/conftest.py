from __future__ import annotations

from dataclasses import dataclass

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from knotscore import models
from knotscore.auth import ActorContext
from knotscore.db import Base, make_engine
from knotscore.seed import ensure_default_event


@dataclass
class Catalog:
    event: models.Event
    nodes: dict[str, models.Node]
    competitors: dict[str, models.Competitor]


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    s = factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def catalog(session) -> Catalog:
    """Default event plus two competitors in S and one in N."""
    event = ensure_default_event(session, slug="test-event")
    nodes = {
        n.code: n
        for n in session.execute(select(models.Node).where(models.Node.event_id == event.id)).scalars()
    }
    competitors = {
        "anna": models.Competitor(event_id=event.id, category_code="S", display_name="Anna", start_number=1),
        "bara": models.Competitor(event_id=event.id, category_code="S", display_name="Bara", start_number=2),
        "cyril": models.Competitor(event_id=event.id, category_code="N", display_name="Cyril", start_number=3),
    }
    session.add_all(competitors.values())
    session.commit()
    return Catalog(event=event, nodes=nodes, competitors=competitors)


@pytest.fixture
def judge(catalog) -> ActorContext:
    return ActorContext(
        user_id="judge-1",
        event_id=catalog.event.id,
        role=models.ROLE_JUDGE,
        allowed_category_codes=frozenset({"S", "R"}),
        assigned_node_ids=frozenset({catalog.nodes["AMB"].id}),
    )


@pytest.fixture
def calculator(catalog) -> ActorContext:
    return ActorContext(
        user_id="calc-1",
        event_id=catalog.event.id,
        role=models.ROLE_CALCULATOR,
        allowed_category_codes=frozenset({"N", "M", "S", "R"}),
    )


@pytest.fixture
def admin(catalog) -> ActorContext:
    return ActorContext(
        user_id="admin-1",
        event_id=catalog.event.id,
        role=models.ROLE_ADMIN,
        allowed_category_codes=frozenset({"N", "M", "S", "R"}),
    )
