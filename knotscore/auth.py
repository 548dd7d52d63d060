from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from fastapi import Request, Depends
from itsdangerous import URLSafeSerializer, BadSignature

from .errors import Forbidden, Unauthorized
from .models import ROLE_ADMIN, ROLE_CALCULATOR, ROLE_JUDGE
from .settings import settings

COOKIE_NAME = "knot_actor"

def _serializer() -> URLSafeSerializer:
    return URLSafeSerializer(settings.KNOT_SECRET_KEY, salt="knotscore-actor")

@dataclass(frozen=True)
class ActorContext:
    """Trusted identity handed over by the login service.

    Every ledger operation receives one explicitly; nothing is read from
    ambient state.
    """
    user_id: str
    event_id: int
    role: str  # "admin" | "judge" | "calculator"
    allowed_category_codes: frozenset[str] = field(default_factory=frozenset)
    assigned_node_ids: frozenset[int] = field(default_factory=frozenset)
    client_ip: Optional[str] = None

    @property
    def is_judge(self) -> bool:
        return self.role == ROLE_JUDGE

    @property
    def can_amend(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_CALCULATOR)

def issue_actor_token(actor: ActorContext) -> str:
    return _serializer().dumps(
        {
            "u": actor.user_id,
            "e": actor.event_id,
            "r": actor.role,
            "c": sorted(actor.allowed_category_codes),
            "n": sorted(actor.assigned_node_ids),
        }
    )

def load_actor_token(raw: str) -> Optional[ActorContext]:
    try:
        data = _serializer().loads(raw)
        return ActorContext(
            user_id=str(data["u"]),
            event_id=int(data["e"]),
            role=str(data.get("r") or ""),
            allowed_category_codes=frozenset(str(c) for c in data.get("c") or []),
            assigned_node_ids=frozenset(int(n) for n in data.get("n") or []),
        )
    except (BadSignature, KeyError, TypeError, ValueError):
        return None

def get_current_actor(request: Request) -> Optional[ActorContext]:
    raw = request.cookies.get(COOKIE_NAME)
    if not raw:
        return None
    actor = load_actor_token(raw)
    if actor is None:
        return None
    # the cookie never carries the address; it is stamped per request
    return replace(actor, client_ip=request.client.host if request.client else None)

def require_roles(*roles: str):
    def _dependency(actor: Optional[ActorContext] = Depends(get_current_actor)) -> ActorContext:
        if not actor:
            raise Unauthorized("Unauthorized")
        if actor.role not in roles:
            raise Forbidden("Role not permitted")
        return actor
    return _dependency

judge_required = require_roles(ROLE_JUDGE)
calculator_required = require_roles(ROLE_CALCULATOR, ROLE_ADMIN)
admin_required = require_roles(ROLE_ADMIN)
