"""
Shared FastAPI dependencies.

Authentication happens upstream: the auth proxy forwards the user id and
role in ``X-Actor-Id`` / ``X-Actor-Role``.
"""
from typing import Optional

from fastapi import Header, Request

from dispatch_board.core.exceptions import AuthenticationException
from dispatch_board.core.logging import actor_id_var
from dispatch_board.core.sentry import set_actor_context
from dispatch_board.models.actor import Actor, UserRole
from dispatch_board.services.board import BoardRegistry
from dispatch_board.stores.interfaces import ApprovalTokenService


def actor_from_headers(
    actor_id: Optional[str],
    role: Optional[str],
    display_name: Optional[str] = None,
) -> Actor:
    if not actor_id or not role:
        raise AuthenticationException()
    try:
        user_role = UserRole(role.strip().lower())
    except ValueError:
        raise AuthenticationException(
            message=f"Unknown role '{role}'",
            details={"role": role},
        )
    return Actor(id=actor_id, role=user_role, display_name=display_name)


async def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    x_actor_name: Optional[str] = Header(None),
) -> Actor:
    """Acting user from the proxy headers."""
    actor = actor_from_headers(x_actor_id, x_actor_role, x_actor_name)
    actor_id_var.set(actor.id)
    set_actor_context(actor.id, actor.role.value, actor.display_name)
    return actor


def get_registry(request: Request) -> BoardRegistry:
    return request.app.state.registry


def get_approvals(request: Request) -> ApprovalTokenService:
    return request.app.state.approvals
