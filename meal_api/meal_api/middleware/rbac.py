"""Capability guards for FastAPI routes.

The role-to-capability table lives in :mod:`meal_engine.identity`; the
engine re-checks capability and ownership inside every operation.  The
guards here reject a request before a session is opened and hand the
resolved :class:`~meal_engine.identity.Actor` to the handler.

Usage in routers::

    @router.post("/{subscription_id}/skips")
    async def skip_meal(
        ...,
        actor: Actor = Depends(require_capability(Capability.SKIP_MEALS)),
    ) -> SkipResult:
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Depends, Request

from meal_engine.errors import NotAuthenticated, Unauthorized
from meal_engine.identity import Actor, Capability, authorize, parse_role

logger = logging.getLogger(__name__)


def get_actor(request: Request) -> Actor:
    """Build the :class:`Actor` populated by :class:`AuthenticationMiddleware`.

    Raises :class:`NotAuthenticated` when the middleware did not run and
    :class:`Unauthorized` for a role claim the engine does not know.
    """
    sub = getattr(request.state, "sub", None)
    raw_role = getattr(request.state, "role", None)
    if not sub or not raw_role:
        raise NotAuthenticated("Authentication required")
    try:
        role = parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise Unauthorized(f"Unrecognised role '{raw_role}'", context={"role": raw_role})
    return Actor(subject=sub, role=role)


def require_capability(capability: Capability) -> Callable[..., Actor]:
    """Return a FastAPI dependency that enforces *capability* and yields the actor."""

    def _guard(actor: Actor = Depends(get_actor)) -> Actor:
        authorize(actor, capability)
        return actor

    return _guard
