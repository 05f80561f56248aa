"""Caller identity and capability checks.

The identity provider is an external collaborator: the engine receives an
:class:`Actor` (subject id + role) and trusts it.  Every mutating engine
operation starts with :func:`authorize` and, where a resource is owned by a
consumer or vendor, :func:`ensure_owner`, so an :class:`~meal_engine.errors.Unauthorized`
is raised before any business logic runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from meal_engine.errors import Unauthorized

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Roles issued by the identity provider."""

    CONSUMER = "consumer"
    VENDOR = "vendor"
    ADMIN = "admin"
    SERVICE = "service"


class Capability(str, Enum):
    """Fine-grained capability tokens checked at operation boundaries."""

    READ_SUBSCRIPTIONS = "read:subscriptions"
    SKIP_MEALS = "skip:meals"
    MANAGE_SUBSCRIPTIONS = "manage:subscriptions"
    BOOK_TRIALS = "book:trials"
    MANAGE_HOLIDAYS = "manage:holidays"
    VIEW_CAPACITY = "view:capacity"
    ADJUST_CREDITS = "adjust:credits"
    PROVISION_SUBSCRIPTIONS = "provision:subscriptions"
    PROCESS_PAYMENTS = "process:payments"
    PROCESS_REFUNDS = "process:refunds"
    RUN_MAINTENANCE = "run:maintenance"


_CONSUMER_CAPS: frozenset[Capability] = frozenset(
    {
        Capability.READ_SUBSCRIPTIONS,
        Capability.SKIP_MEALS,
        Capability.MANAGE_SUBSCRIPTIONS,
        Capability.BOOK_TRIALS,
        Capability.VIEW_CAPACITY,
    }
)

_VENDOR_CAPS: frozenset[Capability] = frozenset(
    {
        Capability.MANAGE_HOLIDAYS,
        Capability.VIEW_CAPACITY,
    }
)

_SERVICE_CAPS: frozenset[Capability] = frozenset(
    {
        Capability.PROVISION_SUBSCRIPTIONS,
        Capability.PROCESS_PAYMENTS,
        Capability.PROCESS_REFUNDS,
        Capability.RUN_MAINTENANCE,
        Capability.VIEW_CAPACITY,
    }
)

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.CONSUMER: _CONSUMER_CAPS,
    Role.VENDOR: _VENDOR_CAPS,
    Role.SERVICE: _SERVICE_CAPS,
    Role.ADMIN: frozenset(Capability),
}

_ROLE_LOOKUP: dict[str, Role] = {r.value: r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a token ``role`` claim into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


@dataclass(frozen=True)
class Actor:
    """The authenticated caller.

    ``subject`` is the consumer id for consumers and the vendor id for
    vendors; staff and service identities carry their own ids.
    """

    subject: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def can(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES.get(self.role, frozenset())


SYSTEM_ACTOR = Actor(subject="system", role=Role.ADMIN)


def authorize(actor: Actor, capability: Capability) -> None:
    """Raise :class:`Unauthorized` unless *actor*'s role grants *capability*."""
    if not actor.can(capability):
        logger.info(
            "Capability denied: subject=%s role=%s requires %s",
            actor.subject,
            actor.role.value,
            capability.value,
        )
        raise Unauthorized(
            f"Role '{actor.role.value}' does not have '{capability.value}' capability",
            context={"capability": capability.value, "role": actor.role.value},
        )


def ensure_owner(actor: Actor, owner_id: str, resource: str) -> None:
    """Raise :class:`Unauthorized` unless *actor* owns *resource* (admins always do)."""
    if actor.is_admin:
        return
    if actor.subject != owner_id:
        logger.info("Ownership mismatch: subject=%s resource=%s", actor.subject, resource)
        raise Unauthorized(
            f"{resource} does not belong to the caller",
            context={"resource": resource},
        )
