"""
branch_services.identity -- Static role lookup for actors.

Responsibility:
    Implements the kernel's ``IdentityProvider`` protocol from an in-memory
    mapping.  Deployments that front a real directory supply their own
    provider; tests and single-node installs use this one.

Architecture position:
    Services layer.  The kernel resolves roles only through the protocol;
    it never sees where they came from.

Invariants:
    - Unknown actors get ``default_roles`` (empty unless configured).
    - Role names are validated against ``Role`` at registration, not at
      lookup.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from uuid import UUID

from branch_kernel.domain.guard import Role


def _as_roles(roles: Iterable[Role | str]) -> frozenset[Role]:
    return frozenset(Role(r) for r in roles)


class StaticIdentityProvider:
    """Actor id -> roles, held in memory."""

    def __init__(
        self,
        assignments: Mapping[UUID, Iterable[Role | str]] | None = None,
        default_roles: Iterable[Role | str] = (),
    ) -> None:
        self._assignments: dict[UUID, frozenset[Role]] = {
            actor_id: _as_roles(roles) for actor_id, roles in (assignments or {}).items()
        }
        self._default_roles = _as_roles(default_roles)

    def get_actor_roles(self, actor_id: UUID) -> frozenset[Role]:
        return self._assignments.get(actor_id, self._default_roles)

    def assign(self, actor_id: UUID, *roles: Role | str) -> None:
        """Grant ``roles`` to ``actor_id`` in addition to any it already holds."""
        current = self._assignments.get(actor_id, frozenset())
        self._assignments[actor_id] = current | _as_roles(roles)

    def revoke(self, actor_id: UUID, *roles: Role | str) -> None:
        current = self._assignments.get(actor_id, frozenset())
        self._assignments[actor_id] = current - _as_roles(roles)
