from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated identity handed over by the identity provider's JWT.

    The progression core never authenticates anyone; it trusts the
    subject (user_id) and roles carried by a validated token.
    """

    user_id: str
    roles: frozenset[str]

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def has_any_role(self, roles: set[str]) -> bool:
        return bool(self.roles & roles)

    def is_platform_admin(self) -> bool:
        return "admin" in self.roles
