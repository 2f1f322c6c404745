"""Role resolution and role administration.

Every request resolves the caller's role from the database; nothing is
cached between requests and nothing the client sends is trusted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sas_financier.db import Database
from sas_financier.exceptions import (
    NotFoundError,
    PermissionDenied,
    StoreError,
    ValidationError,
)
from sas_financier.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    PRESIDENT = "president"
    TRESORIER = "tresorier"
    MEMBRE = "membre"

    @property
    def label(self) -> str:
        return ROLE_LABELS[self]


ROLE_LABELS = {
    Role.PRESIDENT: "Président",
    Role.TRESORIER: "Trésorier",
    Role.MEMBRE: "Membre",
}


@dataclass(frozen=True)
class RoleContext:
    """The caller as seen by capability checks."""

    user_id: Optional[int]
    role: Optional[Role]

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_president(self) -> bool:
        return self.role is Role.PRESIDENT

    @property
    def is_tresorier(self) -> bool:
        return self.role is Role.TRESORIER

    @property
    def is_admin(self) -> bool:
        return self.is_president or self.is_tresorier

    def require_authenticated(self) -> int:
        if self.user_id is None:
            raise PermissionDenied("Vous devez être connecté")
        return self.user_id

    def require_admin(self) -> int:
        user_id = self.require_authenticated()
        if not self.is_admin:
            logger.warning("User %s refused admin action (role=%s)", user_id, self.role)
            raise PermissionDenied("Permission insuffisante")
        return user_id

    def require_tresorier(self) -> int:
        user_id = self.require_authenticated()
        if not self.is_tresorier:
            logger.warning("User %s refused treasurer action (role=%s)", user_id, self.role)
            raise PermissionDenied("Seuls les trésoriers peuvent créer des transactions")
        return user_id


ANONYMOUS = RoleContext(user_id=None, role=None)


def parse_role(value: str) -> Role:
    try:
        return Role(value.strip().lower())
    except ValueError:
        raise ValidationError(f"Rôle inconnu: {value}") from None


def resolve_role(database: Database, user_id: Optional[int]) -> RoleContext:
    """Map an identity to its role.

    A missing role row, an unknown role value and a failed lookup all
    resolve to ``role=None``.
    """
    if user_id is None:
        return ANONYMOUS
    try:
        with database.connect() as con:
            row = con.execute(
                "SELECT role FROM user_roles WHERE user_id=?", (int(user_id),)
            ).fetchone()
    except StoreError:
        logger.error("Role lookup failed for user %s, defaulting to no role", user_id)
        return RoleContext(user_id=user_id, role=None)

    if not row:
        return RoleContext(user_id=user_id, role=None)
    try:
        role = Role(row["role"])
    except ValueError:
        logger.error("User %s has unknown role %r", user_id, row["role"])
        role = None
    return RoleContext(user_id=user_id, role=role)


def assign_role(database: Database, user_id: int, role: Role) -> None:
    """Replace the role row of ``user_id`` without any capability check."""
    with database.connect() as con:
        con.execute("DELETE FROM user_roles WHERE user_id=?", (int(user_id),))
        con.execute(
            "INSERT INTO user_roles(user_id, role) VALUES(?,?)", (int(user_id), role.value)
        )
    database.changed("user_roles")


def set_role(database: Database, actor: RoleContext, user_id: int, role: Role) -> None:
    actor_id = actor.require_admin()
    with database.connect() as con:
        exists = con.execute("SELECT id FROM users WHERE id=?", (int(user_id),)).fetchone()
    if not exists:
        raise NotFoundError("Utilisateur introuvable")
    if int(user_id) == actor_id and actor.is_president and role is not Role.PRESIDENT:
        raise ValidationError("Vous ne pouvez pas modifier votre propre rôle de président")
    assign_role(database, user_id, role)
    logger.info("User %s set role of user %s to %s", actor_id, user_id, role.value)
