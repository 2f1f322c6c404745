"""Accounts: sign-up restricted to registered members, sign-in,
user administration and profile photos."""

from __future__ import annotations

import re
import sqlite3
import time
from dataclasses import dataclass
from typing import List, Optional

from passlib.hash import pbkdf2_sha256

from sas_financier.db import Database, now_iso
from sas_financier.exceptions import NotFoundError, ValidationError
from sas_financier.logging import get_logger
from sas_financier.members import MemberRegistry
from sas_financier.roles import Role, RoleContext, assign_role, resolve_role
from sas_financier.storage import IMAGE_EXTENSIONS, ObjectStore, file_extension

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class User:
    id: int
    email: str
    nom: str
    prenom: str
    profile_photo_url: Optional[str]
    created_at: str

    @property
    def display_name(self) -> str:
        name = f"{self.prenom} {self.nom}".strip()
        return name or self.email

    @property
    def initials(self) -> str:
        parts = [p for p in (self.prenom, self.nom) if p]
        if not parts:
            return self.email[:2].upper()
        return "".join(p[0] for p in parts).upper()

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "User":
        return cls(
            id=int(row["id"]),
            email=row["email"],
            nom=row["nom"],
            prenom=row["prenom"],
            profile_photo_url=row["profile_photo_url"] or None,
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class UserWithRole:
    user: User
    role: Optional[Role]


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class Accounts:
    def __init__(
        self,
        database: Database,
        members: MemberRegistry,
        objects: Optional[ObjectStore] = None,
        min_password_length: int = 6,
    ) -> None:
        self.database = database
        self.members = members
        self.objects = objects
        self.min_password_length = min_password_length

    # ========================================================
    # Lookup
    # ========================================================
    def get_user(self, user_id: Optional[int]) -> Optional[User]:
        if user_id is None:
            return None
        with self.database.connect() as con:
            row = con.execute("SELECT * FROM users WHERE id=?", (int(user_id),)).fetchone()
        return User.from_row(row) if row else None

    def _get_by_email(self, email: str) -> Optional[sqlite3.Row]:
        with self.database.connect() as con:
            return con.execute("SELECT * FROM users WHERE email=?", (email,)).fetchone()

    def _insert_user(self, email: str, password: str, nom: str, prenom: str) -> int:
        try:
            with self.database.connect() as con:
                cur = con.execute(
                    "INSERT INTO users(email, password_hash, nom, prenom, created_at) VALUES(?,?,?,?,?)",
                    (email, pbkdf2_sha256.hash(password), nom, prenom, now_iso()),
                )
                user_id = int(cur.lastrowid)
        except sqlite3.IntegrityError:
            raise ValidationError("Cet email est déjà utilisé") from None
        self.database.changed("users")
        return user_id

    # ========================================================
    # Sign-up / sign-in
    # ========================================================
    def sign_up(self, email: str, password: str, confirm: str, nom: str, prenom: str) -> User:
        """Create an account for a member already registered by an admin.

        Checks run in this order: required fields, email format, password confirmation,
        password length, membership, unused email, membre not yet linked.
        """
        email = normalize_email(email)
        nom = (nom or "").strip()
        prenom = (prenom or "").strip()
        if not email or not password or not nom or not prenom:
            raise ValidationError("Tous les champs sont obligatoires")
        if not EMAIL_RE.match(email):
            raise ValidationError("Email invalide")
        if password != confirm:
            raise ValidationError("Les mots de passe ne correspondent pas")
        if len(password) < self.min_password_length:
            raise ValidationError(
                f"Le mot de passe doit contenir au moins {self.min_password_length} caractères"
            )

        candidates = self.members.find_by_name(nom, prenom)
        if not candidates:
            raise ValidationError(
                "Inscription non autorisée : vous devez être ajouté en tant que membre "
                "par un administrateur avant de pouvoir créer un compte."
            )
        if self._get_by_email(email):
            raise ValidationError("Cet email est déjà associé à un compte. Utilisez la connexion.")

        membre = next((m for m in candidates if m.user_id is None), None)
        if membre is None:
            raise ValidationError(
                "Ce membre a déjà un compte associé. Contactez un administrateur "
                "si vous avez oublié vos identifiants."
            )

        user_id = self._insert_user(email, password, nom, prenom)
        assign_role(self.database, user_id, Role.MEMBRE)
        self.members.link_user(membre.id, user_id)
        logger.info("Account %s created for membre %s", user_id, membre.id)
        return self.get_user(user_id)

    def sign_in(self, email: str, password: str) -> User:
        email = normalize_email(email)
        if not email or not password:
            raise ValidationError("Email et mot de passe obligatoires")
        row = self._get_by_email(email)
        if not row or not pbkdf2_sha256.verify(password, row["password_hash"]):
            logger.warning("Failed sign-in for %s", email)
            raise ValidationError("Email ou mot de passe incorrect")
        return User.from_row(row)

    def ensure_bootstrap_admin(self, email: str, password: str) -> Optional[User]:
        """Create the first president account when the database has no user."""
        with self.database.connect() as con:
            n = int(con.execute("SELECT COUNT(*) AS n FROM users").fetchone()["n"])
        if n:
            return None
        user_id = self._insert_user(normalize_email(email), password, "Administrateur", "")
        assign_role(self.database, user_id, Role.PRESIDENT)
        logger.warning("Bootstrap president account created: %s", email)
        return self.get_user(user_id)

    # ========================================================
    # Administration
    # ========================================================
    def list_users(self) -> List[UserWithRole]:
        with self.database.connect() as con:
            rows = con.execute(
                """
                SELECT u.*, r.role AS role
                FROM users u
                LEFT JOIN user_roles r ON r.user_id = u.id
                ORDER BY u.created_at DESC, u.id DESC
                """
            ).fetchall()
        out = []
        for r in rows:
            try:
                role = Role(r["role"]) if r["role"] else None
            except ValueError:
                role = None
            out.append(UserWithRole(user=User.from_row(r), role=role))
        return out

    def delete_user(self, actor: RoleContext, user_id: int) -> None:
        actor_id = actor.require_admin()
        if int(user_id) == actor_id:
            raise ValidationError("Vous ne pouvez pas supprimer votre propre compte")
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("Utilisateur introuvable")
        with self.database.connect() as con:
            con.execute("DELETE FROM users WHERE id=?", (int(user_id),))
        self._drop_photo(user)
        self.database.changed("users", "user_roles", "membres", "community_messages")
        logger.info("User %s deleted by %s", user_id, actor_id)

    def role_of(self, user_id: int) -> RoleContext:
        return resolve_role(self.database, user_id)

    # ========================================================
    # Profile photo
    # ========================================================
    def update_profile_photo(self, actor: RoleContext, file_name: str, data: bytes) -> User:
        user_id = actor.require_authenticated()
        if self.objects is None:
            raise ValidationError("Stockage des photos indisponible")
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("Utilisateur introuvable")
        ext = file_extension(file_name, IMAGE_EXTENSIONS)
        path = f"avatars/{user_id}-{int(time.time() * 1000)}{ext}"
        self.objects.upload(path, data, overwrite=True)
        self._drop_photo(user, keep=path)
        self._set_photo(user_id, self.objects.get_public_url(path))
        return self.get_user(user_id)

    def remove_profile_photo(self, actor: RoleContext) -> User:
        user_id = actor.require_authenticated()
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("Utilisateur introuvable")
        self._drop_photo(user)
        self._set_photo(user_id, None)
        return self.get_user(user_id)

    def _set_photo(self, user_id: int, url: Optional[str]) -> None:
        with self.database.connect() as con:
            con.execute("UPDATE users SET profile_photo_url=? WHERE id=?", (url, int(user_id)))
        self.database.changed("users")

    def _drop_photo(self, user: User, keep: Optional[str] = None) -> None:
        if self.objects is None or not user.profile_photo_url:
            return
        path = self.objects.path_from_url(user.profile_photo_url)
        if path and path != keep:
            self.objects.remove([path])
