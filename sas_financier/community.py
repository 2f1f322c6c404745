from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import List, Optional

from sas_financier.db import Database, now_iso
from sas_financier.exceptions import NotFoundError, PermissionDenied, ValidationError
from sas_financier.filiere import Cursus, parse_cursus
from sas_financier.logging import get_logger
from sas_financier.roles import RoleContext

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 5000


@dataclass(frozen=True)
class Message:
    id: int
    user_id: int
    content: str
    created_at: str
    updated_at: str
    author_nom: str
    author_prenom: str
    author_email: str
    author_photo_url: Optional[str]
    membre_identifiant: Optional[str]
    membre_cursus: Optional[Cursus]
    edited: bool = False

    @property
    def author_name(self) -> str:
        return f"{self.author_prenom} {self.author_nom}".strip() or self.author_email

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Message":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            content=row["content"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            author_nom=row["nom"] or "",
            author_prenom=row["prenom"] or "",
            author_email=row["email"],
            author_photo_url=row["profile_photo_url"] or None,
            membre_identifiant=row["identifiant"],
            membre_cursus=parse_cursus(row["filiere"]) if row["filiere"] else None,
            edited=bool(row["edited"]),
        )


def _clean(content: str) -> str:
    content = (content or "").strip()
    if not content:
        raise ValidationError("Le message ne peut pas être vide")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message trop long ({MAX_MESSAGE_LENGTH} caractères maximum)")
    return content


class Community:
    def __init__(self, database: Database) -> None:
        self.database = database

    def list(self) -> List[Message]:
        with self.database.connect() as con:
            rows = con.execute(
                """
                SELECT c.*, u.nom, u.prenom, u.email, u.profile_photo_url,
                       (SELECT m.identifiant FROM membres m WHERE m.user_id = c.user_id
                        ORDER BY m.id LIMIT 1) AS identifiant,
                       (SELECT m.filiere FROM membres m WHERE m.user_id = c.user_id
                        ORDER BY m.id LIMIT 1) AS filiere
                FROM community_messages c
                JOIN users u ON u.id = c.user_id
                ORDER BY c.created_at DESC, c.id DESC
                """
            ).fetchall()
        return [Message.from_row(r) for r in rows]

    def _author_of(self, message_id: int) -> int:
        with self.database.connect() as con:
            row = con.execute(
                "SELECT user_id FROM community_messages WHERE id=?", (int(message_id),)
            ).fetchone()
        if not row:
            raise NotFoundError("Message introuvable")
        return int(row["user_id"])

    def post(self, actor: RoleContext, content: str) -> int:
        user_id = actor.require_authenticated()
        content = _clean(content)
        ts = now_iso()
        with self.database.connect() as con:
            cur = con.execute(
                "INSERT INTO community_messages(user_id, content, created_at, updated_at) VALUES(?,?,?,?)",
                (user_id, content, ts, ts),
            )
            message_id = int(cur.lastrowid)
        self.database.changed("community_messages")
        return message_id

    def edit(self, actor: RoleContext, message_id: int, content: str) -> None:
        user_id = actor.require_authenticated()
        content = _clean(content)
        if self._author_of(message_id) != user_id:
            raise PermissionDenied("Vous ne pouvez modifier que vos propres messages")
        with self.database.connect() as con:
            con.execute(
                "UPDATE community_messages SET content=?, updated_at=?, edited=1 WHERE id=?",
                (content, now_iso(), int(message_id)),
            )
        self.database.changed("community_messages")

    def delete(self, actor: RoleContext, message_id: int) -> None:
        user_id = actor.require_authenticated()
        if self._author_of(message_id) != user_id and not actor.is_admin:
            raise PermissionDenied("Permission insuffisante")
        with self.database.connect() as con:
            con.execute("DELETE FROM community_messages WHERE id=?", (int(message_id),))
        self.database.changed("community_messages")
        logger.info("Message %s deleted by %s", message_id, user_id)
