from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from sas_financier.db import Database, now_iso
from sas_financier.exceptions import NotFoundError, ValidationError
from sas_financier.filiere import Cursus, cursus_from_form, format_cursus, parse_cursus
from sas_financier.logging import get_logger
from sas_financier.roles import RoleContext

logger = get_logger(__name__)

SEXES = ("M", "F")


@dataclass(frozen=True)
class Membre:
    id: int
    identifiant: str
    nom: str
    prenom: str
    date_naissance: date
    cursus: Cursus
    sexe: str
    numero_dossier: str
    ine: str
    user_id: Optional[int]
    created_at: str

    @property
    def full_name(self) -> str:
        return f"{self.prenom} {self.nom}"

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Membre":
        return cls(
            id=int(row["id"]),
            identifiant=row["identifiant"],
            nom=row["nom"],
            prenom=row["prenom"],
            date_naissance=date.fromisoformat(row["date_naissance"]),
            cursus=parse_cursus(row["filiere"]),
            sexe=row["sexe"],
            numero_dossier=row["numero_dossier"],
            ine=row["ine"],
            user_id=int(row["user_id"]) if row["user_id"] is not None else None,
            created_at=row["created_at"],
        )


@dataclass
class MembreForm:
    identifiant: str
    nom: str
    prenom: str
    date_naissance: str
    filiere: str
    niveau: str = ""
    sexe: str = "M"
    numero_dossier: str = ""
    ine: str = ""

    def validate(self) -> dict:
        identifiant = self.identifiant.strip()
        nom = self.nom.strip()
        prenom = self.prenom.strip()
        if not identifiant or not nom or not prenom:
            raise ValidationError("Identifiant, nom et prénom sont obligatoires")
        try:
            dn = date.fromisoformat(self.date_naissance.strip())
        except ValueError:
            raise ValidationError("Date de naissance invalide (AAAA-MM-JJ)") from None
        sexe = self.sexe.strip().upper()
        if sexe not in SEXES:
            raise ValidationError("Sexe invalide (M ou F)")
        try:
            cursus = cursus_from_form(self.filiere, self.niveau)
        except ValueError:
            raise ValidationError("Filière ou niveau invalide") from None
        return {
            "identifiant": identifiant,
            "nom": nom,
            "prenom": prenom,
            "date_naissance": dn.isoformat(),
            "filiere": format_cursus(cursus),
            "sexe": sexe,
            "numero_dossier": self.numero_dossier.strip(),
            "ine": self.ine.strip(),
        }


class MemberRegistry:
    def __init__(self, database: Database) -> None:
        self.database = database

    def list(self) -> List[Membre]:
        with self.database.connect() as con:
            rows = con.execute("SELECT * FROM membres ORDER BY created_at DESC, id DESC").fetchall()
        return [Membre.from_row(r) for r in rows]

    def get(self, membre_id: int) -> Membre:
        with self.database.connect() as con:
            row = con.execute("SELECT * FROM membres WHERE id=?", (int(membre_id),)).fetchone()
        if not row:
            raise NotFoundError("Membre introuvable")
        return Membre.from_row(row)

    def find_by_user(self, user_id: int) -> Optional[Membre]:
        with self.database.connect() as con:
            row = con.execute(
                "SELECT * FROM membres WHERE user_id=? ORDER BY id LIMIT 1", (int(user_id),)
            ).fetchone()
        return Membre.from_row(row) if row else None

    def find_by_name(self, nom: str, prenom: str) -> List[Membre]:
        with self.database.connect() as con:
            rows = con.execute(
                "SELECT * FROM membres WHERE lower(nom)=lower(?) AND lower(prenom)=lower(?) ORDER BY id",
                (nom.strip(), prenom.strip()),
            ).fetchall()
        return [Membre.from_row(r) for r in rows]

    def link_user(self, membre_id: int, user_id: int) -> None:
        with self.database.connect() as con:
            con.execute("UPDATE membres SET user_id=? WHERE id=?", (int(user_id), int(membre_id)))
        self.database.changed("membres")

    def create(self, actor: RoleContext, form: MembreForm) -> Membre:
        actor_id = actor.require_admin()
        values = form.validate()
        try:
            with self.database.connect() as con:
                cur = con.execute(
                    """
                    INSERT INTO membres(identifiant, nom, prenom, date_naissance, filiere, sexe,
                                        numero_dossier, ine, user_id, created_at)
                    VALUES(?,?,?,?,?,?,?,?,NULL,?)
                    """,
                    (
                        values["identifiant"], values["nom"], values["prenom"],
                        values["date_naissance"], values["filiere"], values["sexe"],
                        values["numero_dossier"], values["ine"], now_iso(),
                    ),
                )
                membre_id = int(cur.lastrowid)
        except sqlite3.IntegrityError:
            raise ValidationError("Cet identifiant existe déjà") from None
        self.database.changed("membres")
        logger.info("Membre %s created by %s", membre_id, actor_id)
        return self.get(membre_id)

    def update(self, actor: RoleContext, membre_id: int, form: MembreForm) -> Membre:
        actor_id = actor.require_admin()
        values = form.validate()
        self.get(membre_id)
        try:
            with self.database.connect() as con:
                con.execute(
                    """
                    UPDATE membres SET identifiant=?, nom=?, prenom=?, date_naissance=?,
                                       filiere=?, sexe=?, numero_dossier=?, ine=?
                    WHERE id=?
                    """,
                    (
                        values["identifiant"], values["nom"], values["prenom"],
                        values["date_naissance"], values["filiere"], values["sexe"],
                        values["numero_dossier"], values["ine"], int(membre_id),
                    ),
                )
        except sqlite3.IntegrityError:
            raise ValidationError("Cet identifiant est déjà utilisé par un autre membre") from None
        self.database.changed("membres")
        logger.info("Membre %s updated by %s", membre_id, actor_id)
        return self.get(membre_id)

    def delete(self, actor: RoleContext, membre_id: int) -> None:
        actor_id = actor.require_admin()
        with self.database.connect() as con:
            cur = con.execute("DELETE FROM membres WHERE id=?", (int(membre_id),))
            if cur.rowcount != 1:
                raise NotFoundError("Membre introuvable")
        self.database.changed("membres")
        logger.info("Membre %s deleted by %s", membre_id, actor_id)
