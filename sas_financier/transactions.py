"""Transactions: data model, store accessor and approval workflow.

Status lifecycle::

    en_attente --approve--> approuve
    en_attente --reject---> rejete

``approuve`` and ``rejete`` are terminal. Deletion is allowed at any
status, by an admin.
"""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, List, Optional

from sas_financier.db import Database, now_iso
from sas_financier.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from sas_financier.logging import get_logger
from sas_financier.roles import RoleContext
from sas_financier.storage import RECEIPT_EXTENSIONS, ObjectStore, file_extension

logger = get_logger(__name__)


class TransactionType(str, Enum):
    ENTREE = "entree"
    SORTIE = "sortie"

    @property
    def label(self) -> str:
        return "Entrée" if self is TransactionType.ENTREE else "Sortie"


class Statut(str, Enum):
    EN_ATTENTE = "en_attente"
    APPROUVE = "approuve"
    REJETE = "rejete"

    @property
    def label(self) -> str:
        return STATUT_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return self is not Statut.EN_ATTENTE


STATUT_LABELS = {
    Statut.EN_ATTENTE: "En attente",
    Statut.APPROUVE: "Approuvé",
    Statut.REJETE: "Rejeté",
}

ALLOWED_TRANSITIONS = {
    Statut.EN_ATTENTE: {Statut.APPROUVE, Statut.REJETE},
    Statut.APPROUVE: set(),
    Statut.REJETE: set(),
}

CATEGORIES = {
    TransactionType.ENTREE: ["Cotisation", "Don", "Sponsoring", "Vente", "Autre"],
    TransactionType.SORTIE: ["Logistique", "Événement", "Frais administratifs", "Matériel", "Autre"],
}

# Keeps every sum well inside the 28-digit decimal context.
MAX_MONTANT = Decimal("1e15")


def transition(current: Statut, target: Statut) -> Statut:
    """Return ``target`` if the move is allowed, raise otherwise."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Transition impossible : {current.label} → {target.label}"
        )
    return target


@dataclass(frozen=True)
class Transaction:
    id: int
    type: TransactionType
    categorie: str
    montant: Decimal
    libelle: str
    date_transaction: date
    statut: Statut
    created_by: int
    approuve_par: Optional[int] = None
    matricule: Optional[str] = None
    numero_recu: Optional[str] = None
    responsable_fonction: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Transaction":
        return cls(
            id=int(row["id"]),
            type=TransactionType(row["type"]),
            categorie=row["categorie"],
            montant=Decimal(row["montant"]),
            libelle=row["libelle"],
            date_transaction=date.fromisoformat(row["date_transaction"]),
            statut=Statut(row["statut"]),
            created_by=int(row["created_by"]),
            approuve_par=int(row["approuve_par"]) if row["approuve_par"] is not None else None,
            matricule=row["matricule"],
            numero_recu=row["numero_recu"],
            responsable_fonction=row["responsable_fonction"],
            created_at=row["created_at"],
        )


@dataclass
class TransactionDraft:
    """Unvalidated form input for a new transaction."""

    type: str
    categorie: str
    montant: str
    libelle: str
    date_transaction: str
    matricule: str = ""
    numero_recu: str = ""
    responsable_fonction: str = ""

    def validate(self) -> dict:
        try:
            tx_type = TransactionType(self.type.strip().lower())
        except ValueError:
            raise ValidationError("Type invalide (entrée ou sortie)") from None

        categorie = self.categorie.strip()
        if not categorie:
            raise ValidationError("La catégorie est obligatoire")
        libelle = self.libelle.strip()
        if not libelle:
            raise ValidationError("Le libellé est obligatoire")

        try:
            montant = Decimal(self.montant.strip().replace(" ", "").replace(",", "."))
        except (InvalidOperation, AttributeError):
            raise ValidationError("Montant invalide") from None
        if not montant.is_finite() or montant < 0:
            raise ValidationError("Montant invalide")
        if montant >= MAX_MONTANT:
            raise ValidationError("Montant trop élevé")
        if montant.as_tuple().exponent < -2:
            raise ValidationError("Montant invalide (2 décimales maximum)")
        if montant.as_tuple().exponent > 0:
            montant = montant.quantize(Decimal(1))

        try:
            d = date.fromisoformat(self.date_transaction.strip())
        except ValueError:
            raise ValidationError("Date invalide (AAAA-MM-JJ)") from None

        return {
            "type": tx_type.value,
            "categorie": categorie,
            "montant": str(montant),
            "libelle": libelle,
            "date_transaction": d.isoformat(),
            "matricule": self.matricule.strip() or None,
            "numero_recu": self.numero_recu.strip() or None,
            "responsable_fonction": self.responsable_fonction.strip() or None,
        }


@dataclass(frozen=True)
class Receipt:
    id: int
    transaction_id: int
    file_path: str
    file_url: str
    file_name: str
    created_at: str


# ============================================================
# Store accessor
# ============================================================
class TransactionStore:
    """Row-level access to the ``transactions`` table. No capability checks here."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def insert(self, values: dict, created_by: int) -> Transaction:
        with self.database.connect() as con:
            cur = con.execute(
                """
                INSERT INTO transactions(type, categorie, montant, libelle, date_transaction,
                                         statut, created_by, approuve_par, matricule,
                                         numero_recu, responsable_fonction, created_at)
                VALUES(?,?,?,?,?,?,?,NULL,?,?,?,?)
                """,
                (
                    values["type"], values["categorie"], values["montant"], values["libelle"],
                    values["date_transaction"], Statut.EN_ATTENTE.value, int(created_by),
                    values.get("matricule"), values.get("numero_recu"),
                    values.get("responsable_fonction"), now_iso(),
                ),
            )
            tx_id = int(cur.lastrowid)
        self.database.changed("transactions")
        return self.get(tx_id)

    def get(self, tx_id: int) -> Transaction:
        with self.database.connect() as con:
            row = con.execute("SELECT * FROM transactions WHERE id=?", (int(tx_id),)).fetchone()
        if not row:
            raise NotFoundError("Transaction introuvable")
        return Transaction.from_row(row)

    def list(
        self,
        statut: Optional[Statut] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        user_id: Optional[int] = None,
        limit: Optional[int] = None,
        order: str = "created",
    ) -> List[Transaction]:
        clauses = []
        params: list = []
        if statut is not None:
            clauses.append("statut = ?")
            params.append(statut.value)
        if start is not None:
            clauses.append("date_transaction >= ?")
            params.append(start.isoformat())
        if end is not None:
            clauses.append("date_transaction <= ?")
            params.append(end.isoformat())
        if user_id is not None:
            clauses.append("(created_by = ? OR approuve_par = ?)")
            params.extend([int(user_id), int(user_id)])

        sql = "SELECT * FROM transactions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if order == "date":
            sql += " ORDER BY date_transaction DESC, id DESC"
        else:
            sql += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self.database.connect() as con:
            rows = con.execute(sql, params).fetchall()
        return [Transaction.from_row(r) for r in rows]

    def update_status(self, tx_id: int, new: Statut, expected: Statut, actor_id: int) -> bool:
        """Compare-and-set the status. Returns False when the row is no
        longer in ``expected`` (someone else moved it first)."""
        with self.database.connect() as con:
            cur = con.execute(
                "UPDATE transactions SET statut=?, approuve_par=? WHERE id=? AND statut=?",
                (new.value, int(actor_id), int(tx_id), expected.value),
            )
            updated = cur.rowcount == 1
        if updated:
            self.database.changed("transactions")
        return updated

    def delete(self, tx_id: int) -> bool:
        with self.database.connect() as con:
            cur = con.execute("DELETE FROM transactions WHERE id=?", (int(tx_id),))
            deleted = cur.rowcount == 1
        if deleted:
            self.database.changed("transactions", "receipts")
        return deleted

    def add_receipt(self, tx_id: int, file_path: str, file_url: str, file_name: str) -> Receipt:
        with self.database.connect() as con:
            cur = con.execute(
                "INSERT INTO receipts(transaction_id, file_path, file_url, file_name, created_at) "
                "VALUES(?,?,?,?,?)",
                (int(tx_id), file_path, file_url, file_name, now_iso()),
            )
            rid = int(cur.lastrowid)
            row = con.execute("SELECT * FROM receipts WHERE id=?", (rid,)).fetchone()
        self.database.changed("receipts")
        return Receipt(**dict(row))

    def receipts(self, tx_id: Optional[int] = None) -> List[Receipt]:
        with self.database.connect() as con:
            if tx_id is None:
                rows = con.execute("SELECT * FROM receipts ORDER BY id").fetchall()
            else:
                rows = con.execute(
                    "SELECT * FROM receipts WHERE transaction_id=? ORDER BY id", (int(tx_id),)
                ).fetchall()
        return [Receipt(**dict(r)) for r in rows]


# ============================================================
# Approval workflow
# ============================================================
@dataclass
class ApprovalWorkflow:
    """Capability-checked operations on transactions.

    Each call re-checks the actor's capability before touching the
    store. Status updates are conditional on the row still being
    pending, so of two admins deciding the same transaction at once
    exactly one wins and the other gets ``InvalidTransitionError``.
    """

    store: TransactionStore
    objects: Optional[ObjectStore] = None
    clock: Callable[[], float] = field(default=time.time, repr=False)

    def create(self, actor: RoleContext, draft: TransactionDraft) -> Transaction:
        actor_id = actor.require_tresorier()
        values = draft.validate()
        tx = self.store.insert(values, created_by=actor_id)
        logger.info(
            "Transaction %s created by %s (%s %s)", tx.id, actor_id, tx.type.value, tx.montant
        )
        return tx

    def approve(self, actor: RoleContext, tx_id: int) -> Transaction:
        return self._decide(actor, tx_id, Statut.APPROUVE)

    def reject(self, actor: RoleContext, tx_id: int) -> Transaction:
        return self._decide(actor, tx_id, Statut.REJETE)

    def _decide(self, actor: RoleContext, tx_id: int, target: Statut) -> Transaction:
        actor_id = actor.require_admin()
        current = self.store.get(tx_id)
        transition(current.statut, target)
        if not self.store.update_status(tx_id, target, expected=current.statut, actor_id=actor_id):
            latest = self.store.get(tx_id)
            logger.warning(
                "Transaction %s already decided (%s) when user %s tried %s",
                tx_id, latest.statut.value, actor_id, target.value,
            )
            transition(latest.statut, target)
        logger.info("Transaction %s %s by %s", tx_id, target.value, actor_id)
        return self.store.get(tx_id)

    def delete(self, actor: RoleContext, tx_id: int) -> None:
        actor_id = actor.require_admin()
        receipts = self.store.receipts(tx_id)
        if not self.store.delete(tx_id):
            raise NotFoundError("Transaction introuvable")
        if self.objects is not None and receipts:
            self.objects.remove(r.file_path for r in receipts)
        logger.info("Transaction %s deleted by %s", tx_id, actor_id)

    def attach_receipt(
        self, actor: RoleContext, tx_id: int, file_name: str, data: bytes
    ) -> Receipt:
        actor.require_tresorier()
        if self.objects is None:
            raise ValidationError("Stockage des pièces justificatives indisponible")
        ext = file_extension(file_name, RECEIPT_EXTENSIONS)
        self.store.get(tx_id)
        path = f"receipts/{int(tx_id)}-{int(self.clock() * 1000)}{ext}"
        self.objects.upload(path, data)
        return self.store.add_receipt(tx_id, path, self.objects.get_public_url(path), file_name)
