from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from sas_financier.exceptions import StoreError
from sas_financier.logging import get_logger

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    nom TEXT NOT NULL DEFAULT '',
    prenom TEXT NOT NULL DEFAULT '',
    profile_photo_url TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_roles (
    user_id INTEGER PRIMARY KEY,
    role TEXT NOT NULL CHECK (role IN ('president', 'tresorier', 'membre')),
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS membres (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    identifiant TEXT NOT NULL UNIQUE,
    nom TEXT NOT NULL,
    prenom TEXT NOT NULL,
    date_naissance TEXT NOT NULL,
    filiere TEXT NOT NULL,
    sexe TEXT NOT NULL CHECK (sexe IN ('M', 'F')),
    numero_dossier TEXT NOT NULL DEFAULT '',
    ine TEXT NOT NULL DEFAULT '',
    user_id INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL CHECK (type IN ('entree', 'sortie')),
    categorie TEXT NOT NULL,
    montant TEXT NOT NULL,
    libelle TEXT NOT NULL,
    date_transaction TEXT NOT NULL,
    statut TEXT NOT NULL DEFAULT 'en_attente'
        CHECK (statut IN ('en_attente', 'approuve', 'rejete')),
    created_by INTEGER NOT NULL,
    approuve_par INTEGER,
    matricule TEXT,
    numero_recu TEXT,
    responsable_fonction TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transactions_date
ON transactions(date_transaction);

CREATE INDEX IF NOT EXISTS idx_transactions_statut
ON transactions(statut);

CREATE TABLE IF NOT EXISTS receipts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transaction_id INTEGER NOT NULL,
    file_path TEXT NOT NULL,
    file_url TEXT NOT NULL,
    file_name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY(transaction_id) REFERENCES transactions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS community_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    edited INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS app_settings (
    setting_key TEXT PRIMARY KEY,
    setting_value TEXT NOT NULL
);
"""


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


# ============================================================
# Change notifications
# ============================================================
class ChangeNotifier:
    """In-process "something changed in table X" fan-out.

    Callbacks get the table name only. A notification may be delivered
    more than once for one logical change, so callbacks must be
    idempotent (typically: re-fetch).
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callable[[str], None]]] = {}

    def subscribe(self, table: str, callback: Callable[[str], None]) -> None:
        self._subscribers.setdefault(table, []).append(callback)

    def unsubscribe(self, table: str, callback: Callable[[str], None]) -> None:
        callbacks = self._subscribers.get(table, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def notify(self, table: str) -> None:
        for callback in list(self._subscribers.get(table, [])):
            try:
                callback(table)
            except Exception:
                logger.exception("Change callback failed for table %s", table)


# ============================================================
# DB
# ============================================================
class Database:
    def __init__(self, path: Path | str, notifier: Optional[ChangeNotifier] = None) -> None:
        self.path = Path(path)
        self.notifier = notifier or ChangeNotifier()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, always close.

        ``sqlite3.IntegrityError`` is re-raised untouched so callers can
        map constraint violations (duplicates) to validation messages;
        any other sqlite error becomes a ``StoreError``.
        """
        try:
            con = sqlite3.connect(self.path)
            con.row_factory = sqlite3.Row
            con.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            logger.exception("Cannot open database %s", self.path)
            raise StoreError("Base de données indisponible") from e
        try:
            yield con
            con.commit()
        except sqlite3.IntegrityError:
            con.rollback()
            raise
        except sqlite3.Error as e:
            con.rollback()
            logger.exception("Database operation failed")
            raise StoreError("Erreur lors de l'accès aux données") from e
        except BaseException:
            con.rollback()
            raise
        finally:
            con.close()

    def changed(self, *tables: str) -> None:
        for table in tables:
            self.notifier.notify(table)

    def init(self, default_app_name: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as con:
            con.executescript(SCHEMA)
            defaults = {
                "app_name": default_app_name,
                "app_logo_url": "",
            }
            for k, v in defaults.items():
                row = con.execute(
                    "SELECT setting_value FROM app_settings WHERE setting_key=?", (k,)
                ).fetchone()
                if not row:
                    con.execute(
                        "INSERT INTO app_settings(setting_key, setting_value) VALUES(?,?)", (k, v)
                    )
        logger.info("Database ready at %s", self.path)

    # ========================================================
    # Settings helpers
    # ========================================================
    def get_setting(self, key: str, default: str = "") -> str:
        with self.connect() as con:
            row = con.execute(
                "SELECT setting_value FROM app_settings WHERE setting_key=?", (key,)
            ).fetchone()
            return row["setting_value"] if row else default

    def set_setting(self, key: str, value: str) -> None:
        with self.connect() as con:
            con.execute(
                "INSERT INTO app_settings(setting_key, setting_value) VALUES(?,?) "
                "ON CONFLICT(setting_key) DO UPDATE SET setting_value=excluded.setting_value",
                (key, value),
            )
        self.changed("app_settings")

    def count(self, table: str) -> int:
        if table not in {"users", "membres", "transactions", "community_messages"}:
            raise ValueError(f"unknown table {table}")
        with self.connect() as con:
            return int(con.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"])
