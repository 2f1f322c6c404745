"""Pytest configuration and fixtures."""

from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Iterator, Optional

import pytest
from fastapi.testclient import TestClient

from sas_financier.auth import Accounts, User
from sas_financier.community import Community
from sas_financier.config import AppConfig
from sas_financier.db import ChangeNotifier, Database
from sas_financier.members import MemberRegistry, MembreForm
from sas_financier.roles import Role, RoleContext, assign_role, resolve_role
from sas_financier.settings import AppSettings
from sas_financier.storage import ObjectStore
from sas_financier.transactions import (
    ApprovalWorkflow,
    Statut,
    Transaction,
    TransactionStore,
    TransactionType,
)
from sas_financier.web import create_app

PASSWORD = "secret123"


@pytest.fixture
def notifier() -> ChangeNotifier:
    return ChangeNotifier()


@pytest.fixture
def database(tmp_path: Path, notifier: ChangeNotifier) -> Database:
    """Fresh, initialised SQLite database."""
    db = Database(tmp_path / "test.db", notifier)
    db.init("SAS Test")
    return db


@pytest.fixture
def objects(tmp_path: Path) -> ObjectStore:
    return ObjectStore(tmp_path / "files")


@pytest.fixture
def members(database: Database) -> MemberRegistry:
    return MemberRegistry(database)


@pytest.fixture
def accounts(database: Database, members: MemberRegistry, objects: ObjectStore) -> Accounts:
    return Accounts(database, members, objects)


@pytest.fixture
def store(database: Database) -> TransactionStore:
    return TransactionStore(database)


@pytest.fixture
def workflow(store: TransactionStore, objects: ObjectStore) -> ApprovalWorkflow:
    return ApprovalWorkflow(store, objects, clock=lambda: 1700000000.0)


@pytest.fixture
def app_settings(database: Database, objects: ObjectStore) -> Iterator[AppSettings]:
    settings = AppSettings(database, "SAS Test", objects)
    yield settings
    settings.close()


@pytest.fixture
def community(database: Database) -> Community:
    return Community(database)


def membre_form(identifiant: str, nom: str, prenom: str, **overrides: str) -> MembreForm:
    values = dict(
        identifiant=identifiant,
        nom=nom,
        prenom=prenom,
        date_naissance="2001-05-14",
        filiere="INFORMATIQUE DE GESTION",
        niveau="L2",
        sexe="M",
    )
    values.update(overrides)
    return MembreForm(**values)


def register(
    members: MemberRegistry,
    accounts: Accounts,
    president: RoleContext,
    identifiant: str,
    nom: str,
    prenom: str,
    email: str,
) -> User:
    """Add a membre as the president, then sign the membre up."""
    members.create(president, membre_form(identifiant, nom, prenom))
    return accounts.sign_up(email, PASSWORD, PASSWORD, nom, prenom)


@pytest.fixture
def president(accounts: Accounts, database: Database) -> RoleContext:
    user = accounts.ensure_bootstrap_admin("president@sas.local", PASSWORD)
    return resolve_role(database, user.id)


@pytest.fixture
def tresorier(
    accounts: Accounts, members: MemberRegistry, database: Database, president: RoleContext
) -> RoleContext:
    user = register(members, accounts, president, "M-001", "Ndiaye", "Awa", "awa@sas.local")
    assign_role(database, user.id, Role.TRESORIER)
    return resolve_role(database, user.id)


@pytest.fixture
def membre(
    accounts: Accounts, members: MemberRegistry, database: Database, president: RoleContext
) -> RoleContext:
    user = register(members, accounts, president, "M-002", "Fall", "Moussa", "moussa@sas.local")
    return resolve_role(database, user.id)


def make_tx(
    tx_id: int,
    tx_type: TransactionType,
    montant: str,
    statut: Statut = Statut.APPROUVE,
    categorie: str = "Cotisation",
    created_by: int = 1,
    approuve_par: Optional[int] = None,
    day: date = date(2025, 10, 1),
) -> Transaction:
    return Transaction(
        id=tx_id,
        type=tx_type,
        categorie=categorie,
        montant=Decimal(montant),
        libelle=f"Opération {tx_id}",
        date_transaction=day,
        statut=statut,
        created_by=created_by,
        approuve_par=approuve_par,
    )


# ============================================================
# HTTP
# ============================================================
ADMIN_EMAIL = "admin@test.local"
ADMIN_PASSWORD = "admin1234"


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        db_path=tmp_path / "web.db",
        upload_dir=tmp_path / "uploads",
        secret_key="test-secret",
        default_app_name="SAS Web",
        bootstrap_email=ADMIN_EMAIL,
        bootstrap_password=ADMIN_PASSWORD,
    )


@pytest.fixture
def app(app_config: AppConfig):
    return create_app(app_config)


@pytest.fixture
def client(app) -> Iterator[TestClient]:
    with TestClient(app) as c:
        yield c


def login(client: TestClient, email: str, password: str):
    return client.post(
        "/auth/signin", data={"email": email, "password": password}, follow_redirects=False
    )
