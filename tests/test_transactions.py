"""Tests for the transaction store and the approval workflow."""

import threading
from datetime import date
from decimal import Decimal
from itertools import product
from typing import List

import pytest

from sas_financier.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from sas_financier.roles import ANONYMOUS, RoleContext
from sas_financier.storage import ObjectStore
from sas_financier.transactions import (
    ALLOWED_TRANSITIONS,
    ApprovalWorkflow,
    Statut,
    TransactionDraft,
    TransactionStore,
    TransactionType,
    transition,
)


def draft(**overrides: str) -> TransactionDraft:
    values = dict(
        type="entree",
        categorie="Cotisation",
        montant="1000",
        libelle="Cotisation octobre",
        date_transaction="2025-10-05",
    )
    values.update(overrides)
    return TransactionDraft(**values)


class TestTransactionDraft:
    """Tests for input validation."""

    def test_valid(self) -> None:
        values = draft(
            montant=" 1 500,50 ", matricule="MAT-1", numero_recu="R-9", responsable_fonction=""
        ).validate()

        assert values["type"] == "entree"
        assert values["montant"] == "1500.50"
        assert values["date_transaction"] == "2025-10-05"
        assert values["matricule"] == "MAT-1"
        assert values["numero_recu"] == "R-9"
        assert values["responsable_fonction"] is None

    def test_zero_is_allowed(self) -> None:
        assert draft(montant="0").validate()["montant"] == "0"

    def test_exponent_is_expanded(self) -> None:
        assert draft(montant="1E+3").validate()["montant"] == "1000"

    @pytest.mark.parametrize("montant", ["-5", "abc", "", "NaN", "Infinity", "10.555"])
    def test_invalid_amount(self, montant: str) -> None:
        with pytest.raises(ValidationError, match="Montant invalide"):
            draft(montant=montant).validate()

    @pytest.mark.parametrize("montant", ["1E+28", "1" * 29, "1000000000000000"])
    def test_amount_too_large(self, montant: str) -> None:
        with pytest.raises(ValidationError, match="Montant trop élevé"):
            draft(montant=montant).validate()

    def test_largest_amount(self) -> None:
        assert draft(montant="999999999999999.99").validate()["montant"] == "999999999999999.99"

    def test_invalid_type(self) -> None:
        with pytest.raises(ValidationError, match="Type invalide"):
            draft(type="virement").validate()

    def test_type_is_case_insensitive(self) -> None:
        assert draft(type=" SORTIE ").validate()["type"] == "sortie"

    @pytest.mark.parametrize("field", ["categorie", "libelle"])
    def test_required_text(self, field: str) -> None:
        with pytest.raises(ValidationError, match="obligatoire"):
            draft(**{field: "   "}).validate()

    def test_invalid_date(self) -> None:
        with pytest.raises(ValidationError, match="Date invalide"):
            draft(date_transaction="05/10/2025").validate()


class TestTransition:
    """Tests for the transition function."""

    def test_allowed(self) -> None:
        assert transition(Statut.EN_ATTENTE, Statut.APPROUVE) is Statut.APPROUVE
        assert transition(Statut.EN_ATTENTE, Statut.REJETE) is Statut.REJETE

    @pytest.mark.parametrize("current,target", list(product(Statut, Statut)))
    def test_matrix(self, current: Statut, target: Statut) -> None:
        if target in ALLOWED_TRANSITIONS[current]:
            assert transition(current, target) is target
        else:
            with pytest.raises(InvalidTransitionError):
                transition(current, target)

    def test_nothing_returns_to_pending(self) -> None:
        assert all(Statut.EN_ATTENTE not in targets for targets in ALLOWED_TRANSITIONS.values())

    def test_terminal_states(self) -> None:
        assert not Statut.EN_ATTENTE.is_terminal
        assert Statut.APPROUVE.is_terminal
        assert Statut.REJETE.is_terminal


class TestCreate:
    """Tests for ApprovalWorkflow.create."""

    def test_tresorier_creates_pending(
        self, workflow: ApprovalWorkflow, tresorier: RoleContext
    ) -> None:
        tx = workflow.create(tresorier, draft(montant="2500.75"))

        assert tx.statut is Statut.EN_ATTENTE
        assert tx.created_by == tresorier.user_id
        assert tx.approuve_par is None
        assert tx.type is TransactionType.ENTREE
        assert tx.montant == Decimal("2500.75")
        assert tx.date_transaction == date(2025, 10, 5)

    @pytest.mark.parametrize("who", ["president", "membre"])
    def test_others_cannot_create(
        self, request: pytest.FixtureRequest, workflow: ApprovalWorkflow, store: TransactionStore, who: str
    ) -> None:
        actor = request.getfixturevalue(who)

        with pytest.raises(PermissionDenied):
            workflow.create(actor, draft())

        assert store.list() == []

    def test_anonymous_cannot_create(self, workflow: ApprovalWorkflow) -> None:
        with pytest.raises(PermissionDenied):
            workflow.create(ANONYMOUS, draft())

    def test_invalid_draft_writes_nothing(
        self, workflow: ApprovalWorkflow, store: TransactionStore, tresorier: RoleContext
    ) -> None:
        with pytest.raises(ValidationError):
            workflow.create(tresorier, draft(montant="-1"))

        assert store.list() == []


class TestDecisions:
    """Tests for approve / reject."""

    def test_approve(
        self, workflow: ApprovalWorkflow, tresorier: RoleContext, president: RoleContext
    ) -> None:
        tx = workflow.create(tresorier, draft())

        approved = workflow.approve(president, tx.id)

        assert approved.statut is Statut.APPROUVE
        assert approved.approuve_par == president.user_id

    def test_tresorier_can_decide(self, workflow: ApprovalWorkflow, tresorier: RoleContext) -> None:
        tx = workflow.create(tresorier, draft())

        rejected = workflow.reject(tresorier, tx.id)

        assert rejected.statut is Statut.REJETE
        assert rejected.approuve_par == tresorier.user_id

    def test_membre_cannot_decide(
        self,
        workflow: ApprovalWorkflow,
        store: TransactionStore,
        tresorier: RoleContext,
        membre: RoleContext,
    ) -> None:
        tx = workflow.create(tresorier, draft())

        with pytest.raises(PermissionDenied):
            workflow.approve(membre, tx.id)
        with pytest.raises(PermissionDenied):
            workflow.reject(membre, tx.id)

        assert store.get(tx.id).statut is Statut.EN_ATTENTE

    def test_decision_is_final(
        self,
        workflow: ApprovalWorkflow,
        store: TransactionStore,
        tresorier: RoleContext,
        president: RoleContext,
    ) -> None:
        tx = workflow.create(tresorier, draft())
        workflow.approve(president, tx.id)

        with pytest.raises(InvalidTransitionError):
            workflow.reject(president, tx.id)
        with pytest.raises(InvalidTransitionError):
            workflow.approve(tresorier, tx.id)

        final = store.get(tx.id)
        assert final.statut is Statut.APPROUVE
        assert final.approuve_par == president.user_id

    def test_unknown_transaction(self, workflow: ApprovalWorkflow, president: RoleContext) -> None:
        with pytest.raises(NotFoundError):
            workflow.approve(president, 12345)

    def test_compare_and_set(self, store: TransactionStore, workflow: ApprovalWorkflow, tresorier: RoleContext) -> None:
        tx = workflow.create(tresorier, draft())

        assert store.update_status(tx.id, Statut.APPROUVE, expected=Statut.EN_ATTENTE, actor_id=1)
        assert not store.update_status(tx.id, Statut.REJETE, expected=Statut.EN_ATTENTE, actor_id=2)
        assert store.get(tx.id).statut is Statut.APPROUVE

    def test_concurrent_reject_and_approve(
        self,
        workflow: ApprovalWorkflow,
        store: TransactionStore,
        tresorier: RoleContext,
        president: RoleContext,
    ) -> None:
        """Exactly one decision lands; which one is not specified."""
        tx = workflow.create(tresorier, draft())
        barrier = threading.Barrier(2)
        outcomes: List[object] = []

        def decide(action) -> None:
            barrier.wait()
            try:
                outcomes.append(action(president, tx.id).statut)
            except InvalidTransitionError as e:
                outcomes.append(e)

        threads = [
            threading.Thread(target=decide, args=(workflow.reject,)),
            threading.Thread(target=decide, args=(workflow.approve,)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final = store.get(tx.id).statut
        assert final in (Statut.APPROUVE, Statut.REJETE)
        assert len(outcomes) == 2
        assert sum(isinstance(o, InvalidTransitionError) for o in outcomes) <= 1
        assert final in outcomes


class TestDelete:
    """Tests for deletion and receipts."""

    def test_admin_deletes_any_status(
        self,
        workflow: ApprovalWorkflow,
        store: TransactionStore,
        tresorier: RoleContext,
        president: RoleContext,
    ) -> None:
        tx = workflow.create(tresorier, draft())
        workflow.approve(president, tx.id)

        workflow.delete(president, tx.id)

        with pytest.raises(NotFoundError):
            store.get(tx.id)

    def test_membre_cannot_delete(
        self,
        workflow: ApprovalWorkflow,
        store: TransactionStore,
        tresorier: RoleContext,
        membre: RoleContext,
    ) -> None:
        tx = workflow.create(tresorier, draft())

        with pytest.raises(PermissionDenied):
            workflow.delete(membre, tx.id)

        assert store.get(tx.id).id == tx.id

    def test_delete_unknown(self, workflow: ApprovalWorkflow, president: RoleContext) -> None:
        with pytest.raises(NotFoundError):
            workflow.delete(president, 404)

    def test_attach_receipt(
        self, workflow: ApprovalWorkflow, store: TransactionStore, objects: ObjectStore, tresorier: RoleContext
    ) -> None:
        tx = workflow.create(tresorier, draft())

        receipt = workflow.attach_receipt(tresorier, tx.id, "facture.PDF", b"%PDF-1.4")

        assert receipt.file_path == f"receipts/{tx.id}-1700000000000.pdf"
        assert receipt.file_url == f"/files/receipts/{tx.id}-1700000000000.pdf"
        assert receipt.file_name == "facture.PDF"
        assert objects.exists(receipt.file_path)
        assert store.receipts(tx.id) == [receipt]

    def test_attach_receipt_rejects_bad_type(
        self, workflow: ApprovalWorkflow, tresorier: RoleContext
    ) -> None:
        tx = workflow.create(tresorier, draft())

        with pytest.raises(ValidationError):
            workflow.attach_receipt(tresorier, tx.id, "virus.exe", b"MZ")

    def test_attach_receipt_requires_tresorier(
        self, workflow: ApprovalWorkflow, tresorier: RoleContext, president: RoleContext
    ) -> None:
        tx = workflow.create(tresorier, draft())

        with pytest.raises(PermissionDenied):
            workflow.attach_receipt(president, tx.id, "recu.pdf", b"%PDF")

    def test_delete_removes_receipt_objects(
        self,
        workflow: ApprovalWorkflow,
        store: TransactionStore,
        objects: ObjectStore,
        tresorier: RoleContext,
        president: RoleContext,
    ) -> None:
        tx = workflow.create(tresorier, draft())
        receipt = workflow.attach_receipt(tresorier, tx.id, "recu.png", b"png")

        workflow.delete(president, tx.id)

        assert not objects.exists(receipt.file_path)
        assert store.receipts() == []


class TestStoreList:
    """Tests for TransactionStore.list filters."""

    @pytest.fixture
    def seeded(
        self, workflow: ApprovalWorkflow, tresorier: RoleContext, president: RoleContext
    ) -> List[int]:
        a = workflow.create(tresorier, draft(date_transaction="2025-09-30"))
        b = workflow.create(tresorier, draft(date_transaction="2025-10-01", type="sortie"))
        c = workflow.create(tresorier, draft(date_transaction="2025-10-31"))
        workflow.approve(president, a.id)
        workflow.approve(president, c.id)
        return [a.id, b.id, c.id]

    def test_newest_first(self, store: TransactionStore, seeded: List[int]) -> None:
        assert [t.id for t in store.list()] == list(reversed(seeded))

    def test_by_statut(self, store: TransactionStore, seeded: List[int]) -> None:
        assert {t.id for t in store.list(statut=Statut.APPROUVE)} == {seeded[0], seeded[2]}

    def test_date_range_is_inclusive(self, store: TransactionStore, seeded: List[int]) -> None:
        txs = store.list(start=date(2025, 10, 1), end=date(2025, 10, 31), order="date")

        assert [t.id for t in txs] == [seeded[2], seeded[1]]

    def test_by_user(
        self, store: TransactionStore, seeded: List[int], president: RoleContext, membre: RoleContext
    ) -> None:
        assert {t.id for t in store.list(user_id=president.user_id)} == {seeded[0], seeded[2]}
        assert store.list(user_id=membre.user_id) == []

    def test_limit(self, store: TransactionStore, seeded: List[int]) -> None:
        assert len(store.list(limit=2)) == 2
