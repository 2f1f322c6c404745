from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Optional

from sas_financier.transactions import Statut, Transaction, TransactionType

ZERO = Decimal("0")


@dataclass
class CategoryTotals:
    entrees: Decimal = ZERO
    sorties: Decimal = ZERO


@dataclass
class Aggregate:
    entrees: Decimal = ZERO
    sorties: Decimal = ZERO
    by_category: Dict[str, CategoryTotals] = field(default_factory=dict)
    count: int = 0
    pending_count: int = 0

    @property
    def solde(self) -> Decimal:
        return self.entrees - self.sorties


def aggregate(
    transactions: Iterable[Transaction],
    statut: Optional[Statut] = Statut.APPROUVE,
    user_id: Optional[int] = None,
) -> Aggregate:
    """Sum amounts per type and per category.

    Only transactions with ``statut`` are summed (``None`` keeps every
    status). With ``user_id`` only the rows created or decided by that
    user are kept. ``pending_count`` counts pending rows of the input
    before the status filter.
    """
    result = Aggregate()
    for t in transactions:
        if user_id is not None and user_id not in (t.created_by, t.approuve_par):
            continue
        if t.statut is Statut.EN_ATTENTE:
            result.pending_count += 1
        if statut is not None and t.statut is not statut:
            continue

        result.count += 1
        totals = result.by_category.setdefault(t.categorie, CategoryTotals())
        if t.type is TransactionType.ENTREE:
            result.entrees += t.montant
            totals.entrees += t.montant
        else:
            result.sorties += t.montant
            totals.sorties += t.montant
    return result


def format_xof(amount: Decimal | int) -> str:
    """French display of an XOF amount: ``1 234 567 F CFA``, ``12,50 F CFA``."""
    value = Decimal(amount)
    if value == value.to_integral_value():
        text = f"{int(value):,}".replace(",", " ")
    else:
        q = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        text = f"{q:,.2f}".replace(",", " ").replace(".", ",")
    return f"{text} F CFA"
