"""Monthly and yearly reports over approved transactions, with CSV,
printable HTML and Excel exports."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import MAXYEAR, MINYEAR, date, datetime
from io import BytesIO
from typing import List, Optional, Tuple

from jinja2 import Environment, BaseLoader, select_autoescape

from sas_financier.aggregation import Aggregate, aggregate, format_xof
from sas_financier.exceptions import EmptyReportError, ValidationError
from sas_financier.transactions import Statut, Transaction, TransactionStore

MOIS = [
    "janvier", "février", "mars", "avril", "mai", "juin",
    "juillet", "août", "septembre", "octobre", "novembre", "décembre",
]

CSV_HEADERS = ["Date", "Type", "Catégorie", "Libellé", "Montant", "Statut", "Numéro de reçu"]

MENSUEL = "mensuel"
ANNUEL = "annuel"


def _check_year(year: int) -> None:
    if not MINYEAR <= year <= MAXYEAR:
        raise ValidationError("Année invalide")


@dataclass(frozen=True)
class Period:
    kind: str
    year: int
    month: Optional[int] = None

    @classmethod
    def monthly(cls, year: int, month: int) -> "Period":
        _check_year(year)
        if not 1 <= month <= 12:
            raise ValidationError("Mois invalide")
        return cls(MENSUEL, year, month)

    @classmethod
    def yearly(cls, year: int) -> "Period":
        _check_year(year)
        return cls(ANNUEL, year)

    @classmethod
    def parse(cls, kind: str, value: str) -> "Period":
        """``("mensuel", "2025-10")`` or ``("annuel", "2025")``."""
        kind = (kind or "").strip().lower()
        value = (value or "").strip()
        try:
            if kind == MENSUEL:
                y, m = value.split("-")
                return cls.monthly(int(y), int(m))
            if kind == ANNUEL:
                return cls.yearly(int(value))
        except ValueError:
            raise ValidationError(f"Période invalide: {value}") from None
        raise ValidationError(f"Type de rapport invalide: {kind}")

    @classmethod
    def current(cls, kind: str, today: date) -> "Period":
        if kind == ANNUEL:
            return cls.yearly(today.year)
        return cls.monthly(today.year, today.month)

    def bounds(self) -> Tuple[date, date]:
        if self.kind == MENSUEL:
            last = calendar.monthrange(self.year, self.month)[1]
            return date(self.year, self.month, 1), date(self.year, self.month, last)
        return date(self.year, 1, 1), date(self.year, 12, 31)

    @property
    def value(self) -> str:
        if self.kind == MENSUEL:
            return f"{self.year:04d}-{self.month:02d}"
        return f"{self.year:04d}"

    @property
    def label(self) -> str:
        if self.kind == MENSUEL:
            return f"{MOIS[self.month - 1]} {self.year}"
        return str(self.year)

    @property
    def title(self) -> str:
        return ("Rapport Mensuel" if self.kind == MENSUEL else "Rapport Annuel") + f" - {self.label}"

    @property
    def slug(self) -> str:
        return f"{self.kind}_{self.value}"


def recent_months(today: date, count: int = 12) -> List[Period]:
    out = []
    y, m = today.year, today.month
    for _ in range(count):
        out.append(Period.monthly(y, m))
        if m == 1:
            y -= 1
            m = 12
        else:
            m -= 1
    return out


def recent_years(today: date, count: int = 5) -> List[Period]:
    return [Period.yearly(today.year - i) for i in range(count)]


@dataclass
class Report:
    period: Period
    transactions: List[Transaction]
    totals: Aggregate

    @property
    def is_empty(self) -> bool:
        return not self.transactions

    def ensure_not_empty(self) -> None:
        if self.is_empty:
            raise EmptyReportError("Aucune transaction à exporter")


def build_report(store: TransactionStore, period: Period) -> Report:
    start, end = period.bounds()
    txs = store.list(statut=Statut.APPROUVE, start=start, end=end, order="date")
    return Report(period=period, transactions=txs, totals=aggregate(txs))


# ============================================================
# CSV
# ============================================================
def _quote(cell: object) -> str:
    return '"' + str(cell).replace('"', '""') + '"'


def csv_filename(period: Period) -> str:
    return f"rapport_{period.slug}.csv"


def to_csv(report: Report) -> str:
    report.ensure_not_empty()
    rows = [CSV_HEADERS]
    for t in report.transactions:
        rows.append([
            t.date_transaction.strftime("%d/%m/%Y"),
            t.type.label,
            t.categorie,
            t.libelle,
            str(t.montant),
            t.statut.value,
            t.numero_recu or "",
        ])
    return "\n".join(",".join(_quote(c) for c in row) for row in rows)


# ============================================================
# Printable report (browser print-to-PDF)
# ============================================================
env = Environment(loader=BaseLoader(), autoescape=select_autoescape(default_for_string=True))
env.filters["xof"] = format_xof

PRINTABLE = """<!DOCTYPE html>
<html lang="fr">
<head>
  <meta charset="UTF-8">
  <title>{{ period.title }}</title>
  <style>
    body{font-family: Arial, sans-serif; padding:20px; color:#333}
    h1{color:#2563eb; border-bottom:2px solid #2563eb; padding-bottom:10px}
    .stats{display:grid; grid-template-columns:repeat(3, 1fr); gap:20px; margin:20px 0}
    .stat-card{background:#f3f4f6; padding:15px; border-radius:8px; text-align:center}
    .stat-value{font-size:24px; font-weight:bold; color:#2563eb}
    .stat-label{font-size:12px; color:#6b7280; margin-top:5px}
    table{width:100%; border-collapse:collapse; margin-top:20px}
    th, td{border:1px solid #ddd; padding:8px; text-align:left}
    th{background-color:#2563eb; color:white}
    tr:nth-child(even){background-color:#f9fafb}
    .num{text-align:right; font-variant-numeric:tabular-nums}
    .footer{margin-top:30px; text-align:center; color:#6b7280; font-size:12px}
    @media print{ .noprint{display:none} }
  </style>
</head>
<body>
  <button class="noprint" onclick="window.print()">Imprimer / PDF</button>
  <h1>{{ period.title }}</h1>

  <div class="stats">
    <div class="stat-card"><div class="stat-value">{{ totals.entrees|xof }}</div><div class="stat-label">Total Entrées</div></div>
    <div class="stat-card"><div class="stat-value">{{ totals.sorties|xof }}</div><div class="stat-label">Total Sorties</div></div>
    <div class="stat-card"><div class="stat-value">{{ totals.solde|xof }}</div><div class="stat-label">Solde</div></div>
  </div>

  {% if totals.by_category %}
  <h2>Résumé par catégorie</h2>
  <table>
    <thead><tr><th>Catégorie</th><th>Entrées</th><th>Sorties</th></tr></thead>
    <tbody>
    {% for cat, amounts in totals.by_category.items() %}
      <tr><td>{{ cat }}</td><td class="num">{{ amounts.entrees|xof }}</td><td class="num">{{ amounts.sorties|xof }}</td></tr>
    {% endfor %}
    </tbody>
  </table>
  {% endif %}

  <h2>Détail des transactions</h2>
  <table>
    <thead><tr><th>Date</th><th>Type</th><th>Catégorie</th><th>Libellé</th><th>Montant</th></tr></thead>
    <tbody>
    {% for t in transactions %}
      <tr>
        <td>{{ t.date_transaction.strftime("%d/%m/%Y") }}</td>
        <td>{{ t.type.label }}</td>
        <td>{{ t.categorie }}</td>
        <td>{{ t.libelle }}</td>
        <td class="num">{{ t.montant|xof }}</td>
      </tr>
    {% endfor %}
    </tbody>
  </table>

  <div class="footer">
    <p>Généré le {{ generated }}</p>
    <p>{{ app_name }} - Système de gestion financière associative</p>
  </div>
  <script>window.addEventListener("load", ()=>setTimeout(()=>window.print(), 250));</script>
</body>
</html>
"""


def french_datetime(dt: datetime) -> str:
    return f"{dt.day:02d} {MOIS[dt.month - 1]} {dt.year} à {dt:%H:%M}"


def to_printable_html(report: Report, app_name: str, now: Optional[datetime] = None) -> str:
    report.ensure_not_empty()
    tpl = env.from_string(PRINTABLE)
    return tpl.render(
        period=report.period,
        totals=report.totals,
        transactions=report.transactions,
        app_name=app_name,
        generated=french_datetime(now or datetime.now()),
    )


# ============================================================
# Excel
# ============================================================
def xlsx_filename(period: Period) -> str:
    return f"rapport_{period.slug}.xlsx"


def to_xlsx(report: Report) -> bytes:
    from openpyxl import Workbook

    report.ensure_not_empty()
    totals = report.totals

    wb = Workbook()
    ws1 = wb.active
    ws1.title = "Résumé"
    ws1.append(["Période", report.period.label])
    ws1.append(["Total entrées", totals.entrees])
    ws1.append(["Total sorties", totals.sorties])
    ws1.append(["Solde", totals.solde])
    ws1.append([])
    ws1.append(["Catégorie", "Entrées", "Sorties"])
    for cat, amounts in totals.by_category.items():
        ws1.append([cat, amounts.entrees, amounts.sorties])

    ws2 = wb.create_sheet("Transactions")
    ws2.append(CSV_HEADERS)
    for t in report.transactions:
        ws2.append([
            t.date_transaction, t.type.label, t.categorie, t.libelle,
            t.montant, t.statut.value, t.numero_recu or "",
        ])

    bio = BytesIO()
    wb.save(bio)
    return bio.getvalue()
