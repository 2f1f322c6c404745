"""Tests for report periods and exports."""

import csv
import io
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

import pytest
from openpyxl import load_workbook

from conftest import make_tx
from sas_financier.aggregation import aggregate
from sas_financier.exceptions import EmptyReportError, ValidationError
from sas_financier.reports import (
    CSV_HEADERS,
    Period,
    Report,
    build_report,
    csv_filename,
    french_datetime,
    recent_months,
    recent_years,
    to_csv,
    to_printable_html,
    to_xlsx,
    xlsx_filename,
)
from sas_financier.roles import RoleContext
from sas_financier.transactions import (
    ApprovalWorkflow,
    TransactionDraft,
    TransactionStore,
    TransactionType,
)

OCTOBRE = Period.monthly(2025, 10)


def report_of(txs, period: Period = OCTOBRE) -> Report:
    return Report(period=period, transactions=txs, totals=aggregate(txs))


class TestPeriod:
    """Tests for Period."""

    def test_monthly(self) -> None:
        assert OCTOBRE.bounds() == (date(2025, 10, 1), date(2025, 10, 31))
        assert OCTOBRE.label == "octobre 2025"
        assert OCTOBRE.title == "Rapport Mensuel - octobre 2025"
        assert OCTOBRE.slug == "mensuel_2025-10"
        assert OCTOBRE.value == "2025-10"

    def test_leap_february(self) -> None:
        assert Period.monthly(2024, 2).bounds()[1] == date(2024, 2, 29)

    def test_yearly(self) -> None:
        period = Period.yearly(2025)

        assert period.bounds() == (date(2025, 1, 1), date(2025, 12, 31))
        assert period.label == "2025"
        assert period.title == "Rapport Annuel - 2025"
        assert period.slug == "annuel_2025"

    def test_parse(self) -> None:
        assert Period.parse("mensuel", "2025-10") == OCTOBRE
        assert Period.parse("ANNUEL", "2024") == Period.yearly(2024)

    @pytest.mark.parametrize(
        "kind,value", [
            ("mensuel", "2025"),
            ("mensuel", "2025-13"),
            ("mensuel", "0-05"),
            ("annuel", "deux"),
            ("annuel", "0"),
            ("annuel", "10000"),
            ("hebdo", "2025"),
        ]
    )
    def test_parse_invalid(self, kind: str, value: str) -> None:
        with pytest.raises(ValidationError):
            Period.parse(kind, value)

    def test_current(self) -> None:
        today = date(2025, 10, 19)

        assert Period.current("mensuel", today) == OCTOBRE
        assert Period.current("annuel", today) == Period.yearly(2025)

    def test_recent_months_cross_year(self) -> None:
        values = [p.value for p in recent_months(date(2025, 2, 10), count=3)]

        assert values == ["2025-02", "2025-01", "2024-12"]

    def test_recent_years(self) -> None:
        assert [p.value for p in recent_years(date(2025, 6, 1), count=3)] == ["2025", "2024", "2023"]

    def test_filenames(self) -> None:
        assert csv_filename(OCTOBRE) == "rapport_mensuel_2025-10.csv"
        assert xlsx_filename(Period.yearly(2025)) == "rapport_annuel_2025.xlsx"


class TestBuildReport:
    def test_only_approved_in_period(
        self,
        workflow: ApprovalWorkflow,
        store: TransactionStore,
        tresorier: RoleContext,
        president: RoleContext,
    ) -> None:
        def create(day: str, montant: str, tx_type: str = "entree") -> int:
            return workflow.create(
                tresorier,
                TransactionDraft(
                    type=tx_type, categorie="Cotisation", montant=montant,
                    libelle="Test", date_transaction=day,
                ),
            ).id

        inside = create("2025-10-01", "1000")
        last_day = create("2025-10-31", "400", "sortie")
        pending = create("2025-10-15", "500")
        outside = create("2025-11-01", "9999")
        for tx_id in (inside, last_day, outside):
            workflow.approve(president, tx_id)

        report = build_report(store, OCTOBRE)

        assert [t.id for t in report.transactions] == [last_day, inside]
        assert pending not in [t.id for t in report.transactions]
        assert report.totals.entrees == Decimal("1000")
        assert report.totals.sorties == Decimal("400")
        assert report.totals.solde == Decimal("600")

    def test_empty_period(self, store: TransactionStore) -> None:
        report = build_report(store, Period.monthly(2020, 1))

        assert report.is_empty
        with pytest.raises(EmptyReportError, match="Aucune transaction à exporter"):
            report.ensure_not_empty()


class TestCsv:
    """Tests for to_csv."""

    def test_round_trip(self) -> None:
        txs = [
            make_tx(1, TransactionType.ENTREE, "1500.50", day=date(2025, 10, 3)),
            make_tx(2, TransactionType.SORTIE, "400", categorie="Logistique", day=date(2025, 10, 2)),
        ]

        rows = list(csv.reader(io.StringIO(to_csv(report_of(txs)))))

        assert rows[0] == CSV_HEADERS
        assert len(rows) - 1 == len(txs)
        assert rows[1][0] == "03/10/2025"
        assert rows[1][1] == "Entrée"
        assert rows[2][1] == "Sortie"
        assert [Decimal(r[4]) for r in rows[1:]] == [t.montant for t in txs]
        assert rows[1][5] == "approuve"

    def test_every_field_quoted(self) -> None:
        text = to_csv(report_of([make_tx(1, TransactionType.ENTREE, "10")]))

        header, line = text.split("\n")
        assert header == ",".join(f'"{h}"' for h in CSV_HEADERS)
        assert line.startswith('"01/10/2025","Entrée",')

    def test_embedded_quotes_and_commas(self) -> None:
        tx = make_tx(1, TransactionType.ENTREE, "10", categorie='Don "spécial", anonyme')

        rows = list(csv.reader(io.StringIO(to_csv(report_of([tx])))))

        assert rows[1][2] == 'Don "spécial", anonyme'

    def test_receipt_number_column(self) -> None:
        tx = replace(make_tx(1, TransactionType.ENTREE, "10"), numero_recu="R-0042")

        rows = list(csv.reader(io.StringIO(to_csv(report_of([tx])))))

        assert rows[1][6] == "R-0042"

    def test_empty_refused(self) -> None:
        with pytest.raises(EmptyReportError):
            to_csv(report_of([]))


class TestPrintable:
    """Tests for to_printable_html."""

    def test_contents(self) -> None:
        txs = [
            make_tx(1, TransactionType.ENTREE, "1000"),
            make_tx(2, TransactionType.SORTIE, "400", categorie="Logistique"),
        ]

        html = to_printable_html(report_of(txs), "Amicale", now=datetime(2025, 10, 19, 14, 5))

        assert "Rapport Mensuel - octobre 2025" in html
        assert "1 000 F CFA" in html
        assert "600 F CFA" in html
        assert "Logistique" in html
        assert "Généré le 19 octobre 2025 à 14:05" in html
        assert "Amicale" in html

    def test_escapes_user_text(self) -> None:
        tx = replace(make_tx(1, TransactionType.ENTREE, "10"), libelle="<script>alert(1)</script>")

        html = to_printable_html(report_of([tx]), "Amicale")

        assert "<script>alert(1)</script>" not in html
        assert "&lt;script&gt;" in html

    def test_empty_refused(self) -> None:
        with pytest.raises(EmptyReportError):
            to_printable_html(report_of([]), "Amicale")

    def test_french_datetime(self) -> None:
        assert french_datetime(datetime(2025, 2, 3, 9, 7)) == "03 février 2025 à 09:07"


class TestXlsx:
    """Tests for to_xlsx."""

    def test_workbook(self) -> None:
        txs = [
            make_tx(1, TransactionType.ENTREE, "1000"),
            make_tx(2, TransactionType.SORTIE, "400", categorie="Logistique"),
        ]

        wb = load_workbook(io.BytesIO(to_xlsx(report_of(txs))))

        assert wb.sheetnames == ["Résumé", "Transactions"]
        summary = wb["Résumé"]
        assert summary["A1"].value == "Période"
        assert summary["B1"].value == "octobre 2025"
        assert summary["B2"].value == 1000
        assert summary["B3"].value == 400
        assert summary["B4"].value == 600

        rows = list(wb["Transactions"].iter_rows(values_only=True))
        assert list(rows[0]) == CSV_HEADERS
        assert len(rows) - 1 == len(txs)

    def test_empty_refused(self) -> None:
        with pytest.raises(EmptyReportError):
            to_xlsx(report_of([]))

