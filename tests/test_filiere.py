"""Tests for the course-of-study value type."""

import pytest

from sas_financier.filiere import (
    ANNEE_PREPARATOIRE,
    PreparatoryYear,
    TrackLevel,
    cursus_from_form,
    format_cursus,
    parse_cursus,
)


class TestParseCursus:
    """Tests for parse_cursus."""

    @pytest.mark.parametrize(
        "text", ["ANNEE PREPARATOIRE", "Année préparatoire", "année PRÉPARATOIRE - L1", "", None, "   "]
    )
    def test_preparatory_year(self, text) -> None:
        assert parse_cursus(text) == PreparatoryYear()

    @pytest.mark.parametrize(
        "text,track,level",
        [
            ("INFORMATIQUE DE GESTION - L2", "INFORMATIQUE DE GESTION", "L2"),
            ("administration - l3", "ADMINISTRATION", "L3"),
            ("ELECTROMECANIQUE - L1", "ELECTROMECANIQUE", "L1"),
            ("ÉLECTROMÉCANIQUE - L2", "ELECTROMECANIQUE", "L2"),
            ("ELECTROMECQNIQUE - L3", "ELECTROMECANIQUE", "L3"),
        ],
    )
    def test_track_level(self, text: str, track: str, level: str) -> None:
        assert parse_cursus(text) == TrackLevel(track=track, level=level)

    @pytest.mark.parametrize("text", ["ADMINISTRATION", "ADMINISTRATION - L9", "ADMINISTRATION - "])
    def test_unknown_level_defaults_to_l1(self, text: str) -> None:
        assert parse_cursus(text) == TrackLevel("ADMINISTRATION", "L1")

    def test_unknown_track_is_preparatory_year(self) -> None:
        assert parse_cursus("GEOGRAPHIE - L2") == PreparatoryYear()

    @pytest.mark.parametrize(
        "text", ["ANNEE PREPARATOIRE", "INFORMATIQUE DE GESTION - L1", "ADMINISTRATION - L3"]
    )
    def test_canonical_text_round_trips(self, text: str) -> None:
        assert format_cursus(parse_cursus(text)) == text


class TestCursusValues:
    def test_labels(self) -> None:
        prep = PreparatoryYear()
        track = TrackLevel("ADMINISTRATION", "L2")

        assert prep.label == ANNEE_PREPARATOIRE
        assert prep.level_label == "-"
        assert track.label == "ADMINISTRATION - L2"
        assert track.track_label == "ADMINISTRATION"
        assert track.level_label == "L2"

    def test_track_level_validates(self) -> None:
        with pytest.raises(ValueError):
            TrackLevel("GEOGRAPHIE", "L1")
        with pytest.raises(ValueError):
            TrackLevel("ADMINISTRATION", "M1")


class TestCursusFromForm:
    def test_preparatory_year_ignores_level(self) -> None:
        assert cursus_from_form(ANNEE_PREPARATOIRE, "L3") == PreparatoryYear()

    def test_track(self) -> None:
        assert cursus_from_form("INFORMATIQUE DE GESTION", "l2") == TrackLevel("INFORMATIQUE DE GESTION", "L2")

    def test_missing_level_defaults_to_l1(self) -> None:
        assert cursus_from_form("ADMINISTRATION", "") == TrackLevel("ADMINISTRATION", "L1")

    def test_unknown_track(self) -> None:
        with pytest.raises(ValueError):
            cursus_from_form("MEDECINE", "L1")

    def test_unknown_level(self) -> None:
        with pytest.raises(ValueError):
            cursus_from_form("ADMINISTRATION", "L7")
