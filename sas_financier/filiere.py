"""Member course of study ("filière - niveau").

A member is either in the preparatory year, which has no level, or in
a track at a given level. Storage keeps the historical combined
string: ``"ANNEE PREPARATOIRE"`` or ``"<TRACK> - <LEVEL>"``.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Optional, Union

ANNEE_PREPARATOIRE = "ANNEE PREPARATOIRE"

TRACKS = (
    "INFORMATIQUE DE GESTION",
    "ADMINISTRATION",
    "ELECTROMECANIQUE",
)

LEVELS = ("L1", "L2", "L3")

SEPARATOR = " - "


@dataclass(frozen=True)
class PreparatoryYear:
    @property
    def label(self) -> str:
        return ANNEE_PREPARATOIRE

    @property
    def track_label(self) -> str:
        return ANNEE_PREPARATOIRE

    @property
    def level_label(self) -> str:
        return "-"


@dataclass(frozen=True)
class TrackLevel:
    track: str
    level: str

    def __post_init__(self) -> None:
        if self.track not in TRACKS:
            raise ValueError(f"unknown track {self.track!r}")
        if self.level not in LEVELS:
            raise ValueError(f"unknown level {self.level!r}")

    @property
    def label(self) -> str:
        return f"{self.track}{SEPARATOR}{self.level}"

    @property
    def track_label(self) -> str:
        return self.track

    @property
    def level_label(self) -> str:
        return self.level


Cursus = Union[PreparatoryYear, TrackLevel]


def _fold(value: str) -> str:
    # "Année préparatoire" -> "ANNEE PREPARATOIRE"
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).upper().strip()


def _match_track(text: str) -> Optional[str]:
    folded = _fold(text)
    for track in TRACKS:
        if track in folded:
            return track
    # historical misspelling
    if "ELECTROMECQNIQUE" in folded:
        return "ELECTROMECANIQUE"
    return None


def parse_cursus(combined: Optional[str]) -> Cursus:
    """Decode a stored combined string.

    Empty values and unknown tracks fall back to the preparatory year;
    a missing or unknown level falls back to ``L1``.
    """
    if not combined or not combined.strip():
        return PreparatoryYear()
    if ANNEE_PREPARATOIRE in _fold(combined):
        return PreparatoryYear()

    raw_track, _, raw_level = combined.partition(SEPARATOR.strip())
    track = _match_track(raw_track)
    if track is None:
        return PreparatoryYear()
    level = raw_level.strip().upper()
    if level not in LEVELS:
        level = LEVELS[0]
    return TrackLevel(track=track, level=level)


def format_cursus(cursus: Cursus) -> str:
    return cursus.label


def cursus_from_form(track: str, level: str = "") -> Cursus:
    """Build a cursus from the two form selects; the level is ignored
    for the preparatory year."""
    if not track or ANNEE_PREPARATOIRE in _fold(track):
        return PreparatoryYear()
    matched = _match_track(track)
    if matched is None:
        raise ValueError(f"unknown track {track!r}")
    return TrackLevel(track=matched, level=(level or LEVELS[0]).strip().upper())
