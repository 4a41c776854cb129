"""
Kanonische Kapitel-IDs.

Konvention im Store: Prolog = 0, normale Kapitel = 1..N, Epilog = 998,
Nachwort des Autors = 999. Der Reviewer darf Sonderkapitel auch über
Sentinels (-1 / -2) oder Namen ("epilogue", "epílogo", ...) referenzieren.
"""

import re
from typing import Any, Iterable, List

PROLOGUE_ID = 0
EPILOGUE_ID = 998
AUTHOR_NOTE_ID = 999

# Reviewer-Sentinel -> Store-ID (bijektiv)
REVIEWER_TO_STORE = {-1: EPILOGUE_ID, -2: AUTHOR_NOTE_ID}
STORE_TO_REVIEWER = {v: k for k, v in REVIEWER_TO_STORE.items()}

UNIT_ALIASES = {
    "prologue": PROLOGUE_ID,
    "prólogo": PROLOGUE_ID,
    "prologo": PROLOGUE_ID,
    "epilogue": EPILOGUE_ID,
    "epílogo": EPILOGUE_ID,
    "epilogo": EPILOGUE_ID,
    "author's note": AUTHOR_NOTE_ID,
    "author note": AUTHOR_NOTE_ID,
    "author_note": AUTHOR_NOTE_ID,
    "nota del autor": AUTHOR_NOTE_ID,
}

UNIT_LABELS = {
    PROLOGUE_ID: "Prologue",
    EPILOGUE_ID: "Epilogue",
    AUTHOR_NOTE_ID: "Author's Note",
}

_CHAPTER_REF = re.compile(
    r"\b(?:chapters?|ch\.|cap(?:í|i)tulos?|cap\.)\s*"
    r"(\d+(?:\s*(?:,|and|y|&|-|–)\s*\d+)*)",
    re.IGNORECASE,
)
_NUMBER = re.compile(r"\d+")
_RANGE = re.compile(r"(\d+)\s*[-–]\s*(\d+)")
_SPECIAL_REF = re.compile(
    r"\b(?:"
    + "|".join(re.escape(alias) for alias in sorted(UNIT_ALIASES, key=len, reverse=True))
    + r")\b",
    re.IGNORECASE,
)


def to_store_id(value: Any) -> int | None:
    """
    Bringt eine Reviewer-Referenz auf die kanonische Store-ID.

    Idempotent: to_store_id(to_store_id(x)) == to_store_id(x).
    Liefert None für nicht interpretierbare Werte.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        s = value.strip().lower()
        if s in UNIT_ALIASES:
            return UNIT_ALIASES[s]
        try:
            value = int(float(s))
        except ValueError:
            return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if not isinstance(value, int):
        return None
    if value in REVIEWER_TO_STORE:
        return REVIEWER_TO_STORE[value]
    if value < 0:
        return None
    return value


def to_reviewer_id(unit_id: int) -> int:
    """Umkehrung von to_store_id für Sonderkapitel; sonst Identität."""
    return STORE_TO_REVIEWER.get(unit_id, unit_id)


def normalize_units(values: Iterable[Any]) -> List[int]:
    """Normalisiert, dedupliziert und sortiert eine Liste von Kapitel-Referenzen."""
    out = set()
    for v in values or []:
        uid = to_store_id(v)
        if uid is not None:
            out.add(uid)
    return sorted(out)


def unit_label(unit_id: int) -> str:
    return UNIT_LABELS.get(unit_id, f"Chapter {unit_id}")


def extract_unit_references(text: str) -> List[int]:
    """
    Sucht Kapitelverweise im Fließtext ("chapter 7", "capítulos 3 y 4",
    "chapters 2-4", "epilogue").
    """
    if not text:
        return []

    found = set()
    for m in _CHAPTER_REF.finditer(text):
        group = m.group(1)
        for r in _RANGE.finditer(group):
            lo, hi = int(r.group(1)), int(r.group(2))
            if lo <= hi and hi - lo <= 50:
                found.update(range(lo, hi + 1))
        for n in _NUMBER.findall(group):
            found.add(int(n))

    for m in _SPECIAL_REF.finditer(text):
        found.add(UNIT_ALIASES[m.group(0).lower()])

    return sorted(found)
