"""
Stabiler Fingerprint für Reviewer-Issues.

Der Reviewer formuliert denselben Defekt zwischen Zyklen oft leicht anders.
Der Fingerprint ist deshalb eine Ähnlichkeits-Heuristik, keine semantische
Identität: Groß/Kleinschreibung und Whitespace werden normalisiert und die
Beschreibung auf einen festen Präfix gekürzt, damit Variationen am Ende der
Formulierung nicht zu einem neuen Issue führen.
"""

import hashlib
import re

from app.models.pydantic import Issue
from app.services.revision.unit_ids import normalize_units

DESCRIPTION_PREFIX_LEN = 80
FIELD_DELIMITER = "\x1f|\x1f"

_WS = re.compile(r"\s+")


def normalize_description(description: str | None) -> str:
    if not description:
        return ""
    s = _WS.sub(" ", description.casefold()).strip()
    return s[:DESCRIPTION_PREFIX_LEN].rstrip()


def fingerprint(issue: Issue) -> str:
    """
    Deterministisch, prozessübergreifend stabil (kein hash()-Seeding).
    Schlägt nie fehl, auch nicht bei leerer Beschreibung.
    """
    category = (issue.category or "").strip().casefold()
    units = ",".join(str(u) for u in normalize_units(issue.affected_units))
    payload = FIELD_DELIMITER.join([category, normalize_description(issue.description), units])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def issue_key(issue: Issue) -> str:
    """Identität für Ledger/Zähler: ursprünglicher Fingerprint, falls das Issue umgeschrieben wurde."""
    return issue.origin_fingerprint or fingerprint(issue)
