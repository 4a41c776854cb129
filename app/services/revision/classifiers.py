"""
Heuristische Klassifikatoren: strukturelle Issues und Merge-Anfragen.

Beides sind reine Funktionen über den Regeltabellen in rules.py.
Falsch-negative Treffer sind unkritisch (das Issue läuft normal weiter und
wird irgendwann vom CorrectionLimiter gedeckelt), falsch-positive sollen
selten sein.
"""

import logging
from typing import List, Mapping, Tuple

from app.models.pydantic import Issue
from app.services.revision.fingerprint import issue_key
from app.services.revision.rules import (
    MERGE_RULES,
    REORDER_VERBS,
    STRUCTURAL_CATEGORIES,
    STRUCTURAL_RULES,
)

logger = logging.getLogger(__name__)

MERGE_REINTERPRETED_CATEGORY = "pacing"

MERGE_REINTERPRETATION_TEMPLATE = (
    "Merging chapters is not possible. Instead, condense this chapter in place: "
    "(a) aggressively remove redundant, repeated and filler content; "
    "(b) strengthen the transition to and from the adjacent chapters so the "
    "sequence reads as one continuous movement; "
    "(c) target a length reduction of at least 30% while preserving every piece "
    "of essential plot information."
)


def is_structural(issue: Issue) -> bool:
    if STRUCTURAL_RULES.any_match(issue):
        return True
    category = (issue.category or "").strip().casefold()
    return category in STRUCTURAL_CATEGORIES and REORDER_VERBS.any_match(issue)


def _count_for(counts: Mapping, unit_id: int) -> int:
    if unit_id in counts:
        return counts[unit_id]
    return counts.get(str(unit_id), 0)


def auto_resolve_structural(
    issues: List[Issue],
    correction_counts: Mapping,
    min_attempts: int = 2,
) -> Tuple[List[Issue], List[Issue]]:
    """
    Markiert strukturelle Issues als erledigt, wenn jedes betroffene Kapitel
    schon mindestens min_attempts Korrekturversuche hinter sich hat.

    Returns:
        (resolved, remaining)
    """
    resolved: List[Issue] = []
    remaining: List[Issue] = []

    for issue in issues:
        units = issue.affected_units
        if (
            units
            and is_structural(issue)
            and all(_count_for(correction_counts, u) >= min_attempts for u in units)
        ):
            resolved.append(issue)
            logger.warning(
                "Strukturelles Issue akzeptiert mit Vorbehalt (manuelle Strukturänderung nötig): "
                "[%s] %s (Kapitel %s)",
                issue.category,
                issue.description[:120],
                units,
            )
        else:
            remaining.append(issue)

    return resolved, remaining


def is_merge_request(issue: Issue) -> bool:
    return MERGE_RULES.any_match(issue)


def reinterpret(issue: Issue) -> Issue:
    """
    Schreibt eine Merge-Anfrage in eine Kürzungs-/Übergangs-Anweisung um.
    affected_units bleibt unverändert, die Identität im Ledger ebenfalls.
    """
    return issue.model_copy(
        update={
            "category": MERGE_REINTERPRETED_CATEGORY,
            "correction_instruction": MERGE_REINTERPRETATION_TEMPLATE,
            "affected_units": list(issue.affected_units),
            "origin_fingerprint": issue_key(issue),
        }
    )


def reinterpret_merge_requests(issues: List[Issue]) -> Tuple[List[Issue], int]:
    out: List[Issue] = []
    changed = 0
    for issue in issues:
        if is_merge_request(issue):
            out.append(reinterpret(issue))
            changed += 1
        else:
            out.append(issue)
    return out, changed
