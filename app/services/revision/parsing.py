"""
Robustes Parsing von LLM-Outputs für Reviewer und Rewriter.

Features:
- Strict JSON parsing (auch innerhalb von Markdown)
- Fallback regex extraction für den Score
- Bereinigung von Rewriter-Antworten
"""

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from app.models.pydantic import Issue, ReviewResult
from app.services.revision.errors import UnparseableReviewerOutput
from app.services.revision.unit_ids import normalize_units

logger = logging.getLogger(__name__)

# Vorspann nur, wenn der Doppelpunkt die Zeile abschließt; Prosa mit Doppelpunkt bleibt
_RESPONSE_PREFIXES = [
    re.compile(r"^(aquí tienes|aquí está|here is|here's)[^:\n]*:[ \t]*\n\s*", re.IGNORECASE),
    re.compile(r"^(revised chapter|cap[ií]tulo corregido)[^:\n]*:[ \t]*\n\s*", re.IGNORECASE),
    re.compile(r"^```[a-z]*\n?", re.IGNORECASE),
]


def extract_json_object(raw_text: str) -> tuple[dict[str, Any] | None, list[str]]:
    """
    Sucht das äußerste JSON-Objekt im Text (kann von Markdown umgeben sein).

    Returns:
        (data, flags): data ist None bei Fehler
    """
    flags: list[str] = []
    start = raw_text.find("{")
    end = raw_text.rfind("}") + 1
    if start == -1 or end <= start:
        flags.append("no_json_object")
        return None, flags
    try:
        data = json.loads(raw_text[start:end])
    except (json.JSONDecodeError, ValueError):
        flags.append("parse_primary_failed")
        return None, flags
    if not isinstance(data, dict):
        flags.append("not_an_object")
        return None, flags
    return data, flags


def _regex_extract_score(text: str) -> float | None:
    """Fallback: Score via Regex (0-10 Skala, auch "8/10")."""
    m = re.search(r'"score"\s*:\s*(\d+(?:\.\d+)?)', text, re.IGNORECASE)
    if not m:
        m = re.search(r'(?:score|puntuaci[oó]n)["\']?\s*[:=]\s*(\d+(?:\.\d+)?)', text, re.IGNORECASE)
    if not m:
        m = re.search(r"\b(\d+(?:\.\d+)?)\s*/\s*10\b", text)
    if m:
        return float(m.group(1))
    return None


def normalize_score(value: Any) -> float | None:
    """Clamp auf [0,10]; Werte auf 0-100 Skala werden heruntergerechnet."""
    try:
        s = float(value)
    except (TypeError, ValueError):
        return None
    if s > 10.0 and s <= 100.0:
        s = s / 10.0
    if s < 0.0:
        return 0.0
    if s > 10.0:
        return 10.0
    return s


def _parse_issues(raw_issues: Any) -> list[Issue]:
    issues: list[Issue] = []
    if not isinstance(raw_issues, list):
        return issues

    for item in raw_issues:
        if not isinstance(item, dict):
            continue
        data = dict(item)
        # gängige Alias-Felder aus Reviewer-Antworten
        if "correction_instruction" not in data:
            data["correction_instruction"] = data.get("instruction") or data.get("suggestion")
        if "affected_units" not in data:
            data["affected_units"] = data.get("chapters") or data.get("affected_chapters") or []
        if not isinstance(data["affected_units"], list):
            data["affected_units"] = [data["affected_units"]]
        data["affected_units"] = normalize_units(data["affected_units"])
        try:
            issues.append(Issue.model_validate(data))
        except ValidationError:
            # Issue vermurkst -> ignorieren, aber Rest behalten
            logger.debug("Reviewer-Issue verworfen: %r", item)
            continue
    return issues


def parse_review_output(raw_text: str) -> ReviewResult:
    """
    Parst die Reviewer-Antwort.

    Der Regex-Fallback greift nur bei reinem Fließtext ohne JSON. Ein begonnenes,
    aber nicht dekodierbares Objekt (z.B. abgeschnittene Issue-Liste) ist nicht lesbar.
    Fallback-Ergebnisse tragen ``parse_fallback=True`` und zählen nie als Freigabe.

    Raises:
        UnparseableReviewerOutput: bei kaputtem JSON, fehlendem Score oder ohne jeden Score
    """
    data, flags = extract_json_object(raw_text)

    if data is not None:
        score = normalize_score(data.get("score"))
        if score is None:
            flags.append("missing_score")
            raise UnparseableReviewerOutput(raw_text, flags)
        units = data.get("units_to_rewrite") or data.get("chapters_to_rewrite") or []
        if not isinstance(units, list):
            units = [units]
        return ReviewResult(
            score=score,
            verdict=str(data.get("verdict") or "unknown"),
            issues=_parse_issues(data.get("issues")),
            units_to_rewrite=normalize_units(units),
        )

    if "{" in raw_text:
        flags.append("truncated_json")
        raise UnparseableReviewerOutput(raw_text, flags)

    score = _regex_extract_score(raw_text)
    if score is not None:
        flags.append("parse_fallback")
        logger.warning("Reviewer-Antwort nur per Regex-Fallback lesbar (flags=%s)", flags)
        return ReviewResult(score=normalize_score(score) or 0.0, verdict="unknown", parse_fallback=True)

    raise UnparseableReviewerOutput(raw_text, flags)


def parse_patch_output(raw_text: str) -> list[dict[str, Any]]:
    data, _ = extract_json_object(raw_text)
    if not data:
        return []
    patches = data.get("patches")
    if not isinstance(patches, list):
        return []
    return [p for p in patches if isinstance(p, dict)]


def sanitize_response(response: str) -> str:
    cleaned = (response or "").strip()
    for prefix in _RESPONSE_PREFIXES:
        cleaned = prefix.sub("", cleaned)
    cleaned = re.sub(r"```\s*$", "", cleaned).strip()
    # nur komplett umschließende Anführungszeichen entfernen, Dialog am Rand bleibt
    if len(cleaned) > 1 and cleaned[0] == cleaned[-1] and cleaned[0] in "\"'" and cleaned.count(cleaned[0]) == 2:
        cleaned = cleaned[1:-1]
    return cleaned.strip()
