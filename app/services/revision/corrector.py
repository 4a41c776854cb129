import logging
import re
from dataclasses import dataclass
from typing import List

from app.models.pydantic import SEVERITY_RANK, CorrectionContext, CorrectionMode, DiffStats, Issue
from app.services.revision.collaborators import Rewriter, call_with_retries
from app.services.revision.errors import CollaboratorUnavailable, UnitCorrectionFailed
from app.services.revision.unit_ids import unit_label

logger = logging.getLogger(__name__)

MAX_LENGTH_RATIO = 2.5
CONTEXT_EXCERPT_CHARS = 300

_WS = re.compile(r"\s+")


@dataclass
class CorrectionOutcome:
    unit_id: int
    content: str
    mode: CorrectionMode
    diff_stats: DiffStats


def aggregate_issue_text(issues: List[Issue]) -> str:
    """Alle Issues eines Kapitels als ein Block, schwerste zuerst."""
    ordered = sorted(issues, key=lambda i: SEVERITY_RANK.get(i.severity, 0), reverse=True)
    lines: List[str] = []
    for n, issue in enumerate(ordered, 1):
        lines.append(f"{n}. [{issue.severity.upper()}] {issue.category}: {issue.description}")
        if issue.correction_instruction:
            lines.append(f"   Fix: {issue.correction_instruction}")
    return "\n".join(lines)


def calculate_diff_stats(original: str, corrected: str) -> DiffStats:
    original_words = original.split()
    corrected_words = corrected.split()
    return DiffStats(
        words_added=max(0, len(corrected_words) - len(original_words)),
        words_removed=max(0, len(original_words) - len(corrected_words)),
        length_change=len(corrected) - len(original),
    )


def is_unchanged(original: str, corrected: str) -> bool:
    return _WS.sub(" ", original).strip() == _WS.sub(" ", corrected).strip()


def correction_tiers(issues: List[Issue]) -> List[CorrectionMode]:
    # eskalierte Issues brauchen breitere Umschreibungen, Patches reichen dort nicht
    if any(i.escalated for i in issues):
        return ["rewrite", "escalated"]
    return ["patch", "rewrite", "escalated"]


class UnitCorrector:
    """
    Korrigiert ein Kapitel in Stufen: Patch -> Full-Rewrite -> eskalierter Rewrite.

    Ein Ergebnis zählt nur, wenn sich der Inhalt tatsächlich geändert hat;
    einem Erfolgs-Flag des Rewriters wird nicht vertraut.
    """

    def __init__(self, rewriter: Rewriter, retries: int = 2):
        self.rewriter = rewriter
        self.retries = retries

    def correct(
        self,
        unit_id: int,
        content: str,
        issues: List[Issue],
        *,
        cycle: int = 0,
        previous_content: str = "",
        next_content: str = "",
    ) -> CorrectionOutcome:
        """
        Raises:
            UnitCorrectionFailed: wenn keine Stufe eine gültige Änderung liefert
        """
        issue_text = aggregate_issue_text(issues)
        reasons: List[str] = []

        for mode in correction_tiers(issues):
            context = CorrectionContext(
                unit_id=unit_id,
                unit_label=unit_label(unit_id),
                mode=mode,
                cycle=cycle,
                previous_excerpt=previous_content[-CONTEXT_EXCERPT_CHARS:],
                next_excerpt=next_content[:CONTEXT_EXCERPT_CHARS],
            )
            try:
                revised = call_with_retries(
                    lambda: self.rewriter.correct(content, issue_text, context),
                    collaborator="Rewriter",
                    retries=self.retries,
                )
            except CollaboratorUnavailable as e:
                reasons.append(f"{mode}: {e}")
                continue

            problem = self._validate(content, revised)
            if problem:
                reasons.append(f"{mode}: {problem}")
                logger.info("%s: Stufe '%s' verworfen (%s)", unit_label(unit_id), mode, problem)
                continue

            return CorrectionOutcome(
                unit_id=unit_id,
                content=revised,
                mode=mode,
                diff_stats=calculate_diff_stats(content, revised),
            )

        raise UnitCorrectionFailed(unit_id, reasons)

    def _validate(self, original: str, revised: str | None) -> str | None:
        if revised is None or not revised.strip():
            return "empty result"
        if original and len(revised) > len(original) * MAX_LENGTH_RATIO:
            return "length anomaly"
        if is_unchanged(original, revised):
            return "unchanged"
        return None
