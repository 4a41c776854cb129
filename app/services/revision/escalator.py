import logging
from typing import Callable, Iterable, List, Optional, Tuple

from app.models.pydantic import Issue, ProjectState
from app.services.revision.fingerprint import issue_key
from app.services.revision.rules import ENTITY_RESURRECTION_RULES, TERMINATION_UNIT
from app.services.revision.unit_ids import to_store_id, unit_label

logger = logging.getLogger(__name__)


class PersistentIssueEscalator:
    """
    Zählt, in wie vielen Zyklen ein Fingerprint wieder auftaucht, und ersetzt
    ab der Schwelle die Anweisung durch eine schärfere, mechanische Direktive
    mit erweitertem Kapitelumfang. Einmal eskaliert bleibt eskaliert.
    """

    def __init__(
        self,
        state: ProjectState,
        threshold: int = 3,
        on_change: Optional[Callable[[ProjectState], None]] = None,
    ):
        self.state = state
        self.threshold = threshold
        self.on_change = on_change

    def counter(self, key: str) -> int:
        return self.state.persistence_counters.get(key, 0)

    def process(self, issues: List[Issue], all_unit_ids: Iterable[int]) -> Tuple[List[Issue], List[Issue]]:
        """
        Returns:
            (Issues für die Korrektur, davon eskalierte Issues)
        """
        unit_ids = sorted(set(all_unit_ids))
        seen_this_cycle: set[str] = set()
        out: List[Issue] = []
        escalated: List[Issue] = []

        for issue in issues:
            key = issue_key(issue)
            if key not in seen_this_cycle:
                seen_this_cycle.add(key)
                self.state.persistence_counters[key] = self.counter(key) + 1
            count = self.counter(key)

            if count >= self.threshold or key in self.state.escalated_fingerprints:
                if key not in self.state.escalated_fingerprints:
                    self.state.escalated_fingerprints.append(key)
                new_issue = self.escalate(issue, count, unit_ids)
                escalated.append(new_issue)
                out.append(new_issue)
                logger.warning(
                    "Persistentes Issue eskaliert (%s Zyklen): [%s] %s -> Kapitel %s",
                    count,
                    issue.category,
                    issue.description[:120],
                    new_issue.affected_units,
                )
            else:
                out.append(issue)

        if seen_this_cycle and self.on_change:
            self.on_change(self.state)

        return out, escalated

    def escalate(self, issue: Issue, count: int, unit_ids: List[int]) -> Issue:
        if issue.severity == "critical" and ENTITY_RESURRECTION_RULES.any_match(issue):
            return self._escalate_resurrection(issue, count, unit_ids)
        return self._escalate_generic(issue, count, unit_ids)

    # ---------- Hilfsfunktionen ---------- #

    def _escalate_resurrection(self, issue: Issue, count: int, unit_ids: List[int]) -> Issue:
        termination_unit = _termination_unit(issue)
        if termination_unit is None:
            return self._escalate_generic(issue, count, unit_ids)

        later_units = [u for u in unit_ids if u > termination_unit]
        affected = sorted(set(issue.affected_units) | set(later_units))

        instruction = (
            f"PERSISTENT CONTINUITY ERROR ({count} cycles). {issue.description}\n"
            f"The entity was eliminated in {unit_label(termination_unit)}. MANDATORY RULE for every "
            f"chapter after {unit_label(termination_unit)}: the entity may appear ONLY in flashback, "
            "memory or explicitly retrospective framing. It must never perform present-tense actions, "
            "speak in present-tense scenes, or be treated by other characters as alive. Rewrite every "
            "passage that violates this rule; do not merely soften it."
        )
        return issue.model_copy(
            update={
                "correction_instruction": instruction,
                "affected_units": affected,
                "origin_fingerprint": issue_key(issue),
                "escalated": True,
                "persistence_count": count,
            }
        )

    def _escalate_generic(self, issue: Issue, count: int, unit_ids: List[int]) -> Issue:
        present = set(unit_ids)
        widened = set(issue.affected_units)
        for u in issue.affected_units:
            for neighbour in (u - 1, u + 1):
                if neighbour in present:
                    widened.add(neighbour)

        instruction = (
            f"ESCALATED: this issue has persisted for {count} review cycles despite previous corrections. "
            "Small local edits have not worked; rewrite the affected passages more broadly in every "
            "affected chapter so the defect cannot survive.\n"
            f"Original issue: {issue.description}"
        )
        if issue.correction_instruction:
            instruction += f"\nOriginal instruction: {issue.correction_instruction}"

        return issue.model_copy(
            update={
                "correction_instruction": instruction,
                "affected_units": sorted(widened),
                "origin_fingerprint": issue_key(issue),
                "escalated": True,
                "persistence_count": count,
            }
        )


def _termination_unit(issue: Issue) -> int | None:
    m = TERMINATION_UNIT.search(issue.description or "")
    if m:
        uid = to_store_id(m.group(2))
        if uid is not None:
            return uid
    if issue.affected_units:
        return min(issue.affected_units)
    return None
