import logging
from typing import Callable, List, Optional, Tuple

from app.models.pydantic import Issue, ProjectState
from app.services.revision.fingerprint import issue_key

logger = logging.getLogger(__name__)

StateCallback = Callable[[ProjectState], None]


def filter_new(issues: List[Issue], resolved: set[str] | List[str]) -> Tuple[List[Issue], int]:
    """
    Entfernt Issues, deren Fingerprint bereits als gelöst markiert ist.

    Returns:
        (neue Issues, Anzahl der herausgefilterten Issues)
    """
    resolved_set = set(resolved)
    survivors: List[Issue] = []
    dropped = 0
    for issue in issues:
        if issue_key(issue) in resolved_set:
            dropped += 1
            continue
        survivors.append(issue)
    return survivors, dropped


class ResolutionLedger:
    """
    Projektweite Menge gelöster Fingerprints.

    Wächst monoton; es gibt bewusst kein "unresolve". Ein Defekt, der nach
    einer Regression mit anderer Formulierung zurückkommt, ist neue Arbeit.
    """

    def __init__(self, state: ProjectState, on_change: Optional[StateCallback] = None):
        self.state = state
        self.on_change = on_change

    def __contains__(self, key: str) -> bool:
        return key in self.state.resolved_fingerprints

    def __len__(self) -> int:
        return len(self.state.resolved_fingerprints)

    def filter_new(self, issues: List[Issue]) -> Tuple[List[Issue], int]:
        return filter_new(issues, self.state.resolved_fingerprints)

    def mark_resolved(self, issues: List[Issue]) -> int:
        """Markiert Issues als gelöst (idempotent). Gibt die Anzahl neuer Einträge zurück."""
        known = set(self.state.resolved_fingerprints)
        added = 0
        for issue in issues:
            key = issue_key(issue)
            if key in known:
                continue
            known.add(key)
            self.state.resolved_fingerprints.append(key)
            added += 1

        if added:
            logger.debug("Ledger: %s Fingerprint(s) ergänzt (gesamt %s)", added, len(known))
            if self.on_change:
                self.on_change(self.state)
        return added
