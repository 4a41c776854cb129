import logging
from typing import Callable, Optional

from app.models.pydantic import ProjectState

logger = logging.getLogger(__name__)


class CorrectionLimiter:
    """Zählt Korrekturversuche pro Kapitel und sperrt ab max_attempts."""

    def __init__(
        self,
        state: ProjectState,
        max_attempts: int,
        on_change: Optional[Callable[[ProjectState], None]] = None,
    ):
        self.state = state
        self.max_attempts = max_attempts
        self.on_change = on_change

    def count(self, unit_id: int) -> int:
        return self.state.correction_counts.get(str(unit_id), 0)

    def can_attempt(self, unit_id: int) -> bool:
        return self.count(unit_id) < self.max_attempts

    def record_attempt(self, unit_id: int) -> int:
        n = self.count(unit_id) + 1
        self.state.correction_counts[str(unit_id)] = n
        if self.on_change:
            self.on_change(self.state)
        return n

    def reset(self, unit_id: int) -> None:
        """Manueller Override durch einen Operator."""
        if self.state.correction_counts.pop(str(unit_id), None) is not None:
            logger.info("Korrekturzähler für Kapitel %s zurückgesetzt", unit_id)
            if self.on_change:
                self.on_change(self.state)

    def counts(self) -> dict[int, int]:
        return {int(k): v for k, v in self.state.correction_counts.items()}
