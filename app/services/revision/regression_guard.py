"""
Snapshot & Rollback.

Vor jeder Korrektur wird der Kapitelinhalt gesichert. Die Bewertung passiert
erst mit dem Score des *nächsten* Reviews: fällt er deutlich, wird jedes
gesicherte Kapitel byte-genau zurückgesetzt. Grob (ganzes Kapitel) und auf
einen Zyklus begrenzt, aber der einzige Rollback-Mechanismus der Engine.

Die Snapshots liegen im ProjectState, damit ein Neustart zwischen Korrektur
und Validierung den Rollback nicht verliert.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Literal, Optional

from app.models.pydantic import ProjectState

logger = logging.getLogger(__name__)

GuardAction = Literal["none", "warning", "unattributed", "rollback"]


@dataclass
class RegressionVerdict:
    action: GuardAction
    drop: float = 0.0
    restored_units: List[int] = field(default_factory=list)


class RegressionGuard:
    def __init__(
        self,
        state: ProjectState,
        store,
        rollback_threshold: float = 2.0,
        warning_threshold: float = 1.0,
        on_change: Optional[Callable[[ProjectState], None]] = None,
    ):
        self.state = state
        self.store = store
        self.rollback_threshold = rollback_threshold
        self.warning_threshold = warning_threshold
        self.on_change = on_change

    @property
    def project_id(self) -> int:
        return self.state.project_id

    def has_snapshots(self) -> bool:
        return bool(self.state.pending_snapshots)

    def snapshot_units(self) -> List[int]:
        return sorted(int(k) for k in self.state.pending_snapshots)

    def capture(self, unit_id: int, content: str) -> None:
        """Erster Snapshot pro Zyklus gewinnt (Inhalt vor der ersten Korrektur)."""
        key = str(unit_id)
        if key in self.state.pending_snapshots:
            return
        self.state.pending_snapshots[key] = content
        self._changed()

    def discard(self, unit_id: int) -> None:
        if self.state.pending_snapshots.pop(str(unit_id), None) is not None:
            self._changed()

    def clear(self) -> None:
        if self.state.pending_snapshots:
            self.state.pending_snapshots = {}
            self._changed()

    def evaluate(self, new_score: float, previous_score: Optional[float]) -> RegressionVerdict:
        """
        Vergleicht den neuen Score mit dem des Vorzyklus.

        - kein Rückgang: Snapshots verwerfen
        - Rückgang < rollback_threshold: nur Warnung (ab warning_threshold), Korrekturen bleiben
        - Rückgang >= rollback_threshold mit Snapshots: Rollback aller gesicherten Kapitel
        - Rückgang ohne Snapshots: nicht zuordenbar, nur loggen
        """
        if previous_score is None or new_score >= previous_score:
            self.clear()
            return RegressionVerdict(action="none")

        drop = previous_score - new_score

        if drop >= self.rollback_threshold:
            if not self.has_snapshots():
                logger.warning(
                    "Score-Einbruch %.2f -> %.2f ohne Snapshots: keiner Korrektur zuordenbar",
                    previous_score,
                    new_score,
                )
                return RegressionVerdict(action="unattributed", drop=drop)
            restored = self.rollback()
            logger.warning(
                "Regression erkannt (%.2f -> %.2f, Δ=%.2f): Kapitel %s zurückgesetzt",
                previous_score,
                new_score,
                drop,
                restored,
            )
            return RegressionVerdict(action="rollback", drop=drop, restored_units=restored)

        if drop >= self.warning_threshold:
            logger.warning(
                "Score gesunken (%.2f -> %.2f), unter Rollback-Schwelle %.2f; Korrekturen bleiben",
                previous_score,
                new_score,
                self.rollback_threshold,
            )
        else:
            logger.info("Leichter Score-Rückgang %.2f -> %.2f", previous_score, new_score)
        self.clear()
        return RegressionVerdict(action="warning", drop=drop)

    def rollback(self) -> List[int]:
        restored: List[int] = []
        for key, content in sorted(self.state.pending_snapshots.items(), key=lambda kv: int(kv[0])):
            unit_id = int(key)
            self.store.put_unit(self.project_id, unit_id, content)
            restored.append(unit_id)
        self.state.pending_snapshots = {}
        self._changed()
        return restored

    def _changed(self) -> None:
        if self.on_change:
            self.on_change(self.state)
