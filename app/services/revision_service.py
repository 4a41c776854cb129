"""
Run-Verwaltung für die Revisions-Schleife.

- genau ein aktiver Run pro Projekt
- Abbruch über In-Process-Flag plus persistierten Status
- Retry setzt pausierte/abgebrochene/fehlgeschlagene Runs am letzten Checkpoint fort
- Zombie-Cleanup beim Serverstart
"""

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from app.core.config import settings
from app.models.pydantic import (
    ACTIVE_RUN_STATUSES,
    CycleState,
    ProgressLogEntry,
    ProjectState,
    RevisionRun,
    RunParameters,
    Unit,
    utcnow_iso,
)
from app.services.revision.collaborators import LLMReviewer, LLMRewriter, Reviewer, Rewriter
from app.services.revision.cycle_controller import RevisionCycleController
from app.services.revision.errors import InvalidRunState, RunConflict, RunNotFound
from app.services.revision.limiter import CorrectionLimiter
from app.services.revision.unit_ids import to_store_id

logger = logging.getLogger(__name__)

# Wenn TEST_MODE=1 in der Umgebung gesetzt ist,
# laufen Store und LLM komplett in-memory bzw. deterministisch.
TEST_MODE = os.getenv("TEST_MODE") == "1"

RETRYABLE_STATUSES = {"failed", "cancelled", "paused"}


def _default_store():
    if TEST_MODE:
        from app.db.store import InMemoryRevisionStore

        return InMemoryRevisionStore()
    from app.db.postgres.session import get_sql_store

    return get_sql_store()


def _default_collaborators() -> tuple[Reviewer, Rewriter]:
    if TEST_MODE:
        from app.llm.fake_client import FakeLLMClient

        return LLMReviewer(FakeLLMClient()), LLMRewriter(FakeLLMClient())
    from app.llm.openai_client import OpenAIClient

    return (
        LLMReviewer(OpenAIClient(model_name=settings.reviewer_model)),
        LLMRewriter(OpenAIClient(model_name=settings.rewriter_model, temperature=0.4)),
    )


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


class RevisionService:
    def __init__(self, store=None, reviewer: Optional[Reviewer] = None, rewriter: Optional[Rewriter] = None):
        self.store = store if store is not None else _default_store()
        if reviewer is None or rewriter is None:
            default_reviewer, default_rewriter = _default_collaborators()
            reviewer = reviewer or default_reviewer
            rewriter = rewriter or default_rewriter
        self.reviewer = reviewer
        self.rewriter = rewriter

        # run_id -> Abbruch-Flag der Runs, die in diesem Prozess laufen
        self._cancel_flags: Dict[int, threading.Event] = {}
        self._lock = threading.Lock()

    # ---------- Units & Zustand ---------- #

    def put_unit(self, project_id: int, unit_id: int, content: str, title: Optional[str] = None) -> Unit:
        store_id = to_store_id(unit_id)
        if store_id is None:
            raise ValueError(f"Ungültige Kapitel-ID: {unit_id!r}")
        self.store.put_unit(project_id, store_id, content, title)
        return self.store.get_unit(project_id, store_id)

    def get_unit(self, project_id: int, unit_id: int) -> Optional[Unit]:
        store_id = to_store_id(unit_id)
        if store_id is None:
            return None
        return self.store.get_unit(project_id, store_id)

    def list_units(self, project_id: int) -> List[Unit]:
        return self.store.list_units(project_id)

    def get_state(self, project_id: int) -> ProjectState:
        return self.store.get_project_state(project_id)

    def reset_correction_count(self, project_id: int, unit_id: int) -> ProjectState:
        """Operator-Override: Kapitel darf wieder korrigiert werden."""
        store_id = to_store_id(unit_id)
        if store_id is None:
            raise ValueError(f"Ungültige Kapitel-ID: {unit_id!r}")
        state = self.store.get_project_state(project_id)
        CorrectionLimiter(state, max_attempts=1, on_change=self.store.put_project_state).reset(store_id)
        return state

    # ---------- Runs ---------- #

    def get_run(self, run_id: int) -> RevisionRun:
        run = self.store.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} nicht gefunden")
        return run

    def list_runs(self, project_id: Optional[int] = None) -> List[RevisionRun]:
        return self.store.list_runs(project_id)

    def active_run(self, project_id: int) -> Optional[RevisionRun]:
        for run in self.store.list_runs(project_id):
            if run.status in ACTIVE_RUN_STATUSES:
                return run
        return None

    def start_run(self, project_id: int, parameters: Optional[RunParameters] = None) -> RevisionRun:
        """
        Legt einen neuen Run an (Status pending); ausgeführt wird er über execute_run.

        Ein neuer Run beginnt wieder bei Zyklus 1. Ledger, Korrekturzähler und
        Eskalationen gelten projektweit und bleiben erhalten.
        """
        with self._lock:
            active = self.active_run(project_id)
            if active is not None:
                raise RunConflict(f"Für Projekt {project_id} läuft bereits Run {active.run_id}")
            if not self.store.list_unit_ids(project_id):
                raise InvalidRunState(f"Projekt {project_id} hat keine Kapitel")

            params = parameters or RunParameters()
            state = self.store.get_project_state(project_id)
            state.cycle_state = CycleState(max_cycles=params.max_cycles)
            self.store.put_project_state(state)

            run = self.store.create_run(project_id, params)
            self._cancel_flags[run.run_id] = threading.Event()

        logger.info("Revision-Run %s für Projekt %s angelegt", run.run_id, project_id)
        return run

    def retry_run(self, run_id: int) -> RevisionRun:
        """Setzt einen pausierten, abgebrochenen oder fehlgeschlagenen Run fort."""
        with self._lock:
            run = self.get_run(run_id)
            if run.status not in RETRYABLE_STATUSES:
                raise InvalidRunState(f"Run {run_id} mit Status {run.status} kann nicht fortgesetzt werden")
            active = self.active_run(run.project_id)
            if active is not None:
                raise RunConflict(f"Für Projekt {run.project_id} läuft bereits Run {active.run_id}")

            run.status = "pending"
            run.error_message = None
            run.completed_at = None
            run.progress_log.append(ProgressLogEntry(phase="retry", message="Run wird fortgesetzt"))
            self.store.update_run(run)
            self._cancel_flags[run_id] = threading.Event()

        logger.info("Revision-Run %s wird fortgesetzt", run_id)
        return run

    def execute_run(self, run_id: int) -> RevisionRun:
        """Führt den Run synchron bis zu einem Terminal- oder Pausenzustand aus."""
        run = self.get_run(run_id)
        if run.status != "pending":
            logger.warning("Run %s hat Status %s, wird nicht ausgeführt", run_id, run.status)
            return run

        flag = self._cancel_flags.setdefault(run_id, threading.Event())
        controller = RevisionCycleController(
            self.store,
            self.reviewer,
            self.rewriter,
            run,
            is_cancelled=flag.is_set,
        )
        try:
            return controller.run()
        except Exception as e:
            # Persistenzfehler o.ä.: Zustand bis zum letzten Checkpoint bleibt erhalten
            logger.exception("Revision-Run %s fehlgeschlagen", run_id)
            run = controller.run_record
            run.status = "failed"
            run.error_message = str(e)
            run.completed_at = utcnow_iso()
            self.store.update_run(run)
            return run
        finally:
            self._cancel_flags.pop(run_id, None)

    def run_sync(self, project_id: int, parameters: Optional[RunParameters] = None) -> RevisionRun:
        run = self.start_run(project_id, parameters)
        return self.execute_run(run.run_id)

    def cancel_run(self, run_id: int) -> RevisionRun:
        run = self.get_run(run_id)
        if run.status not in ACTIVE_RUN_STATUSES:
            raise InvalidRunState(f"Run {run_id} mit Status {run.status} kann nicht abgebrochen werden")

        flag = self._cancel_flags.get(run_id)
        if flag is not None:
            flag.set()

        run.status = "cancelled"
        run.completed_at = utcnow_iso()
        run.progress_log.append(ProgressLogEntry(phase="cancelled", message="Abbruch angefordert"))
        self.store.update_run(run)
        logger.info("Revision-Run %s abgebrochen", run_id)
        return run

    def cleanup_zombie_runs(self, grace_period_seconds: Optional[int] = None) -> int:
        """
        Markiert aktive Runs ohne ausführenden Prozess als fehlgeschlagen.

        Läuft beim Serverstart; Runs, die in diesem Prozess laufen, bleiben unberührt.
        """
        grace = settings.zombie_grace_period_seconds if grace_period_seconds is None else grace_period_seconds
        now = datetime.now(timezone.utc)
        cleaned = 0

        for run in self.store.list_runs():
            if run.status not in ACTIVE_RUN_STATUSES or run.run_id in self._cancel_flags:
                continue
            last_ts = run.progress_log[-1].timestamp if run.progress_log else run.created_at
            last = _parse_ts(last_ts)
            if last is not None and (now - last).total_seconds() < grace:
                continue

            run.status = "failed"
            run.error_message = "Server neu gestartet während der Run aktiv war"
            run.completed_at = utcnow_iso()
            run.progress_log.append(
                ProgressLogEntry(phase="failed", message="Run durch Server-Neustart unterbrochen")
            )
            self.store.update_run(run)
            cleaned += 1

        if cleaned:
            logger.warning("%s verwaiste Revision-Run(s) als fehlgeschlagen markiert", cleaned)
        return cleaned
