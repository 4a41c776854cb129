"""
Persistenz-Vertrag der Revisions-Engine plus In-Memory-Implementierung.

Die In-Memory-Variante wird im TEST_MODE und in Tests verwendet; Datensätze
werden beim Lesen und Schreiben kopiert, damit Aufrufer keinen geteilten
veränderlichen Zustand mit dem Store haben.
"""

import itertools
import threading
from typing import Dict, List, Optional, Protocol, Tuple

from app.models.pydantic import ProjectState, RevisionRun, RunParameters, Unit


class RevisionStore(Protocol):
    def get_unit(self, project_id: int, unit_id: int) -> Optional[Unit]: ...

    def put_unit(self, project_id: int, unit_id: int, content: str, title: Optional[str] = None) -> None: ...

    def list_units(self, project_id: int) -> List[Unit]: ...

    def list_unit_ids(self, project_id: int) -> List[int]: ...

    def get_project_state(self, project_id: int) -> ProjectState: ...

    def put_project_state(self, state: ProjectState) -> None: ...

    def create_run(self, project_id: int, parameters: RunParameters) -> RevisionRun: ...

    def get_run(self, run_id: int) -> Optional[RevisionRun]: ...

    def update_run(self, run: RevisionRun) -> None: ...

    def list_runs(self, project_id: Optional[int] = None) -> List[RevisionRun]: ...


class InMemoryRevisionStore:
    def __init__(self) -> None:
        self._units: Dict[Tuple[int, int], Unit] = {}
        self._states: Dict[int, ProjectState] = {}
        self._runs: Dict[int, RevisionRun] = {}
        self._run_ids = itertools.count(1)
        self._lock = threading.Lock()

    # ---------- Units ---------- #

    def get_unit(self, project_id: int, unit_id: int) -> Optional[Unit]:
        unit = self._units.get((project_id, unit_id))
        return unit.model_copy(deep=True) if unit else None

    def put_unit(self, project_id: int, unit_id: int, content: str, title: Optional[str] = None) -> None:
        with self._lock:
            existing = self._units.get((project_id, unit_id))
            if title is None:
                title = existing.title if existing else ""
            self._units[(project_id, unit_id)] = Unit(unit_id=unit_id, title=title, content=content)

    def list_units(self, project_id: int) -> List[Unit]:
        return [
            u.model_copy(deep=True)
            for (pid, _), u in sorted(self._units.items())
            if pid == project_id
        ]

    def list_unit_ids(self, project_id: int) -> List[int]:
        return sorted(uid for (pid, uid) in self._units if pid == project_id)

    # ---------- Projekt-Zustand ---------- #

    def get_project_state(self, project_id: int) -> ProjectState:
        state = self._states.get(project_id)
        if state is None:
            return ProjectState(project_id=project_id)
        return state.model_copy(deep=True)

    def put_project_state(self, state: ProjectState) -> None:
        with self._lock:
            self._states[state.project_id] = state.model_copy(deep=True)

    # ---------- Runs ---------- #

    def create_run(self, project_id: int, parameters: RunParameters) -> RevisionRun:
        with self._lock:
            run = RevisionRun(run_id=next(self._run_ids), project_id=project_id, parameters=parameters)
            self._runs[run.run_id] = run
        return run.model_copy(deep=True)

    def get_run(self, run_id: int) -> Optional[RevisionRun]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    def update_run(self, run: RevisionRun) -> None:
        with self._lock:
            self._runs[run.run_id] = run.model_copy(deep=True)

    def list_runs(self, project_id: Optional[int] = None) -> List[RevisionRun]:
        return [
            r.model_copy(deep=True)
            for _, r in sorted(self._runs.items())
            if project_id is None or r.project_id == project_id
        ]
