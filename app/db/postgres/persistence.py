import json
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import Column, Integer, MetaData, Table, Text, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.models.pydantic import ProjectState, RevisionRun, RunParameters, Unit, utcnow_iso

logger = logging.getLogger(__name__)

# Schema nur für DDL; Statements laufen als text() und sind Postgres/SQLite-kompatibel.
# JSON-Felder werden serialisiert als TEXT gespeichert.
metadata = MetaData()

units_table = Table(
    "units",
    metadata,
    Column("project_id", Integer, primary_key=True, autoincrement=False),
    Column("unit_id", Integer, primary_key=True, autoincrement=False),
    Column("title", Text, nullable=False, default=""),
    Column("content", Text, nullable=False, default=""),
    Column("updated_at", Text),
)

project_states_table = Table(
    "project_states",
    metadata,
    Column("project_id", Integer, primary_key=True, autoincrement=False),
    Column("state_json", Text, nullable=False),
    Column("updated_at", Text),
)

revision_runs_table = Table(
    "revision_runs",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("project_id", Integer, nullable=False, index=True),
    Column("status", Text, nullable=False),
    Column("run_json", Text, nullable=False),
    Column("created_at", Text),
    Column("updated_at", Text),
)


def init_schema(engine: Engine) -> None:
    """Legt die Tabellen an, falls sie fehlen."""
    metadata.create_all(engine)


class SqlRevisionStore:
    """
    SQLAlchemy-basierter Store. Jede Mutation wird sofort committed, damit der
    Controller nach einem Neustart exakt am letzten Checkpoint weitermachen kann.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db: Session = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Fehler beim Schreiben in die Datenbank")
            raise
        finally:
            db.close()

    # ---------- Units ---------- #

    def get_unit(self, project_id: int, unit_id: int) -> Optional[Unit]:
        with self._session() as db:
            row = db.execute(
                text(
                    """
                    SELECT unit_id, title, content
                    FROM units
                    WHERE project_id = :project_id AND unit_id = :unit_id
                    """
                ),
                {"project_id": project_id, "unit_id": unit_id},
            ).first()
        if not row:
            return None
        return Unit(unit_id=row[0], title=row[1] or "", content=row[2] or "")

    def put_unit(self, project_id: int, unit_id: int, content: str, title: Optional[str] = None) -> None:
        with self._session() as db:
            db.execute(
                text(
                    """
                    INSERT INTO units (project_id, unit_id, title, content, updated_at)
                    VALUES (:project_id, :unit_id, COALESCE(CAST(:title AS TEXT), ''), :content, :now)
                    ON CONFLICT (project_id, unit_id) DO UPDATE SET
                        content = excluded.content,
                        title = COALESCE(CAST(:title AS TEXT), units.title),
                        updated_at = excluded.updated_at
                    """
                ),
                {
                    "project_id": project_id,
                    "unit_id": unit_id,
                    "title": title,
                    "content": content,
                    "now": utcnow_iso(),
                },
            )

    def list_units(self, project_id: int) -> List[Unit]:
        with self._session() as db:
            rows = db.execute(
                text(
                    """
                    SELECT unit_id, title, content
                    FROM units
                    WHERE project_id = :project_id
                    ORDER BY unit_id
                    """
                ),
                {"project_id": project_id},
            ).all()
        return [Unit(unit_id=r[0], title=r[1] or "", content=r[2] or "") for r in rows]

    def list_unit_ids(self, project_id: int) -> List[int]:
        with self._session() as db:
            rows = db.execute(
                text("SELECT unit_id FROM units WHERE project_id = :project_id ORDER BY unit_id"),
                {"project_id": project_id},
            ).all()
        return [r[0] for r in rows]

    # ---------- Projekt-Zustand ---------- #

    def get_project_state(self, project_id: int) -> ProjectState:
        with self._session() as db:
            row = db.execute(
                text("SELECT state_json FROM project_states WHERE project_id = :project_id"),
                {"project_id": project_id},
            ).first()
        if not row:
            return ProjectState(project_id=project_id)
        return ProjectState.model_validate_json(row[0])

    def put_project_state(self, state: ProjectState) -> None:
        with self._session() as db:
            db.execute(
                text(
                    """
                    INSERT INTO project_states (project_id, state_json, updated_at)
                    VALUES (:project_id, :state_json, :now)
                    ON CONFLICT (project_id) DO UPDATE SET
                        state_json = excluded.state_json,
                        updated_at = excluded.updated_at
                    """
                ),
                {
                    "project_id": state.project_id,
                    "state_json": state.model_dump_json(),
                    "now": utcnow_iso(),
                },
            )

    # ---------- Runs ---------- #

    def create_run(self, project_id: int, parameters: RunParameters) -> RevisionRun:
        now = utcnow_iso()
        with self._session() as db:
            result = db.execute(
                text(
                    """
                    INSERT INTO revision_runs (project_id, status, run_json, created_at, updated_at)
                    VALUES (:project_id, 'pending', '{}', :now, :now)
                    RETURNING id
                    """
                ),
                {"project_id": project_id, "now": now},
            )
            run_id = result.scalar_one()
            run = RevisionRun(
                run_id=run_id,
                project_id=project_id,
                parameters=parameters,
                created_at=now,
            )
            db.execute(
                text("UPDATE revision_runs SET run_json = :run_json WHERE id = :id"),
                {"run_json": run.model_dump_json(), "id": run_id},
            )
        logger.info("Created revision run: %s (project %s)", run_id, project_id)
        return run

    def get_run(self, run_id: int) -> Optional[RevisionRun]:
        with self._session() as db:
            row = db.execute(
                text("SELECT run_json FROM revision_runs WHERE id = :id"),
                {"id": run_id},
            ).first()
        if not row:
            return None
        return RevisionRun.model_validate_json(row[0])

    def update_run(self, run: RevisionRun) -> None:
        with self._session() as db:
            db.execute(
                text(
                    """
                    UPDATE revision_runs
                    SET status = :status, run_json = :run_json, updated_at = :now
                    WHERE id = :id
                    """
                ),
                {
                    "status": run.status,
                    "run_json": run.model_dump_json(),
                    "now": utcnow_iso(),
                    "id": run.run_id,
                },
            )

    def list_runs(self, project_id: Optional[int] = None) -> List[RevisionRun]:
        with self._session() as db:
            if project_id is None:
                rows = db.execute(text("SELECT run_json FROM revision_runs ORDER BY id")).all()
            else:
                rows = db.execute(
                    text("SELECT run_json FROM revision_runs WHERE project_id = :project_id ORDER BY id"),
                    {"project_id": project_id},
                ).all()
        return [RevisionRun.model_validate(json.loads(r[0])) for r in rows]
