"""
Führt eine Revision lokal und synchron aus.

Kapitel werden aus einem Verzeichnis mit Textdateien geladen:
  prologue.txt, chapter_01.txt, chapter_02.txt, ..., epilogue.txt

Beispiel:
  python scripts/run_revision.py --units-dir manuscript/ --out-dir revised/ --max-cycles 5
"""

import argparse
import json
import re
import sys
from pathlib import Path

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.core.config import settings
from app.db.store import InMemoryRevisionStore
from app.models.pydantic import RunParameters
from app.services.revision.collaborators import LLMReviewer, LLMRewriter
from app.services.revision.unit_ids import to_store_id, unit_label
from app.services.revision_service import RevisionService

_TRAILING_NUMBER = re.compile(r"(\d+)$")


def unit_id_from_filename(path: Path) -> int | None:
    stem = path.stem.lower().replace("-", "_")
    m = _TRAILING_NUMBER.search(stem)
    if m:
        return to_store_id(int(m.group(1)))
    return to_store_id(stem.replace("_", " "))


def load_units(store, project_id: int, units_dir: Path) -> int:
    loaded = 0
    for path in sorted(units_dir.glob("*.txt")):
        unit_id = unit_id_from_filename(path)
        if unit_id is None:
            print(f"Überspringe {path.name}: keine Kapitelnummer erkennbar")
            continue
        text = path.read_text(encoding="utf-8")
        store.put_unit(project_id, unit_id, text, title=path.stem)
        loaded += 1
    return loaded


def build_store(database_url: str | None):
    if not database_url:
        return InMemoryRevisionStore()
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker

    from app.db.postgres.persistence import SqlRevisionStore, init_schema

    engine = create_engine(database_url, future=True)
    init_schema(engine)
    return SqlRevisionStore(sessionmaker(bind=engine, autocommit=False, autoflush=False))


def build_collaborators(fake: bool):
    if fake:
        from app.llm.fake_client import FakeLLMClient

        return LLMReviewer(FakeLLMClient()), LLMRewriter(FakeLLMClient())
    from app.llm.openai_client import OpenAIClient

    return (
        LLMReviewer(OpenAIClient(model_name=settings.reviewer_model)),
        LLMRewriter(OpenAIClient(model_name=settings.rewriter_model, temperature=0.4)),
    )


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Run the iterative revision loop on a local manuscript")
    parser.add_argument("--units-dir", type=str, required=True, help="Directory with one .txt file per unit")
    parser.add_argument("--project-id", type=int, default=1, help="Project id (default: 1)")
    parser.add_argument("--out-dir", type=str, default=None, help="Write revised units to this directory")
    parser.add_argument("--database-url", type=str, default=None, help="Persist state in this database (default: in-memory)")
    parser.add_argument("--max-cycles", type=int, default=None, help=f"Max review cycles (default: {settings.max_cycles})")
    parser.add_argument("--min-score", type=float, default=None, help=f"Acceptance score (default: {settings.min_accept_score})")
    parser.add_argument("--fake", action="store_true", help="Use the deterministic fake LLM client")
    parser.add_argument("--json", action="store_true", help="Print the full run record as JSON")
    args = parser.parse_args()

    units_dir = Path(args.units_dir)
    if not units_dir.is_dir():
        print(f"Path not found: {units_dir.absolute()}")
        return 1

    store = build_store(args.database_url)
    loaded = load_units(store, args.project_id, units_dir)
    if not loaded:
        print(f"Keine Kapitel in {units_dir.absolute()} gefunden")
        return 1
    print(f"{loaded} Kapitel geladen")

    overrides = {}
    if args.max_cycles is not None:
        overrides["max_cycles"] = args.max_cycles
    if args.min_score is not None:
        overrides["min_accept_score"] = args.min_score

    reviewer, rewriter = build_collaborators(args.fake)
    service = RevisionService(store=store, reviewer=reviewer, rewriter=rewriter)
    run = service.run_sync(args.project_id, RunParameters(**overrides))

    if args.json:
        print(json.dumps(run.model_dump(), indent=2, ensure_ascii=False))
    else:
        print("=" * 70)
        print(f"Run {run.run_id}: {run.status} (final score: {run.final_score})")
        print("=" * 70)
        for rec in run.cycle_history:
            score = f"{rec.score:.1f}" if rec.score is not None else "-"
            print(
                f"  Zyklus {rec.cycle:>2}: score={score:<5} issues={rec.total_issues:<3} "
                f"neu={rec.new_issues:<3} korrigiert={rec.corrected_units} -> {rec.result}"
            )
        if run.failed_units:
            print(f"  Fehlgeschlagene Kapitel: {run.failed_units}")
        if run.error_message:
            print(f"  Fehler: {run.error_message}")

    if args.out_dir:
        out_dir = Path(args.out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        for unit in store.list_units(args.project_id):
            name = unit_label(unit.unit_id).lower().replace(" ", "_").replace("'", "")
            (out_dir / f"{name}.txt").write_text(unit.content, encoding="utf-8")
        print(f"Überarbeitete Kapitel in {out_dir.absolute()}")

    return 0 if run.status == "approved" else 2


if __name__ == "__main__":
    sys.exit(main())
