from typing import Iterable

from app.models.pydantic import Unit
from app.services.revision.unit_ids import unit_label


def build_document(units: Iterable[Unit]) -> str:
    """Setzt das Manuskript in kanonischer Reihenfolge mit Kapitel-Headern zusammen."""
    parts = []
    for unit in sorted(units, key=lambda u: u.unit_id):
        if not unit.content:
            continue
        parts.append(f"=== {unit_label(unit.unit_id)}: {unit.title} ===\n\n{unit.content}")
    return "\n\n".join(parts)
