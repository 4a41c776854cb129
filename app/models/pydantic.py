from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from app.core.config import settings

Severity = Literal["critical", "major", "minor"]

# ordinal: critical > major > minor
SEVERITY_RANK: Dict[str, int] = {"critical": 3, "major": 2, "minor": 1}

_SEVERITY_ALIASES = {
    "critica": "critical",
    "crítica": "critical",
    "critico": "critical",
    "crítico": "critical",
    "high": "major",
    "mayor": "major",
    "grave": "major",
    "medium": "major",
    "menor": "minor",
    "leve": "minor",
    "low": "minor",
}

RunStatus = Literal[
    "pending",
    "reviewing",
    "classifying",
    "correcting",
    "validating",
    "approved",
    "exhausted",
    "cancelled",
    "paused",
    "failed",
]

ACTIVE_RUN_STATUSES = {"pending", "reviewing", "classifying", "correcting", "validating"}

CorrectionMode = Literal["patch", "rewrite", "escalated"]


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Issue(BaseModel):
    """
    Ein vom Reviewer gemeldeter Defekt für genau einen Zyklus.

    affected_units enthält Kapitelnummern; Sonderkapitel (Epilog, Nachwort)
    werden erst über app.services.revision.unit_ids auf die kanonische ID gebracht.
    """
    category: str = "other"
    severity: Severity = "minor"
    description: str = ""
    correction_instruction: Optional[str] = None
    affected_units: List[int] = Field(default_factory=list)

    # Fingerprint der ursprünglichen Reviewer-Meldung, falls das Issue
    # umgeschrieben wurde (Merge-Reinterpretation, Eskalation).
    origin_fingerprint: Optional[str] = None
    escalated: bool = False
    persistence_count: int = 0

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> str:
        if value is None:
            return "minor"
        s = str(value).strip().lower()
        s = _SEVERITY_ALIASES.get(s, s)
        return s if s in SEVERITY_RANK else "minor"

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: Any) -> str:
        if value is None:
            return "other"
        return str(value).strip() or "other"


class ReviewResult(BaseModel):
    """Ergebnis eines Reviewer-Aufrufs (Score auf 0..10 Skala)."""
    score: float
    verdict: str = "unknown"
    issues: List[Issue] = Field(default_factory=list)
    units_to_rewrite: List[int] = Field(default_factory=list)
    # nur Score per Regex gelesen, Issues unbekannt
    parse_fallback: bool = False


class Unit(BaseModel):
    unit_id: int
    title: str = ""
    content: str = ""


class ReviewContext(BaseModel):
    """Vorwissen für den Reviewer, um die Bewertung zwischen Zyklen zu stabilisieren."""
    cycle: int
    previous_score: Optional[float] = None
    corrected_issue_summaries: List[str] = Field(default_factory=list)


class CorrectionContext(BaseModel):
    """Kontext für den Rewriter (Stufe + Nachbarkapitel)."""
    unit_id: int
    unit_label: str
    mode: CorrectionMode = "rewrite"
    cycle: int = 0
    previous_excerpt: str = ""
    next_excerpt: str = ""


class CycleState(BaseModel):
    cycle_number: int = 0
    previous_score: Optional[float] = None
    consecutive_high_scores: int = 0
    max_cycles: int = Field(default_factory=lambda: settings.max_cycles)


class ProjectState(BaseModel):
    """
    Einziger dauerhafter Zustandsdatensatz pro Projekt.

    Alle Maps sind JSON-serialisierbar (String-Keys), damit der Controller
    nach einem Neustart exakt am letzten Checkpoint weitermachen kann.
    """
    project_id: int
    resolved_fingerprints: List[str] = Field(default_factory=list)
    correction_counts: Dict[str, int] = Field(default_factory=dict)
    persistence_counters: Dict[str, int] = Field(default_factory=dict)
    escalated_fingerprints: List[str] = Field(default_factory=list)
    cycle_state: CycleState = Field(default_factory=CycleState)
    # unit_id (als String) -> Inhalt vor der Korrektur
    pending_snapshots: Dict[str, str] = Field(default_factory=dict)
    corrected_issue_summaries: List[str] = Field(default_factory=list)


class RunParameters(BaseModel):
    """Run-Parameter; nicht gesetzte Werte kommen aus den Settings."""
    max_cycles: int = Field(default_factory=lambda: settings.max_cycles, ge=1)
    min_accept_score: float = Field(default_factory=lambda: settings.min_accept_score, ge=0.0, le=10.0)
    required_consecutive_high_scores: int = Field(
        default_factory=lambda: settings.required_consecutive_high_scores, ge=1
    )
    max_correction_attempts_per_unit: int = Field(
        default_factory=lambda: settings.max_correction_attempts_per_unit, ge=1
    )
    structural_auto_resolve_after_attempts: int = Field(
        default_factory=lambda: settings.structural_auto_resolve_after_attempts, ge=1
    )
    persistent_issue_escalation_threshold: int = Field(
        default_factory=lambda: settings.persistent_issue_escalation_threshold, ge=1
    )
    regression_rollback_threshold: float = Field(
        default_factory=lambda: settings.regression_rollback_threshold, gt=0.0, le=10.0
    )
    regression_warning_threshold: float = Field(
        default_factory=lambda: settings.regression_warning_threshold, ge=0.0, le=10.0
    )
    collaborator_retries: int = Field(default_factory=lambda: settings.collaborator_retries, ge=0)


class DiffStats(BaseModel):
    words_added: int = 0
    words_removed: int = 0
    length_change: int = 0


class CycleRecord(BaseModel):
    cycle: int
    score: Optional[float] = None
    verdict: Optional[str] = None
    total_issues: int = 0
    new_issues: int = 0
    filtered_issues: int = 0
    auto_resolved: int = 0
    escalated: int = 0
    corrected_units: List[int] = Field(default_factory=list)
    failed_units: List[int] = Field(default_factory=list)
    skipped_units: List[int] = Field(default_factory=list)
    rolled_back_units: List[int] = Field(default_factory=list)
    diff_stats: Dict[str, DiffStats] = Field(default_factory=dict)
    result: str = "corrected"
    started_at: str = Field(default_factory=utcnow_iso)
    completed_at: Optional[str] = None


class ProgressLogEntry(BaseModel):
    timestamp: str = Field(default_factory=utcnow_iso)
    phase: str
    message: str
    details: Optional[Dict[str, Any]] = None


class RevisionRun(BaseModel):
    """Run-Datensatz, wie er persistiert und über die API ausgeliefert wird."""
    run_id: int
    project_id: int
    status: RunStatus = "pending"
    current_cycle: int = 0
    parameters: RunParameters = Field(default_factory=RunParameters)
    cycle_history: List[CycleRecord] = Field(default_factory=list)
    progress_log: List[ProgressLogEntry] = Field(default_factory=list)
    final_score: Optional[float] = None
    failed_units: List[int] = Field(default_factory=list)
    error_message: Optional[str] = None
    created_at: str = Field(default_factory=utcnow_iso)
    completed_at: Optional[str] = None


class UnitPayload(BaseModel):
    """
    Request-Body für PUT /projects/{project_id}/units/{unit_id}.
    """
    title: str = ""
    content: str


class StartRunRequest(BaseModel):
    """
    Request-Body für POST /projects/{project_id}/revision-runs.
    """
    parameters: Optional[RunParameters] = None
