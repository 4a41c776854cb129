"""
Cycle Controller der Revisions-Schleife.

Ablauf pro Zyklus:
1) REVIEWING: Reviewer bewertet das komplette Manuskript.
2) VALIDATING: Score wird gegen den Vorzyklus geprüft; bei deutlichem Einbruch
   werden die Korrekturen des Vorzyklus per Snapshot zurückgerollt.
3) CLASSIFYING: Merge-Anfragen umdeuten -> Ledger-Filter -> (ab Zyklus 2)
   strukturelle Issues auto-auflösen -> (ab Zyklus 3) persistente Issues eskalieren.
4) Quality-Gate: score >= min_accept_score und keine neuen Issues zählt als
   qualifizierender Zyklus; nach required_consecutive_high_scores in Folge -> APPROVED.
5) CORRECTING: jedes betroffene Kapitel wird genau einmal pro Zyklus mit allen
   seinen Issues umgeschrieben (Snapshot, Limiter, Rewriter, Ledger).

Jede Zustandsänderung wird sofort persistiert; ein Abbruch oder Neustart setzt
exakt am letzten Checkpoint wieder auf.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from app.core.config import settings
from app.models.pydantic import (
    CycleRecord,
    Issue,
    ProgressLogEntry,
    ProjectState,
    ReviewContext,
    ReviewResult,
    RevisionRun,
    RunParameters,
    RunStatus,
    utcnow_iso,
)
from app.services.revision.classifiers import auto_resolve_structural, reinterpret_merge_requests
from app.services.revision.collaborators import Reviewer, Rewriter, call_with_retries
from app.services.revision.corrector import UnitCorrector
from app.services.revision.document import build_document
from app.services.revision.errors import (
    CollaboratorUnavailable,
    NoActionableIssues,
    UnitCorrectionFailed,
    UnparseableReviewerOutput,
)
from app.services.revision.escalator import PersistentIssueEscalator
from app.services.revision.ledger import ResolutionLedger
from app.services.revision.limiter import CorrectionLimiter
from app.services.revision.regression_guard import RegressionGuard
from app.services.revision.unit_ids import extract_unit_references, normalize_units, unit_label

logger = logging.getLogger(__name__)

MAX_CORRECTED_SUMMARIES = 50


class _Cancelled(Exception):
    """Interner Kontrollfluss: Abbruch an einem Checkpoint beobachtet."""


class RevisionCycleController:
    def __init__(
        self,
        store,
        reviewer: Reviewer,
        rewriter: Rewriter,
        run: RevisionRun,
        *,
        is_cancelled: Optional[Callable[[], bool]] = None,
        max_log_entries: Optional[int] = None,
    ):
        self.store = store
        self.reviewer = reviewer
        self.run_record = run
        self.params: RunParameters = run.parameters
        self.project_id = run.project_id
        self.is_cancelled = is_cancelled
        self.max_log_entries = max_log_entries or settings.max_progress_log_entries

        self.state: ProjectState = store.get_project_state(self.project_id)
        self.state.cycle_state.max_cycles = self.params.max_cycles

        self.ledger = ResolutionLedger(self.state, on_change=self._persist_state)
        self.limiter = CorrectionLimiter(
            self.state,
            self.params.max_correction_attempts_per_unit,
            on_change=self._persist_state,
        )
        self.escalator = PersistentIssueEscalator(
            self.state,
            self.params.persistent_issue_escalation_threshold,
            on_change=self._persist_state,
        )
        self.guard = RegressionGuard(
            self.state,
            store,
            rollback_threshold=self.params.regression_rollback_threshold,
            warning_threshold=self.params.regression_warning_threshold,
            on_change=self._persist_state,
        )
        self.corrector = UnitCorrector(rewriter, retries=self.params.collaborator_retries)

    @property
    def cycle_state(self):
        return self.state.cycle_state

    # ---------- Hauptschleife ---------- #

    def run(self) -> RevisionRun:
        """Führt Zyklen aus, bis ein Terminalzustand erreicht ist, und liefert den Run-Datensatz."""
        if self._cancelled():
            return self._finish("cancelled", "Run vor dem Start abgebrochen")

        self._persist_state(self.state)
        self._log(
            "started",
            f"Revision gestartet (Zyklus {self.cycle_state.cycle_number + 1}/{self.params.max_cycles})",
        )

        while self.cycle_state.cycle_number < self.params.max_cycles:
            cycle = self.cycle_state.cycle_number + 1

            if self._cancelled():
                return self._finish("cancelled", f"Zyklus {cycle}: vom Benutzer abgebrochen")

            try:
                result = self._run_cycle(cycle)
            except _Cancelled:
                return self._finish("cancelled", f"Zyklus {cycle}: vom Benutzer abgebrochen")
            except UnparseableReviewerOutput as e:
                # Zykluszähler bleibt stehen, ein Retry wiederholt denselben Zyklus
                self.run_record.error_message = str(e)
                return self._finish(
                    "paused",
                    f"Zyklus {cycle}: Reviewer-Antwort nicht lesbar, Run pausiert",
                    details={"flags": e.flags},
                )

            if result == "approved":
                return self._finish(
                    "approved",
                    f"Qualitätsschwelle in Zyklus {cycle} erreicht "
                    f"({self.cycle_state.consecutive_high_scores} Zyklen in Folge)",
                )

        return self._finish(
            "exhausted",
            f"Maximum von {self.params.max_cycles} Zyklen erreicht ohne Freigabe",
        )

    def _run_cycle(self, cycle: int) -> str:
        record = CycleRecord(cycle=cycle)
        self.run_record.current_cycle = cycle
        unit_ids = self.store.list_unit_ids(self.project_id)

        # 1) REVIEWING
        self._set_status("reviewing")
        self._log("reviewing", f"Zyklus {cycle}: Review gestartet")
        try:
            review = self._review(cycle)
        except CollaboratorUnavailable as e:
            self._log("error", f"Zyklus {cycle}: Reviewer nicht erreichbar: {e}")
            record.result = "review_failed"
            self.cycle_state.consecutive_high_scores = 0
            self._complete_cycle(record, score=None)
            return record.result

        record.score = review.score
        record.verdict = review.verdict
        record.total_issues = len(review.issues)
        self._log(
            "review_complete",
            f"Zyklus {cycle}: Score={review.score:.1f}, Issues={len(review.issues)}",
            details={"verdict": review.verdict},
        )

        # 2) VALIDATING (Korrekturen des Vorzyklus)
        self._set_status("validating")
        verdict = self.guard.evaluate(review.score, self.cycle_state.previous_score)
        if verdict.action == "rollback":
            record.rolled_back_units = verdict.restored_units
            record.result = "rolled_back"
            self.cycle_state.consecutive_high_scores = 0
            self._log(
                "rollback",
                f"Zyklus {cycle}: Score um {verdict.drop:.1f} gefallen, Kapitel "
                f"{verdict.restored_units} zurückgesetzt; Korrekturen dieses Zyklus übersprungen",
            )
            # Baseline bleibt der Score vor den verworfenen Korrekturen
            self._complete_cycle(record, score=None)
            return record.result
        if verdict.action in ("warning", "unattributed"):
            self._log(
                "score_drop",
                f"Zyklus {cycle}: Score um {verdict.drop:.1f} gefallen ({verdict.action})",
            )

        # 3) CLASSIFYING
        self._set_status("classifying")
        issues, escalated = self._classify(cycle, review, unit_ids, record)

        # 4) Quality-Gate
        qualifies = (
            review.score >= self.params.min_accept_score
            and not issues
            and not review.parse_fallback
        )
        if qualifies:
            self.cycle_state.consecutive_high_scores += 1
        else:
            self.cycle_state.consecutive_high_scores = 0
        self._persist_state(self.state)

        if self.cycle_state.consecutive_high_scores >= self.params.required_consecutive_high_scores:
            record.result = "approved"
            self._complete_cycle(record, score=review.score)
            return record.result

        if not issues:
            record.result = "qualifying" if qualifies else "no_new_issues"
            self._complete_cycle(record, score=review.score)
            return record.result

        try:
            targets = self._target_units(review, issues, escalated, unit_ids)
        except NoActionableIssues as e:
            # weiter zum nächsten Zyklus, begrenzt durch max_cycles
            self._log("no_actionable_issues", f"Zyklus {cycle}: {e}")
            record.result = "no_actionable_issues"
            self._complete_cycle(record, score=review.score)
            return record.result

        # 5) CORRECTING
        self._set_status("correcting")
        self._correct_units(cycle, targets, issues, unit_ids, record)

        record.result = "corrected" if record.corrected_units else "correction_failed"
        self._complete_cycle(record, score=review.score)
        return record.result

    # ---------- Phasen ---------- #

    def _review(self, cycle: int) -> ReviewResult:
        units = self.store.list_units(self.project_id)
        document = build_document(units)
        context = ReviewContext(
            cycle=cycle,
            previous_score=self.cycle_state.previous_score,
            corrected_issue_summaries=list(self.state.corrected_issue_summaries),
        )
        return call_with_retries(
            lambda: self.reviewer.review(document, context),
            collaborator="Reviewer",
            retries=self.params.collaborator_retries,
        )

    def _classify(
        self,
        cycle: int,
        review: ReviewResult,
        unit_ids: List[int],
        record: CycleRecord,
    ) -> Tuple[List[Issue], List[Issue]]:
        issues, merged = reinterpret_merge_requests(review.issues)
        if merged:
            self._log("merge_reinterpreted", f"Zyklus {cycle}: {merged} Merge-Anfrage(n) in Kürzungen umgedeutet")

        issues, discarded = self._with_actionable_units(issues, unit_ids)
        if discarded:
            logger.info("Zyklus %s: %s Issue(s) ohne Kapitelbezug verworfen", cycle, discarded)

        issues, filtered = self.ledger.filter_new(issues)
        record.filtered_issues = filtered

        if cycle >= 2:
            resolved, issues = auto_resolve_structural(
                issues,
                self.state.correction_counts,
                self.params.structural_auto_resolve_after_attempts,
            )
            if resolved:
                self.ledger.mark_resolved(resolved)
                record.auto_resolved = len(resolved)
                for issue in resolved:
                    self._log(
                        "structural_accepted",
                        "Accepted with reservations, requires manual structural edit: "
                        f"{issue.description[:160]}",
                        details={"category": issue.category, "affected_units": issue.affected_units},
                    )

        escalated: List[Issue] = []
        if cycle >= 3 and issues:
            issues, escalated = self.escalator.process(issues, unit_ids)
            record.escalated = len(escalated)
            if escalated:
                self._log("escalated", f"Zyklus {cycle}: {len(escalated)} persistente(s) Issue(s) eskaliert")

        record.new_issues = len(issues)
        return issues, escalated

    def _with_actionable_units(self, issues: List[Issue], unit_ids: List[int]) -> Tuple[List[Issue], int]:
        """Issues ohne Kapitel: aus Querverweisen im Text ableiten oder verwerfen."""
        known = set(unit_ids)
        out: List[Issue] = []
        discarded = 0
        for issue in issues:
            units = normalize_units(issue.affected_units)
            if not units:
                text = f"{issue.description} {issue.correction_instruction or ''}"
                units = [u for u in extract_unit_references(text) if u in known]
            if not units:
                discarded += 1
                continue
            if units != issue.affected_units:
                issue = issue.model_copy(update={"affected_units": units})
            out.append(issue)
        return out, discarded

    def _target_units(
        self,
        review: ReviewResult,
        issues: List[Issue],
        escalated: List[Issue],
        unit_ids: List[int],
    ) -> List[int]:
        known = set(unit_ids)
        issue_units: Set[int] = {u for i in issues for u in i.affected_units}

        targets = {u for u in normalize_units(review.units_to_rewrite) if u in issue_units}
        if not targets and any(i.correction_instruction for i in issues):
            # Safety-Net: Reviewer meldet Issues, aber keine Kapitel zum Umschreiben
            targets = {u for i in issues if i.correction_instruction for u in i.affected_units}
        for issue in escalated:
            targets.update(issue.affected_units)

        result = sorted(u for u in targets if u in known)
        if not result:
            raise NoActionableIssues(
                f"{len(issues)} Issue(s) ohne umschreibbare Kapitel, keine Korrektur möglich"
            )
        return result

    def _correct_units(
        self,
        cycle: int,
        targets: List[int],
        issues: List[Issue],
        unit_ids: List[int],
        record: CycleRecord,
    ) -> None:
        self._log("correcting", f"Zyklus {cycle}: Korrektur von Kapitel {targets}")
        ordered_ids = sorted(unit_ids)

        for unit_id in targets:
            if self._cancelled():
                raise _Cancelled()

            if not self.limiter.can_attempt(unit_id):
                record.skipped_units.append(unit_id)
                logger.warning(
                    "%s übersprungen: Korrekturlimit erreicht (%s/%s)",
                    unit_label(unit_id),
                    self.limiter.count(unit_id),
                    self.limiter.max_attempts,
                )
                continue

            unit = self.store.get_unit(self.project_id, unit_id)
            if unit is None:
                record.skipped_units.append(unit_id)
                continue

            unit_issues = [i for i in issues if unit_id in i.affected_units]
            if not unit_issues:
                continue

            self.guard.capture(unit_id, unit.content)
            self.limiter.record_attempt(unit_id)

            previous_content, next_content = self._neighbour_content(unit_id, ordered_ids)
            try:
                outcome = self.corrector.correct(
                    unit_id,
                    unit.content,
                    unit_issues,
                    cycle=cycle,
                    previous_content=previous_content,
                    next_content=next_content,
                )
            except UnitCorrectionFailed as e:
                # nichts geändert -> nichts zurückzurollen
                self.guard.discard(unit_id)
                record.failed_units.append(unit_id)
                if unit_id not in self.run_record.failed_units:
                    self.run_record.failed_units.append(unit_id)
                self._log(
                    "unit_failed",
                    f"{unit_label(unit_id)}: Korrektur fehlgeschlagen",
                    details={"reasons": e.reasons},
                )
                continue

            self.store.put_unit(self.project_id, unit_id, outcome.content)
            self.ledger.mark_resolved(unit_issues)
            self._remember_corrections(unit_id, unit_issues)
            record.corrected_units.append(unit_id)
            record.diff_stats[str(unit_id)] = outcome.diff_stats
            self._log(
                "unit_corrected",
                f"{unit_label(unit_id)}: {len(unit_issues)} Issue(s) korrigiert ({outcome.mode})",
                details=outcome.diff_stats.model_dump(),
            )

    # ---------- Hilfsfunktionen ---------- #

    def _neighbour_content(self, unit_id: int, ordered_ids: List[int]) -> Tuple[str, str]:
        idx = ordered_ids.index(unit_id) if unit_id in ordered_ids else -1
        previous_content = next_content = ""
        if idx > 0:
            prev_unit = self.store.get_unit(self.project_id, ordered_ids[idx - 1])
            previous_content = prev_unit.content if prev_unit else ""
        if 0 <= idx < len(ordered_ids) - 1:
            next_unit = self.store.get_unit(self.project_id, ordered_ids[idx + 1])
            next_content = next_unit.content if next_unit else ""
        return previous_content, next_content

    def _remember_corrections(self, unit_id: int, issues: List[Issue]) -> None:
        for issue in issues:
            self.state.corrected_issue_summaries.append(
                f"{unit_label(unit_id)} [{issue.category}] {issue.description[:120]}"
            )
        del self.state.corrected_issue_summaries[:-MAX_CORRECTED_SUMMARIES]
        self._persist_state(self.state)

    def _complete_cycle(self, record: CycleRecord, score: Optional[float]) -> None:
        record.completed_at = utcnow_iso()
        self.cycle_state.cycle_number = record.cycle
        if score is not None:
            self.cycle_state.previous_score = score
        self._persist_state(self.state)

        self.run_record.cycle_history.append(record)
        self._log(
            "cycle_complete",
            f"Zyklus {record.cycle}: {record.result}",
            details={
                "corrected": record.corrected_units,
                "failed": record.failed_units,
                "skipped": record.skipped_units,
                "streak": self.cycle_state.consecutive_high_scores,
            },
        )

    def _cancelled(self) -> bool:
        if self.is_cancelled is not None and self.is_cancelled():
            return True
        stored = self.store.get_run(self.run_record.run_id)
        return stored is not None and stored.status == "cancelled"

    def _persist_state(self, state: ProjectState) -> None:
        self.store.put_project_state(state)

    def _set_status(self, status: RunStatus) -> None:
        self.run_record.status = status
        self._save_run()

    def _log(self, phase: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        logger.info("[run %s] %s", self.run_record.run_id, message)
        self.run_record.progress_log.append(ProgressLogEntry(phase=phase, message=message, details=details))
        del self.run_record.progress_log[: -self.max_log_entries]
        self._save_run()

    def _save_run(self) -> None:
        # ein von außen gesetztes "cancelled" wird nie überschrieben
        stored = self.store.get_run(self.run_record.run_id)
        if stored is not None and stored.status == "cancelled" and self.run_record.status != "cancelled":
            self.run_record.status = "cancelled"
            self.run_record.completed_at = stored.completed_at or self.run_record.completed_at
        self.store.update_run(self.run_record)

    def _finish(self, status: RunStatus, message: str, details: Optional[Dict[str, Any]] = None) -> RevisionRun:
        self.run_record.status = status
        if status in ("approved", "exhausted"):
            self.run_record.final_score = self.cycle_state.previous_score
        self.run_record.completed_at = utcnow_iso()
        self._log(status, message, details)
        return self.run_record
