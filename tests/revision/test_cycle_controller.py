"""
Tests für die Revisions-Schleife (RevisionCycleController).

Reviewer und Rewriter sind geskriptete Fakes; der Store ist in-memory.
Geprüft werden Quality-Gate, Ledger-Filter, Rollback, Eskalation,
Limiter-Deckel, Abbruch und Pause bei unlesbarer Reviewer-Antwort.
"""

from unittest.mock import Mock

from app.db.store import InMemoryRevisionStore
from app.models.pydantic import Issue, ReviewResult, RunParameters
from app.services.revision.collaborators import LLMReviewer
from app.services.revision.cycle_controller import RevisionCycleController
from app.services.revision.errors import UnparseableReviewerOutput
from app.services.revision.fingerprint import fingerprint

PROJECT = 1


class ScriptedReviewer:
    """Liefert die Antworten der Reihe nach; danach wird die letzte wiederholt."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.documents = []
        self.contexts = []

    def review(self, document, context=None):
        self.documents.append(document)
        self.contexts.append(context)
        idx = min(len(self.documents), len(self.responses)) - 1
        response = self.responses[idx]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(len(self.documents))
        return response


class AppendingRewriter:
    """Hängt eine Markierung an; optional unverändert für bestimmte Kapitel."""

    def __init__(self, unchanged_units=()):
        self.unchanged_units = set(unchanged_units)
        self.calls = []

    def correct(self, content, issue_text, context):
        self.calls.append((context.unit_id, context.mode, issue_text))
        if context.unit_id in self.unchanged_units:
            return content
        return f"{content}\n[rev {len(self.calls)}]"


def _review(score, issues=(), units=()):
    return ReviewResult(score=score, verdict="needs_revision", issues=list(issues), units_to_rewrite=list(units))


def _store(unit_ids=(1, 2, 3, 4, 5, 6)):
    store = InMemoryRevisionStore()
    for uid in unit_ids:
        store.put_unit(PROJECT, uid, f"Original text of unit {uid}.", title=f"Title {uid}")
    return store


def _controller(store, reviewer, rewriter=None, is_cancelled=None, **params):
    params.setdefault("collaborator_retries", 0)
    run = store.create_run(PROJECT, RunParameters(**params))
    return RevisionCycleController(
        store,
        reviewer,
        rewriter or AppendingRewriter(),
        run,
        is_cancelled=is_cancelled,
    )


# ---------- Quality-Gate ---------- #

def test_two_qualifying_cycles_approve():
    store = _store()
    reviewer = ScriptedReviewer([_review(9.0), _review(9.0)])

    run = _controller(store, reviewer).run()

    assert run.status == "approved"
    assert run.current_cycle == 2
    assert run.final_score == 9.0
    assert store.get_project_state(PROJECT).cycle_state.consecutive_high_scores == 2
    assert store.get_run(run.run_id).status == "approved"


def test_score_drop_breaks_the_streak():
    store = _store()
    reviewer = ScriptedReviewer([_review(9.0), _review(8.0)])

    run = _controller(store, reviewer, max_cycles=2).run()

    assert run.status == "exhausted"
    assert [c.score for c in run.cycle_history] == [9.0, 8.0]
    assert store.get_project_state(PROJECT).cycle_state.consecutive_high_scores == 0


def test_perfect_scores_approve_at_second_cycle_not_first():
    store = _store()
    reviewer = ScriptedReviewer([_review(10.0)] * 15)

    run = _controller(store, reviewer, max_cycles=15, required_consecutive_high_scores=2).run()

    assert run.status == "approved"
    assert len(reviewer.documents) == 2
    assert [c.result for c in run.cycle_history] == ["qualifying", "approved"]


def test_high_score_with_new_issues_does_not_qualify():
    store = _store()
    issue = Issue(category="style", severity="minor", description="Flat dialogue", affected_units=[2])
    reviewer = ScriptedReviewer([_review(9.5, [issue], [2]), _review(9.5), _review(9.5)])

    run = _controller(store, reviewer).run()

    assert run.status == "approved"
    assert run.current_cycle == 3
    assert run.cycle_history[0].result == "corrected"


def test_exhausted_after_max_cycles():
    store = _store()
    reviewer = ScriptedReviewer([_review(5.0)])

    run = _controller(store, reviewer, max_cycles=3).run()

    assert run.status == "exhausted"
    assert len(run.cycle_history) == 3
    assert store.get_project_state(PROJECT).cycle_state.cycle_number == 3


# ---------- End-to-End ---------- #

def test_end_to_end_single_issue_is_fixed_and_ledgered():
    store = _store()
    issue = Issue(
        category="plot",
        severity="major",
        description="The ending of chapter 3 is abrupt",
        correction_instruction="fix the ending",
        affected_units=[3],
    )
    reviewer = ScriptedReviewer([_review(6.0, [issue], [3]), _review(9.0), _review(9.0)])
    rewriter = AppendingRewriter()

    run = _controller(store, reviewer, rewriter).run()

    assert run.status == "approved"
    state = store.get_project_state(PROJECT)
    assert fingerprint(issue) in state.resolved_fingerprints
    assert state.correction_counts == {"3": 1}
    assert store.get_unit(PROJECT, 3).content.endswith("[rev 1]")
    assert rewriter.calls[0][0] == 3
    assert "fix the ending" in rewriter.calls[0][2]

    first = run.cycle_history[0]
    assert first.corrected_units == [3]
    assert first.diff_stats["3"].words_added == 2

    # der nächste Review bekommt die korrigierten Issues als Kontext
    assert reviewer.contexts[1].previous_score == 6.0
    assert "abrupt" in reviewer.contexts[1].corrected_issue_summaries[0]


def test_resolved_issue_reported_again_is_filtered():
    store = _store()
    issue = Issue(category="plot", severity="major", description="Weak ending", affected_units=[3])
    # Reviewer meldet dasselbe Issue leicht umformuliert erneut
    reworded = issue.model_copy(update={"description": "  weak   ENDING "})
    reviewer = ScriptedReviewer([_review(7.0, [issue], [3]), _review(9.0, [reworded], [3]), _review(9.0)])

    run = _controller(store, reviewer).run()

    assert run.status == "approved"
    assert run.cycle_history[1].filtered_issues == 1
    assert run.cycle_history[1].new_issues == 0
    assert store.get_project_state(PROJECT).correction_counts == {"3": 1}


def test_all_issues_of_a_unit_are_corrected_in_one_call():
    store = _store()
    issues = [
        Issue(category="style", severity="minor", description="Too many adverbs", affected_units=[2]),
        Issue(category="plot", severity="major", description="Motive unclear", affected_units=[2, 4]),
    ]
    reviewer = ScriptedReviewer([_review(6.0, issues, [2, 4]), _review(9.0), _review(9.0)])
    rewriter = AppendingRewriter()

    _controller(store, reviewer, rewriter).run()

    assert [c[0] for c in rewriter.calls] == [2, 4]
    assert "Too many adverbs" in rewriter.calls[0][2] and "Motive unclear" in rewriter.calls[0][2]
    assert "Too many adverbs" not in rewriter.calls[1][2]


def test_units_derived_from_issues_when_reviewer_lists_none():
    store = _store()
    issue = Issue(
        category="continuity",
        severity="major",
        description="Ruiz's eye colour changes in chapter 5",
        correction_instruction="keep the eyes grey",
    )
    reviewer = ScriptedReviewer([_review(7.0, [issue], []), _review(9.0), _review(9.0)])
    rewriter = AppendingRewriter()

    run = _controller(store, reviewer, rewriter).run()

    assert run.status == "approved"
    assert [c[0] for c in rewriter.calls] == [5]


def test_issue_without_any_unit_reference_is_discarded():
    store = _store()
    issue = Issue(category="style", severity="minor", description="Generally too long")
    reviewer = ScriptedReviewer([_review(9.0, [issue]), _review(9.0)])

    run = _controller(store, reviewer).run()

    assert run.status == "approved"
    assert run.current_cycle == 2


def test_no_actionable_issues_advances():
    store = _store()
    # Kapitel existiert nicht im Manuskript
    issue = Issue(category="plot", severity="major", description="Missing scene", affected_units=[42])
    reviewer = ScriptedReviewer([_review(6.0, [issue], [42])])

    run = _controller(store, reviewer, max_cycles=2).run()

    assert run.status == "exhausted"
    assert [c.result for c in run.cycle_history] == ["no_actionable_issues", "no_actionable_issues"]
    assert any(e.phase == "no_actionable_issues" for e in run.progress_log)


# ---------- Regression & Rollback ---------- #

def test_regression_rolls_back_previous_corrections():
    store = _store()
    issues = [
        Issue(category="style", severity="major", description="Dialogue is stiff", affected_units=[2]),
        Issue(category="plot", severity="major", description="Subplot dropped", affected_units=[5]),
    ]
    reviewer = ScriptedReviewer(
        [_review(8.0), _review(8.0), _review(8.0), _review(8.0, issues, [2, 5]), _review(5.0)]
    )

    run = _controller(store, reviewer, max_cycles=5).run()

    history = run.cycle_history
    assert history[3].corrected_units == [2, 5]
    assert history[4].result == "rolled_back"
    assert history[4].rolled_back_units == [2, 5]
    for uid in (2, 5):
        assert store.get_unit(PROJECT, uid).content == f"Original text of unit {uid}."

    state = store.get_project_state(PROJECT)
    assert state.cycle_state.consecutive_high_scores == 0
    assert state.pending_snapshots == {}
    # Baseline bleibt der Score vor den verworfenen Korrekturen
    assert state.cycle_state.previous_score == 8.0
    assert run.status == "exhausted"


def test_small_drop_keeps_corrections():
    store = _store()
    issue = Issue(category="style", severity="major", description="Dialogue is stiff", affected_units=[2])
    reviewer = ScriptedReviewer([_review(8.0, [issue], [2]), _review(7.5)])

    run = _controller(store, reviewer, max_cycles=2).run()

    assert run.cycle_history[1].result != "rolled_back"
    assert store.get_unit(PROJECT, 2).content.endswith("[rev 1]")
    assert any(e.phase == "score_drop" for e in run.progress_log)


# ---------- Klassifikation ---------- #

def test_merge_request_becomes_condensation():
    store = _store()
    issue = Issue(
        category="structure",
        severity="major",
        description="Chapters 3 and 4 should be merged into one chapter",
        correction_instruction="Merge chapter 4 into chapter 3",
        affected_units=[3, 4],
    )
    reviewer = ScriptedReviewer([_review(7.0, [issue], [3, 4]), _review(9.0), _review(9.0)])
    rewriter = AppendingRewriter()

    run = _controller(store, reviewer, rewriter).run()

    assert run.status == "approved"
    assert [c[0] for c in rewriter.calls] == [3, 4]
    assert "Merging chapters is not possible" in rewriter.calls[0][2]
    assert "Merge chapter 4 into chapter 3" not in rewriter.calls[0][2]
    # Ledger-Identität bleibt die der ursprünglichen Meldung
    assert fingerprint(issue) in store.get_project_state(PROJECT).resolved_fingerprints


def test_structural_issue_is_auto_resolved_after_prior_attempts():
    store = _store()
    state = store.get_project_state(PROJECT)
    state.correction_counts = {"4": 2}
    store.put_project_state(state)

    issue = Issue(
        category="structure",
        severity="major",
        description="Chapter 4 should be moved before chapter 2",
        affected_units=[4],
    )
    reviewer = ScriptedReviewer([_review(9.0), _review(9.0, [issue], [4])])
    rewriter = AppendingRewriter()

    run = _controller(store, reviewer, rewriter).run()

    assert run.status == "approved"
    assert rewriter.calls == []
    assert run.cycle_history[1].auto_resolved == 1
    assert fingerprint(issue) in store.get_project_state(PROJECT).resolved_fingerprints
    entry = next(e for e in run.progress_log if e.phase == "structural_accepted")
    assert "requires manual structural edit" in entry.message


def test_structural_issue_in_first_cycle_is_corrected_normally():
    store = _store()
    state = store.get_project_state(PROJECT)
    state.correction_counts = {"4": 2}
    store.put_project_state(state)

    issue = Issue(category="structure", description="Chapter 4 should be moved before chapter 2", affected_units=[4])
    reviewer = ScriptedReviewer([_review(8.0, [issue], [4]), _review(9.0), _review(9.0)])
    rewriter = AppendingRewriter()

    _controller(store, reviewer, rewriter).run()

    assert [c[0] for c in rewriter.calls] == [4]


def test_persistent_issue_is_escalated_from_cycle_three():
    store = _store()
    issue = Issue(
        category="repetition",
        severity="major",
        description="The harbour is described identically every time",
        correction_instruction="vary it",
        affected_units=[3],
    )
    # unveränderte Antworten -> Issue wird nie als gelöst markiert
    rewriter = AppendingRewriter(unchanged_units={3})
    reviewer = ScriptedReviewer([_review(7.0, [issue], [3])])

    run = _controller(
        store,
        reviewer,
        rewriter,
        max_cycles=5,
        max_correction_attempts_per_unit=10,
    ).run()

    assert [c.escalated for c in run.cycle_history] == [0, 0, 0, 0, 1]
    state = store.get_project_state(PROJECT)
    assert state.persistence_counters[fingerprint(issue)] == 3
    assert fingerprint(issue) in state.escalated_fingerprints

    # Zyklus 5: Nachbarkapitel kommen dazu, Patch-Stufe entfällt
    last_cycle_calls = rewriter.calls[-4:]
    assert {c[0] for c in last_cycle_calls} == {2, 3, 4}
    assert all(c[1] != "patch" for c in last_cycle_calls)
    assert "ESCALATED" in last_cycle_calls[0][2]
    assert run.cycle_history[0].failed_units == [3]


# ---------- Limiter & Fehler ---------- #

def test_correction_cap_skips_unit():
    store = _store()

    def fresh_issue(n):
        return _review(
            6.0,
            [Issue(category="plot", severity="major", description=f"Problem number {n} in the chase", affected_units=[1])],
            [1],
        )

    reviewer = ScriptedReviewer([fresh_issue])
    rewriter = AppendingRewriter()

    run = _controller(store, reviewer, rewriter, max_cycles=4, max_correction_attempts_per_unit=2).run()

    assert len(rewriter.calls) == 2
    assert run.cycle_history[2].skipped_units == [1]
    assert run.cycle_history[3].skipped_units == [1]
    assert store.get_project_state(PROJECT).correction_counts == {"1": 2}


def test_failed_unit_does_not_block_others():
    store = _store()
    issues = [
        Issue(category="plot", severity="major", description="Broken", affected_units=[2]),
        Issue(category="plot", severity="major", description="Also broken", affected_units=[3]),
    ]
    reviewer = ScriptedReviewer([_review(6.0, issues, [2, 3]), _review(9.0), _review(9.0)])
    rewriter = AppendingRewriter(unchanged_units={2})

    run = _controller(store, reviewer, rewriter).run()

    assert run.status == "approved"
    assert run.cycle_history[0].failed_units == [2]
    assert run.cycle_history[0].corrected_units == [3]
    assert run.failed_units == [2]
    assert store.get_unit(PROJECT, 2).content == "Original text of unit 2."
    # der Versuch zählt trotzdem, aber ohne Snapshot
    state = store.get_project_state(PROJECT)
    assert state.correction_counts == {"2": 1, "3": 1}


def test_reviewer_outage_is_recorded_and_run_continues():
    store = _store()
    reviewer = ScriptedReviewer([RuntimeError("503"), _review(9.0), _review(9.0)])

    run = _controller(store, reviewer).run()

    assert run.status == "approved"
    assert run.cycle_history[0].result == "review_failed"
    assert run.current_cycle == 3


def test_unparseable_review_pauses_without_advancing():
    store = _store()
    reviewer = ScriptedReviewer([_review(9.0), UnparseableReviewerOutput("lorem ipsum", ["no_json_object"])])

    run = _controller(store, reviewer).run()

    assert run.status == "paused"
    assert "nicht parsbar" in run.error_message
    state = store.get_project_state(PROJECT)
    assert state.cycle_state.cycle_number == 1
    assert state.cycle_state.consecutive_high_scores == 1


def test_truncated_reviewer_json_never_approves():
    store = _store()
    llm = Mock()
    llm.complete.return_value = (
        '{"score": 9.5, "verdict": "approved", "issues": [{"category": "continuity", '
        '"severity": "critical", "description": "Ruiz is dead in chapter 2 but speaks in chapter 3", '
        '"affected_units": [3]'
    )

    run = _controller(store, LLMReviewer(llm), max_cycles=5).run()

    assert run.status == "paused"
    assert "truncated_json" in run.progress_log[-1].details["flags"]
    assert store.get_project_state(PROJECT).cycle_state.cycle_number == 0
    assert store.get_project_state(PROJECT).cycle_state.consecutive_high_scores == 0


def test_score_only_review_does_not_qualify():
    store = _store()
    fallback = ReviewResult(score=9.5, verdict="unknown", parse_fallback=True)
    reviewer = ScriptedReviewer([fallback])

    run = _controller(store, reviewer, max_cycles=3).run()

    assert run.status == "exhausted"
    assert store.get_project_state(PROJECT).cycle_state.consecutive_high_scores == 0


# ---------- Abbruch ---------- #

def test_cancellation_at_cycle_start_keeps_state():
    store = _store()
    reviewer = ScriptedReviewer([_review(5.0)])

    run = _controller(store, reviewer, is_cancelled=lambda: len(reviewer.documents) >= 1).run()

    assert run.status == "cancelled"
    assert len(reviewer.documents) == 1
    assert store.get_project_state(PROJECT).cycle_state.cycle_number == 1


def test_cancellation_before_unit_correction():
    store = _store()
    issues = [
        Issue(category="plot", severity="major", description="Broken", affected_units=[2]),
        Issue(category="plot", severity="major", description="Also broken", affected_units=[3]),
    ]
    reviewer = ScriptedReviewer([_review(6.0, issues, [2, 3])])
    rewriter = AppendingRewriter()

    run = _controller(store, reviewer, rewriter, is_cancelled=lambda: len(rewriter.calls) >= 1).run()

    assert run.status == "cancelled"
    state = store.get_project_state(PROJECT)
    # Zyklus wurde nicht abgeschlossen, Kapitel 2 ist korrigiert und gesichert
    assert state.cycle_state.cycle_number == 0
    assert state.correction_counts == {"2": 1}
    assert state.pending_snapshots == {"2": "Original text of unit 2."}


def test_cancellation_via_persisted_run_status():
    store = _store()
    reviewer = ScriptedReviewer([_review(5.0)])
    controller = _controller(store, reviewer)

    stored = store.get_run(controller.run_record.run_id)
    stored.status = "cancelled"
    store.update_run(stored)

    run = controller.run()

    assert run.status == "cancelled"
    assert reviewer.documents == []


def test_cancel_during_review_is_not_overwritten():
    store = _store()
    issue = Issue(category="plot", severity="major", description="Broken", affected_units=[2])
    rewriter = AppendingRewriter()
    observed = []
    cancel_requested = []

    def cancel_while_reviewing(_count):
        cancel_requested.append(True)
        stored = store.get_run(controller.run_record.run_id)
        stored.status = "cancelled"
        store.update_run(stored)
        return _review(6.0, [issue], [2])

    controller = _controller(store, ScriptedReviewer([cancel_while_reviewing]), rewriter)
    original_set_status = controller._set_status

    def tracking_set_status(status):
        original_set_status(status)
        if cancel_requested:
            observed.append(store.get_run(controller.run_record.run_id).status)

    controller._set_status = tracking_set_status

    run = controller.run()

    assert run.status == "cancelled"
    assert rewriter.calls == []
    assert observed and set(observed) == {"cancelled"}
    assert store.get_run(run.run_id).status == "cancelled"


def test_progress_log_is_bounded():
    store = _store()
    reviewer = ScriptedReviewer([_review(5.0)])
    run = _controller(store, reviewer, max_cycles=10)
    run.max_log_entries = 5

    result = run.run()

    assert len(result.progress_log) == 5
    assert result.progress_log[-1].phase == "exhausted"


def test_document_contains_labelled_units():
    store = _store(unit_ids=(0, 1, 998))
    reviewer = ScriptedReviewer([_review(9.0)])

    _controller(store, reviewer).run()

    doc = reviewer.documents[0]
    assert doc.startswith("=== Prologue: Title 0 ===")
    assert "=== Chapter 1: Title 1 ===" in doc
    assert doc.index("Chapter 1") < doc.index("=== Epilogue")
