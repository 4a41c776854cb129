"""
LLM-basierte Reviewer/Rewriter mit gemocktem LLM-Client.
"""

import json
from unittest.mock import Mock

import pytest

from app.llm.fake_client import FakeLLMClient
from app.models.pydantic import CorrectionContext, ReviewContext
from app.services.revision.collaborators import LLMReviewer, LLMRewriter, call_with_retries
from app.services.revision.errors import CollaboratorUnavailable, UnparseableReviewerOutput


class MockLLMClient:
    """Mock LLM-Client, der Antworten der Reihe nach liefert."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    def complete(self, prompt: str, **kwargs) -> str:
        self.prompts.append(prompt)
        return self.responses[min(len(self.prompts), len(self.responses)) - 1]


def _ctx(mode="rewrite"):
    return CorrectionContext(unit_id=3, unit_label="Chapter 3", mode=mode, cycle=2)


def test_reviewer_prompt_contains_context_and_document():
    llm = MockLLMClient('{"score": 8, "verdict": "needs_revision", "issues": [], "units_to_rewrite": []}')
    context = ReviewContext(cycle=3, previous_score=7.0, corrected_issue_summaries=["Chapter 2 [plot] motive"])

    result = LLMReviewer(llm).review("=== Chapter 1: A ===\n\nText", context)

    assert result.score == 8.0
    prompt = llm.prompts[0]
    assert "review cycle 3" in prompt
    assert "7.0/10" in prompt
    assert "Chapter 2 [plot] motive" in prompt
    assert prompt.endswith("=== Chapter 1: A ===\n\nText")


def test_reviewer_retries_unparseable_output_once():
    llm = MockLLMClient("no idea", '{"score": 9}')
    assert LLMReviewer(llm, parse_retries=1).review("doc").score == 9.0
    assert len(llm.prompts) == 2


def test_reviewer_gives_up_after_parse_retries():
    llm = MockLLMClient("no idea")
    with pytest.raises(UnparseableReviewerOutput):
        LLMReviewer(llm, parse_retries=1).review("doc")


def test_rewriter_sanitizes_full_rewrite():
    llm = MockLLMClient("Here is the revised chapter:\nMarta ran home.")
    assert LLMRewriter(llm).correct("Marta walked.", "1. pacing", _ctx()) == "Marta ran home."


def test_escalated_prompt_is_stronger():
    llm = MockLLMClient("x")
    LLMRewriter(llm).correct("Marta walked.", "1. pacing", _ctx("escalated"))
    assert "Previous targeted corrections FAILED" in llm.prompts[0]


def test_rewriter_patch_mode_applies_patches():
    patches = {
        "patches": [
            {
                "original_text_snippet": "Ruiz was waiting in the kitchen.",
                "replacement_text": "The kitchen was empty.",
                "reason": "Ruiz is dead",
            }
        ]
    }
    llm = MockLLMClient(json.dumps(patches))
    out = LLMRewriter(llm).correct("Marta opened the door. Ruiz was waiting in the kitchen.", "1. Ruiz", _ctx("patch"))
    assert out == "Marta opened the door. The kitchen was empty."


def test_call_with_retries():
    fn = Mock(side_effect=[RuntimeError("503"), "ok"])
    assert call_with_retries(fn, collaborator="Reviewer", retries=2) == "ok"

    failing = Mock(side_effect=RuntimeError("down"))
    with pytest.raises(CollaboratorUnavailable) as exc:
        call_with_retries(failing, collaborator="Rewriter", retries=1)
    assert failing.call_count == 2
    assert exc.value.attempts == 2

    unparseable = Mock(side_effect=UnparseableReviewerOutput("?"))
    with pytest.raises(UnparseableReviewerOutput):
        call_with_retries(unparseable, collaborator="Reviewer", retries=3)
    assert unparseable.call_count == 1


def test_fake_client_is_deterministic():
    fake = FakeLLMClient()
    review = LLMReviewer(fake).review("doc")
    assert review.score == 9.5 and review.issues == []

    rewriter = LLMRewriter(fake)
    assert rewriter.correct("Es war einmal.", "1. x", _ctx("patch")) == "Es war einmal."
    assert rewriter.correct("Es war einmal.", "1. x", _ctx("rewrite")) == "Es war einmal.\n\n[revised]"
