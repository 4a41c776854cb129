"""
Verträge der externen Collaborators (Reviewer, Rewriter) plus LLM-Implementierungen.

Die Engine kennt nur die Protocols; welches Modell dahinter steckt, ist egal.
"""

import logging
from typing import Callable, Protocol, TypeVar

from app.llm.llm_client import LLMClient
from app.models.pydantic import CorrectionContext, ReviewContext, ReviewResult
from app.services.revision.errors import CollaboratorUnavailable, UnparseableReviewerOutput
from app.services.revision.parsing import (
    parse_patch_output,
    parse_review_output,
    sanitize_response,
)
from app.services.revision.patcher import Patch, apply_patches
from app.services.revision.prompts import (
    build_patch_prompt,
    build_review_prompt,
    build_rewrite_prompt,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Reviewer(Protocol):
    def review(self, document: str, context: ReviewContext | None = None) -> ReviewResult:
        ...


class Rewriter(Protocol):
    def correct(self, content: str, issue_text: str, context: CorrectionContext) -> str:
        """
        :return: überarbeiteter Inhalt; unveränderter Inhalt ist eine gültige Antwort
        """
        ...


def call_with_retries(fn: Callable[[], T], *, collaborator: str, retries: int) -> T:
    """
    Führt einen Collaborator-Aufruf mit begrenzten Retries aus.

    UnparseableReviewerOutput wird nicht wiederholt, sondern direkt weitergereicht.
    """
    last_error: Exception | None = None
    for attempt in range(retries + 1):
        try:
            return fn()
        except UnparseableReviewerOutput:
            raise
        except Exception as e:
            last_error = e
            logger.warning(
                "%s-Aufruf fehlgeschlagen (Versuch %s/%s): %s",
                collaborator,
                attempt + 1,
                retries + 1,
                e,
            )
    raise CollaboratorUnavailable(collaborator, retries + 1, last_error)


class LLMReviewer:
    def __init__(self, llm_client: LLMClient, parse_retries: int = 1):
        self.llm = llm_client
        self.parse_retries = parse_retries

    def review(self, document: str, context: ReviewContext | None = None) -> ReviewResult:
        prompt = build_review_prompt(document, context)
        last_error: UnparseableReviewerOutput | None = None

        for _ in range(self.parse_retries + 1):
            raw = self.llm.complete(prompt)
            try:
                return parse_review_output(raw)
            except UnparseableReviewerOutput as e:
                last_error = e
                logger.warning("Reviewer-Antwort nicht parsbar (flags=%s), neuer Versuch", e.flags)

        raise last_error


class LLMRewriter:
    def __init__(self, llm_client: LLMClient):
        self.llm = llm_client

    def correct(self, content: str, issue_text: str, context: CorrectionContext) -> str:
        if context.mode == "patch":
            return self._correct_with_patches(content, issue_text, context)

        raw = self.llm.complete(build_rewrite_prompt(content, issue_text, context))
        return sanitize_response(raw)

    def _correct_with_patches(self, content: str, issue_text: str, context: CorrectionContext) -> str:
        raw = self.llm.complete(build_patch_prompt(content, issue_text, context))
        patches = [Patch.from_dict(p) for p in parse_patch_output(raw)]
        result = apply_patches(content, patches)
        logger.debug(
            "Patches für %s: %s angewendet, %s fehlgeschlagen",
            context.unit_label,
            result.applied,
            len(result.failed),
        )
        return result.patched_text
