"""
Prompt-Templates für Reviewer und Rewriter.

Alle Reviewer-Prompts erzwingen striktes JSON-Output mit festem Schema.
Nicht Teil des Engine-Vertrags; nur die LLM-Collaborators nutzen diese Texte.
"""

from typing import List

from app.models.pydantic import CorrectionContext, ReviewContext

PROMPT_VERSION = "v1"


def build_review_prompt(document: str, context: ReviewContext | None = None) -> str:
    """
    Baut den Prompt für die Gesamtbewertung des Manuskripts.

    Output: JSON mit score (0-10), verdict, issues[], units_to_rewrite[]
    """
    history = ""
    if context is not None:
        lines: List[str] = [f"This is review cycle {context.cycle}."]
        if context.previous_score is not None:
            lines.append(f"The previous cycle scored {context.previous_score:.1f}/10.")
        if context.corrected_issue_summaries:
            lines.append("The following issues were already corrected; do not report them again unless they are clearly still present:")
            lines.extend(f"- {s}" for s in context.corrected_issue_summaries[-30:])
        history = "\n".join(lines) + "\n\n"

    return f"""You are a demanding senior editor reviewing a complete multi-chapter manuscript.

{history}Evaluate the manuscript as a whole: continuity, plot logic, character consistency, pacing,
repetition and prose quality. Report only concrete, actionable defects.

Chapter references: use the chapter number shown in the headers. Use 0 for the prologue,
-1 for the epilogue and -2 for the author's note.

Return ONLY a valid JSON object with the following fields:

{{
  "score": 7.5,
  "verdict": "approved" | "needs_revision" | "rejected",
  "issues": [
    {{
      "category": "continuity" | "plot" | "character" | "pacing" | "repetition" | "style" | "structure" | "other",
      "severity": "critical" | "major" | "minor",
      "description": "what is wrong and where",
      "correction_instruction": "how to fix it",
      "affected_units": [3, 4]
    }}
  ],
  "units_to_rewrite": [3, 4]
}}

Rules:
- Score must be between 0 and 10 (10 = publishable without changes).
- If there are no issues, use empty lists.
- Do not add any text outside the JSON. No comments, no markdown, no prose.

MANUSCRIPT:
{document}
""".strip()


def _issue_block(issue_text: str, context: CorrectionContext) -> str:
    neighbours = ""
    if context.previous_excerpt:
        neighbours += f"\n### END OF PREVIOUS CHAPTER (DO NOT EDIT)\n{context.previous_excerpt}\n"
    if context.next_excerpt:
        neighbours += f"\n### START OF NEXT CHAPTER (DO NOT EDIT)\n{context.next_excerpt}\n"
    return f"### ISSUES TO FIX IN {context.unit_label.upper()}\n{issue_text}\n{neighbours}"


def build_patch_prompt(content: str, issue_text: str, context: CorrectionContext) -> str:
    return f"""You are a precise copy editor. Fix the issues below with minimal, surgical edits.

{_issue_block(issue_text, context)}
### CHAPTER TEXT
{content}

Return ONLY a JSON object:
{{
  "patches": [
    {{
      "original_text_snippet": "exact text copied from the chapter (at least one full sentence)",
      "replacement_text": "corrected text",
      "reason": "which issue this fixes"
    }}
  ]
}}
Keep the author's voice. Do not touch passages unrelated to the issues.""".strip()


def build_rewrite_prompt(content: str, issue_text: str, context: CorrectionContext) -> str:
    intensity = (
        "Previous targeted corrections FAILED. Rewrite every affected passage thoroughly; "
        "a cosmetic change is not acceptable."
        if context.mode == "escalated"
        else "Rewrite the chapter so that every issue is resolved."
    )
    return f"""You are an experienced fiction editor revising one chapter of a novel.
{intensity}

{_issue_block(issue_text, context)}
### CHAPTER TEXT
{content}

Rules:
1. Resolve ALL listed issues together.
2. Keep tone, vocabulary and rhythm of the author.
3. Keep all plot information that is not part of an issue.
4. Return ONLY the full revised chapter text, without explanations, markdown or quotes.""".strip()
