"""
Chirurgische Korrekturen über Text-Patches statt Komplett-Rewrite.

Matching-Reihenfolge pro Patch:
1. exakter Treffer
2. Whitespace-normalisierter Treffer
3. Fuzzy-Treffer auf Satzebene (rapidfuzz)
"""

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List

from rapidfuzz import fuzz, process

MIN_SNIPPET_LEN = 10
FUZZY_SCORE_CUTOFF = 60.0

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?…])\s+")


@dataclass
class Patch:
    original_text_snippet: str
    replacement_text: str
    reason: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Patch":
        return cls(
            original_text_snippet=str(data.get("original_text_snippet") or ""),
            replacement_text=str(data.get("replacement_text") or ""),
            reason=str(data.get("reason") or ""),
        )


@dataclass
class PatchResult:
    patched_text: str
    applied: int = 0
    failed: List[Patch] = field(default_factory=list)
    log: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


def _whitespace_pattern(snippet: str) -> re.Pattern | None:
    words = snippet.split()
    if not words:
        return None
    return re.compile(r"\s+".join(re.escape(w) for w in words))


def _fuzzy_sentence(text: str, snippet: str) -> tuple[str, float] | None:
    sentences = [s for s in _SENTENCE_SPLIT.split(text) if len(s) >= MIN_SNIPPET_LEN]
    if not sentences:
        return None
    match = process.extractOne(snippet, sentences, scorer=fuzz.ratio, score_cutoff=FUZZY_SCORE_CUTOFF)
    if match is None:
        return None
    sentence, score, _ = match
    return sentence, score


def apply_patches(text: str, patches: Iterable[Patch]) -> PatchResult:
    result = PatchResult(patched_text=text)
    patches = list(patches or [])

    if not patches:
        result.log.append("No patches to apply")
        return result

    for patch in patches:
        snippet = patch.original_text_snippet
        short = snippet[:30]

        if len(snippet.strip()) < MIN_SNIPPET_LEN:
            result.failed.append(patch)
            result.log.append(f"skip: snippet too short {short!r}")
            continue

        current = result.patched_text

        if snippet in current:
            result.patched_text = current.replace(snippet, patch.replacement_text, 1)
            result.applied += 1
            result.log.append(f"exact: {short!r} ({patch.reason})")
            continue

        pattern = _whitespace_pattern(snippet)
        m = pattern.search(current) if pattern else None
        if m:
            result.patched_text = current[: m.start()] + patch.replacement_text + current[m.end():]
            result.applied += 1
            result.log.append(f"normalized: {short!r} ({patch.reason})")
            continue

        fuzzy = _fuzzy_sentence(current, snippet)
        if fuzzy:
            sentence, score = fuzzy
            result.patched_text = current.replace(sentence, patch.replacement_text, 1)
            result.applied += 1
            result.log.append(f"fuzzy({score:.0f}): {short!r} ({patch.reason})")
            continue

        result.failed.append(patch)
        result.log.append(f"no match: {short!r}")

    return result
