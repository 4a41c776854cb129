"""
Versionierte, unveränderliche Regeltabellen für die heuristischen Klassifikatoren.

Reviewer-Texte kommen auf Englisch oder Spanisch, daher sind alle Muster
zweisprachig. Regeln werden nur hier gepflegt, nie im Controller.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Tuple

from app.models.pydantic import Issue

RULES_VERSION = "2024.2"

_FLAGS = re.IGNORECASE | re.UNICODE


@dataclass(frozen=True)
class Rule:
    name: str
    pattern: re.Pattern
    fields: Tuple[str, ...] = ("description", "correction_instruction")

    def matches(self, issue: Issue) -> bool:
        for field_name in self.fields:
            text = getattr(issue, field_name, None)
            if text and self.pattern.search(text):
                return True
        return False


@dataclass(frozen=True)
class RuleSet:
    version: str
    rules: Tuple[Rule, ...]

    def match(self, issue: Issue) -> Rule | None:
        for rule in self.rules:
            if rule.matches(issue):
                return rule
        return None

    def any_match(self, issue: Issue) -> bool:
        return self.match(issue) is not None


def _rule(name: str, pattern: str, fields: Iterable[str] = ("description", "correction_instruction")) -> Rule:
    return Rule(name=name, pattern=re.compile(pattern, _FLAGS), fields=tuple(fields))


STRUCTURAL_RULES = RuleSet(
    version=RULES_VERSION,
    rules=(
        _rule("move_unit", r"\b(move|relocate|transfer)\b.{0,40}\b(chapter|scene|section|prologue|epilogue)\b.{0,40}\b(to|before|after|earlier|later)\b"),
        _rule("should_be_moved", r"\bshould\s+(be\s+)?(relocated|(moved|placed)\s+(to|before|after|earlier|later))\b"),
        _rule("reorder_units", r"\b(reorder|re-order|rearrange|swap|switch)\b.{0,30}\b(chapters?|scenes?|order)\b"),
        _rule("chapter_order", r"\b(chapter|scene)\s+order\b|\border\s+of\s+(the\s+)?(chapters|scenes)\b"),
        _rule("rename_unit", r"\b(rename|retitle)\b.{0,20}\b(chapter|section|prologue|epilogue)\b"),
        _rule("mover_es", r"\b(mover|trasladar|reubicar|desplazar)\b.{0,40}\b(cap[ií]tulo|escena|secci[oó]n|pr[oó]logo|ep[ií]logo)\b"),
        _rule("reordenar_es", r"\b(reordenar|reorganizar|intercambiar)\b.{0,30}\b(cap[ií]tulos?|escenas?|orden)\b"),
        _rule("orden_es", r"\bcambiar\s+el\s+orden\b|\borden\s+de\s+(los\s+)?(cap[ií]tulos|escenas)\b"),
        _rule("renombrar_es", r"\b(renombrar|retitular|cambiar\s+el\s+t[ií]tulo)\b"),
    ),
)

# Kategorien, bei denen schon ein Umordnungs-Verb in der Anweisung reicht.
STRUCTURAL_CATEGORIES = frozenset(
    {"structure", "structural", "ordering", "chapter_order", "estructura", "estructural", "orden"}
)

REORDER_VERBS = RuleSet(
    version=RULES_VERSION,
    rules=(
        _rule(
            "reorder_verb",
            r"\b(move|moved|reorder|rearrange|swap|relocate|place\s+(before|after)|"
            r"mover|reordenar|intercambiar|reubicar|trasladar|colocar\s+(antes|despu[eé]s))\b",
            fields=("correction_instruction",),
        ),
    ),
)

MERGE_RULES = RuleSet(
    version=RULES_VERSION,
    rules=(
        _rule("merge_units", r"\b(merge|merging|merged)\b.{0,40}\b(chapters?|with|into|scenes?)\b"),
        _rule("combine_units", r"\b(combine|combining|consolidate|fold)\b.{0,40}\b(chapters?|into\s+(one|a\s+single))\b"),
        _rule("single_chapter", r"\binto\s+(one|a\s+single)\s+chapter\b"),
        _rule("fusionar_es", r"\bfusi(o|ó)n(ar)?\b|\bfusionen?\b|\bfusionad[oa]s?\b"),
        _rule("unir_es", r"\b(unir|combinar|integrar|juntar)\b.{0,40}\b(cap[ií]tulos?|en\s+uno|en\s+un\s+solo)\b"),
        _rule("un_solo_es", r"\ben\s+un\s+(solo|[uú]nico)\s+cap[ií]tulo\b"),
    ),
)

ENTITY_RESURRECTION_RULES = RuleSet(
    version=RULES_VERSION,
    rules=(
        _rule(
            "dead_entity_active",
            r"\b(dead|deceased|killed|died|eliminated|terminated|destroyed|executed)\b.{0,80}"
            r"\b(appears?|reappears?|acts?|speaks?|talks?|returns?|alive|active|participates?|fights?)\b",
            fields=("description",),
        ),
        _rule("resurrection", r"\b(resurrect\w*|resurfaces?\s+alive|comes?\s+back\s+to\s+life)\b", fields=("description",)),
        _rule(
            "muerto_activo_es",
            r"\b(muert[oa]s?|fallecid[oa]s?|asesinad[oa]s?|eliminad[oa]s?|ejecutad[oa]s?|muri[oó])\b.{0,80}"
            r"\b(aparece|reaparece|habla|act[uú]a|vivo|viva|activ[oa]|participa|regresa|vuelve)\b",
            fields=("description",),
        ),
        _rule("resucita_es", r"\bresucit\w*\b", fields=("description",)),
    ),
)

# Kapitel, in dem die Entität ausgeschieden ist ("died in chapter 7", "murió en el capítulo 7")
TERMINATION_UNIT = re.compile(
    r"\b(died|dies|killed|death|eliminated|terminated|executed|destroyed|"
    r"muri[oó]|muere|muerte|asesinad[oa]|eliminad[oa]|ejecutad[oa])\b"
    r"[^.\d]{0,60}?\b(?:chapter|ch\.|cap[ií]tulo|cap\.)\s*(\d+)",
    _FLAGS,
)
