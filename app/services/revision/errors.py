"""
Fehler-Taxonomie der Revisions-Schleife.

Nur Fehler, die den persistierten Zustand gefährden, sind für einen Run fatal.
Alles andere wird protokolliert und der Controller macht mit dem nächsten
Kapitel bzw. Zyklus weiter.
"""


class RevisionError(Exception):
    """Basisklasse aller Fehler der Revisions-Engine."""


class CollaboratorUnavailable(RevisionError):
    """Reviewer/Rewriter-Aufruf ist auch nach allen Retries fehlgeschlagen."""

    def __init__(self, collaborator: str, attempts: int, cause: BaseException | None = None):
        self.collaborator = collaborator
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{collaborator} unavailable after {attempts} attempt(s): {cause}")


class UnparseableReviewerOutput(RevisionError):
    """Die strukturierte Reviewer-Antwort konnte nicht dekodiert werden."""

    def __init__(self, raw_text: str, flags: list[str] | None = None):
        self.raw_text = raw_text
        self.flags = flags or []
        super().__init__(f"Reviewer-Antwort nicht parsbar: {raw_text[:200]!r}")


class NoActionableIssues(RevisionError):
    """Score unter Schwelle, aber keine Kapitel ableitbar."""


class UnitCorrectionFailed(RevisionError):
    """Alle Korrekturstufen für ein Kapitel sind ausgeschöpft."""

    def __init__(self, unit_id: int, reasons: list[str]):
        self.unit_id = unit_id
        self.reasons = reasons
        super().__init__(f"Korrektur von Kapitel {unit_id} fehlgeschlagen: {'; '.join(reasons)}")


class RunNotFound(RevisionError):
    pass


class RunConflict(RevisionError):
    """Für das Projekt läuft bereits eine Revision."""


class InvalidRunState(RevisionError):
    pass
