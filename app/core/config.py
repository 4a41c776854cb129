from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # .env wird automatisch gelesen
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "RevisionAPI"
    environment: str = "dev"

    # Default: Docker-Host "db"
    # Lokal: wird durch .env / Env-Var DATABASE_URL überschrieben
    database_url: str = "postgresql+psycopg://revision:revision@db:5432/revision_db"

    llm_url: str = "http://localhost:9000"
    reviewer_model: str = "gpt-4o"
    rewriter_model: str = "gpt-4o-mini"

    # Defaults für die Konvergenz-Schleife (pro Run überschreibbar)
    max_cycles: int = 15
    min_accept_score: float = 9.0
    required_consecutive_high_scores: int = 2
    max_correction_attempts_per_unit: int = 4
    structural_auto_resolve_after_attempts: int = 2
    persistent_issue_escalation_threshold: int = 3
    regression_rollback_threshold: float = 2.0
    regression_warning_threshold: float = 1.0

    # Retries pro Collaborator-Aufruf (Reviewer / Rewriter)
    collaborator_retries: int = 2

    max_progress_log_entries: int = 200
    zombie_grace_period_seconds: int = 60


settings = Settings()
