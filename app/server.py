from dotenv import load_dotenv
import logging
import os

load_dotenv()
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.routes import revision_service, router as api_router
from app.core.config import settings

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def validate_startup_config():
    """Validiert kritische Umgebungsvariablen beim Startup (fail-fast)."""
    errors = []

    # Im TEST_MODE laufen Reviewer/Rewriter gegen den FakeLLMClient
    if os.getenv("TEST_MODE") != "1" and not os.getenv("OPENAI_API_KEY"):
        errors.append(
            "OPENAI_API_KEY is not set. "
            "Set it in .env file or as environment variable. "
            "Required for the reviewer and rewriter LLM calls."
        )

    database_url = os.getenv("DATABASE_URL") or settings.database_url
    if not database_url or database_url.strip() == "":
        errors.append(
            "DATABASE_URL is not set or empty. "
            "Set it in .env file or as environment variable. "
            "Required for durable revision state."
        )

    if errors:
        error_msg = "Startup validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_startup_config()
    # Runs, die beim letzten Shutdown aktiv waren, haben keinen Controller mehr
    revision_service.cleanup_zombie_runs()
    yield


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Revision API running"}
