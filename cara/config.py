import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env relative to this file's location (cara/.env), then the working dir
load_dotenv(Path(__file__).parent / ".env")
load_dotenv()

_MODEL = "claude-sonnet-4-6"


def _sqlalchemy_url(raw: str) -> str:
    return raw.replace("sqlite:///", "sqlite+aiosqlite:///")


class StageTemperatures(BaseModel):
    """Sampling temperature per role. Extraction-heavy roles run colder."""

    research: float = 0.5
    skill_analysis: float = 0.2
    insight: float = 0.4
    planning: float = 0.3


class Settings(BaseModel):
    model: str = _MODEL
    max_tokens: int = 2048
    request_timeout: float = 45.0
    max_steps: int = 50
    stage_attempt_threshold: int = 5
    conversation_window: int = 4
    search_max_results: int = 5
    database_url: str = _sqlalchemy_url("sqlite:///./cara.db")
    frontend_url: str = "http://localhost:3000"
    temperatures: StageTemperatures = StageTemperatures()

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            model=os.getenv("ANTHROPIC_MODEL", _MODEL),
            max_tokens=int(os.getenv("CARA_MAX_TOKENS", "2048")),
            request_timeout=float(os.getenv("CARA_REQUEST_TIMEOUT", "45")),
            max_steps=int(os.getenv("CARA_MAX_STEPS", "50")),
            stage_attempt_threshold=int(os.getenv("CARA_STAGE_ATTEMPTS", "5")),
            conversation_window=int(os.getenv("CARA_CONVERSATION_WINDOW", "4")),
            search_max_results=int(os.getenv("CARA_SEARCH_RESULTS", "5")),
            database_url=_sqlalchemy_url(os.getenv("DATABASE_URL", "sqlite:///./cara.db")),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
        )


settings = Settings.from_env()
