"""
Turnkeeper Configuration

Loads configuration from environment variables with sensible defaults.
"""

import os
from pathlib import Path
from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load .env file if it exists
load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


class Config:
    """Application configuration loaded from environment variables."""

    # LLM Provider Configuration
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "openai")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-5-nano")

    # API Keys
    ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")

    # Local LLM Configuration (Ollama). Example: http://localhost:11434
    OLLAMA_BASE_URL: str | None = os.getenv("OLLAMA_BASE_URL")

    # Database Configuration (only used by PostgresWorldStore)
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql://localhost/turnkeeper")

    # Turn budgets
    MAX_HANDOFF_ROUNDS: int = _env_int("TURNKEEPER_MAX_HANDOFF_ROUNDS", 4)
    MAX_TOOL_CALLS_PER_AGENT: int = _env_int("TURNKEEPER_MAX_TOOL_CALLS", 6)
    DEFAULT_AGENT: str = os.getenv("TURNKEEPER_DEFAULT_AGENT", "dialogue")

    # Context assembly
    RECAP_LINES: int = _env_int("TURNKEEPER_RECAP_LINES", 6)
    RECENT_EVENT_WINDOW: int = _env_int("TURNKEEPER_RECENT_EVENTS", 5)
    RETRIEVAL_TOP_K: int = _env_int("TURNKEEPER_RETRIEVAL_TOP_K", 4)
    CONTEXT_BUDGET_CHARS: int = _env_int("TURNKEEPER_CONTEXT_BUDGET_CHARS", 6000)

    # Timeouts (seconds). Advisory reads are short; decisions are longer.
    CONTEXT_TIMEOUT_SECONDS: float = _env_float("TURNKEEPER_CONTEXT_TIMEOUT", 5.0)
    DIRECTOR_TIMEOUT_SECONDS: float = _env_float("TURNKEEPER_DIRECTOR_TIMEOUT", 10.0)
    GUARD_TIMEOUT_SECONDS: float = _env_float("TURNKEEPER_GUARD_TIMEOUT", 60.0)
    AGENT_TIMEOUT_SECONDS: float = _env_float("TURNKEEPER_AGENT_TIMEOUT", 120.0)

    # Pending actions and commit
    PENDING_ACTION_TTL_SECONDS: int = _env_int("TURNKEEPER_PENDING_TTL", 3600)
    MODULE_PATCH_POWER_BUDGET: int = _env_int("TURNKEEPER_PATCH_POWER_BUDGET", 5)
    COMMIT_RETRY_ATTEMPTS: int = _env_int("TURNKEEPER_COMMIT_RETRIES", 3)

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Project Paths
    PROJECT_ROOT: Path = Path(__file__).parent.parent
    DATA_DIR: Path = Path(os.getenv("TURNKEEPER_DATA_DIR", "turnkeeper_sessions"))

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors if required values are missing."""
        is_using_local = cls.LLM_PROVIDER == "ollama"

        if cls.LLM_PROVIDER == "anthropic" and not cls.ANTHROPIC_API_KEY:
            raise ValueError(
                "ANTHROPIC_API_KEY is required when using the 'anthropic' provider"
            )

        if cls.LLM_PROVIDER == "openai" and not cls.OPENAI_API_KEY and not is_using_local:
            raise ValueError(
                "OPENAI_API_KEY is required when using the 'openai' provider. "
                "For local LLMs, set LLM_PROVIDER=ollama instead."
            )

        for name in ("MAX_HANDOFF_ROUNDS", "MAX_TOOL_CALLS_PER_AGENT", "CONTEXT_BUDGET_CHARS"):
            if getattr(cls, name) <= 0:
                raise ValueError(f"{name} must be a positive integer")

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "Turnkeeper Configuration:",
            f"  LLM Provider: {cls.LLM_PROVIDER}",
            f"  LLM Model: {cls.LLM_MODEL}",
            f"  Database: {cls.DATABASE_URL}",
            f"  Handoff Rounds: {cls.MAX_HANDOFF_ROUNDS}",
            f"  Tool Calls / Agent: {cls.MAX_TOOL_CALLS_PER_AGENT}",
            f"  Recap Lines: {cls.RECAP_LINES}",
            f"  Retrieval Top-K: {cls.RETRIEVAL_TOP_K}",
        ]
        return "\n".join(lines)


class TurnSettings(BaseModel):
    """Per-coordinator knobs. Defaults come from the environment via Config."""

    max_handoff_rounds: int = Field(default_factory=lambda: Config.MAX_HANDOFF_ROUNDS, ge=1)
    max_tool_calls_per_agent: int = Field(
        default_factory=lambda: Config.MAX_TOOL_CALLS_PER_AGENT, ge=1
    )
    default_agent: str = Field(default_factory=lambda: Config.DEFAULT_AGENT)
    recap_lines: int = Field(default_factory=lambda: Config.RECAP_LINES, ge=0)
    recent_event_window: int = Field(default_factory=lambda: Config.RECENT_EVENT_WINDOW, ge=0)
    retrieval_top_k: int = Field(default_factory=lambda: Config.RETRIEVAL_TOP_K, ge=0)
    context_budget_chars: int = Field(default_factory=lambda: Config.CONTEXT_BUDGET_CHARS, ge=1)
    context_timeout_seconds: float = Field(default_factory=lambda: Config.CONTEXT_TIMEOUT_SECONDS)
    director_timeout_seconds: float = Field(
        default_factory=lambda: Config.DIRECTOR_TIMEOUT_SECONDS
    )
    guard_timeout_seconds: float = Field(default_factory=lambda: Config.GUARD_TIMEOUT_SECONDS)
    agent_timeout_seconds: float = Field(default_factory=lambda: Config.AGENT_TIMEOUT_SECONDS)
    pending_action_ttl_seconds: int = Field(
        default_factory=lambda: Config.PENDING_ACTION_TTL_SECONDS, ge=1
    )
    module_patch_power_budget: int = Field(
        default_factory=lambda: Config.MODULE_PATCH_POWER_BUDGET, ge=0
    )
    commit_retry_attempts: int = Field(default_factory=lambda: Config.COMMIT_RETRY_ATTEMPTS, ge=1)
