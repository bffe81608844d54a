"""Configuration management for finquery."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Daily AI request limits per subscription tier and feature
DEFAULT_AI_LIMITS: dict[str, dict[str, int]] = {
    "free": {
        "categorization": 10,
        "chat": 20,
        "recurring_detection": 5,
        "insights": 10,
        "search": 20,
    },
    "pro": {
        "categorization": 1000,
        "chat": 1000,
        "recurring_detection": 1000,
        "insights": 1000,
        "search": 1000,
    },
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LLM Configuration
    llm_provider: Literal["ollama", "openai", "anthropic"] = "ollama"
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"
    openai_model: str = "gpt-4o-mini"
    anthropic_model: str = "claude-3-5-haiku-latest"
    llm_timeout_seconds: float = 20.0
    llm_retry_backoff_seconds: float = 1.0
    llm_max_tokens: int = 1024

    # Development mode
    dev_mode: bool = True

    # Data directory
    data_dir: Path = Path.home() / ".finquery"

    # Usage quotas, e.g. AI_LIMITS='{"free": {"search": 5}, "pro": {"search": 500}}'
    ai_limits: dict[str, dict[str, int]] = Field(default_factory=lambda: DEFAULT_AI_LIMITS)
    # Features only available on a Pro subscription, e.g. PRO_ONLY_FEATURES='["search"]'
    pro_only_features: list[str] = Field(default_factory=list)

    # Search defaults
    default_result_limit: int = 50

    # API settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # LLM_PROVIDER and llm_provider both work
        extra="ignore",  # Ignore extra environment variables
    )

    @property
    def db_path(self) -> Path:
        """Get the SQLite database path."""
        suffix = "dev" if self.dev_mode else "prod"
        return self.data_dir / f"finquery_{suffix}.db"

    def ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def limit_for(self, feature: str, is_pro: bool) -> int:
        """Daily request limit for a feature on the given tier (0 if unlisted)."""
        tier = "pro" if is_pro else "free"
        return self.ai_limits.get(tier, {}).get(feature, 0)

    def log_config(self) -> None:
        """Print the effective search configuration with API keys redacted."""

        def _redact(key: str) -> str:
            return f"set ({key[:8]}...{key[-4:]})" if key else "not set"

        api_key = {"openai": self.openai_api_key, "anthropic": self.anthropic_api_key}.get(self.llm_provider)
        model = {"openai": self.openai_model, "anthropic": self.anthropic_model}.get(
            self.llm_provider, self.ollama_model
        )

        rows = [
            ("LLM provider", self.llm_provider),
            ("Model", model),
            ("API key", _redact(api_key) if api_key is not None else f"n/a ({self.ollama_host})"),
            ("Model timeout", f"{self.llm_timeout_seconds}s, backoff {self.llm_retry_backoff_seconds}s"),
            ("Database", self.db_path),
            ("Pro-only features", ", ".join(self.pro_only_features) or "(none)"),
        ]
        for tier, limits in self.ai_limits.items():
            rows.append((f"Limits ({tier})", ", ".join(f"{feature}={n}" for feature, n in limits.items())))
        rows.append(("Listening on", f"{self.api_host}:{self.api_port}"))

        print("\n" + "=" * 60)
        print("📋 FINQUERY CONFIGURATION")
        print("=" * 60)
        for label, value in rows:
            print(f"{label + ':':<20} {value}")
        print("=" * 60 + "\n")


# Global settings instance
settings = Settings()
