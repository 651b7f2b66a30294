from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from market_agent.errors import ConfigError

DEFAULT_BASE_URL = "https://market.near.ai/v1"
API_KEY_ENV = "NEAR_MARKET_API_KEY"


def repo_root() -> Path:
    # Project root is the directory that contains the `market_agent/` package.
    return Path(__file__).resolve().parents[1]


def load_env(env_file: Path | None = None) -> None:
    # An explicit env file wins. Otherwise prefer a project-local `.env` so the CLI behaves
    # the same from any working directory, and fall back to searching from CWD.
    if env_file is not None:
        if not env_file.exists():
            raise ConfigError(f"env file not found: {env_file}")
        load_dotenv(env_file, override=True)
        return
    root_env = repo_root() / ".env"
    env_path = str(root_env) if root_env.exists() else (find_dotenv(usecwd=True) or str(root_env))
    load_dotenv(env_path)


@dataclass(frozen=True)
class AgentSettings:
    api_key: str | None
    base_url: str
    data_dir: Path
    openai_api_key: str | None
    openai_base_url: str | None

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigError(f"{API_KEY_ENV} is not set; cannot talk to the marketplace")
        return self.api_key


def load_settings(*, env_file: Path | None = None, data_dir: Path | None = None) -> AgentSettings:
    load_env(env_file)
    raw_dir = (os.getenv("MARKET_AGENT_DATA_DIR") or "").strip()
    resolved_dir = data_dir or (Path(raw_dir).expanduser() if raw_dir else Path.cwd() / "data")
    return AgentSettings(
        api_key=(os.getenv(API_KEY_ENV) or "").strip() or None,
        base_url=(os.getenv("MARKET_BASE_URL") or DEFAULT_BASE_URL).strip().rstrip("/"),
        data_dir=resolved_dir,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
    )


class BidStrategy(str, Enum):
    AGGRESSIVE = "aggressive"
    BALANCED = "balanced"
    CONSERVATIVE = "conservative"


class CodegenBackend(str, Enum):
    COMMAND = "command"
    OPENAI = "openai"


class RunningConfig(BaseModel):
    """Operator-tunable knobs, persisted as config.json and reloaded every cycle."""

    model_config = ConfigDict(use_enum_values=False)

    min_budget: float = Field(default=0.1, ge=0.0)
    min_quality: int = Field(default=40, ge=0, le=100)
    max_concurrent: int = Field(default=25, ge=1)
    poll_interval: float = Field(default=60.0, ge=0.0)
    bid_strategy: BidStrategy = BidStrategy.AGGRESSIVE
    bid_eta_seconds: int = Field(default=86400, ge=60)
    bid_delay_seconds: float = Field(default=1.0, ge=0.0)

    max_consecutive_errors: int = Field(default=5, ge=1)
    error_cooldown_seconds: float = Field(default=300.0, ge=0.0)
    error_retry_seconds: float = Field(default=10.0, ge=0.0)

    max_fix_attempts: int = Field(default=2, ge=0, le=10)
    running: bool = False
    dashboard_port: int = Field(default=18800, ge=1, le=65535)

    codegen_backend: CodegenBackend = CodegenBackend.COMMAND
    # `{model}` and `{prompt_file}` are substituted (shell-quoted) per attempt.
    codegen_command: str = 'kilo run -m {model} --prompt "$(cat {prompt_file})"'
    codegen_models: list[str] = Field(
        default_factory=lambda: [
            "kilo/minimax/minimax-m2.5:free",
            "kilo/z-ai/glm-5:free",
            "kilo/stepfun/step-3.5-flash:free",
        ]
    )
    codegen_timeout_sec: int = Field(default=600, ge=1)
    openai_model: str = "gpt-4o"
    pipelines_file: str | None = None
