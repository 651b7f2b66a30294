from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from market_agent.config import RunningConfig
from market_agent.errors import ConfigError
from market_agent.jsonutil import pretty_json_dumps
from market_agent.sandbox import write_text_atomic
from market_agent.schemas import AgentState

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
STATE_FILE = "state.json"
EVENTS_FILE = "events.jsonl"
LOG_FILE = "agent.log"
WORK_DIR = "work"


class StateStore(Protocol):
    def load_state(self) -> AgentState: ...

    def save_state(self, state: AgentState) -> None: ...

    def load_config(self) -> RunningConfig: ...

    def save_config(self, config: RunningConfig) -> None: ...


class JsonStateStore:
    """Snapshot files under one data directory, each rewritten atomically on save."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir
        self._data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def state_path(self) -> Path:
        return self._data_dir / STATE_FILE

    @property
    def config_path(self) -> Path:
        return self._data_dir / CONFIG_FILE

    @property
    def events_path(self) -> Path:
        return self._data_dir / EVENTS_FILE

    @property
    def log_path(self) -> Path:
        return self._data_dir / LOG_FILE

    @property
    def work_dir(self) -> Path:
        return self._data_dir / WORK_DIR

    def load_state(self) -> AgentState:
        if not self.state_path.exists():
            return AgentState()
        return AgentState.model_validate_json(self.state_path.read_text(encoding="utf-8"))

    def save_state(self, state: AgentState) -> None:
        state.check_disjoint()
        write_text_atomic(self.state_path, pretty_json_dumps(state.model_dump(mode="json")))

    def load_config(self) -> RunningConfig:
        if not self.config_path.exists():
            return RunningConfig()
        try:
            return RunningConfig.model_validate_json(self.config_path.read_text(encoding="utf-8"))
        except ValidationError as e:
            first = e.errors()[0]
            where = ".".join(str(p) for p in first["loc"]) or "file"
            raise ConfigError(f"{self.config_path}: {where}: {first['msg']}") from e

    def save_config(self, config: RunningConfig) -> None:
        write_text_atomic(self.config_path, pretty_json_dumps(config.model_dump(mode="json")))

    def set_running(self, running: bool) -> RunningConfig:
        config = self.load_config().model_copy(update={"running": running})
        self.save_config(config)
        logger.info("running flag set to %s", running)
        return config
