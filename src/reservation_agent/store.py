"""File-backed configuration store and last-run bookkeeping."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Protocol
from uuid import UUID

import structlog
from pydantic import TypeAdapter, ValidationError

from .errors import ConfigurationError
from .models import AppState, LastRunInfo

LOGGER = structlog.get_logger(__name__)

_LAST_RUNS = TypeAdapter(Dict[UUID, LastRunInfo])


class ConfigurationStore(Protocol):
    """Read access to configurations plus a write path for run outcomes."""

    def load(self) -> AppState:
        ...

    def record_last_run(self, config_id: UUID, info: LastRunInfo) -> None:
        ...

    def last_runs(self) -> Dict[UUID, LastRunInfo]:
        ...


class JsonConfigurationStore:
    """Configurations and last-run info kept as JSON documents on disk."""

    def __init__(self, configurations_path: Path, last_runs_path: Path):
        self._configurations_path = configurations_path
        self._last_runs_path = last_runs_path

    def load(self) -> AppState:
        if not self._configurations_path.exists():
            LOGGER.info("store.configurations.missing", path=str(self._configurations_path))
            return AppState()
        try:
            return AppState.model_validate_json(self._configurations_path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid configurations file {self._configurations_path}: {exc}") from exc

    def save(self, state: AppState) -> None:
        _atomic_write(self._configurations_path, state.model_dump_json(indent=2))

    def last_runs(self) -> Dict[UUID, LastRunInfo]:
        if not self._last_runs_path.exists():
            return {}
        try:
            return _LAST_RUNS.validate_json(self._last_runs_path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            LOGGER.warning("store.last_runs.corrupt", path=str(self._last_runs_path), error=str(exc))
            return {}

    def record_last_run(self, config_id: UUID, info: LastRunInfo) -> None:
        runs = self.last_runs()
        runs[config_id] = info
        payload = {str(key): value.model_dump(mode="json") for key, value in runs.items()}
        _atomic_write(self._last_runs_path, json.dumps(payload, indent=2))


class MemoryConfigurationStore:
    """In-process store used by tests and one-off CLI invocations."""

    def __init__(self, state: AppState | None = None):
        self.state = state or AppState()
        self.runs: Dict[UUID, LastRunInfo] = {}

    def load(self) -> AppState:
        return self.state

    def record_last_run(self, config_id: UUID, info: LastRunInfo) -> None:
        self.runs[config_id] = info

    def last_runs(self) -> Dict[UUID, LastRunInfo]:
        return dict(self.runs)


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
