from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Literal, cast

import yaml
from pydantic import BaseModel, ValidationError

from charge_optimizer.models.config import AppConfig

logger = logging.getLogger(__name__)

ConfigSection = Literal["homewizard", "zonneplan", "optimizer"]


def load_app_config(config_path: Path) -> AppConfig:
    if not config_path.exists():
        raise ValueError(f"Config file {config_path} not found")

    loaded = _read_mapping(config_path)
    try:
        return AppConfig.model_validate(loaded)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration in {config_path}: {exc}") from exc


class ConfigStore:
    """YAML-backed configuration snapshot store.

    Every write goes through a temporary file in the target directory that is
    renamed over the original, so a reader never observes a half-written file.
    Callers own one top-level section each and persist it with
    :meth:`save_section`, leaving the other sections as they are on disk.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> AppConfig:
        return load_app_config(self._path)

    def save(self, config: AppConfig) -> None:
        self._write(config.model_dump(mode="json"))

    def save_section(self, name: ConfigSection, section: BaseModel) -> None:
        data = _read_mapping(self._path) if self._path.exists() else {}
        data[name] = section.model_dump(mode="json")
        self._write(data)
        logger.debug("Persisted config section %s to %s", name, self._path)

    def _write(self, data: dict[str, Any]) -> None:
        text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def _read_mapping(config_path: Path) -> dict[str, Any]:
    try:
        loaded: Any = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Config file is not valid YAML: {config_path}") from exc

    if not isinstance(loaded, dict):
        raise ValueError("Top-level config must be a mapping")
    return cast(dict[str, Any], loaded)
