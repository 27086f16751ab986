"""Read-only model directory backed by a YAML file."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Protocol

import yaml
from pydantic import ValidationError

from relaygate.core.models import ModelRecord
from relaygate.util.logger import logger


# 配置文件不存在时使用的内置目录：单个本地 Ollama 默认模型
_BUILTIN_DIRECTORY: tuple[dict[str, Any], ...] = (
    {
        "id": "ollama-qwen2.5-coder-1.5b",
        "display_name": "Qwen 2.5 Coder 1.5B",
        "provider": "ollama",
        "internal_model_id": "qwen2.5-coder:1.5b",
        "is_default": True,
        "is_active": True,
    },
)


class ModelDirectory(Protocol):
    def records(self) -> list[ModelRecord]: ...

    def active_records(self) -> list[ModelRecord]: ...


class StaticModelDirectory:
    """Immutable snapshot of configured model records, in file order."""

    def __init__(self, records: Iterable[ModelRecord]) -> None:
        self._records = tuple(records)

    def records(self) -> list[ModelRecord]:
        return list(self._records)

    def active_records(self) -> list[ModelRecord]:
        return [record for record in self._records if record.is_active]

    def find_active(self, internal_model_id: str) -> ModelRecord | None:
        for record in self._records:
            if record.is_active and record.internal_model_id == internal_model_id:
                return record
        return None

    def __len__(self) -> int:
        return len(self._records)


def _parse_records(raw_items: Any, source: str) -> list[ModelRecord]:
    if not isinstance(raw_items, list):
        raise ValueError(f"'models' must be a list: {source}")
    records: list[ModelRecord] = []
    for index, item in enumerate(raw_items):
        if not isinstance(item, dict):
            raise ValueError(f"model entry #{index} must be a mapping: {source}")
        try:
            records.append(ModelRecord.model_validate(item))
        except ValidationError as exc:
            raise ValueError(f"invalid model entry #{index} in {source}: {exc}") from exc
    return records


def load_model_directory(path_str: str) -> StaticModelDirectory:
    path = Path(path_str)
    if not path.is_file():
        logger.warning("model directory file not found, using built-in directory path=%s", path)
        return StaticModelDirectory(_parse_records(list(_BUILTIN_DIRECTORY), "builtin"))

    loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"model directory file must be a mapping: {path}")
    records = _parse_records(loaded.get("models") or [], str(path))
    active = [record for record in records if record.is_active]
    defaults = [record for record in active if record.is_default]
    if len(defaults) > 1:
        logger.warning(
            "model directory has %d active defaults, first wins path=%s ids=%s",
            len(defaults),
            path,
            [record.id for record in defaults],
        )
    logger.info(
        "model directory loaded path=%s records=%d active=%d providers=%s",
        path,
        len(records),
        len(active),
        sorted({record.provider.value for record in active}),
    )
    return StaticModelDirectory(records)

