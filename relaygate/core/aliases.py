"""Static alias table: vendor-style model names -> locally served model ids."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import yaml

from relaygate.util.logger import logger


DEFAULT_ALIAS_KEY = "default"

# 编辑器里写死的 OpenAI/Anthropic/Gemini 名称 -> 本地 Ollama 模型
BUILTIN_ALIASES: tuple[tuple[str, str], ...] = (
    # GPT-4 family -> coder model
    ("gpt-4", "qwen2.5-coder:1.5b"),
    ("gpt-4-0613", "qwen2.5-coder:1.5b"),
    ("gpt-4-32k", "qwen2.5-coder:1.5b"),
    ("gpt-4-32k-0613", "qwen2.5-coder:1.5b"),
    # GPT-4 Turbo -> reasoning model
    ("gpt-4-turbo", "deepseek-r1:1.5b"),
    ("gpt-4-turbo-preview", "deepseek-r1:1.5b"),
    ("gpt-4-1106-preview", "deepseek-r1:1.5b"),
    ("gpt-4-0125-preview", "deepseek-r1:1.5b"),
    ("gpt-4o", "qwen2.5-coder:1.5b"),
    ("gpt-4o-2024-05-13", "qwen2.5-coder:1.5b"),
    ("gpt-4o-mini", "qwen2.5-coder:0.5b"),
    ("gpt-4o-mini-2024-07-18", "qwen2.5-coder:0.5b"),
    ("gpt-3.5-turbo", "qwen2.5-coder:0.5b"),
    ("gpt-3.5-turbo-0125", "qwen2.5-coder:0.5b"),
    ("gpt-3.5-turbo-1106", "qwen2.5-coder:0.5b"),
    ("gpt-3.5-turbo-16k", "qwen2.5-coder:0.5b"),
    # Claude 3
    ("claude-3-opus-20240229", "deepseek-coder:1.3b"),
    ("claude-3-opus", "deepseek-coder:1.3b"),
    ("claude-3-sonnet-20240229", "qwen2.5-coder:1.5b"),
    ("claude-3-sonnet", "qwen2.5-coder:1.5b"),
    ("claude-3-haiku-20240307", "qwen2.5-coder:0.5b"),
    ("claude-3-haiku", "qwen2.5-coder:0.5b"),
    # Claude 2
    ("claude-2.1", "qwen2.5-coder:1.5b"),
    ("claude-2.0", "qwen2.5-coder:1.5b"),
    ("claude-2", "qwen2.5-coder:1.5b"),
    ("claude-instant-1.2", "qwen2.5-coder:0.5b"),
    ("claude-instant-1", "qwen2.5-coder:0.5b"),
    # Gemini -> Gemma
    ("gemini-pro", "gemma2:2b"),
    ("gemini-1.5-pro", "gemma2:2b"),
    ("gemini-1.5-flash", "gemma2:2b"),
    ("gemini-ultra", "gemma2:2b"),
    ("mistral-large", "mistral-large-3:675b-cloud"),
    ("mistral-medium", "qwen2.5-coder:1.5b"),
    ("mistral-small", "qwen2.5-coder:0.5b"),
    # generic
    (DEFAULT_ALIAS_KEY, "qwen2.5-coder:0.5b"),
    ("fast", "qwen2.5-coder:0.5b"),
    ("balanced", "qwen2.5-coder:1.5b"),
    ("powerful", "deepseek-coder:1.3b"),
    ("reasoning", "deepseek-r1:1.5b"),
    ("coding", "qwen2.5-coder:1.5b"),
    ("chat", "qwen2.5-coder:0.5b"),
)

# /v1/models 上展示的厂商名称（id, 展示名, owned_by）
ADVERTISED_ALIASES: tuple[tuple[str, str, str], ...] = (
    ("gpt-4", "GPT-4", "openai"),
    ("gpt-4-turbo", "GPT-4 Turbo", "openai"),
    ("gpt-3.5-turbo", "GPT-3.5 Turbo", "openai"),
    ("gpt-4o", "GPT-4o", "openai"),
    ("gpt-4o-mini", "GPT-4o Mini", "openai"),
    ("claude-3-opus", "Claude 3 Opus", "anthropic"),
    ("claude-3-sonnet", "Claude 3 Sonnet", "anthropic"),
    ("claude-3-haiku", "Claude 3 Haiku", "anthropic"),
    ("gemini-pro", "Gemini Pro", "google"),
    ("gemini-1.5-pro", "Gemini 1.5 Pro", "google"),
)


@dataclass(frozen=True, slots=True)
class AliasEntry:
    external_id: str
    internal_id: str


@dataclass(frozen=True, slots=True)
class AdvertisedModel:
    id: str
    name: str
    owned_by: str
    internal_id: str


class AliasTable:
    """Immutable alias table built once at startup."""

    def __init__(self, entries: Iterable[AliasEntry], *, default_internal_id: str | None = None) -> None:
        aliases: dict[str, str] = {}
        for entry in entries:
            key = entry.external_id.strip().lower()
            if not key:
                raise ValueError("alias external_id must be non-empty")
            if key in aliases:
                raise ValueError(f"duplicate alias: {key}")
            aliases[key] = entry.internal_id
        default = (default_internal_id or "").strip() or aliases.get(DEFAULT_ALIAS_KEY, "")
        if not default:
            raise ValueError("alias table requires a default internal id")
        self._aliases = aliases
        self._default = default
        reverse: dict[str, list[str]] = {}
        for external, internal in aliases.items():
            reverse.setdefault(internal, []).append(external)
        self._reverse = reverse

    @property
    def default_internal_id(self) -> str:
        return self._default

    def resolve(self, external_id: str | None) -> str:
        if not external_id or not external_id.strip():
            return self._default
        mapped = self._aliases.get(external_id.strip().lower())
        if mapped is None:
            return external_id
        logger.debug("model alias resolved requested=%s resolved=%s", external_id, mapped)
        return mapped

    def reverse_lookup(self, internal_id: str) -> list[str]:
        return list(self._reverse.get(internal_id, []))

    def external_ids(self) -> list[str]:
        return list(self._aliases)

    def advertised_models(self) -> list[AdvertisedModel]:
        advertised = []
        for model_id, name, owned_by in ADVERTISED_ALIASES:
            if model_id not in self._aliases:
                continue
            advertised.append(
                AdvertisedModel(id=model_id, name=name, owned_by=owned_by, internal_id=self._aliases[model_id])
            )
        return advertised

    def mapping(self) -> dict[str, Any]:
        return {
            "aliases": dict(self._aliases),
            "reverse": {key: list(value) for key, value in self._reverse.items()},
            "default": self._default,
        }

    def __len__(self) -> int:
        return len(self._aliases)


def _load_override_file(path: Path) -> tuple[dict[str, str], str]:
    loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"alias table file must be a mapping: {path}")
    raw_aliases = loaded.get("aliases") or {}
    if not isinstance(raw_aliases, dict):
        raise ValueError(f"'aliases' must be a mapping: {path}")
    aliases = {str(key).strip().lower(): str(value).strip() for key, value in raw_aliases.items()}
    return aliases, str(loaded.get("default") or "").strip()


def build_alias_table(override_path: str = "", default_internal_id: str = "") -> AliasTable:
    merged: dict[str, str] = dict(BUILTIN_ALIASES)
    override_default = ""
    if override_path.strip():
        path = Path(override_path)
        if path.is_file():
            overrides, override_default = _load_override_file(path)
            merged.update(overrides)
            logger.info("alias overrides loaded path=%s count=%d", path, len(overrides))
        else:
            logger.warning("alias table file not found, using built-in aliases path=%s", path)
    entries = [AliasEntry(external_id=key, internal_id=value) for key, value in merged.items()]
    table = AliasTable(entries, default_internal_id=default_internal_id or override_default or None)
    logger.info("alias table ready aliases=%d default=%s", len(table), table.default_internal_id)
    return table
