"""Request model resolution: alias substitution + directory lookup + default fallback."""

from __future__ import annotations

from relaygate.core.aliases import AliasTable
from relaygate.core.directory import ModelDirectory
from relaygate.core.errors import NoModelAvailableError
from relaygate.core.models import ChatRequest, ModelRecord, ResolvedModel
from relaygate.util.logger import logger


def _binding(record: ModelRecord) -> ResolvedModel:
    return ResolvedModel(
        internal_id=record.internal_model_id,
        provider=record.provider,
        endpoint_url=record.endpoint_url,
        api_key_ref=record.api_key_ref,
    )


def _default_record(active: list[ModelRecord]) -> ModelRecord:
    for record in active:
        if record.is_default:
            return record
    return active[0]


class ModelResolver:
    """Pure function of (requested model, directory snapshot)."""

    def __init__(self, alias_table: AliasTable) -> None:
        self.alias_table = alias_table

    def resolve(self, request: ChatRequest, directory: ModelDirectory) -> ResolvedModel:
        return self.resolve_model_id(request.requested_model, directory)

    def resolve_model_id(self, requested_model: str | None, directory: ModelDirectory) -> ResolvedModel:
        active = directory.active_records()
        if not active:
            raise NoModelAvailableError()

        candidate = self.alias_table.resolve(requested_model)
        for record in active:
            if record.internal_model_id == candidate:
                return _binding(record)

        fallback = _default_record(active)
        logger.warning(
            "model not configured, falling back to default requested=%s resolved=%s fallback=%s",
            requested_model,
            candidate,
            fallback.internal_model_id,
        )
        return _binding(fallback)
