"""Long-lived collaborators shared by all routers, built once per app."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from starlette.requests import HTTPConnection

from relaygate.config.settings import settings
from relaygate.core.aliases import AliasTable, build_alias_table
from relaygate.core.directory import ModelDirectory, load_model_directory
from relaygate.core.models import Provider, ResolvedModel, StreamChunk
from relaygate.core.resolver import ModelResolver
from relaygate.providers.base import GenerationOptions, ProviderClient, ProviderCredentials
from relaygate.providers.factory import build_provider_client, resolve_credentials


ProviderFactory = Callable[[Provider], ProviderClient]


@dataclass(frozen=True, slots=True)
class UpstreamCall:
    """One provider invocation bound to a resolved model."""

    client: ProviderClient
    resolved: ResolvedModel
    credentials: ProviderCredentials
    options: GenerationOptions

    def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[StreamChunk]:
        return self.client.stream_generate(
            system_prompt,
            user_prompt,
            self.resolved.internal_id,
            self.credentials,
            self.options,
        )

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        return await self.client.generate(
            system_prompt,
            user_prompt,
            self.resolved.internal_id,
            self.credentials,
            self.options,
        )


@dataclass
class RelayServices:
    alias_table: AliasTable
    directory: ModelDirectory
    provider_factory: ProviderFactory = build_provider_client
    resolver: ModelResolver = field(init=False)

    def __post_init__(self) -> None:
        self.resolver = ModelResolver(self.alias_table)

    def upstream_call(self, resolved: ResolvedModel, options: GenerationOptions | None = None) -> UpstreamCall:
        return UpstreamCall(
            client=self.provider_factory(resolved.provider),
            resolved=resolved,
            credentials=resolve_credentials(resolved),
            options=options or GenerationOptions(),
        )


def build_services() -> RelayServices:
    return RelayServices(
        alias_table=build_alias_table(settings.alias_table_path, settings.default_model_id),
        directory=load_model_directory(settings.model_directory_path),
    )


def get_services(connection: HTTPConnection) -> RelayServices:
    return connection.app.state.services
