"""Provider client selection by the resolved provider tag."""

from __future__ import annotations

import os

import httpx

from relaygate.config.settings import settings
from relaygate.core.models import Provider, ResolvedModel
from relaygate.providers.anthropic import AnthropicClient
from relaygate.providers.base import ProviderClient, ProviderCredentials
from relaygate.providers.ollama import OllamaClient
from relaygate.providers.openai_compat import OpenAICompatClient


_CLIENT_TYPES: dict[Provider, type[ProviderClient]] = {
    Provider.OLLAMA: OllamaClient,
    Provider.OPENAI: OpenAICompatClient,
    Provider.ANTHROPIC: AnthropicClient,
}


def build_provider_client(provider: Provider, client: httpx.AsyncClient | None = None) -> ProviderClient:
    return _CLIENT_TYPES[provider](client=client)


def _default_base_url(provider: Provider) -> str:
    if provider is Provider.OPENAI:
        return settings.openai_base_url
    if provider is Provider.ANTHROPIC:
        return settings.anthropic_base_url
    return settings.ollama_base_url


def _default_api_key(provider: Provider) -> str:
    if provider is Provider.OPENAI:
        return settings.openai_api_key
    if provider is Provider.ANTHROPIC:
        return settings.anthropic_api_key
    return ""


def resolve_credentials(resolved: ResolvedModel) -> ProviderCredentials:
    """api_key_ref names an environment variable; empty falls back to the provider key in settings."""

    base_url = (resolved.endpoint_url or "").strip() or _default_base_url(resolved.provider)
    api_key = ""
    if resolved.api_key_ref:
        api_key = os.environ.get(resolved.api_key_ref, "").strip()
    if not api_key:
        api_key = _default_api_key(resolved.provider)
    return ProviderCredentials(base_url=base_url, api_key=api_key)
