"""Provider and model catalog.

Loads provider definitions from the packaged providers.yaml and answers
questions the loop needs: which key a model uses, its context length, and
which model to pick when none is configured.
"""

from __future__ import annotations

import importlib.resources
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

import yaml

from codeloop.config.secrets import fetch_secret

DEFAULT_CONTEXT_LENGTH = 128_000


@dataclass
class ModelConfig:
    """Configuration for a single model."""

    id: str
    name: str
    context_length: int
    capabilities: list[str] = field(default_factory=list)  # tool_use, thinking, ...
    temperature: float | None = None


@dataclass
class ProviderConfig:
    """Configuration for an LLM provider."""

    name: str
    env_var: str
    models: list[ModelConfig] = field(default_factory=list)
    default_model: str | None = None


@lru_cache(maxsize=1)
def _load_providers_yaml() -> dict[str, Any]:
    files = importlib.resources.files("codeloop.core.llm")
    return yaml.safe_load(files.joinpath("providers.yaml").read_text(encoding="utf-8")) or {}


@lru_cache(maxsize=1)
def provider_configs() -> dict[str, ProviderConfig]:
    """Build ProviderConfig objects from the YAML catalog."""
    configs: dict[str, ProviderConfig] = {}
    for provider_name, provider_data in _load_providers_yaml().get("providers", {}).items():
        models = [
            ModelConfig(
                id=m["id"],
                name=m.get("name", m["id"]),
                context_length=m.get("context_length", DEFAULT_CONTEXT_LENGTH),
                capabilities=m.get("capabilities", []),
                temperature=m.get("temperature"),
            )
            for m in provider_data.get("models", [])
        ]
        configs[provider_name] = ProviderConfig(
            name=provider_name,
            env_var=provider_data["env_var"],
            models=models,
            default_model=provider_data.get("default_model"),
        )
    return configs


def _find(model_id: str) -> tuple[ProviderConfig, ModelConfig] | None:
    for provider in provider_configs().values():
        for model in provider.models:
            if model.id == model_id:
                return provider, model
    return None


def get_model_config(model_id: str) -> ModelConfig | None:
    found = _find(model_id)
    return found[1] if found else None


def get_context_length(model_id: str) -> int:
    """Context window of a model, or a conservative default for unknown ids."""
    model = get_model_config(model_id)
    return model.context_length if model else DEFAULT_CONTEXT_LENGTH


def get_api_key_for_model(model_id: str) -> str | None:
    """Look up the API key of the provider serving ``model_id``.

    Unknown models return None and litellm falls back to its own env lookup.
    """
    found = _find(model_id)
    if found is None:
        return None
    return fetch_secret(found[0].env_var)


def get_available_providers() -> list[str]:
    """Return providers with an API key configured."""
    return [name for name, cfg in provider_configs().items() if fetch_secret(cfg.env_var)]


def get_default_model() -> str | None:
    """Default model of the first provider that has a key, in catalog order."""
    for name in get_available_providers():
        config = provider_configs()[name]
        if config.default_model:
            return config.default_model
        if config.models:
            return config.models[0].id
    return None
