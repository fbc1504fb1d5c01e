# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Provider catalog: the configuration provider of the routing engine.

The catalog is loaded once (from a JSON file, or the built-in default) and is
immutable afterwards. Credential values never live in the catalog file; they
are resolved from the environment, with a .env file loaded via python-dotenv:

    OPENAI_API_KEY, OPENAI_API_KEY_1, OPENAI_API_KEY_2, ...

or from explicit variable names listed under "api_key_env".

Example catalog:

    {
        "settings": {"rate_limit_threshold": 0.85, "max_retries": 6},
        "providers": [
            {
                "name": "anthropic",
                "priority": 1,
                "models": [
                    {"name": "claude-opus", "tier": "pro",
                     "input_price": 15, "output_price": 75,
                     "tokens_per_minute": 40000, "requests_per_minute": 50,
                     "capabilities": ["code", "vision"]}
                ]
            }
        ]
    }
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from dotenv import load_dotenv

from ..core.errors import ConfigurationError
from ..core.types import ModelSpec, ModelTier, Provider
from . import defaults
from .settings import RoutingSettings

lib_logger = logging.getLogger("routing_library")

_VALID_TIERS = {tier.value for tier in ModelTier}


def _extract_key_number(key_name: str) -> int:
    """Extract the numeric suffix from a key name for proper sorting.

    Examples:
        OPENAI_API_KEY_1 -> 1
        OPENAI_API_KEY_10 -> 10
        OPENAI_API_KEY -> 0
    """
    match = re.search(r"_(\d+)$", key_name)
    return int(match.group(1)) if match else 0


def discover_env_credentials(
    provider: str, environ: Optional[Mapping[str, str]] = None
) -> Tuple[str, ...]:
    """
    Collect <PROVIDER>_API_KEY[_<n>] values for a provider, in numeric order.

    Args:
        provider: Provider name (case-insensitive, dashes map to underscores)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Tuple of credential values (empty values are kept as unset slots)
    """
    env = os.environ if environ is None else environ
    prefix = f"{provider.upper().replace('-', '_')}_API_KEY"
    pattern = re.compile(rf"^{re.escape(prefix)}(_\d+)?$")
    names = sorted(
        (name for name in env if pattern.match(name)), key=_extract_key_number
    )
    return tuple(env[name].strip() for name in names)


class ProviderCatalog:
    """
    Immutable catalog of providers, models and settings.

    Providers are kept in configured order (priority, then declaration
    order); each provider's model list is its fallback chain.
    """

    def __init__(
        self,
        providers: List[Provider],
        settings: Optional[RoutingSettings] = None,
    ):
        names = [p.name for p in providers]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ConfigurationError(
                f"Duplicate provider names: {', '.join(sorted(duplicates))}"
            )
        self._providers: Tuple[Provider, ...] = tuple(
            sorted(providers, key=lambda p: p.priority)
        )
        self._by_name: Dict[str, Provider] = {p.name: p for p in self._providers}
        self.settings = settings or RoutingSettings()

    def __len__(self) -> int:
        return len(self._providers)

    def __iter__(self):
        return iter(self._providers)

    def get_provider(self, name: str) -> Optional[Provider]:
        return self._by_name.get(name)

    def get_model(self, provider: str, model: str) -> Optional[ModelSpec]:
        entry = self._by_name.get(provider)
        return entry.get_model(model) if entry else None

    def providers_in_order(self, enabled_only: bool = True) -> List[Provider]:
        """Providers sorted by configured rank."""
        return [p for p in self._providers if p.enabled or not enabled_only]

    def next_model(self, provider: str, model: str) -> List[ModelSpec]:
        """Models after ``model`` in the provider's fallback chain."""
        entry = self._by_name.get(provider)
        if entry is None:
            return []
        names = [m.name for m in entry.models]
        if model not in names:
            return list(entry.models)
        return list(entry.models[names.index(model) + 1 :])

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        environ: Optional[Mapping[str, str]] = None,
        base_settings: Optional[RoutingSettings] = None,
    ) -> "ProviderCatalog":
        """
        Build a catalog from parsed JSON.

        Raises:
            ConfigurationError: If the structure is malformed
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("Catalog root must be an object")
        raw_providers = data.get("providers", [])
        if not isinstance(raw_providers, list):
            raise ConfigurationError("'providers' must be a list")

        settings = (base_settings or RoutingSettings()).merged(data.get("settings"))
        providers = [
            _parse_provider(entry, position, environ)
            for position, entry in enumerate(raw_providers)
        ]
        return cls(providers, settings)


def _parse_model(provider: str, raw: Any) -> ModelSpec:
    if isinstance(raw, str):
        raw = {"name": raw}
    if not isinstance(raw, Mapping) or not raw.get("name"):
        raise ConfigurationError(f"Provider '{provider}': every model needs a name")
    tier = str(raw.get("tier", ModelTier.STANDARD.value)).lower()
    if tier not in _VALID_TIERS:
        lib_logger.warning(
            f"Provider '{provider}' model '{raw['name']}' has unknown tier '{tier}'"
        )
    try:
        return ModelSpec(
            name=str(raw["name"]),
            tier=tier,
            context_window=int(raw.get("context_window", 128000)),
            max_output_tokens=int(raw.get("max_output_tokens", 4096)),
            input_price=float(raw.get("input_price", 0.0)),
            output_price=float(raw.get("output_price", 0.0)),
            tokens_per_minute=_optional_int(raw.get("tokens_per_minute")),
            requests_per_minute=_optional_int(raw.get("requests_per_minute")),
            capabilities=frozenset(str(c) for c in raw.get("capabilities", ())),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Provider '{provider}' model '{raw['name']}': {e}"
        ) from e


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value)


def _parse_provider(
    raw: Any, position: int, environ: Optional[Mapping[str, str]]
) -> Provider:
    if not isinstance(raw, Mapping) or not raw.get("name"):
        raise ConfigurationError(f"Provider #{position} needs a name")
    name = str(raw["name"])
    env = os.environ if environ is None else environ

    if "api_keys" in raw:
        credentials = tuple(str(k) for k in raw["api_keys"])
    elif "api_key_env" in raw:
        credentials = tuple(env.get(var, "").strip() for var in raw["api_key_env"])
    else:
        credentials = discover_env_credentials(name, env)

    models = tuple(_parse_model(name, m) for m in raw.get("models", ()))
    if not models:
        raise ConfigurationError(f"Provider '{name}' declares no models")

    requires_credential = bool(raw.get("requires_credential", True))
    if requires_credential and not any(credentials):
        lib_logger.warning(f"Provider '{name}' has no credentials configured")

    return Provider(
        name=name,
        base_url=raw.get("base_url"),
        credentials=credentials,
        enabled=bool(raw.get("enabled", True)),
        priority=int(raw.get("priority", 999)),
        models=models,
        backend=str(raw.get("backend", "litellm")),
        requires_credential=requires_credential,
    )


def default_catalog(settings: Optional[RoutingSettings] = None) -> ProviderCatalog:
    """Built-in catalog: one local Ollama runtime that needs no credential."""
    local = Provider(
        name=defaults.DEFAULT_LOCAL_PROVIDER,
        base_url=defaults.DEFAULT_LOCAL_BASE_URL,
        priority=0,
        models=(ModelSpec(name=defaults.DEFAULT_LOCAL_MODEL, tier=ModelTier.LITE.value),),
        backend="ollama",
        requires_credential=False,
    )
    return ProviderCatalog([local], settings)


def load_catalog(
    path: Optional[Union[str, Path]] = None,
    env_file: Optional[Union[str, Path]] = None,
) -> ProviderCatalog:
    """
    Load the provider catalog.

    Args:
        path: JSON catalog file. Defaults to $ROUTING_CATALOG_FILE. A missing
            file falls back to the built-in default catalog.
        env_file: .env file with credentials. Defaults to ./.env; existing
            environment variables are not overridden.

    Returns:
        ProviderCatalog

    Raises:
        ConfigurationError: If the file exists but cannot be parsed
    """
    load_dotenv(env_file or Path.cwd() / ".env", override=False)
    settings = RoutingSettings.from_env()

    path = path or os.environ.get("ROUTING_CATALOG_FILE")
    if not path or not Path(path).exists():
        lib_logger.info(
            f"No catalog file found{f' at {path}' if path else ''}; "
            f"using default local catalog"
        )
        return default_catalog(settings)

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Failed to parse catalog {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read catalog {path}: {e}") from e

    catalog = ProviderCatalog.from_dict(data, base_settings=settings)
    lib_logger.info(
        f"Loaded catalog from {path}: {len(catalog)} provider(s), "
        f"{sum(len(p.models) for p in catalog)} model(s)"
    )
    return catalog
