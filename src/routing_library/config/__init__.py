# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .catalog import (
    ProviderCatalog,
    default_catalog,
    discover_env_credentials,
    load_catalog,
)
from .settings import RoutingSettings

__all__ = [
    "ProviderCatalog",
    "RoutingSettings",
    "default_catalog",
    "discover_env_credentials",
    "load_catalog",
]
