# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .batch import BatchDispatcher
from .executor import FallbackEngine, FallbackOptions, decide
from .routing_client import RoutingClient

__all__ = [
    "BatchDispatcher",
    "FallbackEngine",
    "FallbackOptions",
    "RoutingClient",
    "decide",
]
