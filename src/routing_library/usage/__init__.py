# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .admission import AdmissionController, evaluate_window
from .ledger import UsageLedger, calculate_cost, window_elapsed
from .storage import UsageStorage

__all__ = [
    "AdmissionController",
    "UsageLedger",
    "UsageStorage",
    "calculate_cost",
    "evaluate_window",
    "window_elapsed",
]
