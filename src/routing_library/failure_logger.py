# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Structured failure log.

One record per failed backend attempt goes to the "routing_library.failures"
logger. Hosts that want a failure file attach their own handler to it; by
default the records only reach the library's NullHandler.
"""

import json
import logging
from typing import Any, Dict, Optional

from .core.errors import ClassifiedError, mask_credential

failure_logger = logging.getLogger("routing_library.failures")


def build_failure_record(
    provider: str,
    model: str,
    credential: Optional[str],
    credential_index: Optional[int],
    attempt: int,
    classified: ClassifiedError,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "request_id": request_id,
        "provider": provider,
        "model": model,
        "credential": mask_credential(credential, style="full") if credential else None,
        "credential_index": credential_index,
        "attempt": attempt,
        "error_type": classified.error_type,
        "status_code": classified.status_code,
        "retry_after": classified.retry_after,
        "error_class": type(classified.original).__name__
        if classified.original is not None
        else None,
        "message": classified.message[:200],
    }


def log_failure(
    provider: str,
    model: str,
    credential: Optional[str],
    credential_index: Optional[int],
    attempt: int,
    classified: ClassifiedError,
    request_id: Optional[str] = None,
) -> None:
    """Emit one failure record as a JSON line."""
    record = build_failure_record(
        provider, model, credential, credential_index, attempt, classified, request_id
    )
    failure_logger.error(json.dumps(record, default=str))
