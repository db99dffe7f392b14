"""Small HTTP-related constants shared across chatbridge.

This module is intentionally tiny to avoid circular imports and drift.
"""

from __future__ import annotations

# Retryable status codes shared by provider error mapping and the transport.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

SSE_CONTENT_TYPE = "text/event-stream"
