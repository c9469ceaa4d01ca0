"""Serverless entry point — Netlify/Lambda style `handler(event, context)`.

The platform hands us an envelope: {httpMethod, headers, body, isBase64Encoded}.
The body is passed through untouched to the shared pipeline, which decodes
base64 envelopes back to the bytes Stripe signed.

Clients are built once per warm container on first use and reused by every
later invocation in that container.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from membersync.config import Settings, configure_logging
from membersync.webhooks.dispatcher import WebhookContext
from membersync.webhooks.handlers import WebhookResponse, handle_notification

logger = logging.getLogger(__name__)

_runtime: tuple[Settings, WebhookContext] | None = None


def _get_runtime() -> tuple[Settings, WebhookContext]:
    global _runtime
    if _runtime is None:
        from membersync.serve import build_context

        settings = Settings.from_env()
        configure_logging(settings.log_level)
        _runtime = (settings, build_context(settings))
    return _runtime


def _to_envelope(response: WebhookResponse) -> dict[str, Any]:
    return {
        "statusCode": response.status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(response.body),
    }


def process_event(event: dict[str, Any], settings: Settings, ctx: WebhookContext) -> dict[str, Any]:
    """Handle one platform envelope with explicit settings and clients."""
    http = (event.get("requestContext") or {}).get("http") or {}
    method = (event.get("httpMethod") or http.get("method") or "").upper()
    if method != "POST":
        return _to_envelope(WebhookResponse(405, {"status": "method_not_allowed"}))

    response = handle_notification(
        event.get("body"),
        event.get("headers") or {},
        settings,
        ctx,
        is_base64_encoded=bool(event.get("isBase64Encoded")),
    )
    return _to_envelope(response)


def handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """Platform entry point."""
    settings, ctx = _get_runtime()
    return process_event(event, settings, ctx)
