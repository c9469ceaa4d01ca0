"""Webhook HTTP handling — one transport-neutral pipeline plus the FastAPI route.

Each notification:
1. Checks the webhook secret is configured (500 before anything else)
2. Decodes the body to its transport bytes (base64 envelopes included)
3. Verifies the Stripe signature on those bytes
4. Classifies and dispatches the event
5. Maps the outcome to a status code

Security contract:
- Never return error details to the webhook caller
- 200 for ignored event types (Stripe must not retry them)
- 400 only for signature/payload failures (Stripe does not retry auth failures)
- 500 for config, lookup and store failures so Stripe redelivers
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from membersync.config import Settings
from membersync.errors import MembershipSyncError, VerificationError
from membersync.webhooks.dispatcher import WebhookContext, dispatch
from membersync.webhooks.verification import SIGNATURE_HEADER, construct_event, decode_body
from membersync.writer import redact_email

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/stripe"


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: dict[str, Any]


def _log_webhook(kind: str, event_id: str, status: str, email: str | None = None) -> None:
    """Audit log for webhook activity."""
    logger.info(
        "WEBHOOK_AUDIT provider=stripe event=%s id=%s status=%s email=%s",
        kind,
        event_id or "-",
        status,
        redact_email(email),
    )


def handle_notification(
    body: bytes | str | None,
    headers: Mapping[str, str],
    settings: Settings,
    ctx: WebhookContext,
    *,
    is_base64_encoded: bool = False,
) -> WebhookResponse:
    """Run one notification through verify → classify → resolve → write."""
    start = time.time()
    lowered = {k.lower(): v for k, v in headers.items()}

    try:
        secret = settings.require_webhook_secret()
        raw = decode_body(body, is_base64_encoded=is_base64_encoded)
        notification = construct_event(
            raw,
            lowered.get(SIGNATURE_HEADER),
            secret,
            tolerance=settings.webhook_tolerance_seconds,
        )
    except VerificationError as e:
        logger.warning("Stripe webhook signature verification failed: %s", e)
        _log_webhook("unknown", "", "signature_failed")
        return WebhookResponse(e.http_status, {"status": "invalid_signature"})
    except MembershipSyncError as e:
        logger.error("Stripe webhook rejected before dispatch: %s", e)
        _log_webhook("unknown", "", type(e).__name__)
        return WebhookResponse(e.http_status, {"status": "error"})

    try:
        result = dispatch(notification, ctx)
    except MembershipSyncError as e:
        logger.error("Webhook handler error for %s/%s: %s", notification.kind, notification.event_id, e)
        _log_webhook(notification.kind, notification.event_id, type(e).__name__)
        return WebhookResponse(e.http_status, {"status": "error"})
    except Exception:
        logger.exception("Webhook handler crashed for %s/%s", notification.kind, notification.event_id)
        _log_webhook(notification.kind, notification.event_id, "handler_failed")
        return WebhookResponse(500, {"status": "error"})

    _log_webhook(notification.kind, notification.event_id, result.outcome, result.email)
    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms: %s", elapsed_ms, notification.kind)
    return WebhookResponse(200, {"status": "ok", "outcome": result.outcome})


def register_webhook_routes(app: FastAPI, settings: Settings, ctx: WebhookContext) -> None:
    """Register the Stripe webhook route. Non-POST methods get FastAPI's 405."""

    @app.post(WEBHOOK_PATH)
    async def stripe_webhook(request: Request):
        """Receive Stripe webhooks (signature-verified)."""
        # Raw body: the signature covers these exact bytes
        body = await request.body()
        response = await asyncio.to_thread(
            handle_notification, body, dict(request.headers), settings, ctx
        )
        return JSONResponse(response.body, status_code=response.status_code)

    logger.info("Webhook route registered: %s", WEBHOOK_PATH)
