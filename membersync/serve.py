"""FastAPI application — webhook route plus a health check.

Client lifecycle: the Stripe client and the membership store are created
once here, wrapped in a WebhookContext and handed to the route. Nothing
downstream reads them from module globals.

Run locally:
    uvicorn membersync.serve:app --port 8000
    python -m membersync.serve --init-db --port 8000   # create the table first
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from membersync import __version__
from membersync.config import Settings, configure_logging
from membersync.resolver import StripeResolver, build_stripe_client
from membersync.store import MembershipStore, PostgresMembershipStore
from membersync.webhooks.dispatcher import WebhookContext
from membersync.webhooks.handlers import register_webhook_routes
from membersync.writer import MembershipWriter

logger = logging.getLogger(__name__)


def build_context(
    settings: Settings,
    *,
    resolver: StripeResolver | None = None,
    store: MembershipStore | None = None,
) -> WebhookContext:
    """Wire resolver, store and writer. Missing config leaves a slot empty."""
    if resolver is None:
        if settings.stripe_secret_key:
            resolver = StripeResolver(
                build_stripe_client(settings.stripe_secret_key, settings.stripe_api_version)
            )
        else:
            logger.warning("No STRIPE_SECRET_KEY — handled events will answer 500")

    if store is None:
        if settings.database_url:
            store = PostgresMembershipStore(settings.database_url)
        else:
            logger.warning("No DATABASE_URL — membership writes will answer 500")

    return WebhookContext(
        resolver=resolver,
        writer=MembershipWriter(store),
        price_tiers=dict(settings.price_tiers),
    )


def create_app(
    settings: Settings | None = None,
    *,
    resolver: StripeResolver | None = None,
    store: MembershipStore | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    ctx = build_context(settings, resolver=resolver, store=store)

    app = FastAPI(title="membersync", version=__version__)
    app.state.settings = settings
    app.state.webhook_context = ctx

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    register_webhook_routes(app, settings, ctx)
    return app


app = create_app()


if __name__ == "__main__":
    import sys

    import uvicorn

    port = 8000
    for i, arg in enumerate(sys.argv):
        if arg == "--port" and i + 1 < len(sys.argv):
            port = int(sys.argv[i + 1])
    if "--init-db" in sys.argv:
        PostgresMembershipStore(Settings.from_env().database_url).init_tables()
    uvicorn.run("membersync.serve:app", host="0.0.0.0", port=port)
