"""Application wiring: builds the collaborators and the FastAPI app."""

from __future__ import annotations

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ipn_inventory.catalog import CatalogStorage, PostgresCatalogStorage
from ipn_inventory.config import ListenerSettings
from ipn_inventory.emitter import AdjustmentEmitter
from ipn_inventory.handlers import register_ipn_routes
from ipn_inventory.idempotency import IdempotencyStore, create_idempotency_store
from ipn_inventory.pipeline import NotificationPipeline
from ipn_inventory.verification import IpnVerifier

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=_LOG_FORMAT, stream=sys.stdout, force=True)


def build_pipeline(
    settings: ListenerSettings,
    store: IdempotencyStore | None = None,
    storage: CatalogStorage | None = None,
    verifier: IpnVerifier | None = None,
) -> NotificationPipeline:
    """Assemble the pipeline; any collaborator can be supplied pre-built."""
    if store is None:
        store = create_idempotency_store(settings.redis_url, settings.dedup_retention_seconds)
    if storage is None:
        storage = PostgresCatalogStorage(settings.database_url)
    if verifier is None:
        verifier = IpnVerifier(settings.verify_url)
    return NotificationPipeline(
        verifier=verifier,
        store=store,
        emitter=AdjustmentEmitter(storage),
        business_id=settings.business_id,
        currency=settings.currency,
        accepted_txn_types=settings.accepted_txn_types,
        strict_dedup=settings.strict_dedup,
    )


def create_app(
    settings: ListenerSettings | None = None,
    pipeline: NotificationPipeline | None = None,
) -> FastAPI:
    """Create the listener app.

    With TESTING=1 the startup table check is skipped so no database is needed.
    """
    settings = settings or ListenerSettings.from_env()
    pipeline = pipeline or build_pipeline(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if os.environ.get("TESTING") != "1" and isinstance(
            pipeline.storage, PostgresCatalogStorage
        ):
            pipeline.storage.init_tables()
        logger.info(
            "IPN listener ready (verify_url=%s, strict_dedup=%s, receiver_check=%s)",
            settings.verify_url,
            settings.strict_dedup,
            bool(settings.business_id),
        )
        yield
        pipeline.verifier.close()

    app = FastAPI(title="PayPal IPN inventory listener", lifespan=lifespan)
    register_ipn_routes(app, pipeline, settings)
    return app


def main() -> None:
    import uvicorn

    settings = ListenerSettings.from_env()
    configure_logging(settings.log_level)
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run(create_app(settings), host="0.0.0.0", port=port, log_config=None)


if __name__ == "__main__":
    main()
