"""IPN HTTP handler — FastAPI route for PayPal notifications.

The handler:
1. Reads the raw body (verification must post it back byte-for-byte)
2. Works out whether the caller is a trusted local origin
3. Runs the notification pipeline off the event loop
4. Returns 200 with an empty body, always

Security contract:
- Never return processing details to the caller
- X-Forwarded-For is only honoured when the deployment sits behind a trusted proxy
- Every notification leaves an audit log line
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request, Response
from starlette.concurrency import run_in_threadpool

from ipn_inventory.config import ListenerSettings
from ipn_inventory.pipeline import NotificationPipeline, PipelineOutcome
from ipn_inventory.verification import is_trusted_local

logger = logging.getLogger(__name__)


def _get_client_ip(request: Request, trust_proxy: bool) -> str | None:
    """Extract client IP, respecting the trusted-proxy setting."""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _log_ipn(outcome: PipelineOutcome, client_ip: str | None, elapsed_ms: float) -> None:
    """Audit log for IPN activity."""
    logger.info(
        "IPN_AUDIT txn=%s halted_at=%s reason=%s created=%d skipped=%d ip=%s elapsed_ms=%.1f",
        outcome.transaction_id or "-",
        outcome.halted_at.value,
        outcome.reason,
        outcome.adjustments_created,
        len(outcome.skipped),
        client_ip or "-",
        elapsed_ms,
    )


async def handle_ipn(
    request: Request, pipeline: NotificationPipeline, settings: ListenerSettings
) -> Response:
    start = time.time()
    body = await request.body()

    client_ip = _get_client_ip(request, settings.trust_proxy)
    host = request.headers.get("host") or request.url.hostname
    trusted = is_trusted_local(client_ip, host, settings.local_test_hosts)

    outcome = await run_in_threadpool(pipeline.process, body, trusted)

    _log_ipn(outcome, client_ip, (time.time() - start) * 1000)
    return Response(content=b"", status_code=200)


def register_ipn_routes(
    app: FastAPI, pipeline: NotificationPipeline, settings: ListenerSettings
) -> None:
    """Register the IPN listener route on the FastAPI app."""

    @app.post(settings.route_path, include_in_schema=False)
    async def paypal_ipn(request: Request) -> Response:
        """Receive PayPal IPN notifications (postback-verified)."""
        return await handle_ipn(request, pipeline, settings)

    logger.info("IPN route registered: %s", settings.route_path)
