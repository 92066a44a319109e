"""IPN origin verification — PayPal's postback handshake.

Contract:
- The raw, unmodified body is posted back prefixed with cmd=_notify-validate
- Only an exact "VERIFIED" response authenticates the notification
- Transport failure or a blown deadline -> not verified (logged as error,
  distinct from a rejection)
- No retries; PayPal redelivers on its own schedule
- Loopback callers skip the postback; so do hosts under an explicitly
  configured local test domain (none by default)
"""

from __future__ import annotations

import logging
import time
from typing import Callable

import httpx

from ipn_inventory.config import LIVE_VERIFY_URL

logger = logging.getLogger(__name__)

VERIFY_COMMAND = b"cmd=_notify-validate&"
VERIFIED_TOKEN = "VERIFIED"

_LOOPBACK_ADDRESSES = {"127.0.0.1", "::1"}

# Each transport phase gets at most 15s, connecting at most 5s
DEFAULT_TIMEOUT = httpx.Timeout(15.0, connect=5.0)
# Wall-clock cap on the whole exchange, checked while the body streams in
DEFAULT_DEADLINE_SECONDS = 15.0


def normalize_host(host: str) -> str:
    """Lowercase, drop the port and any trailing dot. Handles [v6]:port."""
    host = host.strip().lower()
    if host.startswith("["):
        host = host[1:].split("]", 1)[0]
    else:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


def is_trusted_local(
    client_ip: str | None, host: str | None, local_hosts: tuple[str, ...] = ()
) -> bool:
    """True for loopback callers or hosts that are, or sit under, a local test domain.

    The Host header is caller-controlled, so only exact domain or subdomain
    matches count.
    """
    if client_ip in _LOOPBACK_ADDRESSES:
        return True
    if not host:
        return False
    name = normalize_host(host)
    for domain in local_hosts:
        domain = normalize_host(domain)
        if domain and (name == domain or name.endswith("." + domain)):
            return True
    return False


class IpnVerifier:
    """Posts notifications back to PayPal for authentication."""

    def __init__(
        self,
        verify_url: str = LIVE_VERIFY_URL,
        client: httpx.Client | None = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        deadline_seconds: float = DEFAULT_DEADLINE_SECONDS,
        clock: Callable[[], float] | None = None,
    ):
        self.verify_url = verify_url
        self._client = client or httpx.Client(timeout=timeout)
        self._timeout = timeout
        self._deadline_seconds = deadline_seconds
        self._clock = clock or time.monotonic

    def verify(self, raw_body: bytes, origin_is_trusted_local: bool = False) -> bool:
        """Return True if PayPal confirms the notification (or origin is local)."""
        if origin_is_trusted_local:
            logger.debug("Skipping IPN validation for trusted local origin")
            return True

        try:
            status_code, verdict = self._post_back(raw_body)
        except httpx.HTTPError as e:
            logger.error("PayPal IPN validation request failed: %s", e)
            return False

        if verdict != VERIFIED_TOKEN:
            logger.warning(
                "PayPal IPN validation returned %r (HTTP %d)", verdict, status_code
            )
            return False
        return True

    def _post_back(self, raw_body: bytes) -> tuple[int, str]:
        deadline = self._clock() + self._deadline_seconds
        chunks = []
        with self._client.stream(
            "POST",
            self.verify_url,
            content=VERIFY_COMMAND + raw_body,
            headers={
                "Connection": "close",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            timeout=self._timeout,
        ) as response:
            for chunk in response.iter_bytes():
                chunks.append(chunk)
                if self._clock() > deadline:
                    raise httpx.ReadTimeout(
                        f"verification exceeded {self._deadline_seconds:.0f}s overall",
                        request=response.request,
                    )
        text = b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")
        return response.status_code, text.strip()

    def close(self) -> None:
        self._client.close()
