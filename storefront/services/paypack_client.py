"""
Paypack mobile-money client.

Outbound calls go through ``requests`` with an explicit timeout and no retry.
The bearer token is owned by an ``AccessTokenCache`` that the client receives
by reference, so several clients (or threads) share one refresh.
"""
from __future__ import annotations

import logging
import threading
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from storefront.config import Config
from storefront.errors import PaymentProcessingError
from storefront.observability import increment_counter, timed

logger = logging.getLogger(__name__)

TokenGrant = Tuple[str, float]


class AccessTokenCache:
    """
    Holds one access token and the monotonic time it stops being usable.

    ``get`` refreshes through ``refresh_fn`` when the token is missing or
    within ``skew_seconds`` of expiry. ``refresh_fn`` returns
    ``(token, lifetime_seconds)``.
    """

    def __init__(self, skew_seconds: float = 60, clock: Callable[[], float] = time.monotonic) -> None:
        self.skew_seconds = skew_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    def get(self, refresh_fn: Callable[[], TokenGrant]) -> str:
        with self._lock:
            if self._token is None or self._clock() >= self._expires_at - self.skew_seconds:
                token, lifetime = refresh_fn()
                self._token = token
                self._expires_at = self._clock() + float(lifetime)
                increment_counter("payment_token_refreshes_total")
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    @property
    def expires_at(self) -> float:
        return self._expires_at


class PaypackClient:
    """Thin wrapper over the Paypack agent API (authorize + cash-in)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        environment: Optional[str] = None,
        timeout: Optional[float] = None,
        token_cache: Optional[AccessTokenCache] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = (base_url or Config.PAYPACK_BASE_URL).rstrip("/")
        self.client_id = client_id if client_id is not None else Config.PAYPACK_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else Config.PAYPACK_CLIENT_SECRET
        self.environment = environment or Config.PAYPACK_ENVIRONMENT
        self.timeout = timeout or Config.PAYMENT_HTTP_TIMEOUT
        self.token_cache = token_cache or AccessTokenCache(Config.PAYMENT_TOKEN_REFRESH_SKEW_SECONDS)
        self.session = session or requests.Session()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    def authorize(self) -> TokenGrant:
        """Exchange the agent credentials for an access token."""
        data = self._post(
            "/auth/agents/authorize",
            {"client_id": self.client_id, "client_secret": self.client_secret},
            operation="authorize",
        )
        token = data.get("access")
        if not token:
            raise PaymentProcessingError("Payment provider did not return an access token")
        lifetime = self._token_lifetime(data.get("expires"))
        logger.info("Payment provider token refreshed", extra={"expires_in": lifetime})
        return token, lifetime

    def access_token(self) -> str:
        return self.token_cache.get(self.authorize)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    def cashin(self, number: str, amount: Decimal) -> Dict[str, Any]:
        """Ask the provider to pull `amount` from the mobile-money account `number`."""
        headers = {
            "Authorization": f"Bearer {self.access_token()}",
            "X-Webhook-Mode": self.environment,
        }
        data = self._post(
            "/transactions/cashin",
            {"amount": float(amount), "number": number},
            headers=headers,
            operation="cashin",
        )
        if not data.get("ref"):
            raise PaymentProcessingError(
                "Payment provider response did not include a transaction reference",
                details={"response": data},
            )
        return data

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _post(
        self,
        path: str,
        body: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        operation: str = "request",
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        request_headers = {"Content-Type": "application/json", "Accept": "application/json"}
        request_headers.update(headers or {})

        try:
            with timed("payment_provider_latency_ms", labels={"operation": operation}):
                response = self.session.post(url, json=body, headers=request_headers, timeout=self.timeout)
        except requests.RequestException as exc:
            increment_counter("payment_provider_errors_total", labels={"operation": operation})
            logger.error("Payment provider request failed", extra={"operation": operation, "error": str(exc)})
            raise PaymentProcessingError(
                "Payment provider is unreachable",
                details={"operation": operation},
            ) from exc

        if response.status_code == 401:
            # Next call re-authorizes
            self.token_cache.invalidate()

        if not 200 <= response.status_code < 300:
            increment_counter("payment_provider_errors_total", labels={"operation": operation})
            logger.error(
                "Payment provider returned an error",
                extra={"operation": operation, "status_code": response.status_code},
            )
            raise PaymentProcessingError(
                "Payment provider rejected the request",
                details={"operation": operation, "status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentProcessingError(
                "Payment provider returned an unreadable response",
                details={"operation": operation},
            ) from exc
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _token_lifetime(expires: Any) -> float:
        # Paypack reports `expires` as a unix timestamp; treat small values as a lifetime
        try:
            value = float(expires)
        except (TypeError, ValueError):
            return 15 * 60
        if value > 10 ** 9:
            return max(value - time.time(), 0.0)
        return max(value, 0.0)


__all__ = ["AccessTokenCache", "PaypackClient"]
