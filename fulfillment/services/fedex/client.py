"""
FedEx REST API client

Authenticated JSON request executor shared by all FedEx operations.

- 401: force one token refresh and retry once; a second 401 is fatal
- 429: exponential backoff (1s, 2s, 4s) then RateLimitError
- any other 4xx/5xx: CarrierError immediately, never retried
- every call has its own timeout; exceeding it raises CarrierTimeoutError
"""
import logging
from typing import Any, Dict, Optional

import httpx

from fulfillment.core.config import settings
from fulfillment.core.exceptions import (
    AuthError,
    CarrierError,
    CarrierTimeoutError,
    RateLimitError,
)
from fulfillment.core.retry import RetryPolicy, execute_with_policy
from fulfillment.services.fedex.auth import CarrierAuthCache

logger = logging.getLogger(__name__)


def _response_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text[:500]}


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        errors = body.get("errors") or []
        if errors and isinstance(errors, list) and isinstance(errors[0], dict):
            return errors[0].get("message") or errors[0].get("code") or default
    return default


class CarrierClient:
    """
    FedEx API client.

    Usage:
        client = CarrierClient(auth, settings.FEDEX_BASE_URL, account_number="...")
        data = await client.request("/rate/v1/rates/quotes", body=payload)
    """

    def __init__(
        self,
        auth: CarrierAuthCache,
        base_url: str,
        account_number: str = "",
        timeout: float = 60.0,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        locale: str = "en_US",
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.account_number = account_number
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.locale = locale
        self._http_client = http_client

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client and the token cache."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        await self.auth.close()

    async def _send(self, method: str, path: str, body: Optional[Dict[str, Any]], token: str) -> httpx.Response:
        client = await self._get_http_client()
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "X-locale": self.locale,
        }

        try:
            response = await client.request(
                method.upper(),
                url,
                headers=headers,
                json=body,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.error(f"FedEx API {method} {path} timed out after {self.timeout}s")
            raise CarrierTimeoutError(f"FedEx request to {path} timed out: {e}")
        except httpx.RequestError as e:
            logger.error(f"FedEx API {method} {path} network error: {e}")
            raise CarrierError(f"Network error calling FedEx {path}: {e}")

        logger.debug(f"FedEx API {method} {path} -> {response.status_code}")
        return response

    async def _send_with_backoff(
        self, method: str, path: str, body: Optional[Dict[str, Any]], token: str
    ) -> httpx.Response:
        return await execute_with_policy(
            lambda: self._send(method, path, body, token),
            self.retry_policy,
            should_retry=lambda r: r.status_code == 429,
            label=f"FedEx {method} {path}",
        )

    async def request(
        self,
        path: str,
        method: str = "POST",
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Execute an authenticated request and return the parsed JSON body."""
        token = await self.auth.get_token()
        response = await self._send_with_backoff(method, path, body, token)

        if response.status_code == 401:
            logger.warning(f"FedEx API {path} returned 401, refreshing token")
            token = await self.auth.get_token(force_refresh=True, rejected_token=token)
            response = await self._send_with_backoff(method, path, body, token)
            if response.status_code == 401:
                body_401 = _response_body(response)
                self.auth.invalidate()
                raise AuthError(
                    _error_message(body_401, "FedEx rejected refreshed access token"),
                    status=401,
                    body=body_401,
                )

        if response.status_code == 429:
            raise RateLimitError(
                f"FedEx rate limit exceeded for {path} after {self.retry_policy.max_retries} retries",
                status=429,
                body=_response_body(response),
            )

        data = _response_body(response)
        if response.status_code >= 400:
            message = _error_message(data, f"FedEx API error {response.status_code}")
            logger.error(f"FedEx API error: {response.status_code} {path} - {message}")
            raise CarrierError(message, status=response.status_code, body=data)

        return data

    async def test_connection(self) -> Dict[str, Any]:
        """Check configuration and that a token can be obtained."""
        missing = [
            name for name, value in (
                ("client_id", self.auth.client_id),
                ("client_secret", self.auth.client_secret),
                ("account_number", self.account_number),
            ) if not value
        ]
        if missing:
            return {"success": False, "message": f"Missing FedEx configuration: {', '.join(missing)}"}

        try:
            await self.auth.get_token()
        except CarrierError as e:
            return {"success": False, "message": e.message}
        return {"success": True, "message": "FedEx API connection successful", "base_url": self.base_url}


# ==================== Process-wide clients ====================

_clients: Dict[str, CarrierClient] = {}


def get_carrier_client() -> CarrierClient:
    """Client for address, rate, ship, pickup and location APIs."""
    if "default" not in _clients:
        auth = CarrierAuthCache(
            settings.FEDEX_CLIENT_ID,
            settings.FEDEX_CLIENT_SECRET,
            settings.FEDEX_BASE_URL,
            timeout=settings.FEDEX_TOKEN_TIMEOUT_SECONDS,
        )
        _clients["default"] = CarrierClient(
            auth,
            settings.FEDEX_BASE_URL,
            account_number=settings.FEDEX_ACCOUNT_NUMBER,
            timeout=settings.FEDEX_REQUEST_TIMEOUT_SECONDS,
        )
    return _clients["default"]


def get_track_client() -> CarrierClient:
    """Client for the Track API, which may use its own credentials."""
    if "track" not in _clients:
        client_id, client_secret = settings.fedex_track_credentials
        auth = CarrierAuthCache(
            client_id,
            client_secret,
            settings.FEDEX_BASE_URL,
            timeout=settings.FEDEX_TOKEN_TIMEOUT_SECONDS,
        )
        _clients["track"] = CarrierClient(
            auth,
            settings.FEDEX_BASE_URL,
            account_number=settings.FEDEX_ACCOUNT_NUMBER,
            timeout=settings.FEDEX_REQUEST_TIMEOUT_SECONDS,
        )
    return _clients["track"]


async def close_carrier_clients() -> None:
    for client in list(_clients.values()):
        await client.close()
    _clients.clear()
