"""
FedEx OAuth token cache

One cache per credential set (the Track API uses its own keys). Tokens are
refreshed 5 minutes before expiry. Concurrent callers share a single in-flight
refresh instead of each requesting a token.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from fulfillment.core.exceptions import AuthError, CarrierTimeoutError

logger = logging.getLogger(__name__)

OAUTH_TOKEN_PATH = "/oauth/token"
TOKEN_REFRESH_MARGIN_SECONDS = 300


@dataclass
class CarrierToken:
    access_token: str
    expires_at: float  # clock() value, refresh margin already subtracted

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


def _error_description(response: httpx.Response) -> str:
    try:
        data: Dict[str, Any] = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    if data.get("error_description"):
        return data["error_description"]
    errors = data.get("errors") or []
    if errors and isinstance(errors, list):
        return errors[0].get("message") or errors[0].get("code") or f"HTTP {response.status_code}"
    return f"HTTP {response.status_code}"


class CarrierAuthCache:
    """
    Process-wide token state for one FedEx project.

    Lifecycle: created empty, filled on first get_token(), refreshed on expiry
    or on demand, cleared by invalidate() or a failed refresh, closed by close().
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._clock = clock
        self._http_client = http_client
        self._owns_client = http_client is None
        self._token: Optional[CarrierToken] = None
        self._refresh_in_progress: Optional[asyncio.Future] = None
        self.refresh_count = 0

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    def invalidate(self) -> None:
        self._token = None

    @property
    def cached_token(self) -> Optional[str]:
        return self._token.access_token if self._token else None

    async def get_token(self, force_refresh: bool = False, rejected_token: Optional[str] = None) -> str:
        """
        Return a valid access token.

        `rejected_token` is the token a caller just saw fail with 401; if the
        cache already holds a different token, another caller refreshed it and
        that token is returned without a new request.
        """
        token = self._token
        if token is not None:
            if rejected_token is not None and token.access_token != rejected_token:
                return token.access_token
            if not force_refresh and token.is_valid(self._clock()):
                return token.access_token

        if self._refresh_in_progress is not None:
            return await asyncio.shield(self._refresh_in_progress)

        future = asyncio.get_running_loop().create_future()
        self._refresh_in_progress = future
        try:
            access_token = await self._fetch_token()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            future.exception()  # mark retrieved when nobody else is waiting
            raise
        else:
            future.set_result(access_token)
            return access_token
        finally:
            self._refresh_in_progress = None

    async def _fetch_token(self) -> str:
        client = await self._get_http_client()
        url = f"{self.base_url}{OAUTH_TOKEN_PATH}"
        self.refresh_count += 1

        try:
            response = await client.post(
                url,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            self._token = None
            logger.error(f"FedEx OAuth request timed out after {self.timeout}s")
            raise CarrierTimeoutError(f"FedEx token request timed out: {e}")
        except httpx.RequestError as e:
            self._token = None
            logger.error(f"FedEx OAuth request failed: {e}")
            raise AuthError(f"Failed to get FedEx access token: {e}")

        if response.status_code != 200:
            self._token = None
            description = _error_description(response)
            logger.error(f"FedEx OAuth failed: {response.status_code} - {description}")
            raise AuthError(
                f"Failed to get FedEx access token: {description}",
                status=response.status_code,
                body=description,
            )

        data = response.json()
        if not data.get("access_token"):
            self._token = None
            raise AuthError("Failed to get FedEx access token: no access_token in response", body=data)

        issued_at = self._clock()
        expires_in = int(data.get("expires_in", 3600))
        self._token = CarrierToken(
            access_token=data["access_token"],
            expires_at=issued_at + expires_in - TOKEN_REFRESH_MARGIN_SECONDS,
        )
        logger.info(f"FedEx OAuth token obtained, expires in {expires_in}s")
        return self._token.access_token
