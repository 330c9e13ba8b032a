"""
Shared HTTP helper for provider clients.

Every request carries a hard timeout. Idempotent GET requests are retried with
exponential backoff on transient failures (timeouts, connection errors, 5xx);
4xx responses are never retried, and 401/403 raise AuthExpiredError so the
caller can run its refresh path instead.
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp
import msgspec

from ..constants import MAX_RETRIES, REQUEST_TIMEOUT, RETRY_BASE_DELAY
from ..exceptions import AuthExpiredError, ClientRequestError, TransientNetworkError
from ..logger import setup_logger

logger = setup_logger()

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) PlayHub"
IDEMPOTENT_METHODS = {"GET", "HEAD"}


class HttpResponse(msgspec.Struct):
    status: int
    url: str
    body: bytes
    headers: Dict[str, str] = {}

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self, type=None):
        if type is not None:
            return msgspec.json.decode(self.body, type=type)
        return msgspec.json.decode(self.body)


class HttpClient:
    def __init__(
        self,
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        base_delay: float = RETRY_BASE_DELAY,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"User-Agent": USER_AGENT})
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _send(self, method: str, url: str, timeout: float, **kwargs) -> HttpResponse:
        """One attempt. Raises a ProviderError subclass on any failure."""
        session = await self._get_session()
        try:
            async with session.request(
                method, url, timeout=aiohttp.ClientTimeout(total=timeout), **kwargs
            ) as response:
                body = await response.read()
                status = response.status
                final_url = str(response.url)
                headers = {k: v for k, v in response.headers.items()}
        except asyncio.TimeoutError:
            raise TransientNetworkError(f"Timed out after {timeout}s: {method} {url}")
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}")

        if status in (401, 403):
            raise AuthExpiredError(f"{method} {url} returned {status}", status=status)
        if 400 <= status < 500:
            raise ClientRequestError(f"{method} {url} returned {status}", status=status)
        if status >= 500:
            raise TransientNetworkError(f"{method} {url} returned {status}", status=status)

        return HttpResponse(status=status, url=final_url, body=body, headers=headers)

    async def request(
        self,
        method: str,
        url: str,
        *,
        retry: Optional[bool] = None,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> HttpResponse:
        """
        Perform a request.

        Args:
            retry: Retry transient failures. Defaults to True for GET/HEAD only.
            timeout: Override the client-wide timeout in seconds.
            **kwargs: Passed through to aiohttp (params, headers, data, cookies...)
        """
        method = method.upper()
        if retry is None:
            retry = method in IDEMPOTENT_METHODS
        timeout = timeout or self.timeout
        attempts = 1 + (self.max_retries if retry else 0)

        attempt = 0
        while True:
            try:
                return await self._send(method, url, timeout, **kwargs)
            except TransientNetworkError as e:
                attempt += 1
                if attempt >= attempts:
                    raise
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.debug(f"{e} - retrying in {delay:.1f}s ({attempt}/{self.max_retries})")
                await asyncio.sleep(delay)

    async def get(self, url: str, **kwargs) -> HttpResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> HttpResponse:
        return await self.request("POST", url, **kwargs)

    async def get_json(self, url: str, type=None, **kwargs):
        response = await self.get(url, **kwargs)
        return response.json(type)

    async def get_text(self, url: str, **kwargs) -> str:
        response = await self.get(url, **kwargs)
        return response.text()
