"""
Upstream HTTP access with the bounded retry used by every outbound call.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from config import settings
from errors import AuthRejectedError, MalformedDataError, UpstreamError

logger = logging.getLogger(__name__)


class UpstreamClient:
    """Thin wrapper around httpx.AsyncClient with retry and error mapping."""

    def __init__(self,
                 client: Optional[httpx.AsyncClient] = None,
                 attempts: Optional[int] = None,
                 retry_delay: Optional[float] = None,
                 user_agent: Optional[str] = None):
        self.attempts = max(1, attempts if attempts is not None else settings.UPSTREAM_RETRY_ATTEMPTS)
        self.retry_delay = retry_delay if retry_delay is not None else settings.UPSTREAM_RETRY_DELAY
        self.user_agent = user_agent or settings.USER_AGENT
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.UPSTREAM_TIMEOUT),
            follow_redirects=True,
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
        )

    async def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> httpx.Response:
        """
        Issue a request, retrying transport errors and 5xx responses.

        Args:
            method: HTTP method
            url: Absolute upstream URL
            headers: Extra request headers (User-Agent is added when absent)

        Returns:
            The successful httpx.Response

        Raises:
            AuthRejectedError: on 401/403
            UpstreamError: on other failures once the attempts are used up
        """
        request_headers = {"User-Agent": self.user_agent}
        if headers:
            request_headers.update(headers)

        last_error: Optional[UpstreamError] = None
        for attempt in range(1, self.attempts + 1):
            try:
                response = await self.client.request(method, url, headers=request_headers, **kwargs)
            except httpx.TransportError as e:
                last_error = UpstreamError(f"{method} {url} failed: {e}", url=url)
            else:
                if response.status_code in (401, 403):
                    raise AuthRejectedError(
                        f"{method} {url} rejected with {response.status_code}",
                        status_code=response.status_code, url=url, body=response.text)
                if response.status_code >= 500:
                    last_error = UpstreamError(
                        f"{method} {url} returned {response.status_code}",
                        status_code=response.status_code, url=url)
                elif response.status_code >= 400:
                    raise UpstreamError(
                        f"{method} {url} returned {response.status_code}",
                        status_code=response.status_code, url=url, body=response.text)
                else:
                    return response

            if attempt < self.attempts:
                logger.info(f"🔄 Try {attempt + 1} for {url}")
                await asyncio.sleep(self.retry_delay)

        logger.warning(f"Giving up on {url}: {last_error}")
        raise last_error

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def get_text(self, url: str, **kwargs) -> str:
        response = await self.get(url, **kwargs)
        return response.text

    async def get_bytes(self, url: str, **kwargs) -> bytes:
        response = await self.get(url, **kwargs)
        return response.content

    async def get_json(self, url: str, **kwargs) -> Any:
        response = await self.get(url, **kwargs)
        return self.parse_json(response)

    @staticmethod
    def parse_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedDataError(f"Invalid JSON from {response.request.url}: {e}")

    async def aclose(self):
        await self.client.aclose()
