"""
Transport - sends one RequestDescriptor over the network.

HttpxTransport is the production implementation; httpx exceptions are
converted to ApiError kinds here and never escape.
"""

from typing import Protocol

import httpx
from loguru import logger

from antidote.services.errors import (
    BadResponseError,
    ConnectionFailureError,
    RequestTimeoutError,
    UnknownApiError,
    error_message_from_body,
)
from antidote.services.request import RequestDescriptor, Response

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


class Transport(Protocol):
    async def send(self, request: RequestDescriptor) -> Response: ...

    async def close(self) -> None: ...


def _decode_body(response: httpx.Response):
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpxTransport:
    """
    Transport over ``httpx.AsyncClient``.

    Returns a Response for 2xx statuses and raises BadResponseError for any
    other status.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                headers=DEFAULT_HEADERS,
                follow_redirects=True,
            )
        return self._client

    async def send(self, request: RequestDescriptor) -> Response:
        client = await self._get_http_client()

        try:
            response = await client.request(
                method=request.method,
                url=request.path,
                params=list(request.params),
                headers=request.header_map,
                json=request.json,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError() from e
        except (httpx.ConnectError, httpx.NetworkError, httpx.ProxyError) as e:
            raise ConnectionFailureError(
                f"Connection failed. Make sure the backend server is running on {self._base_url}"
            ) from e
        except httpx.HTTPError as e:
            raise UnknownApiError(str(e) or type(e).__name__) from e

        body = _decode_body(response)
        if not response.is_success:
            logger.debug(
                f"{request.method} {request.path} -> HTTP {response.status_code}"
            )
            raise BadResponseError(response.status_code, error_message_from_body(body))

        return Response(
            status_code=response.status_code,
            data=body,
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
