import asyncio
import logging
import time
from typing import AsyncIterator, Dict

import httpx

from application.gateways import ISellerGateway, SellerResponse
from domain.exceptions import UpstreamTimeoutError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

ALLOWED_RESPONSE_HEADERS = (
    "content-type",
    "content-length",
    "content-disposition",
    "cache-control",
    "etag",
    "last-modified",
    "expires",
)


def filter_response_headers(upstream: httpx.Headers) -> Dict[str, str]:
    """Narrow seller headers to the relay allow-list and add permissive CORS."""
    headers = {}
    for name in ALLOWED_RESPONSE_HEADERS:
        value = upstream.get(name)
        if value is not None:
            headers[name] = value
    # aiter_bytes() yields decoded content, so the upstream length no longer applies
    if upstream.get("content-encoding"):
        headers.pop("content-length", None)
    headers["access-control-allow-origin"] = "*"
    return headers


class HttpSellerGateway(ISellerGateway):
    def __init__(self, client: httpx.AsyncClient, timeout_seconds: float = 30.0):
        self.client = client
        self.timeout_seconds = timeout_seconds

    async def forward(self, endpoint_url: str, payload: dict) -> SellerResponse:
        deadline = time.monotonic() + self.timeout_seconds
        request = self.client.build_request(
            "POST",
            endpoint_url,
            json=payload,
            timeout=httpx.Timeout(self.timeout_seconds)
        )

        try:
            response = await asyncio.wait_for(
                self.client.send(request, stream=True),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            raise UpstreamTimeoutError(
                f"Seller endpoint sent no response within {self.timeout_seconds}s"
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Seller endpoint timed out: {e!r}")
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"Seller endpoint unreachable: {e!r}")

        if response.status_code >= 500:
            await response.aclose()
            raise UpstreamUnavailableError(
                f"Seller endpoint failed with status {response.status_code}"
            )

        return SellerResponse(
            status_code=response.status_code,
            headers=filter_response_headers(response.headers),
            body=self._relay(response, deadline)
        )

    async def _relay(
        self,
        response: httpx.Response,
        deadline: float
    ) -> AsyncIterator[bytes]:
        chunks = response.aiter_bytes()
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                yield chunk
        except asyncio.TimeoutError:
            logger.warning(
                f"Seller stream from {response.request.url} exceeded "
                f"{self.timeout_seconds}s, closing"
            )
        except httpx.HTTPError as e:
            logger.warning(f"Seller stream from {response.request.url} aborted: {e!r}")
        finally:
            await chunks.aclose()
            await response.aclose()
