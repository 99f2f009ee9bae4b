"""
chatrelay - HTTP Stream Transport

Opens SSE streams over httpx. HTTP errors before the first byte are
classified here; errors during the stream are classified by the chunk
source.
"""

from typing import Any, Callable, Dict, Optional

import httpx

from ..core.config import GatewaySettings, get_settings
from ..core.errors import classify_exception, classify_upstream_error
from ..core.models import Credentials
from ..observability.logging import get_logger
from ..observability.metrics import MetricsCollector
from .base import ChunkSource, DeltaDecoder, StreamTransport
from .sse import SSEChunkSource

logger = get_logger(__name__)


class HttpStreamTransport(StreamTransport):
    """
    StreamTransport speaking SSE over HTTP.

    Usage:
        transport = HttpStreamTransport(OpenAIDecoder, provider="openai")
        source = await transport.open_stream(url, credentials, body)
        async with source:
            async for delta in source:
                ...
    """

    def __init__(
        self,
        decoder_factory: Callable[[], DeltaDecoder],
        provider: str,
        settings: Optional[GatewaySettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.decoder_factory = decoder_factory
        self.provider = provider
        self.settings = settings or get_settings()
        self.extra_headers = dict(extra_headers or {})
        self.metrics = metrics
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                self.settings.read_timeout,
                connect=self.settings.connect_timeout,
            )
        )

    def _build_headers(self, credentials: Credentials) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        headers.update(self.extra_headers)
        headers.update(credentials.auth_headers())
        return headers

    async def open_stream(
        self,
        endpoint: str,
        credentials: Credentials,
        body: Dict[str, Any],
        account_id: Optional[str] = None,
    ) -> ChunkSource:
        url = credentials.endpoint or endpoint
        request = self.client.build_request(
            "POST",
            url,
            json=body,
            headers=self._build_headers(credentials),
        )

        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise classify_exception(e, self.provider, account_id=account_id)

        # Check for HTTP errors before streaming starts
        if response.status_code >= 400:
            try:
                error_body = await response.aread()
            except httpx.HTTPError:
                error_body = b""
            finally:
                await response.aclose()
            logger.info(
                "Upstream rejected stream",
                status_code=response.status_code,
                url=url,
            )
            raise classify_upstream_error(
                self.provider,
                response.status_code,
                error_body,
                response.headers,
                account_id=account_id,
            )

        return SSEChunkSource(
            response,
            self.decoder_factory(),
            self.provider,
            account_id=account_id,
            metrics=self.metrics,
        )

    async def close(self):
        """Close the HTTP client if this transport created it."""
        if self._owns_client:
            await self.client.aclose()
