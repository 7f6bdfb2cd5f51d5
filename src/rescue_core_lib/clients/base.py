"""Base client for internal service-to-service calls."""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class BaseServiceClient:
    """Base class for internal HTTP clients.

    Calls carry no token; the acting user travels in X-User-ID and the
    originating request in X-Correlation-ID, the same headers the gateway
    sets for ``auth.get_request_context``.
    """

    api_prefix = "/api/v1"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Service base URL (e.g., http://case-store:8000)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

        logger.info(f"Initialized {self.__class__.__name__} with base_url={base_url}")

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.api_prefix}/{path}"

    def _headers(self, user_id: Optional[str] = None, correlation_id: Optional[str] = None, **extra: str) -> dict:
        headers = {"Content-Type": "application/json"}
        if user_id:
            headers["X-User-ID"] = user_id
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        headers.update(extra)
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
