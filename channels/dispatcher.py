"""
Dispatcher — sends one queued job to the messaging gateway.

The session worker only knows the abstract Dispatcher. HttpDispatcher is the
production implementation (WAHA-style HTTP gateway over httpx).

Delivery is attempted at most once. There is no retry here; a failure is
reported to the worker, which records it on the queued item.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx

from config.settings import GatewayConfig, get_settings

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class DispatchError(Exception):
    """A single dispatch failed. Recorded on the item, never retried."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(message)


def extract_error_message(exc: BaseException) -> str:
    """Human-readable reason: the gateway's `message` field, else the error text."""
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        message = body.get("message")
        if message:
            return str(message)
    text = str(exc)
    if text:
        return text
    return "Unknown error occurred"


# ══════════════════════════════════════════════════════════════
#  INTERFACE
# ══════════════════════════════════════════════════════════════

class Dispatcher(abc.ABC):
    """Abstract gateway client used by session workers."""

    @abc.abstractmethod
    async def dispatch(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any,
        timeout: float,
    ) -> Any:
        """Send the request and return the gateway response; raise on failure."""
        ...

    async def close(self) -> None:
        """Release transport resources."""


# ══════════════════════════════════════════════════════════════
#  HTTP IMPLEMENTATION
# ══════════════════════════════════════════════════════════════

class HttpDispatcher(Dispatcher):
    """
    Gateway client over a shared httpx.AsyncClient.

    Relative job URLs resolve against the configured gateway base_url;
    absolute URLs are sent as they are.

    Non-2xx responses and transport errors are raised as DispatchError; the
    parsed error body is kept so the worker can surface its `message`.
    """

    def __init__(
        self,
        config: GatewayConfig = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_settings().gateway
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers[self.config.api_key_header] = self.config.api_key
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                transport=self.transport,
            )
        return self.client

    async def dispatch(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any,
        timeout: float,
    ) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(
                method.upper(),
                url,
                headers=headers or None,
                json=body,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise DispatchError(f"Gateway timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise DispatchError(str(e) or type(e).__name__) from e

        payload = _response_payload(response)
        if response.is_error:
            logger.warning("gateway_error_response",
                           url=url,
                           status=response.status_code)
            raise DispatchError(
                f"Gateway responded {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                body=payload,
            )
        return payload

    async def close(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()


def _response_payload(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
