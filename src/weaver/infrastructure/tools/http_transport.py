"""
HTTP Provider Transport

Reaches a tool provider over HTTP with httpx:

    POST {base_url}/invoke   {"operation": ..., "parameters": {...}}
    GET  {base_url}/health   liveness probe

The provider answers with a wire reply (`{"status": "ok", ...}` or
`{"status": "error", ...}`). Transport failures are translated into the
exceptions ToolProtocolClient understands: TimeoutError and ConnectionError.
Server-side 5xx answers count as the provider being unreachable.
"""

from typing import Any

import httpx
import structlog

logger = structlog.get_logger()

IDEMPOTENCY_HEADER = "Idempotency-Key"


class HttpProviderTransport:
    """ProviderTransportProtocol implementation over HTTP."""

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers or {},
            timeout=timeout,
        )
        self.logger = logger.bind(component="http_transport", endpoint=self.base_url)

    async def send(
        self,
        operation: str,
        parameters: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = {IDEMPOTENCY_HEADER: idempotency_key} if idempotency_key else {}
        try:
            response = await self._client.post(
                "/invoke",
                json={"operation": operation, "parameters": parameters},
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"{self.base_url} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ConnectionError(f"{self.base_url} unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise ConnectionError(f"{self.base_url} answered HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and body.get("status") in ("ok", "error"):
            return body

        self.logger.warning(
            "provider_reply_unexpected",
            operation=operation,
            status_code=response.status_code,
        )
        return {
            "status": "error",
            "kind": "Rejected",
            "message": f"HTTP {response.status_code}: {response.text[:200]}",
        }

    async def ping(self) -> bool:
        try:
            response = await self._client.get("/health")
        except httpx.TimeoutException as exc:
            raise TimeoutError(str(exc)) from exc
        except httpx.TransportError as exc:
            raise ConnectionError(str(exc)) from exc
        return response.status_code == 200

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
