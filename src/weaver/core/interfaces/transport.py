"""
Provider Transport Protocol

Defines the transport-level contract between ToolProtocolClient and a tool
provider. Transports move one request to a provider and return its reply
verbatim; retry, timeouts and circuit breaking belong to the client.

Wire format:
    request:  {"operation": str, "parameters": {str: value}}
    response: {"status": "ok", "result": value}
              {"status": "error", "kind": str, "message": str}
"""

from typing import Any, Protocol


class ProviderTransportProtocol(Protocol):
    """
    Protocol for delivering operations to one tool provider.

    Implementations raise:
        TimeoutError: the provider did not answer in time
        ConnectionError: the provider could not be reached
    Any provider-reported failure is returned as a wire error reply instead.
    """

    async def send(
        self,
        operation: str,
        parameters: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Deliver one operation and return the wire reply.

        Args:
            operation: Operation name advertised by the provider
            parameters: Operation parameters
            idempotency_key: Optional key that lets the provider deduplicate retries

        Returns:
            Wire reply dictionary
        """
        ...

    async def ping(self) -> bool:
        """Cheap liveness check used for circuit-breaker probes."""
        ...

    async def close(self) -> None:
        """Release any connections held by the transport."""
        ...
