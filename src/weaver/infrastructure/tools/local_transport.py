"""
Local Provider Transport

Runs provider operations in-process. Each operation maps to a handler
`handler(parameters) -> result` (sync or async). Typed orchestration errors
raised by a handler become wire error replies; TimeoutError and
ConnectionError propagate as transport failures.
"""

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from weaver.core.domain.errors import OrchestrationError, error_to_wire

logger = structlog.get_logger()

Handler = Callable[[dict[str, Any]], Any | Awaitable[Any]]


class LocalProviderTransport:
    """ProviderTransportProtocol implementation backed by Python callables."""

    def __init__(self, handlers: dict[str, Handler], name: str = "local"):
        self.handlers = dict(handlers)
        self.name = name
        self.logger = logger.bind(component="local_transport", provider=name)

    @property
    def operations(self) -> frozenset[str]:
        return frozenset(self.handlers)

    async def send(
        self,
        operation: str,
        parameters: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        handler = self.handlers.get(operation)
        if handler is None:
            return {
                "status": "error",
                "kind": "InvalidOperation",
                "message": f"No handler for '{operation}'",
            }

        try:
            result = handler(dict(parameters))
            if inspect.isawaitable(result):
                result = await result
        except (TimeoutError, ConnectionError):
            raise
        except OrchestrationError as error:
            return error_to_wire(error)
        except Exception as exc:
            self.logger.warning(
                "local_handler_failed",
                operation=operation,
                idempotency_key=idempotency_key,
                error=str(exc),
            )
            return {"status": "error", "kind": "Rejected", "message": str(exc)}

        return {"status": "ok", "result": result}

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
