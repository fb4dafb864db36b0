"""
Inference Transport

Exposes an InferenceProtocol implementation as the tool provider
"inference" with the single operation "infer", so inference calls share
ToolProtocolClient's retry and circuit breaking.
"""

from typing import Any

from weaver.core.domain.errors import InferenceError, error_to_wire
from weaver.core.domain.models import ToolProvider
from weaver.core.domain.tool_client import INFER_OPERATION, INFERENCE_PROVIDER
from weaver.core.interfaces.inference import InferenceProtocol


class InferenceTransport:
    """ProviderTransportProtocol adapter around an inference capability."""

    def __init__(self, inference: InferenceProtocol):
        self.inference = inference

    @staticmethod
    def provider(endpoint: str = "") -> ToolProvider:
        """ToolProvider entry to register alongside this transport."""
        return ToolProvider(
            name=INFERENCE_PROVIDER,
            supported_operations=frozenset({INFER_OPERATION}),
            endpoint=endpoint,
        )

    async def send(
        self,
        operation: str,
        parameters: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        if operation != INFER_OPERATION:
            return {
                "status": "error",
                "kind": "InvalidOperation",
                "message": f"Inference only supports '{INFER_OPERATION}'",
            }

        try:
            result = await self.inference.infer(
                str(parameters.get("prompt", "")),
                dict(parameters.get("context") or {}),
            )
        except InferenceError as error:
            return error_to_wire(error)
        return {"status": "ok", "result": result}

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
