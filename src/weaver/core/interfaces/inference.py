"""
Inference Protocol

The inference capability is an opaque collaborator: a hosted or local model
that turns a prompt plus structured context into a structured result.
"""

from typing import Any, Protocol


class InferenceProtocol(Protocol):
    """
    Protocol for structured inference.

    Implementations raise InferenceError with kind RateLimited, Unavailable
    or InvalidResponse.
    """

    async def infer(self, prompt: str, context: dict[str, Any]) -> dict[str, Any]:
        """
        Run one inference request.

        Args:
            prompt: Instruction for the model
            context: Structured context serialized alongside the prompt

        Returns:
            Parsed structured result
        """
        ...
