"""
LiteLLM Inference Adapter

Implements InferenceProtocol on top of litellm. The prompt is sent as the
system message, the structured context as YAML in the user message, and the
model is asked for a JSON object.

This adapter does not retry. Retry and circuit breaking happen in
ToolProtocolClient, which reaches the adapter through InferenceTransport.
"""

import json
import time
from typing import Any

import litellm
import structlog
import yaml

from weaver.core.domain.errors import InferenceError, InferenceErrorKind

logger = structlog.get_logger()

# litellm exceptions mapped to inference error kinds, checked in order.
_ERROR_KINDS: list[tuple[type[Exception], InferenceErrorKind]] = [
    (litellm.RateLimitError, InferenceErrorKind.RATE_LIMITED),
    (litellm.Timeout, InferenceErrorKind.UNAVAILABLE),
    (litellm.ServiceUnavailableError, InferenceErrorKind.UNAVAILABLE),
    (litellm.APIConnectionError, InferenceErrorKind.UNAVAILABLE),
    (litellm.InternalServerError, InferenceErrorKind.UNAVAILABLE),
    (litellm.BadRequestError, InferenceErrorKind.INVALID_RESPONSE),
    (litellm.AuthenticationError, InferenceErrorKind.INVALID_RESPONSE),
]


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_json_object(content: str | None) -> dict[str, Any]:
    """
    Parse a model reply into a JSON object.

    Raises:
        InferenceError: InvalidResponse if the reply is not a JSON object
    """
    if not content:
        raise InferenceError(InferenceErrorKind.INVALID_RESPONSE, "Empty model reply")
    try:
        parsed = json.loads(_strip_code_fence(content))
    except json.JSONDecodeError as exc:
        raise InferenceError(
            InferenceErrorKind.INVALID_RESPONSE, f"Model reply is not JSON: {exc}"
        ) from exc
    if not isinstance(parsed, dict):
        raise InferenceError(
            InferenceErrorKind.INVALID_RESPONSE, "Model reply is not a JSON object"
        )
    return parsed


class LiteLLMInference:
    """InferenceProtocol implementation using litellm.acompletion."""

    def __init__(
        self,
        model: str = "gpt-4.1-mini",
        params: dict[str, Any] | None = None,
        timeout: float = 60.0,
    ):
        self.model = model
        self.params = dict(params or {})
        self.timeout = timeout
        self.logger = logger.bind(component="litellm_inference", model=model)

    async def infer(self, prompt: str, context: dict[str, Any]) -> dict[str, Any]:
        messages = [
            {"role": "system", "content": prompt},
            {
                "role": "user",
                "content": "Context:\n"
                + yaml.safe_dump(context, default_flow_style=False, sort_keys=False)
                + "\nRespond with a single JSON object.",
            },
        ]

        start_time = time.time()
        try:
            response = await litellm.acompletion(
                model=self.model,
                messages=messages,
                timeout=self.timeout,
                response_format={"type": "json_object"},
                **self.params,
            )
        except Exception as exc:
            kind = self._classify(exc)
            self.logger.warning(
                "inference_failed",
                error_type=type(exc).__name__,
                kind=kind.value,
                error=str(exc)[:200],
            )
            raise InferenceError(kind, str(exc)) from exc

        content = response.choices[0].message.content
        usage = getattr(response, "usage", None)
        self.logger.info(
            "inference_completed",
            tokens=getattr(usage, "total_tokens", 0) if usage else 0,
            latency_ms=int((time.time() - start_time) * 1000),
        )
        return parse_json_object(content)

    @staticmethod
    def _classify(exc: Exception) -> InferenceErrorKind:
        for error_type, kind in _ERROR_KINDS:
            if isinstance(exc, error_type):
                return kind
        return InferenceErrorKind.UNAVAILABLE
