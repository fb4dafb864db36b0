"""
Dry-run provider handlers.

Used by the dev profile: every operation succeeds without touching anything
and echoes what would have been done. Research operations report the
resource they were asked about.
"""

from typing import Any

import structlog

from weaver.infrastructure.tools.local_transport import Handler

logger = structlog.get_logger()


def create_dry_run_handlers(operations: list[str]) -> dict[str, Handler]:
    """Build one echoing handler per operation."""

    def make(operation: str) -> Handler:
        def handler(parameters: dict[str, Any]) -> dict[str, Any]:
            logger.info("dry_run_operation", operation=operation, parameters=sorted(parameters))
            return {"dry_run": True, "operation": operation, "parameters": parameters}

        return handler

    return {operation: make(operation) for operation in operations}
