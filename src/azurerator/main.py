"""Main entry point for the azurerator operator.

SECRETLESS ARCHITECTURE:
The operator authenticates to Microsoft Graph with a managed identity only.
The credentials it creates belong to the applications it manages and are
written to their secrets; none of them is ever used by the operator itself.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .caches import Caches
from .config import Config, ConfigurationError
from .events import LoggingEventRecorder, LoggingEventSink
from .graph import GraphClient
from .reconciler import Reconciler
from .security import (
    IdentityConfigurationError,
    SecretlessViolationError,
    get_managed_identity_credential,
)
from .store import FileResourceStore

# LogRecord attributes that are not structured fields
_RESERVED_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_reconciler(config: Config) -> Reconciler:
    """Wire the production collaborators into a reconciler.

    Raises:
        SecretlessViolationError: If credentials are found in the environment.
        IdentityConfigurationError: If the configured managed identity is unusable.
    """
    credential = get_managed_identity_credential(config)
    return Reconciler(
        config,
        graph=GraphClient(credential),
        store=FileResourceStore(config.manifests_dir),
        recorder=LoggingEventRecorder(),
        sink=LoggingEventSink(),
        caches=Caches(),
    )


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting azurerator",
        extra={
            "cluster": config.cluster_name,
            "tenant": str(config.tenant),
            "manifests_dir": str(config.manifests_dir),
        },
    )

    try:
        reconciler = build_reconciler(config)
    except SecretlessViolationError as e:
        # SECURITY: Credential detected - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2
    except IdentityConfigurationError as e:
        logger.error("Invalid managed identity configuration", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.error(
            "Failed to initialize reconciler",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await reconciler.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
