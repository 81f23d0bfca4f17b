"""Event recording and application lifecycle notifications.

Two kinds of events leave a reconcile:
1. Human-readable events recorded against the resource (``EventRecorder``)
2. "created" notifications published to the event sink so that resources in
   other clusters that pre-authorize the new application resynchronize

Publishing is fire-and-forget. A failed publish is retried with exponential
backoff and finally logged; it never fails the reconcile that caused it.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from typing import Any

from pydantic import BaseModel, Field

from .interfaces import EventSink
from .models import AzureAdApplication

logger = logging.getLogger(__name__)

EVENT_NAME_CREATED = "created"

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# Publish retry bounds
MAX_PUBLISH_ATTEMPTS = 5
PUBLISH_BACKOFF_BASE_SECONDS = 1.0
MAX_PUBLISH_DURATION_SECONDS = 60.0


class EventApplication(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str
    namespace: str
    cluster: str


class Event(BaseModel):
    """Notification about an application's lifecycle."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    application: EventApplication

    def is_created(self) -> bool:
        return self.name == EVENT_NAME_CREATED


def created_event(instance: AzureAdApplication, cluster: str) -> Event:
    return Event(
        name=EVENT_NAME_CREATED,
        application=EventApplication(
            name=instance.name,
            namespace=instance.namespace,
            cluster=cluster,
        ),
    )


def has_matching_pre_authorized_app(instance: AzureAdApplication, event: Event, cluster: str) -> bool:
    """Whether ``instance`` pre-authorizes the application named in ``event``.

    Omitted cluster and namespace in a rule refer to the resource's own.
    """
    for declared in instance.spec.pre_authorized_applications:
        rule = declared.with_defaults(cluster, instance.namespace)
        if (
            rule.application == event.application.name
            and rule.namespace == event.application.namespace
            and rule.cluster == event.application.cluster
        ):
            return True
    return False


class LoggingEventRecorder:
    """``EventRecorder`` writing events to the operator log."""

    def event(self, instance: AzureAdApplication, event_type: str, reason: str, message: str) -> None:
        extra = {
            "application": instance.name,
            "namespace": instance.namespace,
            "event_type": event_type,
            "reason": reason,
        }
        if event_type == EVENT_TYPE_WARNING:
            logger.warning(message, extra=extra)
        else:
            logger.info(message, extra=extra)


class LoggingEventSink:
    """``EventSink`` that writes events to the operator log.

    Used when no event bus is configured, so that lifecycle events remain
    visible.
    """

    async def publish(self, event: dict[str, Any]) -> None:
        logger.info("application lifecycle event", extra={"event": event})


class EventPublisher:
    """Fire-and-forget publishing of lifecycle events to an ``EventSink``."""

    def __init__(
        self,
        sink: EventSink | None,
        max_attempts: int = MAX_PUBLISH_ATTEMPTS,
        backoff_base_seconds: float = PUBLISH_BACKOFF_BASE_SECONDS,
        max_duration_seconds: float = MAX_PUBLISH_DURATION_SECONDS,
    ) -> None:
        self._sink = sink
        self._max_attempts = max_attempts
        self._backoff = backoff_base_seconds
        self._max_duration = max_duration_seconds
        self._tasks: set[asyncio.Task[None]] = set()

    def publish(self, event: Event, log_fields: dict[str, Any] | None = None) -> None:
        """Schedule ``event`` for publishing and return immediately."""
        if self._sink is None:
            return
        task = asyncio.get_running_loop().create_task(
            self._publish(self._sink, event, dict(log_fields or {}))
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _publish(self, sink: EventSink, event: Event, log_fields: dict[str, Any]) -> None:
        extra = {**log_fields, "event_id": event.id, "event_name": event.name}
        try:
            await asyncio.wait_for(
                self._publish_with_retry(sink, event, extra), timeout=self._max_duration
            )
        except TimeoutError:
            logger.error("publishing event timed out; giving up", extra=extra)
        except Exception as e:
            logger.error(f"publishing event: {e}", extra=extra)
        else:
            logger.info("published event", extra=extra)

    async def _publish_with_retry(self, sink: EventSink, event: Event, extra: dict[str, Any]) -> None:
        payload = event.model_dump(mode="json")

        for attempt in range(1, self._max_attempts + 1):
            try:
                await sink.publish(payload)
                return
            except Exception as e:
                if attempt == self._max_attempts:
                    raise

                # Exponential backoff with jitter
                backoff = self._backoff * (2 ** (attempt - 1))
                wait_time = backoff + random.uniform(0, backoff * 0.2)
                logger.warning(
                    "publishing event failed, retrying",
                    extra={
                        **extra,
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)

    async def drain(self) -> None:
        """Wait for every scheduled publish to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
