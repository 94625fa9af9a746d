"""Kafka alert dispatcher for submissions that need human attention.

Publishes REVIEW and REJECTED outcomes to the alert topic, keyed by user id so
all alerts for one user land on the same partition.

Events published:
- presence.attendance.review_required
- presence.attendance.rejected

Publishing is best-effort. A producer that was never started, or a failed
send, is logged and never surfaces to the admission pipeline.
"""

import json
from datetime import UTC, datetime
from typing import Any

from aiokafka import AIOKafkaProducer

from presence_admission.observability import get_logger

logger = get_logger(__name__)

DEFAULT_ALERT_TOPIC = "presence.alerts"
_DEFAULT_BOOTSTRAP_SERVERS = "localhost:9092"
_SOURCE_SERVICE = "presence-admission"

EVENT_REVIEW_REQUIRED = "presence.attendance.review_required"
EVENT_REJECTED = "presence.attendance.rejected"


def _serialize(value: dict[str, Any]) -> bytes:
    return json.dumps(value, default=str).encode("utf-8")


class KafkaAlertDispatcher:
    """IAlertDispatcher backed by an aiokafka producer.

    Args:
        bootstrap_servers: Comma-separated Kafka bootstrap servers.
        topic: Topic alerts are published to.
        producer: Pre-built producer (tests inject a mock); created on start() otherwise.
    """

    def __init__(
        self,
        bootstrap_servers: str = _DEFAULT_BOOTSTRAP_SERVERS,
        topic: str = DEFAULT_ALERT_TOPIC,
        producer: AIOKafkaProducer | None = None,
    ) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._producer = producer
        self._started = producer is not None

    async def start(self) -> None:
        """Create and start the Kafka producer. Called from the lifespan handler."""
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self._bootstrap_servers,
                value_serializer=_serialize,
                key_serializer=lambda key: key.encode("utf-8"),
            )
        await self._producer.start()
        self._started = True
        logger.info("KafkaAlertDispatcher started", bootstrap_servers=self._bootstrap_servers, topic=self._topic)

    async def stop(self) -> None:
        """Flush and close the producer."""
        if self._producer is not None and self._started:
            await self._producer.stop()
            self._started = False
            logger.info("KafkaAlertDispatcher stopped")

    @staticmethod
    def _build_envelope(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "event_type": event_type,
            "source_service": _SOURCE_SERVICE,
            "occurred_at": datetime.now(UTC).isoformat(),
            "payload": payload,
        }

    async def on_review(self, data: dict[str, Any]) -> None:
        await self._publish(self._build_envelope(EVENT_REVIEW_REQUIRED, data), key=str(data.get("user_id", "")))

    async def on_rejection(self, data: dict[str, Any]) -> None:
        await self._publish(self._build_envelope(EVENT_REJECTED, data), key=str(data.get("user_id", "")))

    async def _publish(self, event: dict[str, Any], key: str) -> None:
        if self._producer is None or not self._started:
            logger.warning(
                "KafkaAlertDispatcher not started, skipping publish",
                topic=self._topic,
                event_type=event["event_type"],
            )
            return

        try:
            await self._producer.send_and_wait(self._topic, value=event, key=key)
            logger.debug("Alert published", topic=self._topic, event_type=event["event_type"], key=key)
        except Exception as exc:
            logger.error(
                "Failed to publish alert",
                topic=self._topic,
                event_type=event["event_type"],
                error=str(exc),
            )


class LoggingAlertDispatcher:
    """IAlertDispatcher that only logs, for deployments without Kafka."""

    async def on_review(self, data: dict[str, Any]) -> None:
        logger.warning("Attendance requires review", alert=data)

    async def on_rejection(self, data: dict[str, Any]) -> None:
        logger.warning("Attendance rejected", alert=data)
