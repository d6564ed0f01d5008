"""Kafka consumer for payment confirmation events."""

import json
import time
from collections.abc import Callable

from confluent_kafka import Consumer, KafkaError
from logging_utils.config import get_kafka_logger
from pydantic import ValidationError

from .schemas import PaidOrderEvent

logger = get_kafka_logger("order-service")

DEFAULT_CONSUMER_CONFIG = {
    "auto.offset.reset": "earliest",
    "enable.auto.commit": True,
    "session.timeout.ms": 30000,
    "max.poll.interval.ms": 300000,
}


class PaymentEventConsumer:
    """Consumes payment confirmations and hands each one to a handler.

    Malformed messages and handler failures are logged and counted; the loop keeps going.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        group_id: str,
        auto_offset_reset: str = "earliest",
        enable_auto_commit: bool = True,
    ):
        """Initialize the payment event consumer.

        Args:
            bootstrap_servers: Kafka bootstrap servers
            group_id: Consumer group ID
            auto_offset_reset: Where to start consuming from if no offset is stored
            enable_auto_commit: Whether to auto-commit offsets
        """
        self.stats = {"messages_processed": 0, "errors": 0, "start_time": time.time()}
        self._running = False

        logger.info(f"Initializing consumer | bootstrap_servers={bootstrap_servers} | group_id={group_id}")
        config = DEFAULT_CONSUMER_CONFIG.copy()
        config.update(
            {
                "bootstrap.servers": bootstrap_servers,
                "group.id": group_id,
                "auto.offset.reset": auto_offset_reset,
                "enable.auto.commit": enable_auto_commit,
            }
        )
        self.consumer = Consumer(config)

    def subscribe(self, topics: list[str]) -> None:
        logger.info(f"Subscribing to topics: {topics}")
        self.consumer.subscribe(topics)

    def process_messages(self, handler: Callable[[PaidOrderEvent], None]) -> None:
        """Poll until ``stop()`` is called, passing every confirmation to ``handler``.

        Args:
            handler: Callback applying a confirmation to its order
        """
        logger.info("Starting payment event loop")
        self._running = True
        try:
            while self._running:
                msg = self.consumer.poll(timeout=1.0)
                if msg is None:
                    continue

                if msg.error():
                    if msg.error().code() == KafkaError._PARTITION_EOF:
                        logger.debug("Reached end of partition")
                        continue
                    logger.error(f"Kafka error: {msg.error()}")
                    self.stats["errors"] += 1
                    continue

                self.handle_message(msg.value(), handler)
        except KeyboardInterrupt:
            logger.info("Shutting down consumer...")
        finally:
            self._log_status()

    def handle_message(self, raw: bytes, handler: Callable[[PaidOrderEvent], None]) -> bool:
        """Parse one raw message and apply it.

        Returns:
            bool: True if the handler accepted the event.
        """
        try:
            payload = json.loads(raw.decode("utf-8"))
            # Events may arrive bare or wrapped as {"data": {...}}.
            if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
                payload = payload["data"]
            event = PaidOrderEvent.model_validate(payload)
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Failed to decode payment event: {e}")
            self.stats["errors"] += 1
            return False

        try:
            handler(event)
        except Exception as e:
            logger.opt(exception=e).error(f"Error applying payment event | order_id={event.order_id} | error={e}")
            self.stats["errors"] += 1
            return False

        self.stats["messages_processed"] += 1
        return True

    def _log_status(self) -> None:
        runtime = time.time() - self.stats["start_time"]
        logger.info(
            f"Consumer status | messages_processed={self.stats['messages_processed']} | "
            f"errors={self.stats['errors']} | runtime_seconds={runtime:.2f}"
        )

    def stop(self) -> None:
        self._running = False

    def close(self) -> None:
        """Stop the loop and close the consumer connection."""
        self.stop()
        self.consumer.close()
        logger.info("Consumer closed")
