"""Request/reply RPC over Kafka for calls to the products and payments services."""

import asyncio
import json
import threading
import uuid
from typing import Any, Optional

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer
from logging_utils.config import get_kafka_logger

from .errors import RpcError, RpcTimeoutError

logger = get_kafka_logger("order-service")


class KafkaRpcClient:
    """Send a request to a pattern topic and await the reply on a dedicated topic.

    Requests are published as ``{pattern, correlationId, replyTo, data}`` keyed by the
    correlation id. A background thread consumes ``reply_topic`` and resolves the
    waiting future, on its own event loop, from ``{correlationId, data}`` or
    ``{correlationId, error: {status, message}}``.

    Attributes:
        producer: The underlying Kafka producer instance.
        consumer: The Kafka consumer reading replies.
        reply_topic: Topic replies are expected on.
        timeout: Seconds to wait for any single reply.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        client_id: str = "order-service",
        reply_topic: str = "orders.rpc.replies",
        timeout: float = 5.0,
    ):
        """Initialize the producer and the reply consumer.

        Args:
            bootstrap_servers (str): Comma-separated list of Kafka broker addresses.
            client_id (str): Client id reported to the brokers.
            reply_topic (str): Topic this instance reads replies from.
            timeout (float): Seconds before a call fails with RpcTimeoutError.
        """
        self.reply_topic = reply_topic
        self.timeout = timeout
        self.producer = Producer(
            {
                "bootstrap.servers": bootstrap_servers,
                "client.id": client_id,
                "message.timeout.ms": int(timeout * 1000),
                "acks": "all",
            }
        )
        # Each instance gets its own group so every replica sees the replies addressed to it.
        self.consumer = Consumer(
            {
                "bootstrap.servers": bootstrap_servers,
                "group.id": f"{client_id}-rpc-{uuid.uuid4().hex[:8]}",
                "auto.offset.reset": "latest",
                "enable.auto.commit": True,
            }
        )
        self._pending: dict[str, asyncio.Future] = {}
        self._lock = threading.Lock()
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Subscribe to the reply topic and start the reply thread."""
        if self._running:
            return
        self.consumer.subscribe([self.reply_topic])
        self._running = True
        self._thread = threading.Thread(target=self._poll_replies, name="rpc-replies", daemon=True)
        self._thread.start()
        logger.info(f"RPC reply consumer started | reply_topic={self.reply_topic}")

    async def send(self, pattern: str, data: Any) -> Any:
        """Send ``data`` to ``pattern`` and wait for the reply payload.

        Args:
            pattern: Request pattern, also the topic the request is published to.
            data: JSON-serializable request payload.

        Returns:
            The ``data`` field of the reply.

        Raises:
            RpcError: If the request cannot be published or the remote replies with an error.
            RpcTimeoutError: If no reply arrives within ``timeout``.
        """
        correlation_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        with self._lock:
            self._pending[correlation_id] = future

        envelope = {
            "pattern": pattern,
            "correlationId": correlation_id,
            "replyTo": self.reply_topic,
            "data": data,
        }
        try:
            try:
                self.producer.produce(
                    topic=pattern,
                    key=correlation_id.encode("utf-8"),
                    value=json.dumps(envelope).encode("utf-8"),
                    on_delivery=self._delivery_callback,
                )
                self.producer.poll(0)
            except BufferError as e:
                logger.warning("Producer buffer full, flushing...")
                await asyncio.to_thread(self.producer.flush, self.timeout)
                raise RpcError(pattern, "Request queue full") from e
            except KafkaException as e:
                raise RpcError(pattern, "Request could not be published") from e

            logger.debug(f"RPC request sent | pattern={pattern} | correlation_id={correlation_id}")
            try:
                return await asyncio.wait_for(future, timeout=self.timeout)
            except asyncio.TimeoutError as e:
                logger.warning(f"RPC request timed out | pattern={pattern} | correlation_id={correlation_id}")
                raise RpcTimeoutError(pattern, self.timeout) from e
        finally:
            with self._lock:
                self._pending.pop(correlation_id, None)

    def handle_reply(self, raw: bytes) -> None:
        """Resolve the pending call a raw reply message belongs to.

        Replies for unknown or already finished calls are dropped.
        """
        try:
            reply = json.loads(raw.decode("utf-8"))
            correlation_id = reply["correlationId"]
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Malformed RPC reply dropped | error={e}")
            return

        with self._lock:
            future = self._pending.get(correlation_id)
        if future is None:
            logger.debug(f"Reply for unknown call dropped | correlation_id={correlation_id}")
            return

        error = reply.get("error")
        if error:
            outcome = RpcError(
                reply.get("pattern", "unknown"),
                str(error.get("message", "Remote call failed")),
                error.get("status"),
            )
        else:
            outcome = reply.get("data")
        future.get_loop().call_soon_threadsafe(self._resolve, future, outcome)

    @staticmethod
    def _resolve(future: asyncio.Future, outcome: Any) -> None:
        if future.done():
            return
        if isinstance(outcome, Exception):
            future.set_exception(outcome)
        else:
            future.set_result(outcome)

    def _poll_replies(self) -> None:
        while self._running:
            msg = self.consumer.poll(timeout=1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                logger.error(f"Reply consumer error: {msg.error()}")
                continue
            self.handle_reply(msg.value())

    def _delivery_callback(self, err, msg) -> None:
        """Callback function for request delivery reports.

        Args:
            err: Error that occurred during message delivery, if any.
            msg: Message that was delivered or failed.
        """
        if err:
            logger.error(f"Request failed delivery: {err} | topic={msg.topic()}")
        else:
            logger.debug(f"Request delivered to {msg.topic()} [p:{msg.partition()}]")

    def close(self) -> None:
        """Stop the reply thread, flush pending requests and close the consumer."""
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        remaining = self.producer.flush(self.timeout)
        if remaining > 0:
            logger.warning(f"{remaining} requests still pending delivery")
        self.consumer.close()
        logger.info("RPC client closed")
