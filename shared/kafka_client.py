"""
kafka_client.py - Kafka Producer Client Wrapper

PURPOSE:
    Provides the Kafka producer used to publish stock events, with JSON
    serialization, delivery reports and retry settings.

PRODUCER FEATURES:
    - JSON serialization of Pydantic events (or plain dicts)
    - Delivery callbacks for tracking
    - Automatic retries on failure (3 attempts)
    - Message compression (snappy)
    - All replicas acknowledgment (acks=all)
    - Topic defaults to the event's event_type

USAGE:
    producer = BaseKafkaProducer("localhost:9092", client_id="stock-producer")
    producer.publish("inventory.stock_updated", event)
    producer.close()

ERROR HANDLING:
    - Delivery failures are logged from the delivery callback
    - Errors raised while producing are logged and re-raised to the caller
"""

import json
import logging
from typing import Optional, Union

from confluent_kafka import Producer
from confluent_kafka.error import KafkaError

from shared.events import BaseEvent

logger = logging.getLogger(__name__)


class BaseKafkaProducer:
    """
    Base Kafka producer with JSON serialization and delivery callbacks.

    Messages are keyed by product id when the event carries one so that all
    events for a product land on the same partition, in order.
    """

    def __init__(self, bootstrap_servers: str, client_id: str = "producer", flush_timeout: float = 5.0):
        """
        Initialize Kafka producer.

        Args:
            bootstrap_servers: Comma-separated Kafka broker addresses
            client_id: Unique identifier for this producer instance
            flush_timeout: Seconds to wait for outstanding deliveries on flush
        """
        self.config = {
            "bootstrap.servers": bootstrap_servers,
            "client.id": client_id,
            "acks": "all",  # Wait for all replicas to acknowledge
            "retries": 3,
            "compression.type": "snappy",
        }
        self.flush_timeout = flush_timeout
        self.producer = Producer(self.config)

    def _delivery_report(self, err: Optional[KafkaError], msg) -> None:
        """Delivery report handler called by producer on message delivery."""
        if err is not None:
            logger.error(f"Message delivery failed: {err}")
        else:
            logger.debug(
                f"Message delivered to topic={msg.topic()}, "
                f"partition={msg.partition()}, offset={msg.offset()}"
            )

    def publish(self, topic: Optional[str], event: Union[BaseEvent, dict]) -> None:
        """Publish event to a Kafka topic (defaults to the event type)."""
        if isinstance(event, dict):
            message = json.dumps(event, default=str)
            event_type = event.get("event_type", "unknown")
            correlation_id = event.get("correlation_id", "unknown")
            key = event.get("product_id")
        else:
            message = event.model_dump_json()
            event_type = event.event_type
            correlation_id = event.correlation_id
            key = getattr(event, "product_id", None)

        topic = topic or event_type
        try:
            self.producer.produce(
                topic=topic,
                key=key.encode("utf-8") if key else None,
                value=message.encode("utf-8"),
                callback=self._delivery_report,
            )
            # Serve delivery callbacks without blocking the caller
            self.producer.poll(0)
            logger.info(
                f"Published event to {topic}",
                extra={"event_type": event_type, "correlation_id": correlation_id},
            )
        except Exception as e:
            logger.error(f"Error publishing event to {topic}: {e}")
            raise

    def flush(self) -> int:
        """Flush pending messages; returns the number still undelivered."""
        return self.producer.flush(self.flush_timeout)

    def close(self) -> None:
        """Flush before shutdown."""
        remaining = self.flush()
        if remaining:
            logger.warning(f"{remaining} Kafka messages were not delivered before shutdown")
