"""
topic_initializer.py - Stock Event Topic Setup

PURPOSE:
    Makes sure the stock event topics exist on service startup when Kafka
    publishing is enabled.

TOPICS:
    - inventory.stock_updated
    - inventory.low
    - inventory.depleted
    - inventory.recalculated
    - dlq.events

BEHAVIOUR:
    - Lists the broker's topics first and only creates the missing ones
    - A topic created concurrently by another instance counts as existing
    - Default partitions: 3, replication factor: 1 (override per environment)

RETRY LOGIC:
    The broker may still be starting when the service starts, so the whole
    check is retried with a fixed delay before the last error is raised.
"""

import logging
import time
from typing import Dict, Iterable, List

from confluent_kafka import KafkaException
from confluent_kafka.admin import AdminClient, NewTopic

from shared.events import ALL_TOPICS

logger = logging.getLogger(__name__)


def _already_exists(error: Exception) -> bool:
    return "TOPIC_ALREADY_EXISTS" in str(error) or "already exists" in str(error)


def _create_missing(
    admin_client: AdminClient,
    topics: Iterable[str],
    num_partitions: int,
    replication_factor: int,
) -> Dict[str, List[str]]:
    existing = set(admin_client.list_topics(timeout=10).topics)
    missing = [topic for topic in topics if topic not in existing]
    result = {"created": [], "existing": [topic for topic in topics if topic in existing]}

    if not missing:
        return result

    futures = admin_client.create_topics(
        [NewTopic(topic, num_partitions=num_partitions, replication_factor=replication_factor) for topic in missing]
    )
    for topic, future in futures.items():
        try:
            future.result(timeout=10)
            result["created"].append(topic)
        except KafkaException as e:
            if not _already_exists(e):
                raise
            result["existing"].append(topic)
    return result


def create_topics(
    bootstrap_servers: str,
    num_partitions: int = 3,
    replication_factor: int = 1,
    max_retries: int = 10,
    retry_delay: float = 3,
    topics: Iterable[str] = ALL_TOPICS,
) -> Dict[str, List[str]]:
    """
    Ensure the stock event topics exist.

    Returns {"created": [...], "existing": [...]}.
    """
    topics = list(topics)
    admin_client = AdminClient({"bootstrap.servers": bootstrap_servers})

    for attempt in range(1, max_retries + 1):
        try:
            result = _create_missing(admin_client, topics, num_partitions, replication_factor)
        except Exception as e:
            if attempt == max_retries:
                logger.error(f"Could not set up Kafka topics after {max_retries} attempts: {e}")
                raise
            logger.warning(f"Kafka topic setup attempt {attempt}/{max_retries} failed: {e}; retrying in {retry_delay}s")
            time.sleep(retry_delay)
            continue

        logger.info(f"Kafka topics ready (created: {result['created'] or 'none'}, existing: {len(result['existing'])})")
        return result
