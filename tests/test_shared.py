"""Tests for the shared logging, Kafka and config helpers."""

import json
import logging
from unittest.mock import MagicMock, patch

import pytest
from confluent_kafka import KafkaException

from services.stock_service.config import Settings
from shared.database import build_database_url
from shared.events import ALL_TOPICS, InventoryLowEvent, StockUpdatedEvent
from shared.kafka_client import BaseKafkaProducer
from shared.logging_config import JsonFormatter, ServiceFilter, setup_logging
from shared.topic_initializer import create_topics


class TestJsonLogging:
    def _record(self, **extra):
        record = logging.LogRecord("services.stock_service.stock_engine", logging.INFO, __file__, 1, "Stock reduced", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_format_includes_context_fields(self):
        record = self._record(request_id="abc", product_id="p1")
        ServiceFilter("stock-service").filter(record)

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Stock reduced"
        assert data["level"] == "INFO"
        assert data["service_name"] == "stock-service"
        assert data["request_id"] == "abc"
        assert data["product_id"] == "p1"
        assert "event_type" not in data

    def test_setup_logging_is_idempotent(self):
        root = logging.getLogger()
        setup_logging("stock-service")
        setup_logging("stock-service")

        handlers = [h for h in root.handlers if getattr(h, "_stock_json_handler", False)]
        assert len(handlers) == 1


class TestKafkaProducer:
    @pytest.fixture
    def producer(self):
        with patch("shared.kafka_client.Producer") as producer_cls:
            client = BaseKafkaProducer("localhost:9092", client_id="stock-producer")
            yield client, producer_cls.return_value

    def test_publish_keys_by_product(self, producer):
        client, raw = producer
        event = StockUpdatedEvent(
            correlation_id="req-1", product_id="p1", quantity=1, action="reduce", previous_stock=3, new_stock=2
        )

        client.publish(None, event)

        kwargs = raw.produce.call_args.kwargs
        assert kwargs["topic"] == "inventory.stock_updated"
        assert kwargs["key"] == b"p1"
        assert json.loads(kwargs["value"])["new_stock"] == 2
        raw.poll.assert_called_once_with(0)

    def test_publish_error_is_raised(self, producer):
        client, raw = producer
        raw.produce.side_effect = BufferError("queue full")

        with pytest.raises(BufferError):
            client.publish("inventory.low", InventoryLowEvent(correlation_id="r", product_id="p1", current_stock=1))

    def test_close_flushes(self, producer):
        client, raw = producer
        raw.flush.return_value = 0

        client.close()

        raw.flush.assert_called_once_with(5.0)


class TestSettings:
    def test_database_url_from_parts(self):
        settings = Settings(
            database_url="",
            postgres_user="shop",
            postgres_password="secret",
            postgres_host="db",
            postgres_port="5432",
            postgres_db="storefront",
        )

        assert settings.sqlalchemy_url == build_database_url("shop", "secret", "db", "5432", "storefront")
        assert settings.sqlalchemy_url == "postgresql://shop:secret@db:5432/storefront"

    def test_explicit_database_url_wins(self):
        assert Settings(database_url="sqlite://").sqlalchemy_url == "sqlite://"


class TestTopicInitializer:
    @pytest.fixture
    def admin(self):
        with patch("shared.topic_initializer.AdminClient") as admin_cls, patch("shared.topic_initializer.time.sleep"):
            yield admin_cls.return_value

    def test_creates_only_missing_topics(self, admin):
        admin.list_topics.return_value.topics = {"inventory.low": object(), "dlq.events": object()}
        created = MagicMock()
        raced = MagicMock()
        raced.result.side_effect = KafkaException("TOPIC_ALREADY_EXISTS")

        def create(new_topics):
            futures = {t.topic: created for t in new_topics}
            futures["inventory.depleted"] = raced
            return futures

        admin.create_topics.side_effect = create

        result = create_topics("localhost:9092", max_retries=1)

        requested = sorted(t.topic for t in admin.create_topics.call_args.args[0])
        assert requested == ["inventory.depleted", "inventory.recalculated", "inventory.stock_updated"]
        assert sorted(result["created"]) == ["inventory.recalculated", "inventory.stock_updated"]
        assert sorted(result["existing"]) == ["dlq.events", "inventory.depleted", "inventory.low"]

    def test_nothing_to_create(self, admin):
        admin.list_topics.return_value.topics = {topic: object() for topic in ALL_TOPICS}

        result = create_topics("localhost:9092", max_retries=1)

        admin.create_topics.assert_not_called()
        assert result["created"] == []

    def test_gives_up_after_retries(self, admin):
        admin.list_topics.side_effect = KafkaException("broker unreachable")

        with pytest.raises(KafkaException):
            create_topics("localhost:9092", max_retries=2, retry_delay=0)

        assert admin.list_topics.call_count == 2
