"""
Unit tests for publisher.py
Tests MQTT publishing of queue updates
"""
import json
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from models import EntryStatus, QueueEntryInfo, WaitTimeEstimateResponse
from publisher import QueueUpdatePublisher


@pytest.fixture
def entry():
    return QueueEntryInfo(
        id="entry-1",
        queue_id="queue-1",
        sequence_number=4,
        customer_id="cust-1",
        service_id="consultation",
        status=EntryStatus.WAITING,
        priority=0,
        estimated_wait_minutes=105,
        joined_at=datetime(2025, 10, 8, 9, 0, 0, tzinfo=timezone.utc)
    )


@pytest.fixture
def estimate():
    return WaitTimeEstimateResponse(
        service_id="consultation",
        estimated_wait_minutes=140,
        queue_position=5,
        total_ahead=4,
        average_service_time=35,
        confidence=0.5
    )


class TestQueueUpdatePublisher:
    """Tests for QueueUpdatePublisher"""

    def test_publisher_initialization(self):
        with patch('publisher.mqtt.Client') as mock_mqtt:
            publisher = QueueUpdatePublisher(host="broker", port=1884)

            assert publisher.host == "broker"
            assert publisher.port == 1884
            assert publisher.running is False
            assert publisher.get_stats() == {'messages_published': 0, 'errors': 0}
            mock_mqtt.assert_called_once()

    def test_start_connects_and_loops(self):
        with patch('publisher.mqtt.Client') as mock_mqtt:
            publisher = QueueUpdatePublisher(host="broker", port=1884)

            assert publisher.start() is True

            client = mock_mqtt.return_value
            client.connect.assert_called_once_with("broker", 1884, 60)
            client.loop_start.assert_called_once()

    def test_start_broker_unreachable(self):
        with patch('publisher.mqtt.Client') as mock_mqtt:
            mock_mqtt.return_value.connect.side_effect = ConnectionRefusedError("refused")
            publisher = QueueUpdatePublisher(host="broker", port=1884)

            assert publisher.start() is False
            assert publisher.running is False

    def test_stop(self):
        with patch('publisher.mqtt.Client') as mock_mqtt:
            publisher = QueueUpdatePublisher(host="broker", port=1884)
            publisher.start()

            publisher.stop()

            assert publisher.running is False
            mock_mqtt.return_value.loop_stop.assert_called_once()
            mock_mqtt.return_value.disconnect.assert_called_once()

    def test_publish_update(self, entry, estimate):
        with patch('publisher.mqtt.Client') as mock_mqtt, \
             patch('publisher.settings') as mock_settings:
            mock_settings.UPSTREAM_TOPIC_PREFIX = "queues/updates"
            publisher = QueueUpdatePublisher(host="broker", port=1884)

            publisher.publish_update(entry, 4, estimate)

            topic, payload = mock_mqtt.return_value.publish.call_args.args
            message = json.loads(payload)

            assert topic == "queues/updates/consultation"
            assert message['type'] == "queue_update"
            assert message['entry'] == "entry-1"
            assert message['waiting'] == 4
            assert message['minutes'] == 140
            assert publisher.get_stats()['messages_published'] == 1

    def test_publish_failure_counted(self, entry, estimate):
        with patch('publisher.mqtt.Client') as mock_mqtt:
            mock_mqtt.return_value.publish.side_effect = ValueError("Invalid topic")
            publisher = QueueUpdatePublisher(host="broker", port=1884)

            publisher.publish_update(entry, 4, estimate)

            assert publisher.get_stats() == {'messages_published': 0, 'errors': 1}

    def test_on_connect_logging(self):
        with patch('publisher.mqtt.Client'):
            publisher = QueueUpdatePublisher(host="broker", port=1884)

            # Must not raise for success or failure codes
            publisher._on_connect(MagicMock(), None, MagicMock(), 0, None)
            publisher._on_connect(MagicMock(), None, MagicMock(), 5, None)
