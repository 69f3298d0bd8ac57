"""
MQTT publisher for queue updates
- Publishes to UPSTREAM broker (display boards and apps subscribe per service)
- Best effort: a broker outage never fails a queue operation
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import paho.mqtt.client as mqtt

from config.config import settings
from models import QueueEntryInfo, QueueUpdate, WaitTimeEstimateResponse

logger = logging.getLogger(__name__)


class QueueUpdatePublisher:
    """
    Publishes queue updates to the UPSTREAM Mosquitto broker
    Uses paho-mqtt with its background network thread
    """

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None):
        self.host = host or settings.UPSTREAM_BROKER_HOST
        self.port = port or settings.UPSTREAM_BROKER_PORT
        self.running = False

        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"queue-service-pub-{id(self)}"
        )
        self.client.on_connect = self._on_connect
        self.client.enable_logger(logger)

        # Stats
        self.stats = {
            'messages_published': 0,
            'errors': 0
        }

    def start(self) -> bool:
        """Connect and start the network loop; returns False if the broker is unreachable"""
        try:
            logger.info(f"Connecting to UPSTREAM: {self.host}:{self.port}")
            self.client.connect(self.host, self.port, 60)
            self.client.loop_start()
            self.running = True
        except OSError as e:
            logger.error(f"Failed to connect UPSTREAM broker, updates will not be published: {e}")
            self.running = False
        return self.running

    def stop(self):
        """Stop client"""
        self.running = False
        self.client.loop_stop()
        self.client.disconnect()
        logger.info("MQTT publisher stopped")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code == 0:
            logger.info("UPSTREAM Connected")
        else:
            logger.error(f"UPSTREAM Connection failed: {reason_code}")

    def publish_update(
        self,
        entry: QueueEntryInfo,
        waiting: int,
        estimate: WaitTimeEstimateResponse
    ):
        """Publish the queue state of an entry's service (thread-safe)"""
        update = QueueUpdate(
            service_id=entry.service_id,
            entry_id=entry.id,
            status=entry.status,
            waiting=waiting,
            wait_minutes=estimate.estimated_wait_minutes,
            confidence=estimate.confidence,
            timestamp=datetime.now(timezone.utc)
        )

        try:
            topic = f"{settings.UPSTREAM_TOPIC_PREFIX}/{entry.service_id}"
            self.client.publish(topic, json.dumps(update.to_broker_message()))
            self.stats['messages_published'] += 1
            logger.debug(f"Published to UPSTREAM: {topic}")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to publish: {e}")
            self.stats['errors'] += 1

    def get_stats(self) -> dict:
        return self.stats
