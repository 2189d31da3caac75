# Kafka Telemetry Stream
# File: kafka_integration.py

"""
Publishes simulator output to Kafka so other services can follow the fleet
without polling the database
"""

import json
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError

from simulator import DroneStatus, OverrideEntry, TelemetryRecord

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ============================================================================
# KAFKA TOPICS
# ============================================================================

class KafkaTopics:
    """Topic names for drone telemetry events"""
    DRONE_TELEMETRY = "drone.telemetry.stream"
    OVERRIDE_EVENTS = "drone.override.events"
    EMERGENCY_ALERTS = "alerts.critical"

# ============================================================================
# KAFKA PRODUCER
# ============================================================================

class TelemetryEventProducer:
    """Kafka producer for telemetry batches and manual override changes"""

    def __init__(self, bootstrap_servers: List[str], client_id: str = "drone-simulator",
                 producer: Optional[KafkaProducer] = None):
        """
        Initialize Kafka producer

        Args:
            bootstrap_servers: List of Kafka broker addresses
            client_id: Client identifier for this producer
            producer: Pre-built producer (tests)
        """
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.producer = producer or self._connect()

    def _connect(self) -> KafkaProducer:
        try:
            producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                value_serializer=lambda v: json.dumps(v, default=str).encode('utf-8'),
                key_serializer=lambda k: k.encode('utf-8') if k else None,
                acks='all',
                retries=3,
                max_in_flight_requests_per_connection=1,  # keeps per-drone ordering
                compression_type='gzip'
            )
            logger.info(f"Kafka producer connected: {self.bootstrap_servers}")
            return producer
        except Exception as e:
            logger.error(f"Failed to connect Kafka producer: {e}")
            raise

    def publish_telemetry_batch(self, records: Iterable[TelemetryRecord]) -> int:
        """
        Publish one message per record, keyed by drone id

        Returns:
            Number of messages handed to the producer
        """
        sent = 0
        for record in records:
            self._send(KafkaTopics.DRONE_TELEMETRY, record.to_dict(), key=record.drone_id)
            sent += 1
        logger.debug(f"Published {sent} telemetry records")
        return sent

    def publish_override_event(self, drone_id: str, entry: OverrideEntry):
        message = {
            'drone_id': drone_id,
            'override': entry.to_dict(),
            'timestamp': datetime.now().isoformat()
        }
        self._send(KafkaTopics.OVERRIDE_EVENTS, message, key=drone_id)

        if entry.status == DroneStatus.EMERGENCY:
            self._send(KafkaTopics.EMERGENCY_ALERTS, {
                'alert_type': 'drone_emergency',
                'drone_id': drone_id,
                'severity': 'critical',
                'timestamp': datetime.now().isoformat()
            }, key=drone_id)
            logger.critical(f"Emergency alert published for {drone_id}")

    def _send(self, topic: str, message: Dict, key: Optional[str] = None):
        try:
            self.producer.send(topic, value=message, key=key)
        except KafkaError as e:
            logger.error(f"Failed to send message to {topic}: {e}")

    def flush(self, timeout: Optional[float] = None):
        self.producer.flush(timeout=timeout)

    def close(self):
        self.producer.close()
        logger.info("Kafka producer closed")
