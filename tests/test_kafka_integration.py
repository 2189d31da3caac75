from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

from kafka.errors import KafkaError

from kafka_integration import KafkaTopics, TelemetryEventProducer
from simulator import DroneStatus, OverrideEntry, TelemetryRecord

T0 = datetime(2024, 3, 13, 10, 0)

def record(drone_id):
    return TelemetryRecord(drone_id, T0, 90.0, 25.0, 60.0, 0.0, 0, -1.29, 36.82, "Standby")

def entry(status):
    return OverrideEntry(status=status, is_online=True, last_update=T0,
                         override_expiry=T0 + timedelta(minutes=5))

def test_batch_is_keyed_by_drone():
    producer = MagicMock()
    stream = TelemetryEventProducer(['kafka:9092'], producer=producer)

    sent = stream.publish_telemetry_batch([record('A1'), record('B2')])

    assert sent == 2
    topics = [c[0][0] for c in producer.send.call_args_list]
    keys = [c[1]['key'] for c in producer.send.call_args_list]
    assert topics == [KafkaTopics.DRONE_TELEMETRY] * 2
    assert keys == ['A1', 'B2']
    assert producer.send.call_args_list[0][1]['value']['timestamp'] == T0.isoformat()

def test_override_event():
    producer = MagicMock()
    TelemetryEventProducer(['kafka:9092'], producer=producer).publish_override_event('A1', entry("Standby"))

    producer.send.assert_called_once()
    topic = producer.send.call_args[0][0]
    value = producer.send.call_args[1]['value']
    assert topic == KafkaTopics.OVERRIDE_EVENTS
    assert value['override']['status'] == "Standby"

def test_emergency_raises_alert():
    producer = MagicMock()
    TelemetryEventProducer(['kafka:9092'], producer=producer).publish_override_event('B1', entry("Emergency"))

    topics = [c[0][0] for c in producer.send.call_args_list]
    assert topics == [KafkaTopics.OVERRIDE_EVENTS, KafkaTopics.EMERGENCY_ALERTS]

def test_only_emergency_raises_alert():
    producer = MagicMock()
    stream = TelemetryEventProducer(['kafka:9092'], producer=producer)

    stream.publish_override_event('A1', entry(DroneStatus.LANDING))
    stream.publish_override_event('A2', entry(DroneStatus.EMERGENCY))

    topics = [c[0][0] for c in producer.send.call_args_list]
    assert topics == [KafkaTopics.OVERRIDE_EVENTS] * 2 + [KafkaTopics.EMERGENCY_ALERTS]
    assert producer.send.call_args_list[-1][1]['key'] == 'A2'

def test_send_failure_is_logged():
    producer = MagicMock()
    producer.send.side_effect = KafkaError("broker unavailable")

    assert TelemetryEventProducer(['kafka:9092'], producer=producer).publish_telemetry_batch([record('A1')]) == 1

def test_connects_with_json_serializer():
    with patch('kafka_integration.KafkaProducer') as factory:
        TelemetryEventProducer(['kafka:9092'])

    kwargs = factory.call_args[1]
    assert kwargs['bootstrap_servers'] == ['kafka:9092']
    assert kwargs['acks'] == 'all'
    assert kwargs['value_serializer']({'a': T0}) == ('{"a": "%s"}' % T0).encode('utf-8')
    assert kwargs['key_serializer']('A1') == b'A1'
