import logging

import paho.mqtt.client as mqtt

log = logging.getLogger(__name__)


class MqttPublisher:
    """Mirror pose result lines (CSV strings) to an MQTT topic."""

    def __init__(self, broker_ip: str, topic: str, broker_port: int = 1883, keepalive: int = 60):
        self.topic = topic
        # paho-mqtt 2.x requires an explicit callback API version
        if hasattr(mqtt, "CallbackAPIVersion"):
            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        else:
            self.client = mqtt.Client()
        self.client.connect(broker_ip, broker_port, keepalive)
        self.client.loop_start()
        log.info("MQTT publisher connected broker=%s:%d topic=%s", broker_ip, broker_port, topic)

    def publish(self, line: str) -> None:
        self.client.publish(self.topic, line)

    def close(self) -> None:
        self.client.loop_stop()
        self.client.disconnect()
