"""Transporte MQTT hacia la flota de dispositivos.

- topics.py: topics del protocolo y clasificación de mensajes entrantes
- liveness.py: tabla de actividad reciente por dispositivo
- mqtt_transport.py: conexión, demultiplexado y publicación
"""

from .liveness import LivenessTable
from .mqtt_transport import BrokerTransport, ConnectionState
from .topics import TopicKind, classify, command_topic

__all__ = [
    "BrokerTransport",
    "ConnectionState",
    "LivenessTable",
    "TopicKind",
    "classify",
    "command_topic",
]
