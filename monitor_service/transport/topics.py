"""Topics MQTT del protocolo de dispositivos."""

from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple

DEVICE_DATA = "devices/+/data"
DEVICE_REGISTER = "devices/+/register"
DEVICE_PRESENCE = "devices/+/presence"
PRESENCE_QUERY = "presence/query"
PRESENCE_RESPONSE = "presence/response"

SUBSCRIPTIONS = (DEVICE_DATA, DEVICE_REGISTER, DEVICE_PRESENCE, PRESENCE_RESPONSE)


class TopicKind(str, Enum):
    DATA = "data"
    REGISTER = "register"
    PRESENCE = "presence"
    PRESENCE_RESPONSE = "presence_response"
    UNKNOWN = "unknown"


def command_topic(device_id: str) -> str:
    return f"devices/{device_id}/commands"


def classify(topic: str) -> Tuple[TopicKind, Optional[str]]:
    """Devuelve (tipo, device_id) para un topic entrante.

    ``device_id`` solo se informa para topics ``devices/{id}/...``.
    """
    if topic == PRESENCE_RESPONSE:
        return TopicKind.PRESENCE_RESPONSE, None

    parts = topic.split("/")
    if len(parts) != 3 or parts[0] != "devices" or not parts[1]:
        return TopicKind.UNKNOWN, None

    device_id = parts[1]
    try:
        kind = TopicKind(parts[2])
    except ValueError:
        return TopicKind.UNKNOWN, device_id
    if kind is TopicKind.PRESENCE_RESPONSE:
        return TopicKind.UNKNOWN, device_id
    return kind, device_id
