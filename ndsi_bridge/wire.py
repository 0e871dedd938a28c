"""
Wire format for the NDSI sensor sockets.

Every message starts with the sensor UUID (UTF-8 bytes). The remaining
parts depend on the socket:

    data (PUB):          [uuid, header, payload]
    notification (PUB):  [uuid, json]
    command (PULL):      [uuid, json]

Frame header layout (little-endian, 32 bytes):

    u32 flag | u32 width | u32 height | u32 index | f64 timestamp | i32 extra | u32 length
"""

import enum
import hashlib
import json
import struct
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

HEADER_FORMAT = "<IIIIdiI"
HEADER_STRUCT = struct.Struct(HEADER_FORMAT)
HEADER_SIZE = HEADER_STRUCT.size

# Channels present in an encoded royale depth payload
FLAG_ONLY_DEPTH = 1 << 0
FLAG_POINTCLOUD = 1 << 1
FLAG_NOISE = 1 << 2
FLAG_GRAYSCALE = 1 << 3
FLAG_ALL = FLAG_ONLY_DEPTH | FLAG_POINTCLOUD | FLAG_NOISE | FLAG_GRAYSCALE

ACTION_REFRESH_CONTROLS = "refresh_controls"
ACTION_SET_CONTROL_VALUE = "set_control_value"
ACTIONS = (ACTION_REFRESH_CONTROLS, ACTION_SET_CONTROL_VALUE)


class ProtocolError(ValueError):
    """A command message that cannot be parsed or dispatched."""


def sensor_uuid_from_id(device_id: str) -> str:
    """Name-based (MD5, version 3) UUID of a device identifier."""
    digest = hashlib.md5(device_id.encode("utf-8")).digest()
    return str(uuid.UUID(bytes=digest, version=3))


@dataclass
class FrameHeader:
    """Binary metadata prefixed to every frame payload."""
    flag: int
    width: int
    height: int
    index: int
    timestamp: float
    extra: int = 0
    data_length: int = 0

    def encode(self) -> bytes:
        return HEADER_STRUCT.pack(
            self.flag,
            self.width,
            self.height,
            self.index,
            self.timestamp,
            self.extra,
            self.data_length,
        )

    @classmethod
    def decode(cls, data: bytes) -> "FrameHeader":
        if len(data) != HEADER_SIZE:
            raise ProtocolError(f"Expected {HEADER_SIZE} header bytes, got {len(data)}")
        return cls(*HEADER_STRUCT.unpack(data))


def encode_frame_message(sensor_uuid: str, header: FrameHeader, payload: bytes) -> list[bytes]:
    """Build the three frame parts. The header length always follows the payload."""
    header.data_length = len(payload)
    return [sensor_uuid.encode("utf-8"), header.encode(), bytes(payload)]


def decode_frame_message(parts: list[bytes]) -> tuple[str, FrameHeader, bytes]:
    if len(parts) != 3:
        raise ProtocolError(f"Expected 3 frame parts, got {len(parts)}")
    sensor_uuid, header_bytes, payload = parts
    header = FrameHeader.decode(header_bytes)
    if header.data_length != len(payload):
        raise ProtocolError(
            f"Header declares {header.data_length} bytes, payload has {len(payload)}"
        )
    return sensor_uuid.decode("utf-8"), header, payload


@dataclass
class ControlEnumOption:
    idx: int
    label: str

    def to_dict(self) -> dict:
        return {"idx": self.idx, "label": self.label}


@dataclass
class ControlChanges:
    """Descriptive state of a control as sent in an update notification."""
    value: Any = None
    min: Optional[int] = None
    max: Optional[int] = None
    resolution: Optional[int] = None
    default: Any = None
    dtype: Optional[str] = None
    caption: Optional[str] = None
    readonly: Optional[bool] = None
    map: Optional[list[ControlEnumOption]] = None

    def to_dict(self) -> dict:
        d = {"value": self.value}
        for key in ("min", "max", "resolution", "default", "dtype", "caption", "readonly"):
            attr = getattr(self, key)
            if attr is not None:
                d[key] = attr
        if self.map is not None:
            d["map"] = [option.to_dict() for option in self.map]
        return d


def encode_notification(sensor_uuid: str, control_id: str, seq: int, changes: ControlChanges) -> list[bytes]:
    body = {
        "subject": "update",
        "control_id": control_id,
        "seq": seq,
        "changes": changes.to_dict(),
    }
    return [sensor_uuid.encode("utf-8"), json.dumps(body).encode("utf-8")]


class ValueKind(enum.Enum):
    INT = "int"
    BOOL = "bool"
    STRING = "string"
    NULL = "null"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CommandValue:
    """A JSON command value narrowed to the kinds a control can hold."""
    kind: ValueKind
    value: Any = None

    @classmethod
    def from_json(cls, raw: Any) -> "CommandValue":
        # bool is a subclass of int, so it has to be checked first
        if raw is None:
            return cls(ValueKind.NULL)
        if isinstance(raw, bool):
            return cls(ValueKind.BOOL, raw)
        if isinstance(raw, int):
            return cls(ValueKind.INT, raw)
        if isinstance(raw, str):
            return cls(ValueKind.STRING, raw)
        return cls(ValueKind.UNKNOWN, raw)


@dataclass
class SensorCommand:
    action: str
    control_id: Optional[str] = None
    value: CommandValue = field(default_factory=lambda: CommandValue(ValueKind.NULL))


def encode_command(sensor_uuid: str, action: str, control_id: Optional[str] = None, value: Any = None) -> list[bytes]:
    body: dict[str, Any] = {"action": action}
    if control_id is not None:
        body["control_id"] = control_id
    if value is not None:
        body["value"] = value
    return [sensor_uuid.encode("utf-8"), json.dumps(body).encode("utf-8")]


def parse_command(parts: list[bytes]) -> SensorCommand:
    """
    Parse a multipart command message.

    Raises:
        ProtocolError: wrong part count, bad JSON, unknown action, a
            set_control_value without control_id, or a value that is not
            an int, bool or string.
    """
    if len(parts) != 2:
        raise ProtocolError(f"Expected 2 command parts, got {len(parts)}")

    try:
        body = json.loads(parts[1])
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid command JSON: {e}") from e

    if not isinstance(body, dict):
        raise ProtocolError(f"Command body must be an object, got {type(body).__name__}")

    action = body.get("action")
    if action not in ACTIONS:
        raise ProtocolError(f"Unknown command action: {action!r}")

    if action == ACTION_REFRESH_CONTROLS:
        return SensorCommand(action)

    control_id = body.get("control_id")
    if not isinstance(control_id, str):
        raise ProtocolError(f"set_control_value without control_id: {body}")

    value = CommandValue.from_json(body.get("value"))
    if value.kind is ValueKind.NULL:
        raise ProtocolError(f"Unexpected null value in {body}")
    if value.kind is ValueKind.UNKNOWN:
        raise ProtocolError(f"Unknown value type {type(value.value).__name__} in {body}")

    return SensorCommand(action, control_id, value)


def attach_descriptor(
    name: str,
    sensor_uuid: str,
    sensor_type: str,
    notification_url: str,
    command_url: str,
    data_url: str,
) -> dict:
    return {
        "name": name,
        "uuid": sensor_uuid,
        "type": sensor_type,
        "notification_url": notification_url,
        "command_url": command_url,
        "data_url": data_url,
    }
