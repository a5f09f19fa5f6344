import json
from typing import Any, Callable, Union

# Turns the logical ``data`` of a request into the bytes that get hashed and sent.
PayloadSerializer = Callable[[Any], Union[str, bytes]]


def json_payload_serializer(data: Any) -> bytes:
    """Serialize ``data`` as compact UTF-8 JSON.

    Matches what ``JSON.stringify`` produces in browsers, so a body signed here
    verifies against one serialized by a JavaScript client.
    """
    return json.dumps(data, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def to_bytes(payload: Union[str, bytes]) -> bytes:
    if isinstance(payload, str):
        return payload.encode('utf-8')
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    raise TypeError(f"Payload must be str or bytes, not {type(payload).__name__}")
