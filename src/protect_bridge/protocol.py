"""Binary frame codec for the Protect realtime update stream.

Each websocket message is one update packet made of two frames, an action
frame followed by a payload frame. Every frame starts with an 8-byte
header::

    byte 0     frame type       (1 = action, 2 = payload)
    byte 1     payload format   (1 = JSON, 2 = UTF-8 string, 3 = raw bytes)
    byte 2     compressed       (0 = plain, 1 = zlib deflate)
    byte 3     reserved
    bytes 4-7  body length      (big-endian unsigned 32-bit)

Decoding never raises: a packet that cannot be decoded is logged and
``None`` is returned so the connection stays up.

Example:
    >>> raw = encode_update_packet(
    ...     ActionFrame(action='update', id='cam-1', model_key='camera'),
    ...     {'isMotionDetected': True, 'lastMotion': 1000},
    ... )
    >>> decode_update_packet(raw).payload.data
    {'isMotionDetected': True, 'lastMotion': 1000}
"""

from __future__ import annotations

import json
import struct
import zlib
from typing import Any, Literal, overload

from loguru import logger  # type: ignore[import-untyped]
from pydantic import ValidationError

from protect_bridge.constants import UPDATE_PACKET_HEADER_SIZE
from protect_bridge.errors import MalformedFrameError
from protect_bridge.models import (
    ActionFrame,
    FrameType,
    PayloadFormat,
    PayloadFrame,
    UpdatePacket,
)


_HEADER = struct.Struct('!BBBBI')


def _read_length(packet: bytes, offset: int) -> int:
    """Read the body length field of the frame header at ``offset``."""
    end = offset + UPDATE_PACKET_HEADER_SIZE
    if len(packet) < end:
        raise MalformedFrameError(
            f'Truncated frame header at offset {offset} ({len(packet)} bytes)'
        )
    return _HEADER.unpack_from(packet, offset)[4]


def _frame_body(frame: bytes, compressed: int) -> bytes:
    body = frame[UPDATE_PACKET_HEADER_SIZE:]
    if not compressed:
        return body
    try:
        return zlib.decompress(body)
    except zlib.error as e:
        raise MalformedFrameError(f'Unable to inflate frame body: {e}', original_error=e) from e


def _load_json_object(body: bytes) -> dict[str, Any]:
    try:
        value = json.loads(body.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedFrameError(f'Invalid JSON frame body: {e}', original_error=e) from e
    if not isinstance(value, dict):
        raise MalformedFrameError(f'Expected a JSON object, got {type(value).__name__}')
    return value


def _parse_frame(frame: bytes, expected: FrameType) -> ActionFrame | PayloadFrame:
    if len(frame) < UPDATE_PACKET_HEADER_SIZE:
        raise MalformedFrameError(f'Frame shorter than its header ({len(frame)} bytes)')

    frame_type, payload_format, compressed, _reserved, _length = _HEADER.unpack_from(frame)
    if frame_type != expected:
        raise MalformedFrameError(f'Expected frame type {int(expected)}, got {frame_type}')

    body = _frame_body(frame, compressed)

    if frame_type == FrameType.ACTION:
        if payload_format != PayloadFormat.JSON:
            raise MalformedFrameError(f'Action frame has non-JSON format {payload_format}')
        try:
            return ActionFrame.model_validate(_load_json_object(body))
        except ValidationError as e:
            raise MalformedFrameError(f'Invalid action frame: {e}', original_error=e) from e

    if payload_format == PayloadFormat.JSON:
        return PayloadFrame(PayloadFormat.JSON, _load_json_object(body))
    if payload_format == PayloadFormat.UTF8:
        try:
            return PayloadFrame(PayloadFormat.UTF8, body.decode('utf-8'))
        except UnicodeDecodeError as e:
            raise MalformedFrameError(f'Invalid UTF-8 payload: {e}', original_error=e) from e
    if payload_format == PayloadFormat.RAW:
        return PayloadFrame(PayloadFormat.RAW, bytes(body))

    raise MalformedFrameError(f'Unknown payload format {payload_format}')


@overload
def decode_update_frame(
    frame: bytes, expected: Literal[FrameType.ACTION]
) -> ActionFrame | None: ...


@overload
def decode_update_frame(
    frame: bytes, expected: Literal[FrameType.PAYLOAD]
) -> PayloadFrame | None: ...


def decode_update_frame(
    frame: bytes, expected: FrameType
) -> ActionFrame | PayloadFrame | None:
    """Decode a single frame.

    Args:
        frame: The frame bytes, header included.
        expected: The frame type the caller expects at this position.

    Returns:
        The decoded frame, or None if it is of the wrong type, uses an
        invalid format, or cannot be inflated or parsed.
    """
    try:
        return _parse_frame(frame, expected)
    except MalformedFrameError as e:
        logger.warning(f'Realtime update API: dropping frame: {e.message}')
        return None


def split_update_packet(packet: bytes) -> tuple[bytes, bytes]:
    """Split a packet into its action and payload frames.

    The action frame length locates the payload frame; the packet must be
    exactly as long as both frames declare.

    Args:
        packet: The raw websocket message.

    Returns:
        The action frame bytes and the payload frame bytes.

    Raises:
        MalformedFrameError: If the declared lengths do not match the packet.
    """
    data_offset = _read_length(packet, 0) + UPDATE_PACKET_HEADER_SIZE
    payload_length = _read_length(packet, data_offset)
    expected = data_offset + UPDATE_PACKET_HEADER_SIZE + payload_length
    if len(packet) != expected:
        raise MalformedFrameError(
            f"Packet length doesn't match header information "
            f'(got {len(packet)} bytes, expected {expected})'
        )
    return packet[:data_offset], packet[data_offset:]


def decode_update_packet(packet: bytes) -> UpdatePacket | None:
    """Decode a realtime update packet into its action and payload.

    Args:
        packet: The raw websocket message.

    Returns:
        The decoded packet, or None if any part of it is malformed.
    """
    try:
        action_bytes, payload_bytes = split_update_packet(packet)
    except MalformedFrameError as e:
        logger.warning(f'Realtime update API: error decoding update packet: {e.message}')
        return None

    action = decode_update_frame(action_bytes, FrameType.ACTION)
    payload = decode_update_frame(payload_bytes, FrameType.PAYLOAD)
    if action is None or payload is None:
        return None
    return UpdatePacket(action=action, payload=payload)


def encode_update_frame(
    frame_type: FrameType,
    payload_format: PayloadFormat,
    data: dict[str, Any] | str | bytes,
    compressed: bool = False,
) -> bytes:
    """Encode a single frame, header included.

    Args:
        frame_type: Action or payload.
        payload_format: Format of ``data``.
        data: A dict for JSON, a str for UTF-8 and bytes for raw frames.
        compressed: Deflate the body with zlib.

    Returns:
        The encoded frame.

    Raises:
        ValueError: If ``data`` does not match ``payload_format``.
    """
    if payload_format == PayloadFormat.JSON:
        if not isinstance(data, dict):
            raise ValueError('JSON frames need a dict body')
        body = json.dumps(data, separators=(',', ':')).encode('utf-8')
    elif payload_format == PayloadFormat.UTF8:
        if not isinstance(data, str):
            raise ValueError('UTF-8 frames need a str body')
        body = data.encode('utf-8')
    else:
        if not isinstance(data, (bytes, bytearray)):
            raise ValueError('Raw frames need a bytes body')
        body = bytes(data)

    if compressed:
        body = zlib.compress(body)

    header = _HEADER.pack(int(frame_type), int(payload_format), int(compressed), 0, len(body))
    return header + body


def encode_update_packet(
    action: ActionFrame | dict[str, Any],
    payload: PayloadFrame | dict[str, Any] | str | bytes,
    compressed: bool = False,
) -> bytes:
    """Encode an action and a payload into one update packet.

    Args:
        action: The action frame, or its JSON fields.
        payload: The payload frame, or a bare dict / str / bytes body whose
            format is inferred from its type.
        compressed: Deflate both frame bodies.

    Returns:
        The encoded packet.
    """
    if isinstance(action, ActionFrame):
        action = action.model_dump(by_alias=True, exclude_none=True)

    if not isinstance(payload, PayloadFrame):
        if isinstance(payload, dict):
            payload = PayloadFrame(PayloadFormat.JSON, payload)
        elif isinstance(payload, str):
            payload = PayloadFrame(PayloadFormat.UTF8, payload)
        else:
            payload = PayloadFrame(PayloadFormat.RAW, payload)

    return encode_update_frame(
        FrameType.ACTION, PayloadFormat.JSON, action, compressed
    ) + encode_update_frame(FrameType.PAYLOAD, payload.format, payload.data, compressed)
