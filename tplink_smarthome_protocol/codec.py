#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Payload obfuscation and wire framing for the TP-Link smart home protocol.

Payloads are UTF-8 JSON documents, obfuscated with a running-key XOR "autokey"
cipher: each ciphertext byte is the plaintext byte XORed with a key that starts
at 171 and is replaced by the previous ciphertext byte. There is no secret, so
this provides interoperability, not confidentiality.

On a TCP stream each obfuscated payload is preceded by its length as a 4-byte
big-endian unsigned integer. A UDP datagram carries exactly one obfuscated payload
with no prefix.
"""

from __future__ import annotations

import asyncio
import json
import struct

from .internal_types import *
from .constants import INITIAL_KEY, STREAM_HEADER_LENGTH
from .endpoint import TransportKind
from .exceptions import DecodeError, FramingError

_HEADER = struct.Struct('>I')

def encode(plain: bytes, initial_key: int=INITIAL_KEY) -> bytes:
    """Obfuscates a plaintext payload."""
    key = initial_key
    result = bytearray(len(plain))
    for i, b in enumerate(plain):
        key ^= b
        result[i] = key
    return bytes(result)

def decode(wire: bytes, initial_key: int=INITIAL_KEY) -> bytes:
    """Recovers the plaintext of an obfuscated payload. The key advances to the
       ciphertext byte just consumed, not the plaintext byte just produced."""
    key = initial_key
    result = bytearray(len(wire))
    for i, b in enumerate(wire):
        result[i] = key ^ b
        key = b
    return bytes(result)

def encode_frame(plain: bytes, transport_kind: TransportKind=TransportKind.STREAM) -> bytes:
    """Obfuscates a plaintext payload and frames it for the given transport."""
    body = encode(plain)
    if transport_kind == TransportKind.STREAM:
        return _HEADER.pack(len(body)) + body
    return body

def split_stream_frame(buffer: bytes) -> Tuple[bytes, bytes]:
    """Parses a single stream frame from the front of a buffer.

    Returns a Tuple[plaintext: bytes, remainder: bytes], where remainder is whatever
    followed the frame in the buffer.

    Raises FramingError if the buffer does not yet hold a complete frame. In that
    case nothing is decoded; the caller should wait for `needed` more bytes.
    """
    if len(buffer) < STREAM_HEADER_LENGTH:
        raise FramingError(STREAM_HEADER_LENGTH - len(buffer))
    (length,) = _HEADER.unpack_from(buffer)
    end = STREAM_HEADER_LENGTH + length
    if len(buffer) < end:
        raise FramingError(end - len(buffer))
    return decode(buffer[STREAM_HEADER_LENGTH:end]), buffer[end:]

def decode_frame(raw: bytes, transport_kind: TransportKind=TransportKind.STREAM) -> bytes:
    """Decodes one complete frame as received from the given transport.

    A stream frame must be complete and must not be followed by trailing bytes.
    """
    if transport_kind == TransportKind.STREAM:
        plain, remainder = split_stream_frame(raw)
        if len(remainder) != 0:
            raise DecodeError(f"{len(remainder)} trailing byte(s) after stream frame", raw)
        return plain
    return decode(raw)

async def read_stream_frame(reader: asyncio.StreamReader) -> bytes:
    """Reads exactly one length-prefixed frame from a stream and returns the plaintext.

    Waits until the full header and then the full body are available; a partial frame is
    never decoded. Raises asyncio.IncompleteReadError if the stream ends mid-frame.
    """
    header = await reader.readexactly(STREAM_HEADER_LENGTH)
    (length,) = _HEADER.unpack(header)
    body = await reader.readexactly(length)
    return decode(body)

def serialize_command(command: Union[str, bytes, Mapping[str, Any]]) -> bytes:
    """Converts a command (a JSON string, UTF-8 JSON bytes, or a JSON-able mapping) into plaintext payload bytes."""
    if isinstance(command, bytes):
        return command
    if isinstance(command, str):
        return command.encode('utf-8')
    return json.dumps(command, separators=(',', ':')).encode('utf-8')

def parse_response(plain: bytes) -> JsonableDict:
    """Parses a decoded payload into a JSON object.

    Raises DecodeError if the payload is not UTF-8 JSON, or is JSON but not an object.
    """
    try:
        text = plain.decode('utf-8')
        result = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Response is not valid JSON: {e}", plain) from e
    if not isinstance(result, dict):
        raise DecodeError(f"Response is JSON but not an object: {type(result).__name__}", plain)
    return result
