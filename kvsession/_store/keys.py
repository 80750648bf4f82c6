"""Order-preserving key encoding.

Every valid key is encoded into a byte string whose byte-wise order is the key
order: number < date < string < binary < array. SQLite compares BLOB columns
with memcmp, so range scans over encoded keys follow key order directly.
"""

from __future__ import annotations

import math
import struct
from datetime import datetime, timezone
from typing import Any, List, Tuple

from .errors import DataError

_TAG_NUMBER = 0x10
_TAG_DATE = 0x20
_TAG_STRING = 0x30
_TAG_BINARY = 0x40
_TAG_ARRAY = 0x50

# Variable-length payloads escape 0x00 as 0x00 0xFF and end with 0x00 0x00,
# so a terminator always sorts before any continuation byte.
_ESCAPE = b"\x00\xff"
_TERMINATOR = b"\x00\x00"
_ARRAY_END = 0x00

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MAX_SAFE_INTEGER = 2 ** 53


def is_valid_key(value: Any) -> bool:
    try:
        _check(value)
    except DataError:
        return False
    return True


def encode_key(value: Any) -> bytes:
    _check(value)
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def decode_key(data: bytes) -> Any:
    value, pos = _decode_from(data, 0)
    if pos != len(data):
        raise DataError("trailing bytes after encoded key")
    return value


def compare_keys(first: Any, second: Any) -> int:
    """Return -1, 0 or 1 according to key order."""
    a = encode_key(first)
    b = encode_key(second)
    if a == b:
        return 0
    return -1 if a < b else 1


def _check(value: Any, depth: int = 0) -> None:
    if isinstance(value, bool) or value is None:
        raise DataError(f"{value!r} is not a valid key")
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            raise DataError("NaN is not a valid key")
        return
    if isinstance(value, datetime):
        if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
            raise DataError("datetime keys must include timezone info")
        return
    if isinstance(value, (str, bytes, bytearray, memoryview)):
        return
    if isinstance(value, (list, tuple)):
        if depth > 64:
            raise DataError("array key nested too deeply")
        for item in value:
            _check(item, depth + 1)
        return
    raise DataError(f"unsupported key type: {type(value)!r}")


def _encode_number(value: float) -> bytes:
    if value == 0:
        value = 0.0  # -0.0 and 0 are the same key
    raw = bytearray(struct.pack(">d", float(value)))
    if raw[0] & 0x80:
        for i in range(len(raw)):
            raw[i] ^= 0xFF
    else:
        raw[0] ^= 0x80
    return bytes(raw)


def _decode_number(raw: bytes) -> float:
    buf = bytearray(raw)
    if buf[0] & 0x80:
        buf[0] ^= 0x80
    else:
        for i in range(len(buf)):
            buf[i] ^= 0xFF
    return struct.unpack(">d", bytes(buf))[0]


def _escape(payload: bytes) -> bytes:
    return payload.replace(b"\x00", _ESCAPE) + _TERMINATOR


def _unescape(data: bytes, pos: int) -> Tuple[bytes, int]:
    out = bytearray()
    while True:
        if pos >= len(data):
            raise DataError("unterminated key segment")
        byte = data[pos]
        if byte == 0x00:
            marker = data[pos + 1] if pos + 1 < len(data) else None
            if marker == 0x00:
                return bytes(out), pos + 2
            if marker == 0xFF:
                out.append(0x00)
                pos += 2
                continue
            raise DataError("corrupt escape sequence in key")
        out.append(byte)
        pos += 1


def _encode_into(value: Any, out: bytearray) -> None:
    if isinstance(value, (int, float)):
        out.append(_TAG_NUMBER)
        out += _encode_number(value)
    elif isinstance(value, datetime):
        millis = (value - _EPOCH).total_seconds() * 1000.0
        out.append(_TAG_DATE)
        out += _encode_number(millis)
    elif isinstance(value, str):
        out.append(_TAG_STRING)
        out += _escape(value.encode("utf-8"))
    elif isinstance(value, (bytes, bytearray, memoryview)):
        out.append(_TAG_BINARY)
        out += _escape(bytes(value))
    else:
        out.append(_TAG_ARRAY)
        for item in value:
            _encode_into(item, out)
        out.append(_ARRAY_END)


def _decode_from(data: bytes, pos: int) -> Tuple[Any, int]:
    tag = data[pos]
    pos += 1
    if tag == _TAG_NUMBER:
        number = _decode_number(data[pos:pos + 8])
        if number.is_integer() and abs(number) <= _MAX_SAFE_INTEGER:
            return int(number), pos + 8
        return number, pos + 8
    if tag == _TAG_DATE:
        millis = _decode_number(data[pos:pos + 8])
        return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc), pos + 8
    if tag == _TAG_STRING:
        raw, pos = _unescape(data, pos)
        return raw.decode("utf-8"), pos
    if tag == _TAG_BINARY:
        return _unescape(data, pos)
    if tag == _TAG_ARRAY:
        items: List[Any] = []
        while data[pos] != _ARRAY_END:
            item, pos = _decode_from(data, pos)
            items.append(item)
        return items, pos + 1
    raise DataError(f"unknown key tag 0x{tag:02x}")
