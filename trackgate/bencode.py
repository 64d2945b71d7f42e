"""Bencoding for tracker responses (BEP 3)."""

from __future__ import annotations

from typing import Any

from trackgate.utils.exceptions import TrackgateError


class BencodeError(TrackgateError):
    """Raised on malformed bencoded input or unencodable values."""


def encode(obj: Any) -> bytes:
    """Bencode ``obj``.

    Supports int, bytes, str (UTF-8), list/tuple and dict with str or bytes
    keys. Dictionary keys are emitted in raw byte order.
    """
    if isinstance(obj, bool):
        msg = "Cannot bencode bool"
        raise BencodeError(msg)
    if isinstance(obj, int):
        return b"i" + str(obj).encode() + b"e"
    if isinstance(obj, bytes):
        return str(len(obj)).encode() + b":" + obj
    if isinstance(obj, str):
        return encode(obj.encode("utf-8"))
    if isinstance(obj, (list, tuple)):
        return b"l" + b"".join(encode(item) for item in obj) + b"e"
    if isinstance(obj, dict):
        items = sorted((_key(k), v) for k, v in obj.items())
        return b"d" + b"".join(encode(k) + encode(v) for k, v in items) + b"e"
    msg = f"Cannot bencode type {type(obj).__name__}"
    raise BencodeError(msg)


def _key(key: Any) -> bytes:
    if isinstance(key, str):
        return key.encode("utf-8")
    if isinstance(key, bytes):
        return key
    msg = f"Dictionary keys must be str or bytes, not {type(key).__name__}"
    raise BencodeError(msg)


def decode(data: bytes) -> Any:
    """Decode a complete bencoded value. Strings stay as bytes."""
    try:
        value, end = _decode(data, 0)
    except (IndexError, ValueError) as e:
        msg = f"Malformed bencoded data: {e}"
        raise BencodeError(msg) from e
    if end != len(data):
        msg = f"Trailing data after position {end}"
        raise BencodeError(msg)
    return value


def _decode(data: bytes, pos: int) -> tuple[Any, int]:
    lead = data[pos : pos + 1]
    if lead == b"i":
        end = data.index(b"e", pos + 1)
        return int(data[pos + 1 : end]), end + 1
    if lead == b"l":
        items, pos = [], pos + 1
        while data[pos : pos + 1] != b"e":
            if pos >= len(data):
                raise IndexError("unterminated list")
            item, pos = _decode(data, pos)
            items.append(item)
        return items, pos + 1
    if lead == b"d":
        result, pos = {}, pos + 1
        while data[pos : pos + 1] != b"e":
            if pos >= len(data):
                raise IndexError("unterminated dict")
            key, pos = _decode(data, pos)
            if not isinstance(key, bytes):
                raise ValueError("dict key is not a string")
            result[key], pos = _decode(data, pos)
        return result, pos + 1
    if lead.isdigit():
        colon = data.index(b":", pos)
        length = int(data[pos:colon])
        start = colon + 1
        if start + length > len(data):
            raise IndexError("string runs past end of data")
        return data[start : start + length], start + length
    raise ValueError(f"unexpected byte {lead!r} at {pos}")
