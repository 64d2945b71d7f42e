"""Tests for bencoding."""

from __future__ import annotations

import pytest

from trackgate.bencode import BencodeError, decode, encode

pytestmark = [pytest.mark.unit, pytest.mark.tracker]


def test_encode_sorts_keys_by_raw_bytes():
    assert encode({"b": 1, b"a": [b"x", "y"], "c": {}}) == b"d1:al1:x1:ye1:bi1e1:cdee"


def test_encode_negative_and_zero():
    assert encode([0, -42]) == b"li0ei-42ee"


@pytest.mark.parametrize("value", [True, 1.5, None, {1: 2}])
def test_encode_rejects_unsupported(value):
    with pytest.raises(BencodeError):
        encode(value)


def test_decode_keeps_strings_as_bytes():
    assert decode(b"d8:intervali1800e5:peers6:\x7f\x00\x00\x01\x1a\xe1e") == {
        b"interval": 1800,
        b"peers": b"\x7f\x00\x00\x01\x1a\xe1",
    }


@pytest.mark.parametrize(
    "data",
    [b"", b"i12", b"l1:a", b"d1:a", b"5:abc", b"x", b"i1ei2e", b"di1ei2ee", b"iabce"],
)
def test_decode_rejects_malformed(data):
    with pytest.raises(BencodeError):
        decode(data)
