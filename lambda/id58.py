from __future__ import annotations

import secrets
import struct
import time

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
ID_BYTES = 16
ID_LENGTH = 22


def encode_16bytes_base58(raw: bytes) -> str:
    if not isinstance(raw, (bytes, bytearray)) or len(raw) != ID_BYTES:
        raise ValueError("base58 id encoder requires exactly 16 bytes")
    n = int.from_bytes(raw, "big")
    chars: list[str] = []
    while n > 0:
        n, rem = divmod(n, 58)
        chars.append(BASE58_ALPHABET[rem])
    encoded = "".join(reversed(chars)) if chars else BASE58_ALPHABET[0]
    if len(encoded) > ID_LENGTH:
        raise ValueError("base58 encoded id exceeds fixed 22-char width")
    return (BASE58_ALPHABET[0] * (ID_LENGTH - len(encoded))) + encoded


def uuid7_base58_22(ts_ms: int | None = None) -> str:
    """Time-ordered id: 48-bit millisecond timestamp, version/variant bits, 74 random bits.

    The alphabet is in ASCII order and the width is fixed, so ids sort by creation time.
    """
    if ts_ms is None:
        ts_ms = int(time.time() * 1000)
    ts_bytes = struct.pack(">Q", ts_ms)[2:]  # last 6 bytes
    rand_bytes = secrets.token_bytes(10)
    raw = bytearray(ts_bytes + rand_bytes)
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return encode_16bytes_base58(bytes(raw))


def decode_base58_22(value: str) -> bytes:
    if not is_base58_22(value):
        raise ValueError("expected a 22-char base58 id")
    n = 0
    for ch in value:
        n = n * 58 + BASE58_ALPHABET.index(ch)
    return n.to_bytes(ID_BYTES, "big")


def uuid7_timestamp_ms(value: str) -> int:
    return int.from_bytes(decode_base58_22(value)[:6], "big")


def is_base58_22(value: str) -> bool:
    if not isinstance(value, str) or len(value) != ID_LENGTH:
        return False
    return all(ch in BASE58_ALPHABET for ch in value)
