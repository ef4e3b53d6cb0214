"""Stable binary identifiers for adapters, nodes, links and workflows."""

import hashlib
import itertools
import os
import time
from threading import Lock
from typing import Union

ID_LENGTH = 32

_counter = itertools.count()
_counter_lock = Lock()


def generate_id(owner: Union[bytes, str]) -> bytes:
    """Derive a fresh id from the owner principal plus a monotonic and a random salt."""
    if isinstance(owner, str):
        owner = owner.encode("utf-8")
    with _counter_lock:
        sequence = next(_counter)
    digest = hashlib.sha256()
    digest.update(owner)
    digest.update(sequence.to_bytes(8, "big"))
    digest.update(time.time_ns().to_bytes(8, "big"))
    digest.update(os.urandom(16))
    return digest.digest()


def to_hex(identifier: bytes) -> str:
    return identifier.hex()


def from_hex(value: str) -> bytes:
    """Parse a hex id, tolerating an optional 0x prefix."""
    text = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        return bytes.fromhex(text)
    except ValueError as exc:
        raise ValueError(f"Invalid id '{value}'") from exc
