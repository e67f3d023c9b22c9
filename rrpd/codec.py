from __future__ import annotations

import cbor2

from .errors import MalformedPayload


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    try:
        return cbor2.loads(b)
    except Exception as e:
        raise MalformedPayload(f"undecodable payload: {e}") from e
