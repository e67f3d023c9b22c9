from __future__ import annotations

import os
import time

from .constants import K_BODY, K_ID, K_T, K_TS, K_V, RRP_VERSION
from .errors import MalformedPayload


def now_ms() -> int:
    return int(time.time() * 1000)


def msg_id() -> bytes:
    return os.urandom(8)


def make_envelope(
    msg_type: int,
    *,
    body=None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict:
    env: dict[int, object] = {
        K_V: RRP_VERSION,
        K_T: int(msg_type),
        K_ID: mid if mid is not None else msg_id(),
        K_TS: ts if ts is not None else now_ms(),
    }
    if body is not None:
        env[K_BODY] = body
    return env


def validate_envelope(env: dict) -> None:
    if not isinstance(env, dict):
        raise MalformedPayload("envelope must be a CBOR map (dict)")

    for k in env.keys():
        if not isinstance(k, int) or isinstance(k, bool):
            raise MalformedPayload("envelope keys must be integers")
        if k < 0:
            raise MalformedPayload("envelope keys must be unsigned integers")

    for k in (K_V, K_T, K_ID, K_TS):
        if k not in env:
            raise MalformedPayload(f"missing envelope key {k}")

    v = env[K_V]
    if not isinstance(v, int):
        raise MalformedPayload("protocol version must be an integer")
    if v != RRP_VERSION:
        raise MalformedPayload(f"unsupported version {v}")

    t = env[K_T]
    if not isinstance(t, int) or isinstance(t, bool):
        raise MalformedPayload("message type must be an integer")

    mid = env[K_ID]
    if not isinstance(mid, (bytes, bytearray)):
        raise MalformedPayload("message id must be bytes")

    ts = env[K_TS]
    if not isinstance(ts, int) or isinstance(ts, bool):
        raise MalformedPayload("timestamp must be an integer")
    if ts < 0:
        raise MalformedPayload("timestamp must be unsigned")
