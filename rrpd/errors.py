"""Exception types raised by the presence hub core."""

from __future__ import annotations


class MalformedPayload(ValueError):
    """An inbound message could not be decoded or failed schema checks."""


class DuplicateHandle(RuntimeError):
    """A connection handle was registered twice.

    The lifecycle never inserts the same handle twice, so seeing this means a
    bug in the caller rather than bad client input.
    """
