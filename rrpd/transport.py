"""Transport seam between the presence core and Reticulum links."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import RNS

if TYPE_CHECKING:
    from .session import Connection


class Transport(Protocol):
    def send(self, handle: Connection, payload: bytes) -> None: ...

    def send_resource(self, handle: Connection, payload: bytes) -> None: ...

    def mdu(self, handle: Connection) -> int | None: ...

    def close(self, handle: Connection) -> None: ...

    def is_open(self, handle: Connection) -> bool: ...


class LinkTransport:
    """Sends over the ``RNS.Link`` carried by each connection handle.

    Payloads that fit the link MDU go out as a single packet; larger ones are
    advertised as an ``RNS.Resource`` whose data is the same encoded envelope.
    """

    def send(self, handle: Connection, payload: bytes) -> None:
        RNS.Packet(handle.link, payload).send()

    def send_resource(self, handle: Connection, payload: bytes) -> None:
        RNS.Resource(payload, handle.link, advertise=True, auto_compress=False)

    def mdu(self, handle: Connection) -> int | None:
        mdu = getattr(handle.link, "MDU", None)
        if isinstance(mdu, int) and mdu > 0:
            return mdu
        return RNS.Link.MDU

    def close(self, handle: Connection) -> None:
        handle.link.teardown()

    def is_open(self, handle: Connection) -> bool:
        return getattr(handle.link, "status", None) == RNS.Link.ACTIVE
