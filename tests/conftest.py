from __future__ import annotations

import pytest

from rrpd.codec import decode, encode
from rrpd.config import HubRuntimeConfig
from rrpd.constants import B_AVATAR, B_EMAIL, B_FROM, B_NAME, B_TEXT, B_TO, K_T, T_CHAT, T_JOIN
from rrpd.envelope import make_envelope
from rrpd.service import HubService
from rrpd.session import CloseCause, Connection


class FakeLink:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"FakeLink({self.name})"


class FakeTransport:
    """Records sends per handle; closing feeds back into the hub like a link callback.

    With ``mdu_limit`` set, packet sends above it fail the way ``RNS.Packet``
    does and must go through ``send_resource`` instead.
    """

    def __init__(self, mdu_limit: int | None = None) -> None:
        self.sent: dict[Connection, list[dict]] = {}
        self.resources: dict[Connection, list[bytes]] = {}
        self.closed: set[Connection] = set()
        self.fail_on: set[Connection] = set()
        self.mdu_limit = mdu_limit
        self.on_closed = None

    def send(self, handle: Connection, payload: bytes) -> None:
        if handle in self.fail_on:
            raise OSError("link send failed")
        if self.mdu_limit is not None and len(payload) > self.mdu_limit:
            raise OSError(f"packet size {len(payload)} exceeds MDU {self.mdu_limit}")
        self.sent.setdefault(handle, []).append(decode(payload))

    def send_resource(self, handle: Connection, payload: bytes) -> None:
        if handle in self.fail_on:
            raise OSError("resource advertise failed")
        self.resources.setdefault(handle, []).append(payload)
        self.sent.setdefault(handle, []).append(decode(payload))

    def mdu(self, handle: Connection) -> int | None:
        return self.mdu_limit

    def close(self, handle: Connection) -> None:
        if handle in self.closed:
            return
        self.closed.add(handle)
        if self.on_closed is not None:
            self.on_closed(handle)

    def is_open(self, handle: Connection) -> bool:
        return handle not in self.closed

    def received(self, handle: Connection, msg_type: int | None = None) -> list[dict]:
        envs = self.sent.get(handle, [])
        if msg_type is None:
            return list(envs)
        return [e for e in envs if e[K_T] == msg_type]

    def clear(self) -> None:
        self.sent.clear()
        self.resources.clear()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def hub(tmp_path, transport) -> HubService:
    cfg = HubRuntimeConfig(store_path=str(tmp_path / "store.toml"))
    svc = HubService(cfg, transport=transport)
    svc.snapshot.admin_secret = "s3cret"
    transport.on_closed = lambda h: svc.session_manager.on_close(h, CloseCause.FORCED)
    return svc


def connect(hub: HubService, name: str = "link") -> Connection:
    return hub.session_manager.on_accept(FakeLink(name))


def send(hub: HubService, handle: Connection, env: dict) -> None:
    hub.session_manager.on_message(handle, encode(env))


def join_env(name: str, email: str, avatar: str = "") -> dict:
    return make_envelope(T_JOIN, body={B_NAME: name, B_EMAIL: email, B_AVATAR: avatar})


def chat_env(sender: str, recipient: str, text: str) -> dict:
    return make_envelope(T_CHAT, body={B_FROM: sender, B_TO: recipient, B_TEXT: text})


def join(hub: HubService, name: str, email: str) -> Connection:
    handle = connect(hub, name)
    send(hub, handle, join_env(name, email))
    return handle
