from conftest import chat_env, connect, join, join_env, send

from rrpd.constants import (
    B_EMAIL,
    B_FROM,
    B_NAME,
    B_TEXT,
    B_TO,
    K_BODY,
    T_CHAT,
    T_JOIN_ANNOUNCE,
    T_LEAVE_ANNOUNCE,
    T_REQUEST_ROSTER,
    T_ROSTER,
)
from rrpd.envelope import make_envelope
from rrpd.session import CloseCause, ConnectionState


def roster_emails(env) -> list[str]:
    return [item[B_EMAIL] for item in env[K_BODY]]


def test_two_client_scenario(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    b = join(hub, "Bob", "b@x")

    assert roster_emails(transport.received(a, T_ROSTER)[0]) == []
    assert roster_emails(transport.received(b, T_ROSTER)[0]) == ["a@x"]

    send(hub, a, chat_env("a@x", "b@x", "hi"))
    chats = transport.received(b, T_CHAT)
    assert len(chats) == 1
    assert chats[0][K_BODY] == {B_FROM: "a@x", B_TO: "b@x", B_TEXT: "hi"}

    hub.session_manager.on_close(b, CloseCause.VOLUNTARY)
    leaves = transport.received(a, T_LEAVE_ANNOUNCE)
    assert len(leaves) == 1
    assert leaves[0][K_BODY][B_EMAIL] == "b@x"
    assert leaves[0][K_BODY][B_NAME] == "Bob"


def test_joiner_never_sees_itself(hub, transport) -> None:
    b = join(hub, "Bob", "b@x")
    c = join(hub, "Carol", "c@x")
    a = join(hub, "Alice", "a@x")

    assert sorted(roster_emails(transport.received(a, T_ROSTER)[0])) == ["b@x", "c@x"]
    assert transport.received(a, T_JOIN_ANNOUNCE) == []

    for other in (b, c):
        announced = [e[K_BODY][B_EMAIL] for e in transport.received(other, T_JOIN_ANNOUNCE)]
        assert "a@x" in announced


def test_roster_reply_precedes_join_broadcast(hub, transport) -> None:
    sent_order = []
    original_send = transport.send

    def recording_send(handle, payload):
        sent_order.append(handle)
        original_send(handle, payload)

    transport.send = recording_send

    b = join(hub, "Bob", "b@x")
    sent_order.clear()
    a = join(hub, "Alice", "a@x")

    assert sent_order == [a, b]


def test_leave_goes_to_all_remaining_active(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    b = join(hub, "Bob", "b@x")
    c = join(hub, "Carol", "c@x")
    pending = connect(hub, "lurker")

    hub.session_manager.on_close(a, CloseCause.ERROR)

    assert len(transport.received(b, T_LEAVE_ANNOUNCE)) == 1
    assert len(transport.received(c, T_LEAVE_ANNOUNCE)) == 1
    assert transport.received(pending) == []
    assert transport.received(a, T_LEAVE_ANNOUNCE) == []


def test_closing_pending_connection_announces_nothing(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    transport.clear()

    pending = connect(hub)
    assert hub.session_manager.on_close(pending, CloseCause.VOLUNTARY) is True

    assert transport.received(a) == []
    assert pending.state is ConnectionState.CLOSED


def test_chat_to_duplicate_login_reaches_first_session_only(hub, transport) -> None:
    first = join(hub, "Bob", "b@x")
    second = join(hub, "Bob", "b@x")
    a = join(hub, "Alice", "a@x")

    send(hub, a, chat_env("a@x", "b@x", "which one?"))

    assert len(transport.received(first, T_CHAT)) == 1
    assert transport.received(second, T_CHAT) == []


def test_chat_to_absent_email_is_dropped_silently(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    transport.clear()

    send(hub, a, chat_env("a@x", "nobody@x", "hello?"))

    assert transport.received(a) == []
    assert a.state is ConnectionState.ACTIVE
    assert hub.stats_manager.get("chats_dropped") == 1

    send(hub, a, make_envelope(T_REQUEST_ROSTER))
    assert len(transport.received(a, T_ROSTER)) == 1


def test_request_roster_excludes_requester(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    join(hub, "Bob", "b@x")
    transport.clear()

    send(hub, a, make_envelope(T_REQUEST_ROSTER))

    rosters = transport.received(a, T_ROSTER)
    assert len(rosters) == 1
    assert roster_emails(rosters[0]) == ["b@x"]


def test_malformed_input_is_discarded(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    transport.clear()

    hub.session_manager.on_message(a, b"\xff\x00 not cbor")
    send(hub, a, {"not": "an envelope"})
    send(hub, a, make_envelope(99))
    send(hub, a, make_envelope(T_CHAT, body="just text"))
    send(hub, a, join_env("Alice", "a@x"))

    assert transport.received(a) == []
    assert a.state is ConnectionState.ACTIVE
    assert hub.stats_manager.get("pkts_bad") == 5
    assert len(hub.registry) == 1


def test_pending_connection_only_accepts_join(hub, transport) -> None:
    b = join(hub, "Bob", "b@x")
    transport.clear()

    pending = connect(hub)
    send(hub, pending, chat_env("a@x", "b@x", "sneaky"))
    send(hub, pending, make_envelope(T_REQUEST_ROSTER))
    send(hub, pending, join_env("", "a@x"))

    assert transport.received(b) == []
    assert transport.received(pending) == []
    assert pending.state is ConnectionState.PENDING


def test_broadcast_skips_closed_and_failing_recipients(hub, transport) -> None:
    b = join(hub, "Bob", "b@x")
    c = join(hub, "Carol", "c@x")
    d = join(hub, "Dave", "d@x")

    # c looks closed to the transport but has not been cleaned up yet.
    transport.closed.add(c)
    transport.fail_on.add(b)
    transport.clear()

    a = join(hub, "Alice", "a@x")

    assert len(transport.received(d, T_JOIN_ANNOUNCE)) == 1
    assert transport.received(c) == []
    assert c in hub.registry
    assert len(transport.received(a, T_ROSTER)) == 1
    assert hub.stats_manager.get("send_failures") == 1
    assert hub.stats_manager.get("broadcast_skipped") == 1


def test_chat_is_forwarded_verbatim(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    b = join(hub, "Bob", "b@x")

    env = chat_env("someone-else@x", "b@x", "  spaced  ")
    send(hub, a, env)

    delivered = transport.received(b, T_CHAT)[0]
    assert delivered[K_BODY][B_FROM] == "someone-else@x"
    assert delivered[K_BODY][B_TEXT] == "  spaced  "


def test_oversized_chat_is_discarded(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    b = join(hub, "Bob", "b@x")

    send(hub, a, chat_env("a@x", "b@x", "x" * (hub.config.max_msg_body_bytes + 1)))

    assert transport.received(b, T_CHAT) == []
    assert a.state is ConnectionState.ACTIVE


def test_chat_recipient_with_surrounding_whitespace_is_delivered(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    b = join(hub, "Bob", "b@x")

    send(hub, a, chat_env("a@x", " b@x ", "hi"))

    chats = transport.received(b, T_CHAT)
    assert len(chats) == 1
    assert chats[0][K_BODY][B_TO] == "b@x"


def test_chat_with_oversized_sender_is_discarded(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    b = join(hub, "Bob", "b@x")

    send(hub, a, chat_env("x" * (hub.config.max_email_chars + 1), "b@x", "hi"))

    assert transport.received(b, T_CHAT) == []
    assert hub.stats_manager.get("pkts_bad") == 1
