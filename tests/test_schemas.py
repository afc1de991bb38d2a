from __future__ import annotations

import pytest

from browser_relay.errors import InvalidCommand, ProtocolError
from browser_relay.schemas import (
    CommandEnvelope,
    CommandKind,
    ResponseEnvelope,
    decode_frame,
    encode_frame,
    resolve_kind,
)


@pytest.mark.parametrize(
    "message",
    [b"\xff\xfe", "{not json", "[1, 2]", '"text"', "{}", '{"type": 3}'],
)
def test_decode_frame_rejects_malformed_messages(message) -> None:
    with pytest.raises(ProtocolError):
        decode_frame(message)


def test_decode_frame_accepts_bytes() -> None:
    assert decode_frame('{"type": "pong"}'.encode()) == {"type": "pong"}


def test_encode_frame_keeps_unicode() -> None:
    assert encode_frame({"type": "register", "identity": "使用者"}) == '{"type": "register", "identity": "使用者"}'


@pytest.mark.parametrize(
    "kind,expected",
    [
        ("navigate", CommandKind.NAVIGATE),
        ("list-targets", CommandKind.LIST_TARGETS),
        ("getTabs", CommandKind.LIST_TARGETS),
        ("selectTab", CommandKind.SELECT_TARGET),
        ("Navigate", None),
        ("", None),
        (None, None),
    ],
)
def test_resolve_kind(kind, expected) -> None:
    assert resolve_kind(kind) is expected


def test_command_from_frame_accepts_legacy_tab_id() -> None:
    envelope = CommandEnvelope.from_frame({"type": "command", "id": "x", "kind": "selectTab", "tabId": "12"})

    assert envelope.correlation_id == "x"
    assert envelope.require_target_id() == 12


@pytest.mark.parametrize("value", [None, True, "abc", "", 1.5, [1]])
def test_require_target_id_rejects_invalid_values(value) -> None:
    envelope = CommandEnvelope(kind="select-target", target_id=value)

    with pytest.raises(InvalidCommand, match="targetId"):
        envelope.require_target_id()


def test_require_str() -> None:
    envelope = CommandEnvelope(kind="type", selector="#q", text="")

    assert envelope.require_str("selector") == "#q"
    assert envelope.require_str("text", allow_empty=True) == ""
    with pytest.raises(InvalidCommand, match="'text'"):
        envelope.require_str("text")
    with pytest.raises(InvalidCommand, match="'url'"):
        envelope.require_str("url")


def test_response_frame_omits_empty_fields() -> None:
    assert ResponseEnvelope.ok().to_frame() == {"type": "response", "success": True}
    assert ResponseEnvelope.fail("boom", correlation_id=3).to_frame() == {
        "type": "response",
        "id": 3,
        "success": False,
        "error": "boom",
    }
    assert ResponseEnvelope.ok({"targetId": 1}, "a").to_frame() == {
        "type": "response",
        "id": "a",
        "success": True,
        "data": {"targetId": 1},
    }
