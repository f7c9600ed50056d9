from __future__ import annotations

import asyncio
import io

import pytest

from conftest import FakeClient, levels, run
from whatsapp_transcribe import (
    CommandDispatcher,
    Jid,
    PairingGate,
    SessionError,
    StdinReader,
    parse_jid_string,
    parse_recipient,
)


def _commands(lines, client=None, pairing=None):
    client = client or FakeClient()
    dispatcher = CommandDispatcher(client, pairing or PairingGate())

    async def scenario():
        for line in lines:
            await dispatcher.handle_line(line)

    run(scenario())
    return client


def test_parse_recipient_bare_number_uses_default_server() -> None:
    assert parse_recipient("491701234567") == Jid("491701234567", "s.whatsapp.net")


def test_parse_recipient_strips_plus() -> None:
    assert parse_recipient("+491701234567") == Jid("491701234567", "s.whatsapp.net")


def test_parse_recipient_full_jid() -> None:
    assert parse_recipient("491701234567@s.whatsapp.net") == Jid("491701234567", "s.whatsapp.net")
    assert parse_recipient("120363025246125486@g.us") == Jid("120363025246125486", "g.us")


def test_parse_recipient_without_user_is_rejected(log_records) -> None:
    assert parse_recipient("@s.whatsapp.net") is None
    errors = levels(log_records, "ERROR")
    assert len(errors) == 1
    assert "no user specified" in errors[0]["message"]


def test_parse_recipient_bad_device_is_rejected(log_records) -> None:
    assert parse_recipient("491701234567:x@s.whatsapp.net") is None
    assert len(levels(log_records, "ERROR")) == 1


def test_parse_jid_string_agent_and_device() -> None:
    jid = parse_jid_string("491701234567.1:12@s.whatsapp.net")

    assert jid == Jid("491701234567", "s.whatsapp.net", agent=1, device=12)
    assert str(jid) == "491701234567.1:12@s.whatsapp.net"
    assert str(parse_jid_string("491701234567:3@s.whatsapp.net")) == "491701234567:3@s.whatsapp.net"
    assert parse_jid_string("s.whatsapp.net") == Jid("", "s.whatsapp.net")


def test_send_joins_text_and_sends_plain_message(log_records) -> None:
    client = _commands(["send 491701234567 hello   there world"])

    assert client.sent == [(Jid("491701234567", "s.whatsapp.net"), "hello there world")]
    assert any("Message sent" in r["message"] for r in levels(log_records, "INFO"))


def test_send_to_invalid_jid_does_not_send() -> None:
    client = _commands(["send @s.whatsapp.net hi"])

    assert client.sent == []
    assert client.calls == []


def test_send_usage_error(log_records) -> None:
    client = _commands(["send 491701234567"])

    assert client.sent == []
    assert any("Usage: send" in r["message"] for r in levels(log_records, "ERROR"))


def test_send_failure_is_logged(log_records) -> None:
    client = _commands(["send 491701234567 hi"], client=FakeClient(fail={"send_text"}))

    assert client.sent == []
    assert any("Error sending message" in r["message"] for r in levels(log_records, "ERROR"))


def test_command_names_are_case_insensitive() -> None:
    client = _commands(["LOGOUT", "Reconnect"])

    assert client.calls == [("logout",), ("disconnect",), ("connect",)]


def test_unknown_command_is_ignored(log_records) -> None:
    client = _commands(["dance now", "   "])

    assert client.calls == []
    assert levels(log_records, "ERROR") == []


def test_reconnect_failure_is_logged(log_records) -> None:
    client = _commands(["reconnect"], client=FakeClient(fail={"connect"}))

    assert client.calls == [("disconnect",), ("connect",)]
    assert any("Failed to connect" in r["message"] for r in levels(log_records, "ERROR"))


def test_logout_reports_result(log_records) -> None:
    _commands(["logout"])
    _commands(["logout"], client=FakeClient(fail={"logout"}))

    assert any("Successfully logged out" in r["message"] for r in levels(log_records, "INFO"))
    assert any("Error logging out" in r["message"] for r in levels(log_records, "ERROR"))


def test_pair_phone_prints_linking_code(capsys) -> None:
    client = _commands(["pair-phone 491701234567"])

    assert client.calls == [("pair_phone",)]
    assert "Linking code: ABCD-EFGH" in capsys.readouterr().out


def test_pair_phone_failure_is_fatal() -> None:
    with pytest.raises(SessionError):
        _commands(["pair-phone 491701234567"], client=FakeClient(fail={"pair_phone"}))


def test_run_stops_on_end_of_input() -> None:
    client = FakeClient()

    async def scenario():
        lines = asyncio.Queue()
        for line in ("logout", None, "reconnect"):
            lines.put_nowait(line)
        shutdown = asyncio.Event()
        await CommandDispatcher(client, PairingGate()).run(lines, shutdown)
        return shutdown.is_set()

    assert run(scenario()) is True
    assert client.calls == [("logout",)]


def test_pairing_accepts_after_window() -> None:
    gate = PairingGate(window=0.01)

    assert run(gate.decide(Jid("1", "s.whatsapp.net"), "android", "")) is True
    assert gate.state == PairingGate.IDLE


def test_pairing_operator_reject_and_lines_are_diverted() -> None:
    client = FakeClient()
    gate = PairingGate(window=5)
    dispatcher = CommandDispatcher(client, gate)

    async def scenario():
        decision = asyncio.ensure_future(gate.decide(Jid("1", "s.whatsapp.net"), "android", "Shop"))
        await asyncio.sleep(0)
        assert gate.awaiting
        await dispatcher.handle_line("logout")
        await dispatcher.handle_line("r")
        return await decision

    assert run(scenario()) is False
    assert client.calls == []
    assert not gate.awaiting


def test_pairing_operator_accept() -> None:
    gate = PairingGate(window=5)

    async def scenario():
        decision = asyncio.ensure_future(gate.decide(Jid("1", "s.whatsapp.net"), "ios", ""))
        await asyncio.sleep(0)
        assert gate.answer("a")
        return await decision

    assert run(scenario()) is True


def test_answer_without_pending_pairing_is_not_consumed() -> None:
    assert PairingGate().answer("r") is False


def test_stdin_reader_feeds_lines_and_eof() -> None:
    async def scenario():
        lines = asyncio.Queue()
        StdinReader(asyncio.get_running_loop(), lines, io.StringIO("send 1 hi\n\n  logout \n")).start()
        return [await lines.get() for _ in range(3)]

    assert run(scenario()) == ["send 1 hi", "logout", None]


def test_non_ad_drops_agent_and_device() -> None:
    jid = parse_jid_string("491701234567.1:12@s.whatsapp.net")

    assert jid.non_ad() == Jid("491701234567", "s.whatsapp.net")
    assert str(jid.non_ad()) == "491701234567@s.whatsapp.net"
