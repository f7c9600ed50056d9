from __future__ import annotations

import asyncio
from typing import Any, List, Optional

import pytest
from loguru import logger

from whatsapp_transcribe import AudioAttachment, Jid, MessageEvent, MessengerClient, ReplyMessage, SessionError


def run(coro):  # noqa: ANN001
    return asyncio.run(coro)


class FakeClient(MessengerClient):
    def __init__(self, audio: bytes = b"OggS\x00fake", fail: Optional[set] = None):
        self.audio = audio
        self.fail = fail or set()
        self.calls: List[tuple] = []
        self.replies: List[ReplyMessage] = []
        self.sent: List[tuple] = []

    def _maybe_fail(self, action: str) -> None:
        self.calls.append((action,))
        if action in self.fail:
            raise SessionError(f"{action} failed: boom")

    async def connect(self) -> None:
        self._maybe_fail("connect")

    async def disconnect(self) -> None:
        self._maybe_fail("disconnect")

    async def logout(self) -> None:
        self._maybe_fail("logout")

    async def send_text(self, to: Jid, text: str) -> Any:
        self._maybe_fail("send_text")
        self.sent.append((to, text))
        return 1700000000

    async def send_reply(self, reply: ReplyMessage) -> None:
        self._maybe_fail("send_reply")
        self.replies.append(reply)

    async def download(self, attachment: AudioAttachment) -> bytes:
        self._maybe_fail("download")
        return self.audio

    async def pair_phone(self, phone: str) -> str:
        self._maybe_fail("pair_phone")
        return "ABCD-EFGH"


class FakeTranscriber:
    def __init__(self, result: Optional[str] = "hello world"):
        self.result = result
        self.inputs: List[bytes] = []

    async def transcribe(self, audio: bytes) -> Optional[str]:
        self.inputs.append(audio)
        return self.result


CHAT = Jid("491701234567", "s.whatsapp.net")
SENDER = Jid("491701234567", "s.whatsapp.net")


def voice_message(ptt: bool = True, msg_id: str = "3EB0C0FFEE", **kwargs: Any) -> MessageEvent:
    return MessageEvent(
        id=msg_id,
        chat=kwargs.pop("chat", CHAT),
        sender=kwargs.pop("sender", SENDER),
        push_name="Alice",
        timestamp="2024-03-01 12:00:00",
        type="media",
        audio=AudioAttachment(ptt=ptt, mimetype="audio/ogg; codecs=opus", seconds=4, payload={"media": msg_id}),
        payload={"message": msg_id},
        **kwargs,
    )


@pytest.fixture
def log_records():
    records: List[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


def levels(records: List[dict], name: str) -> List[dict]:
    return [r for r in records if r["level"].name == name]
