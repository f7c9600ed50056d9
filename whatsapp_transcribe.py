#!/usr/bin/env python3
# whatsapp_transcribe.py
import argparse
import asyncio
import contextlib
import logging
import mimetypes
import os
import signal
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp
from loguru import logger


APP_NAME = "whatsapp-transcribe"

LOG_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"

DEFAULT_API_URL = "https://api.openai.com/v1/audio/transcriptions"
DEFAULT_DB_DIALECT = "sqlite3"
DEFAULT_DB_ADDRESS = "file:whatsmeow.db?_foreign_keys=on"
DEFAULT_REPLY_PREFIX = "🤖 Transcription:\n"
DEFAULT_SECRETS_DIR = "./secrets"
SECRETS_FILE_NAME = "whatsapp.env"

TRANSCRIPTION_MODEL = "whisper-1"
TRANSCRIPTION_RESPONSE_FORMAT = "text"
TRANSCRIPTION_FILE_FIELD = "file"
TRANSCRIPTION_FILE_NAME = "ptt.oga"

PAIR_DECISION_SECONDS = 3.0

DEFAULT_USER_SERVER = "s.whatsapp.net"


class SessionError(Exception):
    """A messaging client operation failed (connect, send, download, ...)."""


# ---------------------------------------------------------------------------
# logging


class InterceptHandler(logging.Handler):
    """Route stdlib logging records (neonize, aiohttp) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logger.debug("logging configured at level {}", level)


# ---------------------------------------------------------------------------
# env / secrets


def load_env_file_if_exists(path: Path) -> None:
    """
    Minimal KEY=VALUE loader (no quoting, no escapes).
    Variables already present in the environment win.
    """
    if not path.exists():
        logger.debug("env file not found: {}", path)
        return
    logger.debug("loading env from {}", path)
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        k, v = line.split("=", 1)
        k = k.strip()
        v = v.strip()
        if k and k not in os.environ:
            os.environ[k] = v
            logger.debug("env set {} (from file)", k)


def ensure_secrets_example(secrets_dir: Path) -> None:
    secrets_dir.mkdir(parents=True, exist_ok=True)
    example = secrets_dir / f"{SECRETS_FILE_NAME}.example"
    if not example.exists():
        logger.info("creating example secrets file: {}", example)
        example.write_text(
            "\n".join([
                f"# Copy to {SECRETS_FILE_NAME} and fill in the values",
                "API_KEY=sk-...",
                "",
                "# (Optional) overrides:",
                f"# API_URL={DEFAULT_API_URL}",
                f"# DB_DIALECT={DEFAULT_DB_DIALECT}",
                f"# DB_ADDRESS={DEFAULT_DB_ADDRESS}",
                "# REPLY_PREFIX=",
                "# LOG_LEVEL=DEBUG",
                "",
            ]) + "\n",
            encoding="utf-8"
        )


# ---------------------------------------------------------------------------
# JIDs


@dataclass(frozen=True)
class Jid:
    user: str
    server: str
    agent: int = 0
    device: int = 0

    def __str__(self) -> str:
        if self.agent:
            return f"{self.user}.{self.agent}:{self.device}@{self.server}"
        if self.device:
            return f"{self.user}:{self.device}@{self.server}"
        if self.user:
            return f"{self.user}@{self.server}"
        return self.server

    def non_ad(self) -> "Jid":
        """Same user without agent and device, as used when quoting messages."""
        return Jid(self.user, self.server)


def parse_jid_string(value: str) -> Jid:
    """
    user[.agent][:device]@server, or a bare server name.
    Raises ValueError when agent or device are not numbers.
    """
    user, sep, server = value.rpartition("@")
    if not sep:
        return Jid("", value)
    agent = device = 0
    if ":" in user:
        user, device_str = user.split(":", 1)
        try:
            device = int(device_str)
        except ValueError:
            raise ValueError(f"failed to parse device {device_str!r}") from None
    if "." in user:
        user, agent_str = user.split(".", 1)
        try:
            agent = int(agent_str)
        except ValueError:
            raise ValueError(f"failed to parse agent {agent_str!r}") from None
    return Jid(user, server, agent, device)


def parse_recipient(arg: str) -> Optional[Jid]:
    """
    Operator-supplied recipient: a phone number (optionally with +) on the
    default user server, or a full JID. Logs and returns None when invalid.
    """
    if arg.startswith("+"):
        arg = arg[1:]
    if not arg:
        logger.error("Invalid JID {!r}: empty", arg)
        return None
    if "@" not in arg:
        return Jid(arg, DEFAULT_USER_SERVER)
    try:
        recipient = parse_jid_string(arg)
    except ValueError as e:
        logger.error("Invalid JID {}: {}", arg, e)
        return None
    if not recipient.user:
        logger.error("Invalid JID {}: no user specified", arg)
        return None
    return recipient


# ---------------------------------------------------------------------------
# events and messages


@dataclass
class AudioAttachment:
    ptt: bool
    mimetype: str = ""
    seconds: int = 0
    # protocol message holding the media keys, handed back to download()
    payload: Any = None


@dataclass
class MessageEvent:
    id: str
    chat: Jid
    sender: Jid
    is_group: bool = False
    push_name: str = ""
    timestamp: Any = None
    type: str = ""
    category: str = ""
    view_once: bool = False
    ephemeral: bool = False
    view_once_v2: bool = False
    document_with_caption: bool = False
    edit: bool = False
    audio: Optional[AudioAttachment] = None
    payload: Any = None

    @property
    def source(self) -> str:
        if self.is_group:
            return f"{self.sender} in {self.chat}"
        return str(self.chat)

    def describe(self) -> List[str]:
        parts = [f"pushname: {self.push_name}", f"timestamp: {self.timestamp}"]
        if self.type:
            parts.append(f"type: {self.type}")
        if self.category:
            parts.append(f"category: {self.category}")
        if self.view_once:
            parts.append("view once")
        if self.ephemeral:
            parts.append("ephemeral")
        if self.view_once_v2:
            parts.append("ephemeral (v2)")
        if self.document_with_caption:
            parts.append("document with caption")
        if self.edit:
            parts.append("edit")
        return parts


@dataclass
class StreamReplaced:
    pass


@dataclass
class Disconnected:
    pass


@dataclass
class VoiceNote:
    audio: bytes
    message_id: str
    sender: Jid
    chat: Jid
    ptt: bool
    payload: Any = None


@dataclass
class ReplyMessage:
    chat: Jid
    text: str
    quoted_id: Optional[str] = None
    quoted_sender: Optional[Jid] = None
    quoted_payload: Any = None

    @property
    def quoted(self) -> bool:
        return self.quoted_id is not None


class MessengerClient(ABC):
    """What the bot needs from the WhatsApp session."""

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    async def logout(self) -> None: ...

    @abstractmethod
    async def send_text(self, to: Jid, text: str) -> Any:
        """Send a plain text message, returns the server timestamp."""

    @abstractmethod
    async def send_reply(self, reply: ReplyMessage) -> None: ...

    @abstractmethod
    async def download(self, attachment: AudioAttachment) -> bytes: ...

    @abstractmethod
    async def pair_phone(self, phone: str) -> str:
        """Request a phone linking code."""


# ---------------------------------------------------------------------------
# transcription


class Transcriber:
    """
    Whisper-compatible HTTP transcription client.
    transcribe() never raises on transport problems: it logs a warning and returns None.
    The body is returned for every HTTP status, including errors.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str = TRANSCRIPTION_MODEL,
        response_format: str = TRANSCRIPTION_RESPONSE_FORMAT,
        filename: str = TRANSCRIPTION_FILE_NAME,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.response_format = response_format
        self.filename = filename
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            logger.debug("transcription: new http session")
        return self._session

    def build_form(self, audio: bytes) -> aiohttp.FormData:
        content_type, _ = mimetypes.guess_type(self.filename)
        form = aiohttp.FormData()
        form.add_field("model", self.model)
        form.add_field("response_format", self.response_format)
        form.add_field(
            TRANSCRIPTION_FILE_FIELD,
            audio,
            filename=self.filename,
            content_type=content_type or "application/octet-stream",
        )
        return form

    async def transcribe(self, audio: bytes) -> Optional[str]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            form = self.build_form(audio)
            session = await self._get_session()
            async with session.post(self.api_url, data=form, headers=headers) as resp:
                logger.info("transcription: response status {} {}", resp.status, resp.reason)
                status = resp.status
                body = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("transcription: request to {} failed: {!r}", self.api_url, e)
            return None

        text = body.decode("utf-8", errors="replace")
        if status != 200:
            logger.warning("transcription: response „{}“", text)
        return text

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def build_reply(note: VoiceNote, transcript: str, prefix: str = "", quote: bool = True) -> ReplyMessage:
    text = prefix + transcript
    if not quote:
        return ReplyMessage(chat=note.chat, text=text)
    return ReplyMessage(
        chat=note.chat,
        text=text,
        quoted_id=note.message_id,
        quoted_sender=note.sender,
        quoted_payload=note.payload,
    )


# ---------------------------------------------------------------------------
# event dispatch


class EventDispatcher:
    """
    Routes session events. Two states: running and terminated.
    StreamReplaced / Disconnected terminate once and set the shutdown event;
    voice notes are transcribed and answered in the chat they came from.
    """

    RUNNING = "running"
    TERMINATED = "terminated"

    def __init__(
        self,
        client: MessengerClient,
        transcriber: Transcriber,
        shutdown: asyncio.Event,
        reply_prefix: str = DEFAULT_REPLY_PREFIX,
        quote_replies: bool = True,
    ):
        self.client = client
        self.transcriber = transcriber
        self.shutdown = shutdown
        self.reply_prefix = reply_prefix
        self.quote_replies = quote_replies
        self.state = self.RUNNING

    @property
    def terminated(self) -> bool:
        return self.state == self.TERMINATED

    async def dispatch(self, event: Any) -> None:
        if isinstance(event, (StreamReplaced, Disconnected)):
            self._terminate(event)
        elif self.terminated:
            logger.debug("dropping {} after termination", type(event).__name__)
        elif isinstance(event, MessageEvent):
            await self.handle_message(event)

    def _terminate(self, event: Any) -> None:
        if self.terminated:
            return
        self.state = self.TERMINATED
        logger.info("{} received, shutting down", type(event).__name__)
        self.shutdown.set()

    async def handle_message(self, evt: MessageEvent) -> None:
        logger.info("Received message {} from {} ({}).", evt.id, evt.source, ", ".join(evt.describe()))

        attachment = evt.audio
        if attachment is None:
            return

        try:
            audio = await self.client.download(attachment)
        except SessionError as e:
            logger.error("Failed to download audio: {}", e)
            return

        if not attachment.ptt:
            logger.debug("message {}: audio is not a voice note, skipping", evt.id)
            return

        note = VoiceNote(
            audio=audio,
            message_id=evt.id,
            sender=evt.sender,
            chat=evt.chat,
            ptt=attachment.ptt,
            payload=evt.payload,
        )
        logger.debug("message {}: transcribing {} bytes", evt.id, len(note.audio))
        transcript = await self.transcriber.transcribe(note.audio)
        if transcript is None:
            return

        reply = build_reply(note, transcript, self.reply_prefix, self.quote_replies)
        try:
            await self.client.send_reply(reply)
        except SessionError as e:
            logger.error("Failed to send transcription for {}: {}", evt.id, e)
            return
        logger.info("Sent transcription for {} to {}", evt.id, reply.chat)


# ---------------------------------------------------------------------------
# pairing


class PairingGate:
    """
    Operator decision on a new pairing. While awaiting, stdin lines go here:
    r rejects, a accepts, silence accepts after the window.
    """

    IDLE = "idle"
    AWAITING = "awaiting"

    def __init__(self, window: float = PAIR_DECISION_SECONDS):
        self.window = window
        self.state = self.IDLE
        self._decision: Optional["asyncio.Future[bool]"] = None

    @property
    def awaiting(self) -> bool:
        return self.state == self.AWAITING

    async def decide(self, jid: Any, platform: str, business_name: str) -> bool:
        self._decision = asyncio.get_running_loop().create_future()
        self.state = self.AWAITING
        logger.info(
            "Pairing {} (platform: {!r}, business name: {!r}). Type r within {:g} seconds to reject pair",
            jid, platform, business_name, self.window,
        )
        try:
            reject = await asyncio.wait_for(self._decision, self.window)
        except asyncio.TimeoutError:
            reject = False
        finally:
            self.state = self.IDLE
            self._decision = None

        if reject:
            logger.info("Rejecting pair")
            return False
        logger.info("Accepting pair")
        return True

    def answer(self, line: str) -> bool:
        """Offer an operator line to a pending decision. True if the line was consumed."""
        if not self.awaiting or self._decision is None:
            return False
        if line in ("r", "a") and not self._decision.done():
            self._decision.set_result(line == "r")
        return True


# ---------------------------------------------------------------------------
# operator commands


class CommandDispatcher:
    def __init__(self, client: MessengerClient, pairing: PairingGate):
        self.client = client
        self.pairing = pairing
        self.handlers: Dict[str, Callable[[List[str]], Awaitable[None]]] = {
            "pair-phone": self.pair_phone,
            "reconnect": self.reconnect,
            "logout": self.logout,
            "send": self.send,
        }

    async def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        if self.pairing.answer(line):
            return
        name, *args = line.split()
        handler = self.handlers.get(name.lower())
        if handler is None:
            logger.debug("ignoring unknown command {!r}", name)
            return
        await handler(args)

    async def run(self, lines: "asyncio.Queue[Optional[str]]", shutdown: asyncio.Event) -> None:
        while True:
            line = await lines.get()
            if line is None:
                logger.info("Stdin closed, exiting")
                shutdown.set()
                return
            await self.handle_line(line)

    async def pair_phone(self, args: List[str]) -> None:
        if len(args) < 1:
            logger.error("Usage: pair-phone <number>")
            return
        # not caught: a failed pairing request ends the process
        linking_code = await self.client.pair_phone(args[0])
        print("Linking code:", linking_code, flush=True)

    async def reconnect(self, args: List[str]) -> None:
        try:
            await self.client.disconnect()
            await self.client.connect()
        except SessionError as e:
            logger.error("Failed to connect: {}", e)

    async def logout(self, args: List[str]) -> None:
        try:
            await self.client.logout()
        except SessionError as e:
            logger.error("Error logging out: {}", e)
        else:
            logger.info("Successfully logged out")

    async def send(self, args: List[str]) -> None:
        if len(args) < 2:
            logger.error("Usage: send <jid> <text>")
            return
        recipient = parse_recipient(args[0])
        if recipient is None:
            return
        try:
            timestamp = await self.client.send_text(recipient, " ".join(args[1:]))
        except SessionError as e:
            logger.error("Error sending message: {}", e)
        else:
            logger.info("Message sent (server timestamp: {})", timestamp)


class StdinReader:
    """Daemon thread feeding non-empty stdin lines into an asyncio queue; None marks EOF."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: "asyncio.Queue[Optional[str]]", stream=None):
        self._loop = loop
        self._queue = queue
        self._stream = stream if stream is not None else sys.stdin

    def start(self) -> threading.Thread:
        thread = threading.Thread(target=self._run, name="stdin-reader", daemon=True)
        thread.start()
        return thread

    def _put(self, line: Optional[str]) -> None:
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, line)

    def _run(self) -> None:
        for raw in self._stream:
            line = raw.strip()
            if line:
                self._put(line)
        self._put(None)


# ---------------------------------------------------------------------------
# configuration


@dataclass
class Settings:
    debug: bool = False
    db_dialect: str = DEFAULT_DB_DIALECT
    db_address: str = DEFAULT_DB_ADDRESS
    api_url: str = DEFAULT_API_URL
    api_key: str = ""
    request_full_sync: bool = False
    reply_prefix: str = DEFAULT_REPLY_PREFIX
    plain_replies: bool = False
    secrets_dir: Path = field(default_factory=lambda: Path(DEFAULT_SECRETS_DIR))

    @property
    def log_level(self) -> str:
        if self.debug:
            return "DEBUG"
        return os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def quote_replies(self) -> bool:
        return not self.plain_replies


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Transcribe incoming WhatsApp voice notes and reply with the text.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--db-dialect", default=os.getenv("DB_DIALECT", DEFAULT_DB_DIALECT),
                        help="Database dialect (sqlite3 or postgres)")
    parser.add_argument("--db-address", default=os.getenv("DB_ADDRESS", DEFAULT_DB_ADDRESS),
                        help="Database address")
    parser.add_argument("--api-url", default=os.getenv("API_URL", DEFAULT_API_URL),
                        help="Transcription API URL")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""),
                        help="Transcription API key (default: $API_KEY)")
    parser.add_argument("--request-full-sync", action="store_true",
                        help="Request full (1 year) history sync when logging in")
    parser.add_argument("--reply-prefix", default=os.getenv("REPLY_PREFIX", DEFAULT_REPLY_PREFIX),
                        help="Text put in front of every transcription reply")
    parser.add_argument("--plain-replies", action="store_true",
                        help="Reply with plain text instead of quoting the voice note")
    parser.add_argument("--secrets-dir", default=os.getenv("SECRETS_DIR", DEFAULT_SECRETS_DIR),
                        help=f"Directory holding {SECRETS_FILE_NAME}")
    return parser


def load_settings(argv: Optional[Sequence[str]] = None) -> Settings:
    # secrets file has to be loaded before the env-backed defaults are read
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--secrets-dir", default=os.getenv("SECRETS_DIR", DEFAULT_SECRETS_DIR))
    known, _ = pre.parse_known_args(argv)
    secrets_dir = Path(known.secrets_dir).resolve()
    ensure_secrets_example(secrets_dir)
    load_env_file_if_exists(secrets_dir / SECRETS_FILE_NAME)

    args = build_parser().parse_args(argv)
    return Settings(
        debug=args.debug,
        db_dialect=args.db_dialect,
        db_address=args.db_address,
        api_url=args.api_url,
        api_key=args.api_key,
        request_full_sync=args.request_full_sync,
        reply_prefix=args.reply_prefix,
        plain_replies=args.plain_replies,
        secrets_dir=secrets_dir,
    )


def database_name(dialect: str, address: str) -> str:
    """
    Device store location as neonize expects it: a sqlite file path or a postgres URL.
    """
    if dialect == "sqlite3":
        if address.startswith("file:"):
            address = address[len("file:"):].split("?", 1)[0]
        if not address:
            raise ValueError("empty sqlite3 database path")
        return address
    if dialect == "postgres":
        return address
    raise ValueError(f"unsupported database dialect {dialect!r}")


# ---------------------------------------------------------------------------
# main


async def run(settings: Settings) -> None:
    # neonize loads its native library on import, keep it out of module import time
    from whatsapp_session import NeonizeSession

    try:
        db_name = database_name(settings.db_dialect, settings.db_address)
    except ValueError as e:
        logger.error("Failed to connect to database: {}", e)
        return
    if not settings.api_key:
        logger.warning("no transcription API key set (--api-key or API_KEY)")

    pairing = PairingGate()
    try:
        session = NeonizeSession(db_name, request_full_sync=settings.request_full_sync, pairing=pairing)
    except SessionError as e:
        logger.error("Failed to get device: {}", e)
        return

    shutdown = asyncio.Event()
    transcriber = Transcriber(settings.api_url, settings.api_key)
    dispatcher = EventDispatcher(
        session,
        transcriber,
        shutdown,
        reply_prefix=settings.reply_prefix,
        quote_replies=settings.quote_replies,
    )
    session.add_event_handler(dispatcher.dispatch)

    try:
        await session.connect()
    except SessionError as e:
        logger.error("Failed to connect: {}", e)
        await transcriber.close()
        return

    loop = asyncio.get_running_loop()

    def on_interrupt() -> None:
        logger.info("Interrupt received, exiting")
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, on_interrupt)

    lines: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
    StdinReader(loop, lines).start()
    commands = CommandDispatcher(session, pairing)
    command_task = asyncio.create_task(commands.run(lines, shutdown))
    shutdown_task = asyncio.create_task(shutdown.wait())

    try:
        done, _ = await asyncio.wait({command_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        if command_task in done:
            # re-raises a failed pair-phone request
            command_task.result()
    finally:
        for task in (command_task, shutdown_task):
            task.cancel()
        try:
            await session.disconnect()
        except SessionError as e:
            logger.warning("disconnect failed: {}", e)
        await transcriber.close()


def cli(argv: Optional[Sequence[str]] = None) -> None:
    settings = load_settings(argv)
    configure_logging(settings.log_level)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("stopped")


if __name__ == "__main__":
    # whatsapp_session imports this module by name, run from there so both share one copy
    import whatsapp_transcribe
    whatsapp_transcribe.cli()
