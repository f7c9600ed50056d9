# whatsapp_session.py
import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Set

from loguru import logger
from neonize.aioze.client import NewAClient
from neonize.aioze.events import DisconnectedEv, MessageEv, PairStatusEv, StreamReplacedEv
from neonize.proto.Neonize_pb2 import JID
from neonize.proto.waCompanionReg.WAWebProtobufsCompanionReg_pb2 import DeviceProps
from neonize.proto.waE2E.WAWebProtobufsE2E_pb2 import ContextInfo, ExtendedTextMessage, Message

from whatsapp_transcribe import (
    AudioAttachment,
    Disconnected,
    Jid,
    MessageEvent,
    MessengerClient,
    PairingGate,
    ReplyMessage,
    SessionError,
    StreamReplaced,
)


DEVICE_OS_NAME = "whatsapp-transcribe"

FULL_SYNC_DAYS_LIMIT = 3650
FULL_SYNC_SIZE_MB_LIMIT = 102400
FULL_SYNC_STORAGE_QUOTA_MB = 102400

DISCONNECT_GRACE_SECONDS = 5.0

EventHandler = Callable[[Any], Awaitable[None]]


def device_props(request_full_sync: bool) -> DeviceProps:
    props = DeviceProps(os=DEVICE_OS_NAME)
    if request_full_sync:
        props.requireFullSync = True
        props.historySyncConfig.CopyFrom(DeviceProps.HistorySyncConfig(
            fullSyncDaysLimit=FULL_SYNC_DAYS_LIMIT,
            fullSyncSizeMbLimit=FULL_SYNC_SIZE_MB_LIMIT,
            storageQuotaMb=FULL_SYNC_STORAGE_QUOTA_MB,
        ))
    return props


def to_neonize_jid(jid: Jid) -> JID:
    return JID(
        User=jid.user,
        Server=jid.server,
        RawAgent=jid.agent,
        Device=jid.device,
        Integrator=0,
        IsEmpty=not (jid.user or jid.server),
    )


def from_neonize_jid(jid: JID) -> Jid:
    return Jid(user=jid.User, server=jid.Server, agent=jid.RawAgent, device=jid.Device)


def convert_message(evt: MessageEv) -> MessageEvent:
    info = evt.Info
    source = info.MessageSource
    audio = None
    if evt.Message.HasField("audioMessage"):
        am = evt.Message.audioMessage
        audio = AudioAttachment(ptt=am.PTT, mimetype=am.mimetype, seconds=am.seconds, payload=evt.Message)
    return MessageEvent(
        id=info.ID,
        chat=from_neonize_jid(source.Chat),
        sender=from_neonize_jid(source.Sender),
        is_group=source.IsGroup,
        push_name=info.Pushname,
        timestamp=info.Timestamp,
        type=info.Type,
        category=info.Category,
        view_once=evt.IsViewOnce,
        ephemeral=evt.IsEphemeral,
        view_once_v2=evt.IsViewOnceV2,
        document_with_caption=evt.IsDocumentWithCaption,
        edit=evt.IsEdit,
        audio=audio,
        payload=evt.Message,
    )


def build_outgoing(reply: ReplyMessage) -> Message:
    if not reply.quoted:
        return Message(conversation=reply.text)
    context = ContextInfo(stanzaID=reply.quoted_id, participant=str(reply.quoted_sender.non_ad()))
    if reply.quoted_payload is not None:
        context.quotedMessage.CopyFrom(reply.quoted_payload)
    return Message(extendedTextMessage=ExtendedTextMessage(text=reply.text, contextInfo=context))


class NeonizeSession(MessengerClient):
    """
    WhatsApp session backed by neonize (whatsmeow bindings).
    Library events become application events, each handled in its own task.
    Library failures surface as SessionError.
    """

    def __init__(self, database: str, request_full_sync: bool = False, pairing: Optional[PairingGate] = None):
        self.database = database
        self.pairing = pairing
        try:
            self._client = NewAClient(database, props=device_props(request_full_sync))
        except Exception as e:
            raise SessionError(f"cannot open device store {database!r}: {e}") from e
        self._handlers: List[EventHandler] = []
        self._tasks: Set[asyncio.Task] = set()
        self._connection: Optional[asyncio.Task] = None

        self._client.event(MessageEv)(self._on_message)
        self._client.event(StreamReplacedEv)(self._on_stream_replaced)
        self._client.event(DisconnectedEv)(self._on_disconnected)
        self._client.event(PairStatusEv)(self._on_pair_status)
        logger.debug("session created for device store {}", database)

    def add_event_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def _spawn(self, coro: Awaitable[None], what: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.opt(exception=t.exception()).error("{} failed", what)

        task.add_done_callback(done)

    def _emit(self, event: Any) -> None:
        for handler in self._handlers:
            self._spawn(handler(event), f"handling {type(event).__name__}")

    async def _on_message(self, _client: NewAClient, evt: MessageEv) -> None:
        self._emit(convert_message(evt))

    async def _on_stream_replaced(self, _client: NewAClient, _evt: StreamReplacedEv) -> None:
        self._emit(StreamReplaced())

    async def _on_disconnected(self, _client: NewAClient, _evt: DisconnectedEv) -> None:
        self._emit(Disconnected())

    async def _on_pair_status(self, _client: NewAClient, evt: PairStatusEv) -> None:
        if evt.Error:
            logger.error("Pairing failed: {}", evt.Error)
            return
        jid = from_neonize_jid(evt.ID)
        logger.info("Paired as {}", jid)
        if self.pairing is not None:
            self._spawn(self._confirm_pairing(jid, evt.Platform, evt.BusinessName), "pairing decision")

    async def _confirm_pairing(self, jid: Jid, platform: str, business_name: str) -> None:
        # the handshake is already done when neonize reports it, a rejection logs out again
        if await self.pairing.decide(jid, platform, business_name):
            return
        await self.logout()

    async def _call(self, action: str, coro: Awaitable[Any]) -> Any:
        try:
            return await coro
        except Exception as e:
            raise SessionError(f"{action} failed: {e}") from e

    async def connect(self) -> None:
        if self._connection is not None and not self._connection.done():
            logger.debug("already connected")
            return
        # neonize returns the task running the native client loop
        task = await self._call("connect", self._client.connect())
        task.add_done_callback(self._on_connection_done)
        self._connection = task
        # let the connection start so immediate failures are reported here
        await asyncio.sleep(0)
        if task.done() and not task.cancelled() and task.exception() is not None:
            raise SessionError(f"connect failed: {task.exception()}")

    def _on_connection_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.debug("connection task cancelled")
        elif task.exception() is not None:
            logger.error("Failed to connect: {}", task.exception())
            self._emit(Disconnected())
        else:
            logger.debug("connection task finished")

    async def disconnect(self) -> None:
        await self._call("disconnect", self._client.disconnect())
        task = self._connection
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_GRACE_SECONDS)
        if not done:
            logger.debug("connection task still running after disconnect, cancelling")
            task.cancel()

    async def logout(self) -> None:
        await self._call("logout", self._client.logout())

    async def send_text(self, to: Jid, text: str) -> Any:
        resp = await self._call("send message", self._client.send_message(to_neonize_jid(to), Message(conversation=text)))
        return resp.Timestamp

    async def send_reply(self, reply: ReplyMessage) -> None:
        await self._call("send reply", self._client.send_message(to_neonize_jid(reply.chat), build_outgoing(reply)))

    async def download(self, attachment: AudioAttachment) -> bytes:
        return await self._call("download", self._client.download_any(attachment.payload))

    async def pair_phone(self, phone: str) -> str:
        return await self._call("pair phone", self._client.PairPhone(phone, True))
