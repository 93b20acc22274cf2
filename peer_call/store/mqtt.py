from __future__ import annotations

import asyncio
import uuid

import aiomqtt

from ..errors import StoreUnavailable
from ..logging import get_logger
from ..models import SessionDescription, Slot
from .base import ChangeHandler, ErrorHandler, RendezvousStore, Subscription

logger = get_logger(__name__)

_QOS = 1
_EMPTY = b""


class MQTTStore(RendezvousStore):
    """Rendezvous store on an MQTT broker.

    Each slot is a retained message on ``{prefix}/rooms/{room}/{slot}``.
    An empty retained payload clears the slot. Remove-on-disconnect uses
    a sentinel connection per slot whose will message is that empty
    payload, so the broker clears the slot if this process vanishes.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 1883,
        username: str | None = None,
        password: str | None = None,
        prefix: str = "peercall",
        read_timeout: float = 1.0,
        keepalive: int = 15,
        client_id: str | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.prefix = prefix
        self.read_timeout = read_timeout
        self.keepalive = keepalive
        self.client_id = client_id or f"peercall-{uuid.uuid4().hex[:12]}"

        self.client: aiomqtt.Client | None = None
        self._listen_task: asyncio.Task | None = None
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._last_values: dict[str, SessionDescription | None] = {}
        self._pending_reads: dict[str, list[asyncio.Future]] = {}
        self._sentinels: dict[str, aiomqtt.Client] = {}
        # UNSUBSCRIBEs sent after the last subscription of a topic went away.
        self._unsubscribing: dict[str, asyncio.Task] = {}

    def topic(self, room: str, slot: Slot) -> str:
        return f"{self.prefix}/rooms/{room}/{slot.value}"

    def _new_client(self, identifier: str, will: aiomqtt.Will | None = None) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            identifier=identifier,
            keepalive=self.keepalive,
            will=will,
        )

    async def connect(self):
        """Connect to the broker and start dispatching messages."""
        self.client = self._new_client(self.client_id)
        try:
            await self.client.__aenter__()
        except aiomqtt.MqttError as exc:
            self.client = None
            raise StoreUnavailable(f"cannot reach MQTT broker at {self.host}:{self.port}: {exc}") from exc
        self._listen_task = asyncio.create_task(self._listen())
        logger.info("store_connected", host=self.host, port=self.port, client=self.client_id)

    async def close(self):
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                sub.cancel()
        for topic in list(self._sentinels):
            await self._close_sentinel(topic)
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None
        for task in list(self._unsubscribing.values()):
            task.cancel()
        if self.client is not None:
            try:
                await self.client.__aexit__(None, None, None)
            except aiomqtt.MqttError as exc:
                logger.warning("store_disconnect_error", error=str(exc))
            self.client = None
        logger.info("store_closed", client=self.client_id)

    def _require_client(self) -> aiomqtt.Client:
        if self.client is None:
            raise StoreUnavailable("MQTT store is not connected; call connect() first")
        return self.client

    # ------------------------------------------------------------------
    # Store operations
    # ------------------------------------------------------------------

    async def read_once(self, room: str, slot: Slot) -> SessionDescription | None:
        client = self._require_client()
        topic = self.topic(room, slot)
        if topic in self._subscriptions:
            return self._last_values.get(topic)

        future = asyncio.get_running_loop().create_future()
        self._pending_reads.setdefault(topic, []).append(future)
        try:
            await self._settle_unsubscribe(topic)
            await client.subscribe(topic, qos=_QOS)
            try:
                # Retained values arrive right after SUBACK; silence means absent.
                return await asyncio.wait_for(future, timeout=self.read_timeout)
            except asyncio.TimeoutError:
                return None
        except aiomqtt.MqttError as exc:
            raise StoreUnavailable(f"read of {topic} failed: {exc}") from exc
        finally:
            pending = self._pending_reads.get(topic, [])
            if future in pending:
                pending.remove(future)
            if not pending:
                self._pending_reads.pop(topic, None)
                if topic not in self._subscriptions:
                    await self._unsubscribe(topic)

    async def write(self, room: str, slot: Slot, description: SessionDescription) -> None:
        await self._publish(self.topic(room, slot), description.to_json().encode())
        logger.debug("slot_written", room=room, slot=slot.value, kind=description.kind)

    async def delete(self, room: str, slot: Slot) -> None:
        await self._publish(self.topic(room, slot), _EMPTY)
        logger.debug("slot_deleted", room=room, slot=slot.value)

    async def _publish(self, topic: str, payload: bytes) -> None:
        client = self._require_client()
        try:
            await client.publish(topic, payload, qos=_QOS, retain=True)
        except aiomqtt.MqttError as exc:
            raise StoreUnavailable(f"publish to {topic} failed: {exc}") from exc

    async def subscribe(
        self,
        room: str,
        slot: Slot,
        on_change: ChangeHandler,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        client = self._require_client()
        topic = self.topic(room, slot)
        sub = Subscription(room, slot, on_change, on_error, on_cancel=self._release)
        first = topic not in self._subscriptions
        self._subscriptions.setdefault(topic, []).append(sub)
        if first:
            try:
                await self._settle_unsubscribe(topic)
                await client.subscribe(topic, qos=_QOS)
            except aiomqtt.MqttError as exc:
                sub.cancel()
                raise StoreUnavailable(f"subscribe to {topic} failed: {exc}") from exc
        elif self._last_values.get(topic) is not None:
            asyncio.get_running_loop().call_soon(sub.deliver, self._last_values[topic])
        logger.debug("slot_subscribed", room=room, slot=slot.value)
        return sub

    def _release(self, sub: Subscription) -> None:
        topic = self.topic(sub.room, sub.slot)
        subs = self._subscriptions.get(topic, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscriptions.pop(topic, None)
            self._last_values.pop(topic, None)
            if topic not in self._pending_reads and self.client is not None:
                task = asyncio.get_running_loop().create_task(self._unsubscribe(topic))
                self._unsubscribing[topic] = task
                task.add_done_callback(lambda t: self._unsubscribe_done(topic, t))

    def _unsubscribe_done(self, topic: str, task: asyncio.Task) -> None:
        if self._unsubscribing.get(topic) is task:
            del self._unsubscribing[topic]

    async def _settle_unsubscribe(self, topic: str) -> None:
        """Let a pending UNSUBSCRIBE reach the broker before subscribing again."""
        task = self._unsubscribing.get(topic)
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def _unsubscribe(self, topic: str) -> None:
        if self.client is None:
            return
        try:
            await self.client.unsubscribe(topic)
        except aiomqtt.MqttError as exc:
            logger.warning("unsubscribe_failed", topic=topic, error=str(exc))

    # ------------------------------------------------------------------
    # Remove-on-disconnect
    # ------------------------------------------------------------------

    async def on_disconnect_remove(self, room: str, slot: Slot) -> None:
        topic = self.topic(room, slot)
        if topic in self._sentinels:
            return
        will = aiomqtt.Will(topic, payload=_EMPTY, qos=_QOS, retain=True)
        sentinel = self._new_client(f"{self.client_id}-will-{slot.value}", will=will)
        try:
            await sentinel.__aenter__()
        except aiomqtt.MqttError as exc:
            raise StoreUnavailable(f"cannot register disconnect trigger for {topic}: {exc}") from exc
        self._sentinels[topic] = sentinel
        logger.debug("disconnect_trigger_registered", room=room, slot=slot.value)

    async def cancel_disconnect_remove(self, room: str, slot: Slot) -> None:
        await self._close_sentinel(self.topic(room, slot))

    async def _close_sentinel(self, topic: str) -> None:
        sentinel = self._sentinels.pop(topic, None)
        if sentinel is None:
            return
        # A clean DISCONNECT discards the will message.
        try:
            await sentinel.__aexit__(None, None, None)
        except aiomqtt.MqttError as exc:
            logger.warning("sentinel_close_failed", topic=topic, error=str(exc))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _listen(self):
        """Dispatch broker messages to pending reads and subscriptions."""
        try:
            async for message in self.client.messages:
                self._dispatch(str(message.topic), message.payload)
        except aiomqtt.MqttError as exc:
            logger.error("store_connection_lost", error=str(exc))
            error = StoreUnavailable(f"connection to MQTT broker lost: {exc}")
            for pending in list(self._pending_reads.values()):
                for future in pending:
                    if not future.done():
                        future.set_exception(error)
            for subs in list(self._subscriptions.values()):
                for sub in list(subs):
                    sub.fail(error)

    def _dispatch(self, topic: str, payload) -> None:
        raw = bytes(payload or b"")
        if raw:
            try:
                value = SessionDescription.from_json(raw)
            except ValueError as exc:
                logger.warning("invalid_slot_payload", topic=topic, error=str(exc))
                return
        else:
            value = None

        for future in self._pending_reads.get(topic, []):
            if not future.done():
                future.set_result(value)

        subs = self._subscriptions.get(topic)
        if subs is None:
            return
        self._last_values[topic] = value
        for sub in list(subs):
            sub.deliver(value)
