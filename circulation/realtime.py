"""
Değişiklik akışı (change feed): depo yazmalarını dinleyicilere iten kanallar.

RealtimeHub, deponun taşıma katmanıdır; her commit sonrası satır düzeyindeki
INSERT/UPDATE/DELETE olaylarını ilgili tabloya abone kanallara iletir.
ChangeFeedSubscriber ise çağıranlara her abonelik için benzersiz adlı bir kanal
açar, bağlantı kopup geri geldiğinde kanalları yeniden açar.

Teslimat en fazla bir kez (at-most-once) yapılır; tablolar arası sıra garanti
edilmez, tek kanal içinde sıra en iyi çaba ile korunur.
"""

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
ALL_EVENTS = (INSERT, UPDATE, DELETE)
DEFAULT_EVENTS = (INSERT, UPDATE)

SUBSCRIBED = "SUBSCRIBED"
CLOSED = "CLOSED"


@dataclass
class ChangeEvent:
    """Tek bir satır değişikliğinin tanımı."""
    event_type: str
    table: str
    new_record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None
    commit_timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventType": self.event_type,
            "table": self.table,
            "new": self.new_record,
            "old": self.old_record,
            "commit_timestamp": self.commit_timestamp,
        }


def _maybe_await(result):
    if inspect.isawaitable(result):
        return result
    return None


class Channel:
    """Bir tabloya bağlı, adlandırılmış mantıksal kanal."""

    def __init__(self, hub: "RealtimeHub", name: str, table: str):
        self.hub = hub
        self.name = name
        self.table = table
        self.state = CLOSED
        self._callbacks: List[Callable[[ChangeEvent], Any]] = []
        self._status_callback: Optional[Callable[[str], Any]] = None

    def on(self, callback: Callable[[ChangeEvent], Any]) -> "Channel":
        self._callbacks.append(callback)
        return self

    def subscribe(self, on_status: Optional[Callable[[str], Any]] = None) -> "Channel":
        self._status_callback = on_status
        if not self.hub.connected:
            # Bağlantı yokken kanal kapalı kalır; yeniden bağlanınca abone yeniden açar
            self._set_state(CLOSED)
            return self
        self._set_state(SUBSCRIBED)
        return self

    def _set_state(self, state: str) -> None:
        self.state = state
        if self._status_callback:
            try:
                self._status_callback(state)
            except Exception as e:
                logger.error(f"Channel status callback failed for {self.name}: {e}")

    async def _deliver(self, event: ChangeEvent) -> None:
        if self.state != SUBSCRIBED:
            return
        for callback in list(self._callbacks):
            try:
                pending = _maybe_await(callback(event))
                if pending is not None:
                    await pending
            except Exception as e:
                # Bir dinleyicinin hatası diğerlerini etkilemez
                logger.error(f"Change listener on channel {self.name} failed: {e}")


class RealtimeHub:
    """Depo ile kanallar arasındaki itme (push) taşıyıcısı."""

    def __init__(self):
        self.connected = True
        self._channels: Dict[str, Channel] = {}
        self._reconnect_callbacks: List[Callable[[], Any]] = []
        self._pending: Set[asyncio.Task] = set()
        self._channel_seq = itertools.count(1)

    @property
    def channels(self) -> List[Channel]:
        return list(self._channels.values())

    def channel_name(self, collection: str) -> str:
        """Bu hub'a bağlı tüm istemciler arasında benzersiz kanal adı."""
        return f"{collection}-changes-{next(self._channel_seq)}"

    def channel(self, name: str, table: str) -> Channel:
        if name in self._channels:
            raise ValueError(f"Kanal adı zaten kullanımda: {name}")
        ch = Channel(self, name, table)
        self._channels[name] = ch
        return ch

    def remove_channel(self, channel: Channel) -> None:
        if self._channels.get(channel.name) is channel:
            del self._channels[channel.name]
        if channel.state != CLOSED:
            channel._set_state(CLOSED)

    def on_reconnect(self, callback: Callable[[], Any]) -> Callable[[], None]:
        self._reconnect_callbacks.append(callback)

        def remove() -> None:
            if callback in self._reconnect_callbacks:
                self._reconnect_callbacks.remove(callback)

        return remove

    def set_connected(self, connected: bool) -> None:
        """Bağlantı kaybını / geri gelişini bildir."""
        if connected == self.connected:
            return
        self.connected = connected
        if not connected:
            logger.warning("Realtime connection lost, closing channels")
            for ch in list(self._channels.values()):
                self.remove_channel(ch)
            return
        logger.info("Realtime connection restored")
        for callback in list(self._reconnect_callbacks):
            try:
                callback()
            except Exception as e:
                logger.error(f"Reconnect callback failed: {e}")

    def publish(self, events: Iterable[ChangeEvent]) -> None:
        """Commit edilmiş değişiklikleri abonelere asenkron olarak ilet."""
        events = list(events)
        if not events or not self.connected:
            return
        stamp = datetime.now(timezone.utc).isoformat()
        for event in events:
            if event.commit_timestamp is None:
                event.commit_timestamp = stamp
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None:
            asyncio.run(self._dispatch(events))
            return
        task = loop.create_task(self._dispatch(events))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _dispatch(self, events: List[ChangeEvent]) -> None:
        for event in events:
            for ch in list(self._channels.values()):
                if ch.table == event.table:
                    await ch._deliver(event)

    async def flush(self) -> None:
        """Bekleyen tüm teslimatlar bitene kadar bekle."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


@dataclass
class _Subscription:
    id: int
    collection: str
    on_change: Callable[[ChangeEvent], Any]
    events: tuple
    channel: Optional[Channel] = None
    active: bool = True


class ChangeFeedSubscriber:
    """Koleksiyon başına mantıksal abonelikler açan istemci tarafı."""

    def __init__(self, hub: RealtimeHub):
        self.hub = hub
        self._subscriptions: Dict[int, _Subscription] = {}
        self._ids = itertools.count(1)
        self._reconnect_listeners: List[Callable[[], Any]] = []
        self._remove_hook = hub.on_reconnect(self._resubscribe_all)

    def subscribe(
        self,
        collection: str,
        on_change: Callable[[ChangeEvent], Any],
        events: Optional[Iterable[str]] = None,
    ) -> Callable[[], None]:
        """Koleksiyondaki değişiklikleri dinle; aboneliği kapatan bir fonksiyon döner."""
        wanted = tuple(e.upper() for e in (events or DEFAULT_EVENTS))
        for e in wanted:
            if e not in ALL_EVENTS:
                raise ValueError(f"Bilinmeyen olay türü: {e}")
        sub = _Subscription(id=next(self._ids), collection=collection, on_change=on_change, events=wanted)
        self._subscriptions[sub.id] = sub
        self._open(sub)

        def unsubscribe() -> None:
            self._close(sub)

        return unsubscribe

    def on_reconnect(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Yeniden bağlanma sonrası çağrılır; kaçırılan olaylar tekrar oynatılmaz."""
        self._reconnect_listeners.append(callback)

        def remove() -> None:
            if callback in self._reconnect_listeners:
                self._reconnect_listeners.remove(callback)

        return remove

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    def _open(self, sub: _Subscription) -> None:
        # Her çağrı için paylaşılmayan kanal; ad hub genelinde benzersizdir
        name = self.hub.channel_name(sub.collection)

        def handle(event: ChangeEvent):
            if not sub.active or event.event_type not in sub.events:
                return None
            return sub.on_change(event)

        channel = self.hub.channel(name, sub.collection).on(handle)

        def on_status(state: str) -> None:
            if state == CLOSED and sub.active and sub.channel is channel:
                logger.info(f"Channel {channel.name} closed, waiting for reconnect")
                sub.channel = None
                self.hub.remove_channel(channel)

        sub.channel = channel
        channel.subscribe(on_status)
        logger.debug(f"Subscribed to {sub.collection} on channel {name}")

    def _close(self, sub: _Subscription) -> None:
        if not sub.active:
            return
        sub.active = False
        self._subscriptions.pop(sub.id, None)
        if sub.channel is not None:
            self.hub.remove_channel(sub.channel)
            sub.channel = None

    def _resubscribe_all(self) -> None:
        for sub in list(self._subscriptions.values()):
            if sub.channel is None or sub.channel.state != SUBSCRIBED:
                if sub.channel is not None:
                    self.hub.remove_channel(sub.channel)
                self._open(sub)
        for callback in list(self._reconnect_listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Resubscribe listener failed: {e}")

    def close(self) -> None:
        for sub in list(self._subscriptions.values()):
            self._close(sub)
        self._remove_hook()
