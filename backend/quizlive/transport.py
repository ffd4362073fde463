from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from jose import JWTError

from .capability import Role, TokenIssuer, capability_allows
from .errors import PermissionDenied, TransportError
from .events import ChannelHistory
from .models import CapabilityToken
from .utils import now_ms

logger = logging.getLogger(__name__)


@dataclass
class Message:
    channel: str
    name: str
    data: Any
    client_id: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)
    seq: Optional[int] = None


@dataclass
class PresenceEvent:
    channel: str
    action: str  # enter, update or leave
    client_id: str
    data: Any = None


MessageHandler = Callable[[Message], Union[None, Awaitable[None]]]
PresenceHandler = Callable[[PresenceEvent], Union[None, Awaitable[None]]]


@dataclass(eq=False)
class Subscription:
    channel: str
    handler: Callable[..., Any]
    client_id: str
    presence: bool = False
    id: int = 0


async def dispatch(handler: Callable[..., Any], event: Any) -> None:
    """Run a channel callback; errors are logged and never end the subscription."""

    try:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Channel handler %r failed", handler)


class Connection(ABC):
    client_id: str
    capability: Dict[str, List[str]]

    @abstractmethod
    async def publish(self, channel: str, name: str, data: Any) -> Message: ...

    @abstractmethod
    async def subscribe(self, channel: str, handler: MessageHandler) -> Subscription: ...

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None: ...

    @abstractmethod
    async def presence_enter(self, channel: str, data: Any) -> None: ...

    @abstractmethod
    async def presence_leave(self, channel: str) -> None: ...

    @abstractmethod
    async def presence_subscribe(self, channel: str, handler: PresenceHandler) -> Subscription: ...

    @abstractmethod
    async def presence_members(self, channel: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def history(
        self, channel: str, after: Optional[int] = None, limit: int = 200, newest_first: bool = False
    ) -> List[Message]: ...

    @abstractmethod
    async def close(self) -> None: ...


class Transport(ABC):
    @abstractmethod
    def create_token(self, role: Role, client_id: Optional[str] = None, session_id: str = "*") -> CapabilityToken: ...

    @abstractmethod
    async def connect(self, token: CapabilityToken) -> Connection: ...


class InMemoryTransport(Transport):
    def __init__(
        self,
        issuer: TokenIssuer,
        history: Optional[ChannelHistory] = None,
        operation_timeout: float = 10.0,
    ):
        self.issuer = issuer
        self.history_store = history
        self.operation_timeout = operation_timeout
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._presence_subscriptions: Dict[str, List[Subscription]] = {}
        self._presence: Dict[str, Dict[str, Any]] = {}
        self._connections: Dict[str, List["InMemoryConnection"]] = {}
        self._ids = itertools.count(1)

    def create_token(self, role: Role, client_id: Optional[str] = None, session_id: str = "*") -> CapabilityToken:
        return self.issuer.create_token(role, client_id=client_id, session_id=session_id)

    async def connect(self, token: CapabilityToken) -> "InMemoryConnection":
        try:
            client_id, capability = self.issuer.verify(token.token)
        except JWTError as exc:
            raise PermissionDenied(f"Token rejected: {exc}") from exc
        conn = InMemoryConnection(self, client_id, capability)
        self._connections.setdefault(client_id, []).append(conn)
        logger.debug("Client %s connected", client_id)
        return conn

    async def disconnect(self, client_id: str) -> None:
        """Drop every connection of a client, as the provider does when its heartbeat stops."""

        for conn in list(self._connections.get(client_id, [])):
            await conn.close()

    def members(self, channel: str) -> Dict[str, Any]:
        return dict(self._presence.get(channel, {}))

    async def _publish(self, message: Message) -> Message:
        if self.history_store is not None:
            message.seq = await self.history_store.append(message.channel, message.name, message.data, message.client_id)
        for sub in list(self._subscriptions.get(message.channel, [])):
            await dispatch(sub.handler, message)
        return message

    async def _presence_event(self, event: PresenceEvent) -> None:
        for sub in list(self._presence_subscriptions.get(event.channel, [])):
            await dispatch(sub.handler, event)

    def _add(self, table: Dict[str, List[Subscription]], sub: Subscription) -> Subscription:
        sub.id = next(self._ids)
        table.setdefault(sub.channel, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        table = self._presence_subscriptions if sub.presence else self._subscriptions
        subs = table.get(sub.channel, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            table.pop(sub.channel, None)


class InMemoryConnection(Connection):
    def __init__(self, transport: InMemoryTransport, client_id: str, capability: Dict[str, List[str]]):
        self.transport = transport
        self.client_id = client_id
        self.capability = capability
        self.closed = False
        self._subscriptions: List[Subscription] = []
        self._present_in: set[str] = set()

    def _require(self, channel: str, operation: str) -> None:
        if self.closed:
            raise TransportError("Connection is closed")
        if not capability_allows(self.capability, channel, operation):
            raise PermissionDenied(f"Client {self.client_id} may not {operation} on {channel}")

    async def _run(self, coro: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.transport.operation_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError("Realtime operation timed out") from exc

    async def publish(self, channel: str, name: str, data: Any) -> Message:
        self._require(channel, "publish")
        message = Message(channel=channel, name=name, data=data, client_id=self.client_id)
        return await self._run(self.transport._publish(message))

    async def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        self._require(channel, "subscribe")
        sub = self.transport._add(
            self.transport._subscriptions, Subscription(channel=channel, handler=handler, client_id=self.client_id)
        )
        self._subscriptions.append(sub)
        return sub

    async def unsubscribe(self, subscription: Subscription) -> None:
        self.transport._remove(subscription)
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def presence_enter(self, channel: str, data: Any) -> None:
        self._require(channel, "presence.enter")
        members = self.transport._presence.setdefault(channel, {})
        action = "update" if self.client_id in members else "enter"
        members[self.client_id] = data
        self._present_in.add(channel)
        await self._run(self.transport._presence_event(PresenceEvent(channel, action, self.client_id, data)))

    async def presence_leave(self, channel: str) -> None:
        self._require(channel, "presence.leave")
        await self._leave(channel)

    async def _leave(self, channel: str) -> None:
        members = self.transport._presence.get(channel, {})
        data = members.pop(self.client_id, None)
        self._present_in.discard(channel)
        if not members:
            self.transport._presence.pop(channel, None)
        if data is not None:
            await self.transport._presence_event(PresenceEvent(channel, "leave", self.client_id, data))

    async def presence_subscribe(self, channel: str, handler: PresenceHandler) -> Subscription:
        self._require(channel, "presence.subscribe")
        sub = self.transport._add(
            self.transport._presence_subscriptions,
            Subscription(channel=channel, handler=handler, client_id=self.client_id, presence=True),
        )
        self._subscriptions.append(sub)
        return sub

    async def presence_members(self, channel: str) -> Dict[str, Any]:
        self._require(channel, "presence.subscribe")
        return self.transport.members(channel)

    async def history(
        self, channel: str, after: Optional[int] = None, limit: int = 200, newest_first: bool = False
    ) -> List[Message]:
        self._require(channel, "subscribe")
        store = self.transport.history_store
        if store is None:
            return []
        docs = await self._run(store.list(channel, after=after, limit=limit, newest_first=newest_first))
        return [
            Message(
                channel=channel,
                name=doc["name"],
                data=doc["data"],
                client_id=doc["clientId"],
                timestamp=doc["timestamp"],
                seq=doc["seq"],
            )
            for doc in docs
        ]

    async def close(self) -> None:
        if self.closed:
            return
        for sub in list(self._subscriptions):
            self.transport._remove(sub)
        self._subscriptions.clear()
        for channel in list(self._present_in):
            await self._leave(channel)
        self.closed = True
        conns = self.transport._connections.get(self.client_id, [])
        if self in conns:
            conns.remove(self)
        logger.debug("Client %s disconnected", self.client_id)
