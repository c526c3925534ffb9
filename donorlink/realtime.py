"""
Room-scoped publish/subscribe for blood request conversations.

Each blood request id names a room. Rooms exist only while someone is
connected to them; chat history lives in the MessageRepository and is
written before any fan-out, so a dropped client never loses a message.

Locking: the room registry (which connection is in which room) has a single
writer lock. Each room additionally has its own lock that is held for the
whole fan-out of one event, so subscribers see events of a room in the
order publish was called.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from donorlink.database import MessageRepository
from donorlink.errors import TransportError, ValidationError
from donorlink.models import Message, RoomUser, TypingState, User, new_id

logger = logging.getLogger(__name__)

TYPING_TIMEOUT_SECONDS = 1.0
MESSAGE_MAX_LENGTH = 2000

# Client -> server events
JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
SEND_MESSAGE = "send-message"
TYPING = "typing"

# Server -> client events
RECEIVE_MESSAGE = "receive-message"
USER_TYPING = "user-typing"
ROOM_USERS = "room-users"
ROOM_HISTORY = "room-history"
NEW_BLOOD_REQUEST = "new-blood-request"
SESSION_INVALIDATED = "session-invalidated"


class ClientConnection(ABC):
    """
    One connected client (a browser tab). Transports subclass this and
    implement send(); a failed write must raise TransportError.
    """

    def __init__(
        self,
        user: User,
        session_id: str | None = None,
        connection_id: str | None = None,
    ) -> None:
        self.id = connection_id or new_id()
        self.user = user
        self.session_id = session_id
        self.rooms: set[str] = set()

    @abstractmethod
    async def send(self, event: str, data: Any) -> None:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} user={self.user.id}>"


class Room:
    def __init__(self, room_id: str) -> None:
        self.id = room_id
        self.connections: dict[str, ClientConnection] = {}
        self.typing: dict[str, asyncio.Task[None]] = {}
        self.lock = asyncio.Lock()

    def users(self) -> list[RoomUser]:
        seen: dict[str, RoomUser] = {}
        for conn in self.connections.values():
            seen.setdefault(conn.user.id, RoomUser(id=conn.user.id, name=conn.user.name))
        return list(seen.values())

    def has_user(self, user_id: str) -> bool:
        return any(c.user.id == user_id for c in self.connections.values())


class RealtimeCoordinator:
    def __init__(
        self,
        messages: MessageRepository,
        typing_timeout: float = TYPING_TIMEOUT_SECONDS,
    ) -> None:
        self._messages = messages
        self._typing_timeout = typing_timeout
        self._rooms: dict[str, Room] = {}
        self._connections: dict[str, ClientConnection] = {}
        self._registry_lock = asyncio.Lock()

    # -- registry -----------------------------------------------------------

    def room_ids(self) -> list[str]:
        return list(self._rooms)

    def presence(self, room_id: str) -> list[RoomUser]:
        room = self._rooms.get(room_id)
        return [] if room is None else room.users()

    def is_typing(self, room_id: str, user_id: str) -> bool:
        room = self._rooms.get(room_id)
        return room is not None and user_id in room.typing

    async def connect(self, conn: ClientConnection) -> None:
        async with self._registry_lock:
            self._connections[conn.id] = conn
        logger.debug("Connection %s opened for user %s", conn.id, conn.user.id)

    async def disconnect(self, conn: ClientConnection) -> None:
        """Forget the connection and leave every room it had joined."""
        async with self._registry_lock:
            self._connections.pop(conn.id, None)
            left = [self._remove_member(room_id, conn) for room_id in list(conn.rooms)]

        for room_id, stopped_typing in left:
            await self._after_leave(room_id, conn, stopped_typing)
        logger.debug("Connection %s closed", conn.id)

    async def join(self, room_id: str, conn: ClientConnection) -> list[Message]:
        """Subscribe to a room. Returns the room's history, oldest first."""
        if not isinstance(room_id, str) or not room_id:
            raise ValidationError("roomId is required")

        async with self._registry_lock:
            self._connections.setdefault(conn.id, conn)
            room = self._rooms.get(room_id)
            if room is None:
                room = self._rooms[room_id] = Room(room_id)
            room.connections[conn.id] = conn
            conn.rooms.add(room_id)

        logger.debug("User %s joined room %s", conn.user.id, room_id)
        history = await self._messages.list_by_room(room_id)
        await self._publish_presence(room_id)
        return history

    async def leave(self, room_id: str, conn: ClientConnection) -> None:
        async with self._registry_lock:
            if room_id not in conn.rooms:
                return
            _, stopped_typing = self._remove_member(room_id, conn)

        await self._after_leave(room_id, conn, stopped_typing)

    def _remove_member(self, room_id: str, conn: ClientConnection) -> tuple[str, bool]:
        # Caller holds the registry lock.
        conn.rooms.discard(room_id)
        room = self._rooms.get(room_id)
        if room is None:
            return room_id, False

        room.connections.pop(conn.id, None)
        stopped_typing = False
        if not room.has_user(conn.user.id):
            task = room.typing.pop(conn.user.id, None)
            if task is not None:
                task.cancel()
                stopped_typing = True
        if not room.connections:
            for task in room.typing.values():
                task.cancel()
            del self._rooms[room_id]
            logger.debug("Room %s closed", room_id)
        return room_id, stopped_typing

    async def _after_leave(
        self, room_id: str, conn: ClientConnection, stopped_typing: bool
    ) -> None:
        if stopped_typing:
            await self._publish_typing(room_id, conn, False)
        await self._publish_presence(room_id)

    # -- fan-out ------------------------------------------------------------

    async def _deliver(
        self, targets: Iterable[ClientConnection], event: str, data: Any
    ) -> tuple[int, list[ClientConnection]]:
        delivered = 0
        failed = []
        for conn in targets:
            try:
                await conn.send(event, data)
            except TransportError as exc:
                logger.warning(
                    "Dropping connection %s after failed %s: %s", conn.id, event, exc
                )
                failed.append(conn)
            else:
                delivered += 1
        return delivered, failed

    async def _drop(self, failed: list[ClientConnection]) -> None:
        for conn in failed:
            await self.disconnect(conn)

    async def publish(
        self,
        room_id: str,
        event: str,
        data: Any,
        *,
        exclude: ClientConnection | None = None,
    ) -> int:
        """
        Deliver an event to every subscriber of a room except ``exclude``.

        Returns how many connections received it. An empty or unknown room
        is not an error.
        """
        room = self._rooms.get(room_id)
        if room is None:
            return 0

        async with room.lock:
            targets = [
                c for c in room.connections.values() if exclude is None or c.id != exclude.id
            ]
            delivered, failed = await self._deliver(targets, event, data)

        await self._drop(failed)
        return delivered

    async def broadcast_global(
        self,
        event: str,
        data: Any,
        *,
        where: Callable[[User], bool] | None = None,
    ) -> int:
        """Send an event to every connected client, optionally filtered by user."""
        targets = [
            c for c in list(self._connections.values()) if where is None or where(c.user)
        ]
        delivered, failed = await self._deliver(targets, event, data)
        await self._drop(failed)
        logger.debug("Broadcast %s reached %d connections", event, delivered)
        return delivered

    async def notify(self, user_id: str, event: str, data: Any) -> int:
        """Send an event to every connection of one user."""
        targets = [c for c in list(self._connections.values()) if c.user.id == user_id]
        delivered, failed = await self._deliver(targets, event, data)
        await self._drop(failed)
        return delivered

    async def invalidate_session(self, session_id: str) -> int:
        """Tell every connection of a session it has been logged out and detach them."""
        targets = [
            c for c in list(self._connections.values()) if c.session_id == session_id
        ]
        delivered, _ = await self._deliver(
            targets, SESSION_INVALIDATED, {"sessionId": session_id}
        )
        for conn in targets:
            await self.disconnect(conn)
        return delivered

    async def _publish_presence(self, room_id: str) -> None:
        room = self._rooms.get(room_id)
        if room is None:
            return
        await self.publish(room_id, ROOM_USERS, [u.to_wire() for u in room.users()])

    async def _publish_typing(
        self, room_id: str, conn: ClientConnection, is_typing: bool
    ) -> None:
        state = TypingState(user_id=conn.user.id, name=conn.user.name, is_typing=is_typing)
        await self.publish(room_id, USER_TYPING, state.to_wire(), exclude=conn)

    # -- chat ---------------------------------------------------------------

    async def history(self, room_id: str, since: datetime | None = None) -> list[Message]:
        return await self._messages.list_by_room(room_id, since)

    async def send_message(
        self, conn: ClientConnection, room_id: str, text: str
    ) -> Message:
        """Persist a chat message, then fan it out to the other subscribers."""
        if not isinstance(room_id, str) or not room_id:
            raise ValidationError("roomId is required")
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message text must not be empty")
        if len(text) > MESSAGE_MAX_LENGTH:
            raise ValidationError(
                f"Message text exceeds {MESSAGE_MAX_LENGTH} characters"
            )

        message = Message(
            room_id=room_id,
            sender_id=conn.user.id,
            sender_name=conn.user.name,
            text=text.strip(),
        )
        await self._messages.append(room_id, message)

        await self.publish(room_id, RECEIVE_MESSAGE, message.to_wire(), exclude=conn)

        room = self._rooms.get(room_id)
        if room is not None:
            task = room.typing.pop(conn.user.id, None)
            if task is not None:
                task.cancel()
                await self._publish_typing(room_id, conn, False)
        return message

    async def typing(self, conn: ClientConnection, room_id: str, is_typing: bool) -> None:
        """
        Relay a typing indicator. A positive indicator expires on its own
        after the typing timeout unless the client sends another one.
        """
        room = self._rooms.get(room_id)
        if room is None or conn.id not in room.connections:
            logger.warning(
                "Ignoring typing from %s for room %s it has not joined", conn.id, room_id
            )
            return

        previous = room.typing.pop(conn.user.id, None)
        if previous is not None:
            previous.cancel()

        if is_typing:
            room.typing[conn.user.id] = asyncio.create_task(
                self._expire_typing(room_id, conn)
            )
            if previous is not None:
                # Already shown as typing; only the timer restarts.
                return
        elif previous is None:
            return

        await self._publish_typing(room_id, conn, is_typing)

    async def _expire_typing(self, room_id: str, conn: ClientConnection) -> None:
        await asyncio.sleep(self._typing_timeout)
        room = self._rooms.get(room_id)
        if room is None or room.typing.get(conn.user.id) is not asyncio.current_task():
            return
        del room.typing[conn.user.id]
        await self._publish_typing(room_id, conn, False)

    # -- wire protocol ------------------------------------------------------

    async def handle(self, conn: ClientConnection, event: str, data: Any) -> None:
        """Dispatch one client event of the realtime wire protocol."""
        if event == JOIN_ROOM:
            history = await self.join(_room_id(data), conn)
            await conn.send(ROOM_HISTORY, [m.to_wire() for m in history])
        elif event == LEAVE_ROOM:
            await self.leave(_room_id(data), conn)
        elif event == SEND_MESSAGE:
            payload = _payload(data)
            await self.send_message(conn, _room_id(payload), payload.get("text"))
        elif event == TYPING:
            payload = _payload(data)
            await self.typing(conn, _room_id(payload), bool(payload.get("isTyping")))
        else:
            raise ValidationError(f"Unknown event: {event!r}")

    async def close(self) -> None:
        for room in self._rooms.values():
            for task in room.typing.values():
                task.cancel()
            room.typing.clear()


def _payload(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError("Event payload must be an object")
    return data


def _room_id(data: Any) -> str:
    # join-room and leave-room carry the bare id; other events wrap it.
    room_id = data.get("roomId") if isinstance(data, dict) else data
    if not isinstance(room_id, str) or not room_id:
        raise ValidationError("roomId is required")
    return room_id
