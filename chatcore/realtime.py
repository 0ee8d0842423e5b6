"""
Realtime gateway: live connections keyed by user, best-effort push.

A connection is anything with an async ``send_json`` (FastAPI's WebSocket in
production). Pushes are at-most-once per call and never queued: messages are
already persisted by the time they are announced, so a dropped push only
delays a client refresh.

Typing indicators go only to connections that joined the conversation room;
message events go to every connection of each recipient.
"""

import logging
from collections import defaultdict
from typing import Any, Iterable, Protocol

from chatcore.metrics import record_realtime_event, set_realtime_connections
from chatcore.schemas import WsOutbound

logger = logging.getLogger(__name__)

# Outbound event names
RECEIVE_MESSAGE = "receive_message"
MESSAGE_UPDATED = "message_updated"
MESSAGE_DELETED = "message_deleted"
MESSAGE_REACTION = "message_reaction"
TYPING_START = "typing_start"
TYPING_STOP = "typing_stop"


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class RealtimeGateway:
    def __init__(self):
        self._connections: dict[str, set] = defaultdict(set)
        self._rooms: dict[str, set] = defaultdict(set)
        self._owners: dict = {}

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    def register(self, user_id: str, connection: Connection) -> None:
        self._connections[user_id].add(connection)
        self._owners[connection] = user_id
        logger.info(f"Realtime connection registered for {user_id} ({len(self._connections[user_id])} live)")
        set_realtime_connections(self.total_connections())

    def unregister(self, user_id: str, connection: Connection) -> None:
        connections = self._connections.get(user_id)
        if connections is not None:
            connections.discard(connection)
            if not connections:
                self._connections.pop(user_id, None)
        self._owners.pop(connection, None)
        for conversation_id in list(self._rooms):
            self.leave_conversation(conversation_id, connection)
        logger.info(f"Realtime connection unregistered for {user_id}")
        set_realtime_connections(self.total_connections())

    def join_conversation(self, conversation_id: str, connection: Connection) -> None:
        self._rooms[conversation_id].add(connection)

    def leave_conversation(self, conversation_id: str, connection: Connection) -> None:
        room = self._rooms.get(conversation_id)
        if room is None:
            return
        room.discard(connection)
        if not room:
            self._rooms.pop(conversation_id, None)

    def in_conversation(self, conversation_id: str, connection: Connection) -> bool:
        return connection in self._rooms.get(conversation_id, ())

    def connection_count(self, user_id: str) -> int:
        return len(self._connections.get(user_id, ()))

    def total_connections(self) -> int:
        return sum(len(c) for c in self._connections.values())

    def is_online(self, user_id: str) -> bool:
        return self.connection_count(user_id) > 0

    def close(self) -> None:
        """Forget every connection. Called on application shutdown."""
        self._connections.clear()
        self._rooms.clear()
        self._owners.clear()
        set_realtime_connections(0)

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def notify(self, user_id: str, event: str, payload: dict) -> int:
        """
        Push an event to every live connection of a user.

        Failures are logged and swallowed; a connection that fails to accept
        the push is dropped from the registry.

        Returns:
            Number of connections the event was written to
        """
        connections = list(self._connections.get(user_id, ()))
        if not connections:
            record_realtime_event(event, "dropped")
            logger.debug(f"No live connection for {user_id}, dropping {event}")
            return 0

        frame = WsOutbound(type=event, data=payload).model_dump(mode="json")
        delivered = 0
        for connection in connections:
            try:
                await connection.send_json(frame)
                delivered += 1
                record_realtime_event(event, "delivered")
            except Exception as e:
                record_realtime_event(event, "failed")
                logger.warning(f"Push of {event} to {user_id} failed, dropping connection: {e}")
                self.unregister(user_id, connection)
        return delivered

    async def notify_many(self, user_ids: Iterable[str], event: str, payload: dict) -> int:
        delivered = 0
        for user_id in user_ids:
            delivered += await self.notify(user_id, event, payload)
        return delivered

    async def broadcast_typing(
        self,
        conversation_id: str,
        from_user: str,
        participant_ids: Iterable[str],
        is_typing: bool,
    ) -> int:
        """
        Push a typing indicator to the connections that joined the
        conversation room, skipping the typist and anyone who is no longer a
        participant.

        Returns:
            Number of connections the event was written to
        """
        event = TYPING_START if is_typing else TYPING_STOP
        allowed = set(participant_ids) - {from_user}
        targets = [
            (connection, self._owners.get(connection))
            for connection in list(self._rooms.get(conversation_id, ()))
        ]
        targets = [(connection, owner) for connection, owner in targets if owner in allowed]
        if not targets:
            record_realtime_event(event, "dropped")
            return 0

        frame = WsOutbound(
            type=event, data={"conversation_id": conversation_id, "user_id": from_user}
        ).model_dump(mode="json")
        delivered = 0
        for connection, owner in targets:
            try:
                await connection.send_json(frame)
                delivered += 1
                record_realtime_event(event, "delivered")
            except Exception as e:
                record_realtime_event(event, "failed")
                logger.warning(f"Push of {event} to {owner} failed, dropping connection: {e}")
                self.unregister(owner, connection)
        return delivered
