"""Inter-worker message bus.

Best-effort pub/sub plus correlated request/response.  Handlers run in
background delivery tasks, so senders never wait on them.  Delivery
problems are reported as events and log lines, never raised into the
scheduler.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any

from task_conductor.config import get_config
from task_conductor.events import (
    CONTEXT_SHARED,
    MESSAGE_DELIVERY_FAILED,
    MESSAGE_HANDLER_ERROR,
    EventEmitter,
)
from task_conductor.exceptions import MessageBusError, MessageTimeoutError, RecipientNotFoundError
from task_conductor.logging import get_logger

log = get_logger(__name__)

BROADCAST = "*"
ANY_TYPE = "*"
CONTEXT_SHARE = "context_share"
DEFAULT_WORKSPACE = "default"


@dataclass(frozen=True)
class Message:
    sender: str
    recipient: str
    type: str
    payload: Any = None
    correlation_id: str | None = None
    timestamp: float = 0.0
    id: str = ""


MessageHandler = Callable[[Message], "Awaitable[None] | None"]


@dataclass
class _Participant:
    id: str
    history: deque[Message]
    workspace_id: str = DEFAULT_WORKSPACE
    handlers: list[tuple[frozenset[str], MessageHandler]] = field(default_factory=list)
    shared_data: dict[str, Any] = field(default_factory=dict)
    last_activity: float = field(default_factory=time.time)


class MessageBus:
    """Directory of participants with message routing between them.

    Participants live in workspaces; broadcasts and shared context only
    reach peers in the sender's workspace.
    """

    def __init__(
        self,
        events: EventEmitter | None = None,
        history_limit: int | None = None,
        default_timeout_ms: int | None = None,
    ):
        cfg = get_config().message_bus
        self._events = events or EventEmitter()
        self._history_limit = max(1, int(history_limit or cfg.history_limit))
        self.default_timeout_ms = default_timeout_ms or cfg.default_timeout_ms
        self._participants: dict[str, _Participant] = {}
        # (waiting participant, correlation id) -> response future
        self._pending: dict[tuple[str, str], asyncio.Future[Message]] = {}
        self._deliveries: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------

    def register_participant(
        self,
        participant_id: str,
        handler: MessageHandler | None = None,
        message_types: Iterable[str] = (ANY_TYPE,),
        workspace_id: str = DEFAULT_WORKSPACE,
    ) -> None:
        participant = self._participants.get(participant_id)
        if participant is None:
            participant = _Participant(
                id=participant_id,
                history=deque(maxlen=self._history_limit),
                workspace_id=workspace_id,
            )
            self._participants[participant_id] = participant
            log.debug("Participant registered", participant_id=participant_id, workspace_id=workspace_id)
        if handler is not None:
            participant.handlers.append((frozenset(message_types), handler))

    def unregister_participant(self, participant_id: str) -> bool:
        removed = self._participants.pop(participant_id, None)
        for key in [key for key in self._pending if key[0] == participant_id]:
            waiter = self._pending.pop(key)
            if not waiter.done():
                waiter.set_exception(MessageBusError(f"Participant disconnected: {participant_id}"))
        if removed is not None:
            log.debug("Participant unregistered", participant_id=participant_id)
        return removed is not None

    def subscribe(
        self,
        participant_id: str,
        message_types: Iterable[str],
        handler: MessageHandler,
    ) -> None:
        """Attach a handler for some message types (``"*"`` for all)."""
        participant = self._participants.get(participant_id)
        if participant is None:
            raise RecipientNotFoundError(participant_id)
        participant.handlers.append((frozenset(message_types), handler))

    def is_registered(self, participant_id: str) -> bool:
        return participant_id in self._participants

    def participants(self) -> list[str]:
        return list(self._participants)

    def workspace_participants(self, workspace_id: str) -> list[str]:
        return [p.id for p in self._participants.values() if p.workspace_id == workspace_id]

    def _peers_of(self, participant_id: str) -> list[str]:
        sender = self._participants.get(participant_id)
        return [
            p.id
            for p in self._participants.values()
            if p.id != participant_id and (sender is None or p.workspace_id == sender.workspace_id)
        ]

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(self, message: Message) -> Message:
        """Fire-and-forget delivery to one participant or to the sender's workspace (``"*"``).

        Returns once the message is routed; handlers finish in the
        background (see ``flush``).
        """
        message = replace(
            message,
            id=message.id or f"msg_{uuid.uuid4().hex[:12]}",
            timestamp=message.timestamp or time.time(),
        )

        sender = self._participants.get(message.sender)
        if sender is not None:
            sender.history.append(message)
            sender.last_activity = time.time()

        if message.recipient == BROADCAST:
            targets = self._peers_of(message.sender)
            for target in targets:
                self._route(replace(message, recipient=target))
            log.debug("Message broadcast", sender=message.sender, type=message.type, recipients=len(targets))
        else:
            self._route(message)
        return message

    async def send_message_with_response(
        self,
        message: Message,
        timeout_ms: float | None = None,
    ) -> Message:
        """Send ``message`` and wait for a reply carrying the same correlation id.

        The deadline covers the send as well as the wait.

        Raises:
            MessageTimeoutError: no response within ``timeout_ms``.
        """
        timeout_ms = self.default_timeout_ms if timeout_ms is None else timeout_ms
        correlation_id = f"corr_{uuid.uuid4().hex}"
        key = (message.sender, correlation_id)
        waiter: asyncio.Future[Message] = asyncio.get_running_loop().create_future()
        self._pending[key] = waiter
        try:
            return await asyncio.wait_for(
                self._send_and_wait(replace(message, correlation_id=correlation_id), waiter),
                timeout=timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            log.warning(
                "Message response timed out",
                sender=message.sender,
                recipient=message.recipient,
                timeout_ms=timeout_ms,
            )
            raise MessageTimeoutError(correlation_id, timeout_ms) from None
        finally:
            self._pending.pop(key, None)

    async def _send_and_wait(self, message: Message, waiter: asyncio.Future[Message]) -> Message:
        await self.send_message(message)
        return await waiter

    async def reply(
        self,
        original: Message,
        payload: Any,
        message_type: str = "response",
    ) -> Message:
        """Answer ``original``; the reply reuses its correlation id."""
        return await self.send_message(Message(
            sender=original.recipient,
            recipient=original.sender,
            type=message_type,
            payload=payload,
            correlation_id=original.correlation_id,
        ))

    # ------------------------------------------------------------------
    # Shared context
    # ------------------------------------------------------------------

    async def share_context(self, participant_id: str, key: str, data: Any) -> None:
        """Store ``data`` under ``key`` and announce it to workspace peers."""
        participant = self._participants.get(participant_id)
        if participant is None:
            raise RecipientNotFoundError(participant_id)
        participant.shared_data[key] = data
        participant.last_activity = time.time()

        for peer_id in self._peers_of(participant_id):
            await self.send_message(Message(
                sender=participant_id,
                recipient=peer_id,
                type=CONTEXT_SHARE,
                payload={"key": key, "data": data, "participant_id": participant_id},
            ))
        self._events.emit(CONTEXT_SHARED, participant_id=participant_id, key=key, data=data)

    def get_shared_context(self, participant_id: str, key: str | None = None) -> Any:
        """One shared value, or a copy of everything the participant shared."""
        participant = self._participants.get(participant_id)
        if participant is None:
            return None
        if key is not None:
            return participant.shared_data.get(key)
        return dict(participant.shared_data)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _route(self, message: Message) -> bool:
        if message.correlation_id:
            waiter = self._pending.get((message.recipient, message.correlation_id))
            if waiter is not None and not waiter.done():
                waiter.set_result(message)
                return True

        participant = self._participants.get(message.recipient)
        if participant is None:
            error = RecipientNotFoundError(message.recipient)
            log.warning("Message recipient not found", sender=message.sender, recipient=message.recipient)
            self._events.emit(MESSAGE_DELIVERY_FAILED, message=message, error=error)
            return False

        participant.history.append(message)
        participant.last_activity = time.time()

        handlers = [
            handler
            for types, handler in participant.handlers
            if ANY_TYPE in types or message.type in types
        ]
        if handlers:
            delivery = asyncio.create_task(self._deliver(message, handlers))
            self._deliveries.add(delivery)
            delivery.add_done_callback(self._deliveries.discard)
        return True

    async def _deliver(self, message: Message, handlers: list[MessageHandler]) -> None:
        for handler in handlers:
            try:
                outcome = handler(message)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                log.warning(
                    "Message handler failed",
                    recipient=message.recipient,
                    type=message.type,
                    error=str(e),
                )
                self._events.emit(MESSAGE_HANDLER_ERROR, message=message, error=e)

    async def flush(self) -> None:
        """Wait for every handler delivery started so far."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries))

    async def close(self) -> None:
        """Cancel outstanding deliveries."""
        deliveries = list(self._deliveries)
        for delivery in deliveries:
            delivery.cancel()
        await asyncio.gather(*deliveries, return_exceptions=True)
        self._deliveries.clear()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def history(self, participant_id: str, limit: int | None = None) -> list[Message]:
        participant = self._participants.get(participant_id)
        if participant is None:
            return []
        messages = list(participant.history)
        if limit:
            return messages[-limit:]
        return messages

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def delivery_count(self) -> int:
        return len(self._deliveries)

    def stats(self) -> dict[str, int]:
        return {
            "participants": len(self._participants),
            "workspaces": len({p.workspace_id for p in self._participants.values()}),
            "messages": sum(len(p.history) for p in self._participants.values()),
            "pending_requests": len(self._pending),
            "deliveries": len(self._deliveries),
        }
