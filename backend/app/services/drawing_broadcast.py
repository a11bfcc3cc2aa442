"""
Drawing Broadcast Channel - one live room per division.

Publishers (sync route handlers running in the threadpool) call publish();
every subscriber owns an asyncio.Queue drained by its own sender task, so a
slow or dead spectator never blocks the draw. A per-room lock makes queue
order equal publish order.

Snapshots are built in the threadpool, never on the event loop. A joining (or
refreshing) subscriber is registered first; events published while its
snapshot is being built are held back and released right after the snapshot,
so nothing is missed. The snapshot's sequence is the last event it is known to
cover. Held-back events may already be reflected in it: clients drop a
UnitDrawn whose slotNumber is not above the snapshot's drawnCount.

No replay log: a reconnecting client gets a fresh snapshot instead. A room is
discarded (sequence included) when its last subscriber leaves.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from fastapi import WebSocket
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.services.errors import ConnectionLost

logger = logging.getLogger(__name__)


# ============================================================================
# Event payloads (camelCase on the wire)
# ============================================================================


class _EventModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class DrawnUnit(_EventModel):
    unit_id: int
    unit_name: str
    slot_number: int
    member_names: List[str] = []
    drawn_at: Optional[datetime] = None


class ByePreview(_EventModel):
    slot_number: int
    unit_id: int
    encounter_number: int


class DrawingState(_EventModel):
    type: Literal["DrawingState"] = "DrawingState"
    division_id: int
    division_name: Optional[str] = None
    event_id: Optional[int] = None
    status: str  # "Ready" | "InProgress" | "Completed" | "Confirmed"
    session_id: Optional[int] = None
    total_units: int = 0
    drawn_count: int = 0
    drawn_units: List[DrawnUnit] = []
    remaining_unit_names: List[str] = []
    byes: List[ByePreview] = []
    started_at: Optional[datetime] = None
    started_by_name: Optional[str] = None
    completed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    version: Optional[int] = None


class DrawStarted(_EventModel):
    type: Literal["DrawStarted"] = "DrawStarted"
    division_id: int
    session_id: int
    total_units: int
    started_by_name: Optional[str] = None
    started_at: Optional[datetime] = None


class UnitDrawn(_EventModel):
    type: Literal["UnitDrawn"] = "UnitDrawn"
    division_id: int
    session_id: int
    unit_id: int
    unit_name: str
    member_names: List[str] = []
    slot_number: int
    remaining_count: int
    byes: List[ByePreview] = []
    drawn_at: Optional[datetime] = None


class DrawCompleted(_EventModel):
    type: Literal["DrawCompleted"] = "DrawCompleted"
    division_id: int
    session_id: int
    final_order: List[DrawnUnit]
    completed_at: Optional[datetime] = None


class DrawCancelled(_EventModel):
    type: Literal["DrawCancelled"] = "DrawCancelled"
    division_id: int
    session_id: int
    reason: str = "cancelled"


class DrawConfirmed(_EventModel):
    type: Literal["DrawConfirmed"] = "DrawConfirmed"
    division_id: int
    session_id: int
    confirmed_at: Optional[datetime] = None


DrawingEvent = Union[DrawingState, DrawStarted, UnitDrawn, DrawCompleted, DrawCancelled, DrawConfirmed]


def room_name(division_id: int) -> str:
    return f"drawing_{division_id}"


# ============================================================================
# Room manager
# ============================================================================


def _put_all(queue: asyncio.Queue, messages: List[Dict[str, Any]]) -> None:
    for message in messages:
        queue.put_nowait(message)


@dataclass(eq=False)
class Subscriber:
    websocket: WebSocket
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    connected_at: datetime = field(default_factory=datetime.utcnow)
    # While a snapshot is being built, events are held here and released right after it
    backlog: Optional[List[Dict[str, Any]]] = None


@dataclass(eq=False)
class _Room:
    lock: threading.Lock = field(default_factory=threading.Lock)
    subscribers: List[Subscriber] = field(default_factory=list)
    sequence: int = 0


class DrawingRoomManager:
    def __init__(self):
        self._rooms: Dict[int, _Room] = {}
        self._registry_lock = threading.Lock()

    def subscriber_count(self, division_id: int) -> int:
        room = self._rooms.get(division_id)
        return len(room.subscribers) if room else 0

    def room_count(self) -> int:
        return len(self._rooms)

    async def connect(
        self,
        division_id: int,
        websocket: WebSocket,
        snapshot_factory: Callable[[], DrawingState],
    ) -> Subscriber:
        """Accept the socket, join the room, then enqueue a full-state snapshot ahead of any events."""
        await websocket.accept()
        subscriber = Subscriber(websocket=websocket, loop=asyncio.get_running_loop(), backlog=[])
        with self._registry_lock:
            room = self._rooms.setdefault(division_id, _Room())
            with room.lock:
                room.subscribers.append(subscriber)
                covered = room.sequence
        logger.info(
            "Subscriber joined %s (%d connected)", room_name(division_id), self.subscriber_count(division_id)
        )
        try:
            await self._deliver_snapshot(room, subscriber, snapshot_factory, covered)
        except Exception:
            self.disconnect(division_id, subscriber)
            raise
        return subscriber

    async def refresh(
        self,
        division_id: int,
        subscriber: Subscriber,
        snapshot_factory: Callable[[], DrawingState],
    ) -> None:
        """Re-send full state to one subscriber (client asked to refresh)."""
        room = self._rooms.get(division_id)
        if room is None:
            return
        with room.lock:
            subscriber.backlog = []
            covered = room.sequence
        await self._deliver_snapshot(room, subscriber, snapshot_factory, covered)

    async def _deliver_snapshot(
        self,
        room: _Room,
        subscriber: Subscriber,
        snapshot_factory: Callable[[], DrawingState],
        covered: int,
    ) -> None:
        # The snapshot reflects every event up to `covered`. Events held in the backlog
        # may also be reflected already: a UnitDrawn whose slotNumber <= drawnCount is a repeat.
        try:
            message = (await run_in_threadpool(snapshot_factory)).to_message()
        except Exception:
            with room.lock:
                held, subscriber.backlog = subscriber.backlog or [], None
                subscriber.loop.call_soon_threadsafe(_put_all, subscriber.queue, held)
            raise
        message["sequence"] = covered
        with room.lock:
            held, subscriber.backlog = subscriber.backlog or [], None
            subscriber.loop.call_soon_threadsafe(_put_all, subscriber.queue, [message] + held)

    def disconnect(self, division_id: int, subscriber: Subscriber) -> None:
        with self._registry_lock:
            room = self._rooms.get(division_id)
            if room is None:
                return
            with room.lock:
                if subscriber in room.subscribers:
                    room.subscribers.remove(subscriber)
                if not room.subscribers:
                    del self._rooms[division_id]
        logger.info("Subscriber left %s", room_name(division_id))

    def publish(self, division_id: int, event: DrawingEvent) -> int:
        """Fan an event out to every subscriber of the division's room.

        Safe to call from any thread. Never raises: delivery problems are logged
        and the affected subscriber is dropped. Returns the event sequence number,
        0 when nobody is watching the division.
        """
        try:
            message = event.to_message()
            with self._registry_lock:
                room = self._rooms.get(division_id)
            if room is None:
                logger.debug("No subscribers for %s; dropped %s", room_name(division_id), message.get("type"))
                return 0
            with room.lock:
                room.sequence += 1
                sequence = room.sequence
                message["sequence"] = sequence
                dead = []
                for subscriber in room.subscribers:
                    if subscriber.backlog is not None:
                        subscriber.backlog.append(message)
                        continue
                    try:
                        subscriber.loop.call_soon_threadsafe(subscriber.queue.put_nowait, message)
                    except RuntimeError:
                        # Event loop of that connection is gone
                        dead.append(subscriber)
            for subscriber in dead:
                self.disconnect(division_id, subscriber)
                logger.warning("Dropped subscriber of %s: event loop closed", room_name(division_id))
            logger.debug("Published %s #%d to %s", message.get("type"), sequence, room_name(division_id))
            return sequence
        except Exception:
            logger.exception("Failed to publish drawing event for division %s", division_id)
            return -1

    async def pump(self, division_id: int, subscriber: Subscriber) -> None:
        """Drain the subscriber queue into its websocket until the connection fails."""
        while True:
            message = await subscriber.queue.get()
            try:
                await subscriber.websocket.send_json(message)
            except Exception as e:
                error = ConnectionLost(f"{room_name(division_id)}: {e}")
                logger.warning("%s", error)
                self.disconnect(division_id, subscriber)
                return


drawing_rooms = DrawingRoomManager()
