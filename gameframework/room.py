"""Game-agnostic rooms: seats, stakes, state, custom game state and subscribers."""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from .messages import GameState, Payout, RoomSnapshot, Seat, SubscribeResponse

_SUBSCRIBER_CAPACITY = 32
_DEFAULT_SEATS = 3


class RoomError(Exception):
    """Base class for room operation failures."""

    default_message = "room error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)


class RoomFullError(RoomError):
    default_message = "room full"


class AlreadyJoinedError(RoomError):
    default_message = "already in room"


class NotInRoomError(RoomError):
    default_message = "user not in room"


class NotOwnerError(RoomError):
    default_message = "not room owner"


class WrongStateError(RoomError):
    default_message = "wrong game state"


class Subscription:
    """A bounded stream of room events.

    ``get`` returns the next event, or ``None`` once the subscription is
    closed and drained.
    """

    def __init__(self, sub_id: str, room: "Room", capacity: int = _SUBSCRIBER_CAPACITY) -> None:
        self.id = sub_id
        self._room = room
        self._capacity = capacity
        self._items: Deque[SubscribeResponse] = deque()
        self._closed = False
        self._cond = threading.Condition()

    def _offer(self, event: SubscribeResponse) -> bool:
        with self._cond:
            if self._closed or len(self._items) >= self._capacity:
                return False
            self._items.append(event)
            self._cond.notify()
            return True

    def _close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[SubscribeResponse]:
        """Wait for the next event; raise ``queue.Empty`` on timeout."""
        with self._cond:
            ready = self._cond.wait_for(lambda: self._items or self._closed, timeout)
            if not ready:
                raise queue.Empty
            if self._items:
                return self._items.popleft()
            return None

    def get_nowait(self) -> Optional[SubscribeResponse]:
        return self.get(timeout=0)

    def cancel(self) -> None:
        self._room._unsubscribe(self.id)

    def __iter__(self) -> Iterator[SubscribeResponse]:
        while (event := self.get()) is not None:
            yield event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *args: Any) -> None:
        self.cancel()


@dataclass
class _Seat:
    index: int
    user_id: str
    stake: int = 0
    owner: bool = False


class Room:
    """One table; all operations are serialised by an internal lock."""

    def __init__(
        self,
        room_id: str,
        owner_id: str,
        game_id: str,
        ante: int,
        max_seats: int,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.id = room_id
        self.owner_id = owner_id
        self.game_id = game_id
        self.ante = ante
        self.max_seats = max_seats
        self.state = GameState.WAITING
        self._log = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._seats: List[_Seat] = [_Seat(index=0, user_id=owner_id, owner=True)]
        self._subscribers: Dict[str, Subscription] = {}
        self._game_state: Dict[str, Any] = {}

    def close(self) -> None:
        with self._lock:
            if self.state is GameState.CLOSED:
                return
            self.state = GameState.CLOSED
            for sub in self._subscribers.values():
                sub._close()
            self._subscribers = {}

    def enter(self, user_id: str) -> RoomSnapshot:
        with self._lock:
            if self.state is GameState.CLOSED:
                raise WrongStateError()
            if any(s.user_id == user_id for s in self._seats):
                raise AlreadyJoinedError()
            if len(self._seats) >= self.max_seats:
                raise RoomFullError()
            self._seats.append(_Seat(index=len(self._seats), user_id=user_id))
            snap = self._snapshot_locked()
            self._broadcast_locked(SubscribeResponse(room_id=self.id, ts=_now(), snapshot=snap))
            return snap

    def leave(self, user_id: str) -> None:
        with self._lock:
            seat = self._find_locked(user_id)
            if seat is None:
                raise NotInRoomError()
            self._seats.remove(seat)
            for index, s in enumerate(self._seats):
                s.index = index
            snap = self._snapshot_locked()
            self._broadcast_locked(SubscribeResponse(room_id=self.id, ts=_now(), snapshot=snap))

    def place_bet(self, user_id: str, amount: int) -> None:
        with self._lock:
            if self.state not in (GameState.WAITING, GameState.PLAYING):
                raise WrongStateError()
            seat = self._find_locked(user_id)
            if seat is None:
                raise NotInRoomError()
            seat.stake += amount
            if self.state is GameState.WAITING:
                self.state = GameState.PLAYING
            self._broadcast_locked(
                SubscribeResponse(room_id=self.id, ts=_now(), state_changed=self.state)
            )

    def refund_bet(self, user_id: str, amount: int) -> None:
        """Undo a bet's stake without rolling back the state."""
        with self._lock:
            seat = self._find_locked(user_id)
            if seat is None:
                raise NotInRoomError()
            seat.stake = max(seat.stake - amount, 0)

    def settle(self) -> None:
        with self._lock:
            if self.state is not GameState.PLAYING:
                raise WrongStateError()
            self.state = GameState.SETTLING
            self._broadcast_locked(
                SubscribeResponse(room_id=self.id, ts=_now(), state_changed=self.state)
            )

    def broadcast_payout(self, payouts: List[Payout]) -> None:
        with self._lock:
            now = _now()
            for payout in payouts:
                self._broadcast_locked(SubscribeResponse(room_id=self.id, ts=now, payout=payout))

    def subscribe(self, user_id: str) -> Subscription:
        """Register a subscriber; its first event is the current snapshot."""
        with self._lock:
            if self.state is GameState.CLOSED:
                raise WrongStateError()
            sub_id = f"{user_id}-{str(uuid.uuid4())[:8]}"
            sub = Subscription(sub_id, self)
            self._subscribers[sub_id] = sub
            sub._offer(
                SubscribeResponse(room_id=self.id, ts=_now(), snapshot=self._snapshot_locked())
            )
            return sub

    def snapshot(self) -> RoomSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def with_game_state(self, fn: Callable[[Dict[str, Any]], Any]) -> Any:
        """Run ``fn`` on the custom game state under the room lock.

        ``fn`` must not call other methods of this room.
        """
        with self._lock:
            return fn(self._game_state)

    def read_game_state(self, key: str) -> Any:
        """Return one custom state value; raise ``KeyError`` if it is absent."""
        with self._lock:
            return self._game_state[key]

    def seat_stake(self, user_id: str) -> Optional[int]:
        """Return the user's stake, or ``None`` if the user has no seat."""
        with self._lock:
            seat = self._find_locked(user_id)
            return None if seat is None else seat.stake

    def seat_stakes(self) -> Dict[str, int]:
        with self._lock:
            return {s.user_id: s.stake for s in self._seats}

    def _unsubscribe(self, sub_id: str) -> None:
        with self._lock:
            sub = self._subscribers.pop(sub_id, None)
            if sub is not None:
                sub._close()

    def _find_locked(self, user_id: str) -> Optional[_Seat]:
        return next((s for s in self._seats if s.user_id == user_id), None)

    def _snapshot_locked(self) -> RoomSnapshot:
        return RoomSnapshot(
            room_id=self.id,
            owner_id=self.owner_id,
            game_id=self.game_id,
            seats=[
                Seat(index=s.index, user_id=s.user_id, stake=s.stake, is_owner=s.owner)
                for s in self._seats
            ],
            state=self.state,
            ante=self.ante,
            max_seats=self.max_seats,
        )

    def _broadcast_locked(self, event: SubscribeResponse) -> None:
        for sub_id, sub in list(self._subscribers.items()):
            if not sub._offer(event):
                del self._subscribers[sub_id]
                sub._close()
                self._log.warning("slow subscriber dropped room_id=%s sub=%s", self.id, sub_id)


class Manager:
    """Registry of live rooms."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._log = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._rooms: Dict[str, Room] = {}

    def create(self, owner_id: str, game_id: str, ante: int, max_seats: int) -> Room:
        """Create a room with the owner in seat 0."""
        if max_seats <= 0:
            max_seats = _DEFAULT_SEATS
        room_id = str(uuid.uuid4())
        room = Room(room_id, owner_id, game_id, ante, max_seats, self._log)
        with self._lock:
            self._rooms[room_id] = room
        return room

    def get(self, room_id: str) -> Optional[Room]:
        with self._lock:
            return self._rooms.get(room_id)

    def for_each(self, fn: Callable[[Room], Any]) -> None:
        """Call ``fn`` on a snapshot of the current rooms."""
        with self._lock:
            rooms = list(self._rooms.values())
        for room in rooms:
            fn(room)

    def remove(self, room_id: str) -> None:
        with self._lock:
            room = self._rooms.pop(room_id, None)
            if room is not None:
                room.close()

    def close_all(self) -> None:
        with self._lock:
            for room in self._rooms.values():
                room.close()
            self._rooms = {}


def _now() -> int:
    return int(time.time())