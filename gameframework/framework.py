"""Wiring between a game's logic and the service: contexts, ticks and the hook adapter."""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Any, Callable, List, Optional, Tuple

from .logic import Context, GameLogic, GameMeta, ReplayProducer, SettlementMeta
from .messages import (
    CreateRoomRequest,
    EnterRoomRequest,
    Payout,
    PlaceBetRequest,
    SettleRequest,
)
from .room import Manager, Room
from .service import LogicAdapter, SettlementMetaInfo

ContextFactory = Callable[[str], Context]


def context_factory(
    logger: Optional[logging.Logger] = None, tx: Any = None, record: Any = None
) -> ContextFactory:
    """Return a function that builds a hook :class:`Context` for a trace id."""
    log = logger or logging.getLogger(__name__)

    def new_context(trace_id: str) -> Context:
        return Context(trace_id=trace_id, log=log, tx=tx, record=record)

    return new_context


def tick_once(
    manager: Manager,
    logic: GameLogic,
    new_context: ContextFactory,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Call ``on_tick`` for every live room; a room whose tick raises is closed."""
    log = logger or logging.getLogger(__name__)

    def tick(room: Room) -> None:
        ctx = new_context(str(uuid.uuid4()))
        try:
            logic.on_tick(ctx, room)
        except Exception:
            log.warning("tick failed; closing room room_id=%s", room.id, exc_info=True)
            manager.remove(room.id)

    manager.for_each(tick)


def run_ticks(
    stop: threading.Event,
    interval: float,
    manager: Manager,
    logic: GameLogic,
    new_context: ContextFactory,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Tick all rooms every ``interval`` seconds until ``stop`` is set."""
    while not stop.wait(interval):
        tick_once(manager, logic, new_context, logger)


class GameLogicAdapter(LogicAdapter):
    """Presents a :class:`GameLogic` and its optional mix-ins to the service."""

    def __init__(self, logic: GameLogic) -> None:
        self._logic = logic
        self._meta: GameMeta = logic.meta()

    def game_id(self) -> str:
        return self._meta.game_id

    def default_seats(self) -> int:
        return self._meta.default_seats

    def on_create_room(self, ctx: Context, req: CreateRoomRequest, room: Room) -> None:
        self._logic.on_create_room(ctx, req, room)

    def on_enter_room(self, ctx: Context, req: EnterRoomRequest, room: Room) -> None:
        self._logic.on_enter_room(ctx, req, room)

    def on_place_bet(self, ctx: Context, req: PlaceBetRequest, room: Room) -> None:
        self._logic.on_place_bet(ctx, req, room)

    def on_settle(self, ctx: Context, req: SettleRequest, room: Room) -> List[Payout]:
        return self._logic.on_settle(ctx, req, room)

    def settlement_info(self, req: SettleRequest, room: Room) -> Optional[SettlementMetaInfo]:
        """Return the club attribution, or ``None`` if the game does not report one."""
        if not isinstance(self._logic, SettlementMeta):
            return None
        result = self._logic.settlement_info(req, room)
        return SettlementMetaInfo(
            club_id=result.club_id,
            round_id=result.round_id,
            rake_card=result.rake_card,
            started_at=result.started_at,
        )

    def build_replay_blob(self, req: SettleRequest, room: Room) -> Optional[Tuple[bytes, int]]:
        """Return ``(blob, version)``; ``None`` if absent, empty, unversioned or failed."""
        if not isinstance(self._logic, ReplayProducer):
            return None
        try:
            blob, version = self._logic.build_replay_blob(req, room)
        except Exception:
            logging.getLogger(__name__).warning("build replay blob failed", exc_info=True)
            return None
        if not blob or not version:
            return None
        return bytes(blob), version