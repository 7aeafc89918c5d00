"""Interfaces a game implements, and the context its hooks receive."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Tuple

from .messages import (
    CreateRoomRequest,
    EnterRoomRequest,
    Payout,
    PlaceBetRequest,
    SettleRequest,
)
from .room import Room


@dataclass(frozen=True)
class GameMeta:
    """Static properties of a game.

    ``default_seats`` is used when a create request asks for no seat count;
    ``tick_interval`` is in seconds, and 0 disables ``on_tick``.
    """

    game_id: str
    default_seats: int = 0
    tick_interval: float = 0.0


@dataclass
class Context:
    """Per-call helpers handed to every game hook.

    ``tx`` and ``record`` are the raw ledger and record clients, an escape
    hatch for the rare cases the default lifecycle does not cover.
    """

    trace_id: str
    log: logging.Logger
    tx: Any = None
    record: Any = None

    def logger(self) -> logging.LoggerAdapter:
        """Return a logger that tags every record with this call's trace id."""
        return logging.LoggerAdapter(self.log, {"trace_id": self.trace_id})


class GameLogic(ABC):
    """The decisions a game makes; money and room state are handled around it.

    A hook rejects an operation by raising; the service then compensates
    as documented on each hook.
    """

    @abstractmethod
    def meta(self) -> GameMeta:
        """Return the game's static properties."""

    @abstractmethod
    def on_create_room(self, ctx: Context, req: CreateRoomRequest, room: Room) -> None:
        """Called after the room exists and the owner stake is frozen.

        Raising unfreezes the stake and removes the room.
        """

    @abstractmethod
    def on_enter_room(self, ctx: Context, req: EnterRoomRequest, room: Room) -> None:
        """Called after the player has taken a seat; raising does not undo it."""

    @abstractmethod
    def on_place_bet(self, ctx: Context, req: PlaceBetRequest, room: Room) -> None:
        """Called after the bet is booked and staked; raising refunds it."""

    @abstractmethod
    def on_settle(self, ctx: Context, req: SettleRequest, room: Room) -> List[Payout]:
        """Return the payouts of the round; an empty list moves no money.

        Raising aborts the settlement.
        """

    @abstractmethod
    def on_tick(self, ctx: Context, room: Room) -> None:
        """Called every tick interval for each room; raising closes the room."""


@dataclass(frozen=True)
class SettlementMetaResult:
    """Club attribution of a round; the default means no club and no rake."""

    club_id: str = ""
    round_id: str = ""
    rake_card: int = 0
    started_at: Optional[datetime] = None


class SettlementMeta(ABC):
    """Optional mix-in: report the round's club and rake after each settle.

    An empty ``club_id`` skips the report and rake integrations.
    """

    @abstractmethod
    def settlement_info(self, req: SettleRequest, room: Room) -> SettlementMetaResult:
        """Return the club, round, rake and start time of the settled round."""


class ReplayProducer(ABC):
    """Optional mix-in: produce a serialized replay of each settled round."""

    @abstractmethod
    def build_replay_blob(self, req: SettleRequest, room: Room) -> Tuple[bytes, int]:
        """Return ``(blob, version)``; an empty blob or version 0 means no replay.

        Raising does not block the settlement; the round simply has no replay.
        """