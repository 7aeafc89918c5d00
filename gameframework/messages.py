"""Message types exchanged between the game service, its clients and the ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class GameState(Enum):
    """Lifecycle state of a room."""

    UNSPECIFIED = "GAME_STATE_UNSPECIFIED"
    WAITING = "GAME_STATE_WAITING"
    PLAYING = "GAME_STATE_PLAYING"
    SETTLING = "GAME_STATE_SETTLING"
    CLOSED = "GAME_STATE_CLOSED"


class ErrorCode(Enum):
    """Business result codes carried in an Ack."""

    UNSPECIFIED = "ERROR_CODE_UNSPECIFIED"
    OK = "ERROR_CODE_OK"
    INTERNAL = "ERROR_CODE_INTERNAL"
    ROOM_NOT_FOUND = "ERROR_CODE_ROOM_NOT_FOUND"
    ROOM_FULL = "ERROR_CODE_ROOM_FULL"
    ALREADY_IN_ROOM = "ERROR_CODE_ALREADY_IN_ROOM"
    NOT_ROOM_OWNER = "ERROR_CODE_NOT_ROOM_OWNER"
    GAME_STATE_INVALID = "ERROR_CODE_GAME_STATE_INVALID"
    INSUFFICIENT_BALANCE = "ERROR_CODE_INSUFFICIENT_BALANCE"


class TxType(Enum):
    """Kind of a ledger entry."""

    UNSPECIFIED = "TX_TYPE_UNSPECIFIED"
    FREEZE = "TX_TYPE_FREEZE"
    UNFREEZE = "TX_TYPE_UNFREEZE"
    BET = "TX_TYPE_BET"
    REFUND = "TX_TYPE_REFUND"
    SETTLE_WIN = "TX_TYPE_SETTLE_WIN"
    SETTLE_LOSS = "TX_TYPE_SETTLE_LOSS"


@dataclass
class Ack:
    """Result header of every response."""

    code: ErrorCode = ErrorCode.OK
    message: str = ""
    trace_id: str = ""

    @classmethod
    def ok(cls, trace_id: str = "") -> "Ack":
        return cls(code=ErrorCode.OK, trace_id=trace_id)

    @classmethod
    def error(cls, code: ErrorCode, message: str) -> "Ack":
        return cls(code=code, message=message)


@dataclass
class Seat:
    index: int = 0
    user_id: str = ""
    stake: int = 0
    is_owner: bool = False


@dataclass
class RoomSnapshot:
    room_id: str = ""
    owner_id: str = ""
    game_id: str = ""
    seats: List[Seat] = field(default_factory=list)
    state: GameState = GameState.UNSPECIFIED
    ante: int = 0
    max_seats: int = 0


@dataclass
class Payout:
    user_id: str = ""
    delta: int = 0
    reason: str = ""


@dataclass
class SubscribeResponse:
    """One pushed event; exactly one of the payload fields is normally set."""

    room_id: str = ""
    ts: int = 0
    snapshot: Optional[RoomSnapshot] = None
    state_changed: Optional[GameState] = None
    payout: Optional[Payout] = None


@dataclass
class Wallet:
    user_id: str = ""
    balance: int = 0
    frozen: int = 0
    currency: str = ""


@dataclass
class TxEntry:
    user_id: str = ""
    type: TxType = TxType.UNSPECIFIED
    amount: int = 0
    ref_room_id: str = ""
    ref_game_id: str = ""
    memo: str = ""
    trace_id: str = ""


@dataclass
class TransferRequest:
    idempotency_key: str = ""
    entries: List[TxEntry] = field(default_factory=list)


@dataclass
class TransferResponse:
    ack: Ack = field(default_factory=Ack)
    wallets: List[Wallet] = field(default_factory=list)


@dataclass
class GameRecord:
    game_id: str = ""
    room_id: str = ""
    started_at: int = 0
    settled_at: int = 0
    total_pot: int = 0
    payouts: List[Payout] = field(default_factory=list)
    idempotency_key: str = ""
    replay_pb: bytes = b""
    replay_version: int = 0
    trace_id: str = ""
    record_id: str = ""


@dataclass
class WriteGameRecordRequest:
    record: GameRecord = field(default_factory=GameRecord)


@dataclass
class WriteGameRecordResponse:
    ack: Ack = field(default_factory=Ack)
    record_id: str = ""


@dataclass
class CreateRoomRequest:
    user_id: str = ""
    ante: int = 0
    max_seats: int = 0
    owner_stake: int = 0


@dataclass
class CreateRoomResponse:
    ack: Ack = field(default_factory=Ack)
    room_id: str = ""


@dataclass
class EnterRoomRequest:
    room_id: str = ""
    user_id: str = ""


@dataclass
class EnterRoomResponse:
    ack: Ack = field(default_factory=Ack)
    snapshot: Optional[RoomSnapshot] = None


@dataclass
class LeaveRoomRequest:
    room_id: str = ""
    user_id: str = ""


@dataclass
class LeaveRoomResponse:
    ack: Ack = field(default_factory=Ack)


@dataclass
class PlaceBetRequest:
    room_id: str = ""
    user_id: str = ""
    amount: int = 0


@dataclass
class PlaceBetResponse:
    ack: Ack = field(default_factory=Ack)
    new_balance: int = 0


@dataclass
class SettleRequest:
    room_id: str = ""


@dataclass
class SettleResponse:
    ack: Ack = field(default_factory=Ack)
    payouts: List[Payout] = field(default_factory=list)


@dataclass
class SubscribeRequest:
    room_id: str = ""
    user_id: str = ""