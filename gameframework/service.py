"""Request handlers of the game service: ledger, rooms, records and game hooks."""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, List, Optional, Protocol, Tuple

from .cardclient import CardClient, ConsumeRequest
from .idempotency import Keys
from .logic import Context
from .messages import (
    Ack,
    CreateRoomRequest,
    CreateRoomResponse,
    EnterRoomRequest,
    EnterRoomResponse,
    ErrorCode,
    GameRecord,
    LeaveRoomRequest,
    LeaveRoomResponse,
    Payout,
    PlaceBetRequest,
    PlaceBetResponse,
    SettleRequest,
    SettleResponse,
    SubscribeRequest,
    SubscribeResponse,
    TransferRequest,
    TxEntry,
    TxType,
    WriteGameRecordRequest,
)
from .notifyclient import NotifyClient
from .reportclient import IngestRequest, PayoutLite, ReportClient, payouts_to_per_user
from .room import (
    AlreadyJoinedError,
    Manager,
    NotInRoomError,
    NotOwnerError,
    Room,
    RoomError,
    RoomFullError,
    Subscription,
    WrongStateError,
)

_DEFAULT_SEATS = 3
_DEFAULT_RECORD_TIMEOUT = 2.0
_POLL_INTERVAL = 0.1
_ROOM_NOT_FOUND = "room not found"

_ROOM_ERROR_CODES = (
    (RoomFullError, ErrorCode.ROOM_FULL),
    (AlreadyJoinedError, ErrorCode.ALREADY_IN_ROOM),
    (NotInRoomError, ErrorCode.ROOM_NOT_FOUND),
    (NotOwnerError, ErrorCode.NOT_ROOM_OWNER),
    (WrongStateError, ErrorCode.GAME_STATE_INVALID),
)


class RoomNotFoundError(LookupError):
    """Raised by streaming calls when the room does not exist."""


class TransferError(RuntimeError):
    """Raised when a required ledger transfer fails."""


def code_from_room_error(err: BaseException) -> ErrorCode:
    """Map a room failure to its business error code."""
    for error_type, code in _ROOM_ERROR_CODES:
        if isinstance(err, error_type):
            return code
    return ErrorCode.INTERNAL


@dataclass(frozen=True)
class SettlementMetaInfo:
    """Club attribution of a settled round as seen by the service."""

    club_id: str = ""
    round_id: str = ""
    rake_card: int = 0
    started_at: Optional[datetime] = None


class LogicAdapter(ABC):
    """The game hooks the service drives. Hooks reject an operation by raising."""

    @abstractmethod
    def game_id(self) -> str:
        """Return the game identifier."""

    @abstractmethod
    def default_seats(self) -> int:
        """Return the seat count used when a request asks for none."""

    @abstractmethod
    def on_create_room(self, ctx: Context, req: CreateRoomRequest, room: Room) -> None:
        """Called after the room is created and the owner stake frozen."""

    @abstractmethod
    def on_enter_room(self, ctx: Context, req: EnterRoomRequest, room: Room) -> None:
        """Called after the player has taken a seat."""

    @abstractmethod
    def on_place_bet(self, ctx: Context, req: PlaceBetRequest, room: Room) -> None:
        """Called after the bet is booked and staked."""

    @abstractmethod
    def on_settle(self, ctx: Context, req: SettleRequest, room: Room) -> List[Payout]:
        """Return the payouts of the round."""

    @abstractmethod
    def settlement_info(self, req: SettleRequest, room: Room) -> Optional[SettlementMetaInfo]:
        """Return the round's club attribution, or ``None`` if the game has none."""

    @abstractmethod
    def build_replay_blob(self, req: SettleRequest, room: Room) -> Optional[Tuple[bytes, int]]:
        """Return ``(blob, version)`` of the round's replay, or ``None``."""


class SessionBinder(Protocol):
    """Publishes which instance serves a room."""

    def bind(self, room_id: str) -> None:
        """Map the room to this instance."""

    def unbind(self, room_id: str) -> None:
        """Remove the room's mapping."""


class GameService:
    """Handles room requests, moving money through the ledger around the game hooks."""

    def __init__(
        self,
        manager: Manager,
        tx: Any,
        logic: LogicAdapter,
        new_context: Callable[[str], Context],
        sessions: Optional[SessionBinder] = None,
        record: Any = None,
        report: Optional[ReportClient] = None,
        card: Optional[CardClient] = None,
        notify: Optional[NotifyClient] = None,
        notify_min_payout: int = 0,
        record_timeout: float = _DEFAULT_RECORD_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._manager = manager
        self._tx = tx
        self._logic = logic
        self._new_context = new_context
        self._sessions = sessions
        self._record = record
        self._report = report
        self._card = card
        self._notify = notify
        self._notify_min_payout = notify_min_payout
        self._record_timeout = record_timeout
        self._log = logger or logging.getLogger(__name__)
        self._game_id = logic.game_id()
        self._keys = Keys(self._game_id)

    def create_room(self, req: CreateRoomRequest) -> CreateRoomResponse:
        trace_id = str(uuid.uuid4())
        ctx = self._new_context(trace_id)
        room = self._manager.create(req.user_id, self._game_id, req.ante, self._resolve_seats(req.max_seats))

        if req.owner_stake > 0:
            try:
                self._tx.transfer(self._owner_stake_transfer(
                    req, room.id, trace_id, TxType.FREEZE, self._keys.create(room.id), "owner stake"
                ))
            except Exception as exc:
                self._manager.remove(room.id)
                raise TransferError(f"tx freeze: {exc}") from exc

        try:
            self._logic.on_create_room(ctx, req, room)
        except Exception as exc:
            if req.owner_stake > 0:
                try:
                    self._tx.transfer(self._owner_stake_transfer(
                        req, room.id, trace_id, TxType.UNFREEZE,
                        self._keys.create_compensate(room.id), "create compensate",
                    ))
                except Exception:
                    self._log.error("unfreeze compensation failed room_id=%s", room.id, exc_info=True)
            self._manager.remove(room.id)
            return CreateRoomResponse(ack=Ack.error(ErrorCode.INTERNAL, str(exc)))

        if self._sessions is not None:
            try:
                self._sessions.bind(room.id)
            except Exception:
                self._log.warning("session bind failed; room still usable locally", exc_info=True)

        return CreateRoomResponse(ack=Ack.ok(trace_id), room_id=room.id)

    def enter_room(self, req: EnterRoomRequest) -> EnterRoomResponse:
        trace_id = str(uuid.uuid4())
        ctx = self._new_context(trace_id)
        room = self._manager.get(req.room_id)
        if room is None:
            return EnterRoomResponse(ack=Ack.error(ErrorCode.ROOM_NOT_FOUND, _ROOM_NOT_FOUND))
        try:
            snapshot = room.enter(req.user_id)
        except RoomError as exc:
            return EnterRoomResponse(ack=Ack.error(code_from_room_error(exc), str(exc)))
        try:
            self._logic.on_enter_room(ctx, req, room)
        except Exception as exc:
            return EnterRoomResponse(ack=Ack.error(ErrorCode.INTERNAL, str(exc)))
        return EnterRoomResponse(ack=Ack.ok(trace_id), snapshot=snapshot)

    def leave_room(self, req: LeaveRoomRequest) -> LeaveRoomResponse:
        room = self._manager.get(req.room_id)
        if room is None:
            return LeaveRoomResponse(ack=Ack.error(ErrorCode.ROOM_NOT_FOUND, _ROOM_NOT_FOUND))
        try:
            room.leave(req.user_id)
        except RoomError as exc:
            return LeaveRoomResponse(ack=Ack.error(code_from_room_error(exc), str(exc)))
        return LeaveRoomResponse(ack=Ack.ok())

    def place_bet(self, req: PlaceBetRequest) -> PlaceBetResponse:
        """Book the bet in the ledger first, then stake it in the room."""
        trace_id = str(uuid.uuid4())
        ctx = self._new_context(trace_id)
        room = self._manager.get(req.room_id)
        if room is None:
            return PlaceBetResponse(ack=Ack.error(ErrorCode.ROOM_NOT_FOUND, _ROOM_NOT_FOUND))

        resp = self._tx.transfer(TransferRequest(
            idempotency_key=self._keys.bet(req.room_id, req.user_id, req.amount),
            entries=[TxEntry(
                user_id=req.user_id, type=TxType.BET, amount=-req.amount,
                ref_room_id=req.room_id, ref_game_id=self._game_id, trace_id=trace_id,
            )],
        ))
        if resp.ack.code is not ErrorCode.OK:
            return PlaceBetResponse(ack=resp.ack)

        try:
            room.place_bet(req.user_id, req.amount)
        except RoomError as exc:
            self._refund_bet(req, trace_id)
            return PlaceBetResponse(ack=Ack.error(code_from_room_error(exc), str(exc)))

        try:
            self._logic.on_place_bet(ctx, req, room)
        except Exception as exc:
            try:
                room.refund_bet(req.user_id, req.amount)
            except RoomError:
                pass
            self._refund_bet(req, trace_id)
            return PlaceBetResponse(ack=Ack.error(ErrorCode.INTERNAL, str(exc)))

        new_balance = resp.wallets[0].balance if resp.wallets else 0
        return PlaceBetResponse(ack=Ack.ok(trace_id), new_balance=new_balance)

    def settle(self, req: SettleRequest) -> SettleResponse:
        """Settle the round, book its payouts, record it and close the room."""
        trace_id = str(uuid.uuid4())
        ctx = self._new_context(trace_id)
        room = self._manager.get(req.room_id)
        if room is None:
            return SettleResponse(ack=Ack.error(ErrorCode.ROOM_NOT_FOUND, _ROOM_NOT_FOUND))
        started_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        try:
            room.settle()
        except RoomError as exc:
            return SettleResponse(ack=Ack.error(code_from_room_error(exc), str(exc)))

        try:
            payouts = list(self._logic.on_settle(ctx, req, room))
        except Exception as exc:
            return SettleResponse(ack=Ack.error(ErrorCode.INTERNAL, str(exc)))

        entries = [
            TxEntry(
                user_id=p.user_id,
                type=TxType.SETTLE_LOSS if p.delta < 0 else TxType.SETTLE_WIN,
                amount=p.delta, ref_room_id=req.room_id, ref_game_id=self._game_id,
                memo=p.reason, trace_id=trace_id,
            )
            for p in payouts
            if p.delta != 0
        ]
        total_pot = sum(-p.delta for p in payouts if p.delta < 0)
        if entries:
            try:
                self._tx.transfer(TransferRequest(
                    idempotency_key=self._keys.settle(req.room_id), entries=entries
                ))
            except Exception as exc:
                raise TransferError(f"tx settle: {exc}") from exc

        room.broadcast_payout(payouts)
        replay = self._logic.build_replay_blob(req, room)
        self._write_record(req.room_id, payouts, started_at, total_pot, trace_id, replay)
        self._notify_report_and_rake(req, room, payouts, started_at, total_pot, trace_id)
        self._notify_large_payouts(req, payouts)
        self._manager.remove(req.room_id)
        if self._sessions is not None:
            try:
                self._sessions.unbind(req.room_id)
            except Exception:
                self._log.warning("session unbind failed room_id=%s", req.room_id, exc_info=True)

        return SettleResponse(ack=Ack.ok(trace_id), payouts=payouts)

    def subscribe(
        self, req: SubscribeRequest, stop: Optional[threading.Event] = None
    ) -> Iterator[SubscribeResponse]:
        """Subscribe to the room and return a stream of its events.

        The stream ends when the room closes the subscription or ``stop`` is set.
        """
        room = self._manager.get(req.room_id)
        if room is None:
            raise RoomNotFoundError(f"room not found: {req.room_id}")
        subscription = room.subscribe(req.user_id)
        return self._stream(subscription, stop)

    @staticmethod
    def _stream(
        subscription: Subscription, stop: Optional[threading.Event]
    ) -> Iterator[SubscribeResponse]:
        with subscription:
            while stop is None or not stop.is_set():
                try:
                    event = subscription.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                if event is None:
                    return
                yield event

    def _resolve_seats(self, requested: int) -> int:
        if requested > 0:
            return requested
        default = self._logic.default_seats()
        return default if default > 0 else _DEFAULT_SEATS

    def _owner_stake_transfer(
        self, req: CreateRoomRequest, room_id: str, trace_id: str,
        tx_type: TxType, key: str, memo: str,
    ) -> TransferRequest:
        return TransferRequest(
            idempotency_key=key,
            entries=[TxEntry(
                user_id=req.user_id, type=tx_type, amount=req.owner_stake,
                ref_room_id=room_id, ref_game_id=self._game_id, memo=memo, trace_id=trace_id,
            )],
        )

    def _refund_bet(self, req: PlaceBetRequest, trace_id: str) -> None:
        try:
            self._tx.transfer(TransferRequest(
                idempotency_key=self._keys.bet_refund(req.room_id, req.user_id, req.amount),
                entries=[TxEntry(
                    user_id=req.user_id, type=TxType.REFUND, amount=req.amount,
                    ref_room_id=req.room_id, ref_game_id=self._game_id,
                    memo="bet compensate", trace_id=trace_id,
                )],
            ))
        except Exception:
            self._log.error(
                "bet refund tx failed room_id=%s user_id=%s amount=%d",
                req.room_id, req.user_id, req.amount, exc_info=True,
            )

    def _write_record(
        self, room_id: str, payouts: List[Payout], started_at: datetime,
        total_pot: int, trace_id: str, replay: Optional[Tuple[bytes, int]],
    ) -> None:
        if self._record is None:
            return
        blob, version = replay if replay else (b"", 0)
        key = self._keys.settle(room_id)
        request = WriteGameRecordRequest(record=GameRecord(
            game_id=self._game_id,
            room_id=room_id,
            started_at=int(started_at.timestamp()),
            settled_at=int(datetime.now(timezone.utc).timestamp()),
            total_pot=total_pot,
            payouts=payouts,
            idempotency_key=key,
            replay_pb=blob,
            replay_version=version,
            trace_id=trace_id,
        ))
        try:
            self._record.write_game_record(request, timeout=self._record_timeout)
        except Exception:
            self._log.error(
                "record write failed; run back-office replay from this log "
                "room_id=%s idempotency_key=%s", room_id, key, exc_info=True,
            )

    def _notify_report_and_rake(
        self, req: SettleRequest, room: Room, payouts: List[Payout],
        started_at: datetime, total_pot: int, trace_id: str,
    ) -> None:
        info = self._logic.settlement_info(req, room)
        if info is None or not info.club_id:
            return
        if self._report is not None:
            _spawn(self._ingest_report, req.room_id, info, payouts, started_at, total_pot)
        if self._card is not None and info.rake_card > 0:
            _spawn(self._consume_rake, req.room_id, info, trace_id)

    def _ingest_report(
        self, room_id: str, info: SettlementMetaInfo, payouts: List[Payout],
        started_at: datetime, total_pot: int,
    ) -> None:
        try:
            club_id = uuid.UUID(info.club_id)
        except ValueError:
            self._log.warning("report ingest: bad club_id (not UUID) club_id=%s", info.club_id)
            return
        lite = [PayoutLite(user_id=p.user_id, delta=p.delta, reason=p.reason) for p in payouts]
        request = IngestRequest(
            game_record_id=uuid.uuid5(uuid.NAMESPACE_URL, self._keys.settle(room_id)),
            club_id=club_id,
            game_id=self._game_id,
            room_id=room_id,
            round_id=info.round_id,
            started_at=info.started_at or started_at,
            settled_at=datetime.now(timezone.utc),
            total_pot=total_pot,
            rake_card=info.rake_card,
            per_user=payouts_to_per_user(lite),
        )
        try:
            self._report.ingest(request)
        except Exception:
            self._log.warning("report ingest failed room_id=%s", room_id, exc_info=True)

    def _consume_rake(self, room_id: str, info: SettlementMetaInfo, trace_id: str) -> None:
        request = ConsumeRequest(
            from_owner_type="CLUB",
            from_owner_id=info.club_id,
            quantity=info.rake_card,
            idempotency_key=f"{self._game_id}-rake-{room_id}",
            reason="RAKE",
            ref_room_id=room_id,
            ref_game_id=self._game_id,
            trace_id=trace_id,
            note="auto rake from framework Settle hook",
        )
        try:
            self._card.consume(request)
        except Exception:
            self._log.warning(
                "card consume rake failed club_id=%s rake=%d", info.club_id, info.rake_card,
                exc_info=True,
            )

    def _notify_large_payouts(self, req: SettleRequest, payouts: List[Payout]) -> None:
        if self._notify is None or self._notify_min_payout <= 0:
            return
        for payout in payouts:
            if payout is None or not payout.user_id or payout.delta < self._notify_min_payout:
                continue
            _spawn(self._send_payout_win, payout.user_id, req.room_id, payout.delta)

    def _send_payout_win(self, user_id: str, room_id: str, delta: int) -> None:
        try:
            self._notify.send_payout_win(user_id, self._game_id, room_id, delta)
        except Exception:
            self._log.warning(
                "notify large payout failed user_id=%s room_id=%s delta=%d",
                user_id, room_id, delta, exc_info=True,
            )


def _spawn(target: Callable[..., None], *args: Any) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()