import logging
import queue
import threading
import uuid
from datetime import datetime, timezone

import pytest

from gameframework.idempotency import Keys
from gameframework.logic import Context
from gameframework.messages import (
    Ack,
    CreateRoomRequest,
    EnterRoomRequest,
    ErrorCode,
    LeaveRoomRequest,
    Payout,
    PlaceBetRequest,
    SettleRequest,
    SubscribeRequest,
    TransferResponse,
    TxType,
    Wallet,
)
from gameframework.room import (
    AlreadyJoinedError,
    Manager,
    NotInRoomError,
    NotOwnerError,
    RoomFullError,
    WrongStateError,
)
from gameframework.service import (
    GameService,
    LogicAdapter,
    RoomNotFoundError,
    SettlementMetaInfo,
    TransferError,
    code_from_room_error,
)

GAME = "ddz"


class FakeTx:
    def __init__(self):
        self.balances = {}
        self.frozen = {}
        self.log = []
        self._done = {}
        self.force_error = None
        self.force_ack = None

    def transfer(self, req):
        if self.force_error is not None:
            raise self.force_error
        if req.idempotency_key in self._done:
            return self._done[req.idempotency_key]
        self.log.append(req)
        if self.force_ack is not None:
            return TransferResponse(ack=self.force_ack)
        for e in req.entries:
            if e.type is TxType.FREEZE:
                self.balances[e.user_id] = self.balances.get(e.user_id, 0) - e.amount
                self.frozen[e.user_id] = self.frozen.get(e.user_id, 0) + e.amount
            elif e.type is TxType.UNFREEZE:
                self.balances[e.user_id] = self.balances.get(e.user_id, 0) + e.amount
                self.frozen[e.user_id] = self.frozen.get(e.user_id, 0) - e.amount
            else:
                self.balances[e.user_id] = self.balances.get(e.user_id, 0) + e.amount
        wallets = []
        for user in dict.fromkeys(e.user_id for e in req.entries):
            wallets.append(Wallet(user_id=user, balance=self.balances[user],
                                  frozen=self.frozen.get(user, 0), currency="CNY"))
        resp = TransferResponse(ack=Ack.ok(), wallets=wallets)
        self._done[req.idempotency_key] = resp
        return resp


class FakeRecord:
    def __init__(self, force_error=None):
        self.calls = []
        self.force_error = force_error

    def write_game_record(self, request, timeout):
        if self.force_error is not None:
            raise self.force_error
        self.calls.append((request, timeout))


class FakeSessions:
    def __init__(self):
        self.bound = []
        self.unbound = []

    def bind(self, room_id):
        self.bound.append(room_id)

    def unbind(self, room_id):
        self.unbound.append(room_id)


class QueueSink:
    def __init__(self):
        self.items = queue.Queue()

    def ingest(self, req):
        self.items.put(req)

    def consume(self, req):
        self.items.put(req)

    def send_payout_win(self, user_id, game_id, room_id, delta):
        self.items.put((user_id, game_id, room_id, delta))


class FakeLogic(LogicAdapter):
    def __init__(self, default_seats=0, fail=(), payouts=(), settlement=None, replay=None):
        self._default_seats = default_seats
        self.fail = set(fail)
        self.payouts = list(payouts)
        self.settlement = settlement
        self.replay = replay

    def _maybe_fail(self, stage):
        if stage in self.fail:
            raise RuntimeError(f"{stage} rejected")

    def game_id(self):
        return GAME

    def default_seats(self):
        return self._default_seats

    def on_create_room(self, ctx, req, room):
        self._maybe_fail("create")

    def on_enter_room(self, ctx, req, room):
        self._maybe_fail("enter")

    def on_place_bet(self, ctx, req, room):
        self._maybe_fail("bet")

    def on_settle(self, ctx, req, room):
        self._maybe_fail("settle")
        return self.payouts

    def settlement_info(self, req, room):
        return self.settlement

    def build_replay_blob(self, req, room):
        return self.replay


def new_context(trace_id):
    return Context(trace_id=trace_id, log=logging.getLogger("test"))


def make(logic=None, **kwargs):
    manager = Manager()
    tx = FakeTx()
    sessions = FakeSessions()
    svc = GameService(manager, tx, logic or FakeLogic(), new_context, sessions, **kwargs)
    return svc, manager, tx, sessions


def all_rooms(manager):
    rooms = []
    manager.for_each(rooms.append)
    return rooms


def playing_room(svc, tx):
    tx.balances.update({"alice": 1000, "bob": 1000})
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    svc.enter_room(EnterRoomRequest(room_id=room_id, user_id="bob"))
    svc.place_bet(PlaceBetRequest(room_id=room_id, user_id="alice", amount=100))
    svc.place_bet(PlaceBetRequest(room_id=room_id, user_id="bob", amount=100))
    return room_id


@pytest.mark.parametrize("err,code", [
    (RoomFullError(), ErrorCode.ROOM_FULL),
    (AlreadyJoinedError(), ErrorCode.ALREADY_IN_ROOM),
    (NotInRoomError(), ErrorCode.ROOM_NOT_FOUND),
    (NotOwnerError(), ErrorCode.NOT_ROOM_OWNER),
    (WrongStateError(), ErrorCode.GAME_STATE_INVALID),
    (ValueError("x"), ErrorCode.INTERNAL),
])
def test_code_from_room_error(err, code):
    assert code_from_room_error(err) is code


def test_create_room_without_stake_binds_session():
    svc, manager, tx, sessions = make()
    resp = svc.create_room(CreateRoomRequest(user_id="alice", ante=100, max_seats=3))
    assert resp.ack.code is ErrorCode.OK
    assert resp.ack.trace_id
    room = manager.get(resp.room_id)
    assert room.owner_id == "alice"
    assert room.game_id == GAME
    assert sessions.bound == [resp.room_id]
    assert tx.log == []


def test_create_room_freezes_owner_stake():
    svc, manager, tx, _ = make()
    resp = svc.create_room(CreateRoomRequest(user_id="alice", owner_stake=500))
    (freeze,) = tx.log
    assert freeze.idempotency_key == Keys(GAME).create(resp.room_id)
    entry = freeze.entries[0]
    assert (entry.user_id, entry.type, entry.amount) == ("alice", TxType.FREEZE, 500)
    assert entry.ref_room_id == resp.room_id
    assert entry.memo == "owner stake"


def test_create_room_hook_failure_unfreezes_and_removes():
    svc, manager, tx, sessions = make(FakeLogic(fail={"create"}))
    resp = svc.create_room(CreateRoomRequest(user_id="alice", owner_stake=500))
    assert resp.ack.code is ErrorCode.INTERNAL
    assert resp.ack.message == "create rejected"
    assert [t.entries[0].type for t in tx.log] == [TxType.FREEZE, TxType.UNFREEZE]
    assert tx.log[1].idempotency_key.startswith(f"{GAME}-create-compensate-")
    assert tx.balances["alice"] == 0
    assert all_rooms(manager) == []
    assert sessions.bound == []


def test_create_room_freeze_failure_raises_and_removes_room():
    svc, manager, tx, _ = make()
    tx.force_error = ConnectionError("ledger down")
    with pytest.raises(TransferError, match="tx freeze"):
        svc.create_room(CreateRoomRequest(user_id="alice", owner_stake=500))
    assert all_rooms(manager) == []


def test_seat_count_falls_back_to_logic_then_default():
    svc, manager, _, _ = make(FakeLogic(default_seats=6))
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    assert manager.get(room_id).max_seats == 6

    svc, manager, _, _ = make(FakeLogic(default_seats=0))
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    assert manager.get(room_id).max_seats == 3


def test_enter_room_unknown():
    svc, _, _, _ = make()
    resp = svc.enter_room(EnterRoomRequest(room_id="nope", user_id="bob"))
    assert resp.ack.code is ErrorCode.ROOM_NOT_FOUND
    assert resp.ack.message == "room not found"


def test_enter_room_and_twice_rejected():
    svc, _, _, _ = make()
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    resp = svc.enter_room(EnterRoomRequest(room_id=room_id, user_id="bob"))
    assert resp.ack.code is ErrorCode.OK
    assert [s.user_id for s in resp.snapshot.seats] == ["alice", "bob"]
    again = svc.enter_room(EnterRoomRequest(room_id=room_id, user_id="bob"))
    assert again.ack.code is ErrorCode.ALREADY_IN_ROOM
    assert again.ack.message == "already in room"


def test_enter_room_hook_failure_keeps_seat():
    svc, manager, _, _ = make(FakeLogic(fail={"enter"}))
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    resp = svc.enter_room(EnterRoomRequest(room_id=room_id, user_id="bob"))
    assert resp.ack.code is ErrorCode.INTERNAL
    assert manager.get(room_id).seat_stake("bob") == 0


def test_leave_room():
    svc, manager, _, _ = make()
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    svc.enter_room(EnterRoomRequest(room_id=room_id, user_id="bob"))
    assert svc.leave_room(LeaveRoomRequest(room_id=room_id, user_id="bob")).ack.code is ErrorCode.OK
    assert manager.get(room_id).seat_stake("bob") is None
    missing = svc.leave_room(LeaveRoomRequest(room_id=room_id, user_id="bob"))
    assert missing.ack.code is ErrorCode.ROOM_NOT_FOUND
    assert missing.ack.message == "user not in room"
    gone = svc.leave_room(LeaveRoomRequest(room_id="nope", user_id="bob"))
    assert gone.ack.code is ErrorCode.ROOM_NOT_FOUND


def test_place_bet_books_and_stakes():
    svc, manager, tx, _ = make()
    tx.balances["alice"] = 1000
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    resp = svc.place_bet(PlaceBetRequest(room_id=room_id, user_id="alice", amount=100))
    assert resp.ack.code is ErrorCode.OK
    assert resp.new_balance == 1000 - 100
    (bet,) = tx.log
    assert bet.idempotency_key == Keys(GAME).bet(room_id, "alice", 100)
    assert (bet.entries[0].type, bet.entries[0].amount) == (TxType.BET, -100)
    assert manager.get(room_id).seat_stake("alice") == 100


def test_place_bet_ledger_rejection_passes_ack_through():
    svc, manager, tx, _ = make()
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    tx.force_ack = Ack.error(ErrorCode.INSUFFICIENT_BALANCE, "no funds")
    resp = svc.place_bet(PlaceBetRequest(room_id=room_id, user_id="alice", amount=100))
    assert resp.ack == tx.force_ack
    assert manager.get(room_id).seat_stake("alice") == 0


def test_place_bet_hook_failure_refunds():
    svc, manager, tx, _ = make(FakeLogic(fail={"bet"}))
    tx.balances["alice"] = 1000
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    resp = svc.place_bet(PlaceBetRequest(room_id=room_id, user_id="alice", amount=100))
    assert resp.ack.code is ErrorCode.INTERNAL
    assert tx.log[-1].idempotency_key == Keys(GAME).bet_refund(room_id, "alice", 100)
    assert tx.log[-1].entries[0].type is TxType.REFUND
    assert tx.balances["alice"] == 1000
    assert manager.get(room_id).seat_stake("alice") == 0


def test_place_bet_not_seated_refunds():
    svc, _, tx, _ = make()
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    resp = svc.place_bet(PlaceBetRequest(room_id=room_id, user_id="mallory", amount=50))
    assert resp.ack.code is ErrorCode.ROOM_NOT_FOUND
    assert [t.entries[0].type for t in tx.log] == [TxType.BET, TxType.REFUND]
    assert tx.balances["mallory"] == 0


def test_place_bet_ledger_error_propagates():
    svc, _, tx, _ = make()
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    tx.force_error = ConnectionError("ledger down")
    with pytest.raises(ConnectionError):
        svc.place_bet(PlaceBetRequest(room_id=room_id, user_id="alice", amount=50))


def test_settle_books_records_and_closes():
    payouts = [Payout("alice", 100, "win"), Payout("bob", -100, "lose"), Payout("carol", 0, "")]
    record = FakeRecord()
    svc, manager, tx, sessions = make(FakeLogic(payouts=payouts), record=record, record_timeout=1.5)
    room_id = playing_room(svc, tx)
    resp = svc.settle(SettleRequest(room_id=room_id))
    assert resp.ack.code is ErrorCode.OK
    assert resp.payouts == payouts
    settle_tx = tx.log[-1]
    assert settle_tx.idempotency_key == Keys(GAME).settle(room_id)
    assert [(e.user_id, e.type, e.amount) for e in settle_tx.entries] == [
        ("alice", TxType.SETTLE_WIN, 100),
        ("bob", TxType.SETTLE_LOSS, -100),
    ]
    ((written, timeout),) = record.calls
    assert timeout == 1.5
    assert written.record.total_pot == 100
    assert written.record.idempotency_key == Keys(GAME).settle(room_id)
    assert written.record.payouts == payouts
    assert written.record.settled_at >= written.record.started_at
    assert written.record.replay_pb == b""
    assert manager.get(room_id) is None
    assert sessions.unbound == [room_id]


def test_settle_writes_replay_blob():
    record = FakeRecord()
    logic = FakeLogic(payouts=[Payout("alice", 10, "")], replay=(b"blob", 2))
    svc, _, tx, _ = make(logic, record=record)
    svc.settle(SettleRequest(room_id=playing_room(svc, tx)))
    written = record.calls[0][0].record
    assert (written.replay_pb, written.replay_version) == (b"blob", 2)


def test_settle_without_money_moves_skips_transfer():
    svc, _, tx, _ = make(FakeLogic(payouts=[Payout("alice", 0, "")]))
    room_id = playing_room(svc, tx)
    before = len(tx.log)
    assert svc.settle(SettleRequest(room_id=room_id)).ack.code is ErrorCode.OK
    assert len(tx.log) == before


def test_settle_requires_playing_state():
    svc, manager, _, _ = make()
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    resp = svc.settle(SettleRequest(room_id=room_id))
    assert resp.ack.code is ErrorCode.GAME_STATE_INVALID
    assert manager.get(room_id) is not None
    assert svc.settle(SettleRequest(room_id="nope")).ack.code is ErrorCode.ROOM_NOT_FOUND


def test_settle_hook_failure_keeps_room():
    svc, manager, tx, _ = make(FakeLogic(fail={"settle"}))
    room_id = playing_room(svc, tx)
    resp = svc.settle(SettleRequest(room_id=room_id))
    assert resp.ack.code is ErrorCode.INTERNAL
    assert resp.ack.message == "settle rejected"
    assert manager.get(room_id).id == room_id


def test_settle_transfer_failure_raises():
    svc, _, tx, _ = make(FakeLogic(payouts=[Payout("alice", 10, "")]))
    room_id = playing_room(svc, tx)
    tx.force_error = ConnectionError("ledger down")
    with pytest.raises(TransferError, match="tx settle"):
        svc.settle(SettleRequest(room_id=room_id))


def test_settle_survives_record_failure():
    record = FakeRecord(force_error=TimeoutError("slow"))
    svc, manager, tx, _ = make(FakeLogic(payouts=[Payout("alice", 10, "")]), record=record)
    room_id = playing_room(svc, tx)
    assert svc.settle(SettleRequest(room_id=room_id)).ack.code is ErrorCode.OK
    assert manager.get(room_id) is None


def test_settle_reports_and_charges_rake():
    club = str(uuid.uuid4())
    player = str(uuid.uuid4())
    started = datetime(2024, 1, 1, tzinfo=timezone.utc)
    info = SettlementMetaInfo(club_id=club, round_id="r1", rake_card=2, started_at=started)
    logic = FakeLogic(payouts=[Payout(player, 50, "win"), Payout("bob", -50, "")], settlement=info)
    report, card = QueueSink(), QueueSink()
    svc, _, tx, _ = make(logic, report=report, card=card)
    room_id = playing_room(svc, tx)
    svc.settle(SettleRequest(room_id=room_id))

    ingest = report.items.get(timeout=2)
    assert ingest.club_id == uuid.UUID(club)
    assert ingest.game_record_id == uuid.uuid5(uuid.NAMESPACE_URL, Keys(GAME).settle(room_id))
    assert ingest.started_at == started
    assert ingest.round_id == "r1"
    assert ingest.rake_card == 2
    assert ingest.total_pot == 50
    assert [p.user_id for p in ingest.per_user] == [uuid.UUID(player)]

    consume = card.items.get(timeout=2)
    assert consume.from_owner_type == "CLUB"
    assert consume.from_owner_id == club
    assert consume.quantity == 2
    assert consume.reason == "RAKE"
    assert consume.idempotency_key == f"{GAME}-rake-{room_id}"


def test_bad_club_id_skips_report_but_charges_rake():
    info = SettlementMetaInfo(club_id="not-a-uuid", rake_card=1)
    report, card = QueueSink(), QueueSink()
    svc, _, tx, _ = make(FakeLogic(settlement=info), report=report, card=card)
    svc.settle(SettleRequest(room_id=playing_room(svc, tx)))
    assert card.items.get(timeout=2).from_owner_id == "not-a-uuid"
    with pytest.raises(queue.Empty):
        report.items.get(timeout=0.3)


def test_no_club_skips_integrations():
    report, card = QueueSink(), QueueSink()
    logic = FakeLogic(settlement=SettlementMetaInfo(club_id="", rake_card=3))
    svc, _, tx, _ = make(logic, report=report, card=card)
    svc.settle(SettleRequest(room_id=playing_room(svc, tx)))
    with pytest.raises(queue.Empty):
        card.items.get(timeout=0.3)
    assert report.items.empty()


def test_large_payouts_notified():
    notify = QueueSink()
    payouts = [Payout("alice", 1500, ""), Payout("bob", 999, ""), Payout("", 5000, "")]
    svc, _, tx, _ = make(FakeLogic(payouts=payouts), notify=notify, notify_min_payout=1000)
    room_id = playing_room(svc, tx)
    svc.settle(SettleRequest(room_id=room_id))
    assert notify.items.get(timeout=2) == ("alice", GAME, room_id, 1500)
    with pytest.raises(queue.Empty):
        notify.items.get(timeout=0.3)


def test_notify_disabled_without_threshold():
    notify = QueueSink()
    svc, _, tx, _ = make(FakeLogic(payouts=[Payout("alice", 1500, "")]), notify=notify)
    svc.settle(SettleRequest(room_id=playing_room(svc, tx)))
    with pytest.raises(queue.Empty):
        notify.items.get(timeout=0.3)


def test_subscribe_unknown_room():
    svc, _, _, _ = make()
    with pytest.raises(RoomNotFoundError, match="nope"):
        svc.subscribe(SubscribeRequest(room_id="nope", user_id="alice"))


def test_subscribe_closed_room_rejected():
    svc, manager, _, _ = make()
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    manager.get(room_id).close()
    with pytest.raises(WrongStateError):
        svc.subscribe(SubscribeRequest(room_id=room_id, user_id="alice"))


def test_subscribe_streams_until_room_closes():
    svc, manager, _, _ = make()
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    stream = svc.subscribe(SubscribeRequest(room_id=room_id, user_id="alice"))
    first = next(stream)
    assert first.snapshot.room_id == room_id
    svc.enter_room(EnterRoomRequest(room_id=room_id, user_id="bob"))
    second = next(stream)
    assert [s.user_id for s in second.snapshot.seats] == ["alice", "bob"]
    manager.remove(room_id)
    with pytest.raises(StopIteration):
        next(stream)


def test_subscribe_stops_on_event():
    svc, _, _, _ = make()
    room_id = svc.create_room(CreateRoomRequest(user_id="alice")).room_id
    stop = threading.Event()
    stream = svc.subscribe(SubscribeRequest(room_id=room_id, user_id="alice"), stop)
    assert next(stream).snapshot.owner_id == "alice"
    stop.set()
    with pytest.raises(StopIteration):
        next(stream)