# gameframework

A runtime framework for room-based multiplayer game services. A game author
writes only the game's decisions. The framework handles the rest:

- rooms, seats, stakes and the room lifecycle
  (`WAITING → PLAYING → SETTLING`, and `CLOSED` once a room is removed)
- subscriptions that stream snapshots, state changes and payouts
- ledger transfers with idempotency keys, with a compensating unfreeze or
  refund when a game hook rejects an operation
- settlement: payouts become ledger entries, a game record is written, and
  optional report, rake and large-payout calls are sent in background threads

The package has no runtime dependencies.

## Modules

| Module | Contents |
|---|---|
| `gameframework.messages` | Request, response and event dataclasses; `GameState`, `ErrorCode`, `TxType` |
| `gameframework.room` | `Room`, `Manager`, `Subscription` and the `RoomError` family |
| `gameframework.logic` | `GameLogic`, `GameMeta`, `Context`, and the optional `SettlementMeta` / `ReplayProducer` |
| `gameframework.service` | `GameService`, `LogicAdapter`, `SessionBinder`, `TransferError`, `RoomNotFoundError` |
| `gameframework.framework` | `GameLogicAdapter`, `context_factory`, `tick_once`, `run_ticks` |
| `gameframework.idempotency` | `Keys` |
| `gameframework.config` | `Config`, `load_from_env` |
| `gameframework.cardclient` | `CardClient`, `ConsumeRequest` |
| `gameframework.reportclient` | `ReportClient`, `IngestRequest`, `PayoutLite`, `payouts_to_per_user` |
| `gameframework.notifyclient` | `NotifyClient`, `build_payout_win_payload` |

## Writing a game

Subclass `GameLogic` and implement its hooks:

```python
from gameframework.logic import GameLogic, GameMeta
from gameframework.messages import Payout


class HighCard(GameLogic):
    def meta(self):
        return GameMeta(game_id="highcard", default_seats=4)

    def on_create_room(self, ctx, req, room):
        room.with_game_state(lambda gs: gs.update(round=1))

    def on_enter_room(self, ctx, req, room):
        pass

    def on_place_bet(self, ctx, req, room):
        pass

    def on_settle(self, ctx, req, room):
        stakes = room.seat_stakes()
        winner = max(stakes, key=stakes.get)
        pot = sum(stakes.values())
        return [
            Payout(user_id=user, delta=(pot - stake) if user == winner else -stake, reason="round")
            for user, stake in stakes.items()
        ]

    def on_tick(self, ctx, room):
        pass
```

A hook rejects an operation by raising:

- `on_create_room`: the owner's stake is unfrozen and the room is removed.
- `on_enter_room`: the seat stays taken; the response carries `ErrorCode.INTERNAL`.
- `on_place_bet`: the stake is taken back in the room and a refund is booked.
- `on_settle`: the settlement is aborted.
- `on_tick`: the room is removed.

Each hook receives a `Context` with `trace_id`, the raw `tx` and `record`
clients, and `logger()`, a logger adapter that tags records with the trace id.

Two optional mix-ins extend a game:

- `SettlementMeta.settlement_info(req, room)` returns a `SettlementMetaResult`
  (club id, round id, rake in cards, start time). With a non-empty club id the
  round is sent to the report service and, when the rake is positive, the rake
  is consumed from the club's cards.
- `ReplayProducer.build_replay_blob(req, room)` returns `(blob, version)`,
  stored with the game record. An empty blob, version 0 or a raised exception
  means the round has no replay.

## Serving a game

`GameService` implements `create_room`, `enter_room`, `leave_room`,
`place_bet`, `settle` and `subscribe`. It needs a room `Manager`, a ledger
client with a `transfer(TransferRequest) -> TransferResponse` method, a
`LogicAdapter` (usually `GameLogicAdapter(your_logic)`) and a context factory:

```python
from gameframework.framework import GameLogicAdapter, context_factory
from gameframework.messages import (
    Ack, CreateRoomRequest, EnterRoomRequest, PlaceBetRequest,
    SettleRequest, TransferResponse,
)
from gameframework.room import Manager
from gameframework.service import GameService


class Ledger:
    def transfer(self, req):
        return TransferResponse(ack=Ack.ok())


service = GameService(Manager(), Ledger(), GameLogicAdapter(HighCard()), context_factory())

room_id = service.create_room(CreateRoomRequest(user_id="alice", ante=10)).room_id
service.enter_room(EnterRoomRequest(room_id=room_id, user_id="bob"))
service.place_bet(PlaceBetRequest(room_id=room_id, user_id="alice", amount=50))
service.place_bet(PlaceBetRequest(room_id=room_id, user_id="bob", amount=100))
result = service.settle(SettleRequest(room_id=room_id))
# result.payouts: bob +50, alice -50; the room is then removed
```

Business errors come back in the response's `Ack` as an `ErrorCode`
(`ROOM_NOT_FOUND`, `ROOM_FULL`, `ALREADY_IN_ROOM`, `GAME_STATE_INVALID`,
`INTERNAL`, …). A failed freeze in `create_room` or a failed settlement
transfer raises `TransferError`; an exception from the bet transfer in
`place_bet` propagates as it is. A bet transfer whose ack is not `OK` is
returned to the caller unchanged.

Optional constructor arguments:

- `sessions`: any object with `bind(room_id)` / `unbind(room_id)`
  (`SessionBinder`); failures are only logged.
- `record`: an object with `write_game_record(request, timeout=...)`, called
  after each settlement; failures are only logged.
- `report`, `card`, `notify`: the HTTP clients below.
- `notify_min_payout`: a winner whose payout is at least this gets a push;
  0 turns pushes off.

`subscribe(req, stop=None)` raises `RoomNotFoundError` for an unknown room and
otherwise returns an iterator of `SubscribeResponse` events. The first event is
a snapshot. The stream ends when the room closes or the `stop` event is set.

If the game's meta sets `tick_interval` (seconds), run
`run_ticks(stop, interval, manager, logic, new_context)` in a thread; it calls
`tick_once` every interval until `stop` is set.

## Rooms on their own

```python
from gameframework.room import Manager, RoomFullError

manager = Manager()
room = manager.create("alice", "highcard", 100, 2)   # the owner takes seat 0
room.enter("bob")
try:
    room.enter("carol")
except RoomFullError:
    pass

room.place_bet("alice", 50)      # WAITING → PLAYING
room.place_bet("bob", 100)
room.seat_stakes()               # {"alice": 50, "bob": 100}

with room.subscribe("alice") as sub:
    first = sub.get_nowait()     # the current snapshot
    room.settle()                # PLAYING → SETTLING

manager.remove(room.id)          # closes the room
```

Room operations raise subclasses of `RoomError`: `RoomFullError`,
`AlreadyJoinedError`, `NotInRoomError`, `NotOwnerError` and `WrongStateError`.
A subscriber whose queue (32 events) is full is dropped.

## Idempotency keys

```python
from gameframework.idempotency import Keys

keys = Keys("highcard")
keys.create("r1")                  # "highcard-create-r1"
keys.create_compensate("r1")       # "highcard-create-compensate-r1"
keys.bet("r1", "alice", 50)        # "highcard-bet-r1-alice-50"
keys.bet_refund("r1", "alice", 50) # "highcard-bet-refund-r1-alice-50"
keys.settle("r1")                  # "highcard-settle-r1"
keys.settle("r1", "3")             # "highcard-settle-r1-3"
```

## HTTP clients

`CardClient`, `ReportClient` and `NotifyClient` post JSON to
`/internal/cards/consume`, `/internal/reports/ingest` and
`/internal/notify/send` under their base URL, with a default timeout of 2
seconds. Each takes an optional `signer`, a callable returning extra headers
for a service token. A status of 400 or above, a network failure or an empty
base URL raises `CardClientError`, `ReportClientError` or `NotifyClientError`.
`payouts_to_per_user` skips payouts whose user id is not a UUID.

## Configuration

`load_from_env(cfg, environ)` returns a copy of `cfg` with every unset field
taken from `environ` (`os.environ` by default). Set fields are kept.

| Variable | Default |
|---|---|
| `GRPC_PORT` | `9201` |
| `CONSUL_ADDR` | `127.0.0.1:8500` |
| `ETCD_ENDPOINTS` | `127.0.0.1:2379` (comma separated) |
| `TX_SERVICE_NAME` | `tx` |
| `RECORD_SERVICE_NAME` | `record` |
| `ADVERTISE_HOST` | `127.0.0.1` |
| `ENV` | `dev` |
| `INSTANCE_ID` | empty |
| `REPORT_SERVICE_URL` | empty |
| `CARD_SERVICE_URL` | empty |
| `NOTIFY_SERVICE_URL` | empty |
| `GAME_NOTIFY_MIN_PAYOUT` | `1000` |

`record_timeout` defaults to 2 seconds. `service_name` and `extra_tags` are
not read from the environment.

## What the package does not do

The package is a library with no command. It does not open a network
listener, register with service discovery, keep a session store or dial the
ledger and record services. `GameService` is called directly. The caller
supplies the transport, the ledger and record clients and any `SessionBinder`,
and builds the report, card and notify clients from the configured URLs.