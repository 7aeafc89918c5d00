"""Idempotency keys for each stage of a room's ledger lifecycle."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Keys:
    """Builds idempotency keys, all prefixed with ``<game_id>-``."""

    game_id: str

    def create(self, room_id: str) -> str:
        return f"{self.game_id}-create-{room_id}"

    def create_compensate(self, room_id: str) -> str:
        return f"{self.game_id}-create-compensate-{room_id}"

    def bet(self, room_id: str, user_id: str, amount: int) -> str:
        return f"{self.game_id}-bet-{room_id}-{user_id}-{amount}"

    def bet_refund(self, room_id: str, user_id: str, amount: int) -> str:
        return f"{self.game_id}-bet-refund-{room_id}-{user_id}-{amount}"

    def settle(self, room_id: str, round_id: str = "") -> str:
        if not round_id:
            return f"{self.game_id}-settle-{room_id}"
        return f"{self.game_id}-settle-{room_id}-{round_id}"