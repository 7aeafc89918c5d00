"""HTTP client that pushes a big-win notice to a player after a settlement."""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Mapping, Optional

_DEFAULT_TIMEOUT = 2.0
_SEND_PATH = "/internal/notify/send"

Signer = Callable[[], Mapping[str, str]]


class NotifyClientError(Exception):
    """Raised when a notify call fails."""


def build_payout_win_payload(user_id: str, game_id: str, room_id: str, delta: int) -> Dict[str, Any]:
    """Return the notify-service body for one player's big win."""
    return {
        "message": {
            "title": "中大獎",
            "body": f"您在 {game_id} 贏得 {delta} ！",
            "channel": "transaction",
            "data": {
                "game_id": game_id,
                "room_id": room_id,
                "amount": str(delta),
                "deeplink": "club8://wallet",
            },
        },
        "target": {"user_id": user_id},
        "idempotency_key": f"payout-win-{game_id}-{room_id}-{user_id}",
        "trigger_source": "service:game-framework:payout",
    }


class NotifyClient:
    """Posts push notifications to the notify service.

    ``signer``, if given, returns extra headers (a service token) for each call;
    a signer that raises is skipped.
    """

    def __init__(
        self, base_url: str, timeout: float = _DEFAULT_TIMEOUT, signer: Optional[Signer] = None
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout or _DEFAULT_TIMEOUT
        self.signer = signer

    def send_payout_win(self, user_id: str, game_id: str, room_id: str, delta: int) -> None:
        """Push one big-win notice; raise :class:`NotifyClientError` on failure."""
        if not self.base_url:
            raise NotifyClientError("notify base url empty")
        payload = build_payout_win_payload(user_id, game_id, room_id, delta)
        body = json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
        request = urllib.request.Request(
            self.base_url + _SEND_PATH,
            data=body.encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        for name, value in self._auth_headers().items():
            request.add_header(name, value)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as resp:
                status = resp.status
        except urllib.error.HTTPError as exc:
            status = exc.code
            exc.close()
        except (urllib.error.URLError, OSError) as exc:
            raise NotifyClientError(str(exc)) from exc
        if status >= 400:
            raise NotifyClientError(f"notify send status {status}")

    def _auth_headers(self) -> Mapping[str, str]:
        if self.signer is None:
            return {}
        try:
            return self.signer()
        except Exception:
            return {}