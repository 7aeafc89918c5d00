"""HTTP client that charges a club's rake in room cards after a settlement."""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

_DEFAULT_TIMEOUT = 2.0
_CONSUME_PATH = "/internal/cards/consume"

Signer = Callable[[], Mapping[str, str]]


class CardClientError(Exception):
    """Raised when a consume call fails."""


@dataclass
class ConsumeRequest:
    """Body of a card consume call."""

    from_owner_type: str
    from_owner_id: str
    quantity: int
    idempotency_key: str
    reason: str = ""
    ref_room_id: str = ""
    ref_game_id: str = ""
    trace_id: str = ""
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Return the JSON body; empty optional fields are left out."""
        body: Dict[str, Any] = {
            "from_owner_type": self.from_owner_type,
            "from_owner_id": self.from_owner_id,
            "quantity": self.quantity,
        }
        optional_before = {
            "reason": self.reason,
            "ref_room_id": self.ref_room_id,
            "ref_game_id": self.ref_game_id,
        }
        body.update({k: v for k, v in optional_before.items() if v})
        body["idempotency_key"] = self.idempotency_key
        optional_after = {"trace_id": self.trace_id, "note": self.note}
        body.update({k: v for k, v in optional_after.items() if v})
        return body


class CardClient:
    """Posts consume requests to the card service.

    ``signer``, if given, returns extra headers (a service token) for each call;
    a signer that raises is skipped.
    """

    def __init__(
        self, base_url: str, timeout: float = _DEFAULT_TIMEOUT, signer: Optional[Signer] = None
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout or _DEFAULT_TIMEOUT
        self.signer = signer

    def consume(self, req: ConsumeRequest) -> None:
        """Deduct room cards; raise :class:`CardClientError` on any failure."""
        if not self.base_url:
            raise CardClientError("card base url empty")
        body = json.dumps(req.to_dict(), ensure_ascii=False, separators=(",", ":"))
        request = urllib.request.Request(
            self.base_url + _CONSUME_PATH,
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
            raise CardClientError(str(exc)) from exc
        if status >= 400:
            raise CardClientError(f"card consume status {status}")

    def _auth_headers(self) -> Mapping[str, str]:
        if self.signer is None:
            return {}
        try:
            return self.signer()
        except Exception:
            return {}