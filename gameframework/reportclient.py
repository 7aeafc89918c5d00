"""HTTP client that sends each settled round to the reporting read-model."""

from __future__ import annotations

import json
import re
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

_DEFAULT_TIMEOUT = 2.0
_INGEST_PATH = "/internal/reports/ingest"
_HEX32 = re.compile(r"[0-9a-fA-F]{32}")

Signer = Callable[[], Mapping[str, str]]


class ReportClientError(Exception):
    """Raised when an ingest call fails."""


@dataclass(frozen=True)
class PerUser:
    """One player's chip change in an ingest request."""

    user_id: uuid.UUID
    delta_chips: int
    reason: str = ""


@dataclass(frozen=True)
class PayoutLite:
    """A payout as the framework knows it, with a free-form user id."""

    user_id: str
    delta: int
    reason: str = ""


@dataclass
class IngestRequest:
    """Body of a report ingest call."""

    game_record_id: uuid.UUID
    club_id: uuid.UUID
    game_id: str
    room_id: str
    started_at: datetime
    settled_at: datetime
    total_pot: int
    round_id: str = ""
    rake_card: int = 0
    per_user: List[PerUser] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Return the JSON body; an empty round id and zero rake are left out."""
        body: Dict[str, Any] = {
            "game_record_id": str(self.game_record_id),
            "club_id": str(self.club_id),
            "game_id": self.game_id,
            "room_id": self.room_id,
        }
        if self.round_id:
            body["round_id"] = self.round_id
        body["started_at"] = _rfc3339(self.started_at)
        body["settled_at"] = _rfc3339(self.settled_at)
        body["total_pot"] = self.total_pot
        if self.rake_card:
            body["rake_card"] = self.rake_card
        body["per_user"] = [_per_user_dict(p) for p in self.per_user]
        return body


def payouts_to_per_user(payouts: Iterable[PayoutLite]) -> List[PerUser]:
    """Convert payouts, skipping those whose user id is not a UUID."""
    result = []
    for payout in payouts:
        user_id = _parse_uuid(payout.user_id)
        if user_id is not None:
            result.append(PerUser(user_id=user_id, delta_chips=payout.delta, reason=payout.reason))
    return result


class ReportClient:
    """Posts settled rounds to the report service.

    ``signer``, if given, returns extra headers (a service token) for each call;
    a signer that raises is skipped.
    """

    def __init__(
        self, base_url: str, timeout: float = _DEFAULT_TIMEOUT, signer: Optional[Signer] = None
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout or _DEFAULT_TIMEOUT
        self.signer = signer

    def ingest(self, req: IngestRequest) -> None:
        """Send one round; raise :class:`ReportClientError` on any failure."""
        if not self.base_url:
            raise ReportClientError("report base url empty")
        body = json.dumps(req.to_dict(), ensure_ascii=False, separators=(",", ":"))
        request = urllib.request.Request(
            self.base_url + _INGEST_PATH,
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
            raise ReportClientError(str(exc)) from exc
        if status >= 400:
            raise ReportClientError(f"report ingest status {status}")

    def _auth_headers(self) -> Mapping[str, str]:
        if self.signer is None:
            return {}
        try:
            return self.signer()
        except Exception:
            return {}


def _per_user_dict(entry: PerUser) -> Dict[str, Any]:
    body: Dict[str, Any] = {"user_id": str(entry.user_id), "delta_chips": entry.delta_chips}
    if entry.reason:
        body["reason"] = entry.reason
    return body


def _parse_uuid(text: str) -> Optional[uuid.UUID]:
    """Parse the canonical, braced, URN or bare-hex UUID forms; else ``None``."""
    if len(text) == 45:
        if text[:9].lower() != "urn:uuid:":
            return None
        text = text[9:]
    elif len(text) == 38:
        if text[0] != "{" or text[-1] != "}":
            return None
        text = text[1:-1]
    if len(text) == 36:
        if any(text[i] != "-" for i in (8, 13, 18, 23)):
            return None
        text = text.replace("-", "")
    if not _HEX32.fullmatch(text):
        return None
    return uuid.UUID(hex=text)


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += f".{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset()
    if not offset:
        return text + "Z"
    seconds = int(offset.total_seconds())
    sign = "+" if seconds >= 0 else "-"
    hours, rest = divmod(abs(seconds), 3600)
    return f"{text}{sign}{hours:02d}:{rest // 60:02d}"