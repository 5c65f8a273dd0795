from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from relaygate.services.sessions.registry import SessionRecord


PAIRING_CEILING_REASON = "pairing attempt ceiling reached"


@dataclass(frozen=True)
class PairingDecision:
    accepted: bool
    attempt: int
    max_attempts: int
    code: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class PairingCode:
    code: str
    expires_at: datetime
    attempt: int
    max_attempts: int

    def to_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "expires_at": self.expires_at.isoformat(),
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
        }


class PairingGovernor:
    """Counts pairing codes per connection attempt and enforces the ceiling.

    The count lives on the session record and is reset only by an explicit
    connect or restart; automatic reconnects keep spending the same budget.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        code_ttl_s: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.code_ttl_s = code_ttl_s
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def timer_key(instance_id: str) -> str:
        return f"pairing:{instance_id}"

    def register_code(self, record: SessionRecord, code: str) -> PairingDecision:
        # Count the presentation first; codes beyond the ceiling are never stored.
        record.pairing_attempts += 1
        attempt = record.pairing_attempts
        if attempt > self.max_attempts:
            record.clear_pairing()
            return PairingDecision(accepted=False, attempt=attempt, max_attempts=self.max_attempts)
        expires_at = self._clock() + timedelta(seconds=self.code_ttl_s)
        record.pairing_code = code
        record.pairing_expires_at = expires_at
        return PairingDecision(
            accepted=True,
            attempt=attempt,
            max_attempts=self.max_attempts,
            code=code,
            expires_at=expires_at,
        )

    def at_ceiling(self, record: SessionRecord) -> bool:
        return record.pairing_attempts >= self.max_attempts

    def current_code(self, record: SessionRecord) -> PairingCode | None:
        # Expired codes are cleared on read.
        if record.pairing_code is None or record.pairing_expires_at is None:
            return None
        if self._clock() >= record.pairing_expires_at:
            record.clear_pairing()
            return None
        return PairingCode(
            code=record.pairing_code,
            expires_at=record.pairing_expires_at,
            attempt=record.pairing_attempts,
            max_attempts=self.max_attempts,
        )

    def reset(self, record: SessionRecord) -> None:
        record.pairing_attempts = 0
        record.clear_pairing()
