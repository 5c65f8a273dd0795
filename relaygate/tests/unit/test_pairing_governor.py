from __future__ import annotations

from datetime import datetime, timedelta, timezone

from relaygate.services.sessions.pairing import PairingGovernor
from relaygate.services.sessions.registry import SessionRecord


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_codes_within_the_ceiling_are_stored_with_expiry() -> None:
    clock = _Clock()
    governor = PairingGovernor(max_attempts=3, code_ttl_s=60, clock=clock)
    record = SessionRecord(instance_id="i1", tenant_id="t1", name="Support")

    decision = governor.register_code(record, "code-1")
    assert decision.accepted
    assert decision.attempt == 1
    assert decision.expires_at == clock.now + timedelta(seconds=60)
    current = governor.current_code(record)
    assert current is not None
    assert current.to_dict()["code"] == "code-1"
    assert current.max_attempts == 3


def test_code_beyond_the_ceiling_is_discarded() -> None:
    governor = PairingGovernor(max_attempts=3, code_ttl_s=60, clock=_Clock())
    record = SessionRecord(instance_id="i1", tenant_id="t1", name="Support")
    for index in range(3):
        assert governor.register_code(record, f"code-{index}").accepted
    assert governor.at_ceiling(record)

    rejected = governor.register_code(record, "code-4")
    assert not rejected.accepted
    assert rejected.attempt == 4
    assert record.pairing_code is None
    assert governor.current_code(record) is None


def test_expired_code_is_cleared_on_read() -> None:
    clock = _Clock()
    governor = PairingGovernor(max_attempts=3, code_ttl_s=60, clock=clock)
    record = SessionRecord(instance_id="i1", tenant_id="t1", name="Support")
    governor.register_code(record, "code-1")
    clock.now += timedelta(seconds=61)
    assert governor.current_code(record) is None
    assert record.pairing_expires_at is None
    # Expiry does not refund the attempt.
    assert record.pairing_attempts == 1


def test_reset_restores_a_fresh_budget() -> None:
    governor = PairingGovernor(max_attempts=2, code_ttl_s=60, clock=_Clock())
    record = SessionRecord(instance_id="i1", tenant_id="t1", name="Support")
    governor.register_code(record, "a")
    governor.register_code(record, "b")
    governor.reset(record)
    assert record.pairing_attempts == 0
    assert governor.register_code(record, "c").attempt == 1
    assert PairingGovernor.timer_key("i1") == "pairing:i1"
