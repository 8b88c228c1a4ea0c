import pytest

from crash_observer.frames import parse_events
from crash_observer.models import RoundStatus, Settled, StatusUpdate, Unrecognized, WagerPlaced
from crash_observer.rounds import (
    AGGREGATE_READY,
    DELTA_KNOWN,
    ROUND_FINALIZED,
    WAGER_DISCARDED,
    category_for,
    coerce_amount,
)
from tests.conftest import crash, push


def wager(pid, amount, auto=None, **kw):
    return WagerPlaced(participant_id=pid, display_name=kw.pop("name", pid), amount=amount, auto_hint=auto, **kw)


@pytest.mark.parametrize("value,expected", [
    (1.1, "red"),
    (1.5, "blue"),
    (3.0, "pink"),
    (7.5, "green"),
    (20.0, "yellow"),
    (30.0, "gradient"),
])
def test_category_thresholds(value, expected):
    assert category_for(value) == expected


def test_category_boundaries_are_exclusive():
    assert category_for(1.2) == "blue"
    assert category_for(2.0) == "pink"
    assert category_for(25.0) == "gradient"
    assert category_for(None) is None


def test_coerce_amount():
    assert coerce_amount(10) == 10.0
    assert coerce_amount("2.5") == 2.5
    assert coerce_amount(None) == 0.0
    assert coerce_amount("abc") == 0.0
    assert coerce_amount(float("nan")) == 0.0
    assert coerce_amount(-4) == 0.0
    assert coerce_amount({"x": 1}) == 0.0
    assert coerce_amount(10 ** 400) == 0.0


def test_scenario_one_round(machine):
    machine.apply(StatusUpdate(status_code=1))
    machine.apply(wager("u1", 10))
    machine.apply(wager("u1", 5))
    out = machine.apply(StatusUpdate(status_code=2, delta=1.4))
    assert [n.type for n in out] == [AGGREGATE_READY, DELTA_KNOWN]
    assert out[0].payload == {"participantCount": 1, "totalStaked": 15.0}
    assert out[1].payload == {"delta": 1.4}

    out = machine.apply(Settled(value=3.2))
    assert [n.type for n in out] == [ROUND_FINALIZED]

    [record] = machine.history.snapshot()
    assert record.participant_count == 1
    assert record.total_staked == 15.0
    assert record.derived_category == "pink"
    assert record.settlement_value == 3.2
    assert machine.status is RoundStatus.UNKNOWN
    assert len(machine.bets) == 0


def test_accumulation_overwrites_hint(machine):
    machine.apply(StatusUpdate(round_id="r1", status_code=1))
    machine.apply(wager("u1", 3, auto=1.5, name="first"))
    machine.apply(wager("u1", 4, auto=2.5, name="second"))
    stake = machine.bets.get("u1")
    assert stake.total_stake == 7.0
    assert stake.last_auto_cashout_hint == 2.5
    assert stake.display_name == "first"


@pytest.mark.parametrize("status_code", [None, 2, 3])
def test_wagers_gated_outside_collecting(machine, status_code):
    if status_code is not None:
        machine.apply(StatusUpdate(round_id="r1", status_code=status_code))
    before = machine.snapshot().participants
    out = machine.apply(wager("u1", 10))
    assert machine.snapshot().participants == before == []
    assert out[0].type == WAGER_DISCARDED
    assert out[0].payload["reason"] == "not_collecting"


def test_wager_status_divergence_is_reported(machine):
    out = machine.apply(wager("u1", 10, wager_status=1))
    assert out[0].payload["reason"] == "status_divergence"
    assert len(machine.bets) == 0


def test_wager_without_participant_is_dropped(machine):
    machine.apply(StatusUpdate(status_code=1))
    out = machine.apply(WagerPlaced(amount=10))
    assert out[0].payload["reason"] == "missing_participant"
    assert len(machine.bets) == 0


def test_malformed_amount_counts_as_zero(machine):
    machine.apply(StatusUpdate(status_code=1))
    machine.apply(wager("u1", "lots"))
    assert machine.bets.get("u1").total_stake == 0.0


def test_round_id_first_writer_wins(machine):
    machine.apply(StatusUpdate(round_id="r1", status_code=1))
    machine.apply(StatusUpdate(round_id="r2"))
    assert machine.round_id == "r1"


def test_round_id_adopted_from_wager(machine):
    machine.apply(StatusUpdate(status_code=1))
    machine.apply(wager("u1", 1, round_id="g7"))
    assert machine.round_id == "g7"


def test_settling_notifications_fire_once(machine):
    machine.apply(StatusUpdate(round_id="r1", status_code=1))
    first = machine.apply(StatusUpdate(status_code=2))
    assert [n.type for n in first] == [AGGREGATE_READY]
    second = machine.apply(StatusUpdate(status_code=2, delta=1.9))
    assert [n.type for n in second] == [DELTA_KNOWN]
    assert machine.apply(StatusUpdate(status_code=2, delta=2.0)) == []


def test_latches_reset_after_settlement(machine):
    machine.apply(StatusUpdate(round_id="r1", status_code=2, delta=1.1))
    machine.apply(Settled(value=1.3))
    out = machine.apply(StatusUpdate(round_id="r2", status_code=2, delta=1.2))
    assert [n.type for n in out] == [AGGREGATE_READY, DELTA_KNOWN]
    assert out[0].round_id == "r2"


def test_settlement_without_collecting_still_finalizes(machine):
    machine.apply(Settled(round_id="r9", value=5.0))
    [record] = machine.history.snapshot()
    assert record.round_id == "r9"
    assert record.participant_count == 0
    assert record.total_staked == 0.0
    assert record.derived_category == "green"


def test_explicit_settlement_id_wins(machine):
    machine.apply(StatusUpdate(round_id="r1", status_code=1))
    machine.apply(Settled(round_id="r1-final", value=2.0))
    assert machine.history.snapshot()[0].round_id == "r1-final"


def test_repeated_settlement_after_reset_inserts_best_effort_record(machine):
    machine.apply(StatusUpdate(round_id="r1", status_code=1))
    machine.apply(wager("u1", 10))
    machine.apply(Settled(value=2.2))
    machine.apply(Settled(value=2.2))
    records = machine.history.snapshot()
    assert len(records) == 2
    assert records[0].round_id is None
    assert records[0].participant_count == 0
    assert records[1].round_id == "r1"
    assert records[1].participant_count == 1


def test_finalized_participants_are_a_copy(machine):
    machine.apply(StatusUpdate(round_id="r1", status_code=1))
    machine.apply(wager("u1", 10))
    machine.apply(Settled(value=2.2))
    machine.apply(StatusUpdate(round_id="r2", status_code=1))
    machine.apply(wager("u1", 99))
    assert machine.history.snapshot()[0].participants[0].total_stake == 10.0


def test_unrecognized_is_noop(machine):
    assert machine.apply(Unrecognized(event_type="chat")) == []
    assert machine.snapshot().status is RoundStatus.UNKNOWN


def test_wagers_accepted_before_round_id_is_known(machine):
    machine.apply(StatusUpdate(status_code=1))
    assert machine.round_id is None
    assert machine.apply(wager("u1", 3)) == []
    assert machine.bets.get("u1").total_stake == 3.0
    [n] = machine.apply(Settled(value=2.5))
    assert n.type == ROUND_FINALIZED
    [record] = machine.history.snapshot()
    assert record.round_id is None
    assert record.participant_count == 1


def test_oversized_amounts_do_not_stop_the_round(machine):
    machine.apply(StatusUpdate(round_id="r1", status_code=1))
    bets = push({"type": "bet", "bets": [
        {"user": {"id": "a"}, "deposit": {"amount": 10 ** 400}},
        {"user": {"id": "b"}, "deposit": {"amount": 5}},
    ]})
    for event in parse_events(bets):
        machine.apply(event)
    assert machine.bets.get("a").total_stake == 0.0
    assert machine.bets.get("b").total_stake == 5.0
    for event in parse_events(crash(int("9" * 400))):
        machine.apply(event)
    [record] = machine.history.snapshot()
    assert record.settlement_value is None
    assert record.derived_category is None
    assert record.total_staked == 5.0


def test_numeric_string_settlement_gets_category(machine):
    machine.apply(StatusUpdate(round_id="r1", status_code=1))
    for event in parse_events(crash("3.2")):
        machine.apply(event)
    [record] = machine.history.snapshot()
    assert record.settlement_value == 3.2
    assert record.derived_category == "pink"
