from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from saccodb.apps.stages import models
from saccodb.apps.stages.event_store import EventRecord, EventStore
from saccodb.apps.stages.presence import (
    PresenceReconstructor,
    StagePresenceIndex,
    reconstruct_presence,
)

T0 = datetime(2024, 3, 4, 6, 0, tzinfo=timezone.utc)
ARRIVAL = models.StageEventType.ARRIVAL
DEPARTURE = models.StageEventType.DEPARTURE


def _event(sequence, vehicle_id, event_type, minutes, stage_id="STG-1"):
    return EventRecord(
        sequence=sequence,
        id=f"evt-{sequence}",
        stage_id=stage_id,
        vehicle_id=vehicle_id,
        event_type=event_type,
        actor_id="USR-MARSHAL",
        timestamp=T0 + timedelta(minutes=minutes),
    )


def _queue(records):
    return [(r.vehicle_id, r.queue_position) for r in records]


def test_present_vehicles_ranked_by_arrival():
    events = [
        _event(1, "KAA", ARRIVAL, 1),
        _event(2, "KBB", ARRIVAL, 2),
        _event(3, "KCC", ARRIVAL, 3),
        _event(4, "KAA", DEPARTURE, 4),
    ]

    present = reconstruct_presence(events, T0 + timedelta(minutes=5))

    assert _queue(present) == [("KBB", 1), ("KCC", 2)]
    assert present[0].arrived_at == T0 + timedelta(minutes=2)
    assert present[0].logged_by == "USR-MARSHAL"
    assert present[0].event_id == "evt-2"


def test_same_timestamp_ties_break_on_sequence():
    events = [
        _event(7, "KBB", ARRIVAL, 1),
        _event(6, "KAA", ARRIVAL, 1),
    ]

    assert _queue(reconstruct_presence(events, T0 + timedelta(minutes=1))) == [("KAA", 1), ("KBB", 2)]


def test_events_after_as_of_are_ignored():
    events = [
        _event(1, "KAA", ARRIVAL, 1),
        _event(2, "KAA", DEPARTURE, 10),
        _event(3, "KBB", ARRIVAL, 11),
    ]

    assert _queue(reconstruct_presence(events, T0 + timedelta(minutes=5))) == [("KAA", 1)]
    # Window end is inclusive.
    assert _queue(reconstruct_presence(events, T0 + timedelta(minutes=10))) == []


def test_arrivals_outside_lookback_are_dropped():
    events = [
        _event(1, "KAA", ARRIVAL, 0),
        _event(2, "KBB", ARRIVAL, 90),
    ]
    as_of = T0 + timedelta(minutes=120)

    assert _queue(reconstruct_presence(events, as_of, timedelta(hours=1))) == [("KBB", 1)]
    assert _queue(reconstruct_presence(events, as_of, timedelta(hours=2))) == [("KAA", 1), ("KBB", 2)]


def test_re_arrival_after_departure_goes_to_back_of_queue():
    events = [
        _event(1, "KAA", ARRIVAL, 1),
        _event(2, "KBB", ARRIVAL, 2),
        _event(3, "KAA", DEPARTURE, 3),
        _event(4, "KAA", ARRIVAL, 4),
    ]

    assert _queue(reconstruct_presence(events, T0 + timedelta(minutes=5))) == [("KBB", 1), ("KAA", 2)]


def test_reconstruction_is_deterministic():
    events = [_event(i, f"V{i % 4}", ARRIVAL if i % 3 else DEPARTURE, i) for i in range(1, 30)]
    as_of = T0 + timedelta(minutes=40)

    first = reconstruct_presence(events, as_of)
    second = reconstruct_presence(list(reversed(events)), as_of)

    assert first == second


def test_index_answers_only_what_it_covers():
    index = StagePresenceIndex("STG-1", warmed_at=T0 + timedelta(minutes=5))
    index.apply(_event(1, "KAA", ARRIVAL, 6))

    assert index.present(T0 + timedelta(minutes=4)) is None
    assert index.covers(T0 + timedelta(minutes=4)) is False
    assert index.present(T0 + timedelta(minutes=5, seconds=30)) is None
    assert _queue(index.present(T0 + timedelta(minutes=6))) == [("KAA", 1)]


def test_index_ignores_replayed_and_older_events():
    index = StagePresenceIndex("STG-1", warmed_at=T0)
    arrival = _event(1, "KAA", ARRIVAL, 1)
    departure = _event(2, "KAA", DEPARTURE, 2)

    index.apply(arrival)
    index.apply(departure)
    index.apply(arrival)

    assert index.present(T0 + timedelta(minutes=3)) == []
    assert index.high_water_mark == T0 + timedelta(minutes=2)


def test_index_rejects_events_for_other_stages():
    index = StagePresenceIndex("STG-1", warmed_at=T0)

    with pytest.raises(ValueError):
        index.apply(_event(1, "KAA", ARRIVAL, 1, stage_id="STG-2"))


def test_index_prunes_entries_beyond_lookback():
    index = StagePresenceIndex("STG-1", warmed_at=T0, lookback=timedelta(hours=1))
    index.apply(_event(1, "KAA", ARRIVAL, 0))
    index.apply(_event(2, "KBB", ARRIVAL, 30))
    assert len(index) == 2

    index.apply(_event(3, "KCC", ARRIVAL, 90))

    assert len(index) == 2
    assert _queue(index.present(T0 + timedelta(minutes=90))) == [("KBB", 1), ("KCC", 2)]


def test_index_matches_rescan_for_random_logs():
    rng = random.Random(20240304)
    vehicles = [f"KD{n:02d}" for n in range(8)]
    lookback = timedelta(minutes=45)

    for _ in range(25):
        index = StagePresenceIndex("STG-1", warmed_at=T0, lookback=lookback)
        present = set()
        events = []
        minute = 0
        for sequence in range(1, 60):
            minute += rng.choice([0, 1, 2, 5])
            vehicle = rng.choice(vehicles)
            event_type = DEPARTURE if vehicle in present else ARRIVAL
            present.symmetric_difference_update({vehicle})
            event = _event(sequence, vehicle, event_type, minute)
            events.append(event)
            index.apply(event)

            as_of = T0 + timedelta(minutes=minute + rng.choice([0, 1, 3]))
            assert index.present(as_of) == reconstruct_presence(events, as_of, lookback)


def test_reconstructor_falls_back_to_rescan_before_warm_point(db_session, world, ops, seconds):
    ops.record_arrival(db_session, world.ctx.marshal, world.stage.id, vehicle_id="KAA", timestamp=seconds(world, 1))
    ops.record_arrival(db_session, world.ctx.marshal, world.stage.id, vehicle_id="KBB", timestamp=seconds(world, 2))

    reconstructor = PresenceReconstructor(ops.store, clock=lambda: world.now)
    index = reconstructor.index_for(db_session, world.stage.id)

    # Both events predate the warm point; the index holds them but defers to a rescan.
    assert len(index) == 2
    assert index.present(seconds(world, 2)) is None
    records = reconstructor.present_vehicles(db_session, world.stage.id, seconds(world, 2))
    assert _queue(records) == [("KAA", 1), ("KBB", 2)]
    assert _queue(reconstructor.present_vehicles(db_session, world.stage.id, world.now)) == [
        ("KAA", 1),
        ("KBB", 2),
    ]
    assert reconstructor.queue_position(db_session, world.stage.id, "KBB", world.now) == 2
    assert reconstructor.queue_position(db_session, world.stage.id, "KZZ", world.now) is None


def test_reconstructor_indexes_new_events_after_warm(db_session, world):
    store = EventStore()
    reconstructor = PresenceReconstructor(store, clock=lambda: world.now)
    reconstructor.index_for(db_session, world.stage.id)

    event = store.append(
        db_session,
        stage_id=world.stage.id,
        vehicle_id="KAA",
        event_type=ARRIVAL,
        actor_id=world.marshal.id,
        timestamp=world.now + timedelta(seconds=1),
    )
    reconstructor.record(event)

    as_of = world.now + timedelta(seconds=2)
    assert reconstructor.index_for(db_session, world.stage.id).present(as_of) == reconstructor.rescan(
        db_session, world.stage.id, as_of
    )

    reconstructor.invalidate(world.stage.id)
    assert reconstructor.is_present(db_session, world.stage.id, "KAA", as_of)
