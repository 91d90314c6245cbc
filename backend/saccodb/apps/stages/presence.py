"""
Presence and queue derivation.

`reconstruct_presence` is the reference definition: a pure function of the
event log. `StagePresenceIndex` keeps the same answer incrementally, one
instance per stage, fed every committed event. `PresenceReconstructor`
serves queries from the index when the index covers the requested instant
and falls back to a rescan otherwise; both paths give identical results.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ...utils.timezones import as_utc, utcnow
from .event_store import EventRecord, EventStore
from .models import StageEventType

logger = logging.getLogger(__name__)

try:
    STAGE_PRESENCE_LOOKBACK_HOURS = float(os.getenv("STAGE_PRESENCE_LOOKBACK_HOURS", "24"))
except ValueError:
    STAGE_PRESENCE_LOOKBACK_HOURS = 24.0

DEFAULT_LOOKBACK = timedelta(hours=STAGE_PRESENCE_LOOKBACK_HOURS)


@dataclass(frozen=True)
class PresenceRecord:
    vehicle_id: str
    arrived_at: datetime
    queue_position: int
    logged_by: str
    event_id: str


def _order_key(event) -> Tuple[datetime, int]:
    return (as_utc(event.timestamp), event.sequence)


def _rank(arrivals: Iterable) -> List[PresenceRecord]:
    ordered = sorted(arrivals, key=_order_key)
    return [
        PresenceRecord(
            vehicle_id=event.vehicle_id,
            arrived_at=as_utc(event.timestamp),
            queue_position=position,
            logged_by=event.actor_id,
            event_id=event.id,
        )
        for position, event in enumerate(ordered, start=1)
    ]


def reconstruct_presence(
    events: Iterable,
    as_of: datetime,
    lookback: timedelta = DEFAULT_LOOKBACK,
) -> List[PresenceRecord]:
    """
    Vehicles present at `as_of`, in queue order.

    Only events with `as_of - lookback <= timestamp <= as_of` count. A
    vehicle is present iff its last counted event is an ARRIVAL; queue
    position is the 1-based rank by (arrived_at, sequence).
    """
    as_of = as_utc(as_of)
    window_start = as_of - lookback

    latest: Dict[str, object] = {}
    for event in sorted(events, key=_order_key):
        timestamp = as_utc(event.timestamp)
        if timestamp < window_start or timestamp > as_of:
            continue
        latest[event.vehicle_id] = event

    arrivals = [
        event
        for event in latest.values()
        if StageEventType(event.event_type) is StageEventType.ARRIVAL
    ]
    return _rank(arrivals)


class StagePresenceIndex:
    """
    Latest event per vehicle for one stage.

    Valid for `as_of >= max(warmed_at, high-water timestamp)`: every event
    the window [as_of - lookback, as_of] can contain has been applied, and
    none later than `as_of` exists.
    """

    def __init__(
        self,
        stage_id: str,
        *,
        warmed_at: datetime,
        lookback: timedelta = DEFAULT_LOOKBACK,
    ) -> None:
        self.stage_id = stage_id
        self.lookback = lookback
        self.warmed_at = as_utc(warmed_at)
        self._latest: Dict[str, EventRecord] = {}
        self._high_water: Optional[Tuple[datetime, int]] = None
        self._mutex = threading.Lock()

    @property
    def high_water_mark(self) -> Optional[datetime]:
        return self._high_water[0] if self._high_water else None

    def covers(self, as_of: datetime) -> bool:
        with self._mutex:
            return self._covers_locked(as_utc(as_of))

    def _covers_locked(self, as_of: datetime) -> bool:
        if as_of < self.warmed_at:
            return False
        return self._high_water is None or as_of >= self._high_water[0]

    def apply(self, event: EventRecord) -> None:
        if event.stage_id != self.stage_id:
            raise ValueError(f"Event for stage {event.stage_id} applied to index of {self.stage_id}")
        key = event.order_key
        with self._mutex:
            current = self._latest.get(event.vehicle_id)
            if current is not None and current.order_key >= key:
                return
            self._latest[event.vehicle_id] = event
            if self._high_water is None or key > self._high_water:
                self._high_water = key
            self._prune_locked()

    def apply_many(self, events: Iterable[EventRecord]) -> None:
        for event in sorted(events, key=_order_key):
            self.apply(event)

    def _prune_locked(self) -> None:
        # Entries older than high-water minus lookback can no longer fall
        # inside any window this index is allowed to answer.
        horizon = self._high_water[0] - self.lookback
        stale = [vid for vid, ev in self._latest.items() if ev.timestamp < horizon]
        for vehicle_id in stale:
            del self._latest[vehicle_id]

    def present(self, as_of: datetime) -> Optional[List[PresenceRecord]]:
        """Queue at `as_of`, or None when the index does not cover it."""
        as_of = as_utc(as_of)
        window_start = as_of - self.lookback
        with self._mutex:
            if not self._covers_locked(as_of):
                return None
            arrivals = [
                event
                for event in self._latest.values()
                if event.event_type is StageEventType.ARRIVAL and event.timestamp >= window_start
            ]
        return _rank(arrivals)

    def __len__(self) -> int:
        with self._mutex:
            return len(self._latest)


class PresenceReconstructor:
    def __init__(
        self,
        store: Optional[EventStore] = None,
        *,
        lookback: timedelta = DEFAULT_LOOKBACK,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store or EventStore()
        self.lookback = lookback
        self.clock = clock
        self._indexes: Dict[str, StagePresenceIndex] = {}
        self._stage_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _stage_lock(self, stage_id: str) -> threading.Lock:
        with self._guard:
            lock = self._stage_locks.get(stage_id)
            if lock is None:
                lock = threading.Lock()
                self._stage_locks[stage_id] = lock
            return lock

    def index_for(self, db: Session, stage_id: str) -> StagePresenceIndex:
        """Return the stage's index, warming it from the store on first use."""
        with self._stage_lock(stage_id):
            index = self._indexes.get(stage_id)
            if index is not None:
                return index
            warmed_at = as_utc(self.clock())
            index = StagePresenceIndex(stage_id, warmed_at=warmed_at, lookback=self.lookback)
            index.apply_many(self.store.query(db, stage_id, start=warmed_at - self.lookback))
            self._indexes[stage_id] = index
            logger.info(
                "Warmed stage presence index",
                extra={"stage_id": stage_id, "vehicles": len(index)},
            )
            return index

    def record(self, event: EventRecord) -> None:
        """Feed a committed event to its stage's index, if one is loaded."""
        with self._stage_lock(event.stage_id):
            index = self._indexes.get(event.stage_id)
            if index is not None:
                index.apply(event)

    def invalidate(self, stage_id: str) -> None:
        with self._stage_lock(stage_id):
            self._indexes.pop(stage_id, None)

    def rescan(self, db: Session, stage_id: str, as_of: datetime) -> List[PresenceRecord]:
        as_of = as_utc(as_of)
        events = self.store.query(db, stage_id, start=as_of - self.lookback, end=as_of)
        return reconstruct_presence(events, as_of, self.lookback)

    def present_vehicles(
        self,
        db: Session,
        stage_id: str,
        as_of: Optional[datetime] = None,
    ) -> List[PresenceRecord]:
        as_of = as_utc(as_of) if as_of is not None else as_utc(self.clock())
        records = self.index_for(db, stage_id).present(as_of)
        if records is None:
            records = self.rescan(db, stage_id, as_of)
        return records

    def find(
        self,
        db: Session,
        stage_id: str,
        vehicle_id: str,
        as_of: Optional[datetime] = None,
    ) -> Optional[PresenceRecord]:
        for record in self.present_vehicles(db, stage_id, as_of):
            if record.vehicle_id == vehicle_id:
                return record
        return None

    def is_present(
        self,
        db: Session,
        stage_id: str,
        vehicle_id: str,
        as_of: Optional[datetime] = None,
    ) -> bool:
        return self.find(db, stage_id, vehicle_id, as_of) is not None

    def queue_position(
        self,
        db: Session,
        stage_id: str,
        vehicle_id: str,
        as_of: Optional[datetime] = None,
    ) -> Optional[int]:
        record = self.find(db, stage_id, vehicle_id, as_of)
        return record.queue_position if record else None
