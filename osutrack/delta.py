"""Stat deltas between two points in a user's snapshot history"""
import datetime
import logging
import time
from typing import List, Optional

from osutrack.change_detector import ChangeDetector
from osutrack.config import settings
from osutrack.db import Database, db as default_db
from osutrack.errors import QueryTimeout, ValidationError
from osutrack.ingest import validate_mode
from osutrack.models.results import Delta, DeltaStatus, FieldDelta
from osutrack.models.snapshot import (
    FLOAT_FIELDS, RANK_FIELDS, TRACKED_FIELDS, StatSnapshot, to_naive_utc
)
from osutrack.services.storage import StorageService

logger = logging.getLogger(__name__)

def rank_improved(before: int, after: int) -> bool:
    """Lower placement is better; 0 means unranked"""
    if after == 0:
        return False
    if before == 0:
        return True
    return after < before

def diff_snapshots(start: Optional[StatSnapshot], end: StatSnapshot) -> dict:
    """
    Field deltas from start to end. A missing start is treated as all zeros, the
    way a first update is reported.
    """
    changes = {}
    for name in TRACKED_FIELDS:
        after = end[name]
        before = start[name] if start is not None else (0.0 if name in FLOAT_FIELDS else 0)
        delta = after - before
        if name in FLOAT_FIELDS:
            # Stored as single precision upstream; keep the noise out of the result
            delta = round(delta, 6)
        improved = rank_improved(before, after) if name in RANK_FIELDS else None
        changes[name] = FieldDelta(before=before, after=after, delta=delta, improved=improved)
    return changes

class _Deadline:
    """Cooperative time limit checked between queries"""

    def __init__(self, timeout: Optional[float]):
        self.timeout = timeout
        self.start_time = time.monotonic()

    def check(self, what: str) -> None:
        if self.timeout is None:
            return
        elapsed = time.monotonic() - self.start_time
        if elapsed >= self.timeout:
            logger.warning(f"Query timed out after {elapsed:.3f}s while {what}")
            raise QueryTimeout(f"Query exceeded {self.timeout}s while {what}")

class DeltaEngine:
    """
    Read-only queries over stored snapshots.

    Anchors are the latest snapshot at or before each end of the window; identical capture
    times resolve to the higher row id. Every call uses its own session and never writes.
    """

    def __init__(self, database: Optional[Database] = None,
                 default_timeout: Optional[float] = None):
        self.db = database or default_db
        self.default_timeout = settings.QUERY_TIMEOUT_SECONDS if default_timeout is None else default_timeout

    def compute_delta(self, user_id: int, mode, start: datetime.datetime, end: datetime.datetime,
                      timeout: Optional[float] = None) -> Delta:
        """
        Compute the change of every tracked stat between `start` and `end`.

        Returns:
            Delta with status NO_DATA when nothing was captured at or before `start`,
            ZERO when both ends resolve to the same snapshot, OK otherwise

        Raises:
            ValidationError: invalid mode or start after end
            QueryTimeout: the deadline passed; nothing was modified
        """
        game_mode = validate_mode(mode)
        start = to_naive_utc(start)
        end = to_naive_utc(end)
        if start > end:
            raise ValidationError(f"Range start {start} is after end {end}")

        deadline = _Deadline(self.default_timeout if timeout is None else timeout)
        base = dict(user_id=user_id, mode=int(game_mode), start=start, end=end)

        with self.db.session() as session:
            storage = StorageService(session)
            deadline.check("locating start anchor")
            start_anchor = storage.anchor_at(user_id, game_mode, start)
            if start_anchor is None:
                logger.debug(f"No baseline for user {user_id} mode {game_mode.name} at {start}")
                return Delta(status=DeltaStatus.NO_DATA, **base)

            deadline.check("locating end anchor")
            end_anchor = start_anchor if start == end else storage.anchor_at(user_id, game_mode, end)

            anomalies = 0
            if end_anchor.id != start_anchor.id:
                deadline.check("counting anomalies")
                anomalies = storage.count_anomalies(user_id, game_mode, start_anchor, end_anchor)

        status = DeltaStatus.ZERO if end_anchor.id == start_anchor.id else DeltaStatus.OK
        return Delta(
            status=status,
            start_snapshot_id=start_anchor.id,
            end_snapshot_id=end_anchor.id,
            start_time=start_anchor.update_time,
            end_time=end_anchor.update_time,
            anomalies_in_range=anomalies,
            changes=diff_snapshots(start_anchor, end_anchor),
            **base
        )

    def snapshot_history(self, user_id: int, mode,
                         start: Optional[datetime.datetime] = None,
                         end: Optional[datetime.datetime] = None) -> List[StatSnapshot]:
        """Raw stored snapshots in [start, end], oldest first"""
        game_mode = validate_mode(mode)
        start = to_naive_utc(start) if start is not None else None
        end = to_naive_utc(end) if end is not None else None
        if start is not None and end is not None and start > end:
            raise ValidationError(f"Range start {start} is after end {end}")
        with self.db.session() as session:
            return StorageService(session).snapshots_between(user_id, game_mode, start, end)

    def latest_delta(self, user_id: int, mode) -> Delta:
        """
        Change between the two most recent snapshots. With a single snapshot the values
        are reported as-is with first_update set.
        """
        game_mode = validate_mode(mode)
        with self.db.session() as session:
            latest = StorageService(session).latest_snapshots(user_id, game_mode, limit=2)
        base = dict(user_id=user_id, mode=int(game_mode))
        if not latest:
            return Delta(status=DeltaStatus.NO_DATA, **base)

        end = latest[0]
        start = latest[1] if len(latest) > 1 else None
        return Delta(
            status=DeltaStatus.OK,
            start_snapshot_id=start.id if start else None,
            end_snapshot_id=end.id,
            start_time=start.update_time if start else None,
            end_time=end.update_time,
            start=start.update_time if start else None,
            end=end.update_time,
            first_update=start is None,
            anomalies_in_range=int(end.anomaly),
            changes=diff_snapshots(start, end),
            **base
        )

    def last_pp_delta(self, user_id: int, mode,
                      detector: Optional[ChangeDetector] = None) -> Delta:
        """
        Difference between the current stats and the newest snapshot whose pp differs from
        the current pp, i.e. everything gained since the last pp change. NO_DATA when pp
        never changed in the stored history.
        """
        game_mode = validate_mode(mode)
        detector = detector or ChangeDetector()
        base = dict(user_id=user_id, mode=int(game_mode))

        with self.db.session() as session:
            storage = StorageService(session)
            current = storage.last_snapshot(user_id, game_mode)
            if current is None:
                return Delta(status=DeltaStatus.NO_DATA, **base)
            before = storage.last_pp_change(user_id, game_mode, current, detector.float_epsilon)
            if before is None:
                return Delta(status=DeltaStatus.NO_DATA, **base)
            anomalies = storage.count_anomalies(user_id, game_mode, before, current)

        return Delta(
            status=DeltaStatus.OK,
            start_snapshot_id=before.id,
            end_snapshot_id=current.id,
            start_time=before.update_time,
            end_time=current.update_time,
            start=before.update_time,
            end=current.update_time,
            anomalies_in_range=anomalies,
            changes=diff_snapshots(before, current),
            **base
        )
