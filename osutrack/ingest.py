"""Ingestion of polled stats snapshots"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import pydantic

from osutrack.change_detector import ChangeDetector
from osutrack.config import settings
from osutrack.db import Database, db as default_db
from osutrack.errors import ConcurrencyConflict, ValidationError
from osutrack.models.db import utcnow
from osutrack.models.results import IngestResult, IngestStatus
from osutrack.models.snapshot import GameMode, RawSnapshot, parse_mode
from osutrack.services.storage import StorageService

logger = logging.getLogger(__name__)

RawPayload = Union[RawSnapshot, Mapping[str, object]]

class KeyedLocks:
    """
    A lock table partitioned by key.

    Entries are reference counted and dropped once nobody holds or waits for them, so the
    table only grows with the number of keys in flight.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, Tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

def validate_snapshot(raw: RawPayload) -> RawSnapshot:
    """Parse a raw poller payload, raising ValidationError when it is malformed"""
    if isinstance(raw, RawSnapshot):
        return raw
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Snapshot payload must be a mapping, got {type(raw).__name__}")
    try:
        return RawSnapshot.model_validate(dict(raw))
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed snapshot payload: {e}") from e

def validate_mode(mode) -> GameMode:
    try:
        return parse_mode(mode)
    except ValueError as e:
        raise ValidationError(str(e)) from e

class IngestionCoordinator:
    """
    Receives raw snapshots from the poller and appends the ones that carry a change.

    The read-last, compare, append sequence for one (user, mode) runs under a per-key
    lock and in a single transaction. A unique (user, mode, update_time) key catches
    writers in other processes; such conflicts are retried from the read step.
    """

    def __init__(self, database: Optional[Database] = None,
                 detector: Optional[ChangeDetector] = None,
                 max_retries: Optional[int] = None):
        self.db = database or default_db
        self.detector = detector or ChangeDetector()
        self.max_retries = settings.INGEST_MAX_RETRIES if max_retries is None else max_retries
        self.locks = KeyedLocks()

    def ingest(self, user_id: int, mode, raw_snapshot: RawPayload) -> IngestResult:
        """
        Ingest one polled snapshot.

        Returns:
            IngestResult with status STORED (new row), ANOMALY (new row with a regressed
            monotonic field) or SKIPPED (identical to the last row, or older than it)

        Raises:
            ValidationError: payload or mode is malformed; nothing is written
            ConcurrencyConflict: the append kept losing races after max_retries
            StorageFailure: the database failed; nothing is committed
        """
        game_mode = validate_mode(mode)
        raw = validate_snapshot(raw_snapshot)
        if raw.user_id is not None and raw.user_id != user_id:
            raise ValidationError(f"Payload belongs to user {raw.user_id}, not {user_id}")

        attempt = 0
        while True:
            attempt += 1
            try:
                with self.locks.hold((user_id, int(game_mode))):
                    result = self._ingest_once(user_id, game_mode, raw)
                result.attempts = attempt
                return result
            except ConcurrencyConflict:
                if attempt > self.max_retries:
                    logger.error(f"Giving up on user {user_id} mode {game_mode.name} after {attempt} attempts")
                    raise
                logger.warning(f"Concurrent write for user {user_id} mode {game_mode.name}, retrying ({attempt}/{self.max_retries})")

    def _ingest_once(self, user_id: int, mode: GameMode, raw: RawSnapshot) -> IngestResult:
        now = utcnow()
        captured_at = raw.captured_at or now

        with self.db.session() as session:
            storage = StorageService(session)
            user = storage.get_user(user_id)
            if user is None and not raw.username:
                raise ValidationError(f"Unknown user {user_id} and no username in payload")
            user = storage.upsert_user(user_id, raw.username, seen_at=now)

            last = storage.last_snapshot(user_id, mode)
            decision = self.detector.classify(last, raw)

            if not decision.persist:
                storage.touch_user(user, now)
                logger.debug(f"No change for user {user_id} mode {mode.name}, skipping")
                return IngestResult(
                    status=IngestStatus.SKIPPED, reason='unchanged',
                    user_id=user_id, mode=int(mode),
                    snapshot_id=last.id, update_time=last.update_time
                )

            if last is not None and captured_at <= last.update_time:
                # Redelivered or out-of-order payload; history is append-only
                storage.touch_user(user, now)
                logger.warning(
                    f"Stale snapshot for user {user_id} mode {mode.name}: captured {captured_at}, "
                    f"latest stored {last.update_time}"
                )
                return IngestResult(
                    status=IngestStatus.SKIPPED, reason='stale',
                    user_id=user_id, mode=int(mode),
                    snapshot_id=last.id, update_time=last.update_time,
                    changed_fields=decision.changed_fields
                )

            snapshot = storage.append_snapshot(
                user_id, mode, raw, captured_at, anomaly_fields=decision.regressed_fields
            )
            storage.touch_user(user, now)

        if decision.anomaly:
            logger.warning(
                f"Anomaly for user {user_id} mode {mode.name}: {', '.join(decision.regressed_fields)} "
                f"went down, stored snapshot {snapshot.id} flagged"
            )
            status, reason = IngestStatus.ANOMALY, 'regressed'
        else:
            logger.info(f"Stored snapshot {snapshot.id} for user {user_id} mode {mode.name}")
            status, reason = IngestStatus.STORED, 'first' if decision.first else 'changed'

        return IngestResult(
            status=status, reason=reason,
            user_id=user_id, mode=int(mode),
            snapshot_id=snapshot.id, update_time=snapshot.update_time,
            changed_fields=decision.changed_fields,
            anomaly_fields=decision.regressed_fields
        )

    def ingest_many(self, items: Iterable[Tuple[int, object, RawPayload]]) -> List[IngestResult]:
        """Ingest a poll cycle's worth of (user_id, mode, payload) items in order"""
        return [self.ingest(user_id, mode, raw) for user_id, mode, raw in items]
