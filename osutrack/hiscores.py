"""Hiscore history and current-best tracking"""
import datetime
import logging
from typing import Iterable, List, Mapping, Optional, Tuple, Union

import pydantic

from osutrack.config import settings
from osutrack.db import Database, db as default_db
from osutrack.errors import ConcurrencyConflict, ValidationError
from osutrack.ingest import KeyedLocks, validate_mode
from osutrack.models.results import ScoreIngestResult, ScoreIngestStatus
from osutrack.models.snapshot import GameMode, RawScore, ScoreRecord, to_naive_utc
from osutrack.services.storage import StorageService, to_score_record

logger = logging.getLogger(__name__)

# Worst to best; hidden/flashlight variants rank above their plain counterparts
GRADE_ORDER = ('F', 'D', 'C', 'B', 'A', 'S', 'SH', 'X', 'XH')

NEW_SCORE_STATUSES = (ScoreIngestStatus.NEW.value, ScoreIngestStatus.IMPROVED.value)

def grade_value(rank: Optional[str]) -> int:
    """Position of a grade code in GRADE_ORDER, -1 for unknown codes"""
    if rank is None:
        return -1
    try:
        return GRADE_ORDER.index(rank.upper())
    except ValueError:
        return -1

def validate_score(raw: Union[RawScore, Mapping[str, object]]) -> RawScore:
    if isinstance(raw, RawScore):
        return raw
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Score payload must be a mapping, got {type(raw).__name__}")
    try:
        return RawScore.model_validate(dict(raw))
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed score payload: {e}") from e

class HighScoreTracker:
    """
    Appends every distinct play to a user's hiscore history and keeps one current best
    per (user, beatmap, mode): the highest score, the earliest score_time among equals.

    Writers in this process serialize on a per-key lock. Writers elsewhere are caught by
    the unique keys on users and on the current best; such conflicts are retried from
    the read step.
    """

    def __init__(self, database: Optional[Database] = None, max_retries: Optional[int] = None):
        self.db = database or default_db
        self.max_retries = settings.INGEST_MAX_RETRIES if max_retries is None else max_retries
        self.locks = KeyedLocks()

    def ingest_score(self, user_id: int, beatmap_id: int, mode,
                     raw_score: Union[RawScore, Mapping[str, object]],
                     username: Optional[str] = None) -> ScoreIngestResult:
        """
        Record one score.

        Returns:
            NEW for the first score on the map, IMPROVED when it beats the current best,
            UNCHANGED when kept as history only, RECORDED when the same play is already stored

        Raises:
            ValidationError: payload or mode is malformed, or the user is unknown
            ConcurrencyConflict: the write kept losing races after max_retries
            StorageFailure: the database failed; nothing is committed
        """
        game_mode = validate_mode(mode)
        raw = validate_score(raw_score)
        if raw.beatmap_id is not None and raw.beatmap_id != beatmap_id:
            raise ValidationError(f"Payload is for beatmap {raw.beatmap_id}, not {beatmap_id}")

        attempt = 0
        while True:
            attempt += 1
            try:
                with self.locks.hold((user_id, beatmap_id, int(game_mode))):
                    result = self._ingest_once(user_id, beatmap_id, game_mode, raw, username)
                result.attempts = attempt
                break
            except ConcurrencyConflict:
                if attempt > self.max_retries:
                    logger.error(f"Giving up on score for user {user_id} beatmap {beatmap_id} after {attempt} attempts")
                    raise
                logger.warning(
                    f"Concurrent write for user {user_id} beatmap {beatmap_id}, retrying ({attempt}/{self.max_retries})"
                )

        if result.status == ScoreIngestStatus.UNCHANGED:
            logger.debug(f"Score {raw.score} on beatmap {beatmap_id} kept as history for user {user_id}")
        elif result.status != ScoreIngestStatus.RECORDED:
            logger.info(
                f"{result.status.value.capitalize()} best on beatmap {beatmap_id} for user {user_id}: {raw.score}"
                + (f" ({result.previous_best_rank} -> {raw.rank})" if result.rank_up else "")
            )
        return result

    def _ingest_once(self, user_id: int, beatmap_id: int, mode: GameMode, raw: RawScore,
                     username: Optional[str]) -> ScoreIngestResult:
        with self.db.session() as session:
            storage = StorageService(session)
            if storage.get_user(user_id) is None:
                if not username:
                    raise ValidationError(f"Unknown user {user_id} and no username given")
                storage.upsert_user(user_id, username)

            base = dict(user_id=user_id, beatmap_id=beatmap_id, mode=int(mode))

            existing = storage.find_score(user_id, beatmap_id, mode, raw)
            if existing is not None:
                logger.debug(f"Score {existing.id} on beatmap {beatmap_id} already recorded for user {user_id}")
                return ScoreIngestResult(
                    status=ScoreIngestStatus.RECORDED,
                    record_id=existing.id,
                    is_current_best=existing.is_best,
                    **base
                )

            best = storage.current_best_row(user_id, beatmap_id, mode)
            if best is None:
                status, takes_best = ScoreIngestStatus.NEW, True
            elif raw.score > best.score:
                status, takes_best = ScoreIngestStatus.IMPROVED, True
            else:
                # An equal score achieved earlier was the first achievement
                takes_best = raw.score == best.score and raw.score_time < best.score_time
                status = ScoreIngestStatus.UNCHANGED

            row = storage.append_score(user_id, beatmap_id, mode, raw,
                                       status=status.value, is_best=False)
            if takes_best:
                storage.move_best(best, row)

            return ScoreIngestResult(
                status=status,
                record_id=row.id,
                is_current_best=takes_best,
                previous_best_score=best.score if best is not None else None,
                previous_best_rank=best.rank if best is not None else None,
                rank_up=(
                    best is not None
                    and status == ScoreIngestStatus.IMPROVED
                    and grade_value(raw.rank) > grade_value(best.rank)
                ),
                **base
            )

    def ingest_scores(self, user_id: int, mode,
                      raw_scores: Iterable[Union[RawScore, Mapping[str, object]]],
                      username: Optional[str] = None) -> List[ScoreIngestResult]:
        """Ingest a get_user_best listing; every entry must carry its beatmap_id"""
        results = []
        for raw_score in raw_scores:
            raw = validate_score(raw_score)
            if raw.beatmap_id is None:
                raise ValidationError("Score listing entry without beatmap_id")
            results.append(self.ingest_score(user_id, raw.beatmap_id, mode, raw, username=username))
        return results

    def current_best(self, user_id: int, beatmap_id: int, mode) -> Optional[ScoreRecord]:
        game_mode = validate_mode(mode)
        with self.db.session() as session:
            row = StorageService(session).current_best_row(user_id, beatmap_id, game_mode)
            return to_score_record(row) if row is not None else None

    def score_history(self, user_id: int, beatmap_id: int, mode) -> List[ScoreRecord]:
        """Every recorded play on the map, in recording order"""
        game_mode = validate_mode(mode)
        with self.db.session() as session:
            return StorageService(session).score_history(user_id, beatmap_id, game_mode)

    def _window(self, start: datetime.datetime, end: datetime.datetime) -> Tuple[datetime.datetime, datetime.datetime]:
        start, end = to_naive_utc(start), to_naive_utc(end)
        if start > end:
            raise ValidationError(f"Range start {start} is after end {end}")
        return start, end

    def count_new_scores(self, user_id: int, mode,
                         start: datetime.datetime, end: datetime.datetime) -> int:
        """
        Number of NEW/IMPROVED scores recorded in the window. Uses the same half-open
        (start, end] window as delta anchoring: whatever was recorded at `start` is baseline.
        """
        game_mode = validate_mode(mode)
        start, end = self._window(start, end)
        with self.db.session() as session:
            return StorageService(session).count_score_events(
                user_id, game_mode, start, end, NEW_SCORE_STATUSES
            )

    def new_scores(self, user_id: int, mode,
                   start: datetime.datetime, end: datetime.datetime) -> List[ScoreRecord]:
        game_mode = validate_mode(mode)
        start, end = self._window(start, end)
        with self.db.session() as session:
            return StorageService(session).score_events(
                user_id, game_mode, start, end, NEW_SCORE_STATUSES
            )
