"""Database storage service for stat snapshots, hiscores and reference data"""
import datetime
import logging
from typing import Iterable, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from osutrack.errors import ConcurrencyConflict, StorageFailure
from osutrack.models.db import Beatmap, Hiscore, OnlineUsers, Update, User, utcnow
from osutrack.models.snapshot import (
    TRACKED_FIELDS, GameMode, OnlineActivity, RawBeatmap, RawScore, RawSnapshot,
    ScoreRecord, StatSnapshot, TrackedUser
)

logger = logging.getLogger(__name__)

def to_tracked_user(row: User) -> TrackedUser:
    return TrackedUser(
        id=row.id,
        username=row.username,
        first_seen=row.first_update,
        last_seen=row.last_update
    )

def to_stat_snapshot(row: Update) -> StatSnapshot:
    return StatSnapshot(
        id=row.id,
        user_id=row.user_id,
        mode=GameMode(row.mode),
        update_time=row.update_time,
        stats={name: getattr(row, name) for name in TRACKED_FIELDS},
        anomaly=bool(row.anomaly),
        anomaly_fields=tuple(row.anomaly_fields.split(',')) if row.anomaly_fields else ()
    )

def to_score_record(row: Hiscore) -> ScoreRecord:
    return ScoreRecord(
        id=row.id,
        user_id=row.user_id,
        beatmap_id=row.beatmap_id,
        mode=GameMode(row.mode),
        score=row.score,
        pp=row.pp,
        enabled_mods=row.enabled_mods,
        rank=row.rank,
        score_time=row.score_time,
        time_recorded=row.time_recorded,
        status=row.status,
        is_best=bool(row.is_best)
    )

class StorageService:
    """
    Append-only access to the snapshot tables.

    Works inside the caller's session; the caller owns the transaction. Any database error
    rolls the session back and is raised as StorageFailure, except unique-key violations,
    which mean another writer got there first: those roll back too and are raised as
    ConcurrencyConflict so the caller can retry the whole read-compare-append.
    """

    def __init__(self, session: Session):
        self.session = session

    def _fail(self, action: str, error: SQLAlchemyError) -> StorageFailure:
        self.session.rollback()
        logger.error(f"Database error while {action}: {error}")
        return StorageFailure(f"Database error while {action}: {error}")

    # --- users ---

    def get_user(self, user_id: int) -> Optional[User]:
        try:
            return self.session.get(User, user_id)
        except SQLAlchemyError as e:
            raise self._fail(f"loading user {user_id}", e) from e

    def upsert_user(self, user_id: int, username: Optional[str],
                    seen_at: Optional[datetime.datetime] = None) -> User:
        """Create the user on first sight, refresh the username on rename"""
        seen_at = seen_at or utcnow()
        try:
            user = self.session.get(User, user_id)
            if user is None:
                if not username:
                    raise ValueError(f"Username is required to start tracking user {user_id}")
                logger.info(f"Tracking new user {username} ({user_id})")
                user = User(id=user_id, username=username, first_update=seen_at, last_update=seen_at)
                self.session.add(user)
                self.session.flush()
            elif username and user.username != username:
                logger.info(f"User {user_id} renamed from {user.username} to {username}")
                user.username = username
            return user
        except IntegrityError as e:
            self.session.rollback()
            raise ConcurrencyConflict(f"User {user_id} was created concurrently") from e
        except SQLAlchemyError as e:
            raise self._fail(f"upserting user {user_id}", e) from e

    def touch_user(self, user: User, seen_at: Optional[datetime.datetime] = None) -> None:
        seen_at = seen_at or utcnow()
        if user.last_update is None or seen_at > user.last_update:
            user.last_update = seen_at

    def find_user_by_name(self, username: str) -> Optional[TrackedUser]:
        try:
            row = (
                self.session.query(User)
                .filter(func.lower(User.username) == username.lower())
                .first()
            )
            return to_tracked_user(row) if row else None
        except SQLAlchemyError as e:
            raise self._fail(f"looking up user {username}", e) from e

    def delete_user(self, user_id: int) -> bool:
        """Remove a user together with all of their snapshots and hiscores"""
        try:
            user = self.session.get(User, user_id)
            if user is None:
                return False
            self.session.delete(user)
            self.session.flush()
            logger.info(f"Deleted user {user_id} and their history")
            return True
        except SQLAlchemyError as e:
            raise self._fail(f"deleting user {user_id}", e) from e

    # --- stat snapshots ---

    def _updates(self, user_id: int, mode: int):
        return self.session.query(Update).filter(
            Update.user_id == user_id,
            Update.mode == int(mode)
        )

    def last_snapshot(self, user_id: int, mode: int) -> Optional[StatSnapshot]:
        """Most recent snapshot; identical timestamps resolve to the higher id"""
        return self.anchor_at(user_id, mode, None)

    def anchor_at(self, user_id: int, mode: int,
                  at: Optional[datetime.datetime]) -> Optional[StatSnapshot]:
        """Latest snapshot captured at or before `at` (or overall when `at` is None)"""
        try:
            query = self._updates(user_id, mode)
            if at is not None:
                query = query.filter(Update.update_time <= at)
            row = query.order_by(Update.update_time.desc(), Update.id.desc()).first()
            return to_stat_snapshot(row) if row else None
        except SQLAlchemyError as e:
            raise self._fail(f"finding anchor for user {user_id} mode {mode}", e) from e

    def latest_snapshots(self, user_id: int, mode: int, limit: int = 2) -> List[StatSnapshot]:
        """Newest first"""
        try:
            rows = (
                self._updates(user_id, mode)
                .order_by(Update.update_time.desc(), Update.id.desc())
                .limit(limit)
                .all()
            )
            return [to_stat_snapshot(row) for row in rows]
        except SQLAlchemyError as e:
            raise self._fail(f"loading latest snapshots for user {user_id} mode {mode}", e) from e

    def snapshots_between(self, user_id: int, mode: int,
                          start: Optional[datetime.datetime] = None,
                          end: Optional[datetime.datetime] = None) -> List[StatSnapshot]:
        """Snapshots with start <= update_time <= end, oldest first"""
        try:
            query = self._updates(user_id, mode)
            if start is not None:
                query = query.filter(Update.update_time >= start)
            if end is not None:
                query = query.filter(Update.update_time <= end)
            rows = query.order_by(Update.update_time.asc(), Update.id.asc()).all()
            return [to_stat_snapshot(row) for row in rows]
        except SQLAlchemyError as e:
            raise self._fail(f"loading history for user {user_id} mode {mode}", e) from e

    def last_pp_change(self, user_id: int, mode: int, latest: StatSnapshot,
                       epsilon: float) -> Optional[StatSnapshot]:
        """Newest snapshot before `latest` whose pp differs from it by more than epsilon"""
        try:
            row = (
                self._updates(user_id, mode)
                .filter(
                    or_(
                        Update.update_time < latest.update_time,
                        and_(Update.update_time == latest.update_time, Update.id < latest.id)
                    ),
                    func.abs(Update.pp_raw - latest['pp_raw']) > epsilon
                )
                .order_by(Update.update_time.desc(), Update.id.desc())
                .first()
            )
            return to_stat_snapshot(row) if row else None
        except SQLAlchemyError as e:
            raise self._fail(f"finding last pp change for user {user_id} mode {mode}", e) from e

    def count_anomalies(self, user_id: int, mode: int,
                        after: StatSnapshot, up_to: StatSnapshot) -> int:
        """Anomaly-flagged snapshots strictly after `after` and up to and including `up_to`"""
        try:
            return (
                self.session.query(func.count(Update.id))
                .filter(
                    Update.user_id == user_id,
                    Update.mode == int(mode),
                    Update.anomaly.is_(True),
                    or_(
                        Update.update_time > after.update_time,
                        and_(Update.update_time == after.update_time, Update.id > after.id)
                    ),
                    or_(
                        Update.update_time < up_to.update_time,
                        and_(Update.update_time == up_to.update_time, Update.id <= up_to.id)
                    )
                )
                .scalar()
            ) or 0
        except SQLAlchemyError as e:
            raise self._fail(f"counting anomalies for user {user_id} mode {mode}", e) from e

    def append_snapshot(self, user_id: int, mode: int, raw: RawSnapshot,
                        update_time: datetime.datetime,
                        anomaly_fields: Iterable[str] = ()) -> StatSnapshot:
        """Append one snapshot row; all-or-nothing within the caller's transaction"""
        anomaly_fields = list(anomaly_fields)
        row = Update(
            user_id=user_id,
            mode=int(mode),
            update_time=update_time,
            anomaly=bool(anomaly_fields),
            anomaly_fields=','.join(anomaly_fields) or None,
            **raw.stats()
        )
        try:
            self.session.add(row)
            self.session.flush()
            return to_stat_snapshot(row)
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Snapshot for user {user_id} mode {mode} at {update_time} already exists")
            raise ConcurrencyConflict(
                f"Snapshot for user {user_id} mode {mode} at {update_time} was written concurrently"
            ) from e
        except SQLAlchemyError as e:
            raise self._fail(f"appending snapshot for user {user_id} mode {mode}", e) from e

    # --- hiscores ---

    def _hiscores(self, user_id: int, beatmap_id: int, mode: int):
        return self.session.query(Hiscore).filter(
            Hiscore.user_id == user_id,
            Hiscore.beatmap_id == beatmap_id,
            Hiscore.mode == int(mode)
        )

    def current_best_row(self, user_id: int, beatmap_id: int, mode: int) -> Optional[Hiscore]:
        try:
            return self._hiscores(user_id, beatmap_id, mode).filter(Hiscore.is_best.is_(True)).first()
        except SQLAlchemyError as e:
            raise self._fail(f"loading best score for user {user_id} beatmap {beatmap_id}", e) from e

    def find_score(self, user_id: int, beatmap_id: int, mode: int,
                   raw: RawScore) -> Optional[ScoreRecord]:
        """The exact play already in history, if it was delivered before"""
        try:
            row = self._hiscores(user_id, beatmap_id, mode).filter(
                Hiscore.score == raw.score,
                Hiscore.score_time == raw.score_time,
                Hiscore.enabled_mods == raw.enabled_mods
            ).order_by(Hiscore.id.asc()).first()
            return to_score_record(row) if row else None
        except SQLAlchemyError as e:
            raise self._fail(f"looking up score for user {user_id} beatmap {beatmap_id}", e) from e

    def append_score(self, user_id: int, beatmap_id: int, mode: int, raw: RawScore,
                     status: str, is_best: bool,
                     recorded_at: Optional[datetime.datetime] = None) -> Hiscore:
        row = Hiscore(
            user_id=user_id,
            beatmap_id=beatmap_id,
            mode=int(mode),
            score=raw.score,
            pp=raw.pp,
            enabled_mods=raw.enabled_mods,
            rank=raw.rank,
            score_time=raw.score_time,
            time_recorded=recorded_at or utcnow(),
            status=status,
            is_best=is_best
        )
        try:
            self.session.add(row)
            self.session.flush()
            return row
        except SQLAlchemyError as e:
            raise self._fail(f"appending score for user {user_id} beatmap {beatmap_id}", e) from e

    def move_best(self, previous: Optional[Hiscore], new: Hiscore) -> None:
        """
        Point the current best at `new`. The old pointer is cleared first; a unique index
        allows one best per (user, beatmap, mode), so a writer that read a stale best gets
        ConcurrencyConflict here.
        """
        try:
            if previous is not None and previous.id != new.id:
                previous.is_best = False
                self.session.flush()
            new.is_best = True
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Best score for user {new.user_id} beatmap {new.beatmap_id} moved concurrently")
            raise ConcurrencyConflict(
                f"Best score for user {new.user_id} beatmap {new.beatmap_id} mode {new.mode} was moved concurrently"
            ) from e
        except SQLAlchemyError as e:
            raise self._fail(f"moving best score for user {new.user_id} beatmap {new.beatmap_id}", e) from e

    def score_history(self, user_id: int, beatmap_id: int, mode: int) -> List[ScoreRecord]:
        try:
            rows = self._hiscores(user_id, beatmap_id, mode).order_by(Hiscore.id.asc()).all()
            return [to_score_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise self._fail(f"loading score history for user {user_id} beatmap {beatmap_id}", e) from e

    def count_score_events(self, user_id: int, mode: int,
                           start: datetime.datetime, end: datetime.datetime,
                           statuses: Iterable[str]) -> int:
        """Hiscores with start < time_recorded <= end and one of the given statuses"""
        try:
            return (
                self.session.query(func.count(Hiscore.id))
                .filter(
                    Hiscore.user_id == user_id,
                    Hiscore.mode == int(mode),
                    Hiscore.status.in_(list(statuses)),
                    Hiscore.time_recorded > start,
                    Hiscore.time_recorded <= end
                )
                .scalar()
            ) or 0
        except SQLAlchemyError as e:
            raise self._fail(f"counting score events for user {user_id} mode {mode}", e) from e

    def score_events(self, user_id: int, mode: int,
                     start: datetime.datetime, end: datetime.datetime,
                     statuses: Iterable[str]) -> List[ScoreRecord]:
        try:
            rows = (
                self.session.query(Hiscore)
                .filter(
                    Hiscore.user_id == user_id,
                    Hiscore.mode == int(mode),
                    Hiscore.status.in_(list(statuses)),
                    Hiscore.time_recorded > start,
                    Hiscore.time_recorded <= end
                )
                .order_by(Hiscore.time_recorded.asc(), Hiscore.id.asc())
                .all()
            )
            return [to_score_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise self._fail(f"loading score events for user {user_id} mode {mode}", e) from e

    # --- beatmaps ---

    def get_beatmap(self, beatmap_id: int) -> Optional[Beatmap]:
        try:
            return self.session.get(Beatmap, beatmap_id)
        except SQLAlchemyError as e:
            raise self._fail(f"loading beatmap {beatmap_id}", e) from e

    def upsert_beatmap(self, raw: RawBeatmap) -> Beatmap:
        """Insert or refresh a beatmap cache entry"""
        try:
            beatmap = self.session.get(Beatmap, raw.beatmap_id)
            values = raw.model_dump()
            if beatmap is None:
                beatmap = Beatmap(**values)
                self.session.add(beatmap)
                logger.info(f"Cached beatmap {raw.beatmap_id}")
            else:
                for key, value in values.items():
                    setattr(beatmap, key, value)
                logger.debug(f"Refreshed beatmap {raw.beatmap_id}")
            self.session.flush()
            return beatmap
        except SQLAlchemyError as e:
            raise self._fail(f"upserting beatmap {raw.beatmap_id}", e) from e

    # --- online users ---

    def record_online_users(self, users: int, operators: int, voiced: int,
                            recorded_at: Optional[datetime.datetime] = None) -> OnlineActivity:
        row = OnlineUsers(
            time_recorded=recorded_at or utcnow(),
            users=users,
            operators=operators,
            voiced=voiced
        )
        try:
            self.session.add(row)
            self.session.flush()
            return OnlineActivity(row.time_recorded, row.users, row.operators, row.voiced)
        except SQLAlchemyError as e:
            raise self._fail("recording online users", e) from e

    def online_activity(self, start: Optional[datetime.datetime] = None,
                        end: Optional[datetime.datetime] = None) -> List[OnlineActivity]:
        try:
            query = self.session.query(OnlineUsers)
            if start is not None:
                query = query.filter(OnlineUsers.time_recorded >= start)
            if end is not None:
                query = query.filter(OnlineUsers.time_recorded <= end)
            rows = query.order_by(OnlineUsers.time_recorded.asc()).all()
            return [OnlineActivity(r.time_recorded, r.users, r.operators, r.voiced) for r in rows]
        except SQLAlchemyError as e:
            raise self._fail("loading online activity", e) from e
