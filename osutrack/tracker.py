"""Update cycle for a single user: poll the osu! API and feed the engine"""
import datetime
import logging
from typing import List, Optional

import pydantic
import requests

from osutrack.config import Settings
from osutrack.db import Database, db as default_db
from osutrack.delta import DeltaEngine
from osutrack.errors import ValidationError
from osutrack.hiscores import NEW_SCORE_STATUSES, HighScoreTracker
from osutrack.ingest import IngestionCoordinator, validate_mode
from osutrack.models.results import ScoreIngestResult, UpdateReport
from osutrack.models.snapshot import OnlineActivity
from osutrack.services.osu_api import OsuAPI
from osutrack.services.storage import StorageService

logger = logging.getLogger(__name__)

class Tracker:
    """Runs update cycles: stats snapshot, then best scores with beatmap caching"""

    def __init__(self, settings: Settings, database: Optional[Database] = None,
                 api: Optional[OsuAPI] = None):
        self.settings = settings
        self.db = database or default_db
        if api is None:
            if not settings.OSU_API_KEY:
                raise ValueError("OSU_API_KEY setting is required")
            api = OsuAPI(api_key=settings.OSU_API_KEY, base_url=settings.OSU_API_URL)
        self.api = api
        self.coordinator = IngestionCoordinator(self.db, max_retries=settings.INGEST_MAX_RETRIES)
        self.deltas = DeltaEngine(self.db, default_timeout=settings.QUERY_TIMEOUT_SECONDS)
        self.hiscores = HighScoreTracker(self.db, max_retries=settings.INGEST_MAX_RETRIES)

    def update(self, username: str, mode) -> UpdateReport:
        """
        Poll a user's current stats and best scores and record whatever changed.

        Returns:
            UpdateReport with the ingestion outcome, the diff against the previous stored
            update (first_update when there was none) and the newly recorded top scores
        """
        game_mode = validate_mode(mode)
        logger.info(f"Updating {username} in mode {game_mode.name}")

        raw = self.api.get_user(username, game_mode)
        if raw is None:
            return UpdateReport(username=username, mode=int(game_mode), found=False)

        try:
            user_id = int(raw['user_id'])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"osu! API returned a user without a valid user_id: {raw!r}") from e

        ingest_result = self.coordinator.ingest(user_id, game_mode, raw)
        if ingest_result.persisted:
            diff = self.deltas.latest_delta(user_id, game_mode)
        else:
            diff = self.deltas.compute_delta(
                user_id, game_mode, ingest_result.update_time, ingest_result.update_time
            )

        new_hiscores = self._update_hiscores(user_id, raw.get('username') or username, game_mode)

        return UpdateReport(
            username=raw.get('username') or username,
            user_id=user_id,
            mode=int(game_mode),
            ingest=ingest_result,
            diff=diff,
            new_hiscores=new_hiscores
        )

    def _update_hiscores(self, user_id: int, username: str, mode) -> List[ScoreIngestResult]:
        scores = self.api.get_user_best(user_id, mode, self.settings.HISCORE_FETCH_COUNT)
        new_hiscores = []
        for raw_score in scores:
            try:
                beatmap_id = int(raw_score['beatmap_id'])
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping score without beatmap id for user {user_id}: {raw_score!r}")
                continue
            self.ensure_beatmap(beatmap_id, mode)
            result = self.hiscores.ingest_score(user_id, beatmap_id, mode, raw_score, username=username)
            if result.status.value in NEW_SCORE_STATUSES:
                new_hiscores.append(result)
        logger.info(f"{len(new_hiscores)} new hiscores for user {user_id} out of {len(scores)} fetched")
        return new_hiscores

    def ensure_beatmap(self, beatmap_id: int, mode) -> bool:
        """Fill the beatmap cache from the API when the beatmap is missing. True when cached."""
        with self.db.session() as session:
            storage = StorageService(session)
            if storage.get_beatmap(beatmap_id) is not None:
                return True
            try:
                raw_beatmap = self.api.get_beatmap(beatmap_id, mode)
            except (requests.exceptions.RequestException, pydantic.ValidationError) as e:
                # Scores only reference beatmaps weakly; a missing cache entry is not fatal
                logger.warning(f"Could not fetch beatmap {beatmap_id}: {e}")
                return False
            if raw_beatmap is None:
                logger.warning(f"Beatmap {beatmap_id} not found on the osu! API")
                return False
            storage.upsert_beatmap(raw_beatmap)
            return True

    def record_online_users(self, users: int, operators: int, voiced: int,
                            recorded_at: Optional[datetime.datetime] = None) -> OnlineActivity:
        with self.db.session() as session:
            return StorageService(session).record_online_users(users, operators, voiced, recorded_at)

    def online_activity(self, start: Optional[datetime.datetime] = None,
                        end: Optional[datetime.datetime] = None) -> List[OnlineActivity]:
        with self.db.session() as session:
            return StorageService(session).online_activity(start, end)
