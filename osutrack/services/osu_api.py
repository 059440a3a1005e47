"""osu! API v1 integration service"""
import logging
import time
from typing import Any, Dict, List, Optional, Union

import requests

from osutrack.models.snapshot import GameMode, RawBeatmap

logger = logging.getLogger(__name__)

# Base delay in seconds for retries on rate limit
RATE_LIMIT_RETRY_BASE_DELAY = 2
REQUEST_TIMEOUT_SECONDS = 15
# get_user_best returns at most this many scores
MAX_BEST_LIMIT = 100

class OsuAPI:
    """
    Handles osu! API interactions.

    The v1 API returns every value as a quoted string and an empty list for unknown
    users or beatmaps; the raw dicts are handed to the engine, whose payload models
    coerce the numbers.
    """

    def __init__(self, api_key: str, base_url: str = "https://osu.ppy.sh/api",
                 retry_delay: float = RATE_LIMIT_RETRY_BASE_DELAY):
        if not api_key:
            raise ValueError("osu! API key cannot be empty")
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.retry_delay = retry_delay
        self.session = requests.Session()
        self.session.headers.update({'Accept': 'application/json'})

    def _make_request(self, endpoint: str, params: Dict[str, Any], retries: int = 3) -> List[Dict[str, Any]]:
        """Make an authenticated request with retries on rate limits, server and network errors"""
        url = f'{self.base_url}/{endpoint}'
        query = dict(params, k=self.api_key)
        attempt = 0
        last_exception = None

        while attempt < retries:
            attempt += 1
            try:
                logger.debug(f"Attempt {attempt}/{retries}: Making request to {url} with {params}")
                response = self.session.get(url, params=query, timeout=REQUEST_TIMEOUT_SECONDS)
                response.raise_for_status()
                try:
                    payload = response.json()
                except ValueError:
                    logger.error(f"Failed to decode JSON response from {url}. Response text: {response.text[:200]}")
                    return []
                if isinstance(payload, dict) and payload.get('error'):
                    logger.error(f"osu! API error for {url}: {payload['error']}")
                    raise requests.exceptions.HTTPError(payload['error'], response=response)
                return payload if isinstance(payload, list) else []
            except requests.exceptions.HTTPError as e:
                last_exception = e
                response = e.response
                status = response.status_code if response is not None else None
                logger.warning(f"HTTP Error on attempt {attempt} for {url}: {e}")
                if status == 401:
                    logger.error(f"osu! API key rejected (401) for {url}. Cannot proceed.")
                    raise
                elif status == 429:
                    retry_after = int(response.headers.get('Retry-After', self.retry_delay * (2 ** (attempt - 1))))
                    retry_after = max(0, min(retry_after, 60))
                    logger.warning(f"Rate limit hit (429) for {url}. Retrying after {retry_after} seconds...")
                    time.sleep(retry_after)
                    continue
                elif status is not None and status >= 500:
                    logger.warning(f"osu! server error ({status}) for {url}. Retrying...")
                else:
                    logger.error(f"Client error ({status}) for {url}. Aborting request.")
                    raise
            except requests.exceptions.RequestException as e:
                last_exception = e
                logger.warning(f"Request Error on attempt {attempt} for {url}: {e}. Retrying...")
            if attempt < retries:
                sleep_time = self.retry_delay * (1.5 ** (attempt - 1))
                logger.info(f"Waiting {sleep_time:.2f}s before next retry for {url}...")
                time.sleep(sleep_time)

        logger.error(f"Request failed after {retries} attempts for {url}.")
        raise last_exception or requests.exceptions.RetryError(f"Request failed after {retries} attempts for {url}")

    def get_user(self, user: Union[str, int], mode: GameMode) -> Optional[Dict[str, Any]]:
        """
        Current stats for a user in one mode, as a raw snapshot payload.
        None when the API does not know the user.
        """
        params = {'u': user, 'm': int(mode)}
        params['type'] = 'id' if isinstance(user, int) else 'string'
        rows = self._make_request('get_user', params)
        if not rows:
            logger.info(f"User {user} not found in mode {GameMode(mode).name}")
            return None
        raw = dict(rows[0])
        # Events are not tracked
        raw.pop('events', None)
        return raw

    def get_user_best(self, user_id: int, mode: GameMode, limit: int = MAX_BEST_LIMIT) -> List[Dict[str, Any]]:
        """The user's top plays as raw score payloads (beatmap_id, score, pp, enabled_mods, rank, score_time)"""
        params = {'u': user_id, 'm': int(mode), 'limit': min(limit, MAX_BEST_LIMIT), 'type': 'id'}
        scores = []
        for row in self._make_request('get_user_best', params):
            scores.append({
                'beatmap_id': row.get('beatmap_id'),
                'score': row.get('score'),
                'pp': row.get('pp') or 0,
                'enabled_mods': row.get('enabled_mods', 0),
                'rank': row.get('rank'),
                'score_time': row.get('date'),
            })
        return scores

    def get_beatmap(self, beatmap_id: int, mode: GameMode) -> Optional[RawBeatmap]:
        """Beatmap metadata, converted for the beatmap cache; None when unknown"""
        params = {'b': beatmap_id, 'm': int(mode), 'a': 1}
        rows = self._make_request('get_beatmaps', params)
        if not rows:
            return None
        row = dict(rows[0])
        row['difficulty'] = row.pop('difficultyrating', None)
        row['mode'] = int(mode)
        row['source'] = row.get('source') or ''
        return RawBeatmap.model_validate(row)
