"""Domain models for user stat snapshots, hiscores and their raw API payloads"""
import datetime
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, field_validator

OSU_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

class GameMode(IntEnum):
    """osu! game modes as used by the API's m parameter"""
    STANDARD = 0
    TAIKO = 1
    CTB = 2
    MANIA = 3

INT_FIELDS: Tuple[str, ...] = (
    'count300', 'count100', 'count50', 'playcount', 'ranked_score', 'total_score',
    'pp_rank', 'count_rank_ss', 'count_rank_s', 'count_rank_a', 'pp_country_rank',
)
FLOAT_FIELDS: Tuple[str, ...] = ('level', 'pp_raw', 'accuracy')
TRACKED_FIELDS: Tuple[str, ...] = INT_FIELDS + FLOAT_FIELDS

# Fields that can only grow for a healthy account
MONOTONIC_FIELDS: Tuple[str, ...] = ('count300', 'count100', 'count50', 'playcount', 'total_score')

# Placement fields where a lower number is better
RANK_FIELDS: Tuple[str, ...] = ('pp_rank', 'pp_country_rank')

def to_naive_utc(value: datetime.datetime) -> datetime.datetime:
    """Convert an aware datetime to naive UTC, leaving naive values untouched"""
    if value.tzinfo is not None and value.tzinfo.utcoffset(value) is not None:
        return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value

def parse_osu_datetime(value):
    """osu! API v1 dates are 'YYYY-MM-DD HH:MM:SS' in UTC"""
    if isinstance(value, str):
        try:
            return datetime.datetime.strptime(value, OSU_DATE_FORMAT)
        except ValueError:
            return value
    return value

def parse_mode(value: Union[int, str, GameMode]) -> GameMode:
    """Coerce a mode value into GameMode, raising ValueError on anything unknown"""
    if isinstance(value, bool):
        raise ValueError(f"Invalid game mode: {value!r}")
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            try:
                return GameMode[value.upper()]
            except KeyError:
                raise ValueError(f"Invalid game mode: {value!r}") from None
    try:
        return GameMode(int(value))
    except (TypeError, ValueError):
        raise ValueError(f"Invalid game mode: {value!r}") from None

class RawSnapshot(BaseModel):
    """
    A user stats payload as delivered by the poller.

    Mirrors the osu! get_user response, where every number is quoted; pydantic coerces
    them. captured_at defaults to the ingestion time when the poller does not supply it.
    """
    model_config = ConfigDict(extra='ignore', frozen=True)

    user_id: Optional[int] = None
    username: Optional[str] = None
    count300: int
    count100: int
    count50: int
    playcount: int
    ranked_score: int
    total_score: int
    pp_rank: int
    level: float
    pp_raw: float
    accuracy: float
    count_rank_ss: int
    count_rank_s: int
    count_rank_a: int
    pp_country_rank: int
    captured_at: Optional[datetime.datetime] = None

    @field_validator('pp_rank', 'pp_country_rank', mode='before')
    @classmethod
    def _unranked_as_zero(cls, value):
        # Inactive players come back with a null rank
        return 0 if value is None else value

    @field_validator('captured_at', mode='before')
    @classmethod
    def _parse_captured_at(cls, value):
        return parse_osu_datetime(value)

    @field_validator('captured_at')
    @classmethod
    def _normalize_captured_at(cls, value):
        return to_naive_utc(value) if value is not None else None

    def stats(self) -> Dict[str, Union[int, float]]:
        return {name: getattr(self, name) for name in TRACKED_FIELDS}

class RawScore(BaseModel):
    """A single entry of the get_user_best response"""
    model_config = ConfigDict(extra='ignore', frozen=True)

    beatmap_id: Optional[int] = None
    score: int
    pp: float = 0.0
    enabled_mods: int = 0
    rank: str
    score_time: datetime.datetime

    @field_validator('rank')
    @classmethod
    def _check_rank(cls, value: str):
        value = value.strip()
        if not value or len(value) > 2:
            raise ValueError(f"Invalid grade code: {value!r}")
        return value

    @field_validator('score_time', mode='before')
    @classmethod
    def _parse_score_time(cls, value):
        return parse_osu_datetime(value)

    @field_validator('score_time')
    @classmethod
    def _normalize_score_time(cls, value):
        return to_naive_utc(value)

class RawBeatmap(BaseModel):
    """A get_beatmaps entry, ready to be cached"""
    model_config = ConfigDict(extra='ignore')

    beatmap_id: int
    mode: int
    beatmapset_id: int
    approved: int
    approved_date: Optional[datetime.datetime] = None
    last_update: Optional[datetime.datetime] = None
    total_length: int
    hit_length: int
    version: str
    artist: str
    title: str
    creator: str
    bpm: float
    source: str = ''
    difficulty: float
    diff_size: float
    diff_overall: float
    diff_approach: float
    diff_drain: float

    @field_validator('approved_date', 'last_update', mode='before')
    @classmethod
    def _parse_dates(cls, value):
        return parse_osu_datetime(value)

@dataclass
class TrackedUser:
    """A tracked user and the first/last time they were polled"""
    id: int
    username: str
    first_seen: datetime.datetime
    last_seen: datetime.datetime

@dataclass
class StatSnapshot:
    """A stored stats snapshot"""
    id: int
    user_id: int
    mode: GameMode
    update_time: datetime.datetime
    stats: Dict[str, Union[int, float]]
    anomaly: bool = False
    anomaly_fields: Tuple[str, ...] = field(default_factory=tuple)

    def __getitem__(self, name: str) -> Union[int, float]:
        return self.stats[name]

@dataclass
class ScoreRecord:
    """A stored hiscore"""
    id: int
    user_id: int
    beatmap_id: int
    mode: GameMode
    score: int
    pp: float
    enabled_mods: int
    rank: str
    score_time: datetime.datetime
    time_recorded: datetime.datetime
    status: str
    is_best: bool

@dataclass
class OnlineActivity:
    """Online user counts at a point in time"""
    time_recorded: datetime.datetime
    users: int
    operators: int
    voiced: int
