"""Result models returned by the ingestion and query entry points"""
import datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

Number = Union[int, float]

class IngestStatus(str, Enum):
    STORED = 'stored'
    SKIPPED = 'skipped'
    ANOMALY = 'anomaly'

class ScoreIngestStatus(str, Enum):
    NEW = 'new'
    IMPROVED = 'improved'
    UNCHANGED = 'unchanged'
    # Play already present in history, nothing appended
    RECORDED = 'recorded'

class DeltaStatus(str, Enum):
    OK = 'ok'
    ZERO = 'zero'
    NO_DATA = 'no_data'

class IngestResult(BaseModel):
    """Outcome of ingesting one stats snapshot"""
    status: IngestStatus
    reason: str = Field(description="first, changed, regressed, unchanged or stale")
    user_id: int
    mode: int
    snapshot_id: Optional[int] = Field(None, description="Id of the appended row, if any")
    update_time: Optional[datetime.datetime] = None
    changed_fields: List[str] = []
    anomaly_fields: List[str] = []
    attempts: int = 1

    @property
    def persisted(self) -> bool:
        return self.status in (IngestStatus.STORED, IngestStatus.ANOMALY)

class ScoreIngestResult(BaseModel):
    """Outcome of ingesting one hiscore"""
    status: ScoreIngestStatus
    user_id: int
    beatmap_id: int
    mode: int
    record_id: Optional[int] = None
    is_current_best: bool = False
    previous_best_score: Optional[int] = None
    previous_best_rank: Optional[str] = None
    rank_up: bool = False
    attempts: int = 1

class FieldDelta(BaseModel):
    """
    Change of one stat between two anchors.

    delta is always after - before. For placement fields (pp_rank, pp_country_rank) a
    negative delta is an improvement, which improved states explicitly; it is None for
    fields where bigger is simply more.
    """
    before: Number
    after: Number
    delta: Number
    improved: Optional[bool] = None

class Delta(BaseModel):
    """Field-by-field change of a user's stats across a time window"""
    status: DeltaStatus
    user_id: int
    mode: int
    start: Optional[datetime.datetime] = None
    end: Optional[datetime.datetime] = None
    start_snapshot_id: Optional[int] = None
    end_snapshot_id: Optional[int] = None
    start_time: Optional[datetime.datetime] = Field(None, description="Capture time of the start anchor")
    end_time: Optional[datetime.datetime] = Field(None, description="Capture time of the end anchor")
    first_update: bool = False
    anomalies_in_range: int = 0
    changes: Dict[str, FieldDelta] = {}

    @property
    def has_data(self) -> bool:
        return self.status != DeltaStatus.NO_DATA

    def get(self, name: str) -> Optional[Number]:
        """Numeric delta of a field, None when there is no baseline"""
        field_delta = self.changes.get(name)
        return field_delta.delta if field_delta else None

class UpdateReport(BaseModel):
    """Result of one tracker update cycle for a user, as served by the update endpoint"""
    username: str
    user_id: Optional[int] = None
    mode: int
    found: bool = True
    ingest: Optional[IngestResult] = None
    diff: Optional[Delta] = None
    new_hiscores: List[ScoreIngestResult] = []
