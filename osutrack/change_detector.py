"""Decides whether an incoming stats snapshot is worth a new row"""
import math
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Union

from osutrack.config import settings
from osutrack.models.snapshot import (
    FLOAT_FIELDS, MONOTONIC_FIELDS, TRACKED_FIELDS, RawSnapshot, StatSnapshot
)

@dataclass
class ChangeDecision:
    """Classification of an incoming snapshot against the last stored one"""
    persist: bool
    first: bool = False
    anomaly: bool = False
    changed_fields: List[str] = field(default_factory=list)
    regressed_fields: List[str] = field(default_factory=list)

class ChangeDetector:
    """Compares snapshots field by field, with a tolerance for float jitter"""

    def __init__(self, float_epsilon: Optional[float] = None):
        self.float_epsilon = settings.FLOAT_EPSILON if float_epsilon is None else float_epsilon

    def values_equal(self, name: str, old: Union[int, float], new: Union[int, float]) -> bool:
        if name in FLOAT_FIELDS:
            return math.isclose(float(old), float(new), rel_tol=0.0, abs_tol=self.float_epsilon)
        return old == new

    def classify(self, last_snapshot: Optional[StatSnapshot],
                 incoming: Union[RawSnapshot, Mapping[str, Union[int, float]]]) -> ChangeDecision:
        stats = incoming.stats() if isinstance(incoming, RawSnapshot) else incoming
        if last_snapshot is None:
            return ChangeDecision(persist=True, first=True, changed_fields=list(TRACKED_FIELDS))

        changed = [
            name for name in TRACKED_FIELDS
            if not self.values_equal(name, last_snapshot[name], stats[name])
        ]
        regressed = [name for name in MONOTONIC_FIELDS if stats[name] < last_snapshot[name]]
        return ChangeDecision(
            persist=bool(changed),
            anomaly=bool(regressed),
            changed_fields=changed,
            regressed_fields=regressed
        )

    def should_persist(self, last_snapshot: Optional[StatSnapshot],
                       incoming: Union[RawSnapshot, Mapping[str, Union[int, float]]]) -> bool:
        """True when incoming is the first observation or differs from last_snapshot"""
        return self.classify(last_snapshot, incoming).persist
