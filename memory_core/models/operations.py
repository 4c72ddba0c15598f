"""
Operational records: merge log, sentiment readings, maintenance runs,
and the per-item batch report every maintenance entry point returns.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from memory_core.utils.id_generator import (
    generate_operation_id,
    generate_sentiment_id,
    generate_run_id,
)


@dataclass
class MemoryOperation:
    """
    Reversible-reasoning record of a content mutation (merge)

    old_content / new_content hold the keeper's summary before and after,
    merged_entity_ids the losers folded into entity_id.
    """
    id: str
    owner_id: str
    operation: str  # CONSOLIDATE
    entity_id: str
    merged_entity_ids: List[str] = field(default_factory=list)
    old_content: Optional[str] = None
    new_content: Optional[str] = None
    reasoning: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = generate_operation_id()


@dataclass
class SentimentReading:
    """Owner's sentiment toward an entity at a point in time, in [-1, 1]"""
    id: str
    owner_id: str
    entity_id: str
    sentiment: float
    context: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = generate_sentiment_id()
        self.sentiment = max(-1.0, min(1.0, float(self.sentiment)))


@dataclass
class MaintenanceRun:
    """One completed (or partially completed) maintenance task for one owner"""
    id: str
    task_name: str
    owner_id: str
    window_key: str
    status: str = "completed"  # completed | partial
    counts: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = generate_run_id()


@dataclass
class BatchReport:
    """
    Outcome of a batch maintenance job.

    Individual item failures never abort the batch; they are collected in
    `failures` as {item_id: error message}.
    """
    task: str
    counts: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    def bump(self, key: str, amount: int = 1):
        self.counts[key] = self.counts.get(key, 0) + amount

    def fail(self, item_id: str, error: Exception):
        self.failures[item_id] = f"{type(error).__name__}: {error}"
        self.bump('failed')

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict:
        return {
            'task': self.task,
            'counts': dict(self.counts),
            'failures': dict(self.failures),
        }
