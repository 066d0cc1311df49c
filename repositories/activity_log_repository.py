"""
Read contract over the activity log, with an in-process implementation.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, List, Optional

from models.activity import ActivityRecord, ActivityStatistic

logger = logging.getLogger(__name__)


class ActivityLogRepository(ABC):
    """Time-range queries over logged activity. Bounds are inclusive."""

    @abstractmethod
    async def find_by_user_and_time_range(
        self, user_id: int, start: datetime, end: datetime
    ) -> List[ActivityRecord]:
        pass

    @abstractmethod
    async def find_by_ip_and_time_range(
        self, ip: str, start: datetime, end: datetime
    ) -> List[ActivityRecord]:
        pass

    @abstractmethod
    async def get_activity_statistics(
        self, start: datetime, end: datetime
    ) -> List[ActivityStatistic]:
        pass


class InMemoryActivityLogRepository(ActivityLogRepository):
    """Holds records in a list. Used in development and tests."""

    def __init__(self, records: Optional[Iterable[ActivityRecord]] = None):
        self._records: List[ActivityRecord] = list(records or [])
        self._lock = Lock()

    def add(self, record: ActivityRecord) -> None:
        with self._lock:
            self._records.append(record)

    def extend(self, records: Iterable[ActivityRecord]) -> None:
        with self._lock:
            self._records.extend(records)

    def _in_range(self, start: datetime, end: datetime) -> List[ActivityRecord]:
        with self._lock:
            return [r for r in self._records if start <= r.occurred_at <= end]

    async def find_by_user_and_time_range(
        self, user_id: int, start: datetime, end: datetime
    ) -> List[ActivityRecord]:
        return [r for r in self._in_range(start, end) if r.actor_user_id == user_id]

    async def find_by_ip_and_time_range(
        self, ip: str, start: datetime, end: datetime
    ) -> List[ActivityRecord]:
        return [r for r in self._in_range(start, end) if r.source_ip == ip]

    async def get_activity_statistics(
        self, start: datetime, end: datetime
    ) -> List[ActivityStatistic]:
        totals: Dict[str, int] = defaultdict(int)
        failures: Dict[str, int] = defaultdict(int)
        for record in self._in_range(start, end):
            totals[record.action_type] += 1
            if record.is_failure:
                failures[record.action_type] += 1

        return [
            ActivityStatistic(action_type=action, total_count=count, failure_count=failures[action])
            for action, count in sorted(totals.items())
        ]
