# data_feeder.py

import logging
import threading
from collections import deque
from typing import Dict, List, Literal, Optional

logger = logging.getLogger("LoadRunner.feeder")

TestDataRecord = Dict[str, str]


class DataFeeder:
    """
    Hands out one test-data record per iteration. Safe to call from many workers.

    'exhaust' pops records off the front of a private queue and returns None once
    it is empty. 'cycle' walks the list modulo its length and never runs out.
    Without any records every call returns a fresh empty record.
    """

    def __init__(self, records: Optional[List[TestDataRecord]] = None, mode: Literal['exhaust', 'cycle'] = 'exhaust'):
        if mode not in ('exhaust', 'cycle'):
            raise ValueError(f"mode must be 'exhaust' or 'cycle', got '{mode}'")
        self.mode = mode
        self._lock = threading.Lock()
        self._records = [dict(r) for r in records] if records else []
        self._pending = deque(self._records)
        self._index = 0
        logger.debug(f"DataFeeder initialized with {len(self._records)} records (mode={mode})")

    @property
    def has_records(self) -> bool:
        return bool(self._records)

    def next(self) -> Optional[TestDataRecord]:
        """Returns a copy of the next record, or None when an exhausting feeder is empty."""
        if not self._records:
            return {}
        with self._lock:
            if self.mode == 'cycle':
                record = self._records[self._index]
                self._index = (self._index + 1) % len(self._records)
            elif self._pending:
                record = self._pending.popleft()
            else:
                return None
        return dict(record)

    def remaining(self) -> Optional[int]:
        """Records left to hand out; None when the feeder never runs dry."""
        if self.mode == 'cycle' or not self._records:
            return None
        with self._lock:
            return len(self._pending)
