from __future__ import annotations

import threading
from typing import Iterator

from .errors import TradeNotFoundError
from .types import TradeResult

DEFAULT_MAX_HISTORY = 1000


class TradeHistoryStore:
    """Bounded, insertion-ordered trade history with FIFO eviction.

    Entries live in a fixed ring of slots; ``_index`` maps trade id to slot.
    Insertion order is completion order because the executor records a
    result only after its submission confirms.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_HISTORY) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self._max_size = max_size
        self._slots: list[TradeResult | None] = [None] * max_size
        self._index: dict[str, int] = {}
        self._head = 0  # oldest entry
        self._size = 0
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        with self._lock:
            return self._size

    def __contains__(self, trade_id: object) -> bool:
        with self._lock:
            return trade_id in self._index

    def record(self, result: TradeResult) -> bool:
        with self._lock:
            if result.id in self._index:
                return False

            if self._size == self._max_size:
                evicted = self._slots[self._head]
                if evicted is not None:
                    del self._index[evicted.id]
                self._slots[self._head] = None
                self._head = (self._head + 1) % self._max_size
                self._size -= 1

            slot = (self._head + self._size) % self._max_size
            self._slots[slot] = result
            self._index[result.id] = slot
            self._size += 1
            return True

    def get(self, trade_id: str) -> TradeResult:
        with self._lock:
            slot = self._index.get(trade_id)
            if slot is None:
                raise TradeNotFoundError(trade_id)
            result = self._slots[slot]
        if result is None:
            raise TradeNotFoundError(trade_id)
        return result

    def list(self) -> list[TradeResult]:
        with self._lock:
            return self._snapshot()

    def __iter__(self) -> Iterator[TradeResult]:
        return iter(self.list())

    def latest(self, count: int) -> list[TradeResult]:
        if count <= 0:
            return []
        return self.list()[-count:]

    def for_token(self, token: str) -> list[TradeResult]:
        return [
            result
            for result in self.list()
            if result.input_token == token or result.output_token == token
        ]

    def _snapshot(self) -> list[TradeResult]:
        ordered: list[TradeResult] = []
        for offset in range(self._size):
            result = self._slots[(self._head + offset) % self._max_size]
            if result is not None:
                ordered.append(result)
        return ordered
