"""
Rolling smoother: trailing mean of error_rate per file_name.

The window is row-based over the observed days of a file that have a
non-null error_rate; days with a null error_rate neither contribute nor
take a slot. With fewer rows than window_size, the mean is taken over
what exists.

Each file_name owns an ordered state (history plus running window sum).
Appending a newer day only touches the running sum. A day inserted before
the latest one (backfill) or a re-run of an existing day invalidates the
cache from that point, and the file's later days are recomputed.

Running sums are kept as exact fractions built from the counts, so
incremental and full recomputation give identical values.
"""

import threading
from bisect import bisect_left
from collections import deque
from datetime import date
from fractions import Fraction
from typing import Callable, Iterable

from dq_audit.core.errors import InvariantViolation
from dq_audit.core.models import DailyAuditRow, RollingAuditRow

DEFAULT_WINDOW_SIZE = 7

HistoryLoader = Callable[[str], Iterable[DailyAuditRow]]


def exact_rate(row: DailyAuditRow) -> Fraction | None:
    if row.nb_total == 0:
        return None
    return Fraction(row.nb_invalid, row.nb_total)


class FileRollingState:
    """
    Ordered history and trailing window of one file_name.

    Not thread-safe by itself; RollingSmoother serializes access per file.
    """

    def __init__(self, file_name: str, window_size: int = DEFAULT_WINDOW_SIZE):
        if window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {window_size}")

        self.file_name = file_name
        self.window_size = window_size
        self.lock = threading.Lock()
        self.loaded = False

        self.dates: list[date] = []
        self.rates: list[Fraction | None] = []
        self.rolling: list[Fraction | None] = []

        # Cache: the last window_size non-null rates up to dates[-1]
        self._window: deque[Fraction] = deque()
        self._window_sum = Fraction(0)

    def __len__(self) -> int:
        return len(self.dates)

    def _push(self, rate: Fraction | None) -> Fraction | None:
        if rate is not None:
            self._window.append(rate)
            self._window_sum += rate
            if len(self._window) > self.window_size:
                self._window_sum -= self._window.popleft()
        if not self._window:
            return None
        return self._window_sum / len(self._window)

    def _rebuild_window(self, end: int) -> None:
        """Reset the cache to the window ending just before index `end`."""
        self._window.clear()
        self._window_sum = Fraction(0)
        collected = []
        for rate in reversed(self.rates[:end]):
            if rate is None:
                continue
            collected.append(rate)
            if len(collected) == self.window_size:
                break
        for rate in reversed(collected):
            self._window.append(rate)
            self._window_sum += rate

    def _recompute_from(self, start: int) -> None:
        self._rebuild_window(start)
        del self.rolling[start:]
        for rate in self.rates[start:]:
            self.rolling.append(self._push(rate))

    def to_row(self, index: int) -> RollingAuditRow:
        value = self.rolling[index]
        return RollingAuditRow(
            load_date=self.dates[index],
            file_name=self.file_name,
            rolling_error_rate=None if value is None else float(value),
            window_size=self.window_size,
        )

    def apply(self, row: DailyAuditRow) -> list[RollingAuditRow]:
        """
        Apply one day's row.

        Returns:
            The rolling rows whose value was (re)computed, in load_date order:
            just the new day when appended in order, the new day and every
            later day after a backfill.

        Raises:
            InvariantViolation: If the row belongs to another file_name
        """
        if row.file_name != self.file_name:
            raise InvariantViolation(
                f"row routed to rolling state of {self.file_name!r}",
                load_date=row.load_date,
                file_name=row.file_name,
            )

        rate = exact_rate(row)

        if not self.dates or row.load_date > self.dates[-1]:
            self.dates.append(row.load_date)
            self.rates.append(rate)
            self.rolling.append(self._push(rate))
            return [self.to_row(len(self.dates) - 1)]

        index = bisect_left(self.dates, row.load_date)
        if self.dates[index] == row.load_date:
            if self.rates[index] == rate:
                return [self.to_row(index)]
            self.rates[index] = rate
        else:
            self.dates.insert(index, row.load_date)
            self.rates.insert(index, rate)

        self._recompute_from(index)
        return [self.to_row(i) for i in range(index, len(self.dates))]

    def rows(self) -> list[RollingAuditRow]:
        return [self.to_row(i) for i in range(len(self.dates))]


class RollingSmoother:
    """
    Per-file_name rolling states, created on first use.

    Updates to one file_name are serialized by that file's lock and must
    arrive in load_date order to stay on the incremental path; different
    file_names proceed independently.

    Args:
        window_size: Trailing window length in rows
        history_loader: Called once per file_name to seed the state with
            previously persisted daily rows
    """

    def __init__(
        self,
        window_size: int = DEFAULT_WINDOW_SIZE,
        history_loader: HistoryLoader | None = None,
    ):
        if window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {window_size}")

        self.window_size = window_size
        self.history_loader = history_loader
        self._states: dict[str, FileRollingState] = {}
        self._registry_lock = threading.Lock()

    def _state_for(self, file_name: str) -> FileRollingState:
        with self._registry_lock:
            state = self._states.get(file_name)
            if state is None:
                state = FileRollingState(file_name, self.window_size)
                self._states[file_name] = state
            return state

    def _ensure_loaded(self, state: FileRollingState) -> None:
        if state.loaded:
            return
        if self.history_loader is not None:
            for row in sorted(self.history_loader(state.file_name), key=lambda r: r.load_date):
                state.apply(row)
        state.loaded = True

    def update(self, row: DailyAuditRow) -> list[RollingAuditRow]:
        """
        Fold one DailyAuditRow into its file's trailing window.

        Returns:
            Rolling rows (re)computed by this update, in load_date order
        """
        state = self._state_for(row.file_name)
        with state.lock:
            self._ensure_loaded(state)
            return state.apply(row)

    def history(self, file_name: str) -> list[RollingAuditRow]:
        state = self._state_for(file_name)
        with state.lock:
            self._ensure_loaded(state)
            return state.rows()

    def forget(self, file_name: str | None = None) -> None:
        """Drop cached state so that the next update reloads history."""
        with self._registry_lock:
            if file_name is None:
                self._states.clear()
            else:
                self._states.pop(file_name, None)


def rolling_history(
    rows: Iterable[DailyAuditRow],
    window_size: int = DEFAULT_WINDOW_SIZE,
) -> list[RollingAuditRow]:
    """
    Compute rolling rows for a whole history in one pass.

    Rows may span several file_names and arrive in any order.

    Returns:
        Rolling rows sorted by (file_name, load_date)
    """
    states: dict[str, FileRollingState] = {}
    for row in sorted(rows, key=lambda r: (r.file_name, r.load_date)):
        state = states.get(row.file_name)
        if state is None:
            state = states[row.file_name] = FileRollingState(row.file_name, window_size)
        state.apply(row)

    result = []
    for file_name in sorted(states):
        result.extend(states[file_name].rows())
    return result
