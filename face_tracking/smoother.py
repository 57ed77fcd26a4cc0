"""Temporal low-pass filter for the tracked face box."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional

from .config import (
    SMOOTHER_BLEND,
    SMOOTHER_HISTORY,
    SMOOTHER_MAX_MISSES,
    SMOOTHER_MIN_UPDATE_INTERVAL,
)
from .types import BoundingBox


def _lerp(start: float, end: float, t: float) -> float:
    return start + (end - start) * t


@dataclass
class SmootherState:
    last_valid_box: Optional[BoundingBox] = None
    history: Deque[BoundingBox] = field(default_factory=lambda: deque(maxlen=SMOOTHER_HISTORY))
    consecutive_misses: int = 0
    last_update: Optional[float] = None


class BoxSmoother:
    """Stabilizes a per-frame box across jitter and short detection dropouts.

    Each accepted update blends every coordinate toward the new sample by
    ``blend``. Missing detections keep the last stable box alive for up to
    ``max_misses`` updates before tracking is dropped. Calls arriving faster
    than ``min_update_interval`` seconds return the current box untouched.
    """

    def __init__(
        self,
        min_update_interval: float = SMOOTHER_MIN_UPDATE_INTERVAL,
        max_misses: int = SMOOTHER_MAX_MISSES,
        blend: float = SMOOTHER_BLEND,
        history_size: int = SMOOTHER_HISTORY,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.min_update_interval = min_update_interval
        self.max_misses = max_misses
        self.blend = blend
        self.history_size = max(1, int(history_size))
        self.clock = clock
        self.state = self._empty_state()

    @property
    def last_valid_box(self) -> Optional[BoundingBox]:
        return self.state.last_valid_box

    @property
    def history(self) -> list[BoundingBox]:
        return list(self.state.history)

    def smooth(self, box: Optional[BoundingBox]) -> Optional[BoundingBox]:
        now = self.clock()
        state = self.state
        if state.last_update is not None and now - state.last_update < self.min_update_interval:
            return state.last_valid_box
        state.last_update = now

        if box is None:
            state.consecutive_misses += 1
            if state.consecutive_misses > self.max_misses:
                self.reset()
                return None
            return state.last_valid_box

        if state.last_valid_box is None:
            state.last_valid_box = box
            state.history.clear()
            state.history.append(box)
            state.consecutive_misses = 0
            return box

        previous = state.last_valid_box
        smoothed = BoundingBox(
            x=_lerp(previous.x, box.x, self.blend),
            y=_lerp(previous.y, box.y, self.blend),
            width=_lerp(previous.width, box.width, self.blend),
            height=_lerp(previous.height, box.height, self.blend),
        )
        state.history.append(smoothed)
        state.last_valid_box = smoothed
        state.consecutive_misses = 0
        return smoothed

    def reset(self) -> None:
        self.state = self._empty_state()

    def _empty_state(self) -> SmootherState:
        return SmootherState(history=deque(maxlen=self.history_size))
