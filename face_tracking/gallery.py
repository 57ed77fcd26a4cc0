"""Time-bounded cache of enrolled identities pulled from the object store."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from .config import EMBEDDING_DIM, GALLERY_FETCH_LIMIT, GALLERY_KIND, GALLERY_REFRESH_SECONDS
from .exceptions import StoreError
from .logger import setup_logger
from .types import StoredObject


class ObjectLister(Protocol):
    def list(self, kind: str, limit: int = ..., newest_first: bool = ...) -> List[StoredObject]:
        ...


@dataclass(frozen=True)
class EnrolledIdentity:
    name: str
    embedding: np.ndarray


@dataclass(frozen=True)
class GallerySnapshot:
    identities: Tuple[EnrolledIdentity, ...]
    embeddings: np.ndarray
    captured_at: float

    def __len__(self) -> int:
        return len(self.identities)

    @property
    def names(self) -> List[str]:
        return [identity.name for identity in self.identities]

    @classmethod
    def build(cls, identities: Sequence[EnrolledIdentity], captured_at: float) -> "GallerySnapshot":
        if identities:
            matrix = np.vstack([identity.embedding for identity in identities]).astype(np.float32)
        else:
            matrix = np.empty((0, EMBEDDING_DIM), dtype=np.float32)
        matrix.setflags(write=False)
        return cls(identities=tuple(identities), embeddings=matrix, captured_at=captured_at)


def parse_descriptor(raw: Any, dim: int = EMBEDDING_DIM) -> Optional[np.ndarray]:
    if not isinstance(raw, (list, tuple)) or len(raw) != dim:
        return None
    values = []
    for value in raw:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if not math.isfinite(value):
            return None
        values.append(value)
    vector = np.asarray(values, dtype=np.float32)
    vector.setflags(write=False)
    return vector


def identity_from_record(record: StoredObject, dim: int = EMBEDDING_DIM) -> Optional[EnrolledIdentity]:
    data = record.data or {}
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    embedding = parse_descriptor(data.get("descriptor"), dim=dim)
    if embedding is None:
        return None
    return EnrolledIdentity(name=name, embedding=embedding)


class GalleryCache:
    """Lazily rebuilt gallery snapshot shared by every tick of a pipeline.

    A rebuild is attempted on first use and then at most once per refresh
    interval. Failed or empty fetches keep the previous snapshot so matching
    keeps working on slightly stale data. ``invalidate`` drops the snapshot
    and forces a fetch on the next read.
    """

    def __init__(
        self,
        store: ObjectLister,
        refresh_interval: float = GALLERY_REFRESH_SECONDS,
        fetch_limit: int = GALLERY_FETCH_LIMIT,
        kind: str = GALLERY_KIND,
        embedding_dim: int = EMBEDDING_DIM,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.store = store
        self.refresh_interval = refresh_interval
        self.fetch_limit = fetch_limit
        self.kind = kind
        self.embedding_dim = embedding_dim
        self.clock = clock
        self.logger = setup_logger(self.__class__.__name__)

        self._lock = threading.Lock()
        self._snapshot: Optional[GallerySnapshot] = None
        self._last_attempt: Optional[float] = None
        self.fetch_count = 0

    def current(self) -> Optional[GallerySnapshot]:
        with self._lock:
            now = self.clock()
            if self._needs_rebuild(now):
                self._rebuild(now)
            return self._snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
            self._last_attempt = None

    def _needs_rebuild(self, now: float) -> bool:
        if self._last_attempt is None:
            return True
        return now - self._last_attempt > self.refresh_interval

    def _rebuild(self, now: float) -> None:
        self._last_attempt = now
        self.fetch_count += 1
        try:
            records = self.store.list(self.kind, limit=self.fetch_limit, newest_first=True)
        except StoreError as exc:
            self.logger.warning("Gallery fetch failed, keeping previous snapshot: %s", exc)
            return

        identities: List[EnrolledIdentity] = []
        skipped = 0
        for record in records:
            identity = identity_from_record(record, dim=self.embedding_dim)
            if identity is None:
                skipped += 1
                continue
            identities.append(identity)

        if skipped:
            self.logger.debug("Skipped %d gallery records without a usable descriptor", skipped)
        if not identities:
            return

        self._snapshot = GallerySnapshot.build(identities, captured_at=now)
        self.logger.debug("Gallery rebuilt with %d identities", len(identities))
