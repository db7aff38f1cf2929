from __future__ import annotations

import logging
import os
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from taskgate.errors import LockAcquisitionError

logger = logging.getLogger(__name__)


class LockManager:
    """Advisory marker-file lock with forced takeover of abandoned markers.

    The marker is created with ``O_CREAT | O_EXCL`` and holds the owner's token
    (``<pid>:<random hex>``). A marker older than ``stale_seconds`` is presumed
    to belong to a crashed holder. Takeover renames it aside first and only
    discards it when the renamed file is still the marker that was judged
    stale; release only removes a marker that still carries our token.
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        stale_seconds: float = 5.0,
        retry_interval: float = 0.1,
        max_attempts: int = 50,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.lock_path = lock_path
        self.stale_seconds = stale_seconds
        self.retry_interval = retry_interval
        self.max_attempts = max(1, max_attempts)
        self.token = f"{os.getpid()}:{uuid.uuid4().hex}"
        self._clock = clock
        self._sleep = sleep

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, self.token.encode("utf-8"))
        finally:
            os.close(fd)
        return True

    @staticmethod
    def _read_marker(path: Path) -> tuple[str, float] | None:
        try:
            mtime = path.stat().st_mtime
            return path.read_text(encoding="utf-8"), mtime
        except FileNotFoundError:
            return None

    def marker_age(self) -> float | None:
        marker = self._read_marker(self.lock_path)
        if marker is None:
            return None
        return self._clock() - marker[1]

    def owns_marker(self) -> bool:
        marker = self._read_marker(self.lock_path)
        return marker is not None and marker[0] == self.token

    def _remove_if_stale(self) -> bool:
        observed = self._read_marker(self.lock_path)
        if observed is None:
            return True
        content, mtime = observed
        age = self._clock() - mtime
        if age <= self.stale_seconds:
            return False

        aside = self.lock_path.with_name(f"{self.lock_path.name}.stale.{uuid.uuid4().hex}")
        try:
            os.rename(self.lock_path, aside)
        except FileNotFoundError:
            return True
        moved = self._read_marker(aside)
        if moved is None or moved[0] != content:
            # Another process replaced the stale marker before our rename; hand it back.
            try:
                os.link(aside, self.lock_path)
            except FileExistsError:
                logger.warning(
                    "Could not restore state lock %s after a racing takeover", self.lock_path
                )
            aside.unlink(missing_ok=True)
            return False

        logger.warning(
            "Taking over stale state lock %s (age %.1fs > %.1fs)",
            self.lock_path,
            age,
            self.stale_seconds,
        )
        aside.unlink(missing_ok=True)
        return True

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(1, self.max_attempts + 1):
            if self._try_create():
                logger.debug("Acquired state lock %s on attempt %d", self.lock_path, attempt)
                return
            if self._remove_if_stale():
                continue
            if attempt < self.max_attempts:
                self._sleep(self.retry_interval)
        raise LockAcquisitionError(
            f"Could not acquire state lock {self.lock_path} after {self.max_attempts} attempts."
        )

    def release(self) -> None:
        if not self.owns_marker():
            logger.warning(
                "State lock %s was reclaimed by another holder; leaving it", self.lock_path
            )
            return
        self.lock_path.unlink(missing_ok=True)

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()
