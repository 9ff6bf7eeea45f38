"""Durable upload progress per (clip, target) pair."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import shutil
import threading
import time
from pathlib import Path
from typing import Iterator

from cliprelay.errors import UploadInProgress
from cliprelay.models import UPLOAD_STRATEGIES, UploadCheckpoint

_LOG = logging.getLogger("cliprelay.checkpoints")


def _write_payload_atomic(path: Path, payload: dict[str, object]) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, separators=(",", ":"))
        handle.write("\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class CheckpointStore:
    """One JSON record per (clip, target) under ``uploads/<clip_id>/``."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root) / "uploads"
        self._lock = threading.Lock()
        self._leases: set[tuple[str, str]] = set()

    def _path(self, clip_id: str, target_key: str) -> Path:
        return self.root / clip_id / f"{target_key}.json"

    def load(self, clip_id: str, target_key: str) -> UploadCheckpoint:
        """Return the stored checkpoint, or a fresh one if none exists yet."""
        path = self._path(clip_id, target_key)
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            return UploadCheckpoint(clip_id=clip_id, target_key=target_key)
        except (OSError, json.JSONDecodeError) as exc:
            _LOG.warning("discarding unreadable checkpoint %s: %s", path, exc)
            return UploadCheckpoint(clip_id=clip_id, target_key=target_key)
        if not isinstance(payload, dict):
            return UploadCheckpoint(clip_id=clip_id, target_key=target_key)
        checkpoint = UploadCheckpoint.from_dict(payload)
        if checkpoint.strategy not in UPLOAD_STRATEGIES:
            checkpoint.strategy = None
        checkpoint.offset = max(0, int(checkpoint.offset or 0))
        return checkpoint

    def save(self, checkpoint: UploadCheckpoint) -> UploadCheckpoint:
        checkpoint.updated_at = time.time()
        with self._lock:
            _write_payload_atomic(self._path(checkpoint.clip_id, checkpoint.target_key), checkpoint.to_dict())
        return checkpoint

    def record_ack(self, clip_id: str, target_key: str, start: int, end: int) -> UploadCheckpoint:
        """Advance the offset after the target acknowledged ``[start, end)``.

        A repeated acknowledgement is harmless: the offset only moves forward,
        to at most ``end``. An acknowledgement that begins beyond the current
        offset would leave a hole and is refused.
        """
        if end < start:
            raise ValueError(f"invalid range [{start}, {end})")
        checkpoint = self.load(clip_id, target_key)
        if start > checkpoint.offset:
            raise ValueError(
                f"ack for [{start}, {end}) would skip bytes after offset {checkpoint.offset}"
            )
        if end > checkpoint.offset:
            checkpoint.offset = end
            self.save(checkpoint)
        return checkpoint

    def mark_completed(self, clip_id: str, target_key: str) -> UploadCheckpoint:
        checkpoint = self.load(clip_id, target_key)
        checkpoint.completed = True
        return self.save(checkpoint)

    def list_for_clip(self, clip_id: str) -> list[UploadCheckpoint]:
        directory = self.root / clip_id
        if not directory.exists():
            return []
        return [self.load(clip_id, path.stem) for path in sorted(directory.glob("*.json"))]

    def delete(self, clip_id: str, target_key: str) -> None:
        with self._lock:
            self._path(clip_id, target_key).unlink(missing_ok=True)

    def delete_for_clip(self, clip_id: str) -> None:
        with self._lock:
            shutil.rmtree(self.root / clip_id, ignore_errors=True)

    @contextlib.contextmanager
    def lease(self, clip_id: str, target_key: str) -> Iterator[None]:
        """Hold exclusive transfer rights for one (clip, target) pair."""
        key = (clip_id, target_key)
        with self._lock:
            if key in self._leases:
                raise UploadInProgress(f"upload of {clip_id} to {target_key} already running")
            self._leases.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._leases.discard(key)


__all__ = ["CheckpointStore"]
