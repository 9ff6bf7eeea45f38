"""Durable clip records and append-only segment stores.

Layout under the data directory::

    clips/<clip_id>/clip.json
    clips/<clip_id>/raw/<sequence>-<sample_start>-<sample_end>.f32
    clips/<clip_id>/frames/<sequence>-<byte_start>-<byte_end>.bin

Each segment file is written to a temporary name and renamed into place, so a
crash never leaves a truncated segment behind. The per-clip index of segment
files is kept in memory, ordered by sequence, and rebuilt lazily from the
directory listing after a restart.
"""

from __future__ import annotations

import bisect
import json
import logging
import os
import re
import shutil
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import numpy as np

from cliprelay.errors import ClipNotFound, StoreWriteFailed
from cliprelay.models import Clip, CompressedFrame, RawSegment

_LOG = logging.getLogger("cliprelay.storage")

_SEGMENT_NAME = re.compile(r"^(?P<seq>\d+)-(?P<start>\d+)-(?P<end>\d+)\.(?P<ext>[a-z0-9]+)$")
SAMPLE_DTYPE = np.dtype("<f4")


def _write_bytes_atomic(path: Path, payload: bytes) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    with tmp_path.open("wb") as handle:
        handle.write(payload)
    os.replace(tmp_path, path)


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, separators=(",", ":"))
        handle.write("\n")
    os.replace(tmp_path, path)


class ClipStore:
    """Clip metadata records, one JSON document per clip."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root) / "clips"
        self._lock = threading.Lock()

    def clip_dir(self, clip_id: str) -> Path:
        return self.root / clip_id

    def _record_path(self, clip_id: str) -> Path:
        return self.clip_dir(clip_id) / "clip.json"

    def create(
        self,
        title: str,
        *,
        sample_rate: int,
        channel_count: int = 1,
        clip_id: str | None = None,
    ) -> Clip:
        clip = Clip(
            id=clip_id or str(uuid.uuid4()),
            title=title or "clip",
            sample_rate=int(sample_rate),
            channel_count=int(channel_count),
        )
        with self._lock:
            _write_json_atomic(self._record_path(clip.id), clip.to_dict())
        return clip

    def get(self, clip_id: str) -> Clip:
        path = self._record_path(clip_id)
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            raise ClipNotFound(clip_id) from None
        except (OSError, json.JSONDecodeError) as exc:
            raise ClipNotFound(f"{clip_id}: unreadable record ({exc})") from exc
        return Clip.from_dict(payload)

    def exists(self, clip_id: str) -> bool:
        return self._record_path(clip_id).exists()

    def update(self, clip_id: str, **patch: Any) -> Clip:
        with self._lock:
            clip = self.get(clip_id)
            for key, value in patch.items():
                if not hasattr(clip, key):
                    raise AttributeError(f"Clip has no field {key!r}")
                setattr(clip, key, value)
            _write_json_atomic(self._record_path(clip_id), clip.to_dict())
        return clip

    def list_clips(self) -> list[Clip]:
        """Return every stored clip, newest first."""
        clips: list[Clip] = []
        if not self.root.exists():
            return clips
        for entry in self.root.iterdir():
            if not entry.is_dir():
                continue
            try:
                clips.append(self.get(entry.name))
            except ClipNotFound:
                _LOG.warning("skipping clip directory without record: %s", entry)
        clips.sort(key=lambda clip: clip.created_at, reverse=True)
        return clips

    def delete(self, clip_id: str) -> None:
        with self._lock:
            shutil.rmtree(self.clip_dir(clip_id), ignore_errors=True)


@dataclass(frozen=True)
class _IndexEntry:
    sequence: int
    start: int
    end: int
    path: Path


class _SegmentedStore:
    """Append-only, sequence-keyed segments with a range index per clip."""

    subdir = ""
    extension = ""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root) / "clips"
        self._lock = threading.RLock()
        self._index: dict[str, list[_IndexEntry]] = {}

    def _dir(self, clip_id: str) -> Path:
        return self.root / clip_id / self.subdir

    def _load_index(self, clip_id: str) -> list[_IndexEntry]:
        cached = self._index.get(clip_id)
        if cached is not None:
            return cached
        entries: list[_IndexEntry] = []
        directory = self._dir(clip_id)
        if directory.exists():
            for path in directory.iterdir():
                match = _SEGMENT_NAME.match(path.name)
                if not match or match.group("ext") != self.extension:
                    continue
                entries.append(
                    _IndexEntry(
                        sequence=int(match.group("seq")),
                        start=int(match.group("start")),
                        end=int(match.group("end")),
                        path=path,
                    )
                )
        entries.sort(key=lambda entry: entry.sequence)
        self._index[clip_id] = entries
        return entries

    def _append(self, clip_id: str, sequence: int, start: int, end: int, payload: bytes) -> None:
        with self._lock:
            entries = self._load_index(clip_id)
            if entries:
                last = entries[-1]
                if sequence <= last.sequence:
                    raise StoreWriteFailed(
                        f"{clip_id}: sequence {sequence} does not follow {last.sequence}"
                    )
                if start < last.end:
                    raise StoreWriteFailed(
                        f"{clip_id}: segment {sequence} overlaps [{last.start}, {last.end})"
                    )
            name = f"{sequence:08d}-{start}-{end}.{self.extension}"
            path = self._dir(clip_id) / name
            try:
                _write_bytes_atomic(path, payload)
            except OSError as exc:
                raise StoreWriteFailed(f"{clip_id}: failed to write {name}: {exc}") from exc
            entries.append(_IndexEntry(sequence=sequence, start=start, end=end, path=path))

    def entries(self, clip_id: str) -> list[tuple[int, int, int]]:
        """Return ``(sequence, start, end)`` for each stored segment in order."""
        with self._lock:
            return [(e.sequence, e.start, e.end) for e in self._load_index(clip_id)]

    def extent(self, clip_id: str) -> int:
        """End offset of the last stored segment (0 when empty)."""
        with self._lock:
            entries = self._load_index(clip_id)
            return entries[-1].end if entries else 0

    def next_sequence(self, clip_id: str) -> int:
        with self._lock:
            entries = self._load_index(clip_id)
            return entries[-1].sequence + 1 if entries else 0

    def gaps(self, clip_id: str) -> list[tuple[int, int]]:
        """Ranges in ``[0, extent)`` not covered by any stored segment."""
        missing: list[tuple[int, int]] = []
        cursor = 0
        for _, start, end in self.entries(clip_id):
            if start > cursor:
                missing.append((cursor, start))
            cursor = max(cursor, end)
        return missing

    def _overlapping(self, clip_id: str, start: int, end: int) -> list[_IndexEntry]:
        with self._lock:
            entries = list(self._load_index(clip_id))
        # Entries are appended in sequence order with non-decreasing starts.
        starts = [entry.start for entry in entries]
        first = max(0, bisect.bisect_right(starts, start) - 1)
        selected = []
        for entry in entries[first:]:
            if entry.start >= end:
                break
            if entry.end <= start:
                continue
            selected.append(entry)
        return selected

    def clear(self, clip_id: str) -> None:
        with self._lock:
            shutil.rmtree(self._dir(clip_id), ignore_errors=True)
            self._index.pop(clip_id, None)


class SampleStore(_SegmentedStore):
    """Raw float32 PCM segments keyed by (clip_id, sequence)."""

    subdir = "raw"
    extension = "f32"

    def append(self, clip_id: str, sequence: int, sample_start: int, samples: np.ndarray) -> RawSegment:
        data = np.ascontiguousarray(samples, dtype=SAMPLE_DTYPE).reshape(-1)
        sample_end = sample_start + int(data.size)
        self._append(clip_id, sequence, sample_start, sample_end, data.tobytes())
        return RawSegment(clip_id, sequence, sample_start, sample_end, data)

    def _read(self, entry: _IndexEntry, clip_id: str) -> RawSegment:
        samples = np.fromfile(entry.path, dtype=SAMPLE_DTYPE)
        return RawSegment(clip_id, entry.sequence, entry.start, entry.end, samples)

    def iter_segments(self, clip_id: str) -> Iterator[RawSegment]:
        with self._lock:
            entries = list(self._load_index(clip_id))
        for entry in entries:
            yield self._read(entry, clip_id)

    def total_samples(self, clip_id: str) -> int:
        return self.extent(clip_id)

    def read_range(self, clip_id: str, start: int, end: int) -> np.ndarray:
        """Samples in ``[start, end)``; samples lost to failed writes read as silence."""
        total = max(0, end - start)
        out = np.zeros(total, dtype=np.float32)
        if not total:
            return out
        for entry in self._overlapping(clip_id, start, end):
            samples = np.fromfile(entry.path, dtype=SAMPLE_DTYPE)
            slice_start = max(0, start - entry.start)
            slice_end = min(samples.size, end - entry.start)
            if slice_end <= slice_start:
                continue
            dest = max(0, entry.start - start)
            out[dest:dest + (slice_end - slice_start)] = samples[slice_start:slice_end]
        return out

    def assemble(self, clip_id: str) -> np.ndarray:
        return self.read_range(clip_id, 0, self.total_samples(clip_id))


class FrameStore(_SegmentedStore):
    """Compressed byte ranges keyed by (clip_id, sequence)."""

    subdir = "frames"
    extension = "bin"

    def append(self, clip_id: str, sequence: int, byte_start: int, data: bytes) -> CompressedFrame:
        payload = bytes(data)
        byte_end = byte_start + len(payload)
        with self._lock:
            if byte_start != self.extent(clip_id):
                raise StoreWriteFailed(
                    f"{clip_id}: frame {sequence} starts at {byte_start}, expected {self.extent(clip_id)}"
                )
            self._append(clip_id, sequence, byte_start, byte_end, payload)
        return CompressedFrame(clip_id, sequence, byte_start, byte_end, payload)

    def iter_frames(self, clip_id: str) -> Iterator[CompressedFrame]:
        with self._lock:
            entries = list(self._load_index(clip_id))
        for entry in entries:
            yield CompressedFrame(clip_id, entry.sequence, entry.start, entry.end, entry.path.read_bytes())

    def size_bytes(self, clip_id: str) -> int:
        return self.extent(clip_id)

    def read_range(self, clip_id: str, start: int, end: int) -> bytes:
        """Exactly the bytes in ``[start, end)``, clipped to the stored extent."""
        end = min(end, self.extent(clip_id))
        if end <= start:
            return b""
        out = bytearray(end - start)
        for entry in self._overlapping(clip_id, start, end):
            with entry.path.open("rb") as handle:
                slice_start = max(0, start - entry.start)
                slice_end = min(entry.end, end) - entry.start
                handle.seek(slice_start)
                chunk = handle.read(slice_end - slice_start)
            dest = max(0, entry.start - start)
            out[dest:dest + len(chunk)] = chunk
        return bytes(out)


__all__ = ["ClipStore", "FrameStore", "SampleStore"]
