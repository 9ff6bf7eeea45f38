#!/usr/bin/env python3
"""Live capture into the segmented sample store."""

from __future__ import annotations

import argparse
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable

import numpy as np

from cliprelay.audio_devices import AudioInput, InputStream
from cliprelay.audio_utils import volume_level
from cliprelay.encoder import EncodeWorker
from cliprelay.errors import ClipNotFound, DeviceUnavailable, StoreWriteFailed
from cliprelay.storage import ClipStore, SampleStore

_LOG = logging.getLogger("cliprelay.capture")


@dataclass(frozen=True)
class _PendingSegment:
    clip_id: str
    sequence: int
    sample_start: int
    samples: np.ndarray
    elapsed: float


# ---------- Async segment writer ----------
class _SegmentWriter(threading.Thread):
    """
    Dedicated store-writer thread.
    Protocol on self.q:
      _PendingSegment(...)  append to the sample store, then refresh duration
      None                  drain and exit
    A failed write is logged and skipped; capture keeps running.
    """

    def __init__(self, clips: ClipStore, samples: SampleStore, maxsize: int) -> None:
        super().__init__(name="segment-writer", daemon=True)
        self.clips = clips
        self.samples = samples
        self.q: queue.Queue[_PendingSegment | None] = queue.Queue(maxsize=max(1, maxsize))
        self.dropped = 0
        self.failed = 0
        self._persisted_second = -1

    def submit(self, item: _PendingSegment) -> bool:
        try:
            self.q.put_nowait(item)
            return True
        except queue.Full:
            self.dropped += 1
            _LOG.warning(
                "%s",
                StoreWriteFailed(f"{item.clip_id}: writer queue full, dropped segment {item.sequence}"),
            )
            return False

    def close(self, timeout: float | None = None) -> None:
        if self.is_alive():
            self.q.put(None)
            self.join(timeout)

    def _write(self, item: _PendingSegment) -> None:
        try:
            self.samples.append(item.clip_id, item.sequence, item.sample_start, item.samples)
        except StoreWriteFailed as exc:
            self.failed += 1
            _LOG.warning("segment write skipped: %s", exc)
        second = int(item.elapsed)
        if second != self._persisted_second:
            self._persisted_second = second
            try:
                self.clips.update(item.clip_id, duration_seconds=float(second))
            except (ClipNotFound, OSError) as exc:
                _LOG.warning("duration update skipped: %s", exc)

    def run(self) -> None:
        while True:
            item = self.q.get()
            try:
                if item is None:
                    return
                self._write(item)
            finally:
                self.q.task_done()


class CaptureController:
    """Owns one live capture session at a time."""

    def __init__(
        self,
        clips: ClipStore,
        samples: SampleStore,
        audio_input: AudioInput,
        *,
        encode_worker: EncodeWorker | None = None,
        writer_queue_segments: int = 512,
        volume_scale: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.clips = clips
        self.samples = samples
        self.audio_input = audio_input
        self.encode_worker = encode_worker
        self.writer_queue_segments = writer_queue_segments
        self.volume_scale = volume_scale
        self._clock = clock
        self._lock = threading.Lock()
        self._active = False
        self._stream: InputStream | None = None
        self._writer: _SegmentWriter | None = None
        self._clip_id: str | None = None
        self._sequence = 0
        self._cursor = 0
        self._started_at = 0.0
        self.volume = 0.0
        self.duration_seconds = 0.0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def clip_id(self) -> str | None:
        return self._clip_id

    @property
    def sample_cursor(self) -> int:
        return self._cursor

    def start(self, title: str = "clip", device_hint: str | None = None) -> str:
        with self._lock:
            if self._active and self._clip_id is not None:
                return self._clip_id
            stream = self.audio_input.open(device_hint, self.on_raw_segment)
            try:
                clip = self.clips.create(title, sample_rate=stream.sample_rate, channel_count=1)
            except Exception:
                stream.close()
                raise
            self._clip_id = clip.id
            self._sequence = 0
            self._cursor = 0
            self.volume = 0.0
            self.duration_seconds = 0.0
            self._writer = _SegmentWriter(self.clips, self.samples, self.writer_queue_segments)
            self._writer.start()
            self._stream = stream
            self._started_at = self._clock()
            self._active = True
            try:
                stream.start()
            except Exception as exc:  # noqa: BLE001 - any backend failure means no device
                self._active = False
                self._stream = None
                self._clip_id = None
                stream.close()
                self._writer.close()
                self._writer = None
                self.clips.delete(clip.id)
                raise DeviceUnavailable(f"cannot start capture: {exc}") from exc
        _LOG.info("capture started for clip %s at %d Hz", clip.id, stream.sample_rate)
        return clip.id

    def on_raw_segment(self, samples: np.ndarray) -> None:
        """Audio callback: never blocks on the store."""
        writer = self._writer
        clip_id = self._clip_id
        if not self._active or writer is None or clip_id is None:
            return
        block = np.array(samples, dtype=np.float32).reshape(-1)
        if block.size == 0:
            return
        self.volume = volume_level(block, self.volume_scale)
        sample_start = self._cursor
        sequence = self._sequence
        self._cursor += int(block.size)
        self._sequence += 1
        self.duration_seconds = max(0.0, self._clock() - self._started_at)
        writer.submit(_PendingSegment(clip_id, sequence, sample_start, block, self.duration_seconds))

    def stop(self) -> str | None:
        with self._lock:
            if not self._active:
                return None
            self._active = False
            stream, writer, clip_id = self._stream, self._writer, self._clip_id
            self._stream = None
            self._writer = None
        assert clip_id is not None
        try:
            if stream is not None:
                try:
                    stream.stop()
                finally:
                    stream.close()
        finally:
            if writer is not None:
                writer.close()
            self.volume = 0.0
            duration = max(0.0, self._clock() - self._started_at)
            self.duration_seconds = duration
            try:
                self.clips.update(clip_id, duration_seconds=round(duration, 3))
            except (ClipNotFound, OSError) as exc:
                _LOG.warning("final duration update for %s failed: %s", clip_id, exc)
            if self.encode_worker is not None:
                self.encode_worker.submit(clip_id)
        _LOG.info(
            "capture stopped for clip %s: %d samples in %d segments",
            clip_id,
            self._cursor,
            self._sequence,
        )
        return clip_id

    def wait_for_encode(self, clip_id: str, timeout: float | None = None) -> bool:
        if self.encode_worker is None:
            return True
        return self.encode_worker.wait(clip_id, timeout)


def main(argv: list[str] | None = None) -> int:
    from cliprelay.pipeline import Services

    parser = argparse.ArgumentParser(description="Record a clip from the audio input")
    parser.add_argument("--title", default="clip")
    parser.add_argument("--seconds", type=float, default=5.0)
    parser.add_argument("--device", default=None, help="Input device index or name")
    args = parser.parse_args(argv)

    services = Services.from_config()
    capture = services.capture_controller()
    device = args.device or (services.cfg.get("audio") or {}).get("device") or None
    try:
        clip_id = capture.start(args.title, device)
    except DeviceUnavailable as exc:
        if device is None:
            print(f"[capture] {exc}", flush=True)
            return 1
        print(f"[capture] {exc}; retrying with the default device", flush=True)
        clip_id = capture.start(args.title, None)
    try:
        time.sleep(max(0.0, args.seconds))
    except KeyboardInterrupt:
        pass
    finally:
        capture.stop()
    capture.wait_for_encode(clip_id)
    error = services.encode_worker.error_for(clip_id)
    if error is not None:
        print(f"[capture] {clip_id}: encode failed: {error}", flush=True)
        return 1
    clip = services.clips.get(clip_id)
    print(f"[capture] {clip.id} {clip.status} {clip.filename} ({clip.size_bytes} bytes)", flush=True)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
