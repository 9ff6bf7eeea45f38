#!/usr/bin/env python3
"""Streaming compression of captured clips.

An encoding session is an isolated ffmpeg process driven over pipes. The
caller talks to it only through messages on an ordered queue::

    EncoderInit(sample_rate, bitrate_kbps, channel_count)
    EncodeChunk(pcm)            # zero or more, little-endian int16
    EncoderFinish()

and receives events back on a second queue::

    EncodedData(data)           # compressed bytes in output order, one per
                                # pipe read; not aligned to codec frames
    EncodeDone(digest, total_bytes)
    EncoderError(message, stderr)

Each ``bytes`` payload is immutable, so handing it to the queue transfers it
without sharing mutable state with the session threads.
"""

from __future__ import annotations

import argparse
import hashlib
import logging
import queue
import subprocess
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping

import numpy as np

from cliprelay.audio_utils import build_clip_filename, content_digest, float_to_pcm16, resample_linear
from cliprelay.errors import ClipRelayError, EncodeFailed, StoreWriteFailed
from cliprelay.ffmpeg_io import build_pcm_encode_command
from cliprelay.models import STATUS_FAILED, STATUS_READY, Clip
from cliprelay.storage import ClipStore, FrameStore, SampleStore

_LOG = logging.getLogger("cliprelay.encoder")

PCM_SAMPLE_WIDTH = 2
MAX_PENDING_MESSAGES = 64


@dataclass(frozen=True)
class EncoderInit:
    sample_rate: int
    bitrate_kbps: int
    channel_count: int = 1


@dataclass(frozen=True)
class EncodeChunk:
    pcm: bytes


@dataclass(frozen=True)
class EncoderFinish:
    pass


@dataclass(frozen=True)
class EncodedData:
    data: bytes


@dataclass(frozen=True)
class EncodeDone:
    digest: str
    total_bytes: int


@dataclass(frozen=True)
class EncoderError:
    message: str
    stderr: str | None = None


EncoderEvent = EncodedData | EncodeDone | EncoderError
CommandFactory = Callable[[EncoderInit], list[str]]


@dataclass(frozen=True)
class EncoderSettings:
    ffmpeg_path: str = "ffmpeg"
    codec: str = "libmp3lame"
    container_format: str = "mp3"
    extension: str = "mp3"
    bitrate_kbps: int = 64
    target_sample_rate: int = 0
    channel_count: int = 1
    frame_samples: int = 1152
    frames_per_chunk: int = 20
    read_chunk_bytes: int = 4096
    finish_timeout_sec: float = 30.0
    single_shot_fallback: bool = True

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "EncoderSettings":
        section = cfg.get("encoder") or {}
        return cls(
            ffmpeg_path=str(section.get("ffmpeg_path", cls.ffmpeg_path)),
            codec=str(section.get("codec", cls.codec)),
            container_format=str(section.get("container_format", cls.container_format)),
            extension=str(section.get("extension", cls.extension)),
            bitrate_kbps=int(section.get("bitrate_kbps", cls.bitrate_kbps)),
            target_sample_rate=int(section.get("target_sample_rate", cls.target_sample_rate) or 0),
            channel_count=max(1, min(2, int(section.get("channel_count", cls.channel_count)))),
            frame_samples=max(1, int(section.get("frame_samples", cls.frame_samples))),
            frames_per_chunk=max(1, int(section.get("frames_per_chunk", cls.frames_per_chunk))),
            read_chunk_bytes=max(1, int(section.get("read_chunk_bytes", cls.read_chunk_bytes))),
            finish_timeout_sec=float(section.get("finish_timeout_sec", cls.finish_timeout_sec)),
            single_shot_fallback=bool(section.get("single_shot_fallback", cls.single_shot_fallback)),
        )

    def command_factory(self) -> CommandFactory:
        def build(init: EncoderInit) -> list[str]:
            return build_pcm_encode_command(
                self.ffmpeg_path,
                init.sample_rate,
                init.channel_count,
                codec=self.codec,
                bitrate_kbps=init.bitrate_kbps,
                container_format=self.container_format,
            )

        return build


class StreamingEncoderSession:
    """One init/encode*/finish conversation with an isolated encoder process."""

    def __init__(
        self,
        command_factory: CommandFactory,
        *,
        frame_samples: int = 1152,
        read_chunk_bytes: int = 4096,
        finish_timeout: float | None = 30.0,
    ) -> None:
        self._command_factory = command_factory
        self.frame_samples = frame_samples
        self.read_chunk_bytes = read_chunk_bytes
        self.finish_timeout = finish_timeout
        self._inbox: queue.Queue[Any] = queue.Queue(maxsize=MAX_PENDING_MESSAGES)
        self._outbox: queue.Queue[EncoderEvent] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._process: subprocess.Popen | None = None
        self._reader: threading.Thread | None = None
        self._stderr_reader: threading.Thread | None = None
        self._stderr: bytes = b""
        self._reader_error: Exception | None = None
        self._frame_bytes = 0
        self._pending = bytearray()
        self._digest = hashlib.md5()
        self._total_bytes = 0
        self._error: str | None = None

    # -- caller side -------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("StreamingEncoderSession already started")
        self._thread = threading.Thread(target=self._run, name="encoder-session", daemon=True)
        self._thread.start()

    def send(self, message: EncoderInit | EncodeChunk | EncoderFinish) -> None:
        if self._thread is None:
            self.start()
        while True:
            if not self._thread.is_alive():
                raise EncodeFailed(self._error or "encoder session is no longer running")
            try:
                self._inbox.put(message, timeout=0.5)
                return
            except queue.Full:
                continue

    def poll(self) -> EncoderEvent | None:
        try:
            return self._outbox.get_nowait()
        except queue.Empty:
            return None

    def next_event(self, timeout: float | None = None) -> EncoderEvent:
        try:
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            raise EncodeFailed(f"no encoder event within {timeout}s") from None

    def close(self) -> None:
        """Terminate the session; safe to call after completion or failure."""
        if self._thread is not None and self._thread.is_alive():
            try:
                self._inbox.put_nowait(None)
            except queue.Full:
                self._abort()
            self._thread.join(timeout=self.finish_timeout)
        self._abort()

    # -- session side ------------------------------------------------------

    def _run(self) -> None:
        try:
            while True:
                message = self._inbox.get()
                if message is None:
                    return
                if isinstance(message, EncoderInit):
                    self._open(message)
                elif isinstance(message, EncodeChunk):
                    self._encode(message.pcm)
                elif isinstance(message, EncoderFinish):
                    self._outbox.put(self._finish())
                    return
                else:
                    raise EncodeFailed(f"unexpected encoder message {message!r}")
        except (EncodeFailed, OSError, ValueError) as exc:
            self._error = str(exc)
            self._abort()
            stderr = self._stderr.decode("utf-8", errors="ignore") or None
            _LOG.warning("encoder session failed: %s", exc)
            self._outbox.put(EncoderError(str(exc), stderr))

    def _open(self, init: EncoderInit) -> None:
        if self._process is not None:
            raise EncodeFailed("encoder already initialised")
        if init.sample_rate <= 0 or init.bitrate_kbps <= 0 or init.channel_count <= 0:
            raise EncodeFailed(f"invalid encoder parameters: {init}")
        self._frame_bytes = self.frame_samples * init.channel_count * PCM_SAMPLE_WIDTH
        command = self._command_factory(init)
        try:
            self._process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise EncodeFailed(f"cannot start encoder {command[0]!r}: {exc}") from exc
        self._reader = threading.Thread(target=self._read_output, name="encoder-output", daemon=True)
        self._reader.start()
        self._stderr_reader = threading.Thread(target=self._read_stderr, name="encoder-stderr", daemon=True)
        self._stderr_reader.start()
        _LOG.debug("encoder started: %s", init)

    def _write(self, payload: bytes | bytearray) -> None:
        proc = self._process
        if proc is None or proc.stdin is None:
            raise EncodeFailed("encoder stdin unavailable")
        proc.stdin.write(payload)
        proc.stdin.flush()

    def _encode(self, pcm: bytes) -> None:
        if self._process is None:
            raise EncodeFailed("encode received before init")
        self._pending.extend(pcm)
        whole = len(self._pending) - len(self._pending) % self._frame_bytes
        if whole:
            self._write(self._pending[:whole])
            del self._pending[:whole]

    def _finish(self) -> EncodeDone:
        proc = self._process
        if proc is None:
            raise EncodeFailed("finish received before init")
        if self._pending:
            self._write(self._pending)
            self._pending.clear()
        if proc.stdin is not None:
            proc.stdin.close()
        try:
            returncode = proc.wait(timeout=self.finish_timeout)
        except subprocess.TimeoutExpired:
            raise EncodeFailed(f"encoder did not finish within {self.finish_timeout}s") from None
        for thread in (self._reader, self._stderr_reader):
            if thread is not None:
                thread.join(self.finish_timeout)
        if returncode != 0:
            raise EncodeFailed(f"encoder exited with status {returncode}")
        if self._reader_error is not None:
            raise EncodeFailed(f"reading encoder output failed: {self._reader_error}")
        return EncodeDone(digest=self._digest.hexdigest(), total_bytes=self._total_bytes)

    def _read_output(self) -> None:
        proc = self._process
        assert proc is not None and proc.stdout is not None
        try:
            while True:
                chunk = proc.stdout.read1(self.read_chunk_bytes)
                if not chunk:
                    break
                self._digest.update(chunk)
                self._total_bytes += len(chunk)
                self._outbox.put(EncodedData(chunk))
        except (OSError, ValueError) as exc:
            self._reader_error = exc

    def _read_stderr(self) -> None:
        proc = self._process
        assert proc is not None and proc.stderr is not None
        try:
            self._stderr = proc.stderr.read() or b""
        except (OSError, ValueError):
            self._stderr = b""

    def _abort(self) -> None:
        proc = self._process
        if proc is None:
            return
        if proc.poll() is None:
            proc.kill()
            try:
                proc.wait(timeout=5.0)
            except subprocess.TimeoutExpired:
                _LOG.warning("encoder pid %s did not exit after kill", proc.pid)
        if proc.stdin is not None and not proc.stdin.closed:
            try:
                proc.stdin.close()
            except OSError:
                pass


class _FrameSink:
    def __init__(self, frames: FrameStore, clip_id: str) -> None:
        self.frames = frames
        self.clip_id = clip_id
        self.sequence = 0
        self.offset = 0

    def append(self, data: bytes) -> None:
        try:
            self.frames.append(self.clip_id, self.sequence, self.offset, data)
        except StoreWriteFailed as exc:
            raise EncodeFailed(f"cannot persist compressed frame: {exc}") from exc
        self.sequence += 1
        self.offset += len(data)


def _interleave(pcm16: np.ndarray, channels: int) -> np.ndarray:
    if channels <= 1:
        return pcm16
    return np.repeat(pcm16, channels)


class ClipEncoder:
    """Turns a clip's raw segments into compressed frames."""

    def __init__(
        self,
        clips: ClipStore,
        samples: SampleStore,
        frames: FrameStore,
        settings: EncoderSettings | None = None,
        *,
        command_factory: CommandFactory | None = None,
    ) -> None:
        self.clips = clips
        self.samples = samples
        self.frames = frames
        self.settings = settings or EncoderSettings()
        self.command_factory = command_factory or self.settings.command_factory()

    def _target_rate(self, clip: Clip) -> int:
        return self.settings.target_sample_rate or clip.sample_rate

    def _init_message(self, clip: Clip) -> EncoderInit:
        return EncoderInit(
            sample_rate=self._target_rate(clip),
            bitrate_kbps=self.settings.bitrate_kbps,
            channel_count=self.settings.channel_count,
        )

    def _pcm_chunks(self, clip: Clip) -> Iterator[bytes]:
        total = self.samples.total_samples(clip.id)
        if total <= 0:
            raise EncodeFailed(f"{clip.id}: no raw audio to encode")
        step = self.settings.frame_samples * self.settings.frames_per_chunk
        channels = self.settings.channel_count
        target_rate = self._target_rate(clip)
        if target_rate != clip.sample_rate:
            # Resample once over the whole clip so segment edges stay continuous.
            data = resample_linear(self.samples.assemble(clip.id), clip.sample_rate, target_rate)
            windows: Iterator[np.ndarray] = (data[i:i + step] for i in range(0, data.size, step))
        else:
            windows = self._segment_windows(clip.id)
        for window in windows:
            yield _interleave(float_to_pcm16(window), channels).tobytes()

    def _segment_windows(self, clip_id: str) -> Iterator[np.ndarray]:
        """One window per stored segment, in order; lost segments become silence."""
        cursor = 0
        for _, start, end in self.samples.entries(clip_id):
            if start > cursor:
                yield np.zeros(start - cursor, dtype=np.float32)
            yield self.samples.read_range(clip_id, start, end)
            cursor = end

    def _finalize(self, clip: Clip, total_bytes: int, digest: str) -> Clip:
        updated = self.clips.update(
            clip.id,
            status=STATUS_READY,
            size_bytes=int(total_bytes),
            digest=digest,
            filename=build_clip_filename(clip.title, self.settings.extension),
            sample_rate=self._target_rate(clip),
        )
        self.samples.clear(clip.id)
        _LOG.info("clip %s ready: %d bytes, md5 %s", clip.id, total_bytes, digest)
        return updated

    def _consume(self, event: EncoderEvent, sink: _FrameSink) -> EncodeDone | None:
        if isinstance(event, EncodedData):
            sink.append(event.data)
            return None
        if isinstance(event, EncodeDone):
            return event
        detail = f": {event.stderr.strip()}" if event.stderr else ""
        raise EncodeFailed(f"{event.message}{detail}")

    def encode_streaming(self, clip_id: str) -> Clip:
        clip = self.clips.get(clip_id)
        if clip.status == STATUS_READY and self.samples.total_samples(clip_id) == 0:
            return clip
        # Output of an earlier failed attempt is not trusted.
        self.frames.clear(clip_id)
        sink = _FrameSink(self.frames, clip_id)
        session = StreamingEncoderSession(
            self.command_factory,
            frame_samples=self.settings.frame_samples,
            read_chunk_bytes=self.settings.read_chunk_bytes,
            finish_timeout=self.settings.finish_timeout_sec,
        )
        done: EncodeDone | None = None
        try:
            session.send(self._init_message(clip))
            for chunk in self._pcm_chunks(clip):
                session.send(EncodeChunk(chunk))
                event = session.poll()
                while event is not None:
                    self._consume(event, sink)
                    event = session.poll()
            session.send(EncoderFinish())
            while done is None:
                done = self._consume(session.next_event(self.settings.finish_timeout_sec), sink)
        except EncodeFailed:
            session.close()
            self.frames.clear(clip_id)
            raise
        finally:
            session.close()

        if done.total_bytes != sink.offset or done.total_bytes <= 0:
            self.frames.clear(clip_id)
            raise EncodeFailed(
                f"{clip_id}: encoder reported {done.total_bytes} bytes, stored {sink.offset}"
            )
        return self._finalize(clip, done.total_bytes, done.digest)

    def encode_single_shot(self, clip_id: str) -> Clip:
        """Encode the fully assembled raw buffer in one blocking call."""
        clip = self.clips.get(clip_id)
        total = self.samples.total_samples(clip_id)
        if total <= 0:
            raise EncodeFailed(f"{clip_id}: no raw audio to encode")
        init = self._init_message(clip)
        data = self.samples.assemble(clip_id)
        if init.sample_rate != clip.sample_rate:
            data = resample_linear(data, clip.sample_rate, init.sample_rate)
        pcm = _interleave(float_to_pcm16(data), init.channel_count).tobytes()
        command = self.command_factory(init)
        try:
            result = subprocess.run(
                command,
                input=pcm,
                capture_output=True,
                check=False,
                timeout=self.settings.finish_timeout_sec,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise EncodeFailed(f"single-shot encode failed: {exc}") from exc
        if result.returncode != 0 or not result.stdout:
            stderr = (result.stderr or b"").decode("utf-8", errors="ignore").strip()
            raise EncodeFailed(f"single-shot encoder exited with {result.returncode}: {stderr}")
        payload = bytes(result.stdout)
        self.frames.clear(clip_id)
        try:
            self.frames.append(clip_id, 0, 0, payload)
        except StoreWriteFailed as exc:
            raise EncodeFailed(f"cannot persist compressed clip: {exc}") from exc
        return self._finalize(clip, len(payload), content_digest([payload]))

    def encode_clip(self, clip_id: str) -> Clip:
        """Stream-encode a clip, falling back to a single-shot encode on failure."""
        try:
            return self.encode_streaming(clip_id)
        except EncodeFailed as exc:
            if not self.settings.single_shot_fallback:
                raise
            _LOG.warning("streaming encode of %s failed (%s); trying single-shot", clip_id, exc)
        try:
            return self.encode_single_shot(clip_id)
        except EncodeFailed:
            self.clips.update(clip_id, status=STATUS_FAILED)
            raise


class EncodeWorker(threading.Thread):
    """Background thread that encodes clips handed off after capture."""

    def __init__(self, encoder: ClipEncoder) -> None:
        super().__init__(name="encode-worker", daemon=True)
        self.encoder = encoder
        self.q: queue.Queue[str | None] = queue.Queue()
        self._lock = threading.Lock()
        self._done: dict[str, threading.Event] = {}
        self._errors: dict[str, Exception] = {}

    def submit(self, clip_id: str) -> None:
        with self._lock:
            self._done[clip_id] = threading.Event()
            self._errors.pop(clip_id, None)
        if not self.is_alive():
            self.start()
        self.q.put(clip_id)
        _LOG.info("queued encode job for %s", clip_id)

    def wait(self, clip_id: str, timeout: float | None = None) -> bool:
        with self._lock:
            event = self._done.get(clip_id)
        if event is None:
            return True
        return event.wait(timeout)

    def error_for(self, clip_id: str) -> Exception | None:
        with self._lock:
            return self._errors.get(clip_id)

    def stop(self, timeout: float | None = None) -> None:
        if self.is_alive():
            self.q.put(None)
            self.join(timeout)

    def run(self) -> None:
        while True:
            clip_id = self.q.get()
            try:
                if clip_id is None:
                    return
                try:
                    self.encoder.encode_clip(clip_id)
                except ClipRelayError as exc:
                    _LOG.error("encode job for %s failed: %s", clip_id, exc)
                    with self._lock:
                        self._errors[clip_id] = exc
                except Exception as exc:  # noqa: BLE001 - the worker outlives any single job
                    _LOG.exception("encode job for %s crashed", clip_id)
                    with self._lock:
                        self._errors[clip_id] = exc
                finally:
                    with self._lock:
                        event = self._done.get(clip_id)
                    if event is not None:
                        event.set()
            finally:
                self.q.task_done()


def main(argv: list[str] | None = None) -> int:
    from cliprelay.pipeline import Services

    parser = argparse.ArgumentParser(description="Encode captured clips from their raw segments")
    parser.add_argument("clip_ids", nargs="+", help="Clips to (re-)encode")
    args = parser.parse_args(argv)
    services = Services.from_config()
    status = 0
    for clip_id in args.clip_ids:
        try:
            clip = services.encoder.encode_clip(clip_id)
        except ClipRelayError as exc:
            print(f"[encoder] {clip_id}: {exc}", flush=True)
            status = 1
            continue
        print(f"[encoder] {clip.id} -> {clip.filename} ({clip.size_bytes} bytes)", flush=True)
    return status


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
