"""Process-wide wiring of stores, workers and the upload manager."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

from cliprelay.audio_devices import AudioInput, SoundDeviceInput
from cliprelay.capture import CaptureController
from cliprelay.checkpoints import CheckpointStore
from cliprelay.config import data_dir, get_cfg
from cliprelay.encoder import ClipEncoder, CommandFactory, EncodeWorker, EncoderSettings
from cliprelay.models import STATUS_RECORDING
from cliprelay.retry import RetryPolicy
from cliprelay.storage import ClipStore, FrameStore, SampleStore
from cliprelay.uploader import DEFAULT_MAX_FILE_BYTES, SessionFactory, UploadManager

_LOG = logging.getLogger("cliprelay.pipeline")


class Services:
    """Lazily opened stores and workers that live for the whole process."""

    def __init__(
        self,
        root: str | Path,
        cfg: Mapping[str, Any] | None = None,
        *,
        audio_input: AudioInput | None = None,
        command_factory: CommandFactory | None = None,
    ) -> None:
        self.root = Path(root)
        self.cfg: Mapping[str, Any] = cfg if cfg is not None else {}
        self._audio_input = audio_input
        self._command_factory = command_factory
        self._clips: ClipStore | None = None
        self._samples: SampleStore | None = None
        self._frames: FrameStore | None = None
        self._checkpoints: CheckpointStore | None = None
        self._encoder: ClipEncoder | None = None
        self._encode_worker: EncodeWorker | None = None
        self._capture: CaptureController | None = None

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any] | None = None, **kwargs: Any) -> "Services":
        cfg = cfg if cfg is not None else get_cfg()
        return cls(data_dir(cfg), cfg, **kwargs)

    def _section(self, name: str) -> Mapping[str, Any]:
        return self.cfg.get(name) or {}

    @property
    def clips(self) -> ClipStore:
        if self._clips is None:
            self._clips = ClipStore(self.root)
        return self._clips

    @property
    def samples(self) -> SampleStore:
        if self._samples is None:
            self._samples = SampleStore(self.root)
        return self._samples

    @property
    def frames(self) -> FrameStore:
        if self._frames is None:
            self._frames = FrameStore(self.root)
        return self._frames

    @property
    def checkpoints(self) -> CheckpointStore:
        if self._checkpoints is None:
            self._checkpoints = CheckpointStore(self.root)
        return self._checkpoints

    @property
    def encoder(self) -> ClipEncoder:
        if self._encoder is None:
            self._encoder = ClipEncoder(
                self.clips,
                self.samples,
                self.frames,
                EncoderSettings.from_config(self.cfg),
                command_factory=self._command_factory,
            )
        return self._encoder

    @property
    def encode_worker(self) -> EncodeWorker:
        if self._encode_worker is None:
            self._encode_worker = EncodeWorker(self.encoder)
        return self._encode_worker

    def audio_input(self) -> AudioInput:
        if self._audio_input is None:
            audio = self._section("audio")
            self._audio_input = SoundDeviceInput(blocksize=int(audio.get("blocksize", 2048)))
        return self._audio_input

    def capture_controller(self) -> CaptureController:
        if self._capture is None:
            capture = self._section("capture")
            self._capture = CaptureController(
                self.clips,
                self.samples,
                self.audio_input(),
                encode_worker=self.encode_worker,
                writer_queue_segments=int(capture.get("writer_queue_segments", 512)),
                volume_scale=float(capture.get("volume_scale", 3.0)),
            )
        return self._capture

    def upload_manager(self, *, session_factory: SessionFactory | None = None, **kwargs: Any) -> UploadManager:
        upload = self._section("upload")
        return UploadManager(
            self.clips,
            self.frames,
            self.checkpoints,
            RetryPolicy.from_config(self.cfg),
            max_file_bytes=int(upload.get("max_file_bytes", DEFAULT_MAX_FILE_BYTES)),
            session_factory=session_factory,
            **kwargs,
        )

    def delete_clip(self, clip_id: str) -> None:
        """Remove a clip together with its segments, frames and checkpoints."""
        self.clips.get(clip_id)
        capture = self._capture
        if capture is not None and capture.active and capture.clip_id == clip_id:
            capture.stop()
        self.samples.clear(clip_id)
        self.frames.clear(clip_id)
        self.checkpoints.delete_for_clip(clip_id)
        self.clips.delete(clip_id)
        _LOG.info("deleted clip %s", clip_id)

    def recover_unfinished_clips(self) -> list[str]:
        """Queue encodes for clips left in ``recording`` by a crash."""
        active = self._capture.clip_id if self._capture is not None and self._capture.active else None
        queued: list[str] = []
        for clip in self.clips.list_clips():
            if clip.status != STATUS_RECORDING or clip.id == active:
                continue
            if not self.samples.entries(clip.id):
                continue
            _LOG.info("recovering unfinished clip %s", clip.id)
            self.encode_worker.submit(clip.id)
            queued.append(clip.id)
        return queued

    def shutdown(self, timeout: float | None = 5.0) -> None:
        if self._capture is not None and self._capture.active:
            self._capture.stop()
        if self._encode_worker is not None:
            self._encode_worker.stop(timeout)


__all__ = ["Services"]
