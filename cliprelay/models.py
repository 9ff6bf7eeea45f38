"""Records shared by the capture, encode and upload stages."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Mapping

import numpy as np

STATUS_RECORDING = "recording"
STATUS_READY = "ready"
STATUS_FAILED = "failed"
CLIP_STATUSES = (STATUS_RECORDING, STATUS_READY, STATUS_FAILED)

STRATEGY_BYTE_RANGE = "byte-range"
STRATEGY_SESSION = "session"
UPLOAD_STRATEGIES = (STRATEGY_BYTE_RANGE, STRATEGY_SESSION)


@dataclass
class Clip:
    id: str
    title: str
    status: str = STATUS_RECORDING
    size_bytes: int = 0
    duration_seconds: float = 0.0
    sample_rate: int = 0
    channel_count: int = 1
    digest: str = ""
    filename: str = ""
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Clip":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in payload.items() if k in known})


@dataclass(frozen=True)
class RawSegment:
    clip_id: str
    sequence: int
    sample_start: int
    sample_end: int
    samples: np.ndarray

    def __len__(self) -> int:
        return self.sample_end - self.sample_start


@dataclass(frozen=True)
class CompressedFrame:
    clip_id: str
    sequence: int
    byte_start: int
    byte_end: int
    data: bytes

    def __len__(self) -> int:
        return self.byte_end - self.byte_start


@dataclass
class UploadCheckpoint:
    clip_id: str
    target_key: str
    strategy: str | None = None
    offset: int = 0
    session_id: str | None = None
    digest: str = ""
    completed: bool = False
    updated_at: float = field(default_factory=time.time)

    @property
    def state(self) -> str:
        if self.completed:
            return "completed"
        if self.strategy is None:
            return "uninitialized"
        return "transferring"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UploadCheckpoint":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in payload.items() if k in known})


__all__ = [
    "CLIP_STATUSES",
    "Clip",
    "CompressedFrame",
    "RawSegment",
    "STATUS_FAILED",
    "STATUS_READY",
    "STATUS_RECORDING",
    "STRATEGY_BYTE_RANGE",
    "STRATEGY_SESSION",
    "UPLOAD_STRATEGIES",
    "UploadCheckpoint",
]
