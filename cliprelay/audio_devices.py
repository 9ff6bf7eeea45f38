"""Open and enumerate audio capture devices through PortAudio."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Protocol

import numpy as np

from cliprelay.audio_utils import downmix_to_mono
from cliprelay.errors import DeviceUnavailable

_LOG = logging.getLogger("cliprelay.audio")

# Probed from the highest down; the first rate the device accepts wins.
CANDIDATE_SAMPLE_RATES = (192000, 96000, 88200, 48000, 44100, 32000, 22050, 16000)

SegmentCallback = Callable[[np.ndarray], None]


@dataclass(frozen=True)
class CaptureDevice:
    identifier: str
    label: str
    index: int
    max_input_channels: int
    default_sample_rate: int


class InputStream(Protocol):
    sample_rate: int

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def close(self) -> None: ...


class AudioInput(Protocol):
    def open(self, device_hint: str | None, on_segment: SegmentCallback) -> InputStream: ...


def _load_sounddevice():  # pragma: no cover - needs PortAudio
    import sounddevice  # type: ignore[import-not-found]

    return sounddevice


def _resolve_device(device_hint: str | None) -> Any:
    if device_hint in (None, ""):
        return None
    hint = str(device_hint).strip()
    if hint.isdigit():
        return int(hint)
    return hint


def select_native_sample_rate(sd: Any, device: Any, channels: int) -> int:
    """Return the highest sample rate the device accepts for capture."""

    for rate in CANDIDATE_SAMPLE_RATES:
        try:
            sd.check_input_settings(device=device, channels=channels, samplerate=rate, dtype="float32")
        except Exception:  # noqa: BLE001 - PortAudio raises assorted errors per backend
            continue
        return rate
    info = sd.query_devices(device, "input")
    return int(info.get("default_samplerate", 48000))


class _SoundDeviceStream:
    def __init__(self, stream: Any, sample_rate: int) -> None:
        self._stream = stream
        self.sample_rate = sample_rate

    def start(self) -> None:
        self._stream.start()

    def stop(self) -> None:
        self._stream.stop()

    def close(self) -> None:
        self._stream.close()


class SoundDeviceInput:
    """Opens a PortAudio input stream that delivers mono float32 blocks."""

    def __init__(self, *, blocksize: int = 2048) -> None:
        self.blocksize = int(blocksize)

    def open(self, device_hint: str | None, on_segment: SegmentCallback) -> InputStream:  # pragma: no cover - needs PortAudio
        try:
            sd = _load_sounddevice()
            device = _resolve_device(device_hint)
            info = sd.query_devices(device, "input")
            channels = max(1, min(2, int(info.get("max_input_channels", 1))))
            sample_rate = select_native_sample_rate(sd, device, channels)
        except Exception as exc:  # noqa: BLE001 - surfaced as DeviceUnavailable
            raise DeviceUnavailable(f"cannot query input device {device_hint!r}: {exc}") from exc

        def callback(indata, frames, time_info, status):
            if status:
                _LOG.debug("input status: %s", status)
            on_segment(downmix_to_mono(indata, sample_rate))

        try:
            stream = sd.InputStream(
                device=device,
                channels=channels,
                samplerate=sample_rate,
                blocksize=self.blocksize,
                dtype="float32",
                callback=callback,
            )
        except Exception as exc:  # noqa: BLE001 - surfaced as DeviceUnavailable
            raise DeviceUnavailable(f"cannot open input device {device_hint!r}: {exc}") from exc
        _LOG.info("opened input %s at %d Hz (%d ch)", device_hint or "default", sample_rate, channels)
        return _SoundDeviceStream(stream, sample_rate)


def _parse_devices(devices: Any) -> List[CaptureDevice]:
    found: List[CaptureDevice] = []
    for index, info in enumerate(devices):
        try:
            channels = int(info.get("max_input_channels", 0))
        except (TypeError, ValueError):
            continue
        if channels <= 0:
            continue
        name = str(info.get("name", f"device {index}")).strip()
        found.append(
            CaptureDevice(
                identifier=str(index),
                label=f"{name} ({channels} ch)",
                index=index,
                max_input_channels=channels,
                default_sample_rate=int(info.get("default_samplerate", 0) or 0),
            )
        )
    return found


def discover_capture_devices() -> List[CaptureDevice]:  # pragma: no cover - needs PortAudio
    """Return PortAudio devices that expose at least one input channel."""

    try:
        sd = _load_sounddevice()
        devices = sd.query_devices()
    except Exception as exc:  # noqa: BLE001 - listing is best effort
        _LOG.warning("device listing failed: %s", exc)
        return []
    return _parse_devices(devices)


__all__ = [
    "AudioInput",
    "CANDIDATE_SAMPLE_RATES",
    "CaptureDevice",
    "InputStream",
    "SoundDeviceInput",
    "discover_capture_devices",
    "select_native_sample_rate",
]
