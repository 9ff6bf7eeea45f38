from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

from cliprelay import config as config_module
from cliprelay.storage import ClipStore, FrameStore, SampleStore

PASSTHROUGH_SCRIPT = "import shutil, sys; shutil.copyfileobj(sys.stdin.buffer, sys.stdout.buffer)"
FAILING_SCRIPT = "import sys; sys.stdin.buffer.read(); sys.stderr.write('boom'); sys.exit(3)"


class FakeStream:
    def __init__(self, sample_rate: int, *, fail_start: bool = False) -> None:
        self.sample_rate = sample_rate
        self.fail_start = fail_start
        self.started = False
        self.stopped = False
        self.closed = False

    def start(self) -> None:
        if self.fail_start:
            raise RuntimeError("device busy")
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def close(self) -> None:
        self.closed = True


class FakeAudioInput:
    """Stands in for PortAudio; tests push blocks through ``feed``."""

    def __init__(self, sample_rate: int = 48000, *, fail_start: bool = False) -> None:
        self.sample_rate = sample_rate
        self.fail_start = fail_start
        self.opened: list[str | None] = []
        self.streams: list[FakeStream] = []
        self.callback = None

    def open(self, device_hint, on_segment):
        self.opened.append(device_hint)
        self.callback = on_segment
        stream = FakeStream(self.sample_rate, fail_start=self.fail_start)
        self.streams.append(stream)
        return stream

    def feed(self, samples) -> None:
        assert self.callback is not None
        self.callback(np.asarray(samples, dtype=np.float32))


def passthrough_command(init=None) -> list[str]:
    return [sys.executable, "-c", PASSTHROUGH_SCRIPT]


def failing_command(init=None) -> list[str]:
    return [sys.executable, "-c", FAILING_SCRIPT]


@pytest.fixture
def stores(tmp_path: Path):
    return ClipStore(tmp_path), SampleStore(tmp_path), FrameStore(tmp_path)


@pytest.fixture
def fake_input() -> FakeAudioInput:
    return FakeAudioInput()


@pytest.fixture
def reset_config(monkeypatch):
    def _reset() -> None:
        monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
        monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
        monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)

    _reset()
    return _reset
