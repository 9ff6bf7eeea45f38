from __future__ import annotations

import hashlib

import numpy as np
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from conftest import FakeAudioInput, passthrough_command
from cliprelay.audio_utils import float_to_pcm16
from cliprelay.models import STATUS_READY, STATUS_RECORDING
from cliprelay.pipeline import Services
from cliprelay.targets import UploadTarget


@pytest.fixture
def services(tmp_path):
    svc = Services(tmp_path, {}, audio_input=FakeAudioInput(), command_factory=passthrough_command)
    yield svc
    svc.shutdown()


def test_stores_are_opened_lazily_and_shared(services):
    assert services.clips is services.clips
    assert services.capture_controller() is services.capture_controller()
    assert services.encoder.frames is services.frames


def test_delete_cascades_to_every_store(services):
    clip = services.clips.create("doomed", sample_rate=48000)
    services.samples.append(clip.id, 0, 0, np.ones(16, dtype=np.float32))
    services.frames.append(clip.id, 0, 0, b"abc")
    services.checkpoints.record_ack(clip.id, "url-x", 0, 3)

    services.delete_clip(clip.id)

    assert not services.clips.exists(clip.id)
    assert services.samples.total_samples(clip.id) == 0
    assert services.frames.size_bytes(clip.id) == 0
    assert services.checkpoints.list_for_clip(clip.id) == []


def test_recover_requeues_clips_left_recording(services):
    crashed = services.clips.create("crashed", sample_rate=48000)
    services.samples.append(crashed.id, 0, 0, np.full(2048, 0.25, dtype=np.float32))
    empty = services.clips.create("empty", sample_rate=48000)

    queued = services.recover_unfinished_clips()

    assert queued == [crashed.id]
    assert services.encode_worker.wait(crashed.id, timeout=20)
    assert services.clips.get(crashed.id).status == STATUS_READY
    assert services.clips.get(empty.id).status == STATUS_RECORDING


@pytest.mark.asyncio
async def test_capture_encode_upload_end_to_end(services):
    received = bytearray()

    async def head(request):
        return web.Response(headers={"Accept-Ranges": "bytes", "X-Upload-Offset": str(len(received))})

    async def put(request):
        received.extend(await request.read())
        return web.Response()

    app = web.Application()
    app.router.add_route("HEAD", "/clip", head)
    app.router.add_route("PUT", "/clip", put)

    audio_input = services.audio_input()
    capture = services.capture_controller()
    clip_id = capture.start("end to end")
    blocks = [np.full(2048, level, dtype=np.float32) for level in (0.1, -0.2, 0.3)]
    for block in blocks:
        audio_input.feed(block)
    capture.stop()
    assert capture.wait_for_encode(clip_id, timeout=20)

    clip = services.clips.get(clip_id)
    expected = float_to_pcm16(np.concatenate(blocks)).tobytes()
    assert clip.status == STATUS_READY
    assert clip.digest == hashlib.md5(expected).hexdigest()

    async with TestServer(app) as server:
        result = await services.upload_manager().upload(clip_id, UploadTarget.for_url(str(server.make_url("/clip"))))

    assert result.total == len(expected)
    assert bytes(received) == expected
