from __future__ import annotations

import time

import numpy as np
import pytest

from cliprelay.errors import ClipNotFound, StoreWriteFailed
from cliprelay.models import STATUS_RECORDING
from cliprelay.storage import ClipStore, FrameStore, SampleStore


def test_clip_records_roundtrip_and_list_newest_first(stores):
    clips, _, _ = stores
    first = clips.create("first", sample_rate=48000)
    time.sleep(0.01)
    second = clips.create("second", sample_rate=44100)

    assert clips.get(first.id).status == STATUS_RECORDING
    assert clips.get(second.id).sample_rate == 44100
    assert [clip.id for clip in clips.list_clips()] == [second.id, first.id]

    updated = clips.update(first.id, duration_seconds=2.0)
    assert updated.duration_seconds == 2.0
    assert clips.get(first.id).duration_seconds == 2.0

    with pytest.raises(AttributeError):
        clips.update(first.id, colour="red")

    clips.delete(first.id)
    with pytest.raises(ClipNotFound):
        clips.get(first.id)


def test_sample_segments_are_contiguous_and_ordered(stores):
    clips, samples, _ = stores
    clip = clips.create("c", sample_rate=48000)
    cursor = 0
    for sequence in range(4):
        block = np.full(100, sequence, dtype=np.float32)
        segment = samples.append(clip.id, sequence, cursor, block)
        assert segment.sample_start == cursor
        assert len(segment) == 100
        cursor = segment.sample_end

    entries = samples.entries(clip.id)
    assert [entry[0] for entry in entries] == [0, 1, 2, 3]
    for previous, current in zip(entries, entries[1:]):
        assert current[1] == previous[2]
    assert samples.total_samples(clip.id) == 400
    assert samples.gaps(clip.id) == []


def test_sample_store_rejects_overlap_and_stale_sequence(stores):
    clips, samples, _ = stores
    clip = clips.create("c", sample_rate=48000)
    samples.append(clip.id, 0, 0, np.zeros(10, dtype=np.float32))

    with pytest.raises(StoreWriteFailed):
        samples.append(clip.id, 0, 10, np.zeros(10, dtype=np.float32))
    with pytest.raises(StoreWriteFailed):
        samples.append(clip.id, 1, 5, np.zeros(10, dtype=np.float32))


def test_read_range_spans_segments_and_fills_gaps_with_silence(stores):
    clips, samples, _ = stores
    clip = clips.create("c", sample_rate=48000)
    samples.append(clip.id, 0, 0, np.arange(0, 10, dtype=np.float32))
    # sequence 1 was lost; sequence 2 continues at the cursor
    samples.append(clip.id, 2, 20, np.arange(20, 30, dtype=np.float32))

    assert samples.gaps(clip.id) == [(10, 20)]
    window = samples.read_range(clip.id, 5, 25)
    expected = np.concatenate([np.arange(5, 10), np.zeros(10), np.arange(20, 25)]).astype(np.float32)
    assert np.array_equal(window, expected)
    assert samples.assemble(clip.id).size == 30


def test_index_is_rebuilt_from_disk(tmp_path):
    clips = ClipStore(tmp_path)
    clip = clips.create("c", sample_rate=48000)
    SampleStore(tmp_path).append(clip.id, 0, 0, np.ones(8, dtype=np.float32))
    FrameStore(tmp_path).append(clip.id, 0, 0, b"abcd")

    reopened_samples = SampleStore(tmp_path)
    reopened_frames = FrameStore(tmp_path)

    assert reopened_samples.entries(clip.id) == [(0, 0, 8)]
    assert reopened_samples.next_sequence(clip.id) == 1
    assert reopened_frames.read_range(clip.id, 0, 4) == b"abcd"


def test_frame_store_byte_ranges(stores):
    clips, _, frames = stores
    clip = clips.create("c", sample_rate=48000)
    payload = bytes(range(256)) * 4
    offset = 0
    for sequence, size in enumerate((100, 300, 1, 623)):
        frame = frames.append(clip.id, sequence, offset, payload[offset:offset + size])
        assert frame.byte_start == offset
        offset = frame.byte_end

    assert frames.size_bytes(clip.id) == len(payload)
    assert frames.read_range(clip.id, 0, len(payload)) == payload
    assert frames.read_range(clip.id, 95, 405) == payload[95:405]
    assert frames.read_range(clip.id, 1000, 5000) == payload[1000:]
    assert frames.read_range(clip.id, 2000, 3000) == b""
    assert b"".join(frame.data for frame in frames.iter_frames(clip.id)) == payload


def test_frame_store_requires_contiguous_bytes(stores):
    clips, _, frames = stores
    clip = clips.create("c", sample_rate=48000)
    frames.append(clip.id, 0, 0, b"abc")

    with pytest.raises(StoreWriteFailed):
        frames.append(clip.id, 1, 4, b"def")


def test_clear_drops_only_that_store(stores):
    clips, samples, frames = stores
    clip = clips.create("c", sample_rate=48000)
    samples.append(clip.id, 0, 0, np.ones(4, dtype=np.float32))
    frames.append(clip.id, 0, 0, b"xyz")

    samples.clear(clip.id)

    assert samples.total_samples(clip.id) == 0
    assert frames.size_bytes(clip.id) == 3
    assert clips.exists(clip.id)
