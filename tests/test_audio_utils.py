from datetime import datetime

import numpy as np
import pytest

from cliprelay.audio_utils import (
    build_clip_filename,
    content_digest,
    downmix_to_mono,
    float_to_pcm16,
    resample_linear,
    sanitize_title,
    volume_level,
)


def test_float_to_pcm16_hits_both_limits_and_clamps():
    pcm = float_to_pcm16(np.array([-1.5, -1.0, -0.5, 0.0, 0.5, 1.0, 2.0], dtype=np.float32))

    assert pcm.dtype == np.dtype("<i2")
    assert pcm.tolist() == [-32768, -32768, -16384, 0, 16383, 32767, 32767]


def test_volume_level_is_scaled_rms_capped_at_one():
    quiet = np.full(256, 0.1, dtype=np.float32)
    loud = np.full(256, 0.9, dtype=np.float32)

    assert volume_level(quiet) == pytest.approx(0.3, rel=1e-6)
    assert volume_level(loud) == 1.0
    assert volume_level(np.zeros(0, dtype=np.float32)) == 0.0


def test_resample_linear_output_length_and_identity():
    samples = np.linspace(-1.0, 1.0, 480, dtype=np.float32)

    down = resample_linear(samples, 48000, 16000)
    assert down.size == 160
    assert down[0] == pytest.approx(samples[0])
    assert down[1] == pytest.approx(samples[3])

    same = resample_linear(samples, 48000, 48000)
    assert np.array_equal(same, samples)

    with pytest.raises(ValueError):
        resample_linear(samples, 0, 16000)


def test_downmix_power_weighted_stereo_prefers_louder_channel():
    left = np.full(960, 0.5, dtype=np.float32)
    right = np.zeros(960, dtype=np.float32)
    mono = downmix_to_mono(np.stack([left, right], axis=1), 48000)

    assert mono.shape == (960,)
    assert np.allclose(mono, 0.5)


def test_downmix_passes_mono_through():
    block = np.arange(8, dtype=np.float32).reshape(8, 1)

    assert downmix_to_mono(block).tolist() == list(range(8))


def test_clip_filename_uses_slug_and_minute_stamp():
    when = datetime(2024, 3, 9, 14, 5, 59)

    assert build_clip_filename("Team Stand-up!", when=when) == "team_stand-up__20240309-1405.mp3"
    assert build_clip_filename("", "opus", when=when) == "clip__20240309-1405.opus"
    assert sanitize_title("   ") == "clip"


def test_content_digest_is_order_sensitive():
    assert content_digest([b"ab", b"c"]) == content_digest([b"abc"])
    assert content_digest([b"c", b"ab"]) != content_digest([b"abc"])
