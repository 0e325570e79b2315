import numpy as np
import pytest

from frame_metrics import decode_image, encode_jpeg, is_blurry, scene_delta, sharpen, sharpness_score


def test_scene_delta_bounds():
    black = np.zeros((32, 32, 3), dtype=np.uint8)
    white = np.full((32, 32, 3), 255, dtype=np.uint8)

    assert scene_delta(None, black) == 1.0
    assert scene_delta(black, black) == 0.0
    assert scene_delta(black, white) == pytest.approx(1.0)
    assert scene_delta(black, np.zeros((16, 32, 3), dtype=np.uint8)) == 1.0


def test_scene_delta_samples_with_stride():
    previous = np.zeros((4, 8, 3), dtype=np.uint8)
    current = previous.copy()
    # Pixel 1 is skipped with stride 16, pixel 16 is sampled
    current.reshape(-1, 3)[1] = 255
    current.reshape(-1, 3)[16] = 255

    assert scene_delta(previous, current, stride=16) == pytest.approx(0.5)


def test_sharpness_of_flat_and_textured_frames():
    flat = np.full((64, 64, 3), 90, dtype=np.uint8)
    checker = ((np.indices((64, 64)).sum(axis=0) % 2) * 255).astype(np.uint8)
    checker = np.repeat(checker[:, :, np.newaxis], 3, axis=2)

    assert sharpness_score(flat) == 0.0
    assert is_blurry(sharpness_score(flat))
    assert sharpness_score(checker) > 1000.0
    assert not is_blurry(sharpness_score(checker))


def test_sharpness_of_tiny_frame_is_zero():
    assert sharpness_score(np.zeros((2, 2, 3), dtype=np.uint8)) == 0.0


def test_sharpen_preserves_flat_regions_and_borders(rng):
    flat = np.full((16, 16, 3), 77, dtype=np.uint8)
    noisy = rng.integers(0, 256, size=(16, 16, 3), dtype=np.uint8)

    assert np.array_equal(sharpen(flat), flat)

    out = sharpen(noisy)
    assert out.shape == noisy.shape and out.dtype == np.uint8
    assert np.array_equal(out[0], noisy[0])
    assert np.array_equal(out[:, -1], noisy[:, -1])


def test_sharpen_boosts_a_bright_pixel():
    frame = np.full((5, 5, 3), 100, dtype=np.uint8)
    frame[2, 2] = 120

    out = sharpen(frame)

    assert out[2, 2, 0] == 200
    assert out[1, 2, 0] == 80


def test_jpeg_round_trip_and_bad_data(rng):
    frame = rng.integers(0, 256, size=(20, 30, 3), dtype=np.uint8)

    decoded = decode_image(encode_jpeg(frame, 85))

    assert decoded.shape == frame.shape
    assert decode_image(b"") is None
    assert decode_image(b"definitely not an image") is None
