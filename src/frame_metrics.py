"""
Per-frame pixel metrics used by the capture controller and the segmenter.

All routines operate on plain numpy image buffers with shape (H, W, 3) and
dtype uint8, independent of any capture or display framework:

1. Scene delta: normalized mean absolute difference on a strided pixel sample
2. Sharpness: Laplacian variance on a sparse pixel grid
3. Sharpening: fixed 3x3 convolution applied before storage
4. JPEG encode/decode helpers (OpenCV)
"""

from typing import Optional

import cv2
import numpy as np
from scipy import ndimage


SHARPEN_KERNEL = np.array([
    [0, -1, 0],
    [-1, 5, -1],
    [0, -1, 0],
], dtype=np.float32)


def scene_delta(previous: Optional[np.ndarray], current: np.ndarray, stride: int = 16) -> float:
    """
    Normalized mean absolute pixel difference between two frames.

    Every `stride`-th pixel (row-major order) is sampled, the absolute
    difference is averaged across the RGB channels, then over the samples,
    and divided by 255.

    Args:
        previous: Reference frame, or None when there is none yet
        current: Frame to compare
        stride: Pixel sampling stride

    Returns:
        Value in [0, 1]; 1.0 when there is no reference or the shapes differ
    """
    if previous is None or previous.shape != current.shape:
        return 1.0

    prev_px = previous.reshape(-1, previous.shape[-1])[::stride, :3].astype(np.int16)
    cur_px = current.reshape(-1, current.shape[-1])[::stride, :3].astype(np.int16)
    if prev_px.size == 0:
        return 0.0

    per_pixel = np.abs(prev_px - cur_px).mean(axis=1)
    return float(per_pixel.mean() / 255.0)


def sharpness_score(frame: np.ndarray, step: int = 8) -> float:
    """
    Laplacian variance estimate over a sparse grid.

    The 4-neighbour Laplacian |4c - l - r - t - b| is computed on the
    grayscale (channel mean) image at every `step`-th row and column,
    starting at 1 and staying one pixel away from the border.
    """
    height, width = frame.shape[:2]
    if height < 3 or width < 3:
        return 0.0

    gray = frame[..., :3].astype(np.float64).mean(axis=2)
    ys = np.arange(1, height - 1, step)
    xs = np.arange(1, width - 1, step)
    yy, xx = np.meshgrid(ys, xs, indexing='ij')

    center = gray[yy, xx]
    lap = np.abs(
        4 * center
        - gray[yy, xx - 1] - gray[yy, xx + 1]
        - gray[yy - 1, xx] - gray[yy + 1, xx]
    )
    return float(np.mean(lap ** 2))


def is_blurry(score: float, threshold: float = 15.0) -> bool:
    return score < threshold


def sharpen(frame: np.ndarray) -> np.ndarray:
    """Apply the 3x3 sharpening kernel to the RGB channels; borders are left as-is."""
    if frame.shape[0] < 3 or frame.shape[1] < 3:
        return frame.copy()

    out = frame.copy()
    rgb = frame[..., :3].astype(np.float32)
    filtered = ndimage.convolve(rgb, SHARPEN_KERNEL[:, :, np.newaxis], mode='nearest')
    out[1:-1, 1:-1, :3] = np.clip(filtered[1:-1, 1:-1], 0, 255).astype(frame.dtype)
    return out


def encode_jpeg(frame: np.ndarray, quality: int = 85) -> bytes:
    ok, buf = cv2.imencode('.jpg', frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buf.tobytes()


def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode an encoded image; returns None for unreadable data."""
    if not data:
        return None
    arr = np.frombuffer(data, dtype=np.uint8)
    return cv2.imdecode(arr, cv2.IMREAD_COLOR)
