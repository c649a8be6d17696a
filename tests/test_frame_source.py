import io

import numpy as np
import pytest
from PIL import Image

from exceptions import ImageLoadError
from frame_source import (ImageFileFrameSource, QueueFrameSource, load_image_rgba, to_rgba,
                          validate_frame)


def png_bytes(array):
    buffer = io.BytesIO()
    Image.fromarray(array).save(buffer, format="PNG")
    return buffer.getvalue()


class TestDecoding:

    def test_png_bytes(self, cards):
        decoded = load_image_rgba(png_bytes(cards["stripes"]))
        assert decoded.shape == (700, 500, 4)
        assert np.array_equal(decoded, cards["stripes"])

    def test_jpeg_path_becomes_rgba(self, tmp_path, cards):
        path = tmp_path / "card.jpg"
        Image.fromarray(cards["checker"][:, :, :3]).save(path, quality=95)
        decoded = load_image_rgba(path)
        assert decoded.shape == (700, 500, 4)
        assert (decoded[:, :, 3] == 255).all()

    def test_grayscale_array(self):
        rgba = load_image_rgba(np.full((40, 30), 90, dtype=np.uint8))
        assert rgba.shape == (40, 30, 4)
        assert (rgba[:, :, 0] == 90).all()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ImageLoadError):
            load_image_rgba(tmp_path / "missing.png")

    def test_garbage_bytes(self):
        with pytest.raises(ImageLoadError):
            load_image_rgba(b"definitely not an image")

    def test_empty_buffer(self):
        with pytest.raises(ImageLoadError):
            to_rgba(np.zeros((0, 0, 3), dtype=np.uint8))

    def test_unsupported_channels(self):
        with pytest.raises(ImageLoadError):
            to_rgba(np.zeros((10, 10, 2), dtype=np.uint8))


def test_validate_frame():
    assert validate_frame(np.zeros((64, 64, 4), dtype=np.uint8))
    assert not validate_frame(np.zeros((64, 64, 3), dtype=np.uint8))
    assert not validate_frame(np.zeros((8, 64, 4), dtype=np.uint8))
    assert not validate_frame(None)


class TestQueueFrameSource:

    def test_hands_out_freshest_frame(self):
        source = QueueFrameSource(maxsize=2)
        for value in (10, 20, 30):
            source.put_frame(np.full((32, 32, 4), value, dtype=np.uint8))
        frame = source.capture_frame()
        assert frame[0, 0, 0] == 30
        assert source.capture_frame() is None

    def test_rgb_frames_are_converted(self):
        source = QueueFrameSource()
        source.put_frame(np.zeros((32, 32, 3), dtype=np.uint8))
        assert source.capture_frame().shape == (32, 32, 4)

    def test_closed_source_ignores_frames(self):
        source = QueueFrameSource()
        source.close()
        source.put_frame(np.zeros((32, 32, 4), dtype=np.uint8))
        assert source.closed
        assert source.capture_frame() is None


def test_image_file_source_cycles(tmp_path, cards):
    paths = []
    for kind in ("stripes", "checker"):
        path = tmp_path / f"{kind}.png"
        Image.fromarray(cards[kind]).save(path)
        paths.append(path)

    looping = ImageFileFrameSource(paths)
    first = looping.capture_frame()
    looping.capture_frame()
    assert np.array_equal(looping.capture_frame(), first)

    once = ImageFileFrameSource(paths, loop=False)
    once.capture_frame()
    once.capture_frame()
    assert once.capture_frame() is None
