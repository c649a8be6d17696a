"""
Frame Sources and Image Decoding
Supplies RGBA frames to the scanning engine from a channel, a camera, or still images
"""
import io
import logging
import queue
import threading
from pathlib import Path
from typing import List, Optional, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from exceptions import ImageLoadError

logger = logging.getLogger(__name__)

ImageSource = Union[str, Path, bytes, np.ndarray]

def load_image_rgba(source: ImageSource) -> np.ndarray:
    """
    Decode an image into an RGBA uint8 array of shape (H, W, 4)
    Accepts a file path, encoded bytes, or an already decoded array
    """
    if isinstance(source, np.ndarray):
        return to_rgba(source)

    try:
        if isinstance(source, (bytes, bytearray)):
            pil_image = Image.open(io.BytesIO(source))
        else:
            pil_image = Image.open(str(source))
        pil_image.load()
    except FileNotFoundError as e:
        raise ImageLoadError(f"Image not found: {source}") from e
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageLoadError(f"Could not decode image: {str(e)}") from e

    return np.ascontiguousarray(np.array(pil_image.convert("RGBA"), dtype=np.uint8))

def to_rgba(image: np.ndarray) -> np.ndarray:
    """Coerce a grayscale, RGB or RGBA array into RGBA uint8"""
    if image is None or not isinstance(image, np.ndarray) or image.size == 0:
        raise ImageLoadError("Empty image buffer")

    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
    if image.ndim == 3 and image.shape[2] == 4:
        return np.ascontiguousarray(image)
    if image.ndim == 3 and image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2RGBA)

    raise ImageLoadError(f"Unsupported image shape: {image.shape}")

def validate_frame(frame: Optional[np.ndarray], min_size: int = 32) -> bool:
    """Validate that a frame is an RGBA buffer worth processing"""
    if frame is None or not isinstance(frame, np.ndarray):
        return False

    if frame.ndim != 3 or frame.shape[2] != 4:
        return False

    height, width = frame.shape[:2]
    return height >= min_size and width >= min_size


class QueueFrameSource:
    """
    Frame channel between a producer (camera thread, UI callback) and the scan loop
    The scan loop consumes at its own pace; only the freshest frame is handed out
    """

    def __init__(self, maxsize: int = 2):
        self._frames = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    def put_frame(self, frame: np.ndarray):
        """Push a frame, dropping the oldest queued one when the channel is full"""
        if self._closed.is_set():
            return
        while True:
            try:
                self._frames.put_nowait(frame)
                return
            except queue.Full:
                try:
                    self._frames.get_nowait()
                except queue.Empty:
                    pass

    def capture_frame(self, timeout: float = 0.0) -> Optional[np.ndarray]:
        """Return the most recent frame, or None when nothing arrived"""
        latest = None
        try:
            latest = self._frames.get(timeout=timeout) if timeout > 0 else self._frames.get_nowait()
        except queue.Empty:
            return None

        while True:
            try:
                latest = self._frames.get_nowait()
            except queue.Empty:
                break

        try:
            return to_rgba(latest)
        except ImageLoadError as e:
            logger.warning(f"Dropping unusable frame: {str(e)}")
            return None

    def close(self):
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()


class CameraFrameSource:
    """OpenCV camera capture; the engine never owns the camera lifecycle beyond open/close"""

    def __init__(self, device_index: int = 0, width: int = 1280, height: int = 720):
        self.device_index = device_index
        self.width = width
        self.height = height
        self._capture = None
        self._lock = threading.Lock()

    def open(self) -> bool:
        self._capture = cv2.VideoCapture(self.device_index)
        self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        if not self._capture.isOpened():
            logger.error(f"Could not open camera {self.device_index}")
            return False

        logger.info(f"Camera {self.device_index} opened")
        return True

    def capture_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._capture is None or not self._capture.isOpened():
                return None

            # Drop buffered frames so the reading is current
            self._capture.grab()
            ok, frame = self._capture.read()

        if not ok or frame is None:
            logger.debug("Camera returned no frame")
            return None

        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)

    def close(self):
        with self._lock:
            if self._capture is not None:
                self._capture.release()
                self._capture = None


class ImageFileFrameSource:
    """Serves still images as frames, cycling through them in order"""

    def __init__(self, paths: List[Union[str, Path]], loop: bool = True):
        self.paths = [Path(p) for p in paths]
        self.loop = loop
        self._position = 0

    def capture_frame(self) -> Optional[np.ndarray]:
        if not self.paths:
            return None
        if self._position >= len(self.paths):
            if not self.loop:
                return None
            self._position = 0

        path = self.paths[self._position]
        self._position += 1

        try:
            return load_image_rgba(path)
        except ImageLoadError as e:
            logger.warning(f"Skipping frame {path}: {str(e)}")
            return None
