"""
Card Art Feature Extraction Module
Deterministic colour/intensity/spatial/edge/texture/frequency embedding for card art

The same functions compute embeddings for live frames and for catalog reference
images, so a card scanned by the camera and the catalog row it should match are
always produced by one code path.
"""
import math
import logging
from typing import List, Optional

import cv2
import numpy as np

from config import settings
from card_detector import CardDetector, extract_region
from cnn_embedder import MobileNetEmbedder
from models import QualityReport

logger = logging.getLogger(__name__)

EMBEDDING_DIMENSION = 256
HISTOGRAM_BINS = 8
INTENSITY_BINS = 14
GRID_SIZE = 4
EDGE_SAMPLES = 32
EDGE_DISTANCE = 10
TEXTURE_SAMPLES = 32
FREQUENCY_SAMPLES = 48

def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """Unit-length copy of the vector; the zero vector comes back unchanged"""
    vector = np.asarray(vector, dtype=np.float64)
    norm = float(np.sqrt(np.sum(vector * vector)))
    if norm == 0.0:
        return vector.copy()
    return vector / norm

def _intensity(pixels: np.ndarray) -> np.ndarray:
    rgb = pixels[:, :, :3].astype(np.float64)
    return 0.299 * rgb[:, :, 0] + 0.587 * rgb[:, :, 1] + 0.114 * rgb[:, :, 2]

def _color_histogram(pixels: np.ndarray) -> List[float]:
    """8 bins per channel, interleaved R,G,B per bin"""
    total = pixels.shape[0] * pixels.shape[1] or 1
    counts = [np.bincount((pixels[:, :, c] // 32).ravel(), minlength=HISTOGRAM_BINS)
              for c in range(3)]

    features = []
    for i in range(HISTOGRAM_BINS):
        features.extend(float(counts[c][i]) / total for c in range(3))
    return features

def _intensity_statistics(intensity: np.ndarray) -> List[float]:
    """Mean, standard deviation and a 14-bin histogram of luminance"""
    if intensity.size == 0:
        return [0.0, 0.0] + [0.0] * INTENSITY_BINS

    total = intensity.size
    mean = float(intensity.mean())
    std = float(np.sqrt(np.mean((intensity - mean) ** 2)))

    bins = np.minimum(INTENSITY_BINS - 1,
                      np.floor(intensity / (256.0 / INTENSITY_BINS)).astype(np.int64))
    counts = np.bincount(bins.ravel(), minlength=INTENSITY_BINS)

    return [mean / 255.0, std / 128.0] + [float(c) / total for c in counts]

def _spatial_grid(pixels: np.ndarray, intensity: np.ndarray) -> List[float]:
    """Mean R, G, B and luminance for each cell of a 4x4 grid, rows first"""
    height, width = intensity.shape
    cell_w = width // GRID_SIZE
    cell_h = height // GRID_SIZE

    features = []
    for gy in range(GRID_SIZE):
        for gx in range(GRID_SIZE):
            y0, x0 = gy * cell_h, gx * cell_w
            y1, x1 = min(y0 + cell_h, height), min(x0 + cell_w, width)
            cell = pixels[y0:y1, x0:x1, :3]
            if cell.size == 0:
                features.extend([0.0, 0.0, 0.0, 0.0])
                continue

            means = cell.reshape(-1, 3).astype(np.float64).mean(axis=0)
            features.extend([means[0] / 255.0, means[1] / 255.0, means[2] / 255.0,
                             float(intensity[y0:y1, x0:x1].mean()) / 255.0])
    return features

def _edge_samples(intensity: np.ndarray) -> List[float]:
    """Absolute luminance difference between points 10px apart on evenly spaced scanlines"""
    height, width = intensity.shape
    if height == 0 or width == 0:
        return [0.0] * EDGE_SAMPLES

    features = []
    for i in range(EDGE_SAMPLES):
        y = int(math.floor(i / EDGE_SAMPLES * (height - 1)))
        x1 = int(math.floor((i % 8) / 8 * max(1, width - EDGE_DISTANCE)))
        x2 = min(x1 + EDGE_DISTANCE, width - 1)
        if x1 < width:
            features.append(abs(float(intensity[y, x1]) - float(intensity[y, x2])) / 255.0)
        else:
            features.append(0.0)
    return features

def _texture_samples(intensity: np.ndarray) -> List[float]:
    """Local luminance standard deviation over an 8x4 grid of windows"""
    height, width = intensity.shape
    window = max(5, width // 20)
    features = []
    for i in range(TEXTURE_SAMPLES):
        start_x = int(math.floor((i % 8) / 8 * max(1, width - window)))
        start_y = int(math.floor((i // 8) / 4 * max(1, height - window)))
        patch = intensity[start_y:start_y + window, start_x:start_x + window]
        if patch.size == 0:
            features.append(0.0)
            continue
        mean = float(patch.mean())
        variance = float(np.mean((patch - mean) ** 2))
        features.append(math.sqrt(variance) / 128.0)
    return features

def _frequency_samples(pixels: np.ndarray) -> List[float]:
    """
    Short-range finite differences on the red channel of consecutive pixels
    Sampling runs over the flat RGBA buffer, so a sample near the right edge
    continues into the next row
    """
    height, width = pixels.shape[:2]
    flat = pixels.reshape(-1).astype(np.int64)
    features = []
    for i in range(FREQUENCY_SAMPLES):
        y = int(math.floor(i / FREQUENCY_SAMPLES * (height - 1)))
        x = int(math.floor((i % 12) / 12 * max(1, width - 4)))
        idx = (y * width + x) * 4
        if idx + 12 < flat.size:
            d1 = flat[idx + 4] - flat[idx]
            d2 = flat[idx + 8] - flat[idx + 4]
            d3 = flat[idx + 12] - flat[idx + 8]
            features.append(float(d1 + d2 + d3 + 384) / 768.0)
        else:
            features.append(0.5)
    return features

def extract_features(image: np.ndarray, dimension: int = EMBEDDING_DIMENSION) -> np.ndarray:
    """
    Compute the L2-normalized embedding of an RGBA art crop
    The input must already be cropped to the art region and resized; nothing here
    depends on configuration, so identical pixels give identical vectors
    """
    pixels = np.ascontiguousarray(image)
    if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
        raise ValueError(f"Expected an RGB or RGBA image, got shape {pixels.shape}")
    if pixels.shape[2] == 3:
        pixels = cv2.cvtColor(pixels, cv2.COLOR_RGB2RGBA)
    if pixels.dtype != np.uint8:
        pixels = np.clip(pixels, 0, 255).astype(np.uint8)

    intensity = _intensity(pixels)

    features = []
    features.extend(_color_histogram(pixels))
    features.extend(_intensity_statistics(intensity))
    features.extend(_spatial_grid(pixels, intensity))
    features.extend(_edge_samples(intensity))
    features.extend(_texture_samples(intensity))
    features.extend(_frequency_samples(pixels))

    vector = np.zeros(dimension, dtype=np.float64)
    count = min(len(features), dimension)
    vector[:count] = features[:count]

    return l2_normalize(vector).astype(np.float32)

def assess_quality(image: np.ndarray, min_brightness: float = None, max_brightness: float = None,
                   min_sharpness: float = None) -> QualityReport:
    """Brightness and Laplacian-variance sharpness check; advisory only"""
    min_brightness = settings.MIN_BRIGHTNESS if min_brightness is None else min_brightness
    max_brightness = settings.MAX_BRIGHTNESS if max_brightness is None else max_brightness
    min_sharpness = settings.MIN_SHARPNESS if min_sharpness is None else min_sharpness

    channels = image.shape[2] if image.ndim == 3 else 1
    if channels == 4:
        gray = cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY)
    elif channels == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    else:
        gray = image

    brightness = float(gray.mean()) / 255.0
    sharpness = float(cv2.Laplacian(gray, cv2.CV_64F).var())

    issues = []
    if brightness < min_brightness:
        issues.append("too_dark")
    elif brightness > max_brightness:
        issues.append("too_bright")
    if sharpness < min_sharpness:
        issues.append("too_blurry")

    return QualityReport(brightness=brightness, sharpness=sharpness, issues=issues)


class FeatureExtractor:
    """
    Turns canonical card images into embeddings
    The handcrafted backend is the default; "mobilenet" swaps in the pretrained
    CNN for the art-crop-to-vector step only
    """

    def __init__(self, input_size: int = None, art_region: tuple = None, detector: Optional[CardDetector] = None,
                 backend: str = None, cnn_embedder: Optional[MobileNetEmbedder] = None):
        self.input_size = input_size or settings.EMBEDDING_INPUT_SIZE
        self.art_region = art_region or (settings.ART_LEFT, settings.ART_RIGHT,
                                         settings.ART_TOP, settings.ART_BOTTOM)
        self.dimension = settings.EMBEDDING_DIMENSION
        self.detector = detector or CardDetector()

        self.backend = backend or settings.EMBEDDING_BACKEND
        if self.backend == "mobilenet":
            self.cnn_embedder = cnn_embedder or MobileNetEmbedder(dimension=self.dimension,
                                                                  input_size=self.input_size)
        elif self.backend == "handcrafted":
            self.cnn_embedder = None
        else:
            raise ValueError(f"Unknown embedding backend: {self.backend}")

    def crop_art(self, card_image: np.ndarray) -> np.ndarray:
        """Art region of a canonical card, resized to the embedding input size"""
        card = self.detector.to_canonical_card(card_image)
        left, right, top, bottom = self.art_region
        art = extract_region(card, left, right, top, bottom)
        return cv2.resize(art, (self.input_size, self.input_size), interpolation=cv2.INTER_AREA)

    def embed_art(self, art: np.ndarray) -> np.ndarray:
        if self.cnn_embedder is not None:
            return self.cnn_embedder.embed(art)
        return extract_features(art, self.dimension)

    def compute_card_embedding(self, card_image: np.ndarray) -> np.ndarray:
        """Embedding for a whole card image (camera-normalized or catalog reference)"""
        return self.embed_art(self.crop_art(card_image))

    def assess_card_quality(self, card_image: np.ndarray) -> QualityReport:
        return assess_quality(self.crop_art(card_image))
