"""Shared fixtures for the card scanning engine tests.

Cards are drawn synthetically so every test runs without camera captures or
reference image downloads.
"""
import sys
import logging
from pathlib import Path

import cv2
import numpy as np
import pytest
from PIL import Image

# Add the project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from feature_extractor import FeatureExtractor
from models import CatalogEntry

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)
logging.getLogger('PIL').setLevel(logging.WARNING)

CARD_KINDS = ("stripes", "checker", "diagonal")

CARD_INFO = {
    "stripes": ("OGN-001", "Blazing Phoenix", "Origins"),
    "checker": ("OGN-002", "Tidal Sentinel", "Origins"),
    "diagonal": ("SFD-003", "Verdant Stalker", "Spiritforged"),
}

# Flat single-colour art with unrelated palettes and brightness
SOLID_ART = {
    "ember": (220, 40, 20),
    "tide": (20, 50, 200),
    "moss": (30, 150, 40),
}

# Where place_card puts a 300x420 card inside a 640x480 frame
FRAME_SIZE = (640, 480)
PLACED_CARD_SIZE = (300, 420)
PLACED_CORNERS = np.array([[170, 30], [469, 30], [469, 449], [170, 449]], dtype=np.float32)


def make_card(kind, width=500, height=700):
    """Canonical-size RGBA card: light border around a distinct coloured pattern"""
    card = np.full((height, width, 4), 235, dtype=np.uint8)
    card[:, :, 3] = 255

    inner = card[20:height - 20, 20:width - 20]
    h, w = inner.shape[:2]
    yy, xx = np.mgrid[0:h, 0:w]

    if kind == "stripes":
        mask = (yy // 30) % 2 == 0
        inner[mask] = (200, 30, 30, 255)
        inner[~mask] = (240, 200, 60, 255)
    elif kind == "checker":
        mask = ((yy // 40) + (xx // 40)) % 2 == 0
        inner[mask] = (30, 60, 200, 255)
        inner[~mask] = (200, 220, 250, 255)
    elif kind == "diagonal":
        mask = ((xx + yy) // 35) % 2 == 0
        inner[mask] = (30, 160, 60, 255)
        inner[~mask] = (90, 40, 110, 255)
    elif kind in SOLID_ART:
        inner[:] = SOLID_ART[kind] + (255,)
    else:
        raise ValueError(kind)
    return card


def place_card(card, frame_size=FRAME_SIZE, card_size=PLACED_CARD_SIZE, background=20):
    """Camera-like frame: the card centred on a dark, uniform background"""
    frame_w, frame_h = frame_size
    card_w, card_h = card_size
    frame = np.full((frame_h, frame_w, 4), background, dtype=np.uint8)
    frame[:, :, 3] = 255

    x0 = (frame_w - card_w) // 2
    y0 = (frame_h - card_h) // 2
    frame[y0:y0 + card_h, x0:x0 + card_w] = cv2.resize(card, (card_w, card_h), interpolation=cv2.INTER_AREA)
    return frame


def add_noise(image, sigma=5.0, seed=0):
    rng = np.random.default_rng(seed)
    noisy = image.astype(np.float64)
    noisy[:, :, :3] += rng.normal(0.0, sigma, size=noisy[:, :, :3].shape)
    return np.clip(noisy, 0, 255).astype(np.uint8)


def unit_vector_with_similarity(similarity, axis, dimension=256):
    """Unit vector whose cosine with the first basis vector is `similarity`"""
    vector = np.zeros(dimension, dtype=np.float32)
    vector[0] = similarity
    vector[axis] = np.sqrt(max(0.0, 1.0 - similarity ** 2))
    return vector


def basis_query(dimension=256):
    query = np.zeros(dimension, dtype=np.float32)
    query[0] = 1.0
    return query


class FakeEngine:
    """OCR engine double: returns queued (text, confidence) readings in order"""

    name = "fake"

    def __init__(self, readings=None, default=("", 0.0)):
        self.readings = list(readings or [])
        self.default = default
        self.calls = []

    def read_text(self, image, charset, single_line=True):
        self.calls.append((image.shape, charset))
        if self.readings:
            reading = self.readings.pop(0)
            if isinstance(reading, Exception):
                raise reading
            return reading
        return self.default


class ManualClock:
    """Clock the tests advance by hand"""

    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


@pytest.fixture(scope="session")
def cards():
    return {kind: make_card(kind) for kind in CARD_KINDS}


@pytest.fixture(scope="session")
def frames(cards):
    return {kind: place_card(card) for kind, card in cards.items()}


@pytest.fixture(scope="session")
def catalog_entries(cards):
    extractor = FeatureExtractor()
    entries = []
    for kind in CARD_KINDS:
        card_id, name, set_label = CARD_INFO[kind]
        entries.append(CatalogEntry(
            id=card_id,
            display_name=name,
            set_label=set_label,
            rarity="common",
            embedding=extractor.compute_card_embedding(cards[kind]),
        ))
    return entries


@pytest.fixture
def card_image_dir(tmp_path, cards):
    """Reference images on disk, named by card id"""
    image_dir = tmp_path / "card_images"
    image_dir.mkdir()
    for kind, card in cards.items():
        card_id = CARD_INFO[kind][0]
        Image.fromarray(card).save(image_dir / f"{card_id}.png")
    return image_dir


@pytest.fixture
def fake_engine():
    return FakeEngine


@pytest.fixture
def clock():
    return ManualClock()
