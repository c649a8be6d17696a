import numpy as np
import pytest

from card_detector import (FALLBACK_MESSAGE, CardDetector, compute_quad_coverage, extract_region,
                           inset_quad, order_corners)
from card_identifier import cosine_similarity
from feature_extractor import FeatureExtractor
from conftest import PLACED_CORNERS, place_card


@pytest.fixture
def detector():
    return CardDetector()


def test_order_corners_from_shuffled_points():
    shuffled = np.array([[90, 140], [10, 10], [10, 140], [90, 10]], dtype=np.float32)
    ordered = order_corners(shuffled)
    assert ordered.tolist() == [[10, 10], [90, 10], [90, 140], [10, 140]]


def test_inset_quad_moves_edges_inward():
    square = np.array([[0, 0], [100, 0], [100, 100], [0, 100]], dtype=np.float32)
    inset = inset_quad(square, 0.05)
    assert np.allclose(inset, [[5, 5], [95, 5], [95, 95], [5, 95]])


def test_inset_quad_zero_is_identity():
    square = np.array([[0, 0], [100, 0], [100, 100], [0, 100]], dtype=np.float32)
    assert np.array_equal(inset_quad(square, 0.0), square)


def test_quad_coverage():
    half = np.array([[0, 0], [50, 0], [50, 100], [0, 100]], dtype=np.float32)
    assert compute_quad_coverage(half, 100, 100) == pytest.approx(0.5)
    assert compute_quad_coverage(None, 100, 100) == 0.0


def test_extract_region_fractions():
    image = np.zeros((100, 200, 4), dtype=np.uint8)
    region = extract_region(image, 0.25, 0.75, 0.5, 1.0)
    assert region.shape == (50, 100, 4)


def test_detects_card_quad(detector, frames):
    quad, confidence = detector.detect_card_quad(frames["stripes"])
    assert quad is not None
    assert confidence > 0.5
    assert np.abs(quad - PLACED_CORNERS).max() <= 8


def test_normalize_warps_to_canonical_size(detector, frames):
    result = detector.normalize(frames["checker"])
    assert not result.used_fallback
    assert result.image.shape == (700, 500, 4)
    assert result.message == "Card detected"
    # 300x420 card in a 640x480 frame
    assert result.coverage == pytest.approx(0.41, abs=0.05)


def test_warped_card_matches_reference_embedding(detector, cards, frames):
    extractor = FeatureExtractor(detector=detector)
    warped = detector.normalize(frames["diagonal"]).image
    live = extractor.compute_card_embedding(warped)
    reference = extractor.compute_card_embedding(cards["diagonal"])
    assert cosine_similarity(live, reference) >= 0.90


def test_uniform_frame_falls_back(detector):
    frame = np.full((480, 640, 4), 128, dtype=np.uint8)
    result = detector.normalize(frame)
    assert result.used_fallback
    assert result.quad is None
    assert result.confidence == 0.0
    assert result.message == FALLBACK_MESSAGE
    assert result.image.shape == (700, 500, 4)


def test_small_card_is_rejected_by_area(detector, cards):
    frame = place_card(cards["stripes"], card_size=(100, 140))
    quad, _ = detector.detect_card_quad(frame)
    assert quad is None
    assert detector.normalize(frame).used_fallback


def test_wrong_aspect_is_rejected(detector, cards):
    # Landscape rectangle, far outside the portrait card ratio
    frame = place_card(cards["checker"], card_size=(420, 200))
    quad, _ = detector.detect_card_quad(frame)
    assert quad is None


def test_unusable_frames_return_none(detector):
    assert detector.normalize(None) is None
    assert detector.normalize(np.zeros((480, 640), dtype=np.uint8)) is None


def test_inset_warp_still_canonical(cards, frames):
    detector = CardDetector(inset=0.05)
    result = detector.normalize(frames["stripes"])
    assert result.image.shape == (700, 500, 4)
    assert not result.used_fallback


def test_to_canonical_card_resizes(detector, cards):
    resized = detector.to_canonical_card(cards["stripes"][::2, ::2].copy())
    assert resized.shape == (700, 500, 4)
    assert detector.to_canonical_card(cards["stripes"]) is cards["stripes"]
