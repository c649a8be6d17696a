"""
Card Detection and Normalization Module
Finds the dominant card in a camera frame and warps it to the canonical card rectangle
"""
import cv2
import numpy as np
from typing import Optional, Tuple
import logging

from config import settings
from models import NormalizationResult, Quad

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = "Could not detect card edges. Try holding the card flatter against a contrasting background."

def order_corners(corners: np.ndarray) -> np.ndarray:
    """Order corners as: top-left, top-right, bottom-right, bottom-left"""
    corners = np.asarray(corners, dtype=np.float32).reshape(4, 2)

    # Sum and difference (y - x) of coordinates
    sum_coords = corners.sum(axis=1)
    diff_coords = np.diff(corners, axis=1).reshape(-1)

    # Top-left has smallest sum, bottom-right has largest sum
    top_left = corners[np.argmin(sum_coords)]
    bottom_right = corners[np.argmax(sum_coords)]

    # Top-right has smallest difference, bottom-left has largest difference
    top_right = corners[np.argmin(diff_coords)]
    bottom_left = corners[np.argmax(diff_coords)]

    return np.array([top_left, top_right, bottom_right, bottom_left], dtype=np.float32)

def inset_quad(corners: np.ndarray, inset: float) -> np.ndarray:
    """Pull every corner toward the centroid so each edge moves inward by `inset` of the span"""
    corners = np.asarray(corners, dtype=np.float32)
    if inset <= 0:
        return corners
    centroid = corners.mean(axis=0)
    return (centroid + (corners - centroid) * (1.0 - 2.0 * inset)).astype(np.float32)

def compute_quad_coverage(corners: Optional[np.ndarray], frame_width: int, frame_height: int) -> float:
    """Fraction of the frame covered by the quad (shoelace area)"""
    if corners is None or frame_width <= 0 or frame_height <= 0:
        return 0.0

    pts = np.asarray(corners, dtype=np.float64).reshape(4, 2)
    x, y = pts[:, 0], pts[:, 1]
    area = 0.5 * abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))
    return float(min(1.0, area / float(frame_width * frame_height)))

def quad_side_lengths(ordered: np.ndarray) -> Tuple[float, float]:
    """Width and height of an ordered quad, taking the longer of each opposite pair"""
    tl, tr, br, bl = ordered
    width = max(np.hypot(*(tr - tl)), np.hypot(*(br - bl)))
    height = max(np.hypot(*(bl - tl)), np.hypot(*(br - tr)))
    return float(width), float(height)

def extract_region(image: np.ndarray, left: float, right: float, top: float, bottom: float) -> np.ndarray:
    """Crop a region given as fractions of the image width/height"""
    height, width = image.shape[:2]
    x0 = int(round(width * left))
    x1 = max(x0 + 1, int(round(width * right)))
    y0 = int(round(height * top))
    y1 = max(y0 + 1, int(round(height * bottom)))
    return image[y0:min(y1, height), x0:min(x1, width)]


class CardDetector:
    """Detects the single dominant card in a frame using contour shape recognition"""

    def __init__(self, card_width: int = None, card_height: int = None,
                 inset: float = None, fallback_fraction: float = None):
        self.card_width = card_width or settings.CARD_WIDTH
        self.card_height = card_height or settings.CARD_HEIGHT
        self.card_aspect_ratio = self.card_width / self.card_height
        self.inset = settings.WARP_INSET_FRACTION if inset is None else inset
        self.fallback_fraction = fallback_fraction or settings.FALLBACK_CROP_FRACTION

        self.min_area_ratio = settings.MIN_CONTOUR_AREA_RATIO
        self.max_area_ratio = settings.MAX_CONTOUR_AREA_RATIO
        self.aspect_tolerance = settings.ASPECT_RATIO_TOLERANCE

    def normalize(self, frame: np.ndarray) -> Optional[NormalizationResult]:
        """
        Produce the canonical card image for an RGBA frame
        Falls back to a centered crop when no card outline is found; returns None only
        when the frame itself is unusable
        """
        if frame is None or not isinstance(frame, np.ndarray) or frame.ndim != 3 or frame.size == 0:
            logger.warning("Normalization skipped: frame is not an image buffer")
            return None

        height, width = frame.shape[:2]
        quad, confidence = self.detect_card_quad(frame)

        if quad is not None:
            try:
                warped = self.warp_to_canonical(frame, quad)
                coverage = compute_quad_coverage(quad, width, height)
                return NormalizationResult(
                    image=warped,
                    quad=Quad.from_array(quad),
                    confidence=confidence,
                    coverage=coverage,
                    message="Card detected",
                )
            except cv2.error as e:
                logger.warning(f"Perspective warp failed, using fallback crop: {str(e)}")

        return self.fallback_crop(frame)

    def detect_card_quad(self, frame: np.ndarray) -> Tuple[Optional[np.ndarray], float]:
        """
        Find the largest card-shaped quadrilateral
        Returns (ordered corners or None, detection confidence)
        """
        try:
            height, width = frame.shape[:2]
            frame_area = float(width * height)

            gray = self._to_gray(frame)
            edges = self._find_edges(gray)
            contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
            logger.debug(f"Found {len(contours)} external contours")

            best_quad, best_area = self._filter_card_contours(contours, frame_area)
            if best_quad is None:
                return None, 0.0

            confidence = min(1.0, best_area / (frame_area * 0.5))
            logger.debug(f"Card quad found, area ratio {best_area / frame_area:.2f}")
            return best_quad, confidence

        except cv2.error as e:
            logger.warning(f"Card detection failed: {str(e)}")
            return None, 0.0

    def _to_gray(self, frame: np.ndarray) -> np.ndarray:
        channels = frame.shape[2] if frame.ndim == 3 else 1
        if channels == 4:
            return cv2.cvtColor(frame, cv2.COLOR_RGBA2GRAY)
        if channels == 3:
            return cv2.cvtColor(frame, cv2.COLOR_RGB2GRAY)
        return frame

    def _find_edges(self, gray: np.ndarray) -> np.ndarray:
        blurred = cv2.GaussianBlur(gray, (5, 5), 0)
        edges = cv2.Canny(blurred, 50, 150)

        # Close small gaps in the card outline
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3))
        return cv2.dilate(edges, kernel, iterations=1)

    def _filter_card_contours(self, contours, frame_area: float) -> Tuple[Optional[np.ndarray], float]:
        """Keep the largest 4-point contour inside the area bounds with a card-like aspect ratio"""
        min_area = frame_area * self.min_area_ratio
        max_area = frame_area * self.max_area_ratio
        low = self.card_aspect_ratio * (1.0 - self.aspect_tolerance)
        high = self.card_aspect_ratio * (1.0 + self.aspect_tolerance)

        best_quad = None
        best_area = 0.0

        for contour in contours:
            area = cv2.contourArea(contour)
            if not (min_area < area < max_area) or area <= best_area:
                continue

            epsilon = 0.02 * cv2.arcLength(contour, True)
            approx = cv2.approxPolyDP(contour, epsilon, True)
            if len(approx) != 4:
                continue

            ordered = order_corners(approx.reshape(4, 2))
            quad_width, quad_height = quad_side_lengths(ordered)
            if quad_height <= 0:
                continue

            aspect_ratio = quad_width / quad_height
            if low <= aspect_ratio <= high:
                best_quad = ordered
                best_area = area

        return best_quad, best_area

    def warp_to_canonical(self, frame: np.ndarray, corners: np.ndarray) -> np.ndarray:
        """Map the quad onto the canonical card rectangle"""
        source = inset_quad(order_corners(corners), self.inset)
        target = np.array([
            [0, 0],
            [self.card_width - 1, 0],
            [self.card_width - 1, self.card_height - 1],
            [0, self.card_height - 1]
        ], dtype=np.float32)

        matrix = cv2.getPerspectiveTransform(source, target)
        return cv2.warpPerspective(frame, matrix, (self.card_width, self.card_height),
                                   flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)

    def fallback_crop(self, frame: np.ndarray) -> NormalizationResult:
        """Centered card-shaped crop assuming the card fills most of the frame"""
        height, width = frame.shape[:2]
        frame_aspect = width / height

        if frame_aspect > self.card_aspect_ratio:
            crop_h = height * self.fallback_fraction
            crop_w = crop_h * self.card_aspect_ratio
        else:
            crop_w = width * self.fallback_fraction
            crop_h = crop_w / self.card_aspect_ratio

        crop_w = max(1, int(round(crop_w)))
        crop_h = max(1, int(round(crop_h)))
        x0 = max(0, (width - crop_w) // 2)
        y0 = max(0, (height - crop_h) // 2)
        crop = frame[y0:y0 + crop_h, x0:x0 + crop_w]

        canonical = cv2.resize(crop, (self.card_width, self.card_height), interpolation=cv2.INTER_AREA)
        logger.debug(f"No card quad, fallback crop {crop_w}x{crop_h} at ({x0}, {y0})")

        return NormalizationResult(
            image=canonical,
            quad=None,
            confidence=0.0,
            coverage=0.0,
            message=FALLBACK_MESSAGE,
        )

    def to_canonical_card(self, card_image: np.ndarray) -> np.ndarray:
        """Resize an already isolated card image (catalog reference art) to the canonical rectangle"""
        height, width = card_image.shape[:2]
        if (width, height) == (self.card_width, self.card_height):
            return card_image
        interpolation = cv2.INTER_AREA if width > self.card_width else cv2.INTER_LINEAR
        return cv2.resize(card_image, (self.card_width, self.card_height), interpolation=interpolation)
