"""
OCR and Text Extraction Module for Trading Cards
Reads the printed card identifier and name from a canonical card image with a
pluggable OCR engine, and fuzzy-matches the reading against catalog names
"""
import cv2
import numpy as np
import re
import logging
from typing import List, Optional, Tuple
from rapidfuzz import process
from rapidfuzz.distance import Levenshtein
from config import settings
from card_detector import extract_region
from engine_handle import EngineHandle
from models import CatalogEntry, OCRResult

# Import OCR libraries with fallback handling
try:
    import easyocr
    EASYOCR_AVAILABLE = True
except ImportError:
    EASYOCR_AVAILABLE = False
    logging.debug("EasyOCR not available")

try:
    import pytesseract
    TESSERACT_AVAILABLE = True
except ImportError:
    TESSERACT_AVAILABLE = False
    logging.debug("pytesseract not available")

logger = logging.getLogger(__name__)

CARD_ID_PATTERN = re.compile(r"\b[A-Z]{2,4}\s?-\s?\d{3}")
ID_CHARSET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-"
NAME_CHARSET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789 -'"

def normalize_text(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace"""
    if not text:
        return ""
    text = re.sub(r'[^a-z0-9\s-]', '', text.lower())
    return re.sub(r'\s+', ' ', text).strip()

def compute_text_match_score(ocr_text: str, card_name: str) -> float:
    """Length-normalized edit distance similarity: 1 - distance / max length"""
    a = normalize_text(ocr_text)
    b = normalize_text(card_name)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return float(Levenshtein.normalized_similarity(a, b))

def find_ocr_matches(ocr_text: str, entries: List[CatalogEntry], top_n: int = 10,
                     min_score: float = 0.4) -> List[Tuple[CatalogEntry, float]]:
    """Rank catalog entries by name similarity to the OCR reading"""
    if not entries or not normalize_text(ocr_text):
        return []

    names = [entry.display_name for entry in entries]
    results = process.extract(
        ocr_text,
        names,
        scorer=Levenshtein.normalized_similarity,
        processor=normalize_text,
        limit=top_n,
        score_cutoff=min_score,
    )
    return [(entries[index], float(score)) for _, score, index in results]

def extract_card_id(text: str) -> Optional[str]:
    """Structured identifier such as 'OGN-042' found in OCR output"""
    if not text:
        return None
    match = CARD_ID_PATTERN.search(text.upper())
    return re.sub(r"\s+", "", match.group(0)) if match else None

def binarize(gray: np.ndarray, threshold: Optional[int] = None) -> np.ndarray:
    """Fixed threshold when given, otherwise Otsu"""
    if threshold is None:
        _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    else:
        _, binary = cv2.threshold(gray, threshold, 255, cv2.THRESH_BINARY)
    return binary


class TesseractEngine:
    """pytesseract wrapper; constructing it fails when the tesseract binary is missing"""

    name = "tesseract"

    def __init__(self, timeout: float = None):
        if not TESSERACT_AVAILABLE:
            raise RuntimeError("pytesseract is not installed")
        self.timeout = settings.OCR_TIMEOUT_SECONDS if timeout is None else timeout
        version = pytesseract.get_tesseract_version()
        logger.info(f"Tesseract {version} ready")

    def read_text(self, image: np.ndarray, charset: str, single_line: bool = True) -> Tuple[str, float]:
        """Return (text, confidence 0-100)"""
        psm = 7 if single_line else 6
        config = f'--oem 3 --psm {psm} -c "tessedit_char_whitelist={charset}"'
        data = pytesseract.image_to_data(image, config=config, output_type=pytesseract.Output.DICT,
                                         timeout=self.timeout)

        words, confidences = [], []
        for text, conf in zip(data['text'], data['conf']):
            text = str(text).strip()
            conf = float(conf)
            if text and conf >= 0:
                words.append(text)
                confidences.append(conf)

        if not words:
            return "", 0.0
        return " ".join(words), float(np.mean(confidences))


class EasyOCREngine:
    """EasyOCR reader wrapper; model weights load when the engine is constructed"""

    name = "easyocr"

    def __init__(self, use_gpu: bool = None):
        if not EASYOCR_AVAILABLE:
            raise RuntimeError("easyocr is not installed")
        gpu = settings.OCR_USE_GPU if use_gpu is None else use_gpu
        self.reader = easyocr.Reader(['en'], gpu=gpu, verbose=False)
        logger.info(f"EasyOCR initialized (gpu={gpu})")

    def read_text(self, image: np.ndarray, charset: str, single_line: bool = True) -> Tuple[str, float]:
        results = self.reader.readtext(image, allowlist=charset, detail=1, paragraph=False)
        if not results:
            return "", 0.0

        # Left to right so a single line reads in order
        results = sorted(results, key=lambda r: min(p[0] for p in r[0]))
        text = " ".join(str(r[1]).strip() for r in results if str(r[1]).strip())
        confidence = float(np.mean([r[2] for r in results])) * 100.0
        return text, confidence


def create_engine(engine_name: str):
    """Build the configured OCR engine"""
    if engine_name == "tesseract":
        return TesseractEngine()
    if engine_name == "easyocr":
        return EasyOCREngine()
    raise ValueError(f"Unknown OCR engine: {engine_name}")


class CardTextExtractor:
    """Reads the identifier strip and the name band of a canonical card"""

    def __init__(self, engine=None, engine_name: str = None):
        self.engine_name = engine_name or settings.OCR_ENGINE
        if engine is not None:
            self.handle = EngineHandle(lambda: engine, name="OCR engine")
        elif self.engine_name == "none":
            self.handle = None
        else:
            self.handle = EngineHandle(lambda: create_engine(self.engine_name), name="OCR engine")

        self.id_confidence_threshold = settings.OCR_ID_CONFIDENCE_THRESHOLD
        self.name_threshold = settings.OCR_NAME_THRESHOLD
        self.name_region = (settings.NAME_LEFT, settings.NAME_RIGHT, settings.NAME_TOP, settings.NAME_BOTTOM)
        self.id_region_top = settings.ID_REGION_TOP
        self.id_upscale = settings.ID_UPSCALE

    @property
    def available(self) -> bool:
        return self.handle is not None and self.handle.get() is not None

    def _engine(self):
        return self.handle.get() if self.handle is not None else None

    def _run_engine(self, image: np.ndarray, charset: str) -> Tuple[str, float]:
        engine = self._engine()
        if engine is None:
            return "", 0.0
        try:
            return engine.read_text(image, charset, single_line=True)
        except Exception as e:
            logger.warning(f"OCR recognition failed: {str(e)}")
            return "", 0.0

    def _to_gray(self, image: np.ndarray) -> np.ndarray:
        if image.ndim == 2:
            return image
        if image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY)
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)

    def prepare_id_region(self, card_image: np.ndarray) -> np.ndarray:
        """Bottom strip, upscaled and Otsu-binarized"""
        strip = extract_region(card_image, 0.0, 1.0, self.id_region_top, 1.0)
        gray = self._to_gray(strip)
        gray = cv2.resize(gray, None, fx=self.id_upscale, fy=self.id_upscale, interpolation=cv2.INTER_CUBIC)
        return binarize(gray)

    def prepare_name_region(self, card_image: np.ndarray) -> np.ndarray:
        """Name band under the art, fixed-threshold binarized"""
        left, right, top, bottom = self.name_region
        band = extract_region(card_image, left, right, top, bottom)
        return binarize(self._to_gray(band), self.name_threshold)

    def _read_id(self, card_image: np.ndarray, rotated: bool) -> OCRResult:
        text, confidence = self._run_engine(self.prepare_id_region(card_image), ID_CHARSET)
        return OCRResult(
            text=text.strip(),
            confidence=confidence,
            card_id=extract_card_id(text),
            rotated=rotated,
            engine=self.engine_name,
        )

    def recognize_card_id(self, card_image: np.ndarray) -> OCRResult:
        """
        Read the structured identifier, retrying on the card rotated 180 degrees
        The rotated attempt runs when no identifier was found or its confidence is
        at or below the threshold; the better reading wins
        """
        if self._engine() is None:
            return OCRResult.empty(self.engine_name)

        try:
            normal = self._read_id(card_image, rotated=False)
            if normal.card_id and normal.confidence > self.id_confidence_threshold:
                return normal

            flipped = self._read_id(cv2.rotate(card_image, cv2.ROTATE_180), rotated=True)
        except cv2.error as e:
            logger.warning(f"Identifier region preparation failed: {str(e)}")
            return OCRResult.empty(self.engine_name)

        best = max([normal, flipped], key=lambda r: (r.card_id is not None, r.confidence))
        logger.debug(f"Card id read: {best.card_id} ({best.confidence:.0f}, rotated={best.rotated})")
        return best

    def recognize_card_name(self, card_image: np.ndarray) -> OCRResult:
        """Free-text reading of the printed name"""
        if self._engine() is None:
            return OCRResult.empty(self.engine_name)

        try:
            binary = self.prepare_name_region(card_image)
        except cv2.error as e:
            logger.warning(f"Name region preparation failed: {str(e)}")
            return OCRResult.empty(self.engine_name)

        text, confidence = self._run_engine(binary, NAME_CHARSET)
        return OCRResult(text=text.strip(), confidence=confidence, engine=self.engine_name)

    def recognize(self, card_image: np.ndarray) -> OCRResult:
        """Combined reading: name text for fuzzy matching plus the identifier if one was found"""
        if self._engine() is None:
            return OCRResult.empty(self.engine_name)

        id_result = self.recognize_card_id(card_image)
        name_result = self.recognize_card_name(card_image)

        return OCRResult(
            text=name_result.text,
            confidence=name_result.confidence if name_result.has_text else id_result.confidence,
            card_id=id_result.card_id,
            rotated=id_result.rotated,
            engine=self.engine_name,
        )
