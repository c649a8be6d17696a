"""
Configuration settings for the Card Scanning Engine
"""
from pathlib import Path
from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Catalog Storage
    CATALOG_PATH: str = "./data/catalog.json"
    DATABASE_URL: str = "sqlite:///./data/catalog.db"
    REFERENCE_IMAGES_PATH: str = "./data/card_images"

    # Canonical Geometry
    CARD_WIDTH: int = 500
    CARD_HEIGHT: int = 700
    EMBEDDING_INPUT_SIZE: int = 224

    # Card Detection Settings
    MIN_CONTOUR_AREA_RATIO: float = 0.15
    MAX_CONTOUR_AREA_RATIO: float = 0.95
    ASPECT_RATIO_TOLERANCE: float = 0.30
    WARP_INSET_FRACTION: float = 0.0  # 0.05 discards sleeve edges
    FALLBACK_CROP_FRACTION: float = 0.8
    MIN_CARD_COVERAGE: float = 0.25

    # Art region inside the canonical card (fractions of width/height)
    ART_LEFT: float = 0.06
    ART_RIGHT: float = 0.94
    ART_TOP: float = 0.14
    ART_BOTTOM: float = 0.58

    # Embedding
    EMBEDDING_DIMENSION: int = 256
    EMBEDDING_BACKEND: str = "handcrafted"  # Options: "handcrafted", "mobilenet"
    CNN_DEVICE: str = "cpu"

    # Image Quality Gate
    MIN_BRIGHTNESS: float = 0.15
    MAX_BRIGHTNESS: float = 0.90
    MIN_SHARPNESS: float = 50.0  # Laplacian variance

    # OCR Configuration
    OCR_ENGINE: str = "tesseract"  # Options: "tesseract", "easyocr", "none"
    OCR_TIMEOUT_SECONDS: float = 5.0
    OCR_USE_GPU: bool = False
    OCR_ID_CONFIDENCE_THRESHOLD: float = 55.0  # 0-100, below this the 180 degree retry runs
    OCR_NAME_THRESHOLD: int = 140
    OCR_MIN_MATCH_SCORE: float = 0.4
    NAME_LEFT: float = 0.08
    NAME_RIGHT: float = 0.92
    NAME_TOP: float = 0.60
    NAME_BOTTOM: float = 0.75
    ID_REGION_TOP: float = 0.75
    ID_UPSCALE: float = 2.0

    # Multi-Signal Fusion
    VISUAL_WEIGHT: float = 0.7
    OCR_WEIGHT: float = 0.3
    VISUAL_TOP_K: int = 10
    OCR_TOP_N: int = 10
    MAX_CANDIDATES: int = 5
    OCR_MIN_CONFIDENCE: float = 0.3  # 0-1, OCR text below this is ignored
    EXCELLENT_THRESHOLD: float = 0.80
    GOOD_THRESHOLD: float = 0.70
    FAIR_THRESHOLD: float = 0.55
    MIN_MATCH_SCORE: float = 0.40  # below this a frame reports no match
    AUTO_CONFIRM_THRESHOLD: float = 0.80
    MARGIN_THRESHOLD: float = 0.05
    AMBIGUITY_EPSILON: float = 0.03

    # Temporal Confirmation
    SCAN_INTERVAL_SECONDS: float = 0.6
    DETECTION_WINDOW_SECONDS: float = 2.0
    MIN_DETECTIONS_REQUIRED: int = 2
    MIN_AVERAGE_CONFIDENCE: float = 0.55
    DUPLICATE_COOLDOWN_SECONDS: float = 3.0
    CONFIRMATION_POLICY: str = "highest_confidence"  # Options: "highest_confidence", "arrival"
    FRAME_TIMEOUT_SECONDS: float = 5.0
    AUTO_SCAN_USE_OCR: bool = False
    AUTO_SCAN_QUALITY_GATE: bool = True

    # Stable-guess proposal mode
    STABLE_WINDOW_SECONDS: float = 1.0
    MIN_STABLE_MATCHES: int = 4
    PROPOSAL_MIN_SIMILARITY: float = 0.82
    PROPOSAL_MIN_MARGIN: float = 0.04
    PROPOSAL_COOLDOWN_SECONDS: float = 1.5
    RECENT_SCANS_LIMIT: int = 5

    # Catalog Build
    PERCEPTUAL_HASH_THRESHOLD: int = 4

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

def ensure_directories(settings: Settings):
    """Create the directories catalog storage and logging write into"""
    directories = [
        Path(settings.CATALOG_PATH).parent,
        Path(settings.REFERENCE_IMAGES_PATH),
    ]
    if settings.LOG_FILE:
        directories.append(Path(settings.LOG_FILE).parent)

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)

# Global settings instance
settings = Settings()
