"""
Data model for the Card Scanning Engine

Plain dataclasses for the values that flow through one scan, plus the
SQLAlchemy table that can hold a catalog with precomputed embeddings.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
from sqlalchemy import create_engine, Column, String, Integer, DateTime, Float, Text, Boolean
from sqlalchemy.orm import declarative_base, sessionmaker

Point = Tuple[float, float]

class ConfidenceBand(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    LOW = "low"

@dataclass(frozen=True)
class CatalogEntry:
    """One known card. Read-only to the matching engine."""
    id: str
    display_name: str
    set_label: str = ""
    rarity: Optional[str] = None
    embedding: np.ndarray = field(default=None, compare=False, repr=False)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'display_name': self.display_name,
            'set_label': self.set_label,
            'rarity': self.rarity,
            'embedding': [float(v) for v in self.embedding] if self.embedding is not None else [],
        }

@dataclass(frozen=True)
class Quad:
    """Card corners in source pixel coordinates, clockwise from top-left"""
    top_left: Point
    top_right: Point
    bottom_right: Point
    bottom_left: Point

    @classmethod
    def from_array(cls, pts: np.ndarray) -> "Quad":
        p = [(float(x), float(y)) for x, y in np.asarray(pts, dtype=np.float64).reshape(4, 2)]
        return cls(p[0], p[1], p[2], p[3])

@dataclass
class NormalizationResult:
    """Canonical card image plus how it was obtained"""
    image: np.ndarray
    quad: Optional[Quad]
    confidence: float
    coverage: float = 0.0
    message: str = ""

    @property
    def used_fallback(self) -> bool:
        return self.quad is None

@dataclass
class QualityReport:
    brightness: float
    sharpness: float
    issues: List[str] = field(default_factory=list)

    @property
    def is_acceptable(self) -> bool:
        return not self.issues

@dataclass
class OCRResult:
    """Best-effort text reading; confidence is on a 0-100 scale"""
    text: str = ""
    confidence: float = 0.0
    card_id: Optional[str] = None
    rotated: bool = False
    engine: Optional[str] = None

    @classmethod
    def empty(cls, engine: Optional[str] = None) -> "OCRResult":
        return cls(engine=engine)

    @property
    def has_text(self) -> bool:
        return bool(self.text.strip())

@dataclass
class Candidate:
    entry: CatalogEntry
    visual_score: float = 0.0
    ocr_score: float = 0.0
    combined_score: float = 0.0
    confidence_band: ConfidenceBand = ConfidenceBand.LOW

@dataclass
class FusionResult:
    candidates: List[Candidate] = field(default_factory=list)
    has_margin: bool = False
    needs_confirmation: bool = True
    ambiguous: bool = False
    message: Optional[str] = None
    ocr_text: str = ""
    ocr_confidence: float = 0.0

    @property
    def best(self) -> Optional[Candidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def is_confident(self) -> bool:
        return self.best is not None and not self.needs_confirmation

@dataclass
class PendingMatch:
    """Best guess waiting for the user to confirm, correct, or dismiss"""
    entry: CatalogEntry
    score: float
    candidates: List[Candidate] = field(default_factory=list)
    embedding: Optional[np.ndarray] = field(default=None, repr=False)
    ocr_text: str = ""
    ocr_confidence: float = 0.0
    needs_confirmation: bool = True
    ambiguous: bool = False
    message: Optional[str] = None

    @classmethod
    def from_fusion(cls, fusion: "FusionResult", embedding: Optional[np.ndarray] = None) -> Optional["PendingMatch"]:
        best = fusion.best
        if best is None:
            return None
        return cls(
            entry=best.entry,
            score=best.combined_score,
            candidates=list(fusion.candidates),
            embedding=embedding,
            ocr_text=fusion.ocr_text,
            ocr_confidence=fusion.ocr_confidence,
            needs_confirmation=True,
            ambiguous=fusion.ambiguous,
            message=fusion.message,
        )

    def visual_score_for(self, entry_id: str) -> Optional[float]:
        for candidate in self.candidates:
            if candidate.entry.id == entry_id:
                return candidate.visual_score
        return None

@dataclass
class FeedbackSample:
    """User verdict on a proposed match, kept for later calibration"""
    card_id: str
    was_correct: bool
    corrected_to: Optional[str] = None
    visual_score: Optional[float] = None
    combined_score: Optional[float] = None
    ocr_text: str = ""
    ocr_confidence: float = 0.0
    embedding: Optional[np.ndarray] = field(default=None, repr=False)

@dataclass(frozen=True)
class DetectionSample:
    candidate_id: str
    confidence: float
    timestamp: float

@dataclass(frozen=True)
class MatchEvent:
    """What the collection tracker receives for each confirmed card"""
    entry_id: str
    display_name: str
    timestamp: float

    def to_dict(self) -> Dict:
        return {'entryId': self.entry_id, 'displayName': self.display_name, 'timestamp': self.timestamp}

@dataclass(frozen=True)
class ConfirmedMatch:
    entry: CatalogEntry
    score: float
    timestamp: float

    def to_event(self) -> MatchEvent:
        return MatchEvent(self.entry.id, self.entry.display_name, self.timestamp)


Base = declarative_base()

class CatalogCard(Base):
    """Catalog row with its precomputed embedding"""
    __tablename__ = 'catalog_cards'

    id = Column(String(64), primary_key=True)
    display_name = Column(String(255), nullable=False, index=True)
    set_label = Column(String(255), default="")
    rarity = Column(String(50))
    embedding = Column(Text, nullable=False)  # JSON array of floats
    image_hash = Column(String(32))
    image_path = Column(String(500))
    updated_date = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_record(self) -> Dict:
        """Raw record in the shape catalog ingestion expects"""
        return {
            'id': self.id,
            'name': self.display_name,
            'setLabel': self.set_label,
            'rarity': self.rarity,
            'embedding': self.embedding,
        }

class ScanFeedback(Base):
    """Confirmed or corrected scan results"""
    __tablename__ = 'scan_feedback'

    id = Column(Integer, primary_key=True, autoincrement=True)
    card_id = Column(String(64), nullable=False, index=True)
    was_correct = Column(Boolean, nullable=False)
    corrected_to = Column(String(64))
    visual_score = Column(Float)
    combined_score = Column(Float)
    ocr_text = Column(String(255))
    ocr_confidence = Column(Float)
    embedding = Column(Text)  # JSON array of floats
    created_date = Column(DateTime, default=datetime.utcnow)

class DatabaseManager:
    """Database connection and session management"""

    def __init__(self, database_url: str, pool_size: int = 5, max_overflow: int = 10):
        engine_args = {'pool_pre_ping': True, 'echo': False}
        if not database_url.startswith("sqlite"):
            engine_args.update(pool_size=pool_size, max_overflow=max_overflow)
        self.engine = create_engine(database_url, **engine_args)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def create_tables(self):
        """Create all tables"""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self):
        """Get a new database session"""
        return self.SessionLocal()

class CatalogRepository:
    """Repository pattern for catalog table operations"""

    def __init__(self, session):
        self.session = session

    def list_records(self) -> List[Dict]:
        return [row.to_record() for row in self.session.query(CatalogCard).order_by(CatalogCard.id).all()]

    def find_by_id(self, card_id: str) -> Optional[CatalogCard]:
        return self.session.get(CatalogCard, card_id)

    def count(self) -> int:
        return self.session.query(CatalogCard).count()

    def upsert_entry(self, entry: CatalogEntry, image_hash: str = None, image_path: str = None) -> CatalogCard:
        """Insert or replace a catalog row for this entry"""
        row = self.find_by_id(entry.id)
        if row is None:
            row = CatalogCard(id=entry.id)
            self.session.add(row)

        row.display_name = entry.display_name
        row.set_label = entry.set_label
        row.rarity = entry.rarity
        row.embedding = json.dumps([round(float(v), 8) for v in entry.embedding])
        row.image_hash = image_hash
        row.image_path = image_path
        return row

    def add_feedback(self, sample: FeedbackSample) -> ScanFeedback:
        row = ScanFeedback(
            card_id=sample.card_id,
            was_correct=sample.was_correct,
            corrected_to=sample.corrected_to,
            visual_score=sample.visual_score,
            combined_score=sample.combined_score,
            ocr_text=sample.ocr_text,
            ocr_confidence=sample.ocr_confidence,
            embedding=json.dumps([float(v) for v in sample.embedding]) if sample.embedding is not None else None,
        )
        self.session.add(row)
        return row

    def feedback_stats(self) -> Dict:
        total = self.session.query(ScanFeedback).count()
        correct = self.session.query(ScanFeedback).filter(ScanFeedback.was_correct.is_(True)).count()
        return {
            'total_samples': total,
            'correct_count': correct,
            'corrected_count': total - correct,
            'accuracy': correct / total if total else 0.0,
        }
