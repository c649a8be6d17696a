"""
Card Identification Module
Brute-force cosine similarity index over the catalog and multi-signal fusion of
visual similarity with OCR text matches
"""
import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from config import settings
from models import CatalogEntry, Candidate, ConfidenceBand, FusionResult, OCRResult
from ocr_extractor import find_ocr_matches

logger = logging.getLogger(__name__)

NO_MATCH_MESSAGE = "No confident match found. Try repositioning the card."
AMBIGUOUS_MESSAGE = "Multiple similar cards detected. Please select the correct one."
LOW_CONFIDENCE_MESSAGE = "Low confidence match. Please verify."
CLOSE_MATCH_MESSAGE = "Close match detected. Please confirm."

def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Dot product of two L2-normalized vectors; 0 when lengths differ or are empty"""
    if a is None or b is None:
        return 0.0
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.size == 0 or a.size != b.size:
        return 0.0
    return float(np.dot(a, b))

def find_top_matches(query: np.ndarray, entries: List[CatalogEntry], top_k: int) -> List[Tuple[CatalogEntry, float]]:
    """Score every entry and return the best `top_k`, highest first"""
    scored = [(entry, cosine_similarity(query, entry.embedding)) for entry in entries]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:max(0, top_k)]


class SimilarityIndex:
    """In-memory catalog embeddings; read-only once built, safe to share between queries"""

    def __init__(self, entries: List[CatalogEntry], dimension: int = None):
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self._entries = list(entries)
        self._by_id = {entry.id: entry for entry in self._entries}

        # Entries whose embedding has the wrong length always score 0
        self._rows = [i for i, entry in enumerate(self._entries)
                      if entry.embedding is not None and np.asarray(entry.embedding).size == self.dimension]
        if self._rows:
            self._matrix = np.vstack([np.asarray(self._entries[i].embedding, dtype=np.float32).ravel()
                                      for i in self._rows])
        else:
            self._matrix = np.zeros((0, self.dimension), dtype=np.float32)

        skipped = len(self._entries) - len(self._rows)
        if skipped:
            logger.warning(f"{skipped} catalog entries have embeddings of the wrong length")
        logger.info(f"Similarity index built with {len(self._rows)} embeddings")

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[CatalogEntry]:
        return list(self._entries)

    def get(self, entry_id: str) -> Optional[CatalogEntry]:
        return self._by_id.get(entry_id)

    def _all_scores(self, query: np.ndarray) -> np.ndarray:
        scores = np.zeros(len(self._entries), dtype=np.float64)
        query = np.asarray(query, dtype=np.float32).ravel()
        if query.size != self.dimension or not self._rows:
            return scores
        scores[self._rows] = self._matrix.astype(np.float64) @ query.astype(np.float64)
        return scores

    def search(self, query: np.ndarray, top_k: int) -> List[Tuple[CatalogEntry, float]]:
        """Top-K (entry, score) pairs sorted by non-increasing score"""
        if not self._entries or top_k <= 0:
            return []

        scores = self._all_scores(query)

        # Highest score first, catalog order between equal scores
        order = np.lexsort((np.arange(len(scores)), -scores))[:top_k]
        return [(self._entries[i], float(scores[i])) for i in order]

    def score(self, query: np.ndarray, entry_id: str) -> float:
        """Visual score for a single entry, used when OCR surfaces a card outside the visual top-K"""
        entry = self._by_id.get(entry_id)
        if entry is None:
            return 0.0
        return cosine_similarity(query, entry.embedding)


class MultiSignalMatcher:
    """Fuses visual similarity and OCR text matches into one ranked candidate list"""

    def __init__(self, index: SimilarityIndex):
        self.index = index
        self.visual_weight = settings.VISUAL_WEIGHT
        self.ocr_weight = settings.OCR_WEIGHT
        self.visual_top_k = settings.VISUAL_TOP_K
        self.ocr_top_n = settings.OCR_TOP_N
        self.max_candidates = settings.MAX_CANDIDATES
        self.ocr_min_confidence = settings.OCR_MIN_CONFIDENCE
        self.ocr_min_score = settings.OCR_MIN_MATCH_SCORE

        self.thresholds = {
            'excellent': settings.EXCELLENT_THRESHOLD,
            'good': settings.GOOD_THRESHOLD,
            'fair': settings.FAIR_THRESHOLD,
            'minimum': settings.MIN_MATCH_SCORE,
            'auto_confirm': settings.AUTO_CONFIRM_THRESHOLD,
            'margin': settings.MARGIN_THRESHOLD,
            'ambiguity': settings.AMBIGUITY_EPSILON,
        }

    def confidence_band(self, score: float) -> ConfidenceBand:
        if score >= self.thresholds['excellent']:
            return ConfidenceBand.EXCELLENT
        if score >= self.thresholds['good']:
            return ConfidenceBand.GOOD
        if score >= self.thresholds['fair']:
            return ConfidenceBand.FAIR
        return ConfidenceBand.LOW

    def match(self, query: np.ndarray, ocr_result: Optional[OCRResult] = None) -> FusionResult:
        """
        Full fusion: visual top-K plus OCR candidates
        OCR-only candidates are scored visually on demand so they are never dropped
        """
        combined: Dict[str, Dict] = {}
        for entry, score in self.index.search(query, self.visual_top_k):
            combined[entry.id] = {'entry': entry, 'visual': score, 'ocr': 0.0}

        ocr_text = ""
        ocr_confidence = 0.0
        for entry, ocr_score in self._ocr_candidates(ocr_result):
            if entry.id in combined:
                combined[entry.id]['ocr'] = max(combined[entry.id]['ocr'], ocr_score)
            else:
                combined[entry.id] = {
                    'entry': entry,
                    'visual': self.index.score(query, entry.id),
                    'ocr': ocr_score,
                }

        if ocr_result is not None:
            ocr_text = ocr_result.text
            ocr_confidence = ocr_result.confidence

        candidates = [self._make_candidate(c['entry'], c['visual'], c['ocr'],
                                           self.visual_weight * c['visual'] + self.ocr_weight * c['ocr'])
                      for c in combined.values()]
        result = self._finalize(candidates)
        result.ocr_text = ocr_text
        result.ocr_confidence = ocr_confidence
        return result

    def quick_visual_match(self, query: np.ndarray) -> FusionResult:
        """Visual-only ranking for the periodic scan loop; combined score equals visual score"""
        candidates = [self._make_candidate(entry, score, 0.0, score)
                      for entry, score in self.index.search(query, self.visual_top_k)]
        return self._finalize(candidates)

    def _ocr_candidates(self, ocr_result: Optional[OCRResult]) -> List[Tuple[CatalogEntry, float]]:
        if ocr_result is None:
            return []

        matches: Dict[str, Tuple[CatalogEntry, float]] = {}

        # An exact identifier read is the strongest text signal
        if ocr_result.card_id:
            entry = self.index.get(ocr_result.card_id) or self.index.get(ocr_result.card_id.lower())
            if entry is not None:
                matches[entry.id] = (entry, 1.0)

        if ocr_result.has_text and ocr_result.confidence / 100.0 > self.ocr_min_confidence:
            for entry, score in find_ocr_matches(ocr_result.text, self.index.entries,
                                                 self.ocr_top_n, self.ocr_min_score):
                if entry.id not in matches or matches[entry.id][1] < score:
                    matches[entry.id] = (entry, score)

        logger.debug(f"OCR contributed {len(matches)} candidates")
        return list(matches.values())

    def _make_candidate(self, entry: CatalogEntry, visual: float, ocr: float, combined: float) -> Candidate:
        return Candidate(
            entry=entry,
            visual_score=visual,
            ocr_score=ocr,
            combined_score=combined,
            confidence_band=self.confidence_band(combined),
        )

    def _finalize(self, candidates: List[Candidate]) -> FusionResult:
        candidates = sorted(candidates, key=lambda c: c.combined_score, reverse=True)[:self.max_candidates]
        top = candidates[0] if candidates else None
        second = candidates[1] if len(candidates) > 1 else None

        if top is None:
            has_margin = False
        elif second is not None:
            has_margin = (top.combined_score - second.combined_score) >= self.thresholds['margin']
        else:
            has_margin = top.combined_score >= self.thresholds['excellent']

        needs_confirmation = (
            top is None
            or top.combined_score < self.thresholds['auto_confirm']
            or not has_margin
        )
        ambiguous = second is not None and (top.combined_score - second.combined_score) < self.thresholds['ambiguity']

        message = None
        if top is None or top.combined_score < self.thresholds['minimum']:
            message = NO_MATCH_MESSAGE
        elif ambiguous:
            message = AMBIGUOUS_MESSAGE
        elif top.confidence_band == ConfidenceBand.LOW:
            message = LOW_CONFIDENCE_MESSAGE
        elif not has_margin:
            message = CLOSE_MATCH_MESSAGE

        return FusionResult(
            candidates=candidates,
            has_margin=has_margin,
            needs_confirmation=needs_confirmation,
            ambiguous=ambiguous,
            message=message,
        )
