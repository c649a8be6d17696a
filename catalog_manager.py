"""
Catalog Management Module
Loads catalog records from JSON or the database into canonical CatalogEntry
values, and builds catalog embeddings from reference card images
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import imagehash
import numpy as np
from PIL import Image
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from exceptions import CatalogLoadError, EmbeddingValidationError, ImageLoadError
from feature_extractor import FeatureExtractor
from frame_source import load_image_rgba
from models import CatalogEntry, CatalogRepository, DatabaseManager

logger = logging.getLogger(__name__)

ID_FIELDS = ('id', 'cardId', 'card_id')
NAME_FIELDS = ('displayName', 'display_name', 'name')
SET_FIELDS = ('setLabel', 'set_label', 'setName', 'set_name', 'set')
RARITY_FIELDS = ('rarity',)
IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.webp', '.bmp'}

NORM_TOLERANCE = 1e-3

def _first_field(record: Dict, names: Tuple[str, ...]):
    for name in names:
        value = record.get(name)
        if value not in (None, ""):
            return value
    return None

def parse_embedding(raw, dimension: int = None) -> Tuple[np.ndarray, bool]:
    """
    Decode a stored embedding (JSON string or list) and check it
    Returns (unit vector, whether it had to be re-normalized)
    """
    dimension = dimension or settings.EMBEDDING_DIMENSION
    if raw is None:
        raise EmbeddingValidationError("missing embedding")

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise EmbeddingValidationError(f"embedding is not valid JSON: {str(e)}") from e

    try:
        vector = np.asarray(raw, dtype=np.float64).ravel()
    except (TypeError, ValueError) as e:
        raise EmbeddingValidationError(f"embedding is not numeric: {str(e)}") from e

    if vector.size == 0:
        raise EmbeddingValidationError("empty embedding")
    if vector.size != dimension:
        raise EmbeddingValidationError(f"expected {dimension} values, got {vector.size}")
    if not np.all(np.isfinite(vector)):
        raise EmbeddingValidationError("embedding contains NaN or infinite values")

    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        raise EmbeddingValidationError("zero embedding")

    renormalized = abs(norm - 1.0) > NORM_TOLERANCE
    if renormalized:
        vector = vector / norm
    return vector.astype(np.float32), renormalized

def normalize_catalog_record(record: Dict, dimension: int = None) -> Tuple[CatalogEntry, bool]:
    """Collapse the alias fields a record may carry into one CatalogEntry"""
    card_id = _first_field(record, ID_FIELDS)
    if card_id is None:
        raise EmbeddingValidationError("record has no id")

    embedding, renormalized = parse_embedding(record.get('embedding'), dimension)
    name = _first_field(record, NAME_FIELDS) or str(card_id)
    set_label = _first_field(record, SET_FIELDS) or ""
    rarity = _first_field(record, RARITY_FIELDS)

    entry = CatalogEntry(
        id=str(card_id),
        display_name=str(name),
        set_label=str(set_label),
        rarity=str(rarity) if rarity is not None else None,
        embedding=embedding,
    )
    return entry, renormalized

@dataclass
class CatalogDiagnostics:
    total: int = 0
    valid: int = 0
    invalid: int = 0
    renormalized: int = 0
    duplicates: int = 0
    invalid_samples: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'total': self.total,
            'valid': self.valid,
            'invalid': self.invalid,
            'renormalized': self.renormalized,
            'duplicates': self.duplicates,
            'invalid_samples': list(self.invalid_samples),
            'warnings': list(self.warnings),
        }

def ingest_records(records: List[Dict], dimension: int = None) -> Tuple[List[CatalogEntry], CatalogDiagnostics]:
    """Normalize raw records once, skipping unusable ones with a diagnostic"""
    diagnostics = CatalogDiagnostics(total=len(records))
    entries: List[CatalogEntry] = []
    seen = set()

    for record in records:
        label = str(_first_field(record, ID_FIELDS) if isinstance(record, dict) else record)
        try:
            if not isinstance(record, dict):
                raise EmbeddingValidationError("record is not an object")
            entry, renormalized = normalize_catalog_record(record, dimension)
        except EmbeddingValidationError as e:
            diagnostics.invalid += 1
            if len(diagnostics.invalid_samples) < 5:
                diagnostics.invalid_samples.append(f"{label}: {str(e)}")
            continue

        if entry.id in seen:
            diagnostics.duplicates += 1
            continue
        seen.add(entry.id)

        if renormalized:
            diagnostics.renormalized += 1
        entries.append(entry)

    diagnostics.valid = len(entries)

    if len(entries) >= 2 and np.array_equal(entries[0].embedding, entries[1].embedding):
        diagnostics.warnings.append(
            f"First two embeddings ({entries[0].id}, {entries[1].id}) are identical; the catalog build may be broken"
        )
    if diagnostics.invalid:
        diagnostics.warnings.append(f"{diagnostics.invalid} of {diagnostics.total} records were skipped")

    for warning in diagnostics.warnings:
        logger.warning(warning)
    logger.info(f"Catalog ingested: {diagnostics.valid} valid, {diagnostics.invalid} invalid, "
                f"{diagnostics.renormalized} re-normalized")
    return entries, diagnostics

def _records_from_json(data) -> List[Dict]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        if isinstance(data.get('cards'), list):
            return data['cards']
        # {card_id: {...}} mapping
        records = []
        for card_id, meta in data.items():
            if isinstance(meta, dict):
                records.append({'id': card_id, **meta})
        return records
    raise CatalogLoadError("catalog JSON must be a list of records or an object")


class JsonCatalog:
    """Catalog stored as a JSON file of records"""

    def __init__(self, path: Union[str, Path] = None):
        self.path = Path(path or settings.CATALOG_PATH)
        self._entries: Optional[List[CatalogEntry]] = None
        self.diagnostics: Optional[CatalogDiagnostics] = None

    def list_catalog(self) -> List[CatalogEntry]:
        if self._entries is None:
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except FileNotFoundError as e:
                raise CatalogLoadError(f"Catalog file not found: {self.path}") from e
            except (OSError, ValueError) as e:
                raise CatalogLoadError(f"Could not read catalog {self.path}: {str(e)}") from e

            self._entries, self.diagnostics = ingest_records(_records_from_json(data))
        return list(self._entries)


class DatabaseCatalog:
    """Catalog stored in the catalog_cards table"""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self._entries: Optional[List[CatalogEntry]] = None
        self.diagnostics: Optional[CatalogDiagnostics] = None

    def list_catalog(self) -> List[CatalogEntry]:
        if self._entries is None:
            session = self.db_manager.get_session()
            try:
                records = CatalogRepository(session).list_records()
            except SQLAlchemyError as e:
                raise CatalogLoadError(f"Could not read catalog table: {str(e)}") from e
            finally:
                session.close()

            self._entries, self.diagnostics = ingest_records(records)
        return list(self._entries)

def open_catalog(source: str = None):
    """JSON path or database URL to a catalog collaborator"""
    source = source or settings.CATALOG_PATH
    if "://" in source:
        return DatabaseCatalog(DatabaseManager(source))
    return JsonCatalog(source)

def load_metadata(path: Union[str, Path]) -> Dict[str, Dict]:
    """Card metadata keyed by card id"""
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    metadata = {}
    for record in _records_from_json(data):
        card_id = _first_field(record, ID_FIELDS)
        if card_id is not None:
            metadata[str(card_id)] = record
    return metadata

@dataclass
class CatalogBuildResult:
    entries: List[CatalogEntry] = field(default_factory=list)
    image_hashes: Dict[str, str] = field(default_factory=dict)
    image_paths: Dict[str, str] = field(default_factory=dict)
    near_duplicates: List[Tuple[str, str, int]] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)


class CatalogBuilder:
    """
    Computes catalog embeddings from reference card images
    Uses the same FeatureExtractor as live scanning so both sides agree numerically
    """

    def __init__(self, feature_extractor: FeatureExtractor = None, hash_threshold: int = None):
        self.feature_extractor = feature_extractor or FeatureExtractor()
        self.hash_threshold = settings.PERCEPTUAL_HASH_THRESHOLD if hash_threshold is None else hash_threshold

    def embed_image(self, source) -> np.ndarray:
        image = load_image_rgba(source)
        return self.feature_extractor.compute_card_embedding(image)

    def image_hash(self, image: np.ndarray) -> imagehash.ImageHash:
        """8x8 average hash of the card art"""
        art = self.feature_extractor.crop_art(image)
        return imagehash.average_hash(Image.fromarray(art).convert("RGB"), hash_size=8)

    def build_entry(self, image_path: Union[str, Path], meta: Dict = None) -> Tuple[CatalogEntry, str]:
        meta = meta or {}
        image_path = Path(image_path)
        image = load_image_rgba(image_path)
        embedding = self.feature_extractor.compute_card_embedding(image)

        card_id = str(_first_field(meta, ID_FIELDS) or image_path.stem)
        rarity = _first_field(meta, RARITY_FIELDS)
        entry = CatalogEntry(
            id=card_id,
            display_name=str(_first_field(meta, NAME_FIELDS) or card_id),
            set_label=str(_first_field(meta, SET_FIELDS) or ""),
            rarity=str(rarity) if rarity is not None else None,
            embedding=embedding,
        )
        return entry, str(self.image_hash(image))

    def _resolve_images(self, image_dir: Path, metadata: Optional[Dict[str, Dict]]) -> List[Tuple[Path, Dict]]:
        if not metadata:
            return [(p, {}) for p in sorted(image_dir.iterdir()) if p.suffix.lower() in IMAGE_EXTENSIONS]

        resolved = []
        for card_id, meta in metadata.items():
            image_name = meta.get('image') or f"{card_id}.png"
            path = image_dir / image_name
            if not path.exists():
                path = next((path.with_suffix(ext) for ext in sorted(IMAGE_EXTENSIONS)
                             if path.with_suffix(ext).exists()), path)
            resolved.append((path, {'id': card_id, **meta}))
        return resolved

    def build_from_directory(self, image_dir: Union[str, Path], metadata: Dict[str, Dict] = None,
                             progress=None) -> CatalogBuildResult:
        """Embed every reference image; unreadable images are reported, not fatal"""
        image_dir = Path(image_dir)
        if not image_dir.is_dir():
            raise CatalogLoadError(f"Reference image directory not found: {image_dir}")

        result = CatalogBuildResult()
        items = self._resolve_images(image_dir, metadata)
        for path, meta in (progress(items) if progress else items):
            try:
                entry, image_hash = self.build_entry(path, meta)
            except ImageLoadError as e:
                result.failures.append((str(path), str(e)))
                logger.warning(f"Skipping {path}: {str(e)}")
                continue

            result.entries.append(entry)
            result.image_hashes[entry.id] = image_hash
            result.image_paths[entry.id] = str(path)

        result.near_duplicates = self.find_near_duplicates(result.image_hashes)
        logger.info(f"Built {len(result.entries)} catalog embeddings, {len(result.failures)} failures, "
                    f"{len(result.near_duplicates)} near-identical art pairs")
        return result

    def find_near_duplicates(self, image_hashes: Dict[str, str], chunk: int = 256) -> List[Tuple[str, str, int]]:
        """Pairs of cards whose art hashes differ by at most the threshold bits"""
        ids = list(image_hashes)
        if len(ids) < 2:
            return []

        bits = np.array([imagehash.hex_to_hash(image_hashes[i]).hash.ravel() for i in ids], dtype=bool)
        pairs = []
        for start in range(0, len(ids), chunk):
            block = bits[start:start + chunk]
            distances = (block[:, None, :] != bits[None, :, :]).sum(axis=2)
            for row, col in zip(*np.nonzero(distances <= self.hash_threshold)):
                i = start + int(row)
                j = int(col)
                if i < j:
                    pairs.append((ids[i], ids[j], int(distances[row, col])))
        return pairs

    def write_json(self, result: CatalogBuildResult, output_path: Union[str, Path]):
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        records = []
        for entry in result.entries:
            record = entry.to_dict()
            record['embedding'] = [round(v, 8) for v in record['embedding']]
            record['image_hash'] = result.image_hashes.get(entry.id)
            records.append(record)

        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(records, f)
        logger.info(f"Wrote {len(records)} catalog records to {output_path}")

    def write_database(self, result: CatalogBuildResult, db_manager: DatabaseManager) -> int:
        db_manager.create_tables()
        session = db_manager.get_session()
        try:
            repo = CatalogRepository(session)
            for entry in result.entries:
                repo.upsert_entry(entry, result.image_hashes.get(entry.id), result.image_paths.get(entry.id))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Catalog database write failed: {str(e)}")
            raise
        finally:
            session.close()
        logger.info(f"Upserted {len(result.entries)} catalog rows")
        return len(result.entries)
