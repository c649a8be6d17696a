import json

import numpy as np
import pytest

from catalog_manager import (CatalogBuilder, DatabaseCatalog, JsonCatalog, ingest_records,
                             load_metadata, normalize_catalog_record, open_catalog, parse_embedding)
from exceptions import CatalogLoadError, EmbeddingValidationError
from feature_extractor import FeatureExtractor
from frame_source import load_image_rgba
from models import CatalogRepository, DatabaseManager, FeedbackSample
from conftest import unit_vector_with_similarity


def unit(axis, similarity=0.5):
    return [float(v) for v in unit_vector_with_similarity(similarity, axis)]


class TestParseEmbedding:

    def test_accepts_json_string(self):
        vector, renormalized = parse_embedding(json.dumps(unit(3)))
        assert vector.shape == (256,)
        assert not renormalized

    def test_renormalizes_scaled_vector(self):
        vector, renormalized = parse_embedding([2 * v for v in unit(3)])
        assert renormalized
        assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-6)

    @pytest.mark.parametrize("raw", [
        None,
        "not json",
        [],
        [0.5] * 10,
        [0.0] * 256,
        [float("nan")] + [0.0] * 255,
        ["a"] * 256,
    ])
    def test_rejects_unusable(self, raw):
        with pytest.raises(EmbeddingValidationError):
            parse_embedding(raw)


class TestRecordNormalization:

    def test_camel_case_aliases(self):
        entry, _ = normalize_catalog_record({
            'cardId': 'OGN-001', 'name': 'Blazing Phoenix', 'setName': 'Origins',
            'rarity': 'rare', 'embedding': unit(1),
        })
        assert entry.id == 'OGN-001'
        assert entry.display_name == 'Blazing Phoenix'
        assert entry.set_label == 'Origins'
        assert entry.rarity == 'rare'

    def test_snake_case_aliases(self):
        entry, _ = normalize_catalog_record({
            'card_id': 'OGN-002', 'display_name': 'Tidal Sentinel', 'set_label': 'Origins',
            'embedding': unit(2),
        })
        assert (entry.id, entry.display_name, entry.set_label) == ('OGN-002', 'Tidal Sentinel', 'Origins')
        assert entry.rarity is None

    def test_name_falls_back_to_id(self):
        entry, _ = normalize_catalog_record({'id': 'SFD-010', 'embedding': unit(4)})
        assert entry.display_name == 'SFD-010'
        assert entry.set_label == ''

    def test_missing_id(self):
        with pytest.raises(EmbeddingValidationError):
            normalize_catalog_record({'name': 'Nameless', 'embedding': unit(1)})


class TestIngestion:

    def test_diagnostics(self):
        records = [
            {'id': 'A', 'name': 'Alpha', 'embedding': unit(1)},
            {'id': 'B', 'name': 'Beta', 'embedding': [3 * v for v in unit(2)]},
            {'id': 'C', 'name': 'Broken', 'embedding': [0.1] * 12},
            {'id': 'A', 'name': 'Alpha again', 'embedding': unit(3)},
            "not a record",
        ]
        entries, diagnostics = ingest_records(records)

        assert [e.id for e in entries] == ['A', 'B']
        assert diagnostics.total == 5
        assert diagnostics.valid == 2
        assert diagnostics.invalid == 2
        assert diagnostics.renormalized == 1
        assert diagnostics.duplicates == 1
        assert any(sample.startswith('C:') for sample in diagnostics.invalid_samples)
        assert entries[0].display_name == 'Alpha'

    def test_identical_leading_embeddings_warn(self):
        records = [
            {'id': 'A', 'embedding': unit(1)},
            {'id': 'B', 'embedding': unit(1)},
        ]
        _, diagnostics = ingest_records(records)
        assert any('identical' in w for w in diagnostics.warnings)


class TestJsonCatalog:

    RECORDS = [
        {'id': 'A', 'name': 'Alpha', 'embedding': unit(1)},
        {'id': 'B', 'name': 'Beta', 'embedding': unit(2)},
    ]

    @pytest.mark.parametrize("shape", ["list", "cards", "mapping"])
    def test_accepted_layouts(self, tmp_path, shape):
        if shape == "list":
            data = self.RECORDS
        elif shape == "cards":
            data = {'cards': self.RECORDS}
        else:
            data = {r['id']: {k: v for k, v in r.items() if k != 'id'} for r in self.RECORDS}

        path = tmp_path / "catalog.json"
        path.write_text(json.dumps(data))
        entries = JsonCatalog(path).list_catalog()
        assert sorted(e.id for e in entries) == ['A', 'B']

    def test_loaded_once(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps(self.RECORDS))
        catalog = JsonCatalog(path)
        first = catalog.list_catalog()
        path.unlink()
        assert [e.id for e in catalog.list_catalog()] == [e.id for e in first]
        assert catalog.diagnostics.valid == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogLoadError):
            JsonCatalog(tmp_path / "missing.json").list_catalog()

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text("{not json")
        with pytest.raises(CatalogLoadError):
            JsonCatalog(path).list_catalog()

    def test_open_catalog_dispatch(self, tmp_path):
        assert isinstance(open_catalog(str(tmp_path / "catalog.json")), JsonCatalog)
        assert isinstance(open_catalog(f"sqlite:///{tmp_path / 'catalog.db'}"), DatabaseCatalog)


class TestCatalogBuilder:

    def test_builder_matches_live_embedding(self, card_image_dir):
        result = CatalogBuilder().build_from_directory(card_image_dir)
        assert sorted(e.id for e in result.entries) == ['OGN-001', 'OGN-002', 'SFD-003']

        extractor = FeatureExtractor()
        for entry in result.entries:
            image = load_image_rgba(card_image_dir / f"{entry.id}.png")
            assert np.array_equal(entry.embedding, extractor.compute_card_embedding(image))

    def test_unreadable_image_is_reported(self, card_image_dir):
        (card_image_dir / "broken.png").write_bytes(b"not an image")
        result = CatalogBuilder().build_from_directory(card_image_dir)
        assert len(result.entries) == 3
        assert len(result.failures) == 1
        assert result.failures[0][0].endswith("broken.png")

    def test_metadata_names_cards(self, tmp_path, card_image_dir):
        meta_path = tmp_path / "meta.json"
        meta_path.write_text(json.dumps({
            'OGN-001': {'name': 'Blazing Phoenix', 'setName': 'Origins', 'rarity': 'epic'},
            'OGN-002': {'name': 'Tidal Sentinel', 'setName': 'Origins'},
        }))
        metadata = load_metadata(meta_path)
        result = CatalogBuilder().build_from_directory(card_image_dir, metadata)

        by_id = {e.id: e for e in result.entries}
        assert set(by_id) == {'OGN-001', 'OGN-002'}
        assert by_id['OGN-001'].display_name == 'Blazing Phoenix'
        assert by_id['OGN-001'].rarity == 'epic'
        assert by_id['OGN-002'].set_label == 'Origins'

    def test_missing_directory(self, tmp_path):
        with pytest.raises(CatalogLoadError):
            CatalogBuilder().build_from_directory(tmp_path / "nope")

    def test_near_duplicate_art(self, card_image_dir):
        (card_image_dir / "OGN-001-foil.png").write_bytes((card_image_dir / "OGN-001.png").read_bytes())
        result = CatalogBuilder().build_from_directory(card_image_dir)
        assert any({a, b} == {'OGN-001', 'OGN-001-foil'} and distance == 0
                   for a, b, distance in result.near_duplicates)

    def test_find_near_duplicates_threshold(self):
        builder = CatalogBuilder(hash_threshold=2)
        pairs = builder.find_near_duplicates({
            'a': 'ffffffffffffffff',
            'b': 'fffffffffffffffe',
            'c': '0000000000000000',
        })
        assert pairs == [('a', 'b', 1)]

    def test_json_round_trip(self, tmp_path, card_image_dir):
        builder = CatalogBuilder()
        result = builder.build_from_directory(card_image_dir)
        output = tmp_path / "out" / "catalog.json"
        builder.write_json(result, output)

        loaded = JsonCatalog(output)
        entries = {e.id: e for e in loaded.list_catalog()}
        assert loaded.diagnostics.invalid == 0
        for entry in result.entries:
            assert np.allclose(entries[entry.id].embedding, entry.embedding, atol=1e-6)

    def test_database_round_trip(self, tmp_path, card_image_dir):
        builder = CatalogBuilder()
        result = builder.build_from_directory(card_image_dir)
        db_manager = DatabaseManager(f"sqlite:///{tmp_path / 'catalog.db'}")
        assert builder.write_database(result, db_manager) == 3

        # Upsert is idempotent
        builder.write_database(result, db_manager)
        session = db_manager.get_session()
        try:
            assert CatalogRepository(session).count() == 3
        finally:
            session.close()

        entries = DatabaseCatalog(db_manager).list_catalog()
        assert sorted(e.id for e in entries) == ['OGN-001', 'OGN-002', 'SFD-003']


def test_feedback_stats(tmp_path):
    db_manager = DatabaseManager(f"sqlite:///{tmp_path / 'feedback.db'}")
    db_manager.create_tables()
    session = db_manager.get_session()
    try:
        repo = CatalogRepository(session)
        repo.add_feedback(FeedbackSample(card_id='A', was_correct=True, embedding=np.ones(4)))
        repo.add_feedback(FeedbackSample(card_id='B', was_correct=False, corrected_to='B'))
        session.commit()
        stats = repo.feedback_stats()
    finally:
        session.close()

    assert stats == {'total_samples': 2, 'correct_count': 1, 'corrected_count': 1, 'accuracy': 0.5}
