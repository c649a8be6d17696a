
import numpy as np
import pytest

from models import CatalogEntry
from ocr_extractor import (CardTextExtractor, binarize, compute_text_match_score,
                           extract_card_id, find_ocr_matches, normalize_text)


@pytest.fixture
def named_entries():
    names = ["Blazing Phoenix", "Tidal Sentinel", "Verdant Stalker", "Blazing Phoenix Alpha"]
    return [CatalogEntry(id=f"OGN-{i:03d}", display_name=name) for i, name in enumerate(names)]


class TestTextMatching:

    def test_normalize_text(self):
        assert normalize_text("  Tidal   Sentinel!! ") == "tidal sentinel"
        assert normalize_text("") == ""
        assert normalize_text(None) == ""

    def test_exact_match_after_normalization(self):
        assert compute_text_match_score("BLAZING PHOENIX!", "blazing phoenix") == 1.0

    def test_empty_text_scores_zero(self):
        assert compute_text_match_score("", "Blazing Phoenix") == 0.0
        assert compute_text_match_score("???", "Blazing Phoenix") == 0.0

    def test_single_typo(self):
        # one substitution in fifteen characters
        assert compute_text_match_score("Blazing Phoenlx", "Blazing Phoenix") == pytest.approx(14 / 15)

    def test_find_ocr_matches_ranks_best_first(self, named_entries):
        matches = find_ocr_matches("Blazing Phonix", named_entries)
        assert matches[0][0].display_name == "Blazing Phoenix"
        assert matches[0][1] > 0.9
        assert all(score >= 0.4 for _, score in matches)
        assert "Tidal Sentinel" not in [entry.display_name for entry, _ in matches]

    def test_find_ocr_matches_limit(self, named_entries):
        assert len(find_ocr_matches("Blazing Phoenix", named_entries, top_n=1)) == 1

    def test_find_ocr_matches_without_text(self, named_entries):
        assert find_ocr_matches("", named_entries) == []
        assert find_ocr_matches("Blazing", []) == []


class TestCardId:

    @pytest.mark.parametrize("text,expected", [
        ("OGN-042", "OGN-042"),
        ("ogn-042 foil", "OGN-042"),
        ("Card OGN - 042", "OGN-042"),
        ("SFD-7", None),
        ("", None),
    ])
    def test_extract_card_id(self, text, expected):
        assert extract_card_id(text) == expected


def test_binarize_outputs_two_levels():
    gray = np.tile(np.arange(256, dtype=np.uint8), (20, 1))
    assert set(np.unique(binarize(gray))) <= {0, 255}
    fixed = binarize(gray, 140)
    assert fixed[0, 140] == 0
    assert fixed[0, 141] == 255


class TestCardTextExtractor:

    def test_id_region_is_upscaled_strip(self, cards, fake_engine):
        extractor = CardTextExtractor(engine=fake_engine(), engine_name="fake")
        region = extractor.prepare_id_region(cards["stripes"])
        assert region.shape == (350, 1000)
        assert set(np.unique(region)) <= {0, 255}

    def test_confident_read_skips_rotation(self, cards, fake_engine):
        engine = fake_engine([("OGN-042", 90.0)])
        result = CardTextExtractor(engine=engine, engine_name="fake").recognize_card_id(cards["stripes"])
        assert result.card_id == "OGN-042"
        assert not result.rotated
        assert len(engine.calls) == 1

    def test_upside_down_card_is_read_after_rotation(self, cards, fake_engine):
        engine = fake_engine([("0GN 4Z", 30.0), ("OGN-042", 80.0)])
        result = CardTextExtractor(engine=engine, engine_name="fake").recognize_card_id(cards["stripes"])
        assert result.card_id == "OGN-042"
        assert result.rotated
        assert result.confidence == 80.0
        assert len(engine.calls) == 2

    def test_weak_read_is_kept_when_rotation_is_worse(self, cards, fake_engine):
        engine = fake_engine([("OGN-042", 40.0), ("", 0.0)])
        result = CardTextExtractor(engine=engine, engine_name="fake").recognize_card_id(cards["stripes"])
        assert result.card_id == "OGN-042"
        assert not result.rotated

    def test_engine_failure_yields_empty_result(self, cards, fake_engine):
        engine = fake_engine([RuntimeError("engine crashed"), RuntimeError("engine crashed")])
        result = CardTextExtractor(engine=engine, engine_name="fake").recognize_card_id(cards["stripes"])
        assert result.card_id is None
        assert not result.has_text
        assert result.confidence == 0.0

    def test_recognize_combines_id_and_name(self, cards, fake_engine):
        engine = fake_engine([("OGN-001", 92.0), ("Blazing Phoenix", 81.0)])
        result = CardTextExtractor(engine=engine, engine_name="fake").recognize(cards["stripes"])
        assert result.text == "Blazing Phoenix"
        assert result.card_id == "OGN-001"
        assert result.confidence == 81.0
        assert result.engine == "fake"

    def test_disabled_engine(self, cards):
        extractor = CardTextExtractor(engine_name="none")
        assert not extractor.available
        result = extractor.recognize(cards["stripes"])
        assert not result.has_text
        assert result.card_id is None

    def test_failed_engine_build_is_unavailable(self, cards, monkeypatch):
        import ocr_extractor

        def broken(name):
            raise RuntimeError(f"{name} binary missing")

        monkeypatch.setattr(ocr_extractor, "create_engine", broken)
        extractor = CardTextExtractor(engine_name="tesseract")
        assert not extractor.available
        assert isinstance(extractor.handle.error, RuntimeError)
        assert not extractor.recognize(cards["stripes"]).has_text
