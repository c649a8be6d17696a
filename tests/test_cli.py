import json

import pytest
from click.testing import CliRunner
from PIL import Image

from catalog_manager import CatalogBuilder
from cli import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def catalog_file(tmp_path, card_image_dir):
    builder = CatalogBuilder()
    path = tmp_path / "catalog.json"
    builder.write_json(builder.build_from_directory(card_image_dir), path)
    return path


def test_config_command(runner):
    result = runner.invoke(cli, ['config'])
    assert result.exit_code == 0
    assert "Current Configuration" in result.output


def test_catalog_info(runner, catalog_file):
    result = runner.invoke(cli, ['catalog-info', '--catalog', str(catalog_file)])
    assert result.exit_code == 0
    assert "Valid entries: 3" in result.output


def test_catalog_info_missing_catalog(runner, tmp_path):
    result = runner.invoke(cli, ['catalog-info', '--catalog', str(tmp_path / "missing.json")])
    assert result.exit_code == 1
    assert "Catalog error" in result.output


def test_identify_photo(runner, tmp_path, catalog_file, frames):
    photo = tmp_path / "photo.png"
    Image.fromarray(frames["checker"]).save(photo)
    result = runner.invoke(cli, ['identify', str(photo), '--catalog', str(catalog_file), '--no-ocr'])
    assert result.exit_code == 0
    assert "Tidal Sentinel" in result.output or "OGN-002" in result.output


def test_compare_outputs_json(runner, card_image_dir):
    image = str(card_image_dir / "OGN-001.png")
    result = runner.invoke(cli, ['compare', image, image])
    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload['cosine_similarity'] == pytest.approx(1.0, abs=1e-5)


def test_build_catalog(runner, tmp_path, card_image_dir):
    output = tmp_path / "built.json"
    result = runner.invoke(cli, ['build-catalog', str(card_image_dir), '--output', str(output)])
    assert result.exit_code == 0
    records = json.loads(output.read_text())
    assert sorted(r['id'] for r in records) == ['OGN-001', 'OGN-002', 'SFD-003']
