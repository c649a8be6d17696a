#!/usr/bin/env python3
"""
Command Line Interface for the Card Scanning Engine
Identify cards from images or a camera, build catalogs, and run embedding diagnostics
"""
import os
import sys
import json
import logging
import queue
import time
import click
from pathlib import Path

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import settings, ensure_directories
from exceptions import CatalogLoadError, ImageLoadError, ModelLoadError
from frame_source import CameraFrameSource, load_image_rgba
from catalog_manager import CatalogBuilder, open_catalog, load_metadata
from models import CatalogRepository, DatabaseManager
from ocr_extractor import CardTextExtractor
from main_processor import CardScanningSystem, ScanLoop, configure_logging
from debug_tool import DebugTool

def _load_catalog(source):
    """Catalog load failures are fatal for every scanning command"""
    try:
        catalog = open_catalog(source)
        entries = catalog.list_catalog()
    except CatalogLoadError as e:
        click.echo(f"❌ Catalog error: {str(e)}")
        sys.exit(1)

    if catalog.diagnostics and catalog.diagnostics.warnings:
        for warning in catalog.diagnostics.warnings:
            click.echo(f"⚠️  {warning}")
    return entries

def _build_system(catalog, use_ocr):
    entries = _load_catalog(catalog)
    text_extractor = CardTextExtractor() if use_ocr else None
    system = CardScanningSystem(entries, text_extractor=text_extractor)

    cnn = system.feature_extractor.cnn_embedder
    if cnn is not None and not cnn.available:
        click.echo(f"❌ Embedding model unavailable: {cnn.handle.error}")
        sys.exit(1)
    return system

def _feedback_sink(database_url):
    """Persist confirmation feedback to the database"""
    db_manager = DatabaseManager(database_url)
    db_manager.create_tables()

    def store(sample):
        session = db_manager.get_session()
        try:
            CatalogRepository(session).add_feedback(sample)
            session.commit()
        finally:
            session.close()
    return store

@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
def cli(verbose):
    """Card Scanning Engine CLI

    Recognize trading cards against a catalog of precomputed embeddings.
    """
    configure_logging()
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

@cli.command()
@click.argument('image_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--catalog', '-c', default=None, help='Catalog JSON path or database URL')
@click.option('--ocr/--no-ocr', default=True, help='Use OCR as a second signal')
def identify(image_path, catalog, ocr):
    """Identify the card in a single photo (manual scan)"""
    system = _build_system(catalog, ocr)

    try:
        frame = load_image_rgba(image_path)
    except ImageLoadError as e:
        click.echo(f"❌ {str(e)}")
        sys.exit(1)

    analysis = system.analyze_frame(frame, use_ocr=ocr)
    if analysis is None:
        click.echo("❌ Could not process image")
        sys.exit(1)

    norm = analysis.normalization
    if norm.used_fallback:
        click.echo(f"⚠️  {norm.message}")
    else:
        click.echo(f"🎯 Card detected (confidence {norm.confidence:.2f}, coverage {norm.coverage:.0%})")

    if analysis.quality.issues:
        click.echo(f"⚠️  Quality: {', '.join(analysis.quality.issues)}")
    if analysis.ocr is not None and analysis.ocr.has_text:
        click.echo(f"🔤 OCR: '{analysis.ocr.text}' ({analysis.ocr.confidence:.0f}%)"
                   + (f", id {analysis.ocr.card_id}" if analysis.ocr.card_id else ""))

    fusion = analysis.fusion
    if not fusion.candidates:
        click.echo("❌ No candidates (empty catalog?)")
        sys.exit(1)

    click.echo("\n📊 Candidates:")
    for i, c in enumerate(fusion.candidates, 1):
        click.echo(f"   {i}. {c.entry.display_name} [{c.entry.id}] "
                   f"combined {c.combined_score:.3f} (visual {c.visual_score:.3f}, ocr {c.ocr_score:.3f}) "
                   f"- {c.confidence_band.value}")

    if fusion.message:
        click.echo(f"\n💬 {fusion.message}")
    elif fusion.is_confident:
        click.echo(f"\n✅ Match: {fusion.best.entry.display_name}")

@cli.command()
@click.option('--catalog', '-c', default=None, help='Catalog JSON path or database URL')
@click.option('--camera', type=int, default=0, help='Camera device index')
@click.option('--mode', type=click.Choice(['confirm', 'propose']), default='confirm',
              help='Auto-confirm after repeated detections, or propose stable guesses')
@click.option('--duration', type=float, default=None, help='Stop after N seconds')
@click.option('--ocr/--no-ocr', default=False, help='Use OCR during auto-scan')
@click.option('--record-feedback', is_flag=True, help='Store confirmations in DATABASE_URL')
def scan(catalog, camera, mode, duration, ocr, record_feedback):
    """Scan cards continuously from a camera"""
    system = _build_system(catalog, ocr)
    system.use_ocr_in_auto = ocr
    if record_feedback:
        system.feedback_sink = _feedback_sink(settings.DATABASE_URL)

    source = CameraFrameSource(camera)
    if not source.open():
        click.echo(f"❌ Could not open camera {camera}")
        sys.exit(1)

    events = queue.Queue()
    loop = ScanLoop(system, source, mode=mode, events=events)
    loop.start()
    click.echo(f"📷 Scanning ({mode} mode). Press Ctrl+C to stop.")

    started = time.monotonic()
    last_status = None
    try:
        while duration is None or time.monotonic() - started < duration:
            try:
                event = events.get(timeout=0.2)
                click.echo(f"✅ {event.display_name} [{event.entry_id}]")
            except queue.Empty:
                pass

            if mode == 'propose':
                status = system.proposals.status
                if status.state != last_status:
                    click.echo(f"   {status.message}")
                    last_status = status.state
                if system.proposals.pending is not None:
                    pending = system.proposals.pending
                    if click.confirm(f"Add {pending.entry.display_name}?", default=True):
                        loop.confirm_pending()
                    else:
                        loop.cancel_pending()
    except KeyboardInterrupt:
        pass
    finally:
        loop.stop()
        source.close()

    summary = system.get_processing_summary()
    click.echo(f"\n📊 Frames analyzed: {summary['frames_analyzed']}, confirmed: {summary['cards_confirmed']}")

@cli.command()
@click.argument('image_a', type=click.Path(exists=True, dir_okay=False))
@click.argument('image_b', type=click.Path(exists=True, dir_okay=False))
@click.option('--detect', is_flag=True, help='Run card detection first (camera photos)')
def compare(image_a, image_b, detect):
    """Compare the embeddings of two images"""
    try:
        result = DebugTool(detect_card=detect).compare_images(image_a, image_b)
    except (ImageLoadError, ModelLoadError) as e:
        click.echo(f"❌ {str(e)}")
        sys.exit(1)
    click.echo(json.dumps(result, indent=2))

@cli.command()
@click.argument('image_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--detect', is_flag=True, help='Run card detection first (camera photos)')
def encode(image_path, detect):
    """Show the embedding summary for one image"""
    try:
        result = DebugTool(detect_card=detect).encode_image(image_path)
    except (ImageLoadError, ModelLoadError) as e:
        click.echo(f"❌ {str(e)}")
        sys.exit(1)
    click.echo(json.dumps(result, indent=2))

@cli.command('debug')
@click.argument('image_path', type=click.Path(exists=True, dir_okay=False))
def debug_image(image_path):
    """Step through detection and embedding for one photo"""
    try:
        DebugTool().debug_single_image(image_path)
    except (ImageLoadError, ModelLoadError) as e:
        click.echo(f"❌ {str(e)}")
        sys.exit(1)

@cli.command('build-catalog')
@click.argument('image_dir', type=click.Path(exists=True, file_okay=False))
@click.option('--metadata', '-m', type=click.Path(exists=True, dir_okay=False),
              help='JSON with card names, sets and rarities keyed by id')
@click.option('--output', '-o', default=None, help='Catalog JSON output path')
@click.option('--database', is_flag=True, help='Also upsert rows into DATABASE_URL')
def build_catalog(image_dir, metadata, output, database):
    """Compute catalog embeddings for a directory of reference images"""
    ensure_directories(settings)
    output = output or settings.CATALOG_PATH
    meta = load_metadata(metadata) if metadata else None
    builder = CatalogBuilder()

    def progress(items):
        with click.progressbar(items, label='Embedding cards') as bar:
            for item in bar:
                yield item

    try:
        result = builder.build_from_directory(image_dir, meta, progress=progress)
    except (CatalogLoadError, ModelLoadError) as e:
        click.echo(f"❌ {str(e)}")
        sys.exit(1)

    builder.write_json(result, output)
    click.echo(f"✅ {len(result.entries)} cards written to {output}")

    if database:
        count = builder.write_database(result, DatabaseManager(settings.DATABASE_URL))
        click.echo(f"🗄️  {count} rows upserted into {settings.DATABASE_URL}")

    for path, error in result.failures:
        click.echo(f"   ❌ {path}: {error}")
    for a, b, distance in result.near_duplicates:
        click.echo(f"   ⚠️  Near-identical art: {a} / {b} (hash distance {distance})")

@cli.command('catalog-info')
@click.option('--catalog', '-c', default=None, help='Catalog JSON path or database URL')
def catalog_info(catalog):
    """Validate a catalog and show ingestion diagnostics"""
    try:
        source = open_catalog(catalog)
        entries = source.list_catalog()
    except CatalogLoadError as e:
        click.echo(f"❌ Catalog error: {str(e)}")
        sys.exit(1)

    diagnostics = source.diagnostics.to_dict()
    click.echo(f"📚 Catalog: {catalog or settings.CATALOG_PATH}")
    click.echo(f"   • Valid entries: {diagnostics['valid']}")
    click.echo(f"   • Invalid entries: {diagnostics['invalid']}")
    click.echo(f"   • Re-normalized: {diagnostics['renormalized']}")
    click.echo(f"   • Duplicate ids: {diagnostics['duplicates']}")
    for sample in diagnostics['invalid_samples']:
        click.echo(f"   ❌ {sample}")
    for warning in diagnostics['warnings']:
        click.echo(f"   ⚠️  {warning}")

    sets = sorted({e.set_label for e in entries if e.set_label})
    if sets:
        click.echo(f"   • Sets: {', '.join(sets)}")

@cli.command('feedback-stats')
def feedback_stats():
    """Show how often proposed matches were accepted as-is"""
    db_manager = DatabaseManager(settings.DATABASE_URL)
    db_manager.create_tables()
    session = db_manager.get_session()
    try:
        stats = CatalogRepository(session).feedback_stats()
    finally:
        session.close()

    click.echo(f"📊 Feedback samples: {stats['total_samples']}")
    click.echo(f"   • Accepted: {stats['correct_count']}")
    click.echo(f"   • Corrected: {stats['corrected_count']}")
    click.echo(f"   • Accuracy: {stats['accuracy']:.1%}")

@cli.command()
@click.argument('pairs_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--output', '-o', help='Write results as CSV')
@click.option('--detect', is_flag=True, help='Run card detection first (camera photos)')
def sanity(pairs_file, output, detect):
    """Run self-match / same-card / different-card checks

    PAIRS_FILE is a JSON list of {"scenario", "image_a", "image_b"} objects.
    """
    with open(pairs_file, 'r', encoding='utf-8') as f:
        pairs = [(p['scenario'], p['image_a'], p['image_b']) for p in json.load(f)]

    report = DebugTool(detect_card=detect).run_sanity_suite(pairs)
    for _, row in report.iterrows():
        icon = {'PASS': '✅', 'WARN': '⚠️ ', 'FAIL': '❌'}[row['status']]
        click.echo(f"{icon} {row['scenario']}: {row['cosine_similarity']:.4f} "
                   f"({Path(row['image_a']).name} vs {Path(row['image_b']).name}) {row['error']}")

    if output:
        report.to_csv(output, index=False)
        click.echo(f"📄 Report saved to {output}")

    if (report['status'] == 'FAIL').any():
        sys.exit(1)

@cli.command()
def config():
    """Show current configuration"""
    click.echo("⚙️  Current Configuration:")

    click.echo(f"\n📁 Catalog:")
    click.echo(f"   • JSON: {settings.CATALOG_PATH}")
    click.echo(f"   • Database: {settings.DATABASE_URL}")

    click.echo(f"\n🔍 Matching:")
    click.echo(f"   • Embedding backend: {settings.EMBEDDING_BACKEND}")
    click.echo(f"   • Weights: visual {settings.VISUAL_WEIGHT}, OCR {settings.OCR_WEIGHT}")
    click.echo(f"   • Bands: {settings.EXCELLENT_THRESHOLD}/{settings.GOOD_THRESHOLD}/{settings.FAIR_THRESHOLD}")
    click.echo(f"   • Auto-confirm: {settings.AUTO_CONFIRM_THRESHOLD}, margin {settings.MARGIN_THRESHOLD}")

    click.echo(f"\n⏱️  Confirmation:")
    click.echo(f"   • Interval: {settings.SCAN_INTERVAL_SECONDS}s, window {settings.DETECTION_WINDOW_SECONDS}s")
    click.echo(f"   • Detections required: {settings.MIN_DETECTIONS_REQUIRED}")
    click.echo(f"   • Cooldown: {settings.DUPLICATE_COOLDOWN_SECONDS}s, policy {settings.CONFIRMATION_POLICY}")

    click.echo(f"\n🔤 OCR:")
    click.echo(f"   • Engine: {settings.OCR_ENGINE}")

if __name__ == '__main__':
    cli()
