"""
Main Processing System - Orchestrates card recognition from camera frame to confirmed match
"""
import logging
import queue
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import numpy as np

from config import settings
from models import (CatalogEntry, ConfirmedMatch, FeedbackSample, FusionResult, NormalizationResult,
                    OCRResult, PendingMatch, QualityReport)
from feature_extractor import FeatureExtractor, assess_quality
from card_identifier import SimilarityIndex, MultiSignalMatcher
from frame_source import validate_frame
from ocr_extractor import CardTextExtractor
from confirmation_handler import ConfirmationTracker, ProposalTracker, ScanStatus

logger = logging.getLogger(__name__)

def configure_logging(level: str = None, log_file: str = None):
    """Root logging setup shared by the CLI and long-running scanners"""
    level = level or settings.LOG_LEVEL
    log_file = log_file if log_file is not None else settings.LOG_FILE
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file) if log_file else logging.NullHandler(),
            logging.StreamHandler()
        ]
    )

@dataclass
class FrameAnalysis:
    """Everything computed for one frame; no scanner state is touched while building it"""
    normalization: NormalizationResult
    quality: QualityReport
    embedding: np.ndarray = field(repr=False)
    fusion: FusionResult
    ocr: Optional[OCRResult] = None


class CardScanningSystem:
    """Per-frame pipeline plus the confirmation state it feeds"""

    def __init__(self, catalog_entries: List[CatalogEntry], text_extractor: Optional[CardTextExtractor] = None,
                 use_ocr_in_auto: bool = None, quality_gate: bool = None,
                 clock: Callable[[], float] = time.monotonic,
                 feedback_sink: Optional[Callable[[FeedbackSample], None]] = None,
                 feature_extractor: Optional[FeatureExtractor] = None):
        if not catalog_entries:
            logger.warning("Catalog is empty; every frame will report no match")

        self.feature_extractor = feature_extractor or FeatureExtractor()
        self.card_detector = self.feature_extractor.detector
        self.index = SimilarityIndex(catalog_entries)
        self.matcher = MultiSignalMatcher(self.index)
        self.text_extractor = text_extractor
        self.tracker = ConfirmationTracker(self.index.get, clock=clock)
        self.proposals = ProposalTracker(clock=clock)
        self.clock = clock
        self.feedback_sink = feedback_sink
        self.feedback: List[FeedbackSample] = []

        self.use_ocr_in_auto = settings.AUTO_SCAN_USE_OCR if use_ocr_in_auto is None else use_ocr_in_auto
        self.quality_gate = settings.AUTO_SCAN_QUALITY_GATE if quality_gate is None else quality_gate
        self.min_coverage = settings.MIN_CARD_COVERAGE

        # Processing statistics
        self.stats = {
            'frames_analyzed': 0,
            'frames_failed': 0,
            'frames_gated': 0,
            'cards_confirmed': 0,
            'manual_scans': 0,
        }

    def analyze_frame(self, frame: np.ndarray, use_ocr: bool = False) -> Optional[FrameAnalysis]:
        """
        Normalize, embed and rank one frame
        Returns None for frames that cannot be processed at all
        """
        try:
            normalization = self.card_detector.normalize(frame)
            if normalization is None:
                self.stats['frames_failed'] += 1
                return None

            art = self.feature_extractor.crop_art(normalization.image)
            embedding = self.feature_extractor.embed_art(art)
            quality = assess_quality(art)

            ocr_result = None
            if use_ocr and self.text_extractor is not None:
                ocr_result = self.text_extractor.recognize(normalization.image)

            if ocr_result is not None:
                fusion = self.matcher.match(embedding, ocr_result)
            else:
                fusion = self.matcher.quick_visual_match(embedding)

            self.stats['frames_analyzed'] += 1
            return FrameAnalysis(normalization, quality, embedding, fusion, ocr_result)

        except Exception as e:
            self.stats['frames_failed'] += 1
            logger.warning(f"Frame analysis failed: {str(e)}")
            return None

    def gate_reasons(self, analysis: FrameAnalysis) -> List[str]:
        """Advisory reasons to keep a frame out of the auto-confirm buffer"""
        reasons = []
        if analysis.normalization.used_fallback:
            reasons.append("no_card_detected")
        elif analysis.normalization.coverage < self.min_coverage:
            reasons.append("needs_more_card")
        reasons.extend(analysis.quality.issues)
        return reasons

    def record_analysis(self, analysis: Optional[FrameAnalysis], now: float = None) -> Optional[ConfirmedMatch]:
        """Feed one frame's outcome to the confirmation buffer (control path only)"""
        now = self.clock() if now is None else now
        best = analysis.fusion.best if analysis is not None else None

        if best is not None:
            reasons = self.gate_reasons(analysis) if self.quality_gate else []
            # Near-ties and thin leads go to the user, never to auto-confirm
            if analysis.fusion.ambiguous:
                reasons.append("ambiguous")
            elif not analysis.fusion.has_margin:
                reasons.append("no_margin")
            if reasons:
                self.stats['frames_gated'] += 1
                logger.debug(f"Frame gated: {', '.join(reasons)}")
                best = None

        if best is None:
            confirmed = self.tracker.record(None, now=now)
        else:
            confirmed = self.tracker.record(best.entry.id, best.combined_score, now)

        if confirmed is not None:
            self.stats['cards_confirmed'] += 1
        return confirmed

    def scan_frame(self, frame: np.ndarray, now: float = None) -> Optional[ConfirmedMatch]:
        """Synchronous auto-scan tick"""
        analysis = self.analyze_frame(frame, use_ocr=self.use_ocr_in_auto)
        return self.record_analysis(analysis, now)

    def observe_for_proposal(self, analysis: Optional[FrameAnalysis], now: float = None) -> ScanStatus:
        """Stable-guess mode counterpart of record_analysis"""
        now = self.clock() if now is None else now
        if analysis is None:
            return self.proposals.status
        if analysis.normalization.used_fallback or analysis.normalization.coverage < self.min_coverage:
            return self.proposals.report_insufficient_card()
        return self.proposals.observe(analysis.fusion, analysis.embedding, now)

    def open_proposal(self, analysis: Optional[FrameAnalysis]) -> Optional[PendingMatch]:
        """Surface the best candidate of a manual scan for explicit confirmation"""
        self.stats['manual_scans'] += 1
        if analysis is None:
            return None

        pending = PendingMatch.from_fusion(analysis.fusion, analysis.embedding)
        if pending is None:
            logger.info("Manual scan found no candidates")
            return None

        self.proposals.propose(pending)
        logger.info(f"Manual scan best guess: {pending.entry.display_name} ({pending.score:.3f})")
        return pending

    def manual_scan(self, frame: np.ndarray) -> Optional[PendingMatch]:
        """Score the current frame once with every signal; never commits on its own"""
        use_ocr = self.text_extractor is not None
        return self.open_proposal(self.analyze_frame(frame, use_ocr=use_ocr))

    def confirm_pending(self, selected: Optional[CatalogEntry] = None, now: float = None) -> Optional[ConfirmedMatch]:
        """User accepted the open proposal, optionally picking a different candidate"""
        now = self.clock() if now is None else now
        result = self.proposals.confirm(selected, now)
        if result is None:
            return None

        match, feedback = result
        self.tracker.mark_confirmed(match.entry, match.score, now)
        self.stats['cards_confirmed'] += 1
        self.feedback.append(feedback)

        if self.feedback_sink is not None:
            try:
                self.feedback_sink(feedback)
            except Exception as e:
                logger.warning(f"Failed to store scan feedback: {str(e)}")

        return match

    def cancel_pending(self):
        self.proposals.cancel()

    def get_processing_summary(self) -> Dict:
        return {
            'catalog_size': len(self.index),
            'ocr_enabled': self.text_extractor is not None,
            'tracker_state': self.tracker.state.value,
            'current_candidate': self.tracker.current_candidate,
            **self.stats,
        }


class ScanLoop:
    """
    Periodic scan driver

    One tick per interval, never more than one scan in flight: a tick that finds
    the previous scan still running is skipped, not queued. Frame analysis runs
    on a worker thread with a timeout; its result is applied back on this loop's
    control path. Stopping the loop discards any result that arrives afterwards.
    """

    def __init__(self, system: CardScanningSystem, frame_source, interval: float = None,
                 frame_timeout: float = None, mode: str = "confirm",
                 events: Optional[queue.Queue] = None, clock: Callable[[], float] = None):
        if mode not in ("confirm", "propose"):
            raise ValueError(f"Unknown scan mode: {mode}")
        self.system = system
        self.frame_source = frame_source
        self.interval = settings.SCAN_INTERVAL_SECONDS if interval is None else interval
        self.frame_timeout = settings.FRAME_TIMEOUT_SECONDS if frame_timeout is None else frame_timeout
        self.mode = mode
        self.events = events if events is not None else queue.Queue()
        self.clock = clock or system.clock

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="card-scan")
        self._in_flight: Optional[Future] = None
        self._scan_lock = threading.Lock()
        self._stop = threading.Event()
        self._paused = threading.Event()
        self._generation = 0
        self._thread: Optional[threading.Thread] = None

        self.stats = {
            'ticks': 0,
            'skipped': 0,
            'timeouts': 0,
            'failed': 0,
            'discarded': 0,
            'confirmed': 0,
        }

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    @property
    def busy(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="scan-loop", daemon=True)
        self._thread.start()
        logger.info(f"Scan loop started ({self.mode} mode, every {self.interval:.2f}s)")

    def _run(self):
        while not self._stop.wait(self.interval):
            if self._paused.is_set():
                continue
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scan tick crashed: {str(e)}")

    def _run_bounded(self, fn, *args, **kwargs):
        """Run on the worker with a timeout; a slow or failing frame yields None"""
        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except RuntimeError:
            # Executor already shut down by stop()
            return None
        self._in_flight = future

        try:
            return future.result(timeout=self.frame_timeout)
        except FutureTimeoutError:
            self.stats['timeouts'] += 1
            logger.warning(f"Frame analysis exceeded {self.frame_timeout:.1f}s; treating frame as failed")
        except CancelledError:
            pass
        except Exception as e:
            self.stats['failed'] += 1
            logger.warning(f"Frame analysis failed: {str(e)}")
        return None

    def tick(self, now: float = None) -> Optional[ConfirmedMatch]:
        """One scan; returns the confirmed match if this tick produced one"""
        if self._stop.is_set():
            return None
        if not self._scan_lock.acquire(blocking=False):
            self.stats['skipped'] += 1
            return None

        try:
            if self.busy:
                self.stats['skipped'] += 1
                logger.debug("Previous scan still running, skipping tick")
                return None

            if self.mode == "propose" and not self.system.proposals.accepts_frames(self.clock() if now is None else now):
                return None

            self.stats['ticks'] += 1
            generation = self._generation
            frame = self.frame_source.capture_frame()
            if frame is not None and not validate_frame(frame):
                logger.debug("Ignoring unusable frame from source")
                frame = None

            analysis = None
            if frame is not None:
                use_ocr = self.system.use_ocr_in_auto and self.system.text_extractor is not None
                analysis = self._run_bounded(self.system.analyze_frame, frame, use_ocr=use_ocr)

            if generation != self._generation or self._stop.is_set():
                self.stats['discarded'] += 1
                logger.debug("Discarding scan result that arrived after cancellation")
                return None

            now = self.clock() if now is None else now
            if self.mode == "propose":
                self.system.observe_for_proposal(analysis, now)
                return None

            confirmed = self.system.record_analysis(analysis, now)
            if confirmed is not None:
                self.stats['confirmed'] += 1
                self.events.put(confirmed.to_event())
            return confirmed
        finally:
            self._scan_lock.release()

    def manual_scan(self) -> Optional[PendingMatch]:
        """
        Pause the loop and score the current frame with every signal
        The loop stays paused until the proposal is confirmed or cancelled
        """
        self._paused.set()
        with self._scan_lock:
            if self.busy:
                try:
                    self._in_flight.result(timeout=self.frame_timeout)
                except Exception:
                    logger.debug("Previous scan did not finish cleanly before manual scan")

            generation = self._generation
            frame = self.frame_source.capture_frame()
            if frame is None or not validate_frame(frame):
                logger.info("Manual scan: no frame available")
                self._paused.clear()
                return None

            use_ocr = self.system.text_extractor is not None
            analysis = self._run_bounded(self.system.analyze_frame, frame, use_ocr=use_ocr)
            if generation != self._generation or self._stop.is_set():
                self.stats['discarded'] += 1
                return None

            pending = self.system.open_proposal(analysis)
            if pending is None:
                self._paused.clear()
            return pending

    def confirm_pending(self, selected: Optional[CatalogEntry] = None) -> Optional[ConfirmedMatch]:
        with self._scan_lock:
            match = self.system.confirm_pending(selected, self.clock())
            if match is not None:
                self.stats['confirmed'] += 1
                self.events.put(match.to_event())
        self.resume()
        return match

    def cancel_pending(self):
        with self._scan_lock:
            self.system.cancel_pending()
        self.resume()

    def pause(self):
        self._paused.set()

    def resume(self):
        self._paused.clear()

    def stop(self, timeout: float = 2.0):
        """Stop ticking and drop whatever is still in flight"""
        self._stop.set()
        self._generation += 1
        if self._in_flight is not None:
            self._in_flight.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)

        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        logger.info(f"Scan loop stopped: {self.stats}")
