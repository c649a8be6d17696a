"""
Temporal Confirmation Module
Turns a stream of noisy per-frame guesses into single confirmed matches, with
duplicate suppression so a card left in frame is not added over and over
"""
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from config import settings
from models import (CatalogEntry, ConfirmedMatch, DetectionSample, FeedbackSample,
                    FusionResult, PendingMatch)

logger = logging.getLogger(__name__)

POLICIES = ("highest_confidence", "arrival")

class TrackerState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    CONFIRMED = "confirmed"

@dataclass
class DetectionGroup:
    candidate_id: str
    count: int
    total_confidence: float
    first_seen: int

    @property
    def average_confidence(self) -> float:
        return self.total_confidence / self.count if self.count else 0.0


class ConfirmationTracker:
    """
    Rolling detection buffer with per-card cooldowns

    Every tick appends at most one sample, prunes samples older than the window,
    groups what is left by card id and confirms one eligible group. All mutation
    happens on the caller's thread; the scan loop is the only caller.
    """

    def __init__(self, lookup: Callable[[str], Optional[CatalogEntry]],
                 window: float = None, min_detections: int = None, min_confidence: float = None,
                 cooldown: float = None, policy: str = None, clock: Callable[[], float] = time.monotonic):
        self.lookup = lookup
        self.window = settings.DETECTION_WINDOW_SECONDS if window is None else window
        self.min_detections = min_detections or settings.MIN_DETECTIONS_REQUIRED
        self.min_confidence = settings.MIN_AVERAGE_CONFIDENCE if min_confidence is None else min_confidence
        self.cooldown = settings.DUPLICATE_COOLDOWN_SECONDS if cooldown is None else cooldown
        self.policy = policy or settings.CONFIRMATION_POLICY
        if self.policy not in POLICIES:
            raise ValueError(f"Unknown confirmation policy: {self.policy}")
        self.clock = clock

        self.samples: List[DetectionSample] = []
        self.cooldowns: Dict[str, float] = {}
        self.current_candidate: Optional[str] = None
        self.last_confirmed: Optional[ConfirmedMatch] = None
        self.state = TrackerState.IDLE

    def add_sample(self, candidate_id: str, confidence: float, timestamp: float = None) -> DetectionSample:
        """Append a detection; timestamps must never go backwards"""
        timestamp = self.clock() if timestamp is None else timestamp
        if self.samples and timestamp < self.samples[-1].timestamp:
            raise ValueError(
                f"Detection at {timestamp} is older than the last buffered one at {self.samples[-1].timestamp}"
            )

        sample = DetectionSample(candidate_id=candidate_id, confidence=float(confidence), timestamp=timestamp)
        self.samples.append(sample)
        return sample

    def prune(self, now: float):
        """Drop samples that have left the window and cooldowns that have expired"""
        self.samples = [s for s in self.samples if now - s.timestamp < self.window]
        self.cooldowns = {cid: ts for cid, ts in self.cooldowns.items() if now - ts < self.cooldown}

    def in_cooldown(self, candidate_id: str, now: float = None) -> bool:
        now = self.clock() if now is None else now
        confirmed_at = self.cooldowns.get(candidate_id)
        return confirmed_at is not None and now - confirmed_at < self.cooldown

    def group_samples(self) -> "OrderedDict[str, DetectionGroup]":
        """Buffered samples grouped by card id, in order of first arrival"""
        groups: "OrderedDict[str, DetectionGroup]" = OrderedDict()
        for index, sample in enumerate(self.samples):
            group = groups.get(sample.candidate_id)
            if group is None:
                groups[sample.candidate_id] = DetectionGroup(sample.candidate_id, 1, sample.confidence, index)
            else:
                group.count += 1
                group.total_confidence += sample.confidence
        return groups

    def _eligible(self, groups: "OrderedDict[str, DetectionGroup]", now: float) -> List[DetectionGroup]:
        eligible = [
            g for g in groups.values()
            if g.count >= self.min_detections
            and g.average_confidence >= self.min_confidence
            and not self.in_cooldown(g.candidate_id, now)
        ]
        if self.policy == "highest_confidence":
            eligible.sort(key=lambda g: (-g.average_confidence, -g.count, g.first_seen))
        return eligible

    def process(self, now: float = None) -> Optional[ConfirmedMatch]:
        """
        Run one decision pass
        Pruning always happens before grouping so an expired sample can never
        count toward a confirmation
        """
        now = self.clock() if now is None else now
        self.prune(now)
        groups = self.group_samples()

        for group in self._eligible(groups, now):
            entry = self.lookup(group.candidate_id)
            if entry is None:
                logger.warning(f"Detected id {group.candidate_id} is not in the catalog")
                continue
            return self._confirm(entry, group, now)

        if groups:
            self.current_candidate = max(groups.values(), key=lambda g: (g.count, -g.first_seen)).candidate_id
            self.state = TrackerState.ACCUMULATING
        else:
            self.current_candidate = None
            self.state = TrackerState.IDLE
        return None

    def record(self, candidate_id: Optional[str], confidence: float = 0.0, now: float = None) -> Optional[ConfirmedMatch]:
        """One scan tick: append the frame's top candidate (if any) and decide"""
        now = self.clock() if now is None else now
        if candidate_id is not None:
            self.add_sample(candidate_id, confidence, now)
        return self.process(now)

    def _confirm(self, entry: CatalogEntry, group: DetectionGroup, now: float) -> ConfirmedMatch:
        self.samples = [s for s in self.samples if s.candidate_id != entry.id]
        self.cooldowns[entry.id] = now
        self.current_candidate = None
        self.state = TrackerState.CONFIRMED

        match = ConfirmedMatch(entry=entry, score=group.average_confidence, timestamp=now)
        self.last_confirmed = match
        logger.info(f"Confirmed {entry.display_name} ({entry.id}) from {group.count} detections, "
                    f"avg confidence {group.average_confidence:.2f}")
        return match

    def mark_confirmed(self, entry: CatalogEntry, score: float, now: float = None) -> ConfirmedMatch:
        """Record a confirmation made outside the buffer (manual mode) so the cooldown applies"""
        now = self.clock() if now is None else now
        group = DetectionGroup(entry.id, 1, score, -1)
        return self._confirm(entry, group, now)

    def reset(self):
        self.samples = []
        self.cooldowns = {}
        self.current_candidate = None
        self.state = TrackerState.IDLE


class ProposalMode(str, Enum):
    SEARCHING = "searching"
    PROPOSAL = "proposal"
    COOLDOWN = "cooldown"

class ScanState(str, Enum):
    READY = "ready"
    NEEDS_MORE_CARD = "needs_more_card"
    SEARCHING = "searching"
    STABILIZING = "stabilizing"
    PROPOSAL = "proposal"
    COOLDOWN = "cooldown"

@dataclass
class ScanStatus:
    state: ScanState
    message: str = ""
    progress: int = 0

@dataclass(frozen=True)
class FramePrediction:
    candidate_id: str
    similarity: float
    margin: float
    timestamp: float

@dataclass(frozen=True)
class RecentScan:
    entry: CatalogEntry
    timestamp: float


class ProposalTracker:
    """
    Stable-guess mode: when the same card tops several frames in a short window
    with a clear lead, it is proposed to the user instead of being committed.
    The user confirms, picks another candidate, or dismisses the proposal.
    """

    def __init__(self, stable_window: float = None, min_stable_matches: int = None,
                 min_similarity: float = None, min_margin: float = None,
                 cooldown: float = None, duplicate_cooldown: float = None,
                 recent_limit: int = None, clock: Callable[[], float] = time.monotonic):
        self.stable_window = stable_window or settings.STABLE_WINDOW_SECONDS
        self.min_stable_matches = min_stable_matches or settings.MIN_STABLE_MATCHES
        self.min_similarity = settings.PROPOSAL_MIN_SIMILARITY if min_similarity is None else min_similarity
        self.min_margin = settings.PROPOSAL_MIN_MARGIN if min_margin is None else min_margin
        self.cooldown = settings.PROPOSAL_COOLDOWN_SECONDS if cooldown is None else cooldown
        self.duplicate_cooldown = settings.DUPLICATE_COOLDOWN_SECONDS if duplicate_cooldown is None else duplicate_cooldown
        self.recent_limit = recent_limit or settings.RECENT_SCANS_LIMIT
        self.clock = clock

        self.mode = ProposalMode.SEARCHING
        self.cooldown_until: Optional[float] = None
        self.pending: Optional[PendingMatch] = None
        self.predictions: List[FramePrediction] = []
        self.recent_scans: List[RecentScan] = []
        self.last_trigger: Optional[Tuple[str, float]] = None
        self.status = ScanStatus(ScanState.READY, "Point the camera at a card")

    def accepts_frames(self, now: float = None) -> bool:
        """False while a proposal is open or the post-confirm cooldown runs"""
        now = self.clock() if now is None else now
        if self.mode == ProposalMode.COOLDOWN:
            if self.cooldown_until is not None and now >= self.cooldown_until:
                self.mode = ProposalMode.SEARCHING
                self.predictions = []
            else:
                return False
        return self.mode != ProposalMode.PROPOSAL

    def report_insufficient_card(self, message: str = "Move closer so the card fills the frame") -> ScanStatus:
        self.status = ScanStatus(ScanState.NEEDS_MORE_CARD, message)
        return self.status

    def observe(self, fusion: FusionResult, embedding: Optional[np.ndarray] = None, now: float = None) -> ScanStatus:
        """Feed one frame's ranking and update the status"""
        now = self.clock() if now is None else now
        if not self.accepts_frames(now):
            if self.mode == ProposalMode.COOLDOWN:
                self.status = ScanStatus(ScanState.COOLDOWN, "Card added")
            return self.status

        top = fusion.best
        if top is None:
            self.status = ScanStatus(ScanState.SEARCHING, "Looking for card...")
            return self.status

        second = fusion.candidates[1] if len(fusion.candidates) > 1 else None
        margin = top.combined_score - second.combined_score if second else top.combined_score

        self.predictions = [p for p in self.predictions if now - p.timestamp <= self.stable_window]
        self.predictions.append(FramePrediction(top.entry.id, top.combined_score, margin, now))

        stats: "OrderedDict[str, Dict]" = OrderedDict()
        for p in self.predictions:
            entry = stats.setdefault(p.candidate_id, {'count': 0, 'max_sim': 0.0, 'max_margin': 0.0})
            entry['count'] += 1
            entry['max_sim'] = max(entry['max_sim'], p.similarity)
            entry['max_margin'] = max(entry['max_margin'], p.margin)

        stable_id, stable = None, {'count': 0, 'max_sim': 0.0, 'max_margin': 0.0}
        for candidate_id, entry in stats.items():
            if entry['count'] > stable['count'] or (entry['count'] == stable['count'] and entry['max_sim'] > stable['max_sim']):
                stable_id, stable = candidate_id, entry

        progress = min(100, round(stable['count'] / self.min_stable_matches * 100))
        self.status = ScanStatus(ScanState.STABILIZING, f"Hold steady... ({progress}%)", progress)

        if (stable_id is not None
                and stable['count'] >= self.min_stable_matches
                and stable['max_sim'] >= self.min_similarity
                and stable['max_margin'] >= self.min_margin
                and not self._recently_triggered(stable_id, now)):
            proposed = next((c for c in fusion.candidates if c.entry.id == stable_id), top)
            self.pending = PendingMatch.from_fusion(fusion, embedding)
            self.pending.entry = proposed.entry
            self.pending.score = stable['max_sim']
            self.mode = ProposalMode.PROPOSAL
            self.predictions = []
            self.status = ScanStatus(ScanState.PROPOSAL, f"Is this {proposed.entry.display_name}?", 100)
            logger.info(f"Stable match proposed: {proposed.entry.display_name} "
                        f"({stable['max_sim']:.3f}, {stable['count']} frames)")

        return self.status

    def _recently_triggered(self, candidate_id: str, now: float) -> bool:
        if self.last_trigger is None:
            return False
        last_id, last_time = self.last_trigger
        return last_id == candidate_id and now - last_time < self.duplicate_cooldown

    def propose(self, pending: PendingMatch):
        """Open a proposal directly, as a manual scan does"""
        self.pending = pending
        self.mode = ProposalMode.PROPOSAL
        self.status = ScanStatus(ScanState.PROPOSAL, f"Is this {pending.entry.display_name}?", 100)

    def confirm(self, selected: Optional[CatalogEntry] = None,
                now: float = None) -> Optional[Tuple[ConfirmedMatch, FeedbackSample]]:
        """Accept the proposal (or the user's correction) and start the cooldown"""
        if self.pending is None:
            return None
        now = self.clock() if now is None else now

        proposed = self.pending
        chosen = selected or proposed.entry
        top_id = proposed.candidates[0].entry.id if proposed.candidates else proposed.entry.id
        was_correct = chosen.id == top_id

        feedback = FeedbackSample(
            card_id=chosen.id,
            was_correct=was_correct,
            corrected_to=None if was_correct else chosen.id,
            visual_score=proposed.visual_score_for(chosen.id),
            combined_score=proposed.score,
            ocr_text=proposed.ocr_text,
            ocr_confidence=proposed.ocr_confidence,
            embedding=proposed.embedding,
        )

        self.recent_scans = ([RecentScan(chosen, now)] + self.recent_scans)[:self.recent_limit]
        self.last_trigger = (chosen.id, now)
        self.pending = None
        self.predictions = []
        self.mode = ProposalMode.COOLDOWN
        self.cooldown_until = now + self.cooldown
        self.status = ScanStatus(ScanState.COOLDOWN, f"Added {chosen.display_name}")

        return ConfirmedMatch(entry=chosen, score=proposed.score, timestamp=now), feedback

    def cancel(self):
        self.pending = None
        self.predictions = []
        self.mode = ProposalMode.SEARCHING
        self.status = ScanStatus(ScanState.SEARCHING, "Looking for card...")
