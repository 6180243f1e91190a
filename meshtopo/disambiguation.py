"""
Disambiguation - Four-factor prefix candidate scoring
=====================================================

Scores how likely each known node behind a 2-character prefix is to be
the node that actually relayed a packet at a given path position.

4-Factor Scoring System
-----------------------
    1. Position Consistency (15%):
       How often this prefix appears at this hop position, counted from
       the local end. Shared across all candidates of the prefix.

    2. Co-occurrence Frequency (15%):
       How often this prefix appears next to the prefixes that flank it
       in this packet. Shared across all candidates of the prefix.

    3. Geographic Scoring (35%):
       Distance plausibility from the LoRa range model.
       - Direct forwarder (last path element): distance to the local
         node only.
       - Any other position: dual-hop anchoring. Plausibility to the
         previous-hop anchor and to the next-hop anchor, combined with
         min(). A relay must be able to hear both neighbours, so one
         good link cannot hide an impossible one.
       - The previous anchor of the oldest hop is the packet's origin,
         when its prefix resolves to a located candidate.
       - No coordinates or no anchor: neutral 0.5.

    4. Recency Scoring (35%):
       score = e^(-hours/12)
       Candidates not seen in 14 days never reach the scorer.

    composite = 0.15 pos + 0.15 cooc + 0.35 geo + 0.35 recency

Score-Weighted Redistribution
-----------------------------
A prefix's appearance count belongs to the prefix, not to any one node.
redistribute_appearances() splits it across candidates in proportion to
their composite scores, which is what the stats endpoint reports.

Public Classes
--------------
    FourFactorScorer:
        score() / rank() against a CandidateIndex and RadioModel.

    ScoringContext:
        Packet path, hop index and origin prefix for one scoring call.

    ScoredCandidate / FactorBreakdown:
        Composite score with its per-factor breakdown.

Public Functions
----------------
    calculate_recency_score(last_seen, now, decay_hours)
    redistribute_appearances(scored, total)
    candidate_share(scored, node_hash)
    get_disambiguation_stats(index, scorer)
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .candidate_index import CandidateIndex, CollisionStats, NodeCandidate
from .config import Config, ScoringConfig
from .geo_utils import RadioModel
from .utils import get_position_from_index

logger = logging.getLogger("Topology.Disambiguation")


def calculate_recency_score(
    last_seen_timestamp: float,
    now: Optional[float] = None,
    decay_hours: Optional[float] = None,
) -> float:
    """
    Calculate recency score using exponential decay: e^(-hours/12).

    Args:
        last_seen_timestamp: Unix timestamp when node was last seen
        now: Reference timestamp (defaults to time.time())
        decay_hours: Decay constant (defaults to SCORING.RECENCY_DECAY_HOURS)

    Returns:
        Score from 0.0 to 1.0
    """
    if not last_seen_timestamp or last_seen_timestamp <= 0:
        return 0.0

    now = now if now is not None else time.time()
    decay_hours = decay_hours or Config.SCORING.RECENCY_DECAY_HOURS
    hours_ago = (now - last_seen_timestamp) / 3600

    if hours_ago < 0:
        return 1.0  # Clock skew, treat as just seen

    return math.exp(-hours_ago / decay_hours)


@dataclass(frozen=True)
class FactorBreakdown:
    """Per-factor scores behind a composite."""
    position: float
    co_occurrence: float
    geographic: float
    recency: float

    def to_dict(self) -> dict:
        return {
            "position": round(self.position, 3),
            "co_occurrence": round(self.co_occurrence, 3),
            "geographic": round(self.geographic, 3),
            "recency": round(self.recency, 3),
        }


@dataclass(frozen=True)
class ScoredCandidate:
    """A candidate with its composite score for one position of one packet."""
    candidate: NodeCandidate
    composite: float
    breakdown: FactorBreakdown

    @property
    def node_hash(self) -> str:
        return self.candidate.node_hash

    def to_dict(self) -> dict:
        return {
            "hash": self.candidate.node_hash,
            "composite": round(self.composite, 3),
            "breakdown": self.breakdown.to_dict(),
        }


@dataclass(frozen=True)
class ScoringContext:
    """
    Where in which packet a candidate is being scored.

    Attributes:
        path: Hop prefixes, oldest first; the last element is the
            direct forwarder into the local node
        origin_prefix: Prefix of the packet's source, if known
    """
    path: Tuple[str, ...]
    origin_prefix: Optional[str] = None

    def position(self, hop_index: int) -> int:
        """Position counted from the local end (1 = direct forwarder)."""
        return get_position_from_index(hop_index, len(self.path))

    def is_direct_forwarder(self, hop_index: int) -> bool:
        return hop_index == len(self.path) - 1

    def previous_prefix(self, hop_index: int) -> Optional[str]:
        if hop_index > 0:
            return self.path[hop_index - 1]
        return self.origin_prefix

    def next_prefix(self, hop_index: int) -> Optional[str]:
        if hop_index < len(self.path) - 1:
            return self.path[hop_index + 1]
        return None

    def neighbours(self, hop_index: int) -> List[str]:
        result = []
        if hop_index > 0:
            result.append(self.path[hop_index - 1])
        if hop_index < len(self.path) - 1:
            result.append(self.path[hop_index + 1])
        return result


class FourFactorScorer:
    """
    Scores prefix candidates against a CandidateIndex.

    Example:
        >>> scorer = FourFactorScorer(index, RadioModel())
        >>> ctx = ScoringContext(path=("FA", "79", "24", "19"))
        >>> best = scorer.rank(1, ctx)[0]
        >>> best.node_hash, best.breakdown.to_dict()
    """

    def __init__(
        self,
        index: CandidateIndex,
        radio: Optional[RadioModel] = None,
        scoring_config: Optional[ScoringConfig] = None,
    ):
        self.index = index
        self.radio = radio or RadioModel()
        self.config = scoring_config or Config.SCORING
        self.weights = self.config.weights

    def recency_factor(self, candidate: NodeCandidate) -> float:
        return calculate_recency_score(
            candidate.last_seen,
            self.index.reference_time,
            self.config.RECENCY_DECAY_HOURS,
        )

    def _anchor_plausibility(
        self,
        candidate: NodeCandidate,
        anchor: Optional[NodeCandidate],
    ) -> Optional[float]:
        if anchor is None or anchor.node_hash == candidate.node_hash:
            return None
        return self.radio.plausibility(candidate.location, anchor.location)

    def geographic_factor(
        self,
        hop_index: int,
        candidate: NodeCandidate,
        context: ScoringContext,
    ) -> float:
        """
        Distance plausibility for a candidate at a hop.

        Direct forwarder: against the local node only. Otherwise the
        min() of previous-anchor and next-anchor plausibility.
        """
        neutral = self.config.NEUTRAL_FACTOR
        location = candidate.location
        if location is None:
            return neutral

        if context.is_direct_forwarder(hop_index):
            local = self.index.local_node
            if local is None or local.location is None:
                return neutral
            return self.radio.plausibility(location, local.location)

        scores = []
        for prefix in (context.previous_prefix(hop_index), context.next_prefix(hop_index)):
            p = self._anchor_plausibility(candidate, self.index.best_anchor(prefix))
            if p is not None:
                scores.append(p)

        if not scores:
            return neutral
        return min(scores)

    def score(
        self,
        hop_index: int,
        candidate: NodeCandidate,
        context: ScoringContext,
    ) -> ScoredCandidate:
        """
        Composite score of a candidate at hop_index of context.path.

        Returns:
            ScoredCandidate with composite in [0, 1] and its breakdown
        """
        prefix = context.path[hop_index]

        breakdown = FactorBreakdown(
            position=self.index.position_frequency(prefix, context.position(hop_index)),
            co_occurrence=self.index.cooccurrence_frequency(prefix, context.neighbours(hop_index)),
            geographic=self.geographic_factor(hop_index, candidate, context),
            recency=self.recency_factor(candidate),
        )

        composite = (
            breakdown.position * self.weights["position"] +
            breakdown.co_occurrence * self.weights["co_occurrence"] +
            breakdown.geographic * self.weights["geographic"] +
            breakdown.recency * self.weights["recency"]
        )
        composite = max(0.0, min(1.0, composite))

        return ScoredCandidate(candidate, composite, breakdown)

    def rank(self, hop_index: int, context: ScoringContext) -> List[ScoredCandidate]:
        """
        Score every eligible candidate for the prefix at hop_index.

        Ordered by composite, then more recent last_seen, then node hash.
        """
        prefix = context.path[hop_index]
        scored = [self.score(hop_index, c, context) for c in self.index.eligible(prefix)]
        scored.sort(key=lambda s: (-s.composite, -s.candidate.last_seen, s.node_hash))
        return scored


def candidate_share(scored: Sequence[ScoredCandidate], node_hash: str) -> float:
    """
    A candidate's share of the composite scores at one position.

    1.0 when it is the only candidate. Equal shares if all scores are zero.
    """
    if not scored:
        return 0.0
    if len(scored) == 1:
        return 1.0 if scored[0].node_hash == node_hash else 0.0

    total = sum(s.composite for s in scored)
    for s in scored:
        if s.node_hash == node_hash:
            return s.composite / total if total > 0 else 1.0 / len(scored)
    return 0.0


def redistribute_appearances(
    scored: Sequence[ScoredCandidate],
    total_appearances: float,
) -> Dict[str, float]:
    """
    Split a prefix's appearance count across its candidates by composite score.

    Returns:
        Dict of node hash -> redistributed count (sums to total_appearances)
    """
    if not scored:
        return {}

    total_score = sum(s.composite for s in scored)
    if total_score <= 0:
        even = total_appearances / len(scored)
        return {s.node_hash: even for s in scored}

    return {
        s.node_hash: total_appearances * s.composite / total_score
        for s in scored
    }


@dataclass
class PrefixResolution:
    """Ranked candidates for one colliding prefix."""
    prefix: str
    candidates: List[ScoredCandidate]
    appearances: int
    redistributed: Dict[str, float]

    @property
    def best_match(self) -> Optional[str]:
        return self.candidates[0].node_hash if self.candidates else None

    @property
    def confidence(self) -> float:
        if not self.candidates:
            return 0.0
        return candidate_share(self.candidates, self.candidates[0].node_hash)

    def to_dict(self) -> dict:
        return {
            "prefix": self.prefix,
            "bestMatch": self.best_match,
            "confidence": round(self.confidence, 3),
            "appearances": self.appearances,
            "candidates": [
                {
                    **s.to_dict(),
                    "redistributedAppearances": round(self.redistributed.get(s.node_hash, 0.0), 1),
                }
                for s in self.candidates
            ],
        }


@dataclass
class DisambiguationStats:
    """Collision statistics plus per-prefix redistribution."""
    collisions: CollisionStats
    prefixes: List[PrefixResolution] = field(default_factory=list)

    @property
    def avg_confidence(self) -> float:
        if not self.prefixes:
            return 1.0
        return sum(p.confidence for p in self.prefixes) / len(self.prefixes)

    @property
    def low_confidence_prefixes(self) -> List[str]:
        return [p.prefix for p in self.prefixes if p.confidence < 0.5]

    def to_dict(self) -> dict:
        result = self.collisions.to_dict()
        result.update({
            "avgConfidence": round(self.avg_confidence, 3),
            "lowConfidencePrefixes": self.low_confidence_prefixes[:10],
            "prefixes": [p.to_dict() for p in self.prefixes],
        })
        return result


def get_disambiguation_stats(index: CandidateIndex, scorer: FourFactorScorer) -> DisambiguationStats:
    """
    Collision stats with score-weighted redistribution for each colliding prefix.

    Each colliding prefix is scored as a direct forwarder, the position
    where the local node hears it.
    """
    resolutions = []
    for prefix in index.prefixes():
        if len(index.eligible(prefix)) < 2:
            continue

        ranked = scorer.rank(0, ScoringContext(path=(prefix,)))
        appearances = index.appearances(prefix)
        resolutions.append(PrefixResolution(
            prefix=prefix,
            candidates=ranked,
            appearances=appearances,
            redistributed=redistribute_appearances(ranked, appearances),
        ))

    return DisambiguationStats(collisions=index.get_stats(), prefixes=resolutions)
