"""
Path Decoder - Viterbi decoding of prefix paths
===============================================

Turns a packet's prefix path into the single most probable sequence of
real nodes, marking positions that cannot be resolved as Ghost.

Per-hop scoring alone picks each hop in isolation; two hops that are
each plausible can still be an impossible pair. The decoder scores the
whole chain instead: emissions from the four-factor scorer, transitions
from the radio model.

State Machine
-------------
    States:
        Position i has one state per eligible candidate for path[i],
        plus one Ghost state (unknown node). The local node is the
        implicit terminal anchor after the last position.

    Emission (log space):
        concrete: log(composite * n ** -0.5), n = eligible candidates
        ghost:    log(0.1)

    Transition cost (subtracted):
        validated pair (either direction)  -> 0.0
        same node twice in a row           -> -log(0.01)
        into or out of Ghost               -> 1.0
        either side unlocated              -> -log(0.5)
        otherwise                          -> -log(max(0.01, plausibility(d)))

    The last state pays one more transition into the local node.

Tie-breaking
------------
Equal scores (within 1e-9) prefer a concrete state over Ghost, then the
higher emission prior, then the lower state index. States are built in
rank order, so decoding is deterministic.

Confidence Bands
----------------
    unique   single eligible candidate
    high     0.50 - 0.99
    medium   0.25 - 0.49
    low      0.01 - 0.24
    ghost    unresolved
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Iterable, List, Optional, Sequence, Set, Tuple

from .candidate_index import NodeCandidate
from .config import Config, DecoderConfig
from .disambiguation import FactorBreakdown, FourFactorScorer, ScoredCandidate, ScoringContext, candidate_share
from .observation_store import Observation
from .utils import ghost_node_id, get_position_from_index

logger = logging.getLogger("Topology.Decoder")

# Score comparisons closer than this are ties
SCORE_EPSILON = 1e-9

# Floor inside log() for zero emissions
MIN_EMISSION = 1e-9

NodePair = Tuple[str, str]


class ConfidenceBand(Enum):
    UNIQUE = "unique"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    GHOST = "ghost"


def confidence_band(confidence: float, candidate_count: int, is_ghost: bool) -> ConfidenceBand:
    if is_ghost:
        return ConfidenceBand.GHOST
    if candidate_count == 1:
        return ConfidenceBand.UNIQUE
    if confidence >= 0.5:
        return ConfidenceBand.HIGH
    if confidence >= 0.25:
        return ConfidenceBand.MEDIUM
    return ConfidenceBand.LOW


@dataclass(frozen=True)
class DecodedHop:
    """One decoded path position: a resolved candidate or Ghost."""
    index: int
    prefix: str
    position: int
    candidate: Optional[NodeCandidate]
    composite: float
    confidence: float
    band: ConfidenceBand
    candidate_count: int
    breakdown: Optional[FactorBreakdown] = None

    @property
    def is_ghost(self) -> bool:
        return self.candidate is None

    @property
    def node_id(self) -> str:
        """Node hash, or the ghost sentinel id for this prefix."""
        if self.candidate is None:
            return ghost_node_id(self.prefix)
        return self.candidate.node_hash

    @property
    def location(self):
        return self.candidate.location if self.candidate is not None else None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "prefix": self.prefix,
            "position": self.position,
            "nodeId": self.node_id,
            "isGhost": self.is_ghost,
            "composite": round(self.composite, 3),
            "confidence": round(self.confidence, 3),
            "band": self.band.value,
            "candidateCount": self.candidate_count,
            "breakdown": self.breakdown.to_dict() if self.breakdown else None,
        }


@dataclass(frozen=True)
class DecodedPath:
    """Decoded hops for one observation, oldest first."""
    observation: Observation
    hops: Tuple[DecodedHop, ...]
    log_score: float = 0.0

    @property
    def node_ids(self) -> List[str]:
        return [h.node_id for h in self.hops]

    @property
    def ghost_count(self) -> int:
        return sum(1 for h in self.hops if h.is_ghost)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.observation.timestamp,
            "path": list(self.observation.path),
            "originPrefix": self.observation.origin_prefix,
            "hops": [h.to_dict() for h in self.hops],
            "logScore": round(self.log_score, 4),
        }


@dataclass
class _State:
    """Arena cell: one state at one position."""
    scored: Optional[ScoredCandidate]
    log_emission: float
    emission: float
    score: float = -math.inf
    back: int = -1

    @property
    def is_ghost(self) -> bool:
        return self.scored is None

    @property
    def candidate(self) -> Optional[NodeCandidate]:
        return self.scored.candidate if self.scored is not None else None


def _prefer(score: float, state: _State, idx: int, best_score: float, best: Optional[_State], best_idx: int) -> bool:
    """True if (score, state, idx) beats the incumbent under the tie-break order."""
    if best is None:
        return True
    if score > best_score + SCORE_EPSILON:
        return True
    if score < best_score - SCORE_EPSILON:
        return False
    if state.is_ghost != best.is_ghost:
        return not state.is_ghost
    if state.emission != best.emission:
        return state.emission > best.emission
    return idx < best_idx


def normalize_pairs(pairs: Optional[Iterable[NodePair]]) -> Set[NodePair]:
    """Validated pairs as a set holding both directions."""
    result: Set[NodePair] = set()
    for a, b in pairs or ():
        result.add((a, b))
        result.add((b, a))
    return result


class PathDecoder:
    """
    Viterbi decoder over one packet path.

    Example:
        >>> decoder = PathDecoder(FourFactorScorer(index, RadioModel()))
        >>> decoded = decoder.decode(observation)
        >>> [h.node_id for h in decoded.hops]
        ['0xFA01', '0x7902', '0x2403', '0x1904']
    """

    def __init__(self, scorer: FourFactorScorer, decoder_config: Optional[DecoderConfig] = None):
        self.scorer = scorer
        self.config = decoder_config or Config.DECODER
        self._ghost_log_emission = math.log(max(self.config.GHOST_EMISSION, MIN_EMISSION))
        self._neutral_cost = -math.log(0.5)
        self._same_node_cost = -math.log(self.config.PLAUSIBILITY_FLOOR)

    def _cost_between(
        self,
        a: Optional[NodeCandidate],
        b: Optional[NodeCandidate],
        pairs: AbstractSet[NodePair],
    ) -> float:
        if a is None or b is None:
            return self.config.GHOST_TRANSITION_COST
        if a.node_hash == b.node_hash:
            return self._same_node_cost
        if (a.node_hash, b.node_hash) in pairs or (b.node_hash, a.node_hash) in pairs:
            return self.config.MIN_TRANSITION_COST

        loc_a, loc_b = a.location, b.location
        if loc_a is None or loc_b is None:
            return self._neutral_cost

        plausibility = self.scorer.radio.plausibility(loc_a, loc_b)
        return -math.log(max(self.config.PLAUSIBILITY_FLOOR, plausibility))

    def _terminal_cost(self, state: _State) -> float:
        if state.is_ghost:
            return self.config.GHOST_TRANSITION_COST

        local = self.scorer.index.local_node
        if local is None or local.location is None or state.candidate.location is None:
            return self._neutral_cost

        plausibility = self.scorer.radio.plausibility(state.candidate.location, local.location)
        return -math.log(max(self.config.PLAUSIBILITY_FLOOR, plausibility))

    def _build_states(self, ranked: Sequence[ScoredCandidate]) -> List[_State]:
        n = len(ranked)
        states = []
        if n:
            scale = n ** -self.config.COMPETITOR_EXPONENT
            for s in ranked:
                emission = s.composite * scale
                states.append(_State(s, math.log(max(emission, MIN_EMISSION)), emission))
        states.append(_State(None, self._ghost_log_emission, self.config.GHOST_EMISSION))
        return states

    def decode(
        self,
        observation: Observation,
        validated_pairs: Optional[Iterable[NodePair]] = None,
    ) -> DecodedPath:
        """
        Decode one observation's path.

        Args:
            observation: Packet to decode
            validated_pairs: (hash, hash) pairs whose transitions cost the
                minimum regardless of distance, in either direction

        Returns:
            DecodedPath with one DecodedHop per path position
        """
        path = observation.path
        if not path:
            return DecodedPath(observation, ())

        if isinstance(validated_pairs, (set, frozenset)):
            pairs = validated_pairs
        else:
            pairs = normalize_pairs(validated_pairs)

        context = ScoringContext(path=path, origin_prefix=observation.origin_prefix)

        # Arena: per-position state lists with integer back-pointers
        rankings: List[List[ScoredCandidate]] = []
        arena: List[List[_State]] = []

        for i in range(len(path)):
            ranked = self.scorer.rank(i, context)
            rankings.append(ranked)
            states = self._build_states(ranked)

            if i == 0:
                for state in states:
                    state.score = state.log_emission
            else:
                prev_states = arena[i - 1]
                for state in states:
                    best_score, best, best_idx = -math.inf, None, -1
                    for j, prev in enumerate(prev_states):
                        cand = prev.score - self._cost_between(prev.candidate, state.candidate, pairs)
                        if _prefer(cand, prev, j, best_score, best, best_idx):
                            best_score, best, best_idx = cand, prev, j
                    state.score = best_score + state.log_emission
                    state.back = best_idx

            arena.append(states)

        final_score, final, final_idx = -math.inf, None, -1
        for j, state in enumerate(arena[-1]):
            total = state.score - self._terminal_cost(state)
            if _prefer(total, state, j, final_score, final, final_idx):
                final_score, final, final_idx = total, state, j

        chosen: List[_State] = [None] * len(path)
        idx = final_idx
        for i in range(len(path) - 1, -1, -1):
            state = arena[i][idx]
            chosen[i] = state
            idx = state.back

        hops = tuple(
            self._make_hop(i, path, state, rankings[i])
            for i, state in enumerate(chosen)
        )
        return DecodedPath(observation, hops, final_score)

    def _make_hop(
        self,
        i: int,
        path: Tuple[str, ...],
        state: _State,
        ranked: List[ScoredCandidate],
    ) -> DecodedHop:
        position = get_position_from_index(i, len(path))
        n = len(ranked)

        if state.is_ghost:
            return DecodedHop(
                index=i,
                prefix=path[i],
                position=position,
                candidate=None,
                composite=0.0,
                confidence=0.0,
                band=ConfidenceBand.GHOST,
                candidate_count=n,
            )

        confidence = candidate_share(ranked, state.scored.node_hash)
        return DecodedHop(
            index=i,
            prefix=path[i],
            position=position,
            candidate=state.candidate,
            composite=state.scored.composite,
            confidence=confidence,
            band=confidence_band(confidence, n, False),
            candidate_count=n,
            breakdown=state.scored.breakdown,
        )

    def decode_many(
        self,
        observations: Iterable[Observation],
        validated_pairs: Optional[Iterable[NodePair]] = None,
    ) -> List[DecodedPath]:
        pairs = normalize_pairs(validated_pairs)
        return [self.decode(obs, pairs) for obs in observations]
