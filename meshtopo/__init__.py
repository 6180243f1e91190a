"""
meshtopo - Topology inference for MeshCore LoRa meshes
======================================================

Infers the physical topology of a mesh from received packets whose
paths name every relay only by a 2-character (8-bit) prefix of its
identity. Runs alongside a repeater: packets go into a bounded store,
and a background pass turns them into a confidence-weighted edge graph
plus estimated locations of relays nobody has a contact for.

Architecture Overview
---------------------
Data flows one way:

    ObservationStore -> CandidateIndex -> FourFactorScorer -> PathDecoder
        -> EdgeAggregator / ghost clusters -> AnalysisResult -> MeshGraph

Components
----------
    observation_store:
        Bounded, time-ordered packet window. Validates records at the
        ingestion boundary and reports malformed ones.

    candidate_index:
        Known nodes behind each prefix, with the 14-day age filter and
        per-prefix position / co-occurrence statistics.

    disambiguation:
        Four-factor candidate scoring: position, co-occurrence,
        geographic (dual-hop anchored), recency.

    geo_utils:
        Haversine distance and the LoRa range model that turns a
        distance into link plausibility.

    path_decoder:
        Viterbi decoding of a whole path into real nodes or Ghost.

    edge_builder:
        Recency-weighted edge confidence and inclusion thresholds.

    ghost_clusters:
        Locates unresolved relays from the anchors around their hops.

    worker:
        Two-phase deep analysis on a thread pool, cancellable, with
        atomic result publishing.

    graph:
        networkx view of a published result.

Usage Example
-------------
    from meshtopo import AnalysisWorker, LocalNode, ObservationStore

    worker = AnalysisWorker(
        ObservationStore(),
        contacts_getter=storage.get_neighbors,
        local_node=LocalNode("0xFF001122", 51.50, -0.12),
    )
    worker.on_packet_received(packet)
    worker.request_analysis()
    worker.wait()
    edges = worker.latest.edges
"""

from .observation_store import (
    DataQualityReport,
    Observation,
    ObservationStore,
)
from .candidate_index import (
    CandidateIndex,
    CollisionStats,
    IndexedCandidate,
    LocalNode,
    NodeCandidate,
)
from .disambiguation import (
    DisambiguationStats,
    FactorBreakdown,
    FourFactorScorer,
    ScoredCandidate,
    ScoringContext,
    calculate_recency_score,
    get_disambiguation_stats,
    redistribute_appearances,
)
from .geo_utils import (
    RadioModel,
    calculate_distance,
    has_valid_coordinates,
)
from .path_decoder import (
    ConfidenceBand,
    DecodedHop,
    DecodedPath,
    PathDecoder,
)
from .edge_builder import (
    Edge,
    EdgeAggregator,
    EdgeObservation,
    classify_certainty,
)
from .ghost_clusters import (
    GhostCluster,
    GhostSample,
    build_ghost_clusters,
    cluster_samples,
)
from .graph import (
    ComponentResult,
    MeshGraph,
    PathResult,
)
from .worker import (
    AnalysisResult,
    AnalysisWorker,
    DeepAnalysis,
)
from .utils import (
    ghost_node_id,
    get_prefix,
    is_ghost_id,
    make_edge_key,
    normalize_hash,
    parse_edge_key,
)
from .errors import (
    AnalysisCancelled,
    ErrorCode,
    TopologyError,
)
from .config import Config, reload_config
from .validation import ValidationError

__version__ = "0.1.0"

__all__ = [
    # Observation store
    "DataQualityReport",
    "Observation",
    "ObservationStore",
    # Candidate index
    "CandidateIndex",
    "CollisionStats",
    "IndexedCandidate",
    "LocalNode",
    "NodeCandidate",
    # Scoring
    "DisambiguationStats",
    "FactorBreakdown",
    "FourFactorScorer",
    "ScoredCandidate",
    "ScoringContext",
    "calculate_recency_score",
    "get_disambiguation_stats",
    "redistribute_appearances",
    # Geo
    "RadioModel",
    "calculate_distance",
    "has_valid_coordinates",
    # Decoder
    "ConfidenceBand",
    "DecodedHop",
    "DecodedPath",
    "PathDecoder",
    # Edges
    "Edge",
    "EdgeAggregator",
    "EdgeObservation",
    "classify_certainty",
    # Ghosts
    "GhostCluster",
    "GhostSample",
    "build_ghost_clusters",
    "cluster_samples",
    # Graph
    "ComponentResult",
    "MeshGraph",
    "PathResult",
    # Worker
    "AnalysisResult",
    "AnalysisWorker",
    "DeepAnalysis",
    # Utils
    "ghost_node_id",
    "get_prefix",
    "is_ghost_id",
    "make_edge_key",
    "normalize_hash",
    "parse_edge_key",
    # Errors / config
    "AnalysisCancelled",
    "ErrorCode",
    "TopologyError",
    "Config",
    "reload_config",
    "ValidationError",
]
