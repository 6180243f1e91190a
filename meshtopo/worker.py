"""
Analysis Worker - Deep analysis passes in the background
========================================================

Runs the full inference pipeline over a snapshot of the observation
store and publishes the result for readers, without blocking packet
ingest.

Architecture
------------
    DeepAnalysis.run() is one batch pass:

    1. **Bootstrap decode**: every packet is decoded without overrides
       and aggregated into a provisional edge graph.

    2. **Final decode**: every packet is decoded again, with the
       provisional graph's validated pairs as transition overrides.

    3. **Aggregation**: edges from the final decode, ghost clustering,
       result assembly.

    Both decode phases split the snapshot into chunks and decode them on
    a ThreadPoolExecutor. Each chunk fills its own EdgeAggregator; the
    chunks are merged in chunk order, so a pass over the same snapshot
    and index always gives the same result.

Lifecycle
---------
    worker = AnalysisWorker(store, contacts_getter=registry.get_contacts,
                            local_node=LocalNode("0xFF00", 51.5, -0.1))
    worker.on_packet_received(packet)     # ingest, any thread
    worker.request_analysis()             # start a pass (cancels the previous one)
    worker.wait()
    result = worker.latest
    worker.stop()

Cancellation
------------
    A new request_analysis() cancels the pass in flight instead of
    queueing behind it. The cancel event is checked between chunks; a
    cancelled pass raises AnalysisCancelled and publishes nothing. A
    cancelled or failed pass leaves the previously published result in
    place.

Thread Safety
-------------
    - The pass reads an immutable snapshot, never the live store
    - Configuration groups are captured when the pass starts
    - Results are swapped in under a lock; readers get the whole old
      result or the whole new one
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Set, Tuple

from .candidate_index import CandidateIndex, CollisionStats, ContactSource, LocalNode
from .config import Config
from .disambiguation import DisambiguationStats, FourFactorScorer, get_disambiguation_stats
from .edge_builder import Edge, EdgeAggregator
from .errors import AnalysisCancelled, ErrorCode, TopologyError
from .geo_utils import RadioModel
from .ghost_clusters import GhostCluster, build_ghost_clusters
from .graph import MeshGraph
from .observation_store import DataQualityReport, Observation, ObservationStore
from .path_decoder import DecodedPath, PathDecoder

logger = logging.getLogger("Topology.Worker")

NodePair = Tuple[str, str]


@dataclass
class AnalysisResult:
    """Published output of one deep analysis pass."""
    computed_at: float
    edges: List[Edge]
    ghost_clusters: List[GhostCluster]
    decoded_paths: List[DecodedPath]
    index_stats: CollisionStats
    observation_count: int
    total_edge_count: int = 0
    validated_pair_count: int = 0
    duration_ms: float = 0.0
    bootstrap_ms: float = 0.0
    decode_ms: float = 0.0
    config_version: int = 0
    disambiguation: Optional[DisambiguationStats] = None
    data_quality: Optional[DataQualityReport] = None
    index: Optional[CandidateIndex] = field(default=None, repr=False, compare=False)

    def graph(self) -> MeshGraph:
        return MeshGraph.from_result(self)

    def to_dict(self, include_paths: bool = False) -> dict:
        result = {
            "computedAt": self.computed_at,
            "edges": [e.to_dict() for e in self.edges],
            "ghostClusters": [c.to_dict() for c in self.ghost_clusters],
            "indexStats": self.index_stats.to_dict(),
            "observationCount": self.observation_count,
            "totalEdgeCount": self.total_edge_count,
            "validatedPairCount": self.validated_pair_count,
            "timing": {
                "totalMs": round(self.duration_ms, 1),
                "bootstrapMs": round(self.bootstrap_ms, 1),
                "decodeMs": round(self.decode_ms, 1),
            },
            "configVersion": self.config_version,
        }
        if self.disambiguation is not None:
            result["disambiguation"] = self.disambiguation.to_dict()
        if self.data_quality is not None:
            result["dataQuality"] = self.data_quality.to_dict()
        if include_paths:
            result["decodedPaths"] = [p.to_dict() for p in self.decoded_paths]
        return result


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelled()


class DeepAnalysis:
    """
    One batch inference pass over an observation snapshot.

    Attributes:
        radio: Radio model used for distance plausibility
        max_workers: Decode threads
        chunk_size: Packets per chunk
    """

    def __init__(
        self,
        radio: Optional[RadioModel] = None,
        max_workers: Optional[int] = None,
        chunk_size: Optional[int] = None,
    ):
        cfg = Config.WORKER
        self.radio = radio or RadioModel()
        self.max_workers = max_workers if max_workers is not None else cfg.MAX_WORKERS
        self.chunk_size = chunk_size if chunk_size is not None else cfg.CHUNK_SIZE

        if self.max_workers < 1:
            raise TopologyError(
                ErrorCode.INVALID_PARAMETER, f"max_workers must be positive, got {self.max_workers}"
            )
        if self.chunk_size < 1:
            raise TopologyError(
                ErrorCode.INVALID_PARAMETER, f"chunk_size must be positive, got {self.chunk_size}"
            )

    def _decode_chunk(
        self,
        decoder: PathDecoder,
        chunk: Sequence[Observation],
        pairs: Set[NodePair],
        reference_time: float,
        edge_config,
        cancel_event: Optional[threading.Event],
    ) -> Tuple[List[DecodedPath], EdgeAggregator]:
        _check_cancel(cancel_event)

        aggregator = EdgeAggregator(reference_time, edge_config)
        decoded = decoder.decode_many(chunk, pairs)
        for path in decoded:
            aggregator.add_decoded_path(path)
        return decoded, aggregator

    def _decode_all(
        self,
        decoder: PathDecoder,
        chunks: List[Sequence[Observation]],
        pairs: Set[NodePair],
        reference_time: float,
        edge_config,
        cancel_event: Optional[threading.Event],
    ) -> Tuple[List[DecodedPath], EdgeAggregator]:
        merged = EdgeAggregator(reference_time, edge_config)
        decoded: List[DecodedPath] = []

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="TopologyDecode") as pool:
            futures = [
                pool.submit(self._decode_chunk, decoder, chunk, pairs, reference_time, edge_config, cancel_event)
                for chunk in chunks
            ]
            try:
                for future in futures:
                    _check_cancel(cancel_event)
                    chunk_paths, chunk_agg = future.result()
                    merged.merge(chunk_agg)
                    decoded.extend(chunk_paths)
            except AnalysisCancelled:
                for future in futures:
                    future.cancel()
                raise

        return decoded, merged

    def run(
        self,
        observations: Sequence[Observation],
        index: CandidateIndex,
        reference_time: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AnalysisResult:
        """
        Run bootstrap decode, final decode, aggregation and ghost clustering.

        Args:
            observations: Immutable snapshot (time-ordered)
            index: Candidate index built for this pass
            reference_time: Pass "now" (defaults to the index's reference time)
            cancel_event: Set to abandon the pass between chunks

        Raises:
            AnalysisCancelled: If cancel_event was set during the pass
        """
        started = time.time()
        reference_time = reference_time if reference_time is not None else index.reference_time

        # Capture config for the whole pass
        decoder_config = Config.DECODER
        edge_config = Config.EDGE
        ghost_config = Config.GHOST
        config_version = Config.get_version()

        scorer = FourFactorScorer(index, self.radio, Config.SCORING)
        decoder = PathDecoder(scorer, decoder_config)

        observations = tuple(observations)
        chunks = [
            observations[i:i + self.chunk_size]
            for i in range(0, len(observations), self.chunk_size)
        ]

        logger.info(f"Deep analysis started: {len(observations)} packets in {len(chunks)} chunks")

        _check_cancel(cancel_event)
        _, provisional = self._decode_all(decoder, chunks, set(), reference_time, edge_config, cancel_event)
        pairs = provisional.validated_pairs(decoder_config)
        bootstrap_done = time.time()

        logger.debug(
            f"Bootstrap decode: {len(provisional)} edges, {len(pairs)} validated pairs"
        )

        _check_cancel(cancel_event)
        decoded, final = self._decode_all(decoder, chunks, pairs, reference_time, edge_config, cancel_event)
        decode_done = time.time()

        _check_cancel(cancel_event)
        ghost_clusters = build_ghost_clusters(decoded, index, ghost_config)
        included = final.included_edges()

        result = AnalysisResult(
            computed_at=reference_time,
            edges=included,
            ghost_clusters=ghost_clusters,
            decoded_paths=decoded,
            index_stats=index.get_stats(),
            observation_count=len(observations),
            total_edge_count=len(final),
            validated_pair_count=len(pairs),
            duration_ms=(time.time() - started) * 1000,
            bootstrap_ms=(bootstrap_done - started) * 1000,
            decode_ms=(decode_done - bootstrap_done) * 1000,
            config_version=config_version,
            disambiguation=get_disambiguation_stats(index, scorer),
            index=index,
        )

        logger.info(
            f"Deep analysis finished in {result.duration_ms:.0f}ms: "
            f"{len(included)}/{len(final)} edges included, {len(ghost_clusters)} ghost clusters"
        )
        return result


class AnalysisWorker:
    """
    Owns the observation store and runs deep analysis passes on demand.

    Only one pass is in flight at a time: a new request cancels the
    previous pass.
    """

    def __init__(
        self,
        store: Optional[ObservationStore] = None,
        contacts_getter: Optional[Callable[[], ContactSource]] = None,
        local_node: Optional[LocalNode] = None,
        analysis: Optional[DeepAnalysis] = None,
    ):
        self.store = store if store is not None else ObservationStore()
        self.contacts_getter = contacts_getter
        self.local_node = local_node
        self.analysis = analysis or DeepAnalysis()

        self._state_lock = threading.Lock()
        self._result_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        # Every pass thread not yet joined; a cancelled pass may still be unwinding
        self._threads: List[threading.Thread] = []
        self._cancel_event: Optional[threading.Event] = None
        self._result: Optional[AnalysisResult] = None
        self._generation = 0

        self.last_error: Optional[TopologyError] = None
        self.cancelled_passes = 0
        self.failed_passes = 0

    def on_packet_received(self, packet: dict) -> DataQualityReport:
        """Ingest one packet record into the store."""
        _, report = self.store.add(packet)
        return report

    @property
    def latest(self) -> Optional[AnalysisResult]:
        """Most recently published result (None before the first pass)."""
        with self._result_lock:
            return self._result

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._thread is not None and self._thread.is_alive()

    def request_analysis(self, reference_time: Optional[float] = None) -> int:
        """
        Start a new pass in the background, cancelling any pass in flight.

        Returns:
            Generation number of the new pass
        """
        with self._state_lock:
            if self._cancel_event is not None:
                self._cancel_event.set()

            self._generation += 1
            generation = self._generation
            cancel_event = threading.Event()
            self._cancel_event = cancel_event

            self._thread = threading.Thread(
                target=self._run_pass,
                args=(generation, cancel_event, reference_time),
                name=f"TopologyAnalysis-{generation}",
                daemon=True,
            )
            self._thread.start()
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(self._thread)

        logger.info(f"Analysis pass {generation} requested")
        return generation

    def run_now(self, reference_time: Optional[float] = None) -> Optional[AnalysisResult]:
        """Run a pass in the calling thread and publish it."""
        with self._state_lock:
            if self._cancel_event is not None:
                self._cancel_event.set()
            self._generation += 1
            generation = self._generation
            cancel_event = threading.Event()
            self._cancel_event = cancel_event

        return self._run_pass(generation, cancel_event, reference_time)

    def cancel(self) -> None:
        """Cancel the pass in flight, if any."""
        with self._state_lock:
            if self._cancel_event is not None:
                self._cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the current pass to finish.

        Returns:
            True if no pass is running afterwards
        """
        with self._state_lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def stop(self) -> None:
        """Cancel every pass in flight and wait for all of them to exit."""
        self.cancel()
        with self._state_lock:
            threads = list(self._threads)

        deadline = time.monotonic() + Config.WORKER.STOP_TIMEOUT_SECONDS
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))

        alive = [t.name for t in threads if t.is_alive()]
        with self._state_lock:
            self._threads = [t for t in self._threads if t.is_alive()]
        if alive:
            logger.warning(f"Analysis passes did not exit before stop timeout: {alive}")
        logger.info("Analysis worker stopped")

    def _build_index(self, snapshot: Sequence[Observation], reference_time: float) -> CandidateIndex:
        contacts = self.contacts_getter() if self.contacts_getter else {}
        return CandidateIndex.build(
            contacts,
            snapshot,
            local_node=self.local_node,
            reference_time=reference_time,
        )

    def _run_pass(
        self,
        generation: int,
        cancel_event: threading.Event,
        reference_time: Optional[float],
    ) -> Optional[AnalysisResult]:
        reference_time = reference_time if reference_time is not None else time.time()

        try:
            snapshot = self.store.snapshot(reference_time)
            _check_cancel(cancel_event)
            index = self._build_index(snapshot, reference_time)
            result = self.analysis.run(snapshot, index, reference_time, cancel_event)
            result.data_quality = self.store.data_quality
        except AnalysisCancelled:
            with self._state_lock:
                self.cancelled_passes += 1
            logger.info(f"Analysis pass {generation} cancelled")
            return None
        except Exception as e:
            with self._state_lock:
                self.failed_passes += 1
                self.last_error = TopologyError(ErrorCode.INTERNAL_ERROR, str(e))
            logger.error(f"Analysis pass {generation} failed: {e}", exc_info=True)
            return None

        with self._result_lock:
            # Superseded while finishing up
            if cancel_event.is_set():
                with self._state_lock:
                    self.cancelled_passes += 1
                logger.info(f"Analysis pass {generation} superseded, result discarded")
                return None
            self._result = result

        logger.debug(
            f"Published pass {generation}: {result.observation_count} packets, "
            f"{len(result.edges)} edges"
        )
        return result
