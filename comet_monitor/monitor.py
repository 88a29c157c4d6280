import copy
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .cometbft_client import CometBFTClient, CometRPCError
from .config import MonitorConfig
from .divergence import DivergenceAnalyzer, DivergenceDetector, summarize_analysis
from .events import HealthEventPublisher
from .health import analyze_node_health, dedupe, evaluate_consensus_health, mempool_warnings, merge_consensus_issues
from .history import (
    ConsensusParticipationSample,
    MempoolDepthSample,
    PeerCountSample,
    SampleHistory,
    block_interval_sample,
)
from .models import (
    AbciInfo,
    CommitHeader,
    ConsensusHealth,
    ConsensusSample,
    MempoolSample,
    NetworkSample,
    NodeHealth,
    StatusSample,
)
from .node_connection import build_node_connection

logger = logging.getLogger(__name__)

FULL_STREAM = "full"
CONSENSUS_STREAM = "consensus"


class StreamTokens:
    """
    Monotonic request tokens per polling stream.

    A result is applied only if its token is still the latest one dispatched
    on its stream and the stream has not been stopped since.
    """

    def __init__(self, streams=(FULL_STREAM, CONSENSUS_STREAM)):
        self._lock = threading.Lock()
        self._tokens = {stream: 0 for stream in streams}
        self._stopped = set()

    def dispatch(self, stream: str) -> int:
        with self._lock:
            self._tokens[stream] += 1
            return self._tokens[stream]

    def current(self, stream: str) -> int:
        with self._lock:
            return self._tokens[stream]

    def is_current(self, stream: str, token: int) -> bool:
        with self._lock:
            return stream not in self._stopped and self._tokens[stream] == token

    def invalidate(self, stream: str):
        with self._lock:
            self._tokens[stream] += 1

    def stop(self, stream: str):
        with self._lock:
            self._stopped.add(stream)
            self._tokens[stream] += 1

    def resume(self, stream: str):
        with self._lock:
            self._stopped.discard(stream)


@dataclass
class FullSample:
    status: Optional[StatusSample] = None
    consensus: Optional[ConsensusSample] = None
    abci: Optional[AbciInfo] = None
    network: Optional[NetworkSample] = None
    mempool: Optional[MempoolSample] = None
    commit: Optional[CommitHeader] = None
    error: Optional[str] = None


@dataclass
class HealthSnapshot:
    health: NodeHealth = field(default_factory=lambda: NodeHealth(error_messages=["initializing"]))
    status: Optional[StatusSample] = None
    consensus_state: Optional[ConsensusSample] = None
    abci_info: Optional[AbciInfo] = None
    commit: Optional[CommitHeader] = None
    network: Optional[NetworkSample] = None
    mempool: Optional[MempoolSample] = None
    error: Optional[str] = None
    loading: bool = True
    last_full_sample: Optional[str] = None
    last_consensus_sample: Optional[str] = None


def _jsonable(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class NodeMonitor:
    """
    Samples one CometBFT node on two independent timers and keeps the merged
    health snapshot. The full loop owns divergence detection and analysis;
    the consensus loop only refreshes the consensus verdict.
    """

    def __init__(
        self,
        config: MonitorConfig,
        client=None,
        detector=None,
        analyzer=None,
        publisher=None,
        clock=time.time,
    ):
        self.config = config
        self.connection = build_node_connection(config.node_url)
        self.reference = build_node_connection(config.reference_node_address)
        self.client = client or CometBFTClient(self.connection.base_url, timeout=config.request_timeout)
        self.detector = detector or DivergenceDetector(config.divergence_debounce, clock=clock)
        self.analyzer = analyzer or DivergenceAnalyzer(
            self.connection.base_url, self.reference, timeout=config.request_timeout
        )
        self.publisher = publisher or HealthEventPublisher(None, config.stream_key, self.connection.rpc_url)
        self.clock = clock
        self.tokens = StreamTokens()

        self.metrics_lock = threading.Lock()
        # Guards detector state and the reference node; never held across RPC calls.
        self.divergence_lock = threading.Lock()
        self._state = HealthSnapshot()

        self.consensus_history = SampleHistory(config.history_size)
        self.block_time_history = SampleHistory(config.history_size)
        self.mempool_history = SampleHistory(config.history_size)
        self.peer_history = SampleHistory(config.history_size)
        self._last_block = (None, None)

        self._threads = {}
        self._stop_events = {}
        logger.info(f"[Init] NodeMonitor for {self.connection.rpc_url}, reference {self.reference.rpc_url}")

    # ---- fetch collaborators ----

    def _fetch(self, label: str, fetcher, parser, critical: bool = False):
        try:
            return parser(fetcher())
        except CometRPCError as e:
            if critical:
                logger.error(f"[{label}] Failed to fetch: {e}")
                raise
            logger.warning(f"[{label}] Failed to fetch: {e}")
            return None

    def collect_full_sample(self) -> FullSample:
        sample = FullSample()
        limit = self.config.mempool_limit
        with ThreadPoolExecutor(max_workers=5, thread_name_prefix="RPCFetch") as pool:
            status_future = pool.submit(self._fetch, "Status", self.client.get_status, StatusSample.from_rpc, True)
            consensus_future = pool.submit(
                self._fetch, "Consensus", self.client.get_consensus_state, ConsensusSample.from_rpc
            )
            abci_future = pool.submit(self._fetch, "ABCI", self.client.get_abci_info, AbciInfo.from_rpc)
            network_future = pool.submit(self._fetch, "NetInfo", self.client.get_net_info, NetworkSample.from_rpc)
            mempool_future = pool.submit(
                self._fetch, "Mempool", lambda: self.client.get_unconfirmed_txs(limit), MempoolSample.from_rpc
            )

            try:
                sample.status = status_future.result()
            except CometRPCError as e:
                sample.error = f"Status error: {e}"
            sample.consensus = consensus_future.result()
            sample.abci = abci_future.result()
            sample.network = network_future.result()
            sample.mempool = mempool_future.result()

        commit_height = None
        if sample.status is not None and sample.status.height is not None:
            commit_height = sample.status.height
        elif sample.abci is not None and sample.abci.last_block_height is not None:
            commit_height = sample.abci.last_block_height
        if commit_height is not None:
            sample.commit = self._fetch(
                "Commit", lambda: self.client.get_commit(commit_height), CommitHeader.from_rpc
            )
        return sample

    # ---- full stream ----

    def _assess_divergence(self, sample: FullSample, health: NodeHealth):
        """
        Evaluate divergence for a sample without changing the detector.
        The block diff runs outside ``divergence_lock``.
        """
        with self.divergence_lock:
            previous = self.detector.candidate
            observation = self.detector.evaluate(sample.abci, sample.commit)
        resolved_height = previous.height if previous is not None and previous.confirmed else None

        details = observation.details
        if not observation.confirmed or details is None:
            return observation, resolved_height

        health.error_messages.append(f"possible app-hash divergence at height {details.height}, see node logs")
        if details.height is not None:
            try:
                analysis = self.analyzer.analyze(details.height)
                details.analysis = analysis
                details.analysis_error = None
                if details.node_app_hash is None:
                    details.node_app_hash = analysis.node_app_hash
                health.error_messages.append(summarize_analysis(analysis))
            except CometRPCError as e:
                message = f"failed to analyse divergence at height {details.height}: {e}"
                logger.warning(f"[Divergence] {message}")
                details.analysis = None
                details.analysis_error = message
                health.error_messages.append(message)
        health.divergence = details
        return observation, resolved_height

    def apply_full_sample(self, token: int, sample: FullSample) -> bool:
        """
        Merge a completed full sample unless a newer full request superseded it.
        The detector and the snapshot are only updated once the token is still
        current under both locks, and events are published after that.
        """
        if not self.tokens.is_current(FULL_STREAM, token):
            logger.debug(f"[Monitor] Discarding superseded full sample (token {token})")
            return False

        now = datetime.now(timezone.utc)
        health = analyze_node_health(sample.status, sample.consensus, now)
        health.warnings = mempool_warnings(sample.mempool.n_txs if sample.mempool is not None else None)
        if sample.error and sample.status is None:
            health.error_messages.insert(0, sample.error)

        observation, resolved_height = None, None
        if sample.status is not None:
            observation, resolved_height = self._assess_divergence(sample, health)

        health.error_messages = dedupe(health.error_messages)
        health.has_errors = bool(health.error_messages)
        timestamp = now.isoformat()

        with self.divergence_lock, self.metrics_lock:
            if not self.tokens.is_current(FULL_STREAM, token):
                logger.debug(f"[Monitor] Discarding superseded full sample (token {token})")
                return False
            if observation is not None:
                self.detector.apply(observation)
            previous = self._state.health
            self._state.health = health
            self._state.status = sample.status
            self._state.consensus_state = sample.consensus
            self._state.abci_info = sample.abci
            self._state.commit = sample.commit
            self._state.network = sample.network
            self._state.mempool = sample.mempool
            self._state.error = sample.error
            self._state.loading = False
            self._state.last_full_sample = timestamp
            self._record_full_history(sample, health, timestamp)

        if observation is not None:
            if observation.resolved:
                self.publisher.divergence_resolved(resolved_height)
            if observation.newly_confirmed:
                self.publisher.divergence_confirmed(observation.details)
        if (previous.is_online, previous.is_synced, previous.has_errors) != (
            health.is_online, health.is_synced, health.has_errors
        ):
            self.publisher.health_changed(health)
        return True

    def _record_full_history(self, sample: FullSample, health: NodeHealth, timestamp: str):
        if sample.consensus is not None:
            self.consensus_history.append(_participation_sample(health.consensus, timestamp))
        status = sample.status
        if status is not None and status.height is not None and status.height != self._last_block[0]:
            interval = block_interval_sample(self._last_block[0], self._last_block[1], status, timestamp)
            if interval is not None:
                self.block_time_history.append(interval)
                self._last_block = (status.height, status.block_time)
        if sample.mempool is not None:
            self.mempool_history.append(
                MempoolDepthSample(sample.mempool.n_txs, sample.mempool.total_bytes, timestamp)
            )
        if sample.network is not None:
            self.peer_history.append(
                PeerCountSample(
                    sample.network.n_peers, sample.network.inbound_peers, sample.network.outbound_peers, timestamp
                )
            )

    def refresh(self) -> bool:
        token = self.tokens.dispatch(FULL_STREAM)
        sample = self.collect_full_sample()
        return self.apply_full_sample(token, sample)

    # ---- consensus stream ----

    def apply_consensus_sample(self, token: int, consensus, error: Optional[str] = None) -> bool:
        """Merge a consensus-only sample into the shared snapshot."""
        timestamp = _now_iso()
        with self.metrics_lock:
            if not self.tokens.is_current(CONSENSUS_STREAM, token):
                logger.debug(f"[Monitor] Discarding superseded consensus sample (token {token})")
                return False
            health = self._state.health
            if consensus is not None:
                verdict = evaluate_consensus_health(self._state.status, consensus)
            else:
                verdict = ConsensusHealth(issues=[error or "consensus state unavailable"])
            errors = merge_consensus_issues(health.error_messages, health.consensus.issues, verdict.issues)
            health.error_messages = errors
            health.has_errors = bool(errors)
            health.consensus = verdict
            self._state.consensus_state = consensus
            self._state.last_consensus_sample = timestamp
            if consensus is not None:
                self.consensus_history.append(_participation_sample(verdict, timestamp))
        return True

    def refresh_consensus(self) -> bool:
        token = self.tokens.dispatch(CONSENSUS_STREAM)
        error = None
        try:
            consensus = ConsensusSample.from_rpc(self.client.get_consensus_state())
        except CometRPCError as e:
            logger.warning(f"[Consensus] Failed to fetch: {e}")
            consensus = None
            error = f"failed to fetch consensus state: {e}"
        return self.apply_consensus_sample(token, consensus, error)

    # ---- loops ----

    def _loop(self, stream: str, interval: float, cycle, stop_event: threading.Event):
        logger.info(f"[Monitor] Starting {stream} sampling every {interval}s")
        while not stop_event.is_set():
            try:
                cycle()
            except Exception as e:
                logger.exception(f"[Monitor] Unexpected error in {stream} sampling: {e}")
            stop_event.wait(interval)
        logger.info(f"[Monitor] Stopped {stream} sampling")

    def _start_stream(self, stream: str, interval: float, cycle, name: str):
        thread = self._threads.get(stream)
        if thread is not None and thread.is_alive():
            return
        self.tokens.resume(stream)
        stop_event = threading.Event()
        thread = threading.Thread(target=self._loop, args=(stream, interval, cycle, stop_event), name=name)
        thread.daemon = True
        self._stop_events[stream] = stop_event
        self._threads[stream] = thread
        thread.start()

    def start(self):
        self._start_stream(FULL_STREAM, self.config.refresh_interval, self.refresh, "FullSampleThread")
        if self.config.enable_consensus_realtime and self.config.consensus_refresh_interval > 0:
            self._start_stream(
                CONSENSUS_STREAM,
                self.config.consensus_refresh_interval,
                self.refresh_consensus,
                "ConsensusSampleThread",
            )

    def stop(self, timeout: Optional[float] = None):
        """Stop both loops; in-flight fetches finish but their results are dropped."""
        for stream in (FULL_STREAM, CONSENSUS_STREAM):
            stop_event = self._stop_events.get(stream)
            if stop_event is not None:
                stop_event.set()
            self.tokens.stop(stream)
        if timeout is not None:
            for thread in self._threads.values():
                thread.join(timeout)

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads.values())

    # ---- targets ----

    def set_node_url(self, node_url: str):
        connection = build_node_connection(node_url)
        with self.divergence_lock, self.metrics_lock:
            self.connection = connection
            self.client.base_url = connection.base_url
            self.analyzer.set_base_url(connection.base_url)
            self.detector.reset()
            self.publisher.node_url = connection.rpc_url
            self.tokens.invalidate(FULL_STREAM)
            self.tokens.invalidate(CONSENSUS_STREAM)
            self._state = HealthSnapshot()
            self._last_block = (None, None)
            for history in (self.consensus_history, self.block_time_history, self.mempool_history, self.peer_history):
                history.clear()
        logger.info(f"[Monitor] Now monitoring {connection.rpc_url}")

    def set_reference_node(self, address: str):
        if not address or not address.strip():
            return
        reference = build_node_connection(address)
        with self.divergence_lock:
            self.reference = reference
            self.analyzer.set_reference(reference)
        logger.info(f"[Monitor] Reference node set to {reference.rpc_url}")

    # ---- outputs ----

    def snapshot(self) -> HealthSnapshot:
        with self.metrics_lock:
            return copy.deepcopy(self._state)

    def snapshot_dict(self) -> dict:
        data = asdict(self.snapshot())
        data["node"] = {"address": self.connection.input_value, "rpc_url": self.connection.rpc_url}
        data["reference_node"] = {"address": self.reference.input_value, "rpc_url": self.reference.rpc_url}
        data["divergence_state"] = self.detector.state
        return _jsonable(data)

    def history_dict(self) -> dict:
        return {
            "consensus": self.consensus_history.to_list(),
            "block_time": self.block_time_history.to_list(),
            "mempool_depth": self.mempool_history.to_list(),
            "peer_count": self.peer_history.to_list(),
        }


def _participation_sample(consensus: ConsensusHealth, timestamp: str) -> ConsensusParticipationSample:
    return ConsensusParticipationSample(
        height=consensus.height,
        round=consensus.round,
        step=consensus.step,
        prevote_ratio=consensus.prevote_ratio,
        precommit_ratio=consensus.precommit_ratio,
        timestamp=timestamp,
    )
