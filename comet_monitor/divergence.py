import logging
import time
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from .cometbft_client import CometBFTClient, DEFAULT_TIMEOUT
from .models import BlockSummary, DivergenceAnalysis, DivergenceCandidate, DivergenceHealthDetails

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 5.0

STATE_NONE = "none"
STATE_CANDIDATE = "candidate"
STATE_CONFIRMED = "confirmed"

CAUSE_APP_HASH = "app_hash"
CAUSE_LAST_RESULTS = "last_results"


def compare_hashes(abci, commit):
    """
    Compare the node's commit header against its ABCI-reported app hash.

    Returns ``(has_divergence, height, cause)``. When the commit header is one
    block ahead of ABCI, its last_results_hash is compared against the ABCI
    app hash instead.
    """
    if abci is None or commit is None:
        return False, None, None
    abci_height = abci.last_block_height
    abci_hash = abci.last_block_app_hash
    if abci_height is None or commit.height is None or not abci_hash:
        return False, None, None

    if commit.height == abci_height and commit.app_hash:
        if commit.app_hash != abci_hash:
            return True, commit.height, CAUSE_APP_HASH
    elif commit.height == abci_height + 1 and commit.last_results_hash:
        if commit.last_results_hash != abci_hash:
            return True, abci_height, CAUSE_LAST_RESULTS
    return False, None, None


@dataclass
class DivergenceObservation:
    state: str
    candidate: Optional[DivergenceCandidate] = None
    details: Optional[DivergenceHealthDetails] = None
    newly_confirmed: bool = False
    resolved: bool = False

    @property
    def confirmed(self) -> bool:
        return self.state == STATE_CONFIRMED


class DivergenceDetector:
    """
    Debounced app-hash divergence detection.

    A divergence is only reported once it has been seen at the same height for
    at least ``debounce_seconds``. Holds at most one candidate.
    """

    def __init__(self, debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS, clock=time.time):
        self.debounce_seconds = debounce_seconds
        self.clock = clock
        self.candidate: Optional[DivergenceCandidate] = None
        self._details: Optional[DivergenceHealthDetails] = None

    @property
    def state(self) -> str:
        if self.candidate is None:
            return STATE_NONE
        return STATE_CONFIRMED if self.candidate.confirmed else STATE_CANDIDATE

    def reset(self):
        self.candidate = None
        self._details = None

    def _current(self) -> DivergenceObservation:
        details = replace(self._details) if self.state == STATE_CONFIRMED and self._details is not None else None
        return DivergenceObservation(state=self.state, candidate=self.candidate, details=details)

    def evaluate(self, abci, commit, now=None) -> DivergenceObservation:
        """
        Work out the next detector state for one sample without storing it.
        Pass the result to ``apply`` once the sample is accepted.
        """
        now = self.clock() if now is None else now

        if abci is None or commit is None:
            # Missing telemetry is not evidence either way.
            return self._current()

        has_divergence, height, cause = compare_hashes(abci, commit)
        was_confirmed = self.state == STATE_CONFIRMED

        if not has_divergence:
            return DivergenceObservation(state=STATE_NONE, resolved=was_confirmed)

        details = DivergenceHealthDetails(
            height=height,
            cause=cause,
            node_app_hash=commit.app_hash,
            abci_app_hash=abci.last_block_app_hash,
            node_last_results_hash=commit.last_results_hash,
        )

        if self.candidate is None or self.candidate.height != height:
            candidate = DivergenceCandidate(height=height, first_detected_at=now)
            return DivergenceObservation(state=STATE_CANDIDATE, candidate=candidate, resolved=was_confirmed)

        if self.candidate.confirmed:
            return DivergenceObservation(state=STATE_CONFIRMED, candidate=self.candidate, details=details)

        if now - self.candidate.first_detected_at >= self.debounce_seconds:
            candidate = DivergenceCandidate(
                height=height, first_detected_at=self.candidate.first_detected_at, confirmed=True
            )
            return DivergenceObservation(
                state=STATE_CONFIRMED, candidate=candidate, details=details, newly_confirmed=True
            )
        return DivergenceObservation(state=STATE_CANDIDATE, candidate=self.candidate)

    def apply(self, observation: DivergenceObservation):
        previous = self.candidate
        if previous is not None and observation.candidate is not previous:
            if observation.candidate is None:
                logger.info(f"[Divergence] Cleared {self.state} divergence at height {previous.height}")
            elif observation.candidate.height != previous.height:
                logger.info(f"[Divergence] Candidate moved from height {previous.height} to {observation.candidate.height}")
        candidate = observation.candidate
        if candidate is not None and (previous is None or candidate.height != previous.height):
            logger.warning(
                f"[Divergence] Possible divergence at height {candidate.height}, "
                f"waiting {self.debounce_seconds}s to confirm"
            )
        if observation.newly_confirmed:
            logger.error(f"[Divergence] Confirmed {observation.details.cause} divergence at height {candidate.height}")

        self.candidate = candidate
        self._details = observation.details

    def observe(self, abci, commit, now=None) -> DivergenceObservation:
        observation = self.evaluate(abci, commit, now)
        self.apply(observation)
        return observation


def diff_transactions(reference_txs, node_txs):
    """
    Multiset difference between the reference block and the monitored block.

    Returns ``(missing, unexpected, matching_count, reordered)``. Duplicates are
    counted, so a tx included twice by the reference but once locally is
    reported missing once.
    """
    reference_counts = Counter(reference_txs)
    node_counts = Counter(node_txs)

    missing = []
    for tx, count in reference_counts.items():
        missing.extend([tx] * (count - node_counts.get(tx, 0)))
    unexpected = []
    for tx, count in node_counts.items():
        unexpected.extend([tx] * (count - reference_counts.get(tx, 0)))

    shared = reference_counts & node_counts
    matching = sum(shared.values())
    reordered = _matched_order(reference_txs, shared) != _matched_order(node_txs, shared)
    return missing, unexpected, matching, reordered


def _matched_order(txs, shared):
    remaining = Counter(shared)
    ordered = []
    for tx in txs:
        if remaining[tx] > 0:
            remaining[tx] -= 1
            ordered.append(tx)
    return ordered


def fetch_block_summary(base_url: str, height: int, timeout: float = DEFAULT_TIMEOUT) -> BlockSummary:
    payload = CometBFTClient(base_url, timeout=timeout).get_block(height)
    return BlockSummary.from_rpc(payload, requested_height=height)


class DivergenceAnalyzer:
    """Compares the divergent block against the reference node, caching per height."""

    def __init__(self, base_url: str, reference, block_fetcher=None, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.reference = reference
        self.timeout = timeout
        self.block_fetcher = block_fetcher or (lambda url, height: fetch_block_summary(url, height, self.timeout))
        self._cache = {}

    @property
    def reference_base_url(self) -> str:
        return self.reference.base_url.rstrip("/")

    def cache_key(self, height: int):
        return self.base_url, self.reference_base_url, height

    def set_base_url(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self._cache.clear()

    def set_reference(self, reference):
        self.reference = reference
        self._cache.clear()

    def analyze(self, height: int) -> DivergenceAnalysis:
        height = max(0, int(height))
        key = self.cache_key(height)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        logger.info(f"[Divergence] Comparing block {height} with reference node {self.reference.input_value}")
        node_block = self.block_fetcher(self.base_url, height)
        reference_block = self.block_fetcher(self.reference_base_url, height)

        missing, unexpected, matching, reordered = diff_transactions(reference_block.txs, node_block.txs)
        analysis = DivergenceAnalysis(
            block_height=node_block.height,
            node_app_hash=node_block.app_hash,
            reference_app_hash=reference_block.app_hash,
            node_block_hash=node_block.block_hash,
            reference_block_hash=reference_block.block_hash,
            node_tx_count=len(node_block.txs),
            reference_tx_count=len(reference_block.txs),
            matching_tx_count=matching,
            missing_txs=missing,
            unexpected_txs=unexpected,
            reordered=reordered,
            reference_node={"address": self.reference.input_value, "rpc_url": self.reference.rpc_url},
            last_updated=datetime.now(timezone.utc).isoformat(),
        )
        self._cache[key] = analysis
        return analysis


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def summarize_analysis(analysis: DivergenceAnalysis) -> str:
    reference_label = analysis.reference_node.get("address") or analysis.reference_node.get("rpc_url")
    missing = len(analysis.missing_txs)
    unexpected = len(analysis.unexpected_txs)
    if missing or unexpected:
        return (
            f"Block {analysis.block_height} differs from reference node {reference_label}: "
            f"{_plural(missing, 'missing tx')}, {_plural(unexpected, 'unexpected tx')}."
        )
    if analysis.reordered:
        return f"Block {analysis.block_height} contains the reference node {reference_label} transactions in a different order."
    return (
        f"Block {analysis.block_height} matches reference node {reference_label} transactions. "
        "Investigate ABCI app state for divergence."
    )
