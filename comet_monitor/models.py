import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

_FRACTION_PATTERN = re.compile(r"\.(\d+)")


def parse_int(value) -> Optional[int]:
    """Lenient integer parsing for RPC fields that arrive as numbers or strings."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text, 10)
        except ValueError:
            return None
    return None


def parse_text(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an RFC 3339 block time, truncating nanoseconds to microseconds."""
    text = parse_text(value)
    if text is None:
        return None
    text = text.replace("Z", "+00:00")
    text = _FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _result(payload) -> dict:
    if not isinstance(payload, dict):
        return {}
    result = payload.get("result")
    return result if isinstance(result, dict) else {}


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class StatusSample:
    height: Optional[int]
    block_time: Optional[datetime]
    catching_up: bool
    latest_app_hash: Optional[str] = None
    moniker: Optional[str] = None
    network: Optional[str] = None
    version: Optional[str] = None

    @classmethod
    def from_rpc(cls, payload) -> "StatusSample":
        result = _result(payload)
        sync_info = _dict(result.get("sync_info"))
        node_info = _dict(result.get("node_info"))
        return cls(
            height=parse_int(sync_info.get("latest_block_height")),
            block_time=parse_timestamp(sync_info.get("latest_block_time")),
            catching_up=sync_info.get("catching_up") is True,
            latest_app_hash=parse_text(sync_info.get("latest_app_hash")),
            moniker=parse_text(node_info.get("moniker")),
            network=parse_text(node_info.get("network")),
            version=parse_text(node_info.get("version")),
        )


@dataclass(frozen=True)
class VoteSet:
    round: Optional[int]
    prevotes: tuple = ()
    prevotes_bit_array: Optional[str] = None
    precommits: tuple = ()
    precommits_bit_array: Optional[str] = None

    @classmethod
    def from_rpc(cls, raw) -> "VoteSet":
        raw = _dict(raw)
        prevotes = raw.get("prevotes")
        precommits = raw.get("precommits")
        return cls(
            round=parse_int(raw.get("round")),
            prevotes=tuple(prevotes) if isinstance(prevotes, list) else (),
            prevotes_bit_array=raw.get("prevotes_bit_array") if isinstance(raw.get("prevotes_bit_array"), str) else None,
            precommits=tuple(precommits) if isinstance(precommits, list) else (),
            precommits_bit_array=raw.get("precommits_bit_array") if isinstance(raw.get("precommits_bit_array"), str) else None,
        )


@dataclass(frozen=True)
class PeerRoundState:
    node_address: str
    catchup_commit: Optional[str] = None
    proposal_pol: Optional[str] = None

    @classmethod
    def from_rpc(cls, raw) -> "PeerRoundState":
        raw = _dict(raw)
        round_state = _dict(_dict(raw.get("peer_state")).get("round_state"))
        catchup_commit = round_state.get("catchup_commit")
        proposal_pol = round_state.get("proposal_pol")
        return cls(
            node_address=str(raw.get("node_address") or "unknown"),
            catchup_commit=catchup_commit if isinstance(catchup_commit, str) else None,
            proposal_pol=proposal_pol if isinstance(proposal_pol, str) else None,
        )


@dataclass(frozen=True)
class ConsensusSample:
    height: Optional[int]
    round: Optional[int]
    step: Optional[Union[int, str]]
    vote_sets: tuple = ()
    peers: tuple = ()

    @classmethod
    def from_rpc(cls, payload) -> "ConsensusSample":
        result = _result(payload)
        round_state = _dict(result.get("round_state"))
        raw_votes = round_state.get("votes")
        if not isinstance(raw_votes, list):
            raw_votes = round_state.get("height_vote_set")
        raw_peers = result.get("peers")
        step = round_state.get("step")
        if isinstance(step, bool) or not isinstance(step, (int, str)):
            step = None
        return cls(
            height=parse_int(round_state.get("height")),
            round=parse_int(round_state.get("round")),
            step=step,
            vote_sets=tuple(VoteSet.from_rpc(v) for v in raw_votes) if isinstance(raw_votes, list) else (),
            peers=tuple(PeerRoundState.from_rpc(p) for p in raw_peers) if isinstance(raw_peers, list) else (),
        )


@dataclass(frozen=True)
class AbciInfo:
    last_block_height: Optional[int]
    last_block_app_hash: Optional[str]
    version: Optional[str] = None
    app_version: Optional[str] = None

    @classmethod
    def from_rpc(cls, payload) -> "AbciInfo":
        response = _dict(_result(payload).get("response"))
        app_version = response.get("app_version")
        return cls(
            last_block_height=parse_int(response.get("last_block_height")),
            last_block_app_hash=parse_text(response.get("last_block_app_hash")),
            version=parse_text(response.get("version")),
            app_version=str(app_version) if app_version is not None else None,
        )


@dataclass(frozen=True)
class CommitHeader:
    height: Optional[int]
    app_hash: Optional[str]
    last_results_hash: Optional[str]

    @classmethod
    def from_rpc(cls, payload) -> "CommitHeader":
        header = _dict(_dict(_result(payload).get("signed_header")).get("header"))
        return cls(
            height=parse_int(header.get("height")),
            app_hash=parse_text(header.get("app_hash")),
            last_results_hash=parse_text(header.get("last_results_hash")),
        )


@dataclass(frozen=True)
class BlockSummary:
    height: int
    app_hash: Optional[str]
    last_results_hash: Optional[str]
    block_hash: Optional[str]
    txs: tuple = ()

    @classmethod
    def from_rpc(cls, payload, requested_height: int) -> "BlockSummary":
        result = _result(payload)
        block = _dict(result.get("block"))
        header = _dict(block.get("header"))
        raw_txs = _dict(block.get("data")).get("txs")
        txs = tuple(tx.strip() for tx in raw_txs if isinstance(tx, str) and tx.strip()) if isinstance(raw_txs, list) else ()
        height = parse_int(header.get("height"))
        return cls(
            height=height if height is not None else requested_height,
            app_hash=parse_text(header.get("app_hash")),
            last_results_hash=parse_text(header.get("last_results_hash")),
            block_hash=parse_text(_dict(result.get("block_id")).get("hash")),
            txs=txs,
        )


@dataclass(frozen=True)
class NetworkSample:
    n_peers: Optional[int]
    inbound_peers: int = 0
    outbound_peers: int = 0

    @classmethod
    def from_rpc(cls, payload) -> "NetworkSample":
        result = _result(payload)
        peers = result.get("peers") if isinstance(result.get("peers"), list) else []
        outbound = sum(1 for peer in peers if _dict(peer).get("is_outbound") is True)
        n_peers = parse_int(result.get("n_peers"))
        if n_peers is None and peers:
            n_peers = len(peers)
        return cls(n_peers=n_peers, inbound_peers=len(peers) - outbound, outbound_peers=outbound)


@dataclass(frozen=True)
class MempoolSample:
    n_txs: Optional[int]
    total: Optional[int]
    total_bytes: Optional[int]

    @classmethod
    def from_rpc(cls, payload) -> "MempoolSample":
        result = _result(payload)
        n_txs = parse_int(result.get("n_txs"))
        total = parse_int(result.get("total"))
        return cls(
            n_txs=n_txs,
            total=total if total is not None else n_txs,
            total_bytes=parse_int(result.get("total_bytes")),
        )


@dataclass
class ConsensusHealth:
    healthy: bool = False
    height: Optional[int] = None
    round: Optional[int] = None
    step: Optional[str] = None
    prevote_ratio: Optional[float] = None
    precommit_ratio: Optional[float] = None
    issues: list = field(default_factory=list)


@dataclass
class DivergenceCandidate:
    height: int
    first_detected_at: float
    confirmed: bool = False


@dataclass
class DivergenceAnalysis:
    block_height: int
    node_app_hash: Optional[str]
    reference_app_hash: Optional[str]
    node_block_hash: Optional[str]
    reference_block_hash: Optional[str]
    node_tx_count: int
    reference_tx_count: int
    matching_tx_count: int
    missing_txs: list
    unexpected_txs: list
    reordered: bool
    reference_node: dict
    last_updated: str


@dataclass
class DivergenceHealthDetails:
    height: Optional[int]
    cause: Optional[str]
    node_app_hash: Optional[str]
    abci_app_hash: Optional[str]
    node_last_results_hash: Optional[str]
    analysis: Optional[DivergenceAnalysis] = None
    analysis_error: Optional[str] = None


@dataclass
class NodeHealth:
    is_online: bool = False
    is_synced: bool = False
    has_errors: bool = True
    error_messages: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    last_updated: Optional[str] = None
    consensus: ConsensusHealth = field(default_factory=ConsensusHealth)
    divergence: Optional[DivergenceHealthDetails] = None
