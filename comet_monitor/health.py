import logging
from datetime import datetime, timezone

from .consensus_steps import PRECOMMIT_WAIT_STEP, PREVOTE_WAIT_STEP, classify_step
from .models import ConsensusHealth, NodeHealth
from .votes import calculate_vote_ratio, select_vote_set

logger = logging.getLogger(__name__)

PARTICIPATION_THRESHOLD = 2 / 3
MAX_HEIGHT_LAG = 2
STALE_BLOCK_SECONDS = 5 * 60
REPLAY_EXCERPT_LIMIT = 160
MEMPOOL_ELEVATED_TXS = 50
MEMPOOL_SEVERE_TXS = 200

CONSENSUS_UNAVAILABLE = "consensus state unavailable"
STUCK_REPLAYING = "node is stuck replaying blocks"
CATCHUP_CONTRADICTION = "step indicates catch-up despite sync reported complete"
HEIGHT_LAG = "consensus height is lagging behind latest block height"
LOW_PREVOTES = "prevote participation below two-thirds threshold"
LOW_PRECOMMITS = "precommit participation below two-thirds threshold"
STATUS_UNAVAILABLE = "unable to fetch node status"

REPLAY_ERROR_INDICATORS = (
    "wrong block.header.lastresultshash",
    "wrong block.header.apphash",
    "wrong block.header.lastblockid",
    "wrong block.header.validatorshash",
    "wrong block.header.nextvalidatorshash",
    "error in validation",
    "failed to process committed block",
    "error on replay",
    "failed to replay",
    "cannot replay",
)


def dedupe(messages):
    """Drop repeated messages, keeping first-seen order."""
    return list(dict.fromkeys(messages))


def replay_issue(source: str, message):
    """Issue text for a replay error found in ``message``, or None."""
    if not isinstance(message, str):
        return None
    trimmed = message.strip()
    if not trimmed:
        return None
    lowered = trimmed.lower()
    if not any(indicator in lowered for indicator in REPLAY_ERROR_INDICATORS):
        return None
    if len(trimmed) > REPLAY_EXCERPT_LIMIT:
        trimmed = trimmed[:REPLAY_EXCERPT_LIMIT - 3] + "..."
    prefix = f"consensus replay error detected ({source})" if source else "consensus replay error detected"
    return f"{prefix}: {trimmed}"


def evaluate_consensus_health(status, consensus) -> ConsensusHealth:
    """
    Build the consensus verdict from the latest status and consensus samples.

    Either sample may be None. Issue order follows the evaluation order:
    replay errors, catch-up, height lag, then vote participation.
    """
    health = ConsensusHealth()
    if consensus is None:
        health.issues.append(CONSENSUS_UNAVAILABLE)
        return health

    issues = []
    health.height = consensus.height
    health.round = consensus.round

    step_info = classify_step(consensus.step)
    raw_step = str(consensus.step) if consensus.step is not None else None
    health.step = step_info.label or raw_step

    for source, text in [("round step", raw_step)] + [
        (f"peer {peer.node_address}", value)
        for peer in consensus.peers
        for value in (peer.catchup_commit, peer.proposal_pol)
    ]:
        issue = replay_issue(source, text)
        if issue and issue not in issues:
            issues.append(issue)

    if step_info.is_catchup:
        issues.append(STUCK_REPLAYING if status is not None and status.catching_up else CATCHUP_CONTRADICTION)

    if status is not None and status.height is not None and consensus.height is not None:
        if abs(status.height - consensus.height) > MAX_HEIGHT_LAG:
            issues.append(HEIGHT_LAG)

    vote_set = select_vote_set(consensus.vote_sets, consensus.round)
    health.prevote_ratio = calculate_vote_ratio(vote_set, "prevotes")
    health.precommit_ratio = calculate_vote_ratio(vote_set, "precommits")

    step_code = step_info.code
    if step_code is not None and step_code >= PREVOTE_WAIT_STEP:
        if health.prevote_ratio is not None and health.prevote_ratio < PARTICIPATION_THRESHOLD:
            issues.append(LOW_PREVOTES)
    if step_code is not None and step_code >= PRECOMMIT_WAIT_STEP:
        if health.precommit_ratio is not None and health.precommit_ratio < PARTICIPATION_THRESHOLD:
            issues.append(LOW_PRECOMMITS)

    health.issues = dedupe(issues)
    health.healthy = not health.issues
    return health


def merge_consensus_issues(error_messages, previous_issues, new_issues):
    """
    Replace the consensus issues inside an outer error list.
    Messages that came from the previous consensus verdict are dropped first.
    """
    retained = [message for message in error_messages if message not in previous_issues]
    return dedupe(retained + list(new_issues))


def is_replay_issue(issue: str) -> bool:
    lowered = issue.lower()
    return "replay error" in lowered or "catch-up" in lowered or issue == STUCK_REPLAYING


def block_age_seconds(status, now=None):
    if status is None or status.block_time is None:
        return None
    now = now or datetime.now(timezone.utc)
    return (now - status.block_time).total_seconds()


def analyze_node_health(status, consensus, now=None) -> NodeHealth:
    """Node-level verdict: reachability, sync state, block freshness and consensus issues."""
    now = now or datetime.now(timezone.utc)
    health = NodeHealth(last_updated=now.isoformat())

    if status is None:
        health.error_messages.append(STATUS_UNAVAILABLE)
        if consensus is None:
            health.consensus.issues.append(CONSENSUS_UNAVAILABLE)
        return health

    health.is_online = True
    health.is_synced = not status.catching_up

    age = block_age_seconds(status, now)
    if age is not None and age > STALE_BLOCK_SECONDS and not status.catching_up:
        health.error_messages.append(f"latest block is {round(age / 60)} minutes old")

    health.consensus = evaluate_consensus_health(status, consensus)
    health.error_messages.extend(health.consensus.issues)

    if any(is_replay_issue(issue) for issue in health.consensus.issues):
        health.is_synced = False

    health.error_messages = dedupe(health.error_messages)
    health.has_errors = bool(health.error_messages)
    return health


def mempool_warnings(pending_txs):
    if pending_txs is None:
        return ["mempool data unavailable"]
    if pending_txs > MEMPOOL_SEVERE_TXS:
        return [f"severe mempool backlog detected ({MEMPOOL_SEVERE_TXS}+ pending transactions)"]
    if pending_txs > MEMPOOL_ELEVATED_TXS:
        return [f"elevated mempool activity ({MEMPOOL_ELEVATED_TXS}+ pending transactions)"]
    return []
