import re
from dataclasses import dataclass
from typing import Optional, Union

CATCHUP_STEP_THRESHOLD = 10
CATCHUP_INDICATORS = ("catchup", "catch-up", "replay", "wrong last block", "wait last block")

DEFAULT_DESCRIPTION = "Consensus step as reported by the node."
DEFAULT_CATCHUP_DESCRIPTION = "Node is replaying previously committed blocks before rejoining live consensus."
UNKNOWN_DESCRIPTION = "step not yet reported"

# Step codes reported by CometBFT in dump_consensus_state (RoundStepType).
CONSENSUS_STEPS = {
    0: ("New Height", "Moving commits for the previous height and preparing a new round.", False),
    1: ("Proposal", "Designated proposer is broadcasting the block proposal for this round.", False),
    2: ("Prevote", "Validators are evaluating the proposal and broadcasting prevotes.", False),
    3: ("Prevote Wait", "Waiting for +2/3 prevotes or the timeout to expire.", False),
    4: ("Precommit", "Validators are locking on the PoLC and broadcasting precommits.", False),
    5: ("Precommit Wait", "Waiting for +2/3 precommits or the timeout to expire.", False),
    6: ("Commit", "Block reached +2/3 precommits and nodes are finalising the commit.", False),
    7: ("Commit Wait", "Waiting for the commit to finalise before moving to the next height.", False),
    8: ("Finalize Commit", "Applying the committed block and preparing the next height.", False),
    10: ("Catch-up Commit", "Node is replaying previously committed blocks while catching up with the chain.", True),
    11: ("Catch-up Wait", "Waiting for catch-up commit processing to finish before moving to a new height.", True),
    12: ("Catch-up Replay", "Node is replaying historical blocks to synchronise with the network.", True),
    13: ("Catch-up Replay Wait", "Waiting for replay verification before resuming normal consensus operations.", True),
}

NUMERIC_STEP_PATTERN = re.compile(r"[+-]?\d+", re.ASCII)

PREVOTE_WAIT_STEP = 3
PRECOMMIT_WAIT_STEP = 5


@dataclass(frozen=True)
class StepInfo:
    raw: Optional[Union[int, str]]
    code: Optional[int]
    label: Optional[str]
    description: str
    is_catchup: bool


def _parse_code(step):
    if isinstance(step, int):
        return step
    text = step.strip()
    if NUMERIC_STEP_PATTERN.fullmatch(text):
        return int(text)
    return None


def _match_label(text: str):
    """Canonical entry for a free-text step, exact label first, then substring."""
    lowered = text.lower()
    squashed = lowered.replace(" ", "").replace("-", "")
    for code, (label, _, _) in CONSENSUS_STEPS.items():
        if lowered == label.lower():
            return code
    # Longest labels first so "Prevote Wait" wins over "Prevote".
    for code, (label, _, _) in sorted(CONSENSUS_STEPS.items(), key=lambda item: -len(item[1][0])):
        if label.lower() in lowered or label.lower().replace(" ", "").replace("-", "") in squashed:
            return code
    return None


def classify_step(step) -> StepInfo:
    """
    Normalize a consensus step reported as a small integer, a numeric string,
    or free text like ``RoundStepPrevoteWait``.
    """
    if step is None or (isinstance(step, str) and not step.strip()):
        return StepInfo(raw=None, code=None, label=None, description=UNKNOWN_DESCRIPTION, is_catchup=False)
    if isinstance(step, bool) or not isinstance(step, (int, str)):
        return StepInfo(raw=None, code=None, label=None, description=UNKNOWN_DESCRIPTION, is_catchup=False)

    code = _parse_code(step)
    if code is not None:
        entry = CONSENSUS_STEPS.get(code)
        if entry:
            label, description, is_catchup = entry
            return StepInfo(raw=step, code=code, label=label, description=description, is_catchup=is_catchup)
        is_catchup = code >= CATCHUP_STEP_THRESHOLD
        return StepInfo(
            raw=step,
            code=code,
            label=f"Step {code}",
            description=DEFAULT_CATCHUP_DESCRIPTION if is_catchup else DEFAULT_DESCRIPTION,
            is_catchup=is_catchup,
        )

    text = step.strip()
    matched = _match_label(text)
    if matched is not None:
        label, description, is_catchup = CONSENSUS_STEPS[matched]
        return StepInfo(raw=step, code=matched, label=label, description=description, is_catchup=is_catchup)

    lowered = text.lower()
    is_catchup = any(indicator in lowered for indicator in CATCHUP_INDICATORS)
    return StepInfo(
        raw=step,
        code=None,
        label=text,
        description=DEFAULT_CATCHUP_DESCRIPTION if is_catchup else DEFAULT_DESCRIPTION,
        is_catchup=is_catchup,
    )
