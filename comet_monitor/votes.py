import re

BIT_ARRAY_PATTERN = re.compile(r"BA\{(\d+):([^}]*)\}")
AFFIRMATIVE_FLAGS = "xXtT1+"
NIL_VOTE_PATTERN = re.compile(r"<nil>|nil-vote", re.IGNORECASE)

VOTE_KINDS = ("prevotes", "precommits")


def _match_bit_array(bit_array):
    if not isinstance(bit_array, str):
        return None
    match = BIT_ARRAY_PATTERN.search(bit_array)
    if not match:
        return None
    total = int(match.group(1))
    flags = match.group(2)
    if total <= 0 or not flags:
        return None
    return total, flags


def parse_bit_array_ratio(bit_array):
    """
    Parse a CometBFT bit array summary such as ``BA{4:xx_x} 3/4 = 0.75``.
    Returns counted/total, or None when the string is missing or malformed.
    """
    parsed = _match_bit_array(bit_array)
    if parsed is None:
        return None
    total, flags = parsed
    counted = sum(1 for flag in flags if flag in AFFIRMATIVE_FLAGS)
    return counted / total


def parse_vote_list_ratio(votes):
    """
    Ratio of affirmative votes over received votes.
    Blank entries are votes not yet received and do not count against the ratio.
    """
    if not votes:
        return None
    meaningful = [vote for vote in votes if isinstance(vote, str) and vote.strip()]
    if not meaningful:
        return None
    affirmative = [vote for vote in meaningful if not NIL_VOTE_PATTERN.search(vote)]
    return len(affirmative) / len(meaningful)


def calculate_vote_ratio(vote_set, kind: str):
    if vote_set is None:
        return None
    if kind not in VOTE_KINDS:
        raise ValueError(f"Unknown vote kind: {kind}")

    ratio = parse_bit_array_ratio(getattr(vote_set, f"{kind}_bit_array", None))
    if ratio is not None:
        return ratio
    return parse_vote_list_ratio(getattr(vote_set, kind, None))


def bit_array_progress(bit_array):
    """Vote progress towards the +2/3 quorum for a bit array summary."""
    parsed = _match_bit_array(bit_array)
    if parsed is None:
        return None
    total, flags = parsed
    counted = sum(1 for flag in flags if flag in AFFIRMATIVE_FLAGS)
    threshold = (2 * total) // 3 + 1
    return {
        "total": total,
        "counted": counted,
        "missing": max(total - counted, 0),
        "ratio": counted / total,
        "threshold": threshold,
        "reached": counted >= threshold,
    }


def select_vote_set(vote_sets, round_number):
    """Vote set for the given round, falling back to the most recent one."""
    if not vote_sets:
        return None
    for vote_set in vote_sets:
        if vote_set.round is not None and vote_set.round == round_number:
            return vote_set
    return vote_sets[-1]
