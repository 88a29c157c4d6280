import pytest

from comet_monitor.models import VoteSet
from comet_monitor.votes import (
    bit_array_progress,
    calculate_vote_ratio,
    parse_bit_array_ratio,
    parse_vote_list_ratio,
    select_vote_set,
)


@pytest.mark.parametrize(
    "bit_array,expected",
    [
        ("BA{4:xX__}", 0.5),
        ("BA{4:xxx_} 3/4 = 0.75", 0.75),
        ("BA{5:tT1+_}", 0.8),
        ("BA{2:__}", 0.0),
    ],
)
def test_bit_array_ratio(bit_array, expected):
    assert parse_bit_array_ratio(bit_array) == pytest.approx(expected)


@pytest.mark.parametrize("bit_array", ["BA{0:}", "BA{4:xx__", "nonsense", "", None, 42, "BA{3:}"])
def test_bit_array_malformed_is_none(bit_array):
    assert parse_bit_array_ratio(bit_array) is None


def test_vote_list_excludes_blank_entries():
    ratio = parse_vote_list_ratio(["<nil>", "", "sig-A", "sig-B"])
    assert ratio == pytest.approx(2 / 3)


def test_vote_list_nil_marker_is_case_insensitive():
    votes = ["Vote{0:ABC 1/00/SIGNED_MSG_TYPE_PREVOTE NIL-VOTE}", "Vote{1:DEF ...}"]
    assert parse_vote_list_ratio(votes) == pytest.approx(0.5)


@pytest.mark.parametrize("votes", [None, [], ["", "   "]])
def test_vote_list_without_meaningful_votes(votes):
    assert parse_vote_list_ratio(votes) is None


def test_bit_array_preferred_over_list():
    vote_set = VoteSet(round=0, prevotes=("sig-A", "<nil>"), prevotes_bit_array="BA{4:xxxx}")
    assert calculate_vote_ratio(vote_set, "prevotes") == 1.0


def test_list_used_when_bit_array_unparsable():
    vote_set = VoteSet(round=0, precommits=("sig-A", "<nil>"), precommits_bit_array="BA{garbage")
    assert calculate_vote_ratio(vote_set, "precommits") == 0.5


def test_missing_vote_set_is_none():
    assert calculate_vote_ratio(None, "prevotes") is None


def test_progress_threshold():
    progress = bit_array_progress("BA{4:xxx_}")
    assert progress["counted"] == 3
    assert progress["missing"] == 1
    assert progress["threshold"] == 3
    assert progress["reached"] is True


def test_select_vote_set_falls_back_to_last():
    sets = (VoteSet(round=0), VoteSet(round=1))
    assert select_vote_set(sets, 1) is sets[1]
    assert select_vote_set(sets, 0) is sets[0]
    assert select_vote_set(sets, 7) is sets[-1]
    assert select_vote_set((), 0) is None
