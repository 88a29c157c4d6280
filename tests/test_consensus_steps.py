import pytest

from comet_monitor.consensus_steps import classify_step


def test_commit_code():
    info = classify_step(6)
    assert info.label == "Commit"
    assert info.code == 6
    assert info.is_catchup is False


def test_catchup_code():
    info = classify_step(11)
    assert info.is_catchup is True
    assert info.label == "Catch-up Wait"


def test_unknown_codes():
    info = classify_step(9)
    assert info.label == "Step 9"
    assert info.is_catchup is False

    info = classify_step(27)
    assert info.label == "Step 27"
    assert info.is_catchup is True


def test_numeric_string():
    info = classify_step(" 3 ")
    assert info.code == 3
    assert info.label == "Prevote Wait"


def test_free_text_catchup_indicator():
    assert classify_step("RoundStepCatchupReplay").is_catchup is True
    assert classify_step("waiting on wrong last block").is_catchup is True


@pytest.mark.parametrize(
    "text,code",
    [
        ("precommit wait", 5),
        ("RoundStepPrevoteWait", 3),
        ("RoundStepPrecommit", 4),
        ("RoundStepNewHeight", 0),
    ],
)
def test_free_text_matches_canonical_labels(text, code):
    info = classify_step(text)
    assert info.code == code
    assert info.is_catchup is False


def test_unmatched_text_kept_as_label():
    info = classify_step("RoundStepPropose")
    assert info.code is None
    assert info.label == "RoundStepPropose"
    assert info.is_catchup is False


@pytest.mark.parametrize("step", [None, "", "   ", 1.5, True])
def test_absent_step(step):
    info = classify_step(step)
    assert info.code is None
    assert info.label is None
    assert info.description == "step not yet reported"
    assert info.is_catchup is False


@pytest.mark.parametrize("step", ["+-5", "--1", "²", "٣", "1_000"])
def test_malformed_numeric_text_is_free_text(step):
    info = classify_step(step)
    assert info.code is None
    assert info.label == step
    assert info.is_catchup is False


def test_signed_numeric_string():
    assert classify_step("+6").label == "Commit"
    assert classify_step("-1").label == "Step -1"
