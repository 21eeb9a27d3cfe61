import random

import pytest

from genoscreen.matcher import SignatureMatcher


def test_finds_overlapping_and_nested_patterns():
    m = SignatureMatcher([("he", "HE"), ("she", "SHE"), ("his", "HIS"), ("hers", "HERS")])
    assert m.find("USHERS") == {"he", "she", "hers"}
    assert m.find("AHISHE") == {"his", "she", "he"}


def test_no_match_and_empty_text():
    m = SignatureMatcher([("a", "ACGT")])
    assert m.find("TTTT") == set()
    assert m.find("") == set()


def test_empty_matcher_finds_nothing():
    m = SignatureMatcher([])
    assert len(m) == 0
    assert m.find("ACGT") == set()


def test_empty_pattern_rejected():
    with pytest.raises(ValueError):
        SignatureMatcher([("x", "")])


def test_agrees_with_naive_containment():
    rng = random.Random(7)
    patterns = [("p%d" % i, "".join(rng.choice("ACGT") for _ in range(rng.randint(1, 6)))) for i in range(40)]
    matcher = SignatureMatcher(patterns)
    for _ in range(50):
        text = "".join(rng.choice("ACGTN") for _ in range(rng.randint(0, 80)))
        expected = {key for key, pattern in patterns if pattern in text}
        assert matcher.find(text) == expected
