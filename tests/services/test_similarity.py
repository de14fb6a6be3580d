import pytest

from stream_resolver.services.similarity import normalize, similarity, word_overlap


def test_normalize_strips_punctuation_and_case():
    assert normalize("  The Office (US)!  ") == "the office us"
    assert normalize(None) == ""


def test_identical_titles_score_one():
    assert similarity("Show Name", "show.name") == 1.0


@pytest.mark.parametrize("a, b", [("", "Show"), ("Show", ""), (None, None), ("!!!", "Show")])
def test_empty_side_scores_zero(a, b):
    assert similarity(a, b) == 0.0


def test_similarity_is_bounded_and_orders_closeness():
    close = similarity("Show Name", "Show Names")
    far = similarity("Show Name", "Completely Different Thing")

    assert 0.0 <= far < close < 1.0


def test_word_overlap():
    assert word_overlap("The Show Name 2019", "Show Name") == 1.0
    assert word_overlap("Show", "Show Name") == 0.5
    assert word_overlap("Show", "") == 0.0
