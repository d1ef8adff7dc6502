"""Tests for fuzzy resident name matching."""

import pytest

from rentroll.similarity import name_similarity, resident_list_match


class TestNameSimilarity:
    def test_identical_after_normalization(self):
        assert name_similarity("Jane Doe", "  jane DOE") == 1.0

    def test_misspelling_reaches_threshold(self):
        # 8 shared characters out of 10 distinct
        assert name_similarity("Jon Smyth", "John Smith") == pytest.approx(0.8)

    def test_unrelated_names(self):
        assert name_similarity("Alice Wong", "Bob Reyes") < 0.5

    def test_empty_names(self):
        assert name_similarity("", "") == 0.0
        assert name_similarity("", "Jane") == 0.0


class TestResidentListMatch:
    def test_exact_names_match_fully(self):
        result = resident_list_match(["Jane Doe", "Bob Doe"], ["bob doe", "jane doe"])
        assert result.match_percentage == 1.0
        assert result.matched_count == 2
        assert all(m.similarity == 1.0 for m in result.matches)

    def test_fuzzy_single_resident(self):
        result = resident_list_match(["John Smith"], ["Jon Smyth"])
        assert result.match_percentage == 1.0
        assert result.matches[0].matched_name == "Jon Smyth"

    def test_no_names_match(self):
        result = resident_list_match(
            ["Alice Wong", "Bob Reyes", "Carla Diaz"],
            ["Xavier Quill", "Yvonne Park", "Zed Kim"],
        )
        assert result.match_percentage == 0.0
        assert result.matched_count == 0

    def test_longer_list_is_denominator(self):
        result = resident_list_match(["Jane Doe"], ["Jane Doe", "Bob Doe"])
        assert result.match_percentage == 0.5

    @pytest.mark.parametrize("names_a, names_b", [
        ([], ["Jane Doe"]),
        (["Jane Doe"], []),
        ([], []),
    ])
    def test_empty_lists_never_match(self, names_a, names_b):
        result = resident_list_match(names_a, names_b)
        assert result.match_percentage == 0.0
        assert result.matches == []

    def test_below_threshold_reports_best_candidate_score(self):
        result = resident_list_match(["Alice Wong"], ["Alan Wang"], threshold=0.95)
        assert not result.matches[0].is_match
        assert result.matches[0].matched_name is None
        assert result.matches[0].similarity > 0
