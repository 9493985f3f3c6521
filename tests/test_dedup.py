"""
Tests for trendwire.generation.dedup module.
"""

import pytest
from datetime import datetime

from trendwire.generation.constants import DUPLICATE_SIMILARITY_THRESHOLD
from trendwire.generation.dedup import (
    TrendDeduplicator,
    normalize_title,
    similarity,
    title_hash,
)


class TestNormalization:

    def test_normalize_title(self):
        assert normalize_title("  Breaking:   Apple's NEW iPhone!! ") == 'breaking apple s new iphone'

    def test_normalize_empty(self):
        assert normalize_title(None) == ''
        assert normalize_title('?!') == ''

    def test_hash_ignores_case_and_punctuation(self):
        assert title_hash('World Cup qualifiers') == title_hash('world cup, QUALIFIERS!')
        assert len(title_hash('World Cup qualifiers')) == 16

    def test_hash_differs_for_different_titles(self):
        assert title_hash('World Cup qualifiers') != title_hash('World Cup final')


class TestSimilarity:

    def test_similarity_is_normalized_edit_distance(self):
        # kitten -> sitting takes three edits over seven characters
        assert similarity('kitten', 'sitting') == pytest.approx(1 - 3 / 7)
        assert similarity('', 'abc') == 0.0

    def test_threshold_is_inclusive(self):
        # One substitution over five characters: exactly 0.80
        assert similarity('abcde', 'abcdx') == pytest.approx(0.80)
        assert TrendDeduplicator().is_similar('abcde', 'abcdx')
        assert not TrendDeduplicator().is_similar('abcde', 'abcxy')

    def test_similarity_bounds(self):
        assert similarity('abc', 'abc') == 1.0
        assert similarity('abc', 'xyz') == 0.0
        assert similarity('', '') == 1.0

    def test_threshold_constant(self):
        assert DUPLICATE_SIMILARITY_THRESHOLD == 0.80

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            TrendDeduplicator(threshold=0)


class TestFilterNew:

    def test_exact_duplicate_of_known_is_dropped(self, make_trend):
        known = [make_trend('World Cup qualifiers', 5000)]
        candidates = [make_trend('world cup QUALIFIERS!', 90000), make_trend('Mars rover landing', 100)]

        result = TrendDeduplicator().filter_new(candidates, known)

        assert [t.title for t in result] == ['Mars rover landing']

    def test_near_duplicate_of_known_is_dropped(self, make_trend):
        known = [make_trend('Prague marathon 2026', 5000)]
        # Three substitutions over 20 characters: similarity 0.85
        candidate = make_trend('Prague marathin 2037', 90000)
        assert similarity(normalize_title(known[0].title), normalize_title(candidate.title)) == pytest.approx(0.85)

        assert TrendDeduplicator().filter_new([candidate], known) == []

    def test_below_threshold_is_kept(self, make_trend):
        a = make_trend('Prague marathon 2026', 5000)
        # Six substitutions over 20 characters: similarity 0.70
        b = make_trend('Prague marxtiin 3037', 4000)

        result = TrendDeduplicator().filter_new([a, b])

        assert result == [a, b]

    def test_higher_volume_near_duplicate_wins(self, make_trend):
        low = make_trend('Taylor Swift concert Prague', 1000)
        other = make_trend('Central bank rate decision', 3000)
        high = make_trend('Taylor Swift concert in Prague', 50000)

        result = TrendDeduplicator().filter_new([low, other, high])

        # Original order is preserved for the survivors
        assert result == [other, high]

    def test_equal_volume_earlier_first_seen_wins(self, make_trend):
        later = make_trend('Taylor Swift concert Prague', 1000, first_seen=datetime(2026, 10, 19, 9, 0))
        earlier = make_trend('Taylor Swift concert in Prague', 1000, first_seen=datetime(2026, 10, 19, 7, 0))

        assert TrendDeduplicator().filter_new([later, earlier]) == [earlier]

    def test_same_id_twice_in_batch(self, make_trend):
        trend = make_trend('Nobel prize chemistry', 2000)

        assert TrendDeduplicator().filter_new([trend, trend]) == [trend]

    def test_untitled_candidates_are_skipped(self, make_trend):
        blank = make_trend('???', 99999, trend_id='blank')

        assert TrendDeduplicator().filter_new([blank]) == []

    def test_custom_threshold(self, make_trend):
        a = make_trend('Prague marathon 2026', 5000)
        b = make_trend('Prague marxtiin 3037', 4000)

        assert TrendDeduplicator(threshold=0.65).filter_new([a, b]) == [a]

    def test_no_surviving_pair_is_similar(self, make_trend):
        titles = [
            'Election results tonight', 'Election result tonight', 'Election results today',
            'Heatwave warning issued', 'Heat wave warning issued', 'Stock market rally',
        ]
        candidates = [make_trend(t, 1000 * (i + 1)) for i, t in enumerate(titles)]
        dedup = TrendDeduplicator()

        result = dedup.filter_new(candidates)

        for i, a in enumerate(result):
            for b in result[i + 1:]:
                assert not dedup.is_similar(normalize_title(a.title), normalize_title(b.title))
