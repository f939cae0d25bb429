"""
Tests for the decay module.
"""

import numpy as np
import pytest

from pyrodiv.decay import decay_weight, decay_weights, recency_ranks
from pyrodiv.errors import ConfigurationError


class TestDecayWeight:
    """Tests for the decay weighting function."""

    def test_most_recent_has_weight_one(self):
        for rate in [0.0, 0.3, 0.5, 0.99]:
            assert decay_weight(rate, 0) == 1.0

    def test_geometric(self):
        assert decay_weight(0.5, 1) == pytest.approx(0.5)
        assert decay_weight(0.5, 3) == pytest.approx(0.125)

    def test_zero_rate_keeps_only_latest(self):
        assert decay_weight(0.0, 0) == 1.0
        assert decay_weight(0.0, 1) == 0.0
        assert decay_weight(0.0, 7) == 0.0

    @pytest.mark.parametrize("rate", [0.0, 0.1, 0.5, 0.9, 0.999])
    def test_non_increasing_in_age(self, rate):
        weights = [decay_weight(rate, k) for k in range(20)]
        assert all(a >= b for a, b in zip(weights, weights[1:]))
        assert all(0.0 <= w <= 1.0 for w in weights)

    @pytest.mark.parametrize("rate", [-0.1, 1.0, 1.5, float("nan")])
    def test_invalid_rate(self, rate):
        with pytest.raises(ConfigurationError):
            decay_weight(rate, 1)

    def test_negative_rank(self):
        with pytest.raises(ConfigurationError):
            decay_weight(0.5, -1)

    def test_vectorized_matches_scalar(self):
        ranks = np.arange(6)
        expected = [decay_weight(0.7, int(k)) for k in ranks]
        assert np.allclose(decay_weights(0.7, ranks), expected)


class TestRecencyRanks:
    """Tests for recency ranking."""

    def test_ordinal_newest_first(self):
        ranks = recency_ranks([2000, 2010, 2005])
        assert ranks.tolist() == [2, 0, 1]

    def test_ordinal_ignores_gaps(self):
        # 30 years apart is still one rank
        assert recency_ranks([1980, 2010]).tolist() == [1, 0]

    def test_same_year_ordered_by_day(self):
        ranks = recency_ranks([2010, 2010, 2000], days=[150, 220, 200])
        assert ranks.tolist() == [1, 0, 2]

    def test_same_date_shares_rank(self):
        ranks = recency_ranks([2010, 2010, 2000], days=[200, 200, 100])
        assert ranks.tolist() == [0, 0, 1]

    def test_years_basis(self):
        ranks = recency_ranks([2000, 2008], basis="years", reference_year=2010)
        assert ranks.tolist() == [10, 2]

    def test_years_basis_default_reference(self):
        assert recency_ranks([2000, 2008], basis="years").tolist() == [8, 0]

    def test_years_after_reference(self):
        with pytest.raises(ConfigurationError):
            recency_ranks([2012], basis="years", reference_year=2010)

    def test_empty(self):
        assert recency_ranks([]).size == 0
