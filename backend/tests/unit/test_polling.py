"""Unit tests for the adaptive poll interval."""

import pytest

from app.sync.polling import AdaptivePollInterval


class TestAdaptivePollInterval:
    """Test geometric backoff between floor and ceiling."""

    def test_starts_at_initial(self):
        assert AdaptivePollInterval().current == 15.0

    def test_three_empty_polls(self):
        interval = AdaptivePollInterval(initial=15.0)

        for _ in range(3):
            interval.record_result(0)

        assert interval.current == min(15.0 * 1.5 ** 3, 60.0)

    def test_growth_is_capped_at_ceiling(self):
        interval = AdaptivePollInterval(initial=40.0)

        for _ in range(5):
            interval.record_result(0)

        assert interval.current == 60.0

    def test_new_replies_reset_to_floor(self):
        interval = AdaptivePollInterval()
        interval.record_result(0)
        interval.record_result(0)

        assert interval.record_result(2) == 10.0

    def test_errors_double_the_interval(self):
        interval = AdaptivePollInterval()

        assert interval.record_error() == 30.0
        assert interval.record_error() == 60.0
        assert interval.record_error() == 60.0

    def test_initial_is_clamped(self):
        assert AdaptivePollInterval(initial=1.0).current == 10.0
        assert AdaptivePollInterval(initial=600.0).current == 60.0

    def test_reset(self):
        interval = AdaptivePollInterval()
        interval.record_error()
        interval.reset()

        assert interval.current == 15.0

    def test_rejects_inverted_bounds(self):
        with pytest.raises(ValueError):
            AdaptivePollInterval(floor=30.0, ceiling=10.0)
