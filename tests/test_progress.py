"""
Tests for weighted progress reporting.
"""

import pytest

from animcap.services.progress import ProgressReporter, ProgressStage, StatusMessage


class TestProgressReporter:
    """Tests for ProgressReporter."""

    @pytest.fixture
    def updates(self):
        return []

    @pytest.fixture
    def reporter(self, updates):
        return ProgressReporter("job-1", capture_weight=50, callback=updates.append)

    def test_weighted_stages(self, reporter):
        """Test capture fills [0, W] and encode fills [W, 100]."""
        reporter.capture(0.5)
        assert reporter.percent == pytest.approx(25.0)
        reporter.encode(0.5)
        assert reporter.percent == pytest.approx(75.0)

    def test_monotonic_and_ends_at_100(self, reporter, updates):
        """Test values never decrease and the final value is exactly 100."""
        reporter.capture(0.4, StatusMessage.CAPTURING)
        reporter.capture(0.2)
        reporter.capture(1.0)
        reporter.encode(0.1, StatusMessage.ENCODING)
        reporter.encode(0.05)
        reporter.encode(1.0)
        reporter.complete()

        values = [u.percent for u in updates]
        assert values == sorted(values)
        assert values[-1] == 100.0
        assert updates[-1].stage == ProgressStage.DONE
        assert updates[-1].message == StatusMessage.COMPLETE

    def test_never_100_before_complete(self, reporter):
        """Test a finished encode stays below 100 until complete()."""
        reporter.encode(1.0)
        assert reporter.percent < 100.0

    def test_status_message_emitted(self, reporter, updates):
        """Test stage transitions emit their message without moving progress."""
        reporter.status(StatusMessage.LOADING_ENCODER)
        assert updates[-1].message == "Loading encoder..."
        assert updates[-1].percent == 0.0

    def test_fractions_clamped(self, reporter):
        """Test out-of-range fractions are clamped."""
        reporter.capture(5.0)
        assert reporter.percent == pytest.approx(50.0)
        reporter.encode(-1.0)
        assert reporter.percent == pytest.approx(50.0)

    def test_closed_reporter_is_silent(self, reporter, updates):
        """Test updates arriving after close are dropped."""
        reporter.encode(0.5, StatusMessage.ENCODING)
        reporter.close()
        reporter.encode(0.9)
        reporter.complete()
        assert len(updates) == 1
        assert updates[-1].message == StatusMessage.ENCODING

    def test_callback_failure_is_contained(self):
        """Test a raising callback does not break reporting."""

        def callback(update):
            raise RuntimeError("listener down")

        reporter = ProgressReporter("job-1", capture_weight=25, callback=callback)
        reporter.capture(1.0)
        reporter.complete()
        assert reporter.percent == 100.0

    def test_invalid_weight(self):
        with pytest.raises(ValueError):
            ProgressReporter("job-1", capture_weight=120)
