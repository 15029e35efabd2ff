"""Unit tests for capped exponential backoff."""
import pytest

from app.core.backoff import Backoff


def test_delays_double_until_cap():
    backoff = Backoff(base=1.0, cap=30.0)
    assert list(backoff.delays(6)) == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


def test_progress_reconnect_schedule():
    assert list(Backoff(base=1.0, cap=30.0).delays(3)) == [1.0, 2.0, 4.0]


def test_jitter_never_exceeds_cap():
    backoff = Backoff(base=10.0, cap=12.0, jitter=5.0)
    for attempt in range(5):
        assert backoff.delay(attempt) <= 12.0


def test_negative_attempt_rejected():
    with pytest.raises(ValueError):
        Backoff().delay(-1)
