from src.messaging.infrastructure.job_queue import backoff_seconds


def test_backoff_doubles_per_attempt():
    assert [backoff_seconds(n, 1.0, 60.0) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]


def test_backoff_is_capped():
    assert backoff_seconds(10, 2.0, 60.0) == 60.0


def test_backoff_treats_zero_attempts_as_first():
    assert backoff_seconds(0, 1.5, 60.0) == 1.5
