from datetime import datetime, timedelta, timezone

import pytest

from chat_scraper.quality import AlertLevel, QualityMetricsTracker, QualityThresholds


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def tracker(clock):
    return QualityMetricsTracker(QualityThresholds(min_processing_rate=0.0), clock=clock)


def test_fresh_tracker_has_perfect_score_and_no_alerts(tracker):
    metrics = tracker.get_metrics()

    assert metrics.total_processed == 0
    assert metrics.quality_score == 1.0
    assert tracker.check_alerts() == []


def test_records_batches_per_streamer(tracker, clock):
    tracker.record_batch(
        "alpha",
        total=4,
        valid=3,
        duplicates=1,
        usernames=["ann", "bob", "ann"],
        message_lengths=[4, 6, 8],
    )
    clock.advance(seconds=2)
    tracker.record_batch("alpha", total=2, valid=1, spam=1, usernames=["cid"], message_lengths=[2])
    tracker.record_batch("bravo", total=1, valid=1, usernames=["dee"], message_lengths=[10])

    metrics = tracker.get_metrics()
    assert metrics.total_processed == 7
    assert metrics.valid_messages == 5
    assert metrics.processing_rate == pytest.approx(3.5)

    alpha = tracker.get_streamer_metrics("alpha")
    assert alpha.total_messages == 6
    assert alpha.unique_users == 3
    assert alpha.average_message_length == pytest.approx(5.0)
    assert alpha.spam_rate == pytest.approx(1 / 6)
    assert alpha.duplicate_rate == pytest.approx(1 / 6)
    assert tracker.get_streamer_metrics("missing") is None


def test_quality_score_weights_filter_rates(tracker):
    tracker.record_batch("alpha", total=10, valid=5, spam=2, duplicates=2, parse_errors=1)

    # 0.4 * 0.5 + 0.25 * 0.8 + 0.2 * 0.8 + 0.15 * 0.9
    assert tracker.get_metrics().quality_score == pytest.approx(0.695)


def test_threshold_breaches_become_alerts(tracker):
    tracker.record_batch("alpha", total=10, valid=1, spam=4, duplicates=5)

    alerts = {alert.key: alert for alert in tracker.check_alerts()}

    assert set(alerts) == {"quality_score", "spam_rate:alpha", "duplicate_rate:alpha"}
    assert alerts["spam_rate:alpha"].level is AlertLevel.WARNING
    assert alerts["duplicate_rate:alpha"].level is AlertLevel.INFO
    assert str(alerts["spam_rate:alpha"]).startswith("WARNING: High spam rate for alpha")


def test_parse_errors_are_critical(tracker):
    tracker.record_batch("alpha", total=10, valid=8, parse_errors=2)

    (alert,) = tracker.check_alerts()

    assert alert.level is AlertLevel.CRITICAL
    assert alert.message == "High error rate: 20.0% of messages failed to parse"


def test_quiet_streamer_is_reported(tracker, clock):
    tracker.record_batch("alpha", total=5, valid=5)
    clock.advance(minutes=31)

    (alert,) = tracker.check_alerts()

    assert alert.key == "inactive:alpha"
    assert alert.message == "No messages from alpha for 31 minutes"


def test_slow_processing_is_reported(clock):
    tracker = QualityMetricsTracker(clock=clock)
    clock.advance(seconds=10)
    tracker.record_batch("alpha", total=20, valid=20)

    assert [alert.key for alert in tracker.check_alerts()] == ["processing_rate"]


def test_report_and_reset(tracker):
    tracker.record_batch("alpha", total=10, valid=8, parse_errors=2, usernames=["ann"])

    report = tracker.generate_report()

    assert report.startswith("=== Quality Metrics Report ===\n")
    assert "Total Processed: 10\n" in report
    assert "alpha: 10 messages, 1 unique users" in report
    assert "=== Active Alerts ===\nCRITICAL: High error rate" in report

    data = tracker.to_dict()
    assert data["parse_errors"] == 2
    assert data["alerts"][0]["level"] == "critical"

    tracker.reset()
    assert tracker.get_metrics().total_processed == 0
    assert "=== Active Alerts ===" not in tracker.generate_report()
