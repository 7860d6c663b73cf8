from __future__ import annotations

import pytest

from backoffice.progress import (
    ProgressChannel,
    ThroughputEstimator,
    format_duration,
    percent_complete,
    undo_topic,
)


@pytest.mark.parametrize(
    ("done", "total", "expected"),
    [
        (50, 120, 42),
        (100, 120, 83),
        (120, 120, 100),
        (100, 237, 42),
        (200, 237, 84),
        (1, 8, 13),
        (0, 0, 100),
    ],
)
def test_percent_complete_rounds_half_up(done, total, expected):
    assert percent_complete(done, total) == expected


def test_eta_uses_mean_of_chunk_rates():
    estimator = ThroughputEstimator()
    assert estimator.eta_label(100) == "Calculating..."

    estimator.add_chunk(10.0, 50)
    estimator.add_chunk(30.0, 50)

    assert estimator.seconds_per_row == pytest.approx(0.4)
    assert estimator.eta_seconds(200) == 80
    assert estimator.eta_label(200) == "1m 20s left"
    assert estimator.eta_label(20) == "8s left"


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(59) == "59s"
    assert format_duration(125) == "2m 5s"


def test_late_subscriber_receives_last_event_first():
    channel = ProgressChannel()
    topic = undo_topic("job-1")
    channel.publish(topic, "undoProgress", {"status": "running", "progress": 42})

    with channel.subscribe(topic) as subscription:
        seeded = subscription.get(timeout=0)
        assert seeded is not None
        assert seeded.payload["progress"] == 42

        channel.publish(topic, "undoDone", {"status": "done", "progress": 100})
        final = subscription.get(timeout=0.1)
        assert final.name == "undoDone"
        assert final.is_terminal

    assert channel.subscriber_count(topic) == 0


def test_subscribers_only_see_their_topic():
    channel = ProgressChannel()
    with channel.subscribe(undo_topic("a")) as first, channel.subscribe(undo_topic("b")) as second:
        channel.publish(undo_topic("a"), "undoProgress", {"progress": 10})
        assert [event.payload["progress"] for event in first.drain()] == [10]
        assert second.drain() == []


def test_terminal_event_is_not_retained_for_later_subscribers():
    channel = ProgressChannel()
    for number in range(3):
        topic = undo_topic(f"job-{number}")
        channel.publish(topic, "undoProgress", {"progress": 50})
        channel.publish(topic, "undoDone", {"progress": 100})

    for number in range(3):
        with channel.subscribe(undo_topic(f"job-{number}")) as subscription:
            assert subscription.get(timeout=0) is None

    with channel.subscribe(undo_topic("running")) as watcher:
        channel.publish(undo_topic("running"), "undoProgress", {"progress": 10})
    with channel.subscribe(undo_topic("running")) as late:
        assert late.get(timeout=0).payload["progress"] == 10
    assert watcher.drain()[0].payload["progress"] == 10
