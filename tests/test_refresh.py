"""
Refresh scheduler: batch isolation, retries, carried creators, cancellation and budget control.
"""

from unittest.mock import patch

import pytest

from discovery.core.errors import DetectorFailure


@pytest.fixture
def five(creator_factory):
    for i in range(5):
        creator_factory(f"c{i}")
    return [f"c{i}" for i in range(5)]


def failing_for(content, bad_ids, times=None):
    """Wrap get_creator_metadata so it raises for `bad_ids` (for the first `times` calls)."""
    original = content.get_creator_metadata
    calls = {"n": 0}

    def _get(creator_id):
        if creator_id in bad_ids and (times is None or calls["n"] < times):
            calls["n"] += 1
            raise ConnectionError("content store timeout")
        return original(creator_id)
    return _get


class TestCycle:

    def test_cycle_indexes_every_known_creator(self, service, five):
        report = service.run_refresh_cycle()

        assert report.status == "completed"
        assert report.requested == 5
        assert report.processed == 5
        assert service.index.indexed_creator_ids() == five
        assert service.density.snapshot() is not None
        assert service.scheduler.last_report is report

    def test_indexed_creators_without_activity_not_recomputed(self, service, five):
        service.run_refresh_cycle()
        assert service.run_refresh_cycle().requested == 0

    def test_failed_batch_does_not_stop_others(self, make_service, content, five):
        service = make_service(refresh_batch_size=2)

        with patch.object(content, "get_creator_metadata", side_effect=failing_for(content, {"c2"})):
            report = service.run_refresh_cycle()

        assert report.status == "partial"
        assert report.failed_batches == 1
        assert report.processed == 3
        assert sorted(report.failed_creators) == ["c2", "c3"]
        assert service.scheduler.carried_creators == ["c2", "c3"]
        assert service.index.get_record("c4") is not None

        retry = service.run_refresh_cycle()
        assert retry.status == "completed"
        assert retry.processed == 2
        assert service.scheduler.carried_creators == []

    def test_batch_retried_once(self, make_service, content, five):
        service = make_service(refresh_batch_size=2)

        with patch.object(content, "get_creator_metadata", side_effect=failing_for(content, {"c2"}, times=1)):
            report = service.run_refresh_cycle()

        assert report.status == "completed"
        assert report.retried_batches == 1
        assert report.processed == 5

    def test_ingestion_failure_does_not_abort_cycle(self, service, activity_log, five):
        with patch.object(activity_log, "get_raw_activity_events", side_effect=ConnectionError("log down")):
            report = service.run_refresh_cycle()
        assert report.status == "completed"
        assert report.processed == 5

    def test_cycle_already_running_is_skipped(self, service, five):
        service.scheduler._run_lock.acquire()
        try:
            report = service.run_refresh_cycle()
        finally:
            service.scheduler._run_lock.release()
        assert report.status == "skipped"


class TestDetectorFailure:

    def test_scorer_failure_fails_open(self, service, creator_factory):
        creator_factory("c1", caption="click here and buy now")

        with patch("discovery.detection.detector.logger") as mock_logger:
            with patch.object(service.detector.scorer, "classify", side_effect=DetectorFailure("offline")):
                report = service.run_refresh_cycle()

        assert report.status == "completed"
        mock_logger.log_detector_fail_open.assert_called_once()
        assert service.index.get_record("c1").manipulation_confidence == 0.0
        assert service.detector.pending_retries() == ["c1"]

        # The creator is re-evaluated once the scorer recovers
        assert "c1" in service.scheduler.select_creators()
        service.run_refresh_cycle()
        assert service.index.get_record("c1").manipulation_confidence == pytest.approx(0.6)

    def test_content_source_failure_fails_open(self, service, content, creator_factory):
        creator_factory("c1", caption="hello")
        with patch.object(content, "get_content_descriptor", side_effect=ConnectionError("down")):
            report = service.run_refresh_cycle()

        assert report.status == "completed"
        assert service.index.get_record("c1").sub_scores.safety == 1.0


class TestControl:

    def test_cancel_skips_remaining_batches(self, make_service, five):
        service = make_service(refresh_batch_size=1)
        original = service.index.recompute_generation

        def cancel_after_first(batch, now=None):
            service.scheduler.cancel()
            return original(batch, now)

        with patch.object(service.index, "recompute_generation", side_effect=cancel_after_first):
            report = service.run_refresh_cycle()

        assert report.status == "cancelled"
        assert report.cancelled is True
        assert report.processed == 1

    def test_over_budget_halves_cap_then_recovers(self, make_service, five):
        service = make_service(max_creators_per_cycle=20000, refresh_time_budget_sec=0.0)
        service.run_refresh_cycle()
        assert service.scheduler.cycle_cap == 10000

        service.scheduler.config = service.config.with_overrides(refresh_time_budget_sec=1000.0)
        service.run_refresh_cycle()
        assert service.scheduler.cycle_cap == 20000

    def test_cap_limits_creators_per_cycle(self, make_service, five):
        service = make_service(max_creators_per_cycle=2)
        report = service.run_refresh_cycle()
        assert report.requested == 2
        assert report.processed == 2
