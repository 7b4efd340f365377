"""
Shadow density controller: LIMITED state, penalty curve, under-served percentile and
auditor tightening.
"""

from datetime import timedelta

import pytest

from discovery.core.schema import CorrectiveParameters, RotationState, utcnow


@pytest.fixture
def dense_service(make_service):
    return make_service(density_threshold=10, density_max_penalty=0.1, limited_selection_cap=0.5)


def add_impressions(service, creator_id, count, now=None):
    now = now or utcnow()
    for i in range(count):
        service.impressions.record(creator_id, f"{creator_id}-viewer-{i}", "s", now)


class TestPenalty:

    def test_no_penalty_at_or_below_threshold(self, dense_service):
        density = dense_service.density
        assert density.density_penalty(0, 10) == 0.0
        assert density.density_penalty(10, 10) == 0.0

    def test_penalty_grows_linearly_to_cap(self, dense_service):
        density = dense_service.density
        assert density.density_penalty(15, 10) == pytest.approx(0.05)
        assert density.density_penalty(20, 10) == pytest.approx(0.1)
        assert density.density_penalty(1000, 10) == pytest.approx(0.1)


class TestRotationTable:

    def test_creator_above_threshold_is_limited(self, dense_service):
        add_impressions(dense_service, "busy", 15)
        add_impressions(dense_service, "quiet", 2)

        dense_service.density.refresh(["busy", "quiet"])
        busy = dense_service.density.get_rotation_state("busy")
        quiet = dense_service.density.get_rotation_state("quiet")

        assert busy.state == RotationState.LIMITED
        assert busy.density_penalty == pytest.approx(0.05)
        assert busy.selection_cap == pytest.approx(0.5)
        assert quiet.state == RotationState.NORMAL
        assert quiet.selection_cap == 1.0

    def test_under_served_percentile(self, dense_service):
        for creator_id, count in [("a", 0), ("b", 0), ("c", 5), ("d", 5), ("e", 25)]:
            add_impressions(dense_service, creator_id, count)

        dense_service.density.refresh(["a", "b", "c", "d", "e"])
        under_served = {
            e.creator_id for e in dense_service.density.snapshot().entries.values() if e.under_served
        }

        assert under_served == {"a", "b"}
        assert dense_service.density.get_rotation_state("e").percentile_rank == pytest.approx(100.0)

    def test_limited_creator_never_under_served(self, make_service):
        service = make_service(density_threshold=1, under_served_percentile=100)
        add_impressions(service, "a", 5)
        service.density.refresh(["a"])
        assert service.density.get_rotation_state("a").under_served is False

    def test_old_impressions_leave_the_window(self, dense_service):
        now = utcnow()
        add_impressions(dense_service, "busy", 15, now - timedelta(days=10))
        dense_service.density.refresh(["busy"], now)
        assert dense_service.density.get_rotation_state("busy").state == RotationState.NORMAL

    def test_unknown_creator_is_normal(self, dense_service):
        entry = dense_service.density.get_rotation_state("nobody")
        assert entry.state == RotationState.NORMAL
        assert entry.density_penalty == 0.0

    def test_corrective_factor_tightens_threshold(self, dense_service):
        now = utcnow()
        add_impressions(dense_service, "c1", 9, now)
        dense_service.density.refresh(["c1"], now)
        assert dense_service.density.get_rotation_state("c1").state == RotationState.NORMAL

        dense_service.corrections.write(CorrectiveParameters(
            density_threshold_factor=0.8, reason="top_decile_share", expires_at=now + timedelta(hours=1)
        ))
        dense_service.density.refresh(["c1"], now)

        assert dense_service.density.effective_threshold(now) == pytest.approx(8.0)
        assert dense_service.density.get_rotation_state("c1").state == RotationState.LIMITED

    def test_expired_correction_ignored(self, dense_service):
        now = utcnow()
        dense_service.corrections.write(CorrectiveParameters(
            density_threshold_factor=0.5, expires_at=now - timedelta(minutes=1)
        ))
        assert dense_service.density.effective_threshold(now) == pytest.approx(10.0)

    def test_stats(self, dense_service):
        add_impressions(dense_service, "busy", 15)
        add_impressions(dense_service, "quiet", 1)
        dense_service.density.refresh(["busy", "quiet"])

        stats = dense_service.admin_get_shadow_density_stats()

        assert stats["limited"] == 1
        assert [c["creator_id"] for c in stats["creators"]] == ["busy", "quiet"]
        assert stats["creators"][0]["state"] == "LIMITED"
