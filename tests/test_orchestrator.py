"""
Ranking orchestrator: personalization, rotation, guaranteed slots, paging and degraded modes.
"""

import base64
import sqlite3
from datetime import timedelta
from unittest.mock import patch

import pytest

from discovery.core.errors import UpstreamUnavailable, ValidationError
from discovery.core.schema import ActivityEvent, CorrectiveParameters, EventType, utcnow


def publish(service, creator_ids):
    service.index.recompute_generation(creator_ids)
    service.density.refresh(creator_ids)


def add_impressions(service, creator_id, count):
    now = utcnow()
    for i in range(count):
        service.impressions.record(creator_id, f"seed-{creator_id}-{i}", "s", now)


def give_interest(service, viewer_id, category, language=None, region=None):
    service.interests.apply_event(ActivityEvent(
        event_id=f"{viewer_id}-{category}", event_type=EventType.INTERACTION, viewer_id=viewer_id,
        creator_id="someone", occurred_at=utcnow(), category=category, language=language, region=region
    ))


def ids(result):
    return [item.creator_id for item in result.items]


class TestPersonalization:

    def test_stronger_category_match_ranks_higher(self, service, creator_factory):
        creator_factory("a", categories={"music": 0.95})
        creator_factory("b", categories={"music": 0.2})
        publish(service, ["a", "b"])
        give_interest(service, "viewer", "music")

        result = service.get_feed("viewer")

        assert ids(result) == ["a", "b"]
        first = result.items[0].explanation
        assert first["sub_scores"]["topical"] > result.items[1].explanation["sub_scores"]["topical"]
        assert "matches your interests" in first["reasons"]

    def test_language_and_region_match(self, service, creator_factory):
        creator_factory("local", languages=("pl",), region="PL")
        creator_factory("far", languages=("en",), region="US")
        publish(service, ["local", "far"])
        give_interest(service, "viewer", "music", language="pl", region="PL")

        result = service.get_feed("viewer")
        explanations = {item.creator_id: item.explanation for item in result.items}

        assert ids(result)[0] == "local"
        assert explanations["local"]["sub_scores"]["language"] == pytest.approx(1.0)
        assert explanations["far"]["sub_scores"]["language"] == pytest.approx(0.2)
        assert explanations["far"]["sub_scores"]["region"] == pytest.approx(0.4)

    def test_explanation_fields(self, service, creator_factory):
        creator_factory("a")
        publish(service, ["a"])

        explanation = service.get_feed("viewer").items[0].explanation

        assert set(explanation) == {
            "display_score", "sub_scores", "weighted_sum", "density_penalty", "rotation_state",
            "manipulation_multiplier", "guaranteed_slot", "under_served", "reasons",
            "record_generation", "generation"
        }
        assert 0.0 <= explanation["display_score"] <= 100.0
        assert explanation["record_generation"] == 1


class TestRotationAndSlots:

    @pytest.fixture
    def crowded(self, make_service, creator_factory):
        def _build(**overrides):
            settings = dict(density_threshold=10, limited_selection_cap=1.0, guaranteed_slots=3)
            settings.update(overrides)
            service = make_service(**settings)

            creators = []
            for i in range(6):
                creator_factory(f"hi{i}", categories={"music": 0.9})
                creators.append(f"hi{i}")
            for i in range(4):
                creator_factory(f"lo{i}", categories={"music": 0.4})
                creators.append(f"lo{i}")
            creator_factory("C", categories={"music": 0.9})
            creators.append("C")

            for i in range(6):
                add_impressions(service, f"hi{i}", 5)
            add_impressions(service, "C", 25)

            publish(service, creators)
            return service
        return _build

    def test_dense_creator_penalized_and_under_served_present(self, crowded):
        service = crowded()
        result = service.get_feed("viewer", limit=20)
        explanations = {item.creator_id: item.explanation for item in result.items}

        assert explanations["C"]["density_penalty"] > 0
        assert explanations["C"]["rotation_state"] == "LIMITED"
        assert explanations["C"]["display_score"] < explanations["hi0"]["display_score"]
        assert sum(1 for e in explanations.values() if e["under_served"]) >= 3

    def test_guaranteed_slots_promote_under_served(self, crowded):
        service = crowded()
        result = service.get_feed("viewer", limit=5)
        page = ids(result)

        promoted = [item for item in result.items if item.explanation["guaranteed_slot"]]
        assert len(page) == 5
        assert [item.creator_id for item in promoted] == ["lo0", "lo1", "lo2"]
        assert page[:2] == ["hi0", "hi1"]
        assert all("fair exposure slot" in item.explanation["reasons"] for item in promoted)

    def test_displaced_items_follow_the_page(self, crowded):
        service = crowded()
        first = service.get_feed("viewer", limit=5)
        second = service.get_feed("viewer", limit=5, cursor=first.next_cursor)
        assert ids(second)[:3] == ["hi2", "hi3", "hi4"]

    def test_shortfall_filled_below_floor_and_logged(self, crowded):
        service = crowded(relevance_floor=0.99)
        with patch("discovery.ranking.orchestrator.logger") as mock_logger:
            result = service.get_feed("viewer", limit=5)

        assert sum(1 for item in result.items if item.explanation["guaranteed_slot"]) == 3
        mock_logger.log_fairness_shortfall.assert_called_once_with("viewer", 3, 0, 3)

    def test_audit_boost_adds_slots(self, crowded):
        service = crowded()
        service.corrections.write(CorrectiveParameters(
            guaranteed_slot_boost=1, expires_at=utcnow() + timedelta(hours=1)
        ))
        result = service.get_feed("viewer", limit=5)
        assert sum(1 for item in result.items if item.explanation["under_served"]) == 4

    def test_corrections_store_failure_uses_neutral_slots(self, crowded):
        service = crowded()
        with patch.object(service.corrections, "current", side_effect=sqlite3.OperationalError("locked")):
            result = service.get_feed("viewer", limit=5)

        assert result.status == "ok"
        assert [item.creator_id for item in result.items if item.explanation["guaranteed_slot"]] == ["lo0", "lo1", "lo2"]

    def test_multiplicative_penalty(self, crowded):
        service = crowded(density_penalty_policy="multiplicative")
        result = service.get_feed("viewer", limit=20)
        c = next(item.explanation for item in result.items if item.creator_id == "C")

        expected = 100.0 * c["weighted_sum"] * c["manipulation_multiplier"] * (1.0 - c["density_penalty"])
        assert c["display_score"] == pytest.approx(expected, abs=0.01)

    def test_limited_selection_rate_respects_cap(self, make_service, creator_factory):
        service = make_service(density_threshold=10, limited_selection_cap=0.5)
        creator_factory("busy")
        creator_factory("other")
        add_impressions(service, "busy", 15)
        publish(service, ["busy", "other"])

        viewers = 300
        shown = sum(1 for i in range(viewers) if "busy" in ids(service.get_feed(f"v{i}")))

        assert 0 < shown / viewers <= 0.5 + 0.1


class TestPoolRules:

    def test_ties_broken_by_cumulative_impressions_then_id(self, service, creator_factory):
        for creator_id in ("a", "b", "c"):
            creator_factory(creator_id)
        add_impressions(service, "a", 3)
        publish(service, ["a", "b", "c"])

        assert ids(service.get_feed("viewer")) == ["b", "c", "a"]

    def test_viewer_never_sees_self(self, service, creator_factory):
        creator_factory("me")
        creator_factory("other")
        publish(service, ["me", "other"])
        assert ids(service.get_feed("me")) == ["other"]

    def test_rising_stars_only_new_creators(self, service, creator_factory):
        creator_factory("young", age_days=3)
        creator_factory("veteran", age_days=500)
        publish(service, ["young", "veteran"])

        assert ids(service.get_feed("viewer", mode="rising_stars")) == ["young"]

    def test_active_mode_used_when_mode_omitted(self, service, creator_factory):
        creator_factory("young", age_days=3)
        creator_factory("veteran", age_days=500)
        publish(service, ["young", "veteran"])
        service.switch_mode("viewer", "rising_stars")

        assert ids(service.get_feed("viewer")) == ["young"]

    def test_excluded_creator_removed(self, service, creator_factory):
        creator_factory("bad", caption="escort and cocaine, send money by wire transfer")
        creator_factory("good")
        publish(service, ["bad", "good"])

        assert ids(service.get_feed("viewer")) == ["good"]

    def test_unknown_mode_rejected(self, service, creator_factory):
        creator_factory("a")
        publish(service, ["a"])
        with pytest.raises(ValidationError) as exc:
            service.get_feed("viewer", mode="trending_forever")
        assert exc.value.field == "mode"


class TestAvailability:

    def test_unavailable_before_first_generation(self, service):
        result = service.get_feed("viewer")
        assert result.status == "unavailable"
        assert result.items == []

    def test_stale_snapshot_served_when_index_fails(self, service, creator_factory):
        creator_factory("a")
        publish(service, ["a"])
        fresh = service.get_feed("viewer")

        with patch.object(service.index, "snapshot", side_effect=UpstreamUnavailable("down")):
            stale = service.get_feed("viewer")

        assert stale.stale is True
        assert stale.generation == fresh.generation
        assert ids(stale) == ["a"]

    def test_overload_serves_cached_page(self, make_service, creator_factory):
        service = make_service(max_inflight_requests=1)
        creator_factory("a")
        publish(service, ["a"])
        first = service.get_feed("viewer")

        service.orchestrator._inflight.acquire()
        try:
            cached = service.get_feed("viewer")
            uncached = service.get_feed("someone-else")
        finally:
            service.orchestrator._inflight.release()

        assert ids(cached) == ids(first)
        assert cached.stale is False
        assert uncached.status == "ok"
        assert uncached.stale is True
        assert ids(uncached) == ["a"]
        assert uncached.generation == first.generation

    def test_overload_shares_one_unpersonalized_ranking(self, make_service, creator_factory):
        service = make_service(max_inflight_requests=1)
        creator_factory("a", categories={"music": 0.9})
        creator_factory("b", categories={"art": 0.9})
        publish(service, ["a", "b"])
        give_interest(service, "art-fan", "art")

        service.orchestrator._inflight.acquire()
        try:
            with patch.object(service.orchestrator, "_rank", wraps=service.orchestrator._rank) as rank:
                first = service.get_feed("art-fan")
                second = service.get_feed("other-viewer")
                own = service.get_feed("a")
        finally:
            service.orchestrator._inflight.release()

        assert rank.call_count == 1
        assert ids(first) == ids(second)
        assert "a" not in ids(own)


class TestPaging:

    @pytest.fixture
    def seven(self, service, creator_factory):
        creators = [f"c{i}" for i in range(7)]
        for i, creator_id in enumerate(creators):
            creator_factory(creator_id, categories={"music": (i + 1) / 10})
        publish(service, creators)
        return service

    def test_pages_cover_pool_without_duplicates(self, seven):
        seen = []
        result = seven.get_feed("viewer", limit=3)
        seen.extend(ids(result))
        while result.has_more:
            result = seven.get_feed("viewer", limit=3, cursor=result.next_cursor)
            seen.extend(ids(result))

        assert len(seen) == 7
        assert len(set(seen)) == 7
        assert seen[0] == "c6"
        assert result.next_cursor is None

    def test_malformed_cursor(self, seven):
        bad = base64.urlsafe_b64encode(b"not json").decode("ascii")
        with pytest.raises(ValidationError) as exc:
            seven.get_feed("viewer", cursor=bad)
        assert exc.value.field == "cursor"

    @pytest.mark.parametrize("limit", [0, 101, -1])
    def test_limit_out_of_range(self, seven, limit):
        with pytest.raises(ValidationError):
            seven.get_feed("viewer", limit=limit)

    def test_served_items_count_impressions(self, seven):
        result = seven.get_feed("viewer", limit=2, session_id="s1")
        seven.get_feed("viewer", limit=2, session_id="s1")

        for creator_id in ids(result):
            assert seven.impressions.rolling_count(creator_id) == 1
