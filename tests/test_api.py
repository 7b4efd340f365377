"""
HTTP API: status codes, request validation and admin endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from discovery.api.main import app, get_service


@pytest.fixture
def client(service):
    """Test client bound to the fixture service."""
    app.dependency_overrides[get_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def indexed(service, creator_factory):
    creator_factory("c1", categories={"music": 0.9})
    creator_factory("c2", categories={"art": 0.4})
    service.run_refresh_cycle()
    return service


class TestFeedEndpoint:

    def test_unavailable_before_first_generation(self, client):
        response = client.get("/feed", params={"viewer_id": "v1"})
        assert response.status_code == 503
        assert response.json() == {"status": "unavailable"}

    def test_feed_ok(self, client, indexed):
        response = client.get("/feed", params={"viewer_id": "v1", "limit": 1})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert len(body["items"]) == 1
        assert body["has_more"] is True
        assert "sub_scores" in body["items"][0]["explanation"]

        next_page = client.get("/feed", params={"viewer_id": "v1", "limit": 1, "cursor": body["next_cursor"]})
        assert next_page.status_code == 200
        assert next_page.json()["items"][0]["creator_id"] != body["items"][0]["creator_id"]

    def test_unknown_mode(self, client, indexed):
        response = client.get("/feed", params={"viewer_id": "v1", "mode": "everything"})
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "mode"

    @pytest.mark.parametrize("params", [
        {"viewer_id": "v1", "limit": 0},
        {"viewer_id": "v1", "limit": 1000},
        {"viewer_id": "v1", "limit": "many"},
        {"viewer_id": "v1", "cursor": "@@@"},
        {},
    ])
    def test_bad_requests(self, client, indexed, params):
        assert client.get("/feed", params=params).status_code == 400


class TestViewerEndpoints:

    def test_switch_mode(self, client):
        response = client.post("/viewers/v1/mode", json={"mode": "rising_stars"})
        assert response.status_code == 200
        assert response.json()["active_mode"] == "rising_stars"

    def test_switch_to_unknown_mode(self, client):
        assert client.post("/viewers/v1/mode", json={"mode": "chaos"}).status_code == 400

    def test_record_view_accepted(self, client, service):
        response = client.post("/views", json={
            "viewer_id": "v1", "creator_id": "c1", "category": "music", "duration_ms": 30000
        })

        assert response.status_code == 202
        assert response.json()["status"] == "accepted"
        assert service.interests.get_profile("v1").affinities["music"] > 0

    def test_record_view_negative_duration(self, client):
        response = client.post("/views", json={"viewer_id": "v1", "creator_id": "c1", "duration_ms": -5})
        assert response.status_code == 400

    def test_erase_viewer(self, client, service):
        client.post("/views", json={"viewer_id": "v1", "creator_id": "c1", "category": "music"})

        response = client.delete("/viewers/v1")

        assert response.status_code == 200
        assert response.json() == {"viewer_id": "v1", "erased": True}
        assert service.interests.get_profile("v1") is None


class TestAdminEndpoints:

    def test_fairness_report_missing_then_present(self, client, indexed):
        assert client.get("/admin/fairness/report").status_code == 404

        indexed.run_audit()
        response = client.get("/admin/fairness/report")

        assert response.status_code == 200
        assert "top_decile_share" in response.json()["metrics"]

    def test_shadow_density(self, client, indexed):
        response = client.get("/admin/shadow-density")
        assert response.status_code == 200
        assert {c["creator_id"] for c in response.json()["creators"]} == {"c1", "c2"}

    def test_flag_workflow(self, client, service, creator_factory):
        creator_factory("spammy", caption="click here and buy now")
        service.run_refresh_cycle()

        flags = client.get("/admin/flags", params={"status": "NEW"}).json()["flags"]
        assert len(flags) == 1
        flag_id = flags[0]["flag_id"]

        review = client.post(f"/admin/flags/{flag_id}/review", json={"reviewer": "mod-1"})
        assert review.status_code == 200
        assert review.json()["status"] == "UNDER_REVIEW"

        dismiss = client.post(f"/admin/flags/{flag_id}/dismiss", json={"reviewer": "mod-1", "reason": "ok"})
        assert dismiss.status_code == 200
        assert dismiss.json()["status"] == "DISMISSED"

        again = client.post(f"/admin/flags/{flag_id}/confirm", json={"reviewer": "mod-1"})
        assert again.status_code == 400

    def test_unknown_flag(self, client):
        response = client.post("/admin/flags/missing/confirm", json={"reviewer": "mod-1"})
        assert response.status_code == 404

    def test_unknown_flag_status_filter(self, client):
        assert client.get("/admin/flags", params={"status": "MAYBE"}).status_code == 400

    def test_health(self, client, indexed):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["creators_indexed"] == 2
        assert body["db_ok"] is True
