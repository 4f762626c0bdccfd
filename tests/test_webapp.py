"""Tests for the dashboard API."""

import pytest
from fastapi.testclient import TestClient

from conftest import add_closed, all_slices, at
from slice_tracker.webapp import create_app


@pytest.fixture
def client(engine, db_path):
    # Used without a ``with`` block so the background monitor is not started.
    return TestClient(create_app(db_path=db_path, engine=engine))


class TestTracking:
    def test_start_status_stop(self, client, clock):
        assert client.get("/api/status").json()["tracking"] is None

        response = client.post("/api/tracking/start", json={"work_item_id": 4})
        assert response.status_code == 201
        slice_id = response.json()["id"]

        clock.set(9, 30)
        status = client.get("/api/status").json()
        assert status["tracking"]["id"] == slice_id
        assert status["elapsed_seconds"] == 1800
        assert status["monitor_running"] is False

        stopped = client.post("/api/tracking/stop").json()["stopped"]
        assert stopped["end_time"] == "2024-03-04T09:30:00"

    def test_stop_without_tracking(self, client):
        assert client.post("/api/tracking/stop").json() == {"stopped": None}


class TestSlices:
    def test_create_list_update_delete(self, client):
        created = client.post(
            "/api/slices",
            json={
                "work_item_id": 2,
                "start_time": "2024-03-04T08:00:00",
                "end_time": "2024-03-04T08:30:00",
                "notes": "standup",
            },
        )
        assert created.status_code == 201
        slice_id = created.json()["id"]

        listing = client.get("/api/slices", params={"date": "2024-03-04"}).json()
        assert [s["id"] for s in listing["slices"]] == [slice_id]

        patched = client.patch(f"/api/slices/{slice_id}", json={"notes": "planning"})
        assert patched.json()["notes"] == "planning"

        assert client.delete(f"/api/slices/{slice_id}").status_code == 204
        assert client.delete(f"/api/slices/{slice_id}").status_code == 404

    def test_validation_errors_carry_the_rule(self, client):
        response = client.post(
            "/api/slices",
            json={
                "work_item_id": 2,
                "start_time": "2024-03-04T08:30:00",
                "end_time": "2024-03-04T08:00:00",
            },
        )
        assert response.status_code == 400
        assert response.json()["detail"]["rule"] == "invalid_duration"

    def test_unknown_fields_are_rejected(self, client):
        response = client.post("/api/tracking/start", json={"work_item_id": 1, "extra": 1})
        assert response.status_code == 422

    def test_bad_date(self, client):
        assert client.get("/api/slices", params={"date": "04/03/2024"}).status_code == 400

    def test_split_and_merge(self, client, store):
        base = add_closed(store, 1, at(9), at(11))
        split = client.post(
            f"/api/slices/{base.id}/split",
            json={"segments": [{"start": "09:30:00", "end": "10:00:00", "work_item_id": 1}]},
        )
        assert split.status_code == 200
        ids = [s["id"] for s in split.json()["slices"]]
        assert len(ids) == 3

        merged = client.post("/api/slices/merge", json={"slice_ids": ids})
        assert merged.status_code == 200
        assert merged.json()["start_time"] == "2024-03-04T09:00:00"
        assert merged.json()["end_time"] == "2024-03-04T11:00:00"
        assert len(all_slices(store)) == 1

    def test_move_conflict_and_resolution(self, client, store, clock):
        clock.set(18)
        moved = add_closed(store, 1, at(9), at(10))
        other = add_closed(store, 2, at(10), at(11))
        payload = {"start_time": "2024-03-04T10:30:00", "end_time": "2024-03-04T11:30:00"}

        conflict = client.post(f"/api/slices/{moved.id}/move", json=payload)
        assert conflict.status_code == 409
        assert conflict.json()["conflicting"]["id"] == other.id
        assert "split_preserve_duration" in conflict.json()["strategies"]

        resolved = client.post(
            f"/api/slices/{moved.id}/move",
            json={**payload, "strategy": "split_preserve_duration"},
        )
        assert resolved.status_code == 200
        assert len(resolved.json()["slices"]) == 3

    def test_drag(self, client, store, clock):
        clock.set(18)
        moved = add_closed(store, 1, at(9), at(10))
        response = client.post(
            f"/api/slices/{moved.id}/drag",
            json={"mode": "resize_end", "delta_seconds": 1200},
        )
        assert response.status_code == 200
        assert response.json()["slices"][0]["end_time"] == "2024-03-04T10:20:00"

    def test_reassign_copy_and_sync(self, client, store):
        time_slice = add_closed(store, 1, at(9), at(10))

        reassigned = client.post(f"/api/slices/{time_slice.id}/reassign", json={"work_item_id": 8})
        assert reassigned.json()["work_item_id"] == 8

        copies = client.post(f"/api/slices/{time_slice.id}/copy", json={"days": ["2024-03-05"]})
        assert copies.json()["slices"][0]["start_time"] == "2024-03-05T09:00:00"

        synced = client.post(f"/api/slices/{time_slice.id}/sync", json={"remote_id": "R-3"})
        assert synced.json()["synced"] is True
        cleared = client.delete(f"/api/slices/{time_slice.id}/sync")
        assert cleared.json()["synced"] is False


class TestAwayAndSettings:
    def test_resolve_pending_away(self, client, engine, clock):
        engine.start(1)
        clock.set(9, 10)
        engine.away.on_lock()
        clock.set(9, 20)
        engine.away.on_unlock()

        away = client.get("/api/away").json()
        assert away["state"] == "away_pending"
        assert away["pending"]["away_duration_seconds"] == 600

        resolved = client.post(
            "/api/away/resolve", json={"decision": "reassign", "target_work_item_id": 5}
        )
        assert resolved.status_code == 200
        assert [s["work_item_id"] for s in resolved.json()["slices"]] == [1, 5, 1]
        assert client.get("/api/away").json()["pending"] is None

    def test_resolve_without_pending(self, client):
        response = client.post("/api/away/resolve", json={"decision": "keep"})
        assert response.status_code == 400
        assert response.json()["detail"]["rule"] == "no_pending_away"

    def test_settings(self, client):
        assert client.get("/api/settings").json()["rounding_enabled"] == "false"
        updated = client.patch(
            "/api/settings", json={"rounding_enabled": True, "rounding_interval_minutes": 10}
        )
        assert updated.json()["rounding_enabled"] == "true"
        assert updated.json()["rounding_interval_minutes"] == "10"
        invalid = client.patch("/api/settings", json={"rounding_interval_minutes": 0})
        assert invalid.status_code == 400
