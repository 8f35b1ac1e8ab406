"""Tests for the HTTP surface in main.py"""

import pytest
from fastapi.testclient import TestClient

from rereader.main import app

PAYLOAD = {
    "status": "success",
    "data": {
        "books": [{"asin": "B01N5AX61W", "title": "Meditations", "author": "Marcus Aurelius"}],
        "highlights": [
            {
                "bookAsin": "B01N5AX61W",
                "text": "You have power over your mind, not outside events.",
                "location": "Page 12",
                "dateHighlighted": "2024-01-05T10:00:00Z",
            },
            {
                "bookAsin": "B01N5AX61W",
                "text": "The best revenge is not to be like your enemy.",
                "location": "Page 40",
                "note": "revenge",
                "dateHighlighted": "2024-01-06T10:00:00Z",
            },
        ],
    },
}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "api.db"))
    monkeypatch.delenv("NOTIFIER_WEBHOOK_URL", raising=False)
    with TestClient(app) as c:
        yield c


def ingest(client):
    resp = client.post("/api/ingest", json=PAYLOAD)
    assert resp.status_code == 200
    return resp.json()


class TestIngestAndStats:
    def test_ingest_then_stats(self, client):
        assert client.get("/api/stats").json()["sync_status"] == "never_synced"

        result = ingest(client)
        assert result["highlights_added"] == 2
        assert result["cycle_record"]["status"] == "success"

        stats = client.get("/api/stats").json()
        assert stats["total_sources"] == 1
        assert stats["total_highlights"] == 2
        assert stats["sync_status"] == "success"

        advanced = client.get("/api/stats/advanced").json()
        assert advanced["highlights_with_notes"] == 1

    def test_reingest_counts_updates(self, client):
        ingest(client)
        again = ingest(client)
        assert again["highlights_added"] == 0
        assert again["highlights_updated"] == 2

    def test_failed_extraction_is_recorded(self, client):
        result = client.post("/api/ingest", json={"status": "error", "message": "Not signed in"}).json()
        assert result["extractor_errors"] == ["Not signed in"]
        assert result["cycle_record"]["status"] == "failed"
        assert client.get("/api/stats").json()["sync_status"] == "failed"


class TestHighlights:
    def test_search_and_sort(self, client):
        ingest(client)
        found = client.get("/api/highlights", params={"q": "REVENGE"}).json()
        assert found["total"] == 1

        by_position = client.get("/api/highlights", params={"sort": "position"}).json()
        assert [h["page_number"] for h in by_position["highlights"]] == [12, 40]

        assert client.get("/api/highlights", params={"sort": "likes"}).status_code == 422

    def test_unknown_id_is_404_with_error_body(self, client):
        resp = client.get("/api/highlights/hl_missing")
        assert resp.status_code == 404
        assert resp.json()["error"]["kind"] == "not_found"

    def test_patch_and_bulk_delete(self, client):
        ingest(client)
        ids = [h["id"] for h in client.get("/api/highlights").json()["highlights"]]

        patched = client.patch(f"/api/highlights/{ids[0]}", json={"category": "blue", "tags": ["stoa"]})
        assert patched.status_code == 200
        assert patched.json()["category"] == "blue"
        assert client.patch(f"/api/highlights/{ids[0]}", json={"times_shown": 9}).status_code == 422

        result = client.post("/api/highlights/bulk-delete", json={"ids": ids + ["hl_missing"]}).json()
        assert result["succeeded"] == 2
        assert result["failed"] == 1
        assert client.get("/api/stats").json()["total_highlights"] == 0


class TestSelectionAndCycle:
    def test_preview_does_not_mark_shown(self, client):
        ingest(client)
        preview = client.post("/api/selection/preview", json={"count": 1, "mode": "newest-first"}).json()
        assert len(preview["highlights"]) == 1
        assert client.get("/api/stats/selection").json()["never_shown"] == 2

    def test_manual_cycle_delivers_and_commits(self, client):
        ingest(client)
        outcome = client.post("/api/cycle/run").json()
        assert outcome["status"] == "success"
        assert len(outcome["highlight_ids"]) == 2
        assert outcome["delivery"]["status"] == "sent"

        assert client.get("/api/stats/selection").json()["never_shown"] == 0
        history = client.get("/api/history").json()
        assert history["deliveries"][0]["status"] == "sent"
        assert {c["kind"] for c in history["cycles"]} == {"ingest", "selection"}


class TestConfig:
    def test_update_reinstalls_schedule(self, client):
        assert client.get("/api/schedule").json()["scheduled"]

        resp = client.post("/api/config", json={"recurrence": "weekly", "time_of_day": "07:30", "weekday": 2})
        assert resp.status_code == 200
        assert resp.json()["next_run"] is not None
        assert client.get("/api/config").json()["time_of_day"] == "07:30"

        manual = client.post("/api/config", json={"recurrence": "manual"}).json()
        assert manual["next_run"] is None
        assert client.get("/api/schedule").json() == {"scheduled": False, "next_run": None}

    def test_bad_time_is_rejected_and_not_saved(self, client):
        resp = client.post("/api/config", json={"time_of_day": "25:99"})
        assert resp.status_code == 400
        assert resp.json()["error"]["kind"] == "scheduling"
        assert client.get("/api/config").json()["time_of_day"] == "09:00"


class TestExportImport:
    def test_export_then_import_skipping_duplicates(self, client):
        ingest(client)
        snapshot = client.get("/api/export").json()
        assert snapshot["metadata"]["total_highlights"] == 2

        result = client.post("/api/import", json={"snapshot": snapshot, "skip_duplicates": True}).json()
        assert result["errors"] == []
        assert result["skipped"] == 4

    def test_cleanup(self, client):
        ingest(client)
        result = client.post("/api/maintenance/cleanup", json={"max_cycle_records": 0}).json()
        assert result["cycle_records_removed"] == 1


class TestBodyParameters:
    def test_cleanup_limits_are_coerced(self, client):
        ingest(client)
        assert client.post("/api/maintenance/cleanup", json={"max_cycle_records": "0"}).json()[
            "cycle_records_removed"
        ] == 1
        resp = client.post("/api/maintenance/cleanup", json={"max_delivery_records": "many"})
        assert resp.status_code == 422
        assert resp.json()["error"]["kind"] == "validation"
        assert client.post("/api/maintenance/cleanup", json={"max_cycle_records": -1}).status_code == 422

    def test_preview_count(self, client):
        ingest(client)
        assert client.post("/api/selection/preview", json={"count": 0}).json()["highlights"] == []
        assert len(client.post("/api/selection/preview", json={"count": "1"}).json()["highlights"]) == 1
        assert client.post("/api/selection/preview", json={"count": "one"}).status_code == 422

    def test_unknown_timezone_is_rejected(self, client):
        resp = client.post("/api/config", json={"timezone": "Mars/Olympus_Mons"})
        assert resp.status_code == 400
        assert client.get("/api/config").json()["timezone"] == ""
