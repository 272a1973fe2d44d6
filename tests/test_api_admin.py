from clinicbook.config import settings

from test_api_reservations import _book, make_client


def test_admin_endpoints_require_key_when_configured(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "s3cret")
    client, practitioner_id, _ = make_client(tmp_path, monkeypatch)
    with client:
        reservation_id = _book(client, practitioner_id).json()["id"]
        denied = client.post(f"/api/admin/reservations/{reservation_id}/approve")
        approved = client.post(
            f"/api/admin/reservations/{reservation_id}/approve",
            headers={"X-Admin-Key": "s3cret"},
        )

    assert denied.status_code == 401
    assert approved.status_code == 200
    assert approved.json()["status"] == "CONFIRMED"


def test_decline_records_reason(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
    client, practitioner_id, _ = make_client(tmp_path, monkeypatch)
    with client:
        reservation_id = _book(client, practitioner_id).json()["id"]
        declined = client.post(
            f"/api/admin/reservations/{reservation_id}/decline",
            json={"reason": "Practitioner on call"},
        )
        again = client.post(f"/api/admin/reservations/{reservation_id}/decline")

    assert declined.status_code == 200
    assert declined.json()["status"] == "DECLINED"
    assert declined.json()["memo"] == "Practitioner on call"
    assert again.status_code == 200
    assert again.json()["status"] == "DECLINED"


def test_status_endpoint_completes_confirmed_visit(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
    client, practitioner_id, _ = make_client(tmp_path, monkeypatch)
    with client:
        reservation_id = _book(client, practitioner_id).json()["id"]
        too_early = client.post(f"/api/admin/reservations/{reservation_id}/status", json={"status": "COMPLETED"})
        client.post(f"/api/admin/reservations/{reservation_id}/approve")
        completed = client.post(f"/api/admin/reservations/{reservation_id}/status", json={"status": "completed"})
        invalid = client.post(f"/api/admin/reservations/{reservation_id}/status", json={"status": "CONFIRMED"})
        cancel = client.post(f"/api/reservations/{reservation_id}/cancel")

    assert too_early.status_code == 409
    assert too_early.json()["detail"]["code"] == "ALREADY_PROCESSED"
    assert completed.status_code == 200
    assert completed.json()["status"] == "COMPLETED"
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["code"] == "VALIDATION_ERROR"
    assert cancel.status_code == 409


def test_refresh_then_calendar_summary(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
    client, practitioner_id, _ = make_client(tmp_path, monkeypatch)
    with client:
        _book(client, practitioner_id)
        refreshed = client.post("/api/admin/summaries/refresh")
        summary = client.get(
            "/api/calendar/summary",
            params={"start": "2024-05-06", "end": "2024-05-08", "practitioner_id": practitioner_id},
        )

    assert refreshed.status_code == 200
    assert refreshed.json()["updated"] == 8
    assert refreshed.json()["failures"] == []

    assert summary.status_code == 200
    assert summary.headers["Cache-Control"] == "public, max-age=30"
    body = summary.json()
    assert body["advisory"] is True
    assert [day["date"] for day in body["days"]] == ["2024-05-06", "2024-05-07", "2024-05-08"]
    monday = body["days"][0]
    assert monday["total_slots"] == 12
    assert monday["available_slots"] == 11
    assert monday["booked_slots"] == 1
    assert monday["practitioners"] == {str(practitioner_id): 11}


def test_calendar_summary_validates_range(tmp_path, monkeypatch):
    client, _, _ = make_client(tmp_path, monkeypatch)
    with client:
        backwards = client.get("/api/calendar/summary", params={"start": "2024-05-08", "end": "2024-05-06"})
        too_long = client.get("/api/calendar/summary", params={"start": "2024-01-01", "end": "2024-12-31"})

    assert backwards.status_code == 400
    assert too_long.status_code == 400


def test_practitioner_day_summary_reads_refreshed_count(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", "")
    client, practitioner_id, _ = make_client(tmp_path, monkeypatch)
    with client:
        before = client.get(f"/api/practitioners/{practitioner_id}/summary", params={"day": "2024-05-06"})
        _book(client, practitioner_id)
        client.post("/api/admin/summaries/refresh")
        after = client.get(f"/api/practitioners/{practitioner_id}/summary", params={"day": "2024-05-06"})

    assert before.status_code == 404
    assert before.json()["detail"]["code"] == "NOT_FOUND"
    assert after.status_code == 200
    assert after.headers["Cache-Control"] == "public, max-age=30"
    body = after.json()
    assert body["practitioner_id"] == practitioner_id
    assert body["date"] == "2024-05-06"
    assert (body["total_slots"], body["available_slots"], body["booked_slots"]) == (12, 11, 1)
    assert body["advisory"] is True
