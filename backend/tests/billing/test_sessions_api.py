import random

import pytest

from app.models import SessionStatus, TherapySession


def _create(client, headers, **body):
    return client.post("/api/sessions", json=body, headers=headers)


def test_create_uses_care_relationship_defaults(client, auth_headers, patient):
    response = _create(
        client,
        auth_headers,
        patientUserId=patient.id,
        startsOn="2026-03-02T10:00:00Z",
        endsOn="2026-03-02T11:30:00Z",
        status="completed",
    )
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["price"] == 60
    assert body["percent_psych"] == 75
    assert body["duration_hours"] == 1.5
    assert body["total_price"] == 90
    assert body["psychologist_earnings"] == pytest.approx(67.5)


def test_percent_is_clamped(client, auth_headers, patient):
    high = _create(client, auth_headers, patientUserId=patient.id, percentPsych=140).json()
    low = _create(client, auth_headers, patientUserId=patient.id, percentPsych=-5).json()
    assert high["percent_psych"] == 100
    assert low["percent_psych"] == 0


def test_available_slot_needs_no_patient(client, auth_headers):
    slot = _create(client, auth_headers, status="available")
    assert slot.status_code == 201
    assert slot.json()["patient_user_id"] is None
    assert _create(client, auth_headers, status="scheduled").status_code == 422


def test_patient_outside_care_is_rejected(client, auth_headers, other_psychologist):
    response = _create(client, auth_headers, patientUserId=other_psychologist.id)
    assert response.status_code == 422


def test_paid_requires_completed(client, auth_headers, patient):
    rejected = _create(client, auth_headers, patientUserId=patient.id, status="scheduled", paid=True)
    assert rejected.status_code == 422

    session = _create(client, auth_headers, patientUserId=patient.id, status="completed", paid=True).json()
    moved = client.patch(
        f"/api/sessions/{session['id']}", json={"status": "cancelled"}, headers=auth_headers
    )
    assert moved.status_code == 422

    unpaid = client.patch(
        f"/api/sessions/{session['id']}",
        json={"status": "cancelled", "paid": False},
        headers=auth_headers,
    )
    assert unpaid.status_code == 200
    assert unpaid.json()["paid"] is False


def test_random_patches_never_leave_paid_unfinished(client, auth_headers, db, patient):
    rng = random.Random(20260302)
    session = _create(client, auth_headers, patientUserId=patient.id).json()
    statuses = [status.value for status in SessionStatus]
    for _ in range(60):
        patch = {}
        if rng.random() < 0.7:
            patch["status"] = rng.choice(statuses)
        if rng.random() < 0.7:
            patch["paid"] = rng.random() < 0.5
        response = client.patch(f"/api/sessions/{session['id']}", json=patch, headers=auth_headers)
        assert response.status_code in {200, 422}
        db.expire_all()
        stored = db.get(TherapySession, session["id"])
        assert not stored.paid or stored.status == SessionStatus.completed


def test_delete_blocked_while_invoiced(client, auth_headers, db, patient, make_session):
    session = make_session(patient)
    invoice = client.post(
        "/api/invoices",
        json={"patientUserId": patient.id, "amount": 60, "status": "pending", "sessionIds": [session.id]},
        headers=auth_headers,
    ).json()

    response = client.delete(f"/api/sessions/{session.id}", headers=auth_headers)
    assert response.status_code == 409

    client.post(f"/api/invoices/{invoice['id']}/rectify", headers=auth_headers)
    assert client.delete(f"/api/sessions/{session.id}", headers=auth_headers).status_code == 200
    db.expire_all()
    assert db.get(TherapySession, session.id) is None


def test_list_sessions_by_status(client, auth_headers, headers_for, patient, make_session):
    done = make_session(patient, status=SessionStatus.completed)
    make_session(patient, status=SessionStatus.scheduled)

    response = client.get("/api/sessions", params={"status": "completed"}, headers=auth_headers)
    assert [row["id"] for row in response.json()] == [done.id]

    own = client.get("/api/sessions", headers=headers_for(patient))
    assert len(own.json()) == 2


def test_patch_cannot_drop_patient_from_booked_session(client, auth_headers, db, patient, make_session):
    session = make_session(patient, status=SessionStatus.scheduled)

    response = client.patch(
        f"/api/sessions/{session.id}", json={"patientUserId": None}, headers=auth_headers
    )
    assert response.status_code == 422
    db.expire_all()
    assert db.get(TherapySession, session.id).patient_user_id == patient.id

    freed = client.patch(
        f"/api/sessions/{session.id}",
        json={"patientUserId": None, "status": "available"},
        headers=auth_headers,
    )
    assert freed.status_code == 200
    assert freed.json()["patient_user_id"] is None

    rebooked = client.patch(
        f"/api/sessions/{session.id}", json={"status": "scheduled"}, headers=auth_headers
    )
    assert rebooked.status_code == 422
