from datetime import datetime, timezone

from sqlalchemy import select

from app.models import CareRelationship, SessionStatus


def test_patient_unbilled_lists_eligible_items(client, auth_headers, patient, make_session, make_bono):
    older = make_session(patient, starts_on=datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc))
    newer = make_session(patient, starts_on=datetime(2026, 2, 10, 9, 0, tzinfo=timezone.utc))
    make_session(patient, status=SessionStatus.scheduled)
    bono = make_bono(patient)
    make_session(patient, bonus_id=bono.id)
    billed = make_session(patient)
    client.post(
        "/api/invoices",
        json={"patientUserId": patient.id, "amount": 60, "status": "paid", "sessionIds": [billed.id]},
        headers=auth_headers,
    )

    response = client.get(f"/api/patient/{patient.id}/unbilled", headers=auth_headers)
    assert response.status_code == 200
    body = response.json()
    assert [row["id"] for row in body["sessions"]] == [newer.id, older.id]
    assert [row["id"] for row in body["bonos"]] == [bono.id]
    assert body["bonos"][0]["sessions_used"] == 1


def test_center_unbilled_follows_active_relationships(
    client, auth_headers, db, patient, center, center_patient, make_session
):
    make_session(patient)
    at_center = make_session(center_patient)

    response = client.get(f"/api/center/{center.id}/unbilled", headers=auth_headers)
    assert [row["id"] for row in response.json()["sessions"]] == [at_center.id]

    relationship = db.scalar(
        select(CareRelationship).where(CareRelationship.patient_user_id == center_patient.id)
    )
    relationship.active = False
    db.commit()
    response = client.get(f"/api/center/{center.id}/unbilled", headers=auth_headers)
    assert response.json() == {"sessions": [], "bonos": []}


def test_unknown_center_is_not_found(client, auth_headers):
    assert client.get("/api/center/999/unbilled", headers=auth_headers).status_code == 404


def test_psychologist_patients(client, auth_headers, psychologist, patient, center_patient):
    response = client.get(f"/api/psychologist/{psychologist.id}/patients", headers=auth_headers)
    assert response.status_code == 200
    rows = {row["id"]: row for row in response.json()}
    assert set(rows) == {patient.id, center_patient.id}
    assert rows[center_patient.id]["center_name"] == "Centro Salud Mental Norte"
    assert rows[patient.id]["center_id"] is None


def test_psychologist_patients_of_someone_else(client, auth_headers, other_psychologist):
    response = client.get(f"/api/psychologist/{other_psychologist.id}/patients", headers=auth_headers)
    assert response.status_code == 403
