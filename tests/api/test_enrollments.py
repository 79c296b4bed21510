"""HTTP surface of /v1/enrollments: envelopes, status codes, error codes."""

from __future__ import annotations

from fastapi.testclient import TestClient

from app.db.memory import memory_db
from tests.conftest import add_course, course_lessons, course_modules, enrollment_body


def _enroll(client: TestClient, **overrides) -> dict:
    resp = client.post("/v1/enrollments", json=enrollment_body(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---- POST /v1/enrollments ----


def test_enroll_returns_201_envelope(client: TestClient) -> None:
    course = add_course()

    body = _enroll(client)

    assert body["success"] is True
    assert body["message"] == "Student enrolled successfully"
    data = body["data"]
    assert data["status"] == "active"
    assert data["amount_paid"] == "100.00"
    assert data["student"]["email"] == "ada@example.com"
    assert data["student"]["full_name"] == "Ada Lovelace"
    assert data["course"]["available_slots"] == 9
    assert data["payment"]["status"] == "completed"
    assert "metadata" not in data["payment"]
    meta = body["meta"]
    assert meta["enrollment_number"] == data["enrollment_number"]
    assert meta["transaction_id"] == data["payment"]["transaction_id"]
    assert meta["processing_time_ms"] >= 0
    assert memory_db.courses[course.id].enrolled_count == 1


def test_card_number_never_echoed(client: TestClient) -> None:
    add_course()
    resp = client.post("/v1/enrollments", json=enrollment_body())
    assert "4242424242424242" not in resp.text


def test_enroll_with_unlock_plan_seeds_progress(client: TestClient) -> None:
    course = add_course(lessons_per_module=(2,))
    module = course_modules(course.id)[0]
    lesson = course_lessons(course.id)[0]

    body = _enroll(
        client,
        enrollment={
            "modules": [
                {
                    "module_id": module.id,
                    "unlock_immediately": True,
                    "lessons": [{"lesson_id": lesson.id, "is_mandatory": False}],
                }
            ]
        },
    )

    progress = body["data"]["lesson_progress"]
    assert [p["lesson_id"] for p in progress] == [lesson.id]
    assert progress[0]["data"]["is_mandatory"] is False


def test_validation_errors_use_field_paths(client: TestClient) -> None:
    add_course()
    payload = enrollment_body(student={"email": "not-an-email"})
    payload["payment"]["card"]["cvv"] = "12"

    resp = client.post("/v1/enrollments", json=payload)

    assert resp.status_code == 422
    body = resp.json()
    assert body["success"] is False
    assert body["error_code"] == "VALIDATION_ERROR"
    assert body["message"] == "Validation failed"
    assert "student.email" in body["errors"]
    assert "payment.card.cvv" in body["errors"]
    assert "12" not in str(body["errors"]["payment.card.cvv"])


def test_missing_section_is_reported(client: TestClient) -> None:
    payload = enrollment_body()
    del payload["course"]

    resp = client.post("/v1/enrollments", json=payload)

    assert resp.status_code == 422
    assert "course" in resp.json()["errors"]


def test_card_required_for_card_payments(client: TestClient) -> None:
    payload = enrollment_body()
    del payload["payment"]["card"]

    resp = client.post("/v1/enrollments", json=payload)

    assert resp.status_code == 422
    assert "payment" in resp.json()["errors"]


def test_unknown_course_is_404(client: TestClient) -> None:
    resp = client.post("/v1/enrollments", json=enrollment_body(course={"code": "NOPE-1"}))

    assert resp.status_code == 404
    body = resp.json()
    assert body["error_code"] == "RESOURCE_NOT_FOUND"
    assert "course.code" in body["errors"]


def test_duplicate_enrollment_is_409(client: TestClient) -> None:
    course = add_course()
    _enroll(client)

    resp = client.post("/v1/enrollments", json=enrollment_body())

    assert resp.status_code == 409
    assert resp.json()["error_code"] == "ALREADY_ENROLLED"
    assert memory_db.courses[course.id].enrolled_count == 1


def test_full_course_is_409(client: TestClient) -> None:
    add_course(max_students=1)
    _enroll(client)

    resp = client.post(
        "/v1/enrollments", json=enrollment_body(student={"email": "grace@example.com"})
    )

    assert resp.status_code == 409
    assert resp.json()["error_code"] == "COURSE_FULL"
    assert len(memory_db.students) == 1


def test_price_mismatch_is_422(client: TestClient) -> None:
    add_course()

    resp = client.post("/v1/enrollments", json=enrollment_body(payment={"amount": "80.00"}))

    assert resp.status_code == 422
    body = resp.json()
    assert body["error_code"] == "PRICE_MISMATCH"
    assert "100.00" in body["errors"]["payment.amount"][0]


# ---- GET /v1/enrollments ----


def test_list_paginates_newest_first(client: TestClient) -> None:
    add_course()
    for email in ("ada@example.com", "grace@example.com", "alan@example.com"):
        _enroll(client, student={"email": email})

    resp = client.get("/v1/enrollments", params={"per_page": 2})

    assert resp.status_code == 200
    body = resp.json()
    assert [e["student"]["email"] for e in body["data"]] == [
        "alan@example.com",
        "grace@example.com",
    ]
    assert body["meta"] == {"current_page": 1, "per_page": 2, "total": 3, "last_page": 2}


def test_list_filters_by_status(client: TestClient) -> None:
    add_course()
    _enroll(client, enrollment={"start_immediately": False})

    active = client.get("/v1/enrollments", params={"status": "active"}).json()
    pending = client.get("/v1/enrollments", params={"status": "pending"}).json()

    assert active["data"] == []
    assert [e["status"] for e in pending["data"]] == ["pending"]


def test_list_rejects_unknown_status(client: TestClient) -> None:
    resp = client.get("/v1/enrollments", params={"status": "archived"})
    assert resp.status_code == 422
    assert "status" in resp.json()["errors"]


def test_new_enrollment_invalidates_cached_list(client: TestClient) -> None:
    add_course()
    assert client.get("/v1/enrollments").json()["meta"]["total"] == 0

    _enroll(client)

    assert client.get("/v1/enrollments").json()["meta"]["total"] == 1


# ---- GET /v1/enrollments/{id} ----


def test_get_enrollment(client: TestClient) -> None:
    add_course()
    created = _enroll(client)["data"]

    resp = client.get(f"/v1/enrollments/{created['id']}")

    assert resp.status_code == 200
    assert resp.json()["data"]["enrollment_number"] == created["enrollment_number"]


def test_get_missing_enrollment_is_404(client: TestClient) -> None:
    resp = client.get("/v1/enrollments/999")
    assert resp.status_code == 404
    assert resp.json()["error_code"] == "RESOURCE_NOT_FOUND"


# ---- cancel / progress ----


def test_cancel_enrollment(client: TestClient) -> None:
    course = add_course()
    created = _enroll(client)["data"]

    resp = client.post(f"/v1/enrollments/{created['id']}/cancel")

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Enrollment cancelled"
    assert body["data"]["status"] == "cancelled"
    assert body["data"]["payment"]["status"] == "refunded"
    assert memory_db.courses[course.id].available_slots == 10

    again = client.post(f"/v1/enrollments/{created['id']}/cancel")
    assert again.status_code == 409
    assert again.json()["error_code"] == "INVALID_STATUS_TRANSITION"


def test_record_lesson_progress(client: TestClient) -> None:
    course = add_course(lessons_per_module=(1,))
    lesson = course_lessons(course.id)[0]
    created = _enroll(client)["data"]

    resp = client.post(
        f"/v1/enrollments/{created['id']}/lessons/{lesson.id}/progress",
        json={"time_spent_minutes": 12, "score": "92.5", "completed": True},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Progress recorded"
    assert body["data"]["enrollment_status"] == "completed"
    assert body["data"]["progress_percentage"] == 100
    assert body["data"]["lesson_progress"]["score"] == "92.50"


def test_progress_for_foreign_lesson_is_422(client: TestClient) -> None:
    add_course()
    other = add_course("OTHER-1")
    created = _enroll(client)["data"]
    lesson = course_lessons(other.id)[0]

    resp = client.post(
        f"/v1/enrollments/{created['id']}/lessons/{lesson.id}/progress",
        json={"completed": True},
    )

    assert resp.status_code == 422
    assert resp.json()["error_code"] == "INVALID_MODULES"
