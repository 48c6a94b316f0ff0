import pytest

import feedback
from errors import NotFoundError, ValidationError


def test_general_feedback_has_no_bus(db, alice):
    entry = feedback.submit_feedback(db, alice, "Wifi", "Please add wifi")

    assert entry["busId"] is None
    assert entry["busName"] == "General Feedback"
    assert entry["studentName"] == "alice"
    assert entry["status"] == "pending"


def test_anonymous_feedback_hides_the_name(db, alice, bus):
    entry = feedback.submit_feedback(db, alice, "Late", "Ten minutes late", bus_ref="B1", is_anonymous=True)

    assert entry["studentName"] == "Anonymous Student"
    assert entry["isAnonymous"] is True
    assert entry["driverId"] == bus["driver"]


def test_rating_only_feedback_gets_a_subject(db, alice, bus):
    entry = feedback.submit_feedback(db, alice, None, None, bus_ref="B1", rating=4)

    assert entry["subject"] == "Rating for B1 Express"
    assert entry["rating"] == 4


@pytest.mark.parametrize("rating,bus_ref", [(0, "B1"), (6, "B1"), (3, None)])
def test_invalid_ratings(db, alice, bus, rating, bus_ref):
    with pytest.raises(ValidationError):
        feedback.submit_feedback(db, alice, "Rate", "ok", bus_ref=bus_ref, rating=rating)


def test_feedback_requires_subject_and_message(db, alice):
    with pytest.raises(ValidationError):
        feedback.submit_feedback(db, alice, "Only subject", "")


def test_driver_cannot_touch_another_drivers_feedback(db, alice, bus, other_bus):
    entry = feedback.submit_feedback(db, alice, "Late", "Again", bus_ref="B1")

    with pytest.raises(NotFoundError):
        feedback.driver_mark_read(db, str(entry["_id"]), other_bus["driver"])

    marked = feedback.driver_mark_read(db, str(entry["_id"]), bus["driver"])
    assert marked["readByDriver"] is True


def test_driver_response_is_required(db, alice, bus):
    entry = feedback.submit_feedback(db, alice, "Late", "Again", bus_ref="B1")

    with pytest.raises(ValidationError):
        feedback.driver_respond(db, str(entry["_id"]), bus["driver"], "  ")


def test_complaint_defaults_and_validation(db, alice, bus):
    complaint = feedback.submit_complaint(db, alice, "Rash driving", "Near the gate", bus_ref="B1")

    assert complaint["type"] == "other"
    assert complaint["severity"] == 3
    assert complaint["status"] == "open"
    assert feedback.complaints_for_driver(db, bus["driver"])[0]["_id"] == complaint["_id"]

    with pytest.raises(ValidationError):
        feedback.submit_complaint(db, alice, "x", "y", complaint_type="weather")


def test_complaint_resolution_sets_resolved_at(db, alice):
    complaint = feedback.submit_complaint(db, alice, "Seats", "Torn seats", complaint_type="cleanliness")
    complaint_id = str(complaint["_id"])

    investigating = feedback.update_complaint_status(db, complaint_id, "investigating")
    assert investigating["resolvedAt"] is None

    closed = feedback.update_complaint_status(db, complaint_id, "closed", response="Replaced")
    assert closed["resolvedAt"] is not None
    assert closed["adminResponse"] == "Replaced"
    assert closed["readByAdmin"] is True

    with pytest.raises(ValidationError):
        feedback.update_complaint_status(db, complaint_id, "escalated")


def test_feedback_status_and_inbox(db, alice):
    entry = feedback.submit_feedback(db, alice, "Wifi", "Please add wifi")

    with pytest.raises(ValidationError):
        feedback.update_feedback_status(db, str(entry["_id"]), "archived")

    feedback.update_feedback_status(db, str(entry["_id"]), "resolved", response="Installed")
    inbox = feedback.inbox(db)

    assert inbox["feedback"][0]["status"] == "resolved"
    assert inbox["complaints"] == []


def test_admin_mark_read_unknown(db):
    with pytest.raises(NotFoundError):
        feedback.admin_mark_read(db, "complaint", "64b7f0c2a1b2c3d4e5f60718")
