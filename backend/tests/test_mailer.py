import pytest
import requests

from app import mailer

GRANT = {
    "id": 7,
    "area": "Koramangala",
    "pinned_count": 2,
    "houses_to_view": 5,
    "amount_paid": 40,
    "duration_days": 3,
    "valid_until": "2026-01-04T10:00:00+00:00",
}
HOUSES = [
    {"title": "House 1", "rent": 6000, "distance_km": 0.556},
    {"title": "No GPS", "rent": 9000},
]


def test_receipt_lists_houses_nearest_first():
    text = mailer.plan_receipt_text(grant=GRANT, houses=HOUSES)
    assert "Plan #7 for Koramangala" in text
    assert "Houses unlocked: 2 of 5" in text
    assert "1. House 1 - INR 6000/month (0.556 km)" in text
    assert "2. No GPS - INR 9000/month" in text


def test_disabled_backend_sends_nothing(monkeypatch):
    monkeypatch.setenv("EMAIL_BACKEND", "disabled")
    assert mailer.send_plan_receipt(to_email="a@example.com", grant=GRANT, houses=HOUSES) == "disabled"


def test_invalid_recipient_is_rejected(monkeypatch):
    monkeypatch.setenv("EMAIL_BACKEND", "console")
    with pytest.raises(mailer.EmailSendError):
        mailer.send_email(to_email="not-an-email", subject="s", text="t")


def test_brevo_failure_never_breaks_a_purchase(monkeypatch):
    monkeypatch.setenv("EMAIL_BACKEND", "brevo")
    monkeypatch.setenv("BREVO_API_KEY", "k")
    monkeypatch.setenv("BREVO_FROM", "noreply@example.com")

    def boom(*args, **kwargs):
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr(mailer.requests, "post", boom)
    assert mailer.send_plan_receipt(to_email="a@example.com", grant=GRANT, houses=HOUSES) == "failed"


def test_brevo_payload(monkeypatch):
    monkeypatch.setenv("EMAIL_BACKEND", "brevo")
    monkeypatch.setenv("BREVO_API_KEY", "k")
    monkeypatch.setenv("BREVO_FROM", "noreply@example.com")
    sent = {}

    class _Resp:
        status_code = 201
        text = ""

    def fake_post(url, headers=None, json=None, timeout=None):
        sent.update(url=url, headers=headers, json=json)
        return _Resp()

    monkeypatch.setattr(mailer.requests, "post", fake_post)
    assert mailer.send_plan_receipt(to_email="a@example.com", grant=GRANT, houses=HOUSES) == "brevo"
    assert sent["url"] == mailer.BREVO_SEND_URL
    assert sent["headers"]["api-key"] == "k"
    assert sent["json"]["to"] == [{"email": "a@example.com"}]
    assert "Koramangala" in sent["json"]["subject"]
