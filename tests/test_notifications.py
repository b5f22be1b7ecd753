"""
Tests for email notification endpoints and the retrying dispatcher
"""
import base64
from email.message import EmailMessage

import pytest

from crud.ledger import SubscriptionLedger
from database import session_scope
from services.email_templates import decode_pdf, format_mk
from services.notification_service import NotificationDispatcher
from utils.errors import NotificationError, ValidationError

from tests.conftest import ADMIN, ALICE, BOB, FakeMailer, SleepRecorder, auth_header

SALE = {
    "saleData": {"Sale_id": "S-1001", "Saledate": "2026-03-15"},
    "cartItems": [
        {"item_id": 1, "item_name": "Sugar 2kg", "price": 3500, "quantity": 2, "total": 7000},
        {"item_id": 2, "item_name": "Cooking oil", "price": 5500, "quantity": 1, "total": 5500},
    ],
    "totalAmount": 12500,
}


async def seed_user(services, user, **fields):
    async with session_scope(services.session_factory) as db:
        await SubscriptionLedger(db).upsert_user(user.uid, {"email": user.email, **fields})


def test_format_mk():
    assert format_mk(12500) == "MK 12,500"
    assert format_mk(99.5) == "MK 99.50"


def test_decode_pdf_accepts_data_url():
    raw = b"%PDF-1.4 report"
    encoded = base64.b64encode(raw).decode()

    assert decode_pdf(encoded) == raw
    assert decode_pdf(f"data:application/pdf;base64,{encoded}") == raw
    with pytest.raises(ValidationError):
        decode_pdf("not base64 at all!")


@pytest.mark.asyncio
async def test_dispatcher_retries_then_succeeds():
    mailer = FakeMailer()
    mailer.failures_left = 2
    sleep = SleepRecorder()
    dispatcher = NotificationDispatcher(mailer, sender="noreply@example.com", retry_delay=2.0, sleep=sleep)

    message = EmailMessage()
    message["To"] = "alice@example.com"
    message["Subject"] = "hello"
    await dispatcher.send(message)

    assert len(mailer.sent) == 1
    assert mailer.sent[0]["From"] == "noreply@example.com"
    assert sleep.delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_dispatcher_raises_when_retries_exhausted():
    mailer = FakeMailer()
    mailer.failures_left = 3
    dispatcher = NotificationDispatcher(mailer, sender="noreply@example.com", sleep=SleepRecorder())

    message = EmailMessage()
    message["To"] = "alice@example.com"
    with pytest.raises(NotificationError) as exc_info:
        await dispatcher.send(message)

    assert exc_info.value.message.startswith("All 3 retry attempts failed")
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_sale_notification_sent(async_client, services, mailer):
    await seed_user(services, ALICE)

    response = await async_client.post(
        "/api/send-email-notification",
        headers=auth_header(ALICE),
        json={"userId": ALICE.uid, **SALE},
    )

    assert response.status_code == 200
    assert response.json()["data"]["sent"] is True
    assert len(mailer.sent) == 1
    sent = mailer.sent[0]
    assert sent["To"] == ALICE.email
    assert sent["Subject"] == "New Sale Completed - 2026-03-15"
    html = sent.get_body(("html",)).get_content()
    assert "Sugar 2kg" in html
    assert "MK 12,500" in html


@pytest.mark.asyncio
async def test_sale_notification_respects_opt_out(async_client, services, mailer):
    await seed_user(services, ALICE, email_notifications=False)

    response = await async_client.post(
        "/api/send-email-notification",
        headers=auth_header(ALICE),
        json={"userId": ALICE.uid, **SALE},
    )

    assert response.status_code == 200
    assert response.json()["data"]["sent"] is False
    assert response.json()["message"] == "Email notifications are disabled for this user"
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_sale_notification_for_other_user_needs_admin(async_client, services, mailer):
    await seed_user(services, BOB)

    forbidden = await async_client.post(
        "/api/send-email-notification",
        headers=auth_header(ALICE),
        json={"userId": BOB.uid, **SALE},
    )
    assert forbidden.status_code == 403

    await seed_user(services, ADMIN, role="admin")
    allowed = await async_client.post(
        "/api/send-email-notification",
        headers=auth_header(ADMIN),
        json={"userId": BOB.uid, **SALE},
    )
    assert allowed.status_code == 200
    assert [m["To"] for m in mailer.sent] == [BOB.email]


@pytest.mark.asyncio
async def test_sale_notification_unknown_target(async_client):
    response = await async_client.post(
        "/api/send-email-notification",
        headers=auth_header(ALICE),
        json={"userId": ALICE.uid, **SALE},
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_sale_notification_reports_missing_fields(async_client):
    response = await async_client.post(
        "/api/send-email-notification",
        headers=auth_header(ALICE),
        json={"userId": ALICE.uid},
    )

    assert response.status_code == 400
    assert response.json()["data"]["missing"] == {"saleData": True, "cartItems": True, "totalAmount": True}


@pytest.mark.asyncio
async def test_sale_notification_rejects_incomplete_items(async_client, services):
    await seed_user(services, ALICE)
    sale = {**SALE, "cartItems": [{"item_id": 1, "item_name": "Sugar 2kg", "price": 3500}]}

    response = await async_client.post(
        "/api/send-email-notification",
        headers=auth_header(ALICE),
        json={"userId": ALICE.uid, **sale},
    )

    assert response.status_code == 400
    assert response.json()["data"]["cartItems"] == 0


@pytest.mark.asyncio
async def test_delivery_failure_is_reported(async_client, services, mailer):
    await seed_user(services, ALICE)
    mailer.failures_left = 3

    response = await async_client.post(
        "/api/send-email-notification",
        headers=auth_header(ALICE),
        json={"userId": ALICE.uid, **SALE},
    )

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "notification_error"
    assert body["data"]["retryable"] is True


@pytest.mark.asyncio
async def test_pdf_notification(async_client, mailer):
    pdf = base64.b64encode(b"%PDF-1.4 report").decode()

    response = await async_client.post(
        "/api/send-pdf-notification",
        headers=auth_header(ALICE),
        json={"userId": ALICE.uid, "userEmail": ALICE.email, "pdfBase64": pdf, "filename": "march.pdf"},
    )

    assert response.status_code == 200
    attachments = list(mailer.sent[0].iter_attachments())
    assert attachments[0].get_filename() == "march.pdf"
    assert attachments[0].get_content() == b"%PDF-1.4 report"


@pytest.mark.asyncio
async def test_pdf_notification_only_for_self(async_client, mailer):
    response = await async_client.post(
        "/api/send-pdf-notification",
        headers=auth_header(ALICE),
        json={"userId": BOB.uid, "userEmail": BOB.email, "pdfBase64": "JVBERg==", "filename": "x.pdf"},
    )

    assert response.status_code == 403
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_smtp_check_email_is_admin_only(async_client, services, mailer):
    forbidden = await async_client.get("/test-email", headers=auth_header(ALICE))
    assert forbidden.status_code == 403

    await seed_user(services, ADMIN, role="admin")
    allowed = await async_client.get("/test-email", headers=auth_header(ADMIN))
    assert allowed.status_code == 200
    assert mailer.sent[0]["To"] == services.settings.test_email


@pytest.mark.asyncio
async def test_debug_email_goes_to_caller(async_client, mailer):
    response = await async_client.post("/debug-email", headers=auth_header(BOB))

    assert response.status_code == 200
    assert mailer.sent[0]["To"] == BOB.email
