import asyncio
from datetime import date, time
from decimal import Decimal

import pytest

from techrehub.models import Booking, Payment
from techrehub.routers import payments as payments_router
from techrehub.services.errors import PaymentCallbackError
from techrehub.services.payment_service import apply_payment_callback, parse_callback


def _seed_payment(db, reference="PYA1B2C3D4", status="pending", amount="50.00", with_booking=False):
    booking_id = None
    if with_booking:
        booking = Booking(
            reference="BK11223344",
            user_id="263771234567",
            platform="whatsapp",
            service_id="computer-repair",
            customer_name="John Doe",
            booking_date=date(2025, 5, 25),
            booking_time=time(10, 0),
            description="Laptop repair",
        )
        db.add(booking)
        db.flush()
        booking_id = booking.id
    payment = Payment(
        reference=reference,
        user_id="263771234567",
        platform="whatsapp",
        customer_name="John Doe",
        description="Computer Repair",
        amount=Decimal(amount),
        status=status,
        booking_id=booking_id,
    )
    db.add(payment)
    db.commit()
    return payment


def _callback(reference="PYA1B2C3D4", status="SUCCESS", amount="50.00", **extra):
    return {"reference": reference, "status": status, "amount": amount, "transactionId": "TX-1", **extra}


class TestParseCallback:
    def test_unknown_provider(self):
        with pytest.raises(PaymentCallbackError) as exc_info:
            parse_callback("paypal", _callback())
        assert exc_info.value.status_code == 404

    def test_missing_transaction_id(self):
        payload = _callback()
        del payload["transactionId"]
        with pytest.raises(PaymentCallbackError) as exc_info:
            parse_callback("ecocash", payload)
        assert exc_info.value.status_code == 400

    def test_snake_case_transaction_id_is_accepted(self):
        payload = _callback()
        payload["transaction_id"] = payload.pop("transactionId")
        assert parse_callback("onemoney", payload).transactionId == "TX-1"

    def test_bank_transfer_requires_account_number(self):
        with pytest.raises(PaymentCallbackError):
            parse_callback("bank-transfer", _callback())
        assert parse_callback("bank-transfer", _callback(accountNumber="1234567")).accountNumber == "1234567"


class TestApplyCallback:
    def test_success_completes_payment_and_booking(self, db_session):
        _seed_payment(db_session, with_booking=True)

        outcome = apply_payment_callback(db_session, "ecocash", _callback())

        assert outcome.changed
        assert outcome.previous_status == "pending"
        assert outcome.payment.status == "completed"
        payment = db_session.query(Payment).one()
        assert payment.provider == "ecocash"
        assert payment.transaction_id == "TX-1"
        assert payment.paid_at is not None
        assert payment.provider_response["reference"] == "PYA1B2C3D4"
        assert db_session.query(Booking).one().payment_status == "paid"

    def test_non_success_status_fails_payment(self, db_session):
        _seed_payment(db_session)
        outcome = apply_payment_callback(db_session, "card", _callback(status="DECLINED", last4="4242"))
        assert outcome.payment.status == "failed"

    def test_replay_is_a_noop(self, db_session):
        _seed_payment(db_session)
        apply_payment_callback(db_session, "ecocash", _callback())

        outcome = apply_payment_callback(db_session, "ecocash", _callback())

        assert not outcome.changed
        assert outcome.payment.status == "completed"

    def test_completed_cannot_fail(self, db_session):
        _seed_payment(db_session, status="completed")
        with pytest.raises(PaymentCallbackError) as exc_info:
            apply_payment_callback(db_session, "ecocash", _callback(status="FAILED"))
        assert exc_info.value.status_code == 409

    def test_failed_can_still_complete(self, db_session):
        _seed_payment(db_session, status="failed")
        outcome = apply_payment_callback(db_session, "ecocash", _callback())
        assert outcome.changed
        assert outcome.payment.status == "completed"

    def test_amount_mismatch(self, db_session):
        _seed_payment(db_session)
        with pytest.raises(PaymentCallbackError) as exc_info:
            apply_payment_callback(db_session, "ecocash", _callback(amount="49.99"))
        assert exc_info.value.message == "Amount mismatch"
        assert db_session.query(Payment).one().status == "pending"

    def test_amount_compared_to_the_cent(self, db_session):
        _seed_payment(db_session)
        assert apply_payment_callback(db_session, "ecocash", _callback(amount="50")).changed

    def test_unknown_reference(self, db_session):
        with pytest.raises(PaymentCallbackError) as exc_info:
            apply_payment_callback(db_session, "ecocash", _callback(reference="PYNOPE0000"))
        assert exc_info.value.status_code == 404


class TestPaymentEndpoint:
    def test_success_sends_receipt(self, client, db_session, sent_messages):
        _seed_payment(db_session)

        response = client.post("/webhooks/payments/ecocash", json=_callback())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "completed"
        assert data["message"] == "Payment updated"
        receipts = [body for body in sent_messages.bodies if body.get("type") == "text"]
        assert len(receipts) == 1
        assert receipts[0]["to"] == "263771234567"
        assert "PYA1B2C3D4" in receipts[0]["text"]["body"]

    def test_replay_sends_nothing(self, client, db_session, sent_messages):
        _seed_payment(db_session)
        client.post("/webhooks/payments/ecocash", json=_callback())
        sent_before = len(sent_messages.requests)

        response = client.post("/webhooks/payments/ecocash", json=_callback())

        assert response.status_code == 200
        assert response.json()["message"] == "Payment already processed"
        assert len(sent_messages.requests) == sent_before

    def test_unknown_provider_is_404(self, client):
        response = client.post("/webhooks/payments/paypal", json=_callback())
        assert response.status_code == 404

    def test_invalid_body_is_400(self, client):
        response = client.post("/webhooks/payments/ecocash", content=b"not json")
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid webhook payload"

    def test_amount_mismatch_is_400(self, client, db_session):
        _seed_payment(db_session)
        response = client.post("/webhooks/payments/ecocash", json=_callback(amount="10.00"))
        assert response.status_code == 400
        assert response.json()["detail"] == "Amount mismatch"

    def test_conflict_is_409(self, client, db_session):
        _seed_payment(db_session, status="completed")
        response = client.post("/webhooks/payments/card", json=_callback(status="FAILED"))
        assert response.status_code == 409

    def test_callback_is_applied_in_a_worker_thread(self, client, db_session, monkeypatch):
        _seed_payment(db_session)
        offloaded = []
        to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            offloaded.append(func)
            return await to_thread(func, *args, **kwargs)

        monkeypatch.setattr(payments_router.asyncio, "to_thread", recording_to_thread)

        response = client.post("/webhooks/payments/ecocash", json=_callback())

        assert response.status_code == 200
        assert apply_payment_callback in offloaded
