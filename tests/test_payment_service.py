from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import requests

from storefront.errors import (
    AuthorizationError,
    InvalidPaymentInfoError,
    InvalidTransitionError,
    NotFoundError,
    PaymentProcessingError,
)
from storefront.models import Discount, Notification, NotificationType, OutboxMessage, Sale, SaleStatus
from storefront.observability import counter_value
from storefront.services.order_lifecycle_service import OrderLifecycleService
from storefront.services.payment_service import PaymentService, compute_signature
from storefront.services.paypack_client import AccessTokenCache, PaypackClient
from storefront.services.sales_service import SalesService


@pytest.fixture
def payments(db_session, stub_paypack):
    return PaymentService(
        db_session,
        client=stub_paypack,
        success_statuses=("success",),
        webhook_secret="",
        dispatch_notifications=True,
    )


@pytest.fixture
def pending_order(db_session, make_inventory, client_payload, payments):
    inventory = make_inventory(quantity=5, price="1000.00")
    now = datetime.now(timezone.utc)
    db_session.add(
        Discount(
            inventoryID=inventory.inventoryID,
            percentage=Decimal("25"),
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=1),
        )
    )
    db_session.commit()
    return SalesService(db_session, payment_service=payments).create_order(
        [{"inventory_id": inventory.inventoryID, "quantity": 3}],
        client_payload(email="buyer@example.com"),
    )


def test_initiate_charges_discounted_total(pending_order, stub_paypack):
    assert stub_paypack.calls == [{"number": "+250780000001", "amount": Decimal("2250.00")}]
    assert pending_order.status == SaleStatus.PAYMENT_PENDING
    assert pending_order.transaction_ref == "PP-REF-1"
    assert [item.amount for item in pending_order.items] == [Decimal("2250.00")]
    assert counter_value("payments_initiated_total") == 1


def test_paid_order_cannot_be_charged_again(db_session, payments, pending_order, stub_paypack):
    payments.handle_callback(pending_order.transaction_ref, "success")

    with pytest.raises(InvalidTransitionError) as exc_info:
        payments.initiate_payment(pending_order.saleID)

    assert exc_info.value.details["status"] == "COMPLETED"
    assert len(stub_paypack.calls) == 1
    db_session.expire_all()
    assert db_session.get(Sale, pending_order.saleID).status == SaleStatus.COMPLETED
    assert counter_value("payments_rejected_total", labels={"status": "COMPLETED"}) == 1


def test_refunded_order_stays_refunded(db_session, payments, pending_order, stub_paypack):
    lifecycle = OrderLifecycleService(db_session, payment_service=payments, dispatch_notifications=True)
    payments.handle_callback(pending_order.transaction_ref, "success")
    lifecycle.request_refund(pending_order.saleID, "Never arrived")
    lifecycle.complete_refund(pending_order.saleID, "Refund issued", "ACCEPT")

    with pytest.raises(InvalidTransitionError):
        payments.initiate_payment(pending_order.saleID)
    late = payments.handle_callback(pending_order.transaction_ref, "success")

    assert late == {"sale_id": pending_order.saleID, "status": "REFUNDED", "outcome": "ignored"}
    assert len(stub_paypack.calls) == 1
    db_session.expire_all()
    assert db_session.get(Sale, pending_order.saleID).status == SaleStatus.REFUNDED


def test_point_of_sale_sale_is_not_chargeable(db_session, make_inventory, payments, stub_paypack):
    inventory = make_inventory(quantity=2)
    sale, _ = SalesService(db_session, payment_service=payments).create_sale(
        [{"inventory_id": inventory.inventoryID, "quantity": 1}],
        payment_method="CASH",
        client={"name": "Walk-in"},
    )

    with pytest.raises(InvalidTransitionError) as exc_info:
        payments.initiate_payment(sale.saleID)

    assert exc_info.value.details["type"] == "SALE"
    assert stub_paypack.calls == []


def test_initiate_rejects_unreadable_payment_info(db_session, make_inventory, client_payload, payments):
    inventory = make_inventory()
    order = SalesService(db_session, payment_service=payments).create_order(
        [{"inventory_id": inventory.inventoryID, "quantity": 1}],
        client_payload(payment_info="not-json"),
        initiate_payment=False,
    )

    with pytest.raises(InvalidPaymentInfoError) as exc_info:
        payments.initiate_payment(order.saleID)
    assert exc_info.value.message == "Invalid payment info format"

    with pytest.raises(NotFoundError):
        payments.initiate_payment(999999)


def test_successful_callback_completes_and_notifies_buyer(db_session, payments, pending_order, make_user):
    buyer = make_user(email="buyer@example.com")

    result = payments.handle_callback(pending_order.transaction_ref, "SUCCESS")

    assert result == {"sale_id": pending_order.saleID, "status": "COMPLETED", "outcome": "success"}
    db_session.expire_all()
    notification = db_session.query(Notification).filter_by(userID=buyer.userID).one()
    assert notification.title == "Payment Successful"
    assert notification.type == NotificationType.SUCCESS
    assert "was successful" in notification.message


def test_failed_callback_keeps_status_and_warns_buyer(db_session, payments, pending_order, make_user):
    buyer = make_user(email="buyer@example.com")

    result = payments.handle_callback(pending_order.transaction_ref, "failed")

    assert result["outcome"] == "failure"
    assert result["status"] == "PAYMENT_PENDING"
    db_session.expire_all()
    notification = db_session.query(Notification).filter_by(userID=buyer.userID).one()
    assert notification.title == "Payment Failed"
    assert notification.type == NotificationType.ERROR


def test_callback_without_registered_buyer_still_completes(db_session, payments, pending_order):
    result = payments.handle_callback(pending_order.transaction_ref, "success")

    assert result["status"] == "COMPLETED"
    assert db_session.query(OutboxMessage).count() == 0
    assert db_session.query(Notification).count() == 0


def test_replayed_success_changes_nothing(db_session, payments, pending_order, make_user):
    buyer = make_user(email="buyer@example.com")
    payments.handle_callback(pending_order.transaction_ref, "success")

    replay = payments.handle_callback(pending_order.transaction_ref, "success")

    assert replay["outcome"] == "replay"
    db_session.expire_all()
    assert db_session.query(Notification).filter_by(userID=buyer.userID).count() == 1
    assert counter_value("payment_callbacks_total", labels={"outcome": "replay"}) == 1


def test_unknown_reference_is_not_found(payments):
    with pytest.raises(NotFoundError) as exc_info:
        payments.handle_callback("PP-UNKNOWN", "success")
    assert exc_info.value.message == "Associated sale not found"


def test_signature_verification(db_session, stub_paypack):
    body = b'{"data": {"ref": "PP-REF-1", "status": "success"}}'
    service = PaymentService(db_session, client=stub_paypack, webhook_secret="s3cret")

    service.verify_signature(body, compute_signature("s3cret", body))
    with pytest.raises(AuthorizationError):
        service.verify_signature(body, compute_signature("other", body))
    with pytest.raises(AuthorizationError):
        service.verify_signature(body, None)

    # No shared secret configured: callbacks are accepted unsigned
    PaymentService(db_session, client=stub_paypack, webhook_secret="").verify_signature(body, None)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_token_cache_refreshes_only_near_expiry():
    clock = FakeClock()
    cache = AccessTokenCache(skew_seconds=60, clock=clock)
    grants = iter([("token-1", 900), ("token-2", 900)])

    assert cache.get(lambda: next(grants)) == "token-1"
    clock.now += 800
    assert cache.get(lambda: next(grants)) == "token-1"
    clock.now += 50
    assert cache.get(lambda: next(grants)) == "token-2"
    assert counter_value("payment_token_refreshes_total") == 2

    cache.invalidate()
    with pytest.raises(StopIteration):
        cache.get(lambda: next(grants))


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(session):
    return PaypackClient(
        base_url="https://paypack.test/api/",
        client_id="id",
        client_secret="secret",
        environment="development",
        timeout=5,
        token_cache=AccessTokenCache(),
        session=session,
    )


def test_cashin_authorizes_then_sends_bearer_and_webhook_mode():
    session = FakeSession(
        [
            FakeResponse(200, {"access": "tok", "expires": 900}),
            FakeResponse(200, {"ref": "PP-1", "status": "pending"}),
        ]
    )

    data = _client(session).cashin("+250780000001", Decimal("2250.00"))

    assert data["ref"] == "PP-1"
    authorize, cashin = session.requests
    assert authorize["url"] == "https://paypack.test/api/auth/agents/authorize"
    assert cashin["url"] == "https://paypack.test/api/transactions/cashin"
    assert cashin["headers"]["Authorization"] == "Bearer tok"
    assert cashin["headers"]["X-Webhook-Mode"] == "development"
    assert cashin["json"] == {"amount": 2250.0, "number": "+250780000001"}
    assert cashin["timeout"] == 5


def test_transport_and_http_errors_become_payment_errors():
    unreachable = FakeSession([requests.ConnectionError("down")])
    with pytest.raises(PaymentProcessingError):
        _client(unreachable).cashin("+250780000001", Decimal("10"))

    rejected = FakeSession(
        [
            FakeResponse(200, {"access": "tok", "expires": 900}),
            FakeResponse(500, {"message": "internal"}),
        ]
    )
    with pytest.raises(PaymentProcessingError) as exc_info:
        _client(rejected).cashin("+250780000001", Decimal("10"))
    assert exc_info.value.details["status_code"] == 500

    no_ref = FakeSession(
        [
            FakeResponse(200, {"access": "tok", "expires": 900}),
            FakeResponse(200, {"status": "pending"}),
        ]
    )
    with pytest.raises(PaymentProcessingError):
        _client(no_ref).cashin("+250780000001", Decimal("10"))
