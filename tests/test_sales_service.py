from datetime import datetime, timezone
from decimal import Decimal

import pytest

from storefront.database import SessionLocal
from storefront.errors import (
    InsufficientStockError,
    InvalidPaymentInfoError,
    NotFoundError,
    PaymentProcessingError,
    ValidationError,
)
from storefront.models import CartItem, Sale, SaleItem, SaleStatus, SaleType, SequenceCounter
from storefront.services.payment_service import PaymentService
from storefront.services.sales_service import SalesService
from storefront.services.sequence_service import next_value


def _build_sales_service(db_session, paypack_client):
    payments = PaymentService(db_session, client=paypack_client, dispatch_notifications=False)
    return SalesService(db_session, payment_service=payments)


def _line(inventory, quantity):
    return {"inventory_id": inventory.inventoryID, "quantity": quantity}


def test_point_of_sale_creates_completed_sale_with_receipt(db_session, make_inventory, stub_paypack):
    inventory = make_inventory(quantity=5, price="1000.00", variant_reference="DRESS-RED-M")
    service = _build_sales_service(db_session, stub_paypack)

    sale, receipt = service.create_sale(
        [_line(inventory, 2)],
        payment_method="CASH",
        client={"name": "Walk-in", "phone": "+250780000002"},
    )

    assert sale.status == SaleStatus.COMPLETED
    assert sale.type == SaleType.SALE
    assert sale.reference == "SALE-00001"
    assert receipt["reference"] == "SALE-00001"
    assert receipt["client"]["name"] == "Walk-in"
    assert receipt["items"][0]["variant_reference"] == "DRESS-RED-M"
    assert receipt["total"] == Decimal("2000.00")
    assert stub_paypack.calls == []


def test_failing_second_line_persists_nothing(db_session, make_inventory, stub_paypack):
    plenty = make_inventory(quantity=10, variant_reference="PLENTY")
    scarce = make_inventory(quantity=1, variant_reference="SCARCE")
    service = _build_sales_service(db_session, stub_paypack)

    with pytest.raises(InsufficientStockError) as exc_info:
        service.create_sale([_line(plenty, 2), _line(scarce, 2)], payment_method="CASH")

    assert exc_info.value.available == 1
    assert db_session.query(Sale).count() == 0
    assert db_session.query(SaleItem).count() == 0

    # The rejected attempt did not use up a reference
    sale, _ = service.create_sale([_line(plenty, 1)], payment_method="CASH")
    assert sale.reference == "SALE-00001"


def test_references_increase_without_gaps(db_session, make_inventory, stub_paypack):
    inventory = make_inventory(quantity=10)
    service = _build_sales_service(db_session, stub_paypack)

    references = [
        service.create_sale([_line(inventory, 1)], payment_method="CASH")[0].reference
        for _ in range(3)
    ]

    assert references == ["SALE-00001", "SALE-00002", "SALE-00003"]
    assert db_session.get(SequenceCounter, "sale").value == 3


def test_counter_is_seeded_from_existing_references(db_session, make_inventory, stub_paypack):
    inventory = make_inventory(quantity=10)
    db_session.add(
        Sale(
            reference="SALE-00041",
            status=SaleStatus.COMPLETED,
            type=SaleType.SALE,
            created_at=datetime.now(timezone.utc),
        )
    )
    db_session.commit()
    service = _build_sales_service(db_session, stub_paypack)

    sale, _ = service.create_sale([_line(inventory, 1)], payment_method="CASH")

    assert sale.reference == "SALE-00042"


def test_counter_created_concurrently_is_reused(db_session):
    def seed_while_another_session_creates_the_row(db):
        other = SessionLocal()
        try:
            other.add(SequenceCounter(name="race", value=7))
            other.commit()
        finally:
            other.close()
        return 0

    value = next_value(db_session, "race", seed=seed_while_another_session_creates_the_row)
    db_session.commit()

    assert value == 8
    db_session.expire_all()
    assert db_session.get(SequenceCounter, "race").value == 8


def test_order_starts_payment_and_empties_buyer_cart(
    db_session, make_inventory, make_user, client_payload, stub_paypack
):
    inventory = make_inventory(quantity=5, price="1000.00")
    buyer = make_user(email="buyer@example.com")
    db_session.add(CartItem(userID=buyer.userID, inventoryID=inventory.inventoryID, quantity=2))
    db_session.commit()
    service = _build_sales_service(db_session, stub_paypack)

    order = service.create_order([_line(inventory, 2)], client_payload(email="buyer@example.com"))

    assert order.type == SaleType.ORDER
    assert order.payment_method == "PAYPACK"
    assert order.status == SaleStatus.PAYMENT_PENDING
    assert order.transaction_ref == "PP-REF-1"
    assert stub_paypack.calls == [{"number": "+250780000001", "amount": Decimal("2000.00")}]
    assert db_session.query(CartItem).filter_by(userID=buyer.userID).count() == 0


def test_order_stays_pending_when_provider_fails(db_session, make_inventory, client_payload, failing_paypack):
    inventory = make_inventory(quantity=5)
    service = _build_sales_service(db_session, failing_paypack)

    with pytest.raises(PaymentProcessingError) as exc_info:
        service.create_order([_line(inventory, 1)], client_payload())

    sale_id = exc_info.value.details["sale_id"]
    db_session.expire_all()
    order = db_session.get(Sale, sale_id)
    assert order.status == SaleStatus.PENDING
    assert order.transaction_ref is None


def test_order_without_account_number_is_rejected_after_persisting(
    db_session, make_inventory, client_payload, stub_paypack
):
    inventory = make_inventory(quantity=5)
    service = _build_sales_service(db_session, stub_paypack)

    with pytest.raises(InvalidPaymentInfoError):
        service.create_order([_line(inventory, 1)], client_payload(account=None))

    assert db_session.query(Sale).one().status == SaleStatus.PENDING
    assert stub_paypack.calls == []


def test_order_requires_client_email(db_session, make_inventory, client_payload, stub_paypack):
    inventory = make_inventory(quantity=5)
    service = _build_sales_service(db_session, stub_paypack)

    with pytest.raises(ValidationError):
        service.create_order([_line(inventory, 1)], client_payload(email=None))
    with pytest.raises(ValidationError):
        service.create_sale([], payment_method="CASH")


def test_listing_filters_and_paginates(db_session, make_inventory, client_payload, stub_paypack):
    inventory = make_inventory(quantity=20)
    service = _build_sales_service(db_session, stub_paypack)
    for _ in range(3):
        service.create_sale([_line(inventory, 1)], payment_method="CASH")
    service.create_order([_line(inventory, 1)], client_payload(email="mine@example.com"))

    page = service.list_sales(type="SALE", page=1, limit=2)
    assert page["total"] == 3
    assert len(page["items"]) == 2

    pending = service.list_sales(status="payment_pending")
    assert [sale.type for sale in pending["items"]] == [SaleType.ORDER]

    mine = service.list_sales_for_email("mine@example.com")
    assert mine["total"] == 1

    with pytest.raises(ValidationError):
        service.list_sales(status="SHIPPED")


def test_get_sale_by_id_or_reference(db_session, make_inventory, stub_paypack):
    inventory = make_inventory(quantity=5)
    service = _build_sales_service(db_session, stub_paypack)
    sale, _ = service.create_sale([_line(inventory, 1)], payment_method="CASH")

    assert service.get_sale(sale.saleID).saleID == sale.saleID
    assert service.get_sale("SALE-00001").saleID == sale.saleID
    with pytest.raises(NotFoundError):
        service.get_sale("SALE-99999")
