"""Tests for order placement and the order status lifecycle."""

import re
from datetime import datetime

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect, DuplicateKeyError, PyMongoError

import config
import inventory
import orders
from errors import (
    AdHocItemRejectedError,
    CannotCancelOrderError,
    InsufficientStockError,
    InvalidProductError,
    InvalidStatusTransitionError,
    MinimumOrderNotMetError,
    PermissionDeniedError,
    ProductUnavailableError,
    ServiceUnavailableError,
)
from schemas import OrderItemIn


def catalog_line(pid, quantity):
    return {"productId": str(pid), "quantity": quantity}


@pytest.fixture
def placed(db, customer, make_product, order_request):
    """A pending order for 2 units of a product that had 5 in stock."""
    pid = make_product(stock=5)
    order = orders.place_order(db, customer, order_request([catalog_line(pid, 2)]))
    return order, pid


def stock_of(db, pid):
    return db["product"].find_one({"_id": pid})["stock"]


class TestPlaceOrder:
    def test_totals_and_stock(self, db, customer, make_product, order_request):
        pid = make_product(stock=5, price=1000)
        order = orders.place_order(db, customer, order_request([catalog_line(pid, 3)], shipping_cost=300))

        assert order["subtotal"] == 3000
        assert order["tax"] == 0
        assert order["shipping"]["cost"] == 300
        assert order["totalAmount"] == 3300
        assert order["orderStatus"] == "pending"
        assert order["paymentStatus"] == "pending"
        assert order["payment"]["method"] == "cash_on_delivery"
        assert order["customerId"] == customer["_id"]
        assert stock_of(db, pid) == 2

    def test_second_order_exceeding_stock_rejected(self, db, customer, make_product, order_request):
        pid = make_product(stock=5, price=1000)
        orders.place_order(db, customer, order_request([catalog_line(pid, 3)]))

        with pytest.raises(InsufficientStockError):
            orders.place_order(db, customer, order_request([catalog_line(pid, 3)]))
        assert stock_of(db, pid) == 2
        assert db["order"].count_documents({}) == 1

    def test_snapshot_uses_catalog_values(self, db, customer, make_product, order_request):
        pid = make_product(price=1250, sku="RW-250", images={"main": None, "gallery": ["/img/rw.jpg"]})
        line = {"productId": str(pid), "quantity": 1, "price": 1, "name": "Cheap"}
        order = orders.place_order(db, customer, order_request([line]))

        item = order["items"][0]
        assert item["productId"] == pid
        assert item["kind"] == "catalog"
        assert item["name"] == "Rose Water"
        assert item["price"] == 1250
        assert item["currency"] == "PKR"
        assert item["sku"] == "RW-250"
        assert item["image"] == "/img/rw.jpg"

    def test_customer_email_is_normalised(self, db, customer, make_product, order_request):
        pid = make_product()
        order = orders.place_order(db, customer, order_request([catalog_line(pid, 1)]))
        assert order["customerInfo"]["email"] == "ayesha@mail.com"

    def test_estimated_delivery(self, db, customer, make_product, order_request):
        pid = make_product()
        order = orders.place_order(db, customer, order_request([catalog_line(pid, 1)]))
        delta = order["estimatedDelivery"] - order["createdAt"]
        assert delta.days == config.ESTIMATED_DELIVERY_DAYS

    def test_unknown_product(self, db, customer, order_request):
        with pytest.raises(InvalidProductError):
            orders.place_order(db, customer, order_request([catalog_line(ObjectId(), 1)]))
        assert db["order"].count_documents({}) == 0

    def test_inactive_product(self, db, customer, make_product, order_request):
        pid = make_product(status="inactive")
        with pytest.raises(ProductUnavailableError):
            orders.place_order(db, customer, order_request([catalog_line(pid, 1)]))

    def test_minimum_order(self, db, customer, make_product, order_request):
        pid = make_product(minOrder=3)
        with pytest.raises(MinimumOrderNotMetError) as exc_info:
            orders.place_order(db, customer, order_request([catalog_line(pid, 2)]))
        assert exc_info.value.min_order == 3
        assert stock_of(db, pid) == 5

    def test_rejection_leaves_other_lines_untouched(self, db, customer, make_product, order_request):
        good = make_product(stock=5)
        bad = make_product(stock=1, name="Neem Oil")
        with pytest.raises(InsufficientStockError):
            orders.place_order(db, customer, order_request([catalog_line(good, 2), catalog_line(bad, 2)]))
        assert stock_of(db, good) == 5
        assert stock_of(db, bad) == 1

    def test_selling_last_unit_marks_out_of_stock(self, db, customer, make_product, order_request):
        pid = make_product(stock=2)
        orders.place_order(db, customer, order_request([catalog_line(pid, 2)]))
        assert db["product"].find_one({"_id": pid})["status"] == "out_of_stock"

    def test_insert_failure_releases_stock(self, db, customer, make_product, order_request, monkeypatch):
        pid = make_product(stock=5)

        def failing_insert(*args, **kwargs):
            raise PyMongoError("write failed")

        monkeypatch.setattr(orders, "_insert_order", failing_insert)
        with pytest.raises(PyMongoError):
            orders.place_order(db, customer, order_request([catalog_line(pid, 4)]))
        product = db["product"].find_one({"_id": pid})
        assert product["stock"] == 5
        assert product["analytics"]["orders"] == 0


class TestAdHocItems:
    def test_adhoc_item_trusted(self, db, customer, order_request):
        line = {"id": "gift-wrap", "name": "Gift wrap", "price": 150, "quantity": 2}
        order = orders.place_order(db, customer, order_request([line], shipping_cost=0))

        item = order["items"][0]
        assert item["kind"] == "adhoc"
        assert item["productId"] == "gift-wrap"
        assert order["subtotal"] == 300
        assert order["totalAmount"] == 300

    def test_adhoc_defaults(self, db, customer, order_request):
        order = orders.place_order(db, customer, order_request([{"quantity": 1}], shipping_cost=0))
        item = order["items"][0]
        assert item["name"] == "Unknown Product"
        assert item["price"] == 0
        assert item["productId"].startswith("adhoc_")

    def test_strict_mode_rejects_adhoc(self, db, customer, order_request, monkeypatch):
        monkeypatch.setattr(config, "STRICT_CATALOG_ITEMS", True)
        line = {"id": "gift-wrap", "name": "Gift wrap", "price": 150, "quantity": 1}
        with pytest.raises(AdHocItemRejectedError):
            orders.place_order(db, customer, order_request([line]))
        assert db["order"].count_documents({}) == 0

    def test_explicit_catalog_kind_needs_object_id(self):
        item = OrderItemIn(product_id="gift-wrap", kind="catalog", quantity=1)
        with pytest.raises(InvalidProductError):
            orders.classify_item(item)

    def test_classification(self):
        oid = str(ObjectId())
        assert isinstance(orders.classify_item(OrderItemIn(product_id=oid, quantity=1)), orders.CatalogLineItem)
        assert isinstance(orders.classify_item(OrderItemIn(id="x-1", quantity=1)), orders.AdHocLineItem)
        explicit = OrderItemIn(product_id=oid, kind="adhoc", quantity=1)
        assert isinstance(orders.classify_item(explicit), orders.AdHocLineItem)


class TestShippingCost:
    def test_derived_from_settings(self, db, customer, make_product, order_request):
        pid = make_product(price=1000)
        order = orders.place_order(db, customer, order_request([catalog_line(pid, 3)], shipping_cost=None))
        assert order["shipping"]["cost"] == 300
        assert order["totalAmount"] == 3300

    def test_free_over_minimum(self, db, customer, make_product, order_request):
        pid = make_product(price=5000, stock=10)
        order = orders.place_order(db, customer, order_request([catalog_line(pid, 2)], shipping_cost=None))
        assert order["shipping"]["cost"] == 0
        assert order["totalAmount"] == 10000

    def test_pickup_is_free(self, db, customer, make_product, order_request):
        pid = make_product(price=1000)
        request = order_request([catalog_line(pid, 1)], shipping_cost=None, shipping_method="pickup")
        order = orders.place_order(db, customer, request)
        assert order["shipping"]["cost"] == 0


class TestOrderNumbers:
    def test_format(self):
        number = orders.generate_order_number(datetime(2025, 3, 7, 12, 0))
        assert re.fullmatch(r"VF250307\d{4}", number)

    def test_custom_prefix(self):
        assert orders.generate_order_number(datetime(2025, 3, 7), prefix="ZX").startswith("ZX250307")

    def test_collision_regenerates(self, db, customer, make_product, order_request, monkeypatch):
        pid = make_product(stock=5)
        numbers = iter(["VF2503070001", "VF2503070001", "VF2503070002"])
        monkeypatch.setattr(orders, "generate_order_number", lambda now=None, prefix=None: next(numbers))

        first = orders.place_order(db, customer, order_request([catalog_line(pid, 1)]))
        second = orders.place_order(db, customer, order_request([catalog_line(pid, 1)]))
        assert first["orderNumber"] == "VF2503070001"
        assert second["orderNumber"] == "VF2503070002"
        assert db["order"].count_documents({}) == 2

    def test_exhausted_attempts_release_stock(self, db, customer, make_product, order_request, monkeypatch):
        pid = make_product(stock=5)
        monkeypatch.setattr(orders, "generate_order_number", lambda now=None, prefix=None: "VF2503070001")

        orders.place_order(db, customer, order_request([catalog_line(pid, 1)]))
        with pytest.raises(DuplicateKeyError):
            orders.place_order(db, customer, order_request([catalog_line(pid, 1)]))
        assert stock_of(db, pid) == 4
        assert db["order"].count_documents({}) == 1


class TestPaymentMethod:
    @pytest.mark.parametrize("given,stored", [
        ("cod", "cash_on_delivery"),
        ("card", "stripe"),
        ("jazz_cash", "jazz_cash"),
    ])
    def test_normalize(self, given, stored):
        assert orders.normalize_payment_method(given) == stored


class TestReservationFailure:
    @pytest.fixture
    def flaky_stock(self, db, make_product, monkeypatch):
        """Two products of 5 units; the datastore drops the connection while reserving the second."""
        first = make_product(stock=5)
        second = make_product(stock=5, name="Neem Oil")
        real_decrement = inventory._decrement
        calls = []

        def flaky_decrement(products, oid, quantity, count_order=False):
            calls.append(oid)
            if len(calls) == 2:
                raise AutoReconnect("connection reset")
            return real_decrement(products, oid, quantity, count_order)

        monkeypatch.setattr(inventory, "_decrement", flaky_decrement)
        return first, second

    def _assert_untouched(self, db, first, second):
        assert stock_of(db, first) == 5
        assert db["product"].find_one({"_id": first})["analytics"]["orders"] == 0
        assert stock_of(db, second) == 5
        assert db["order"].count_documents({}) == 0

    def test_unavailable_restores_stock(self, db, customer, order_request, flaky_stock, monkeypatch):
        monkeypatch.setattr(config, "DEGRADED_MODE", False)
        first, second = flaky_stock
        request = order_request([catalog_line(first, 2), catalog_line(second, 2)])
        with pytest.raises(ServiceUnavailableError):
            orders.create_order(db, customer, request)
        self._assert_untouched(db, first, second)

    def test_mock_order_restores_stock(self, db, customer, order_request, flaky_stock, monkeypatch):
        monkeypatch.setattr(config, "DEGRADED_MODE", True)
        first, second = flaky_stock
        request = order_request([catalog_line(first, 2), catalog_line(second, 2)])
        order, mocked = orders.create_order(db, customer, request)
        assert mocked is True
        assert order["mock"] is True
        self._assert_untouched(db, first, second)


class TestMockOrder:
    def test_default_shipping_charge(self, customer, order_request):
        line = {"id": "rose-water", "name": "Rose Water", "price": 1000, "quantity": 2}
        order = orders.build_mock_order(customer, order_request([line], shipping_cost=None))
        assert order["shipping"]["cost"] == 300
        assert order["totalAmount"] == 2300

    def test_free_over_default_minimum(self, customer, order_request):
        line = {"id": "rose-water", "name": "Rose Water", "price": 5000, "quantity": 2}
        order = orders.build_mock_order(customer, order_request([line], shipping_cost=None))
        assert order["shipping"]["cost"] == 0
        assert order["totalAmount"] == 10000

    def test_explicit_cost_wins(self, customer, order_request):
        line = {"id": "rose-water", "name": "Rose Water", "price": 1000, "quantity": 2}
        order = orders.build_mock_order(customer, order_request([line], shipping_cost=150))
        assert order["totalAmount"] == 2150


class TestTransitions:
    def test_forward_skips_allowed(self):
        assert orders.can_transition("pending", "shipped")
        assert orders.can_transition("confirmed", "delivered")

    def test_backward_moves_rejected(self):
        assert not orders.can_transition("shipped", "confirmed")
        assert not orders.can_transition("delivered", "processing")

    def test_cancel_only_early(self):
        assert orders.can_transition("pending", "cancelled")
        assert orders.can_transition("confirmed", "cancelled")
        assert not orders.can_transition("processing", "cancelled")
        assert not orders.can_transition("shipped", "cancelled")

    def test_returns(self):
        assert orders.can_transition("shipped", "returned")
        assert orders.can_transition("delivered", "returned")

    def test_terminal_states(self):
        assert orders.allowed_transitions("cancelled") == set()
        assert orders.allowed_transitions("returned") == set()

    def test_same_status_rejected(self):
        assert not orders.can_transition("processing", "processing")

    def test_unknown_stored_status_is_stuck(self):
        assert orders.allowed_transitions("on_hold") == set()
        assert not orders.can_transition("on_hold", "shipped")


class TestUpdateOrderStatus:
    def test_shipped_sets_shipping_status(self, db, admin, placed):
        order, _ = placed
        updated = orders.update_order_status(db, order["_id"], "shipped", admin["_id"])
        assert updated["orderStatus"] == "shipped"
        assert updated["shipping"]["status"] == "shipped"
        assert updated["adminNotes"] == []

    def test_delivered_stamps_actual_delivery(self, db, admin, placed):
        order, _ = placed
        updated = orders.update_order_status(db, str(order["_id"]), "delivered", admin["_id"])
        assert updated["shipping"]["status"] == "delivered"
        assert isinstance(updated["actualDelivery"], datetime)

    def test_return_records_reason_and_note(self, db, admin, placed):
        order, pid = placed
        orders.update_order_status(db, order["_id"], "delivered", admin["_id"])
        updated = orders.update_order_status(db, order["_id"], "returned", admin["_id"], "Bottle arrived broken")

        assert updated["shipping"]["status"] == "returned"
        assert updated["returnReason"] == "Bottle arrived broken"
        assert updated["adminNotes"][0]["note"] == "Status changed from delivered to returned: Bottle arrived broken"
        assert updated["adminNotes"][0]["adminId"] == admin["_id"]
        assert stock_of(db, pid) == 3

    def test_admin_cancel_restores_stock(self, db, admin, placed):
        order, pid = placed
        assert stock_of(db, pid) == 3
        orders.update_order_status(db, order["_id"], "cancelled", admin["_id"])
        assert stock_of(db, pid) == 5

    def test_invalid_transition_leaves_order(self, db, admin, placed):
        order, _ = placed
        orders.update_order_status(db, order["_id"], "shipped", admin["_id"])
        with pytest.raises(InvalidStatusTransitionError):
            orders.update_order_status(db, order["_id"], "confirmed", admin["_id"])
        assert db["order"].find_one({"_id": order["_id"]})["orderStatus"] == "shipped"

    def test_terminal_order_cannot_move(self, db, admin, placed):
        order, _ = placed
        orders.update_order_status(db, order["_id"], "cancelled", admin["_id"])
        with pytest.raises(InvalidStatusTransitionError):
            orders.update_order_status(db, order["_id"], "confirmed", admin["_id"])

    def test_unknown_stored_status_rejected(self, db, admin, placed):
        order, _ = placed
        db["order"].update_one({"_id": order["_id"]}, {"$set": {"orderStatus": "on_hold"}})
        with pytest.raises(InvalidStatusTransitionError):
            orders.update_order_status(db, order["_id"], "shipped", admin["_id"])
        assert db["order"].find_one({"_id": order["_id"]})["orderStatus"] == "on_hold"


class TestCancelOrder:
    def test_owner_cancels(self, db, customer, placed):
        order, pid = placed
        updated = orders.cancel_order(db, order["_id"], customer, "Changed my mind")
        assert updated["orderStatus"] == "cancelled"
        assert updated["cancellationReason"] == "Changed my mind"
        assert stock_of(db, pid) == 5

    def test_second_cancel_fails_without_restoring(self, db, customer, placed):
        order, pid = placed
        orders.cancel_order(db, order["_id"], customer)
        with pytest.raises(CannotCancelOrderError):
            orders.cancel_order(db, order["_id"], customer)
        assert stock_of(db, pid) == 5

    def test_other_customer_forbidden(self, db, other_customer, placed):
        order, pid = placed
        with pytest.raises(PermissionDeniedError):
            orders.cancel_order(db, order["_id"], other_customer)
        assert stock_of(db, pid) == 3

    def test_shipped_order_cannot_be_cancelled(self, db, customer, admin, placed):
        order, _ = placed
        orders.update_order_status(db, order["_id"], "shipped", admin["_id"])
        with pytest.raises(CannotCancelOrderError) as exc_info:
            orders.cancel_order(db, order["_id"], customer)
        assert exc_info.value.status == "shipped"

    def test_adhoc_items_do_not_touch_stock(self, db, customer, order_request):
        line = {"id": "gift-wrap", "name": "Gift wrap", "price": 150, "quantity": 2}
        order = orders.place_order(db, customer, order_request([line]))
        updated = orders.cancel_order(db, order["_id"], customer)
        assert updated["orderStatus"] == "cancelled"


class TestPaymentStatus:
    def test_sets_both_fields(self, db, admin, placed):
        order, _ = placed
        updated = orders.update_payment_status(db, order["_id"], "completed", admin["_id"], "Cash collected")
        assert updated["paymentStatus"] == "completed"
        assert updated["payment"]["status"] == "completed"
        assert updated["adminNotes"][0]["note"] == "Cash collected"


class TestOrderFilter:
    def test_comma_separated_status(self):
        filt = orders.build_order_filter(status="pending,confirmed")
        assert filt == {"orderStatus": {"$in": ["pending", "confirmed"]}}

    def test_all_means_no_filter(self):
        assert orders.build_order_filter(status="all", payment_status="all") == {}

    def test_search_is_escaped(self):
        filt = orders.build_order_filter(search="VF25.*")
        assert filt["$or"][0]["orderNumber"]["$regex"] == re.escape("VF25.*")
