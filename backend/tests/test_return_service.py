# Overview: Pytest coverage for returns and exchanges.

"""
Return Engine Tests

SCENARIOS:
- Full return restores on_hand; store-credit refund funds the balance
- Completing twice never double-credits stock or store credit
- Over-return is rejected at creation and at approval
- State machine: pending -> approved -> completed, pending -> rejected
- Exchanges: originals in, replacements out, price difference settled
"""

import pytest

from commerce_ledger.errors import (
    InsufficientCredit,
    InsufficientStock,
    InvalidLine,
    InvalidReturnState,
    NotFound,
    OverReturn,
)
from commerce_ledger.models import StockMovement, StockReservation, StoreCreditTransaction
from commerce_ledger.services import return_service, sales_service, store_credit_service


def _line(sale, index=0):
    return sorted(sale.lines, key=lambda l: l.line_number)[index]


def _return(sale, quantity, refund_method="same_payment", reason="defective", line_extra=None, **kwargs):
    line = {"sale_line_id": _line(sale).id, "quantity": quantity}
    line.update(line_extra or {})
    return return_service.create_return(sale.id, "return", reason, refund_method, [line], "clerk-1", **kwargs)


class TestReturnLifecycle:

    def test_sell_then_full_return_restores_on_hand(self, db_session, make_product, make_sale):
        a = make_product(on_hand=6)
        sale = make_sale([(a, 4)])
        assert a.on_hand == 2

        ret = _return(sale, 4)
        return_service.approve_return(ret.id, "manager-1")
        completed = return_service.complete_return(ret.id, "manager-1")

        assert completed.status == "completed"
        assert completed.completed_by == "manager-1"
        assert a.on_hand == 6

    def test_store_credit_refund_then_overspend(self, db_session, make_product, make_customer, make_sale):
        a = make_product(on_hand=5, price_cents=5000)
        customer = make_customer()
        sale = make_sale([(a, 1)], customer=customer)
        assert store_credit_service.get_balance(customer.id) == 0

        ret = _return(sale, 1, refund_method="store_credit")
        return_service.approve_return(ret.id, "manager-1")
        return_service.complete_return(ret.id, "manager-1")

        assert store_credit_service.get_balance(customer.id) == 5000
        with pytest.raises(InsufficientCredit):
            store_credit_service.debit(customer.id, 7000, "sale:x")
        assert store_credit_service.get_balance(customer.id) == 5000

    def test_complete_twice_is_a_noop(self, db_session, make_product, make_customer, make_sale):
        a = make_product(on_hand=5, price_cents=5000)
        customer = make_customer()
        sale = make_sale([(a, 2)], customer=customer)

        ret = _return(sale, 2, refund_method="store_credit")
        return_service.approve_return(ret.id, "manager-1")
        return_service.complete_return(ret.id, "manager-1")
        again = return_service.complete_return(ret.id, "manager-2")

        assert again.completed_by == "manager-1"
        assert a.on_hand == 5
        assert store_credit_service.get_balance(customer.id) == 10000
        assert db_session.query(StoreCreditTransaction).count() == 1
        assert db_session.query(StockMovement).filter_by(movement_type="CREDIT").count() == 1

    def test_pending_return_has_no_stock_effect(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        sale = make_sale([(a, 2)])
        ret = _return(sale, 2)

        assert ret.status == "pending"
        assert ret.document_number.startswith("R-")
        assert a.on_hand == 3

    def test_reject_pending(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        sale = make_sale([(a, 2)])
        ret = _return(sale, 1)

        rejected = return_service.reject_return(ret.id, "manager-1", "Outside return window")

        assert rejected.status == "rejected"
        assert rejected.rejection_reason == "Outside return window"
        with pytest.raises(InvalidReturnState):
            return_service.approve_return(ret.id, "manager-1")

    def test_invalid_transitions(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        sale = make_sale([(a, 2)])
        ret = _return(sale, 1)

        with pytest.raises(InvalidReturnState):
            return_service.complete_return(ret.id, "manager-1")

        return_service.approve_return(ret.id, "manager-1")
        with pytest.raises(InvalidReturnState):
            return_service.reject_return(ret.id, "manager-1")
        with pytest.raises(InvalidReturnState):
            return_service.approve_return(ret.id, "manager-1")

    def test_missing_return(self, db_session):
        with pytest.raises(NotFound):
            return_service.approve_return(999999, "manager-1")
        with pytest.raises(NotFound):
            return_service.complete_return(999999, "manager-1")


class TestReturnQuantities:

    def test_over_return_at_creation(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        sale = make_sale([(a, 2)])

        with pytest.raises(OverReturn) as exc:
            _return(sale, 3)
        assert exc.value.details["sold_quantity"] == 2

    def test_approval_revalidates_against_other_approved_returns(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        sale = make_sale([(a, 3)])

        first = _return(sale, 2)
        second = _return(sale, 2)  # pending returns do not count yet

        return_service.approve_return(first.id, "manager-1")
        with pytest.raises(OverReturn):
            return_service.approve_return(second.id, "manager-1")

    def test_rejected_returns_free_the_quantity(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        sale = make_sale([(a, 2)])

        first = _return(sale, 2)
        return_service.approve_return(first.id, "manager-1")
        with pytest.raises(OverReturn):
            _return(sale, 1)

        second_sale = make_sale([(a, 1)])
        other = _return(second_sale, 1)
        return_service.reject_return(other.id, "manager-1")
        assert sales_service.get_returnable_quantities(second_sale.id)[0]["returnable_quantity"] == 1

    def test_returnable_quantities_after_completion(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        sale = make_sale([(a, 3)])
        ret = _return(sale, 1)
        return_service.approve_return(ret.id, "manager-1")
        return_service.complete_return(ret.id, "manager-1")

        row = sales_service.get_returnable_quantities(sale.id)[0]
        assert row["returned_quantity"] == 1
        assert row["returnable_quantity"] == 2

    def test_line_must_belong_to_sale(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        sale = make_sale([(a, 1)])
        other = make_sale([(a, 1)])

        with pytest.raises(InvalidLine):
            return_service.create_return(
                sale.id, "return", "other", "same_payment",
                [{"sale_line_id": _line(other).id, "quantity": 1}], "clerk-1",
            )


class TestRefundAmount:

    def test_partial_refund_price_and_restocking_fee(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5, price_cents=5000)
        sale = make_sale([(a, 2)])

        ret = _return(sale, 2, line_extra={"refund_price_cents": 4000}, restocking_fee_cents=500)

        assert ret.refund_amount_cents == 2 * 4000 - 500

    def test_refund_floored_at_zero(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5, price_cents=1000)
        sale = make_sale([(a, 1)])

        ret = _return(sale, 1, restocking_fee_cents=1500)

        assert ret.refund_amount_cents == 0

    def test_refund_price_cannot_exceed_sold_price(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5, price_cents=1000)
        sale = make_sale([(a, 1)])
        with pytest.raises(InvalidLine):
            _return(sale, 1, line_extra={"refund_price_cents": 1001})


class TestTypeCompatibility:

    def test_return_cannot_use_exchange_method(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        sale = make_sale([(a, 1)])
        with pytest.raises(InvalidLine):
            _return(sale, 1, refund_method="exchange")

    def test_exchange_must_use_exchange_method(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        b = make_product(on_hand=5)
        sale = make_sale([(a, 1)])
        with pytest.raises(InvalidLine):
            return_service.create_return(
                sale.id, "exchange", "wrong_size", "same_payment", None, "clerk-1",
                exchange_lines=[{"sale_line_id": _line(sale).id, "quantity": 1, "replacement_product_id": b.id}],
            )

    def test_store_credit_refund_needs_customer(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        sale = make_sale([(a, 1)])
        with pytest.raises(InvalidLine):
            _return(sale, 1, refund_method="store_credit")

    def test_unknown_reason(self, db_session, make_product, make_sale):
        a = make_product(on_hand=5)
        sale = make_sale([(a, 1)])
        with pytest.raises(InvalidLine):
            _return(sale, 1, reason="changed_mind")


class TestExchange:

    def _exchange(self, sale, replacement, quantity=1, settlement_method="store_credit", **extra):
        return return_service.create_return(
            sale.id, "exchange", "wrong_size", "exchange", None, "clerk-1",
            exchange_lines=[{
                "sale_line_id": _line(sale).id,
                "quantity": quantity,
                "replacement_product_id": replacement.id,
                **extra,
            }],
            settlement_method=settlement_method,
        )

    def test_exchange_moves_stock_and_settles_difference(
        self, db_session, make_product, make_customer, make_sale, fund_customer
    ):
        original = make_product(on_hand=5, price_cents=5000)
        replacement = make_product(on_hand=5, price_cents=7000)
        customer = make_customer()
        sale = make_sale([(original, 1)], customer=customer)
        fund_customer(customer, 3000)

        exchange = self._exchange(sale, replacement)
        assert exchange.price_difference_cents == 2000
        return_service.approve_return(exchange.id, "manager-1")
        return_service.complete_return(exchange.id, "manager-1")

        assert original.on_hand == 5
        assert replacement.on_hand == 4
        assert store_credit_service.get_balance(customer.id) == 1000

    def test_cheaper_replacement_credits_the_customer(self, db_session, make_product, make_customer, make_sale):
        original = make_product(on_hand=5, price_cents=5000)
        replacement = make_product(on_hand=5, price_cents=4200)
        customer = make_customer()
        sale = make_sale([(original, 1)], customer=customer)

        exchange = self._exchange(sale, replacement)
        assert exchange.refund_amount_cents == 800
        return_service.approve_return(exchange.id, "manager-1")
        return_service.complete_return(exchange.id, "manager-1")

        assert store_credit_service.get_balance(customer.id) == 800

    def test_insufficient_credit_leaves_exchange_approved(
        self, db_session, make_product, make_customer, make_sale, fund_customer
    ):
        original = make_product(on_hand=5, price_cents=5000)
        replacement = make_product(on_hand=5, price_cents=7000)
        customer = make_customer()
        sale = make_sale([(original, 1)], customer=customer)
        fund_customer(customer, 1000)

        exchange = self._exchange(sale, replacement)
        return_service.approve_return(exchange.id, "manager-1")
        with pytest.raises(InsufficientCredit):
            return_service.complete_return(exchange.id, "manager-1")

        assert return_service.get_return(exchange.id).status == "approved"
        assert original.on_hand == 4
        assert replacement.on_hand == 5
        assert replacement.reserved == 0
        assert store_credit_service.get_balance(customer.id) == 1000

        # Topping up and retrying completes the same exchange
        fund_customer(customer, 5000)
        return_service.complete_return(exchange.id, "manager-1")
        assert replacement.on_hand == 4
        assert store_credit_service.get_balance(customer.id) == 4000

    def test_reject_mode_replacement_shortage(self, app, db_session, make_product, make_customer, make_sale):
        original = make_product(on_hand=5, price_cents=5000)
        replacement = make_product(on_hand=0, price_cents=5000)
        sale = make_sale([(original, 1)], customer=make_customer())

        exchange = self._exchange(sale, replacement, settlement_method="same_payment")
        return_service.approve_return(exchange.id, "manager-1")
        app.config["OVERSELL_POLICY"] = "reject"

        with pytest.raises(InsufficientStock):
            return_service.complete_return(exchange.id, "manager-1")

        assert return_service.get_return(exchange.id).status == "approved"
        assert db_session.query(StockReservation).filter_by(status="ACTIVE").count() == 0

    def test_returned_unit_covers_same_product_replacement(
        self, app, db_session, make_product, make_customer, make_sale
    ):
        product = make_product(on_hand=1, price_cents=5000)
        sale = make_sale([(product, 1)], customer=make_customer())
        assert product.on_hand == 0

        exchange = self._exchange(sale, product, settlement_method="same_payment")
        return_service.approve_return(exchange.id, "manager-1")
        app.config["OVERSELL_POLICY"] = "reject"

        completed = return_service.complete_return(exchange.id, "manager-1")

        assert completed.status == "completed"
        assert product.on_hand == 0
        assert product.reserved == 0
        reasons = [
            m.reason
            for m in db_session.query(StockMovement).filter_by(product_id=product.id).order_by(StockMovement.id)
        ]
        assert reasons == ["SALE", "EXCHANGE_IN", "EXCHANGE_OUT"]

    def test_exchanged_units_count_against_returnable(self, db_session, make_product, make_customer, make_sale):
        original = make_product(on_hand=5, price_cents=5000)
        replacement = make_product(on_hand=5, price_cents=5000)
        sale = make_sale([(original, 1)], customer=make_customer())

        exchange = self._exchange(sale, replacement, settlement_method="same_payment")
        return_service.approve_return(exchange.id, "manager-1")

        with pytest.raises(OverReturn):
            _return(sale, 1)


class TestReturnQueries:

    def test_stats(self, db_session, make_product, make_customer, make_sale):
        a = make_product(on_hand=10, price_cents=1000)
        customer = make_customer()
        sale = make_sale([(a, 5)], customer=customer)

        done = _return(sale, 2, refund_method="store_credit")
        return_service.approve_return(done.id, "manager-1")
        return_service.complete_return(done.id, "manager-1")
        rejected = _return(sale, 1, reason="not_liked")
        return_service.reject_return(rejected.id, "manager-1")

        stats = return_service.get_return_stats()

        assert stats["total_returns"] == 2
        assert stats["by_status"] == {"completed": 1, "rejected": 1}
        assert stats["by_reason"] == {"defective": 1, "not_liked": 1}
        assert stats["by_type"] == {"return": 2}
        assert stats["total_refunded_cents"] == 2000
        assert stats["total_store_credit_issued_cents"] == 2000

    def test_list_returns_filters(self, db_session, make_product, make_sale):
        a = make_product(on_hand=10)
        sale = make_sale([(a, 5)])
        pending = _return(sale, 1)
        approved = _return(sale, 1)
        return_service.approve_return(approved.id, "manager-1")

        rows, total = return_service.list_returns(status="pending")
        assert total == 1
        assert rows[0].id == pending.id
