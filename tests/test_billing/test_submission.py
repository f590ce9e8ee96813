"""Tests for gateway payment submission."""

from decimal import Decimal

import pytest

from labcare.billing.models import BillableItem, PaymentMethod
from labcare.billing.submission import (
    METHOD_TABLE,
    GatewayPaymentMethod,
    build_payment_request,
    round_money,
    to_gateway_method,
)
from labcare.billing.worksheet import BillingWorksheet
from labcare.core.errors import ValidationError


class TestMethodMapping:
    def test_table_covers_every_method(self):
        assert set(METHOD_TABLE) == set(PaymentMethod)

    @pytest.mark.parametrize(
        "token,expected",
        [
            ("EFECTIVO", GatewayPaymentMethod.CASH),
            ("mercado pago", GatewayPaymentMethod.QR),
            (" Transferencia ", GatewayPaymentMethod.TRANSFER),
            ("CHEQUE", GatewayPaymentMethod.TRANSFER),
            ("tarjeta_debito", GatewayPaymentMethod.DEBIT_CARD),
            ("TARJETA CREDITO", GatewayPaymentMethod.CREDIT_CARD),
            ("POSNET", GatewayPaymentMethod.POSNET),
            ("OTRO", GatewayPaymentMethod.CASH),
        ],
    )
    def test_known_tokens(self, token, expected):
        assert to_gateway_method(token) == expected

    def test_unknown_token_resolves_to_cash(self):
        assert to_gateway_method("BITCOIN") == GatewayPaymentMethod.CASH

    @pytest.mark.parametrize("token", ["", None])
    def test_empty_token_resolves_to_cash(self, token):
        assert to_gateway_method(token) == GatewayPaymentMethod.CASH

    def test_unknown_token_rejected_in_strict_mode(self):
        with pytest.raises(ValidationError):
            to_gateway_method("BITCOIN", strict=True)

    def test_enum_members_map_directly(self):
        assert to_gateway_method(PaymentMethod.OTHER, strict=True) == GatewayPaymentMethod.CASH
        assert to_gateway_method(PaymentMethod.QR) == GatewayPaymentMethod.QR


class TestRounding:
    @pytest.mark.parametrize(
        "value,expected",
        [("1.005", "1.01"), ("1.004", "1.00"), ("2.5", "2.50"), ("-1.005", "-1.01")],
    )
    def test_round_half_up(self, value, expected):
        assert str(round_money(Decimal(value))) == expected


class TestBuildPaymentRequest:
    def _worksheet(self) -> BillingWorksheet:
        worksheet = BillingWorksheet(
            items=[
                BillableItem(
                    id="1", analysis_id="GLU", total_amount=Decimal("100.005"),
                    covered_amount=Decimal("50"), coverage_id="cov-3",
                ),
                BillableItem(id="2", analysis_id="LIP", total_amount=Decimal("40"), selected=False),
            ],
        )
        worksheet.choose_iva("0")
        worksheet.add_payment(PaymentMethod.QR, Decimal("20.004"))
        worksheet.add_payment(PaymentMethod.CASH, Decimal("30.001"))
        return worksheet

    def test_payload(self):
        request = build_payment_request("enc-1", self._worksheet())

        assert request.encounter_id == "enc-1"
        assert [d.analysis_id for d in request.details] == ["GLU"]
        assert request.details[0].is_covered is True
        assert request.details[0].coverage_id == "cov-3"
        assert [c.payment_method for c in request.collections] == [
            GatewayPaymentMethod.QR,
            GatewayPaymentMethod.CASH,
        ]

    def test_amounts_rounded_to_cents_only_in_payload(self):
        worksheet = self._worksheet()

        request = build_payment_request("enc-1", worksheet)
        body = request.model_dump(mode="json")

        assert [c["amount"] for c in body["collections"]] == ["20.00", "30.00"]
        assert body["iva"] == "0.00"
        assert body["copayment"] == "0.00"
        assert worksheet.payments[0].amount == Decimal("20.004")

    def test_iva_is_sent_as_amount_not_percentage(self):
        worksheet = BillingWorksheet(
            items=[BillableItem(id="1", analysis_id="GLU", total_amount=Decimal("1000"))],
        )
        worksheet.choose_iva("21")
        worksheet.add_payment(PaymentMethod.CASH, Decimal("1210"))

        body = build_payment_request("enc-1", worksheet).model_dump(mode="json")

        assert body["iva"] == "210.00"
        assert body["collections"][0]["amount"] == "1210.00"

    def test_iva_amount_includes_coinsurance_and_is_rounded(self):
        worksheet = BillingWorksheet(
            items=[BillableItem(id="1", analysis_id="GLU", total_amount=Decimal("33.33"))],
            coinsurance=Decimal("10"),
        )
        worksheet.choose_iva("10.5")
        worksheet.add_payment(PaymentMethod.CASH, Decimal("47.88"))

        request = build_payment_request("enc-1", worksheet)

        assert request.iva == Decimal("4.55")
        assert request.copayment == Decimal("10.00")

    def test_bank_account_for_qr_and_transfer(self):
        worksheet = self._worksheet()
        request = build_payment_request("enc-1", worksheet)

        assert [c.account_id for c in request.collections] == [1, 0]

    def test_gate_enforced(self):
        worksheet = self._worksheet()
        worksheet.clear_iva()

        with pytest.raises(ValidationError, match="IVA"):
            build_payment_request("enc-1", worksheet)
