"""
Tests for typed transaction metadata and its stored envelope
"""

import pytest

from models import TransactionType
from utils.exceptions import ValidationError
from utils.transaction_metadata import (
    BillPaymentMetadata,
    DepositMetadata,
    RefundMetadata,
    TransferMetadata,
    VirtualAccountCreditMetadata,
    build_metadata,
    metadata_envelope,
    parse_metadata,
)


class TestBuildMetadata:

    def test_none_gives_empty_record_for_type(self):
        assert build_metadata(TransactionType.DEPOSIT) == DepositMetadata()
        assert build_metadata("refund", None) == RefundMetadata()

    def test_dict_is_converted_to_record(self):
        metadata = build_metadata(TransactionType.BILL_PAYMENT, {"service_type": "airtime", "customer_id": "08031234567"})
        assert metadata == BillPaymentMetadata(service_type="airtime", customer_id="08031234567")

    @pytest.mark.parametrize("value", [8031234567, 12.5, {"nested": "x"}, ["a"], True])
    def test_non_string_values_are_rejected_not_converted(self, value):
        with pytest.raises(ValidationError, match="must be strings: customer_id"):
            build_metadata(TransactionType.BILL_PAYMENT, {"service_type": "airtime", "customer_id": value})

    def test_record_with_non_string_value_is_rejected(self):
        with pytest.raises(ValidationError, match="must be strings"):
            build_metadata(TransactionType.DEPOSIT, DepositMetadata(gateway="paystack", gateway_reference=4242))

    def test_transfer_record(self):
        metadata = build_metadata(TransactionType.TRANSFER, {"direction": "out", "counterparty_user_id": "user-2"})
        assert metadata == TransferMetadata(direction="out", counterparty_user_id="user-2")

    def test_unknown_fields_are_rejected(self):
        with pytest.raises(ValidationError, match="Unknown metadata fields"):
            build_metadata(TransactionType.DEPOSIT, {"gateway": "paystack", "is_admin": True})

    def test_record_of_another_type_is_rejected(self):
        with pytest.raises(ValidationError):
            build_metadata(TransactionType.DEPOSIT, RefundMetadata(original_reference="X"))

    def test_unknown_transaction_type(self):
        with pytest.raises(ValidationError):
            build_metadata("loan", {})


class TestEnvelope:

    def test_envelope_drops_empty_fields(self):
        envelope = metadata_envelope(
            TransactionType.VIRTUAL_ACCOUNT_CREDIT,
            VirtualAccountCreditMetadata(gateway="monnify", account_number="5000000001"),
        )
        assert envelope == {
            "type": "virtual_account_credit",
            "version": 1,
            "data": {"gateway": "monnify", "account_number": "5000000001"},
        }

    def test_parse_restores_typed_record(self):
        original = DepositMetadata(gateway="paystack", channel="card", paid_at="2026-01-01T10:00:00Z")
        assert parse_metadata(metadata_envelope(TransactionType.DEPOSIT, original)) == original

    def test_parse_rejects_unknown_version(self):
        with pytest.raises(ValidationError, match="version"):
            parse_metadata({"type": "deposit", "version": 99, "data": {}})

    def test_parse_empty(self):
        assert parse_metadata(None) is None
