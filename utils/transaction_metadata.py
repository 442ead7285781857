"""
Typed transaction metadata

Each transaction type carries its own closed set of metadata fields. Records are
stored as a versioned envelope so historical rows stay interpretable:

    {"type": "deposit", "version": 1, "data": {"gateway": "paystack", ...}}
"""

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional, Type, Union

from models import TransactionType
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

METADATA_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class DepositMetadata:
    """Wallet funding through a gateway checkout"""
    gateway: Optional[str] = None
    gateway_reference: Optional[str] = None
    channel: Optional[str] = None
    paid_at: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class WithdrawalMetadata:
    bank_code: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    narration: Optional[str] = None


@dataclass(frozen=True)
class BillPaymentMetadata:
    """Purchase from the bill aggregator (airtime, data, electricity, cable)"""
    service_type: Optional[str] = None
    provider: Optional[str] = None
    customer_id: Optional[str] = None
    product_code: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class RefundMetadata:
    """Compensating credit for a debit whose fulfilment failed"""
    original_reference: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class VirtualAccountCreditMetadata:
    """Bank transfer pushed into a reserved account"""
    gateway: Optional[str] = None
    account_number: Optional[str] = None
    bank_name: Optional[str] = None
    sender_account_name: Optional[str] = None
    sender_account_number: Optional[str] = None
    sender_bank_name: Optional[str] = None
    paid_on: Optional[str] = None


@dataclass(frozen=True)
class TransferMetadata:
    """One leg of a wallet-to-wallet transfer"""
    transfer_reference: Optional[str] = None
    direction: Optional[str] = None  # "out" on the sender's leg, "in" on the recipient's
    counterparty_user_id: Optional[str] = None
    note: Optional[str] = None


TransactionMetadata = Union[
    DepositMetadata,
    WithdrawalMetadata,
    BillPaymentMetadata,
    RefundMetadata,
    VirtualAccountCreditMetadata,
    TransferMetadata,
]

METADATA_SCHEMAS: Dict[TransactionType, Type] = {
    TransactionType.DEPOSIT: DepositMetadata,
    TransactionType.WITHDRAWAL: WithdrawalMetadata,
    TransactionType.BILL_PAYMENT: BillPaymentMetadata,
    TransactionType.REFUND: RefundMetadata,
    TransactionType.VIRTUAL_ACCOUNT_CREDIT: VirtualAccountCreditMetadata,
    TransactionType.TRANSFER: TransferMetadata,
}


def _coerce_type(transaction_type: Union[TransactionType, str]) -> TransactionType:
    if isinstance(transaction_type, TransactionType):
        return transaction_type
    try:
        return TransactionType(transaction_type)
    except ValueError as e:
        raise ValidationError(f"Unknown transaction type: {transaction_type!r}") from e


def build_metadata(
    transaction_type: Union[TransactionType, str],
    value: Union[TransactionMetadata, Dict[str, Any], None] = None,
) -> TransactionMetadata:
    """
    Build the metadata object for a transaction type.

    Args:
        transaction_type: Ledger transaction type selecting the schema
        value: A metadata dataclass of the matching type, a dict of its fields, or None

    Returns:
        The typed metadata object

    Raises:
        ValidationError: wrong dataclass for the type, or unknown fields in the dict
    """
    schema = METADATA_SCHEMAS[_coerce_type(transaction_type)]

    if value is None:
        return schema()
    if isinstance(value, schema):
        _check_field_types(schema, asdict(value))
        return value
    if not isinstance(value, dict):
        raise ValidationError(
            f"{type(value).__name__} is not valid metadata for {schema.__name__}"
        )

    allowed = {f.name for f in fields(schema)}
    unknown = set(value) - allowed
    if unknown:
        raise ValidationError(
            f"Unknown metadata fields for {schema.__name__}: {', '.join(sorted(unknown))}"
        )
    _check_field_types(schema, value)
    return schema(**value)


def _check_field_types(schema: Type, values: Dict[str, Any]) -> None:
    # Every metadata field is an optional string; other values are rejected, not converted
    wrong = sorted(key for key, item in values.items() if item is not None and not isinstance(item, str))
    if wrong:
        raise ValidationError(
            f"Metadata fields for {schema.__name__} must be strings: {', '.join(wrong)}"
        )


def metadata_envelope(transaction_type: Union[TransactionType, str], metadata: TransactionMetadata) -> Dict[str, Any]:
    """Serialize metadata into the versioned envelope stored on the transaction row"""
    return {
        "type": _coerce_type(transaction_type).value,
        "version": METADATA_SCHEMA_VERSION,
        "data": {key: item for key, item in asdict(metadata).items() if item is not None},
    }


def parse_metadata(envelope: Optional[Dict[str, Any]]) -> Optional[TransactionMetadata]:
    """Read a stored envelope back into its typed metadata object"""
    if not envelope:
        return None

    version = envelope.get("version")
    if version != METADATA_SCHEMA_VERSION:
        raise ValidationError(f"Unsupported metadata version: {version!r}")

    return build_metadata(envelope.get("type"), envelope.get("data") or {})
