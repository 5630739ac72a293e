"""
Payment gateway notification payloads.

Midtrans sends a different shape per ``payment_type``. Each shape is decoded
here, at the boundary, into one variant model; the rest of the engine only
sees the normalized ``PaymentNotification``.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict


@dataclass(frozen=True)
class PaymentNotification:
    """Gateway-agnostic view of a payment status update."""
    payment_type: str
    reference: Optional[str]
    order_number: str
    status: str
    fraud_status: Optional[str] = None
    info: Dict[str, Any] = field(default_factory=dict)


class GatewayNotification(BaseModel):
    """Fields common to every Midtrans notification."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    order_id: str
    transaction_status: str
    payment_type: str = "unknown"
    transaction_id: Optional[str] = None
    fraud_status: Optional[str] = None
    status_code: Optional[str] = None
    gross_amount: Optional[str] = None
    signature_key: Optional[str] = None
    transaction_time: Optional[str] = None

    def payment_info(self) -> Dict[str, Any]:
        return {"raw_response": self.model_dump(exclude={"signature_key"})}

    def normalize(self) -> PaymentNotification:
        return PaymentNotification(
            payment_type=self.payment_type,
            reference=self.transaction_id,
            order_number=self.order_id,
            status=self.transaction_status,
            fraud_status=self.fraud_status,
            info=self.payment_info(),
        )


class VANumber(BaseModel):
    bank: Optional[str] = None
    va_number: Optional[str] = None


class BankTransferNotification(GatewayNotification):
    """bank_transfer, permata, bca, bni, bri virtual accounts."""
    va_numbers: List[VANumber] = []
    permata_va_number: Optional[str] = None

    def payment_info(self) -> Dict[str, Any]:
        if self.va_numbers:
            va = self.va_numbers[0]
            bank = va.bank or (self.payment_type if self.payment_type != "bank_transfer" else None)
            return {"bank": bank, "va_number": va.va_number}
        if self.permata_va_number:
            return {"bank": "permata", "va_number": self.permata_va_number}
        return {"bank": self.payment_type}


class EChannelNotification(GatewayNotification):
    """Mandiri bill payment."""
    bill_key: Optional[str] = None
    biller_code: Optional[str] = None

    def payment_info(self) -> Dict[str, Any]:
        return {"bank": "mandiri", "bill_key": self.bill_key, "biller_code": self.biller_code}


class EWalletNotification(GatewayNotification):
    """gopay, qris, shopeepay, dana, linkaja."""
    issuer: Optional[str] = None
    acquirer: Optional[str] = None
    qr_code: Optional[str] = None
    qr_code_url: Optional[str] = None
    deeplink_redirect: Optional[str] = None
    checkout_redirect_url: Optional[str] = None

    def payment_info(self) -> Dict[str, Any]:
        info = {"wallet": self.payment_type}
        for key in ("issuer", "acquirer", "qr_code_url", "deeplink_redirect", "checkout_redirect_url"):
            value = getattr(self, key)
            if value:
                info[key] = value
        return info


class CreditCardNotification(GatewayNotification):
    card_type: Optional[str] = None
    bank: Optional[str] = None
    masked_card: Optional[str] = None
    approval_code: Optional[str] = None
    eci: Optional[str] = None

    def payment_info(self) -> Dict[str, Any]:
        return {
            "card_type": self.card_type,
            "bank": self.bank,
            "masked_card": self.masked_card,
            "approval_code": self.approval_code,
            "eci": self.eci,
        }


class CStoreNotification(GatewayNotification):
    """Convenience store payment (Indomaret, Alfamart)."""
    store: Optional[str] = None
    payment_code: Optional[str] = None
    merchant_id: Optional[str] = None

    def payment_info(self) -> Dict[str, Any]:
        return {"store": self.store, "payment_code": self.payment_code, "merchant_id": self.merchant_id}


class AkulakuNotification(GatewayNotification):
    checkout_redirect_url: Optional[str] = None

    def payment_info(self) -> Dict[str, Any]:
        return {"checkout_redirect_url": self.checkout_redirect_url}


NOTIFICATION_VARIANTS: Dict[str, Type[GatewayNotification]] = {
    "bank_transfer": BankTransferNotification,
    "permata": BankTransferNotification,
    "bca": BankTransferNotification,
    "bni": BankTransferNotification,
    "bri": BankTransferNotification,
    "echannel": EChannelNotification,
    "gopay": EWalletNotification,
    "qris": EWalletNotification,
    "shopeepay": EWalletNotification,
    "dana": EWalletNotification,
    "linkaja": EWalletNotification,
    "credit_card": CreditCardNotification,
    "cstore": CStoreNotification,
    "akulaku": AkulakuNotification,
}


def decode_notification(payload: Dict[str, Any]) -> GatewayNotification:
    """Decode a raw notification body into its payment-type variant."""
    variant = NOTIFICATION_VARIANTS.get(str(payload.get("payment_type", "")), GatewayNotification)
    return variant.model_validate(payload)


class PaymentSyncResponse(BaseModel):
    order_number: str
    transaction_status: str
    fraud_status: Optional[str] = None
    order_status: str
    changed: bool
