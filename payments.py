"""
Payment Module
==============
Payment providers invoked by checkout.

- CardPaymentProvider: simulated card charge (format checks, Luhn, expiry,
  decline number). Never logs the card number.
- WalletPaymentProvider: accepts the ERC-20 transfer the shopper's browser
  wallet already sent and checks the reference it returned. The transfer
  itself happens client-side.
- PaymentGateway: dispatches by payment method.

Every provider returns a PaymentResult carrying the payment reference, or
raises PaymentError.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from prometheus_client import Counter

from discount import PaymentMethod
from errors import PaymentError
from pricing import format_money, round_money, to_money


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

payment_attempts = Counter(
    'payment_attempts_total',
    'Payment attempts',
    ['method', 'result']
)


# ============================================================================
# PAYMENT DATA
# ============================================================================

@dataclass(frozen=True)
class CardDetails:
    name: str
    number: str
    expiry: str  # MM/YY
    cvc: str

    @property
    def digits(self) -> str:
        return re.sub(r"[\s-]", "", self.number or "")

    @property
    def last4(self) -> str:
        return self.digits[-4:]


@dataclass(frozen=True)
class WalletDetails:
    address: Optional[str]
    token: str = "USDC"
    tx_hash: Optional[str] = None
    chain_id: Optional[int] = None

    @property
    def connected(self) -> bool:
        return bool(self.address)


@dataclass(frozen=True)
class PaymentResult:
    reference: str
    method: PaymentMethod
    amount: Decimal
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    payment_token: Optional[str] = None
    token_amount: Optional[int] = None  # base units

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "method": self.method.value,
            "amount": format_money(self.amount),
            "card_last4": self.card_last4,
            "card_brand": self.card_brand,
            "payment_token": self.payment_token,
            "token_amount": str(self.token_amount) if self.token_amount is not None else None,
        }


def _positive_amount(amount: Any) -> Decimal:
    value = round_money(to_money(amount))
    if value <= 0:
        raise PaymentError(f"Payment amount must be greater than zero: {value}")
    return value


# ============================================================================
# CARD PROVIDER
# ============================================================================

CARD_BRANDS = (
    ("amex", re.compile(r"^3[47]")),
    ("visa", re.compile(r"^4")),
    ("mastercard", re.compile(r"^(5[1-5]|2[2-7])")),
    ("discover", re.compile(r"^6(011|5)")),
)


def luhn_valid(digits: str) -> bool:
    """Luhn checksum over a string of digits."""
    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def detect_card_brand(digits: str) -> str:
    for brand, pattern in CARD_BRANDS:
        if pattern.match(digits):
            return brand
    return "unknown"


class CardPaymentProvider:
    """
    Simulated card processor.

    Validation failures and the configured decline number raise
    PaymentError; everything else is approved with a ``card_`` reference.
    """

    def __init__(self, declined_number: Optional[str] = "4000000000000002", now=None):
        self.declined_number = declined_number
        self._now = now or datetime.utcnow

    def validate(self, card: CardDetails):
        """
        Raises:
            PaymentError: Any card field is malformed
        """
        if not card.name or not card.name.strip():
            raise PaymentError("Cardholder name is required")

        digits = card.digits
        if not digits.isdigit() or not 13 <= len(digits) <= 19:
            raise PaymentError("Card number must be 13 to 19 digits")

        if not luhn_valid(digits):
            raise PaymentError("Invalid card number")

        match = re.match(r"^(\d{2})/(\d{2})$", (card.expiry or "").strip())
        if not match:
            raise PaymentError("Expiry must be MM/YY")

        month, year = int(match.group(1)), 2000 + int(match.group(2))
        if not 1 <= month <= 12:
            raise PaymentError("Invalid expiry month")

        now = self._now()
        if (year, month) < (now.year, now.month):
            raise PaymentError("Card has expired")

        if not re.match(r"^\d{3,4}$", (card.cvc or "").strip()):
            raise PaymentError("CVC must be 3 or 4 digits")

    async def charge(self, amount: Any, card: CardDetails) -> PaymentResult:
        value = _positive_amount(amount)

        try:
            self.validate(card)
        except PaymentError as e:
            payment_attempts.labels(method="card", result="invalid").inc()
            logger.warning(f"Card validation failed: {e.message}")
            raise

        if self.declined_number and card.digits == self.declined_number:
            payment_attempts.labels(method="card", result="declined").inc()
            logger.warning(f"Card ending {card.last4} declined")
            raise PaymentError("Card declined", {"reason": "declined"})

        brand = detect_card_brand(card.digits)
        reference = f"card_{uuid.uuid4().hex}"

        payment_attempts.labels(method="card", result="approved").inc()
        logger.info(
            f"Card payment approved: {format_money(value)} "
            f"({brand} ending {card.last4}, ref={reference})"
        )

        return PaymentResult(
            reference=reference,
            method=PaymentMethod.CARD,
            amount=value,
            card_last4=card.last4,
            card_brand=brand
        )


# ============================================================================
# WALLET PROVIDER
# ============================================================================

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


def to_token_units(amount: Decimal, decimals: int) -> int:
    """USD amount to token base units (1 token = 1 USD)."""
    return int(round_money(amount) * (Decimal(10) ** decimals))


class WalletPaymentProvider:
    """
    Wallet-mediated ERC-20 payment.

    The browser wallet signs and sends the transfer; this provider checks the
    wallet is connected on the right chain, the token is supported and the
    transaction hash is well formed.
    """

    def __init__(
        self,
        tokens: Dict[str, Dict[str, Any]],
        chain_id: int = 8453,
        recipient_address: Optional[str] = None
    ):
        self.tokens = {symbol.upper(): info for symbol, info in tokens.items()}
        self.chain_id = chain_id
        self.recipient_address = recipient_address

    async def charge(self, amount: Any, wallet: WalletDetails) -> PaymentResult:
        value = _positive_amount(amount)

        if not wallet.connected:
            payment_attempts.labels(method="crypto", result="not_connected").inc()
            raise PaymentError("Wallet not connected")

        if not ADDRESS_PATTERN.match(wallet.address):
            payment_attempts.labels(method="crypto", result="invalid").inc()
            raise PaymentError(f"Invalid wallet address: {wallet.address}")

        if wallet.chain_id is not None and int(wallet.chain_id) != self.chain_id:
            payment_attempts.labels(method="crypto", result="wrong_chain").inc()
            raise PaymentError(
                f"Wrong network: chain {wallet.chain_id}, expected {self.chain_id}"
            )

        symbol = (wallet.token or "").upper()
        token = self.tokens.get(symbol)
        if token is None:
            payment_attempts.labels(method="crypto", result="invalid").inc()
            raise PaymentError(f"Unsupported token: {wallet.token}")

        if not wallet.tx_hash or not TX_HASH_PATTERN.match(wallet.tx_hash):
            payment_attempts.labels(method="crypto", result="rejected").inc()
            raise PaymentError("Transaction was not completed by the wallet")

        units = to_token_units(value, int(token["decimals"]))

        payment_attempts.labels(method="crypto", result="approved").inc()
        logger.info(
            f"Wallet payment accepted: {format_money(value)} {symbol} "
            f"({units} units) from {wallet.address} to {self.recipient_address}, "
            f"tx={wallet.tx_hash}"
        )

        return PaymentResult(
            reference=wallet.tx_hash,
            method=PaymentMethod.CRYPTO,
            amount=value,
            payment_token=symbol,
            token_amount=units
        )


# ============================================================================
# GATEWAY
# ============================================================================

class PaymentGateway:
    """Routes a charge to the provider for its payment method."""

    def __init__(
        self,
        card_provider: CardPaymentProvider,
        wallet_provider: WalletPaymentProvider,
        card_enabled: bool = True,
        crypto_enabled: bool = True
    ):
        self.card_provider = card_provider
        self.wallet_provider = wallet_provider
        self.card_enabled = card_enabled
        self.crypto_enabled = crypto_enabled

    @classmethod
    def from_config(cls, payment_config) -> 'PaymentGateway':
        return cls(
            CardPaymentProvider(declined_number=payment_config.declined_card_number),
            WalletPaymentProvider(
                payment_config.tokens,
                chain_id=payment_config.chain_id,
                recipient_address=payment_config.recipient_address
            ),
            card_enabled=payment_config.card_enabled,
            crypto_enabled=payment_config.crypto_enabled
        )

    async def charge(
        self,
        amount: Any,
        method: PaymentMethod,
        card: Optional[CardDetails] = None,
        wallet: Optional[WalletDetails] = None
    ) -> PaymentResult:
        """
        Charge amount with the given method.

        Raises:
            PaymentError: Method disabled, details missing, or provider
                rejection
        """
        if method == PaymentMethod.CARD:
            if not self.card_enabled:
                raise PaymentError("Card payments are disabled")
            if card is None:
                raise PaymentError("Card details are required")
            return await self.card_provider.charge(amount, card)

        if not self.crypto_enabled:
            raise PaymentError("Crypto payments are disabled")
        if wallet is None:
            raise PaymentError("Wallet not connected")
        return await self.wallet_provider.charge(amount, wallet)
