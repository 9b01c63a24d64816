"""
Payment Receipt Protocol
========================

PURPOSE:
    Build, sign and check the receipts the payment contract accepts.

    The validator signs keccak256(abi.encode(
        bytes32 userHash, uint256 creditAmount, uint256 tokenAmount,
        uint256 nonce, uint256 expiry, address contract, uint256 chainId))
    as an EIP-191 personal message. The contract verifies:

        1. ZeroAmount        creditAmount == 0 or tokenAmount == 0
        2. ReceiptExpired    block.timestamp > expiry
        3. InvalidSignature  signer of the digest rebuilt with the user's
                             *current* nonce is not the validator

    On success it increments userNonce, transfers tokens to the vault and
    emits PaymentProcessed. A consumed receipt therefore stops verifying
    (its nonce is stale), which is the replay protection.

    verify_receipt() mirrors those checks in the same order so the backend
    can pre-flight a receipt and tests can pin the protocol.
"""

import logging
from dataclasses import asdict, dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Dict, Optional, Type

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from hexbytes import HexBytes
from web3 import Web3

from creditledger.core.errors import (
    EtherTransfersNotAllowed,
    InvalidSignature,
    PaymentRejected,
    ReceiptExpired,
    ZeroAddress,
    ZeroAmount,
)

logger = logging.getLogger(__name__)

TOKEN_DECIMALS = 18

RECEIPT_ABI_TYPES = ["bytes32", "uint256", "uint256", "uint256", "uint256", "address", "uint256"]


@dataclass(frozen=True)
class PaymentReceipt:
    user_hash: str
    credit_amount: int
    token_amount: int
    nonce: int
    expiry: int


@dataclass(frozen=True)
class SignedReceipt:
    receipt: PaymentReceipt
    signature: str
    contract_address: str
    chain_id: int

    def to_dict(self) -> dict:
        """Wire shape handed to the client, which submits it to pay()."""
        data = asdict(self.receipt)
        data["user"] = data.pop("user_hash")
        # uint256 values as strings so JS clients keep precision
        for key in ("credit_amount", "token_amount", "nonce", "expiry"):
            data[key] = str(data[key])
        data["signature"] = self.signature
        data["contract_address"] = self.contract_address
        data["chain_id"] = self.chain_id
        return data


def to_base_units(amount: Decimal, decimals: int = TOKEN_DECIMALS) -> int:
    """Scale a token amount to integer base units, truncating below one unit."""
    scaled = (amount * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def receipt_digest(receipt: PaymentReceipt, contract_address: str, chain_id: int, nonce: Optional[int] = None) -> bytes:
    """keccak256 of the ABI-encoded receipt. ``nonce`` overrides the receipt's own."""
    encoded = encode(
        RECEIPT_ABI_TYPES,
        [
            HexBytes(receipt.user_hash),
            receipt.credit_amount,
            receipt.token_amount,
            receipt.nonce if nonce is None else nonce,
            receipt.expiry,
            Web3.to_checksum_address(contract_address),
            chain_id,
        ],
    )
    return bytes(Web3.keccak(encoded))


def sign_receipt(receipt: PaymentReceipt, private_key: str, contract_address: str, chain_id: int) -> SignedReceipt:
    digest = receipt_digest(receipt, contract_address, chain_id)
    signed = Account.sign_message(encode_defunct(primitive=digest), private_key=private_key)
    return SignedReceipt(
        receipt=receipt,
        signature=Web3.to_hex(signed.signature),
        contract_address=Web3.to_checksum_address(contract_address),
        chain_id=chain_id,
    )


def recover_signer(digest: bytes, signature: str) -> Optional[str]:
    try:
        return Account.recover_message(encode_defunct(primitive=digest), signature=HexBytes(signature))
    except Exception as exc:
        # Malformed signatures surface as several eth-keys error types
        logger.debug("Signature recovery failed: %s", exc)
        return None


def verify_receipt(
    receipt: PaymentReceipt,
    signature: str,
    *,
    current_nonce: int,
    now: int,
    validator_address: str,
    contract_address: str,
    chain_id: int,
) -> None:
    """Run the contract's checks in order. Raises the matching PaymentRejected subclass."""
    if receipt.credit_amount == 0 or receipt.token_amount == 0:
        raise ZeroAmount(detail="credit_amount and token_amount must be non-zero")
    if now > receipt.expiry:
        raise ReceiptExpired(detail=f"expired at {receipt.expiry}, now {now}", context={"expiry": receipt.expiry})

    digest = receipt_digest(receipt, contract_address, chain_id, nonce=current_nonce)
    signer = recover_signer(digest, signature)
    if signer is None or signer.lower() != validator_address.lower():
        raise InvalidSignature(
            detail="receipt not signed by the validator for the current nonce",
            context={"current_nonce": current_nonce, "receipt_nonce": receipt.nonce},
        )


# ---------------------------------------------------------------------------
# Revert decoding
# ---------------------------------------------------------------------------

_CONTRACT_ERRORS: Dict[str, Type[PaymentRejected]] = {
    cls.contract_error: cls
    for cls in (ZeroAddress, ZeroAmount, ReceiptExpired, InvalidSignature, EtherTransfersNotAllowed)
}

# 4-byte selector of "<Name>()" -> exception class
ERROR_SELECTORS: Dict[str, Type[PaymentRejected]] = {
    Web3.to_hex(Web3.keccak(text=f"{name}()")[:4]): cls for name, cls in _CONTRACT_ERRORS.items()
}


def decode_revert(revert_data) -> Optional[PaymentRejected]:
    """Map custom-error revert data from a failed pay() call to its exception, or None."""
    if not revert_data:
        return None
    data = Web3.to_hex(HexBytes(revert_data))
    selector = data[:10].lower()
    cls = ERROR_SELECTORS.get(selector)
    if cls is None:
        return None
    return cls(detail=f"contract reverted with {cls.contract_error}")
