"""
On-chain Payment Service
========================

PURPOSE:
    Backend half of the on-chain rail.

    issue_receipt()       quote + sign a receipt the client submits to pay().
                          Never touches the ledger.
    sync_payments()       tail PaymentProcessed logs from the stored block
                          cursor up to ``latest - confirmations`` and credit
                          the ledger for each successful payment.
    observe_transaction() confirm one client-reported transaction right away
                          instead of waiting for the next sync pass.

    Credits are keyed ``chain:<tx_hash>:<log_index>`` so a log seen by both
    the sync loop and observe_transaction() is applied once.

CURSOR:
    ``last_synced_block`` in ledger_settings holds the next block to scan.
    It advances after each batch, so a crash re-scans at most one batch and
    the idempotency keys absorb the overlap.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx
from eth_account import Account
from hexbytes import HexBytes
from sqlmodel import Session
from web3 import Web3
from web3.exceptions import ContractCustomError, ContractLogicError, TransactionNotFound

from creditledger.config import Settings
from creditledger.core.alerting import AlertCategory, AlertLevel, send_alert
from creditledger.core.errors import (
    PaymentProviderError,
    PurchaseOutOfRange,
    UnknownAccount,
    ZeroAddress,
)
from creditledger.models.ledger import LedgerSetting
from creditledger.services.ledger import CreditLedger, user_hash
from creditledger.services.receipts import (
    PaymentReceipt,
    SignedReceipt,
    decode_revert,
    sign_receipt,
    to_base_units,
)

logger = logging.getLogger(__name__)

CURSOR_KEY = "last_synced_block"

PAYMENT_PROCESSOR_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "userNonce",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "PaymentProcessed",
        "anonymous": False,
        "inputs": [
            {"name": "user", "type": "bytes32", "indexed": True},
            {"name": "creditAmount", "type": "uint256", "indexed": False},
            {"name": "tokenAmount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "ConfigUpdated",
        "anonymous": False,
        "inputs": [
            {"name": "validator", "type": "address", "indexed": False},
            {"name": "vault", "type": "address", "indexed": False},
            {"name": "token", "type": "address", "indexed": False},
        ],
    },
    {"type": "error", "name": "ZeroAddress", "inputs": []},
    {"type": "error", "name": "ZeroAmount", "inputs": []},
    {"type": "error", "name": "ReceiptExpired", "inputs": []},
    {"type": "error", "name": "InvalidSignature", "inputs": []},
    {"type": "error", "name": "EtherTransfersNotAllowed", "inputs": []},
]


def _hex(value) -> str:
    return Web3.to_hex(HexBytes(value))


class ChainPaymentService:
    """Receipt issuing and PaymentProcessed ingestion for one payment contract."""

    def __init__(
        self,
        ledger: CreditLedger,
        config: Settings,
        w3: Optional[Web3] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        for name in ("payment_contract_address", "payment_token_address", "validator_private_key"):
            if not getattr(config, name):
                raise ZeroAddress(detail=f"{name} is not configured")

        self.ledger = ledger
        self.config = config
        self.w3 = w3 or Web3(Web3.HTTPProvider(config.chain_rpc_url))
        self.contract_address = Web3.to_checksum_address(config.payment_contract_address)
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=PAYMENT_PROCESSOR_ABI)
        self.validator_address = Account.from_key(config.validator_private_key).address
        self._http = http_client

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def get_token_price_usd(self) -> Decimal:
        token = self.config.payment_token_address.lower()
        url = f"{self.config.token_price_url}/{token}"
        client = self._http or httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
        try:
            response = await client.get(url, headers={"accept": "application/json"})
            response.raise_for_status()
            price = response.json()["data"]["attributes"]["token_prices"][token]
            value = Decimal(str(price))
        except (httpx.HTTPError, KeyError, TypeError, ValueError, InvalidOperation) as exc:
            send_alert(
                "Token price unavailable",
                f"Price feed failed: {exc}",
                level=AlertLevel.HIGH,
                category=AlertCategory.EXTERNAL_SERVICE,
                fingerprint="external.token_price.error",
            )
            raise PaymentProviderError(detail=f"token price lookup failed: {exc}") from exc
        finally:
            if self._http is None:
                await client.aclose()

        if value <= 0:
            raise PaymentProviderError(detail=f"token price feed returned {value}")
        return value

    def user_nonce(self, id_hash: str) -> int:
        return int(self.contract.functions.userNonce(HexBytes(id_hash)).call())

    async def issue_receipt(self, user_id: str, price_usd: float, now: Optional[int] = None) -> SignedReceipt:
        """Quote ``price_usd`` in credits and tokens and sign a receipt for it."""
        price = Decimal(str(price_usd))
        credit_amount = int(price / Decimal(str(self.config.credits_usd_price)))
        if not (self.config.credits_min_purchase <= credit_amount <= self.config.credits_max_purchase):
            raise PurchaseOutOfRange(
                credit_amount, self.config.credits_min_purchase, self.config.credits_max_purchase
            )

        if not await asyncio.to_thread(self.ledger.account_exists, user_id):
            raise UnknownAccount(user_id)

        id_hash = user_hash(user_id)
        try:
            nonce = await asyncio.to_thread(self.user_nonce, id_hash)
        except (ContractLogicError, ConnectionError, ValueError) as exc:
            raise PaymentProviderError(detail=f"userNonce call failed: {exc}") from exc

        token_price = await self.get_token_price_usd()
        receipt = PaymentReceipt(
            user_hash=id_hash,
            credit_amount=credit_amount,
            token_amount=to_base_units(price / token_price),
            nonce=nonce,
            expiry=(now if now is not None else int(time.time())) + self.config.receipt_ttl_s,
        )
        signed = sign_receipt(
            receipt, self.config.validator_private_key, self.contract_address, self.config.chain_id
        )
        logger.info(
            "payment_receipt_issued",
            extra={"user_id": user_id, "credit_amount": credit_amount, "nonce": nonce, "expiry": receipt.expiry},
        )
        return signed

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------

    def get_cursor(self) -> int:
        with Session(self.ledger.engine) as session:
            row = session.get(LedgerSetting, CURSOR_KEY)
            stored = int(row.value) if row else 0
        return stored if stored > 0 else self.config.chain_start_block

    def set_cursor(self, block: int) -> None:
        with Session(self.ledger.engine) as session:
            row = session.get(LedgerSetting, CURSOR_KEY)
            if row is None:
                row = LedgerSetting(key=CURSOR_KEY, value=str(block))
            else:
                row.value = str(block)
                row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.commit()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def sync_payments(self) -> Dict[str, Any]:
        """One pass over confirmed blocks since the cursor. Blocking; run in a thread."""
        summary = {"from_block": None, "to_block": None, "credited": 0, "duplicates": 0, "skipped": 0}
        try:
            latest = int(self.w3.eth.block_number)
        except (ConnectionError, ValueError) as exc:
            raise PaymentProviderError(detail=f"block_number failed: {exc}") from exc

        from_block = self.get_cursor()
        safe_block = latest - self.config.chain_confirmations
        if from_block > safe_block:
            return summary
        summary["from_block"] = from_block

        while from_block <= safe_block:
            to_block = min(from_block + self.config.chain_sync_batch_blocks - 1, safe_block)
            logs = self.contract.events.PaymentProcessed.get_logs(from_block=from_block, to_block=to_block)
            for log in logs:
                outcome = self._apply_log(log)
                summary[outcome] += 1
            self.set_cursor(to_block + 1)
            summary["to_block"] = to_block
            from_block = to_block + 1

        if summary["credited"] or summary["skipped"]:
            logger.info("chain_sync_pass", extra=summary)
        return summary

    def observe_transaction(self, tx_hash: str) -> Dict[str, Any]:
        """Confirm one transaction now. Raises the decoded PaymentRejected for a reverted pay()."""
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            logger.info("Transaction %s not yet mined", tx_hash)
            return {"tx_hash": tx_hash, "status": "pending"}

        if int(receipt["status"]) != 1:
            rejection = self._replay_revert(tx_hash, receipt)
            if rejection is not None:
                raise rejection
            return {"tx_hash": tx_hash, "status": "reverted"}

        confirmations = int(self.w3.eth.block_number) - int(receipt["blockNumber"])
        if confirmations < self.config.chain_confirmations:
            return {"tx_hash": tx_hash, "status": "pending", "confirmations": confirmations}

        counts = {"credited": 0, "duplicates": 0, "skipped": 0}
        for log in self.contract.events.PaymentProcessed().process_receipt(receipt):
            if log["address"].lower() != self.contract_address.lower():
                continue
            counts[self._apply_log(log, tx_receipt=receipt)] += 1
        return {"tx_hash": tx_hash, "status": "confirmed", **counts}

    def _replay_revert(self, tx_hash: str, receipt) -> Optional[Exception]:
        """Re-run a failed transaction as eth_call to recover its custom error."""
        tx = self.w3.eth.get_transaction(tx_hash)
        call = {"to": tx["to"], "from": tx["from"], "data": tx["input"], "value": tx.get("value", 0)}
        try:
            self.w3.eth.call(call, int(receipt["blockNumber"]) - 1)
        except ContractCustomError as exc:
            return decode_revert(exc.data)
        except ContractLogicError as exc:
            return decode_revert(exc.data) if exc.data else None
        return None

    def _apply_log(self, log, tx_receipt=None) -> str:
        tx_hash = _hex(log["transactionHash"])
        log_index = int(log["logIndex"])
        args = log["args"]
        id_hash = _hex(args["user"])
        credit_amount = int(args["creditAmount"])

        receipt = tx_receipt or self.w3.eth.get_transaction_receipt(tx_hash)
        if int(receipt["status"]) != 1:
            logger.warning("Skipping log from reverted transaction %s", tx_hash)
            return "skipped"

        if credit_amount <= 0:
            return "skipped"

        user_id = self.ledger.find_account_by_hash(id_hash)
        if user_id is None:
            send_alert(
                "On-chain payment for unknown user",
                f"PaymentProcessed in {tx_hash} for userHash {id_hash} matches no account",
                level=AlertLevel.HIGH,
                category=AlertCategory.BUSINESS,
                context={"tx_hash": tx_hash, "user_hash": id_hash, "credit_amount": credit_amount},
                fingerprint="business.chain.unknown_user",
            )
            return "skipped"

        key = f"chain:{tx_hash}:{log_index}"
        existing = self.ledger.find_transaction(key)
        if existing is not None:
            return "duplicates"

        self.ledger.credit(
            user_id,
            credit_amount,
            f"On-chain purchase of {credit_amount} credits",
            idempotency_key=key,
            payment_ref=tx_hash,
            meta={"token_amount": str(args["tokenAmount"]), "block_number": int(log["blockNumber"])},
        )
        return "credited"
