"""
On-chain payment service tests.

Web3 is a MagicMock; the price feed is served by httpx.MockTransport so the
real HTTP client code runs. Receipts are checked with the same
verify_receipt the contract checks mirror.
"""

from unittest.mock import MagicMock

import httpx
import pytest
from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractCustomError, TransactionNotFound

from creditledger.config import Settings
from creditledger.core.alerting import alert_tracker
from creditledger.core.errors import (
    PaymentProviderError,
    PurchaseOutOfRange,
    ReceiptExpired,
    UnknownAccount,
    ZeroAddress,
)
from creditledger.services.chain_payments import ChainPaymentService
from creditledger.services.ledger import user_hash
from creditledger.services.receipts import verify_receipt

VALIDATOR = Account.create()
CONTRACT = "0x" + "11" * 20
TOKEN = "0x" + "22" * 20
VAULT = "0x" + "33" * 20


def _config(**overrides):
    values = dict(
        chain_enabled=True,
        chain_rpc_url="http://localhost:8545",
        chain_id=84532,
        payment_contract_address=CONTRACT,
        payment_token_address=TOKEN,
        vault_address=VAULT,
        validator_private_key=Web3.to_hex(VALIDATOR.key),
        chain_start_block=100,
        chain_confirmations=2,
        chain_sync_batch_blocks=5,
        receipt_ttl_s=300,
        credits_usd_price=0.1,
        credits_min_purchase=10,
        credits_max_purchase=1000,
        token_price_url="https://prices.test/token_price",
    )
    values.update(overrides)
    return Settings(**values)


def _price_client(price="0.5", status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        if status_code != 200:
            return httpx.Response(status_code, json={"error": "down"})
        return httpx.Response(
            200, json={"data": {"attributes": {"token_prices": {TOKEN.lower(): price}}}}
        )

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _log(user_id, credits, tx="aa", log_index=0, block=101, address=CONTRACT):
    return {
        "transactionHash": HexBytes("0x" + tx * 32),
        "logIndex": log_index,
        "blockNumber": block,
        "address": Web3.to_checksum_address(address),
        "args": {
            "user": HexBytes(user_hash(user_id)),
            "creditAmount": credits,
            "tokenAmount": credits * 5 * 10**17,
        },
    }


@pytest.fixture
def w3():
    mock = MagicMock()
    mock.eth.block_number = 110
    mock.eth.get_transaction_receipt.return_value = {"status": 1, "blockNumber": 101}
    return mock


@pytest.fixture
def service(ledger, w3):
    svc = ChainPaymentService(ledger, _config(), w3=w3, http_client=_price_client())
    svc.contract.functions.userNonce.return_value.call.return_value = 3
    return svc


class TestConstruction:
    @pytest.mark.parametrize(
        "missing", ["payment_contract_address", "payment_token_address", "validator_private_key"]
    )
    def test_missing_chain_config_rejected(self, ledger, w3, missing):
        with pytest.raises(ZeroAddress):
            ChainPaymentService(ledger, _config(**{missing: None}), w3=w3)

    def test_zero_address_rejected_by_settings(self):
        with pytest.raises(ValueError):
            _config(vault_address="0x" + "0" * 40)


class TestIssueReceipt:
    @pytest.mark.asyncio
    async def test_quote_and_signature(self, service, funded):
        funded("alice", 0)
        signed = await service.issue_receipt("alice", 10.0, now=1_000)

        receipt = signed.receipt
        assert receipt.credit_amount == 100
        assert receipt.token_amount == 20 * 10**18
        assert receipt.nonce == 3
        assert receipt.expiry == 1_300
        assert receipt.user_hash == user_hash("alice")

        verify_receipt(
            receipt,
            signed.signature,
            current_nonce=3,
            now=1_000,
            validator_address=VALIDATOR.address,
            contract_address=CONTRACT,
            chain_id=84532,
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price_usd", [0.5, 200.0])
    async def test_out_of_range(self, service, funded, price_usd):
        funded("alice", 0)
        with pytest.raises(PurchaseOutOfRange):
            await service.issue_receipt("alice", price_usd)

    @pytest.mark.asyncio
    async def test_unknown_user(self, service):
        with pytest.raises(UnknownAccount):
            await service.issue_receipt("ghost", 10.0)

    @pytest.mark.asyncio
    async def test_price_feed_down(self, ledger, w3, funded):
        funded("alice", 0)
        svc = ChainPaymentService(ledger, _config(), w3=w3, http_client=_price_client(status_code=502))
        svc.contract.functions.userNonce.return_value.call.return_value = 0
        with pytest.raises(PaymentProviderError):
            await svc.issue_receipt("alice", 10.0)
        assert alert_tracker.count("external.token_price.error") == 1

    @pytest.mark.asyncio
    async def test_zero_price_rejected(self, ledger, w3, funded):
        funded("alice", 0)
        svc = ChainPaymentService(ledger, _config(), w3=w3, http_client=_price_client(price="0"))
        svc.contract.functions.userNonce.return_value.call.return_value = 0
        with pytest.raises(PaymentProviderError):
            await svc.issue_receipt("alice", 10.0)


class TestSync:
    def test_credits_confirmed_logs_and_advances_cursor(self, service, ledger, funded):
        funded("alice", 0)
        batches = [[_log("alice", 100, tx="aa")], [_log("alice", 50, tx="bb", block=106)]]
        service.contract.events.PaymentProcessed.get_logs.side_effect = batches

        summary = service.sync_payments()

        assert summary["credited"] == 2
        assert summary["from_block"] == 100
        assert summary["to_block"] == 108
        assert service.get_cursor() == 109
        assert ledger.get_balance("alice") == 150
        calls = service.contract.events.PaymentProcessed.get_logs.call_args_list
        assert calls[0].kwargs == {"from_block": 100, "to_block": 104}
        assert calls[1].kwargs == {"from_block": 105, "to_block": 108}

    def test_nothing_new_below_confirmations(self, service, w3):
        service.set_cursor(109)
        assert service.sync_payments()["from_block"] is None
        service.contract.events.PaymentProcessed.get_logs.assert_not_called()

    def test_rescan_is_idempotent(self, service, ledger, funded):
        funded("alice", 0)
        log = _log("alice", 100)
        service.contract.events.PaymentProcessed.get_logs.side_effect = [[log], [], [log], []]
        service.sync_payments()
        service.set_cursor(100)
        summary = service.sync_payments()
        assert summary["duplicates"] == 1
        assert ledger.get_balance("alice") == 100
        row = ledger.find_transaction(f"chain:0x{'aa' * 32}:0")
        assert row["payment_ref"] == "0x" + "aa" * 32
        assert row["meta"]["block_number"] == 101

    def test_unknown_user_skipped_with_alert(self, service, ledger):
        service.contract.events.PaymentProcessed.get_logs.side_effect = [[_log("nobody", 100)], []]
        summary = service.sync_payments()
        assert summary["skipped"] == 1
        assert alert_tracker.count("business.chain.unknown_user") == 1

    def test_reverted_transaction_skipped(self, service, w3, ledger, funded):
        funded("alice", 0)
        w3.eth.get_transaction_receipt.return_value = {"status": 0, "blockNumber": 101}
        service.contract.events.PaymentProcessed.get_logs.side_effect = [[_log("alice", 100)], []]
        assert service.sync_payments()["skipped"] == 1
        assert ledger.get_balance("alice") == 0


class TestObserveTransaction:
    TX = "0x" + "cc" * 32

    def test_not_mined(self, service, w3):
        w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("not found")
        assert service.observe_transaction(self.TX) == {"tx_hash": self.TX, "status": "pending"}

    def test_too_few_confirmations(self, service, w3):
        w3.eth.get_transaction_receipt.return_value = {"status": 1, "blockNumber": 109}
        assert service.observe_transaction(self.TX)["status"] == "pending"

    def test_confirmed_credits_once(self, service, w3, ledger, funded):
        funded("alice", 0)
        receipt = {"status": 1, "blockNumber": 101}
        w3.eth.get_transaction_receipt.return_value = receipt
        event = service.contract.events.PaymentProcessed.return_value
        event.process_receipt.return_value = [
            _log("alice", 100, tx="cc"),
            _log("alice", 999, tx="cc", log_index=1, address="0x" + "99" * 20),
        ]

        first = service.observe_transaction(self.TX)
        second = service.observe_transaction(self.TX)

        assert first["status"] == "confirmed"
        assert first["credited"] == 1
        assert second["duplicates"] == 1
        assert ledger.get_balance("alice") == 100

    def test_reverted_pay_raises_decoded_error(self, service, w3):
        w3.eth.get_transaction_receipt.return_value = {"status": 0, "blockNumber": 105}
        w3.eth.get_transaction.return_value = {"to": CONTRACT, "from": VAULT, "input": "0x", "value": 0}
        selector = Web3.to_hex(Web3.keccak(text="ReceiptExpired()")[:4])
        w3.eth.call.side_effect = ContractCustomError(selector, data=selector)

        with pytest.raises(ReceiptExpired):
            service.observe_transaction(self.TX)
        assert w3.eth.call.call_args.args[1] == 104

    def test_reverted_without_reason(self, service, w3):
        w3.eth.get_transaction_receipt.return_value = {"status": 0, "blockNumber": 105}
        w3.eth.get_transaction.return_value = {"to": CONTRACT, "from": VAULT, "input": "0x", "value": 0}
        w3.eth.call.return_value = b""
        assert service.observe_transaction(self.TX)["status"] == "reverted"
