"""Tests for ChainOracle with a mocked Web3 client (no network)."""
import asyncio
from unittest.mock import MagicMock

import pytest
import requests
from web3.exceptions import TransactionNotFound

from conftest import TREASURY, WALLET, make_hash
from plum_platform.chain import ChainOracle, ChainUnavailable

TX = make_hash(7)


@pytest.fixture
def w3():
    return MagicMock()


@pytest.fixture
def oracle(w3):
    o = ChainOracle("http://rpc.test", timeout=5)
    o._w3 = w3
    return o


class TestGetTransaction:
    def test_flattens_fields(self, oracle, w3):
        w3.eth.get_transaction.return_value = {
            "hash": bytes.fromhex(TX[2:]),
            "from": WALLET,
            "to": TREASURY,
            "value": 10**18,
            "chainId": 41956,
            "blockNumber": 12,
        }
        tx = asyncio.run(oracle.get_transaction(TX))
        assert tx.hash == TX
        assert tx.sender == WALLET
        assert tx.recipient == TREASURY
        assert tx.value == 10**18
        assert tx.chain_id == 41956
        assert tx.block_number == 12
        w3.eth.get_transaction.assert_called_once_with(TX)

    def test_hex_chain_id_and_missing_fields(self, oracle, w3):
        w3.eth.get_transaction.return_value = {"from": WALLET, "to": None, "value": 0, "chainId": "0xa3e4"}
        tx = asyncio.run(oracle.get_transaction(TX))
        assert tx.chain_id == 0xA3E4
        assert tx.recipient is None
        assert tx.block_number is None
        assert tx.hash == TX

    def test_unknown_hash_returns_none(self, oracle, w3):
        w3.eth.get_transaction.side_effect = TransactionNotFound("not found")
        assert asyncio.run(oracle.get_transaction(TX)) is None

    def test_timeout_raises_unavailable(self, oracle, w3):
        w3.eth.get_transaction.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(ChainUnavailable):
            asyncio.run(oracle.get_transaction(TX))


class TestGetReceipt:
    def test_receipt(self, oracle, w3):
        w3.eth.get_transaction_receipt.return_value = {"status": 1, "blockNumber": 99}
        receipt = asyncio.run(oracle.get_transaction_receipt(TX))
        assert receipt.status == 1
        assert receipt.block_number == 99

    def test_pending_receipt_is_none(self, oracle, w3):
        w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("pending")
        assert asyncio.run(oracle.get_transaction_receipt(TX)) is None

    def test_connection_error_raises_unavailable(self, oracle, w3):
        w3.eth.get_transaction_receipt.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(ChainUnavailable):
            asyncio.run(oracle.get_transaction_receipt(TX))


class TestBlockNumber:
    def test_block_number(self, oracle, w3):
        w3.eth.block_number = 1234
        assert asyncio.run(oracle.get_block_number()) == 1234
