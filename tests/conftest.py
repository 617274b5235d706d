import asyncio

import pytest
from eth_account import Account

from plum_platform.chain import ChainReceipt, ChainTransaction
from plum_platform.db import create_db_engine, create_session_factory, init_db
from plum_platform.plans import PaymentConfig

WALLET_ACCOUNT = Account.from_key("0x" + "11" * 32)
OTHER_ACCOUNT = Account.from_key("0x" + "33" * 32)
TREASURY = Account.from_key("0x" + "22" * 32).address
WALLET = WALLET_ACCOUNT.address
CHAIN_ID = 41956
ONE_PLM = 10**18

PLUM_ENV_VARS = (
    "PLUM_CHAIN_RPC_URL",
    "PLUM_PAYMENT_TREASURY",
    "PLUM_CHAIN_ID",
    "PLUM_PAYMENT_MIN_CONFIRMATIONS",
    "PLUM_CHAIN_RPC_TIMEOUT",
    "PLUM_PLAN_CATALOG_JSON",
    "PLUM_AGENT_FREE_WALLETS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in PLUM_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def engine(tmp_path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'plum.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def payment_config():
    return PaymentConfig(
        chain_rpc_url="http://rpc.test",
        treasury_address=TREASURY,
        chain_id=CHAIN_ID,
        min_confirmations=1,
    )


def make_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


class FakeOracle:
    """In-memory chain. Every call yields to the event loop once."""

    def __init__(self, latest_block: int = 100):
        self.transactions: dict[str, ChainTransaction] = {}
        self.receipts: dict[str, ChainReceipt] = {}
        self.latest_block = latest_block
        self.calls: list[str] = []
        self.error: Exception | None = None
        self.before_latest = None

    def add_payment(self, tx_hash: str, sender: str = WALLET, recipient: str = TREASURY,
                    value: int = 10 * ONE_PLM, status: int = 1, block: int = 100,
                    chain_id: int | None = CHAIN_ID):
        self.transactions[tx_hash] = ChainTransaction(
            hash=tx_hash, sender=sender, recipient=recipient, value=value,
            chain_id=chain_id, block_number=block,
        )
        self.receipts[tx_hash] = ChainReceipt(status=status, block_number=block)

    async def _call(self, name: str):
        self.calls.append(name)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error

    async def get_transaction(self, tx_hash):
        await self._call("get_transaction")
        return self.transactions.get(tx_hash)

    async def get_transaction_receipt(self, tx_hash):
        await self._call("get_transaction_receipt")
        return self.receipts.get(tx_hash)

    async def get_block_number(self):
        await self._call("get_block_number")
        if self.before_latest is not None:
            self.before_latest()
        return self.latest_block


@pytest.fixture
def oracle():
    return FakeOracle()
