import asyncio

import pytest

from vaultflow.config import ChainConfig, Settings
from vaultflow.constants import ReceiptStatus
from vaultflow.ledger import InMemoryLedgerStore
from vaultflow.models import Receipt
from vaultflow.orchestrator import Orchestrator

CHAIN_A = 1
CHAIN_B = 2
TOKEN = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
VAULT = "0xaaaac415c0719cff6BAe3816FE244589442db46C"


def make_settings(**overrides) -> Settings:
    chains = {
        CHAIN_A: ChainConfig(id=CHAIN_A, name="Alpha", token=TOKEN, vault=VAULT, decimals=6),
        CHAIN_B: ChainConfig(id=CHAIN_B, name="Beta", token=TOKEN, vault=VAULT, decimals=6),
    }
    values = dict(
        chains=chains,
        concurrency=1,
        dispatch_interval=0.0,
        presign_timeout=5.0,
        confirmation_timeout=5.0,
        switch_timeout=5.0,
        retry_base_delay=0.0,
    )
    values.update(overrides)
    return Settings(**values)


class FakeWallet:
    """Scripted wallet adapter.

    Failures are keyed by (chain_id, fn) where fn is "approve" or "deposit".
    """

    def __init__(self, active_chain: int | None = None) -> None:
        self.active = active_chain
        self.calls: list[tuple] = []
        self.switch_fail: dict[int, Exception] = {}
        self.simulate_fail: dict[tuple[int, str], Exception] = {}
        self.submit_fail: dict[tuple[int, str], Exception] = {}
        self.submit_block: set[tuple[int, str]] = set()
        self.revert: set[tuple[int, str]] = set()
        self.block_confirmation: set[tuple[int, str]] = set()
        self.handles: dict[str, tuple[int, str]] = {}
        self._n = 0

    def count(self, name: str, chain_id: int | None = None, fn: str | None = None) -> int:
        return sum(
            1 for c in self.calls
            if c[0] == name
            and (chain_id is None or c[1] == chain_id)
            and (fn is None or (len(c) > 2 and c[2] == fn))
        )

    async def switch_chain(self, chain_id: int) -> int:
        self.calls.append(("switch", chain_id))
        if chain_id in self.switch_fail:
            raise self.switch_fail[chain_id]
        self.active = chain_id
        return chain_id

    async def simulate(self, chain_id, contract, fn, args) -> None:
        self.calls.append(("simulate", chain_id, fn))
        if (chain_id, fn) in self.simulate_fail:
            raise self.simulate_fail[(chain_id, fn)]

    async def submit(self, chain_id, contract, fn, args) -> str:
        self.calls.append(("submit", chain_id, fn))
        if (chain_id, fn) in self.submit_fail:
            raise self.submit_fail[(chain_id, fn)]
        if (chain_id, fn) in self.submit_block:
            await asyncio.Event().wait()
        self._n += 1
        handle = f"0x{fn}-{chain_id}-{self._n}"
        self.handles[handle] = (chain_id, fn)
        return handle

    async def wait_for_confirmation(self, chain_id, handle, *, signal=None) -> Receipt:
        key = self.handles.get(handle, (chain_id, None))
        self.calls.append(("wait", chain_id, key[1]))
        if key in self.block_confirmation:
            await asyncio.Event().wait()
        status = ReceiptStatus.REVERTED if key in self.revert else ReceiptStatus.SUCCESS
        return Receipt(handle=handle, status=status, block_number=1)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def orch(settings, wallet, store):
    return Orchestrator(settings, wallet, store=store)
