import asyncio
import json

import httpx
import pytest

from conftest import make_settings
from vaultflow.constants import ReceiptStatus
from vaultflow.errors import JobCancelledError, WalletRejectedError, WalletRPCError, is_user_rejection
from vaultflow.wallet import HttpWalletAdapter

URL = "http://wallet.test/rpc"


class Bridge:
    """Answers JSON-RPC calls from a method -> result (or callable) table."""

    def __init__(self, **results):
        self.results = results
        self.requests = []
        self.read_timeouts = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        self.read_timeouts[body["method"]] = request.extensions["timeout"]["read"]
        result = self.results[body["method"]]
        if callable(result):
            result = result(body)
        if isinstance(result, dict) and "error" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": result["error"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def methods(self):
        return [r["method"] for r in self.requests]


def _adapter(bridge: Bridge) -> HttpWalletAdapter:
    return HttpWalletAdapter(URL, poll_interval=0, transport=httpx.MockTransport(bridge))


def test_switch_chain_reads_back_active_chain():
    bridge = Bridge(wallet_switchEthereumChain=None, eth_chainId="0x530")
    active = asyncio.run(_adapter(bridge).switch_chain(1328))

    assert active == 1328
    assert bridge.requests[0]["params"] == [{"chainId": "0x530"}]
    assert bridge.methods() == ["wallet_switchEthereumChain", "eth_chainId"]


def test_user_rejection_code_maps_to_rejected_error():
    bridge = Bridge(vault_submit={"error": {"code": 4001, "message": "User rejected the request."}})
    with pytest.raises(WalletRejectedError) as exc:
        asyncio.run(_adapter(bridge).submit(1, "0xtoken", "approve", ["0xvault", 10**30]))

    assert is_user_rejection(exc.value)
    # uint256 arguments travel as strings
    assert bridge.requests[0]["params"][0]["args"] == ["0xvault", str(10**30)]


def test_other_rpc_errors_keep_their_code():
    bridge = Bridge(vault_simulate={"error": {"code": -32000, "message": "insufficient funds", "data": "0x"}})
    with pytest.raises(WalletRPCError) as exc:
        asyncio.run(_adapter(bridge).simulate(1, "0xvault", "deposit", ["0xtoken", 1]))

    assert exc.value.code == -32000
    assert not is_user_rejection(exc.value)


def test_submit_requires_a_hash():
    bridge = Bridge(vault_submit=None)
    with pytest.raises(WalletRPCError):
        asyncio.run(_adapter(bridge).submit(1, "0xtoken", "approve", []))


def test_receipt_polling_until_mined():
    answers = iter([None, None, {"status": "0x1", "blockNumber": "0x10"}])
    bridge = Bridge(eth_getTransactionReceipt=lambda body: next(answers))
    receipt = asyncio.run(_adapter(bridge).wait_for_confirmation(1, "0xabc"))

    assert receipt.ok
    assert receipt.block_number == 16
    assert bridge.methods().count("eth_getTransactionReceipt") == 3


def test_reverted_receipt():
    bridge = Bridge(eth_getTransactionReceipt={"status": "0x0", "blockNumber": "0x2"})
    receipt = asyncio.run(_adapter(bridge).wait_for_confirmation(1, "0xabc"))
    assert receipt.status == ReceiptStatus.REVERTED


def test_receipt_wait_stops_on_signal():
    bridge = Bridge(eth_getTransactionReceipt=None)

    async def main():
        signal = asyncio.Event()
        signal.set()
        await _adapter(bridge).wait_for_confirmation(1, "0xabc", signal=signal)

    with pytest.raises(JobCancelledError):
        asyncio.run(main())
    assert bridge.requests == []


def test_wait_until_ready_returns_active_chain():
    bridge = Bridge(eth_chainId="0xaa36a7")
    assert asyncio.run(_adapter(bridge).wait_until_ready(max_retries=1)) == 11155111


def test_http_timeouts_follow_settings():
    bridge = Bridge(wallet_switchEthereumChain=None, eth_chainId="0x1", vault_submit="0xh")
    settings = make_settings(presign_timeout=200.0, switch_timeout=7.0, wallet_timeout=3.0)
    adapter = HttpWalletAdapter.from_settings(settings, transport=httpx.MockTransport(bridge))

    asyncio.run(adapter.switch_chain(1))
    asyncio.run(adapter.submit(1, "0xtoken", "approve", []))

    assert bridge.read_timeouts["wallet_switchEthereumChain"] == 7.0
    assert bridge.read_timeouts["eth_chainId"] == 3.0
    # the signature wait must outlast the pre-sign timeout
    assert bridge.read_timeouts["vault_submit"] > 200.0
