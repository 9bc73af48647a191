"""Wallet adapter port and the JSON-RPC bridge implementation.

The orchestrator never signs or broadcasts itself. It reaches the user's
wallet through a ``WalletAdapter``. ``HttpWalletAdapter`` speaks JSON-RPC to
a wallet bridge (a browser extension relay or a dev signer) using the
EIP-1193 error codes, so a user declining a prompt comes back as code 4001.
"""

import asyncio
import itertools
import logging
from typing import Any, Protocol

import httpx

import vaultflow.constants as C
from vaultflow.config import Settings
from vaultflow.constants import ReceiptStatus
from vaultflow.errors import JobCancelledError, WalletRejectedError, WalletRPCError
from vaultflow.models import Receipt

log = logging.getLogger("vaultflow.wallet")


class WalletAdapter(Protocol):
    async def switch_chain(self, chain_id: int) -> int: ...
    async def simulate(self, chain_id: int, contract: str, fn: str, args: list[Any]) -> None: ...
    async def submit(self, chain_id: int, contract: str, fn: str, args: list[Any]) -> str: ...
    async def wait_for_confirmation(
        self, chain_id: int, handle: str, *, signal: asyncio.Event | None = None
    ) -> Receipt: ...


def _jsonable(args: list[Any]) -> list[Any]:
    # uint256 values do not survive a JSON number round trip
    return [str(a) if isinstance(a, int) and not isinstance(a, bool) else a for a in args]


class HttpWalletAdapter:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = C.RPC_TIMEOUT,
        poll_interval: float = C.RECEIPT_POLL_INTERVAL,
        switch_timeout: float = C.SWITCH_TIMEOUT,
        presign_timeout: float = C.PRESIGN_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.switch_timeout = switch_timeout
        self.presign_timeout = presign_timeout
        self._transport = transport
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: Settings, **kw) -> "HttpWalletAdapter":
        return cls(
            settings.wallet_url,
            timeout=settings.wallet_timeout,
            poll_interval=settings.poll_interval,
            switch_timeout=settings.switch_timeout,
            presign_timeout=settings.presign_timeout,
            **kw,
        )

    async def _post(self, method: str, params: list[Any], *, timeout: float | None = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        async with httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport) as http:
            r = await http.post(self.url, json=payload)
            r.raise_for_status()
            body = r.json()

        err = body.get("error")
        if err:
            code = err.get("code")
            message = err.get("message", "wallet error")
            if code == C.USER_REJECTION_CODE:
                raise WalletRejectedError(message, code)
            raise WalletRPCError(message, code, err.get("data"))
        return body.get("result")

    async def wait_until_ready(self, max_retries: int = 10, retry_delay: float = 2.0) -> int:
        """Wait until the bridge answers eth_chainId; returns the wallet's active chain."""
        for attempt in range(1, max_retries + 1):
            try:
                result = await self._post("eth_chainId", [])
                log.info("Wallet bridge responding (attempt %s/%s)", attempt, max_retries)
                return int(result, 16)
            except (httpx.HTTPError, WalletRPCError) as e:
                if attempt < max_retries:
                    log.info(
                        "Wallet bridge not ready yet (attempt %s/%s): %s - retrying in %ss...",
                        attempt, max_retries, e.__class__.__name__, retry_delay,
                    )
                    await asyncio.sleep(retry_delay)
                else:
                    log.error(f"Wallet bridge failed after {max_retries} attempts")
                    raise

    async def switch_chain(self, chain_id: int) -> int:
        await self._post("wallet_switchEthereumChain", [{"chainId": hex(chain_id)}], timeout=self.switch_timeout)
        active = await self._post("eth_chainId", [])
        return int(active, 16)

    async def simulate(self, chain_id: int, contract: str, fn: str, args: list[Any]) -> None:
        await self._post(
            "vault_simulate",
            [{"chainId": hex(chain_id), "to": contract, "function": fn, "args": _jsonable(args)}],
        )

    async def submit(self, chain_id: int, contract: str, fn: str, args: list[Any]) -> str:
        # blocks on the user's signature; the HTTP read outlasts the pre-sign timeout so that one fires first
        handle = await self._post(
            "vault_submit",
            [{"chainId": hex(chain_id), "to": contract, "function": fn, "args": _jsonable(args)}],
            timeout=self.presign_timeout + self.timeout,
        )
        if not isinstance(handle, str) or not handle:
            raise WalletRPCError(f"Wallet returned no transaction hash: {handle!r}")
        return handle

    async def wait_for_confirmation(
        self, chain_id: int, handle: str, *, signal: asyncio.Event | None = None
    ) -> Receipt:
        """Poll for the receipt until it is mined. Returns when status is known."""
        while True:
            if signal is not None and signal.is_set():
                raise JobCancelledError(chain_id=chain_id)
            result = await self._post("eth_getTransactionReceipt", [handle])
            if result:
                status = ReceiptStatus.SUCCESS if result.get("status") in ("0x1", 1, "success") else ReceiptStatus.REVERTED
                block = result.get("blockNumber")
                return Receipt(
                    handle=handle,
                    status=status,
                    block_number=int(block, 16) if isinstance(block, str) else block,
                )
            if signal is None:
                await asyncio.sleep(self.poll_interval)
                continue
            try:
                await asyncio.wait_for(signal.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass
