import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import vaultflow.constants as C

pkg_root = Path(__file__).parent
config_file = Path(os.getenv("VAULTFLOW_CONFIG", pkg_root / "config.toml"))


@dataclass(frozen=True, slots=True)
class ChainConfig:
    id: int
    name: str
    token: str
    vault: str
    decimals: int = 6
    explorer: str | None = None

    def tx_url(self, handle: str) -> str | None:
        if not self.explorer:
            return None
        return f"{self.explorer.rstrip('/')}/tx/{handle}"


@dataclass(frozen=True, slots=True)
class Settings:
    chains: dict[int, ChainConfig] = field(default_factory=dict)
    concurrency: int = C.DEFAULT_CONCURRENCY
    dispatch_interval: float = C.DEFAULT_DISPATCH_INTERVAL
    presign_timeout: float = C.PRESIGN_TIMEOUT
    confirmation_timeout: float = C.CONFIRMATION_TIMEOUT
    switch_timeout: float = C.SWITCH_TIMEOUT
    switch_attempts: int = C.SWITCH_ATTEMPTS
    simulation_attempts: int = C.SIMULATION_ATTEMPTS
    confirmation_attempts: int = C.CONFIRMATION_ATTEMPTS
    retry_base_delay: float = C.RETRY_BASE_DELAY
    ledger_path: str = "vaultflow_ledger.db"
    wallet_url: str = "http://localhost:8545"
    wallet_timeout: float = C.RPC_TIMEOUT
    poll_interval: float = C.RECEIPT_POLL_INTERVAL

    def chain(self, chain_id: int) -> ChainConfig | None:
        return self.chains.get(chain_id)


def settings_from_dict(raw: dict, env: dict | None = None) -> Settings:
    """Build Settings from a parsed config.toml, applying environment overrides on top."""
    env = os.environ if env is None else env
    queue = raw.get("queue", {})
    to = raw.get("timeouts", {})
    retry = raw.get("retry", {})
    wallet = raw.get("wallet", {})

    chains = {}
    for c in raw.get("chains", []):
        chain = ChainConfig(
            id=int(c["id"]),
            name=c.get("name", str(c["id"])),
            token=c["token"],
            vault=c["vault"],
            decimals=int(c.get("decimals", 6)),
            explorer=c.get("explorer"),
        )
        chains[chain.id] = chain

    return Settings(
        chains=chains,
        concurrency=int(env.get("QUEUE_CONCURRENCY", queue.get("concurrency", C.DEFAULT_CONCURRENCY))),
        dispatch_interval=float(queue.get("dispatch_interval", C.DEFAULT_DISPATCH_INTERVAL)),
        presign_timeout=float(env.get("PRESIGN_TIMEOUT", to.get("presign", C.PRESIGN_TIMEOUT))),
        confirmation_timeout=float(to.get("confirmation", C.CONFIRMATION_TIMEOUT)),
        switch_timeout=float(to.get("switch", C.SWITCH_TIMEOUT)),
        switch_attempts=int(retry.get("switch_attempts", C.SWITCH_ATTEMPTS)),
        simulation_attempts=int(retry.get("simulation_attempts", C.SIMULATION_ATTEMPTS)),
        confirmation_attempts=int(retry.get("confirmation_attempts", C.CONFIRMATION_ATTEMPTS)),
        retry_base_delay=float(retry.get("base_delay", C.RETRY_BASE_DELAY)),
        ledger_path=env.get("LEDGER_DB", raw.get("ledger", {}).get("path", "vaultflow_ledger.db")),
        wallet_url=env.get("WALLET_URL", wallet.get("url", "http://localhost:8545")),
        wallet_timeout=float(wallet.get("timeout", C.RPC_TIMEOUT)),
        poll_interval=float(wallet.get("poll_interval", C.RECEIPT_POLL_INTERVAL)),
    )


cfg = tomllib.loads(config_file.read_text())


def load_settings(path: str | Path | None = None) -> Settings:
    raw = cfg if path is None else tomllib.loads(Path(path).read_text())
    return settings_from_dict(raw)
