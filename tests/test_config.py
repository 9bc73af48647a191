from vaultflow.config import load_settings, settings_from_dict

RAW = {
    "queue": {"concurrency": 1, "dispatch_interval": 0.5},
    "timeouts": {"presign": 30, "confirmation": 120},
    "retry": {"switch_attempts": 4},
    "wallet": {"url": "http://bridge:8545"},
    "ledger": {"path": "x.db"},
    "chains": [
        {"id": 5, "name": "Five", "token": "0x" + "1" * 40, "vault": "0x" + "2" * 40, "decimals": 18},
    ],
}


def test_settings_from_dict():
    s = settings_from_dict(RAW, env={})
    assert s.concurrency == 1
    assert s.dispatch_interval == 0.5
    assert s.presign_timeout == 30.0
    assert s.confirmation_timeout == 120.0
    assert s.switch_attempts == 4
    assert s.wallet_url == "http://bridge:8545"
    assert s.ledger_path == "x.db"
    assert s.chain(5).decimals == 18
    assert s.chain(6) is None


def test_env_overrides_file():
    env = {"QUEUE_CONCURRENCY": "3", "WALLET_URL": "http://other", "LEDGER_DB": "/tmp/l.db", "PRESIGN_TIMEOUT": "9"}
    s = settings_from_dict(RAW, env=env)
    assert s.concurrency == 3
    assert s.wallet_url == "http://other"
    assert s.ledger_path == "/tmp/l.db"
    assert s.presign_timeout == 9.0


def test_packaged_config_has_default_chains():
    s = load_settings()
    assert set(s.chains) == {11155111, 1328}
    assert s.concurrency >= 1
    assert s.presign_timeout == 60.0
    assert s.chain(11155111).tx_url("0xabc") == "https://sepolia.etherscan.io/tx/0xabc"
