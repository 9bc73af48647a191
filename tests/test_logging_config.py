from vaultflow.logging_config import QUIET_LOGGERS, build_logging_config, parse_levels


def test_parse_levels_skips_malformed_entries():
    assert parse_levels("vaultflow.scheduler=debug, vaultflow.wallet=WARNING,junk,=INFO,x=") == {
        "vaultflow.scheduler": "DEBUG",
        "vaultflow.wallet": "WARNING",
    }
    assert parse_levels("") == {}


def test_file_handler_is_optional():
    cfg = build_logging_config("INFO", None)
    assert list(cfg["handlers"]) == ["console"]
    assert cfg["loggers"]["vaultflow"]["handlers"] == ["console"]
    assert cfg["root"]["handlers"] == ["console"]

    cfg = build_logging_config("INFO", "/tmp/vf-test.log")
    assert cfg["handlers"]["file"]["filename"] == "/tmp/vf-test.log"
    assert cfg["loggers"]["vaultflow"]["handlers"] == ["console", "file"]


def test_overrides_set_child_levels():
    cfg = build_logging_config("info", "", {"vaultflow.scheduler": "DEBUG", "httpx": "INFO"})
    assert cfg["loggers"]["vaultflow"]["level"] == "info"
    assert cfg["loggers"]["vaultflow.scheduler"] == {"propagate": True, "level": "DEBUG"}
    # an override of a quieted library keeps its handlers
    assert cfg["loggers"]["httpx"]["level"] == "INFO"
    assert cfg["loggers"]["httpx"]["handlers"] == ["console"]
    assert all(cfg["loggers"][n]["propagate"] is False for n in QUIET_LOGGERS)
