"""Multi-chain approval/deposit orchestrator."""

__version__ = "0.1.0"
