"""Bot services, runtime connection tracking, agent capability discovery and per-bot message orchestration."""

__version__ = "0.1.0"