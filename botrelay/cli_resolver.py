"""Turns a bot's stored agent configuration into a runnable agent spec."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Protocol

from botrelay.models import AgentCapability, Bot, NotFoundError, Spec


class BotCLIConfigMissingError(Exception):
    def __init__(self, message: str = "bot cli config missing") -> None:
        super().__init__(message)


class BotCLIUnavailableError(Exception):
    def __init__(self, message: str = "bot cli unavailable") -> None:
        super().__init__(message)


class BotCLIUnsupportedModeError(Exception):
    def __init__(self, message: str = "bot cli mode unsupported") -> None:
        super().__init__(message)


class _BotRepository(Protocol):
    def get_by_id(self, bot_id: str) -> Bot: ...


class _CapabilityRepository(Protocol):
    def get_by_id(self, capability_id: str) -> AgentCapability: ...


@dataclass
class BotCLIResolverConfig:
    """Resolver settings. The timeout is in seconds."""

    timeout: float = 0.0
    workspace_root: str = ""
    sqlite_path: str = ""


class BotCLIResolver:
    def __init__(
        self,
        bots: _BotRepository,
        capabilities: _CapabilityRepository,
        config: BotCLIResolverConfig | None = None,
    ) -> None:
        config = config or BotCLIResolverConfig()
        self._bots = bots
        self._capabilities = capabilities
        self._timeout = config.timeout
        self._workspace_root = config.workspace_root
        self._sqlite_path = config.sqlite_path

    def resolve(self, bot_id: str) -> Spec:
        """Build the agent spec for a bot, creating its workspace if configured."""
        bot = self._bots.get_by_id(bot_id)
        if not bot.agent_capability_id or not bot.agent_mode:
            raise BotCLIConfigMissingError()
        try:
            capability = self._capabilities.get_by_id(bot.agent_capability_id)
        except NotFoundError as exc:
            raise BotCLIConfigMissingError() from exc
        if not capability.available:
            raise BotCLIUnavailableError()
        if bot.agent_mode not in capability.supported_modes:
            raise BotCLIUnsupportedModeError()
        if not capability.command:
            raise BotCLIConfigMissingError()

        spec = Spec(
            bot_id=bot_id,
            bot_name=bot.name,
            type=bot.agent_mode,
            command=capability.command,
            args=list(capability.args),
            timeout=self._timeout_for_mode(bot.agent_mode),
            sqlite_path=self._sqlite_path,
        )
        if self._workspace_root:
            spec.work_dir = os.path.join(self._workspace_root, bot_id, "workspace")
            os.makedirs(spec.work_dir, mode=0o755, exist_ok=True)
        return spec

    def _timeout_for_mode(self, mode: str) -> float:
        return self._timeout