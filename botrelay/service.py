"""Bot lifecycle: creation, channel login, agent configuration and listing."""

from __future__ import annotations

from copy import copy
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from botrelay.connection_manager import BotConnectionManager
from botrelay.models import (
    BindingStatus,
    Bot,
    BotConnectionStatus,
    ChannelAccount,
    ChannelBinding,
    InvalidArgumentError,
    _AgentChoice,
    _CapabilityInfo,
    new_prefixed_id,
)


def _text(value: Any) -> str:
    return value.value if isinstance(value, Enum) else value


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CreateBotInput(_AgentChoice):
    external_user_id: str = ""
    name: str = ""
    channel_type: str = ""


@dataclass
class BotListItem(_AgentChoice):
    bot_id: str = ""
    name: str = ""
    channel_type: str = ""
    connection_status: str = ""
    channel_account_id: str = ""

    @classmethod
    def from_bot(cls, bot: Bot):
        return cls(
            bot_id=bot.id,
            name=bot.name,
            channel_type=bot.channel_type,
            connection_status=bot.connection_status,
            channel_account_id=bot.channel_account_id,
            agent_capability_id=bot.agent_capability_id,
            agent_mode=bot.agent_mode,
        )


@dataclass
class CreateBotOutput(BotListItem):
    """The bot as it was stored on creation."""


@dataclass
class StartBotLoginInput:
    bot_id: str = ""


@dataclass
class StartBotLoginOutput:
    bot_id: str = ""
    binding_id: str = ""
    status: str = ""
    qr_code_payload: str = ""
    qr_share_url: str = ""
    expires_at: Optional[datetime] = None


@dataclass
class RefreshBotLoginOutput(StartBotLoginOutput):
    channel_account_id: str = ""
    connection_status: str = ""


@dataclass
class ConfigureBotAgentInput(_AgentChoice):
    bot_id: str = ""


@dataclass
class AgentCapabilityListItem(_CapabilityInfo):
    """A capability as shown to callers."""


class BotService:
    """Application operations on bots and their channel logins."""

    def __init__(
        self,
        users: Any,
        bots: Any,
        bindings: Any,
        accounts: Any,
        capabilities: Any,
        cipher: Any,
        provider: Any,
        runtimes: Optional[BotConnectionManager] = None,
    ) -> None:
        self._users = users
        self._bots = bots
        self._bindings = bindings
        self._accounts = accounts
        self._capabilities = capabilities
        self._cipher = cipher
        self._provider = provider
        self._runtimes = runtimes
        self._capability_discoverer: Any = None

    def set_capability_discoverer(self, discoverer: Any) -> None:
        self._capability_discoverer = discoverer

    def create_bot(self, input: CreateBotInput) -> CreateBotOutput:
        if not input.external_user_id or not input.name or not input.channel_type:
            raise InvalidArgumentError()
        user = self._users.find_or_create_by_external_user_id(input.external_user_id)
        bot = self._bots.create(
            Bot(
                id=new_prefixed_id("bot"),
                user_id=user.id,
                name=input.name,
                channel_type=input.channel_type,
                connection_status=BotConnectionStatus.LOGIN_REQUIRED,
                agent_capability_id=input.agent_capability_id,
                agent_mode=input.agent_mode,
            )
        )
        return CreateBotOutput.from_bot(bot)

    def delete_bot(self, bot_id: str) -> None:
        """Delete a bot together with all of its channel bindings."""
        if not bot_id:
            raise InvalidArgumentError()
        self._bots.get_by_id(bot_id)
        self._bindings.delete_by_bot_id(bot_id)
        self._bots.delete_by_id(bot_id)

    def list_bots(self, external_user_id: str) -> list[BotListItem]:
        if not external_user_id:
            raise InvalidArgumentError()
        user = self._users.find_or_create_by_external_user_id(external_user_id)
        return [BotListItem.from_bot(bot) for bot in self._bots.list_by_user_id(user.id)]

    def configure_bot_agent(self, input: ConfigureBotAgentInput) -> BotListItem:
        if not input.bot_id or not input.agent_capability_id or not input.agent_mode:
            raise InvalidArgumentError()
        bot = self._bots.get_by_id(input.bot_id)
        bot.agent_capability_id = input.agent_capability_id
        bot.agent_mode = input.agent_mode
        return BotListItem.from_bot(self._bots.update(bot))

    def list_agent_capabilities(self) -> list[AgentCapabilityListItem]:
        """List stored agent capabilities, rescanning the environment first if possible."""
        if self._capability_discoverer is not None:
            self._capability_discoverer.refresh()
        names = [item.name for item in fields(AgentCapabilityListItem)]
        return [
            AgentCapabilityListItem(**{name: copy(getattr(capability, name)) for name in names})
            for capability in self._capabilities.list()
        ]

    def start_login(self, input: StartBotLoginInput) -> StartBotLoginOutput:
        """Open a new channel binding for the bot and return its QR code."""
        if not input.bot_id:
            raise InvalidArgumentError()
        bot = self._bots.get_by_id(input.bot_id)
        binding_id = new_prefixed_id("bind")
        binding = self._bindings.create(
            ChannelBinding(
                id=binding_id,
                bot_id=bot.id,
                user_id=bot.user_id,
                channel_type=bot.channel_type,
                status=BindingStatus.PENDING,
            )
        )
        try:
            result = self._provider.create_binding(binding_id, bot.channel_type)
        except Exception as exc:
            binding.status = BindingStatus.FAILED
            binding.error_message = str(exc)
            binding.finished_at = _now()
            try:
                self._bindings.update(binding)
            except Exception:
                pass
            raise
        binding.status = BindingStatus.QR_READY
        binding.provider_binding_ref = result.provider_binding_ref
        binding.qr_code_payload = result.qr_code_payload
        binding.expires_at = result.expires_at
        binding = self._bindings.update(binding)
        return StartBotLoginOutput(
            bot_id=bot.id,
            binding_id=binding.id,
            status=binding.status,
            qr_code_payload=binding.qr_code_payload,
            qr_share_url=result.qr_share_url,
            expires_at=binding.expires_at,
        )

    def refresh_login(self, binding_id: str) -> RefreshBotLoginOutput:
        """Poll the provider for a binding and apply a confirmation or failure."""
        if not binding_id:
            raise InvalidArgumentError()
        binding = self._bindings.get_by_id(binding_id)
        bot = self._bots.get_by_id(binding.bot_id)
        result = self._provider.refresh_binding(binding.provider_binding_ref)

        binding.status = result.provider_status
        binding.qr_code_payload = result.qr_code_payload
        if result.expires_at is not None:
            binding.expires_at = result.expires_at
        binding.error_message = result.error_message

        if result.provider_status == BindingStatus.CONFIRMED:
            self._confirm(binding, bot, result)
        elif result.provider_status in (BindingStatus.FAILED, BindingStatus.EXPIRED):
            binding.finished_at = _now()
            bot.connection_status = BotConnectionStatus.ERROR
            bot.connection_error = result.error_message or _text(result.provider_status)
            self._bots.update(bot)

        binding = self._bindings.update(binding)
        bot = self._bots.get_by_id(bot.id)
        return RefreshBotLoginOutput(
            bot_id=bot.id,
            binding_id=binding.id,
            status=binding.status,
            qr_code_payload=binding.qr_code_payload,
            qr_share_url=binding.qr_code_payload,
            expires_at=binding.expires_at,
            channel_account_id=binding.channel_account_id,
            connection_status=bot.connection_status,
        )

    def _confirm(self, binding: ChannelBinding, bot: Bot, result: Any) -> None:
        now = _now()
        ciphertext = self._cipher.encrypt(result.credential_payload)
        account = self._accounts.upsert(
            ChannelAccount(
                id=new_prefixed_id("acct"),
                user_id=bot.user_id,
                channel_type=bot.channel_type,
                account_uid=result.account_uid,
                display_name=result.display_name,
                avatar_url=result.avatar_url,
                credential_ciphertext=ciphertext,
                credential_version=result.credential_version,
                last_bound_at=now,
            )
        )
        binding.channel_account_id = account.id
        binding.finished_at = now
        bot.channel_account_id = account.id
        bot.connection_status = BotConnectionStatus.CONNECTING
        bot.connection_error = ""
        self._bots.update(bot)
        if self._runtimes is None:
            return
        try:
            self._runtimes.start(bot.id)
        except Exception as exc:
            self._bindings.update(binding)
            bot.connection_status = BotConnectionStatus.ERROR
            bot.connection_error = str(exc)
            try:
                self._bots.update(bot)
            except Exception:
                pass
            raise