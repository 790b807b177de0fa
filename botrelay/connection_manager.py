"""Tracks the channel runtime started for each bot and mirrors its state."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, Optional, Protocol

from botrelay.models import (
    Bot,
    BotConnectionStatus,
    ChannelAccount,
    RuntimeCallbacks,
    RuntimeEvent,
    RuntimeState,
    RuntimeStateEvent,
    SessionExpiredError,
    StartRuntimeRequest,
)


class RuntimeAlreadyStartedError(Exception):
    def __init__(self, message: str = "runtime already started") -> None:
        super().__init__(message)


class _RuntimeHandle(Protocol):
    def stop(self) -> None: ...


class _RuntimeStarter(Protocol):
    def start_runtime(self, request: StartRuntimeRequest) -> _RuntimeHandle: ...


class _BotRepository(Protocol):
    def get_by_id(self, bot_id: str) -> Bot: ...

    def update(self, bot: Bot) -> Bot: ...


class _AccountRepository(Protocol):
    def get_by_id(self, account_id: str) -> ChannelAccount: ...


class _Cipher(Protocol):
    def decrypt(self, data: bytes) -> bytes: ...


def _caused_by(error: Optional[BaseException], kind: type) -> bool:
    seen = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, kind):
            return True
        seen.add(id(error))
        error = error.__cause__ or error.__context__
    return False


class BotConnectionManager:
    """Starts at most one runtime per bot and keeps bot connection state current.

    Without bot and account repositories the runtime is started with only the
    bot id; with them, the stored credentials are passed along and runtime
    state changes are written back to the bot.
    """

    def __init__(
        self,
        bots: _BotRepository | None,
        accounts: _AccountRepository | None,
        starter: _RuntimeStarter,
        *,
        cipher: _Cipher | None = None,
        logger: logging.Logger | None = None,
        on_event: Callable[[RuntimeEvent], None] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._handles: dict[str, Optional[_RuntimeHandle]] = {}
        self._bots = bots
        self._accounts = accounts
        self._starter = starter
        self._cipher = cipher
        self._logger = logger or logging.getLogger(__name__)
        self._on_event = on_event

    def start(self, bot_id: str) -> None:
        """Start the bot's runtime, raising RuntimeAlreadyStartedError if one exists."""
        with self._lock:
            if bot_id in self._handles:
                raise RuntimeAlreadyStartedError()
            self._handles[bot_id] = None

        try:
            request = self._build_request(bot_id)
            handle = self._starter.start_runtime(request)
        except BaseException:
            self._release_reservation(bot_id)
            raise

        with self._lock:
            claimed = bot_id in self._handles and self._handles[bot_id] is None
            if claimed:
                self._handles[bot_id] = handle
        if not claimed:
            handle.stop()
            raise RuntimeAlreadyStartedError()

    def active(self, bot_id: str) -> bool:
        """Whether a runtime for the bot is running or being started."""
        with self._lock:
            return bot_id in self._handles

    def _build_request(self, bot_id: str) -> StartRuntimeRequest:
        if self._bots is None or self._accounts is None:
            return StartRuntimeRequest(bot_id=bot_id)
        bot = self._bots.get_by_id(bot_id)
        account = self._accounts.get_by_id(bot.channel_account_id)
        payload = account.credential_ciphertext
        if self._cipher is not None:
            payload = self._cipher.decrypt(account.credential_ciphertext)
        return StartRuntimeRequest(
            bot_id=bot.id,
            channel_type=bot.channel_type,
            account_uid=account.account_uid,
            credential_payload=payload,
            credential_version=account.credential_version,
            callbacks=RuntimeCallbacks(
                on_event=self._forward_event,
                on_state=lambda event: self._handle_state(bot, event),
            ),
        )

    def _forward_event(self, event: RuntimeEvent) -> None:
        self._logger.info(
            "runtime message bot_id=%s channel_type=%s message_id=%s from=%s text=%s context_token=%s",
            event.bot_id,
            event.channel_type,
            event.message_id,
            event.sender,
            event.text,
            event.reply_target.metadata_value("context_token"),
        )
        if self._on_event is not None:
            self._on_event(event)

    def _release_reservation(self, bot_id: str) -> None:
        with self._lock:
            if bot_id in self._handles and self._handles[bot_id] is None:
                del self._handles[bot_id]

    def _remove(self, bot_id: str) -> None:
        with self._lock:
            self._handles.pop(bot_id, None)

    def _save(self, bot: Bot) -> None:
        try:
            self._bots.update(bot)
        except Exception:
            self._logger.warning("bot state update failed bot_id=%s", bot.id, exc_info=True)

    def _handle_state(self, bot: Bot, event: RuntimeStateEvent) -> None:
        if event.state == RuntimeState.CONNECTED:
            self._save(replace(bot, connection_status=BotConnectionStatus.CONNECTED, connection_error=""))
        elif event.state == RuntimeState.ERROR:
            if _caused_by(event.error, SessionExpiredError):
                status = BotConnectionStatus.LOGIN_REQUIRED
            else:
                status = BotConnectionStatus.ERROR
            updated = replace(bot, connection_status=status)
            if event.error is not None:
                updated.connection_error = str(event.error)
            self._save(updated)
            self._remove(bot.id)
        elif event.state == RuntimeState.STOPPED:
            self._remove(bot.id)