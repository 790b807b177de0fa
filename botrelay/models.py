"""Domain records, runtime messages and errors shared across the package."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

_CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def _string_list() -> Any:
    return field(default_factory=list)


class NotFoundError(LookupError):
    """A requested record does not exist."""

    def __init__(self, message: str = "not found") -> None:
        super().__init__(message)


class InvalidArgumentError(ValueError):
    """A caller supplied missing or malformed input."""

    def __init__(self, message: str = "invalid argument") -> None:
        super().__init__(message)


class SessionExpiredError(Exception):
    """The channel session is no longer valid and a new login is needed."""

    base_message = "wechat session expired"

    def __init__(self, detail: str = "") -> None:
        message = f"{self.base_message}: {detail}" if detail else self.base_message
        super().__init__(message)
        self.detail = detail


class BotConnectionStatus(str, Enum):
    LOGIN_REQUIRED = "login_required"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class BindingStatus(str, Enum):
    PENDING = "pending"
    QR_READY = "qr_ready"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"


class RuntimeState(str, Enum):
    CONNECTED = "connected"
    ERROR = "error"
    STOPPED = "stopped"


@dataclass
class _Record:
    id: str = ""


@dataclass
class _ChannelOwned(_Record):
    user_id: str = ""
    channel_type: str = ""


@dataclass
class _AgentChoice:
    agent_capability_id: str = ""
    agent_mode: str = ""


@dataclass
class _BotScoped:
    bot_id: str = ""


@dataclass
class _BotChannel(_BotScoped):
    channel_type: str = ""


@dataclass
class _CapabilityInfo(_Record):
    key: str = ""
    label: str = ""
    command: str = ""
    available: bool = False
    detection_source: str = ""
    supported_modes: list[str] = _string_list()


@dataclass
class User(_Record):
    external_user_id: str = ""


@dataclass
class Bot(_ChannelOwned, _AgentChoice):
    name: str = ""
    connection_status: str = ""
    connection_error: str = ""
    channel_account_id: str = ""


@dataclass
class ChannelAccount(_ChannelOwned):
    account_uid: str = ""
    display_name: str = ""
    avatar_url: str = ""
    credential_ciphertext: bytes = b""
    credential_version: int = 0
    last_bound_at: Optional[datetime] = None


@dataclass
class ChannelBinding(_ChannelOwned, _BotScoped):
    status: str = ""
    provider_binding_ref: str = ""
    qr_code_payload: str = ""
    expires_at: Optional[datetime] = None
    error_message: str = ""
    channel_account_id: str = ""
    finished_at: Optional[datetime] = None


@dataclass
class AgentCapability(_CapabilityInfo):
    args: list[str] = _string_list()
    last_detected_at: Optional[datetime] = None


@dataclass
class Spec(_BotScoped):
    """How to run the agent behind one bot. The timeout is in seconds."""

    bot_name: str = ""
    type: str = ""
    command: str = ""
    args: list[str] = _string_list()
    timeout: float = 0.0
    work_dir: str = ""
    sqlite_path: str = ""
    queue_size: int = 0


@dataclass
class Request(_BotScoped):
    user_id: str = ""
    message_id: str = ""
    prompt: str = ""


@dataclass
class Response:
    text: str = ""
    runtime_type: str = ""


@dataclass
class ReplyTarget:
    channel_type: str = ""
    recipient_id: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    def metadata_value(self, key: str) -> str:
        """Return the metadata entry for key, or an empty string."""
        return (self.metadata or {}).get(key, "")


@dataclass
class RuntimeEvent(_BotChannel):
    message_id: str = ""
    sender: str = ""
    text: str = ""
    reply_target: ReplyTarget = field(default_factory=ReplyTarget)


@dataclass
class RuntimeStateEvent(_BotChannel):
    state: str = ""
    error: Optional[BaseException] = None


@dataclass
class RuntimeCallbacks:
    on_event: Optional[Callable[[RuntimeEvent], None]] = None
    on_state: Optional[Callable[[RuntimeStateEvent], None]] = None


@dataclass
class StartRuntimeRequest(_BotChannel):
    account_uid: str = ""
    credential_payload: bytes = b""
    credential_version: int = 0
    callbacks: RuntimeCallbacks = field(default_factory=RuntimeCallbacks)


def _ulid() -> str:
    value = ((time.time_ns() // 1_000_000) << 80) | secrets.randbits(80)
    chars = []
    for _ in range(26):
        value, index = divmod(value, 32)
        chars.append(_CROCKFORD_ALPHABET[index])
    return "".join(reversed(chars))


def new_prefixed_id(prefix: str) -> str:
    """Return a new time-ordered unique identifier such as ``bot_01H...``."""
    return f"{prefix}_{_ulid()}"