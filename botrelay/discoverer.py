"""Detection of agent command-line tools available on this machine."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from botrelay.models import AgentCapability, NotFoundError, new_prefixed_id

PathLookup = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class _CapabilitySeed:
    key: str
    label: str
    command: str
    supported_modes: tuple[str, ...]


_CAPABILITY_SEEDS = (
    _CapabilitySeed("codex", "Codex CLI", "codex", ("codex-exec", "codex-tmux", "codex-acp")),
    _CapabilitySeed("claude", "Claude Code", "claude", ()),
)


class _CapabilityRepository(Protocol):
    def get_by_key(self, key: str) -> AgentCapability: ...

    def upsert(self, capability: AgentCapability) -> AgentCapability: ...


class AgentCapabilityDiscoverer:
    """Scans the executable search path for known agent tools and stores the result.

    ``look_path`` maps a command name to its resolved path, or to ``None``
    when the command is not installed.
    """

    def __init__(self, repo: _CapabilityRepository, look_path: PathLookup | None = None) -> None:
        self._repo = repo
        self._look_path = look_path or shutil.which

    def refresh(self) -> list[AgentCapability]:
        items = []
        for seed in _CAPABILITY_SEEDS:
            try:
                existing: AgentCapability | None = self._repo.get_by_key(seed.key)
            except NotFoundError:
                existing = None

            capability = AgentCapability(
                id=existing.id if existing else "",
                key=seed.key,
                label=seed.label,
                command=seed.command,
                supported_modes=list(seed.supported_modes),
                available=False,
                detection_source="path_scan",
                last_detected_at=existing.last_detected_at if existing else None,
            )
            if not capability.id:
                capability.id = new_prefixed_id("cap")

            resolved = self._look_path(seed.command)
            if resolved:
                capability.command = resolved
                capability.available = True
                capability.last_detected_at = datetime.now(timezone.utc)

            items.append(self._repo.upsert(capability))
        return items