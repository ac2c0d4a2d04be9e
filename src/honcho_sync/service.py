"""Knowledge-service collaborator protocol and shared message type."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from honcho_sync.config import ResolvedConfig


@dataclass
class OutboundMessage:
    """A message on its way to a remote session."""

    content: str
    peer_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class KnowledgeService(Protocol):
    """Remote knowledge service. Every call may raise; callers fall back to local state."""

    async def resolve_workspace(self, name: str) -> str:
        """Get or create a workspace, returning its id."""
        ...

    async def resolve_peer(self, name: str) -> str:
        ...

    async def resolve_session(self, name: str) -> str:
        ...

    async def fetch_context(
        self,
        peer_id: str,
        *,
        session_id: str | None = None,
        search_query: str | None = None,
        max_conclusions: int | None = None,
    ) -> Any:
        """Return an opaque context payload for the peer."""
        ...

    async def send_messages(self, session_id: str, messages: list[OutboundMessage]) -> Any:
        ...


# Builds a service client for one resolved configuration.
ServiceFactory = Callable[["ResolvedConfig"], KnowledgeService]
