"""Client session context threaded through every chat operation."""

from __future__ import annotations

from dataclasses import dataclass

from tutorchat.client.storage import SESSION_KEY, TOKEN_KEY, USER_KEY, MemoryStorage, Storage


@dataclass(frozen=True)
class RequestContext:
    """Snapshot of the credential and active conversation taken when an operation starts."""

    token: str | None
    session_id: str | None


class ClientContext:
    """Read-mostly view over the bearer credential and the active conversation id."""

    def __init__(self, storage: Storage | None = None) -> None:
        self._storage = storage or MemoryStorage()

    @property
    def token(self) -> str | None:
        return self._storage.get(TOKEN_KEY) or None

    def set_token(self, token: str) -> None:
        self._storage.set(TOKEN_KEY, token)

    @property
    def session_id(self) -> str | None:
        return self._storage.get(SESSION_KEY) or None

    def set_session_id(self, session_id: str) -> None:
        self._storage.set(SESSION_KEY, session_id)

    def clear_session(self) -> None:
        self._storage.delete(SESSION_KEY)

    def clear_credentials(self) -> None:
        self._storage.delete(TOKEN_KEY)
        self._storage.delete(USER_KEY)

    def snapshot(self) -> RequestContext:
        return RequestContext(token=self.token, session_id=self.session_id)
