from pixrepo.uploads.backend import UploadSession


class MemorySessionStore:
    """Process-local session store.

    Only valid when a single process serves every request of an upload.
    """

    def __init__(self):
        self._sessions: dict[str, UploadSession] = {}
        self._chunks: dict[str, dict[int, bytes]] = {}

    async def save_session(self, session: UploadSession) -> None:
        self._sessions[session.session_id] = session
        self._chunks.setdefault(session.session_id, {})

    async def load_session(self, session_id: str) -> UploadSession | None:
        return self._sessions.get(session_id)

    async def write_chunk(self, session_id: str, index: int, data: bytes) -> None:
        self._chunks.setdefault(session_id, {})[index] = data

    async def chunk_indexes(self, session_id: str) -> set[int]:
        return set(self._chunks.get(session_id, {}))

    async def read_chunks(self, session_id: str) -> dict[int, bytes]:
        return dict(self._chunks.get(session_id, {}))

    async def delete_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._chunks.pop(session_id, None)

    async def delete_expired(self, now: float) -> list[str]:
        expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for session_id in expired:
            await self.delete_session(session_id)
        return expired
