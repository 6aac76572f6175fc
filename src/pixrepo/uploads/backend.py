from dataclasses import asdict, dataclass
from typing import Protocol, runtime_checkable


@dataclass
class UploadSession:
    session_id: str
    file_name: str
    file_size: int
    total_chunks: int
    mime_type: str
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "UploadSession":
        return cls(
            session_id=data["session_id"],
            file_name=data["file_name"],
            file_size=int(data["file_size"]),
            total_chunks=int(data["total_chunks"]),
            mime_type=data["mime_type"],
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
        )


@runtime_checkable
class UploadSessionStore(Protocol):
    async def save_session(self, session: UploadSession) -> None: ...

    async def load_session(self, session_id: str) -> UploadSession | None: ...

    async def write_chunk(self, session_id: str, index: int, data: bytes) -> None: ...

    async def chunk_indexes(self, session_id: str) -> set[int]: ...

    async def read_chunks(self, session_id: str) -> dict[int, bytes]: ...

    async def delete_session(self, session_id: str) -> None: ...

    async def delete_expired(self, now: float) -> list[str]: ...
