import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from pixrepo.errors import IncompleteError, SessionExpired, SessionNotFound, ValidationError
from pixrepo.uploads.backend import UploadSession, UploadSessionStore
from pixrepo.validation import check_image_type, normalize_file_name

DEFAULT_TTL_SECONDS = 10 * 60


@dataclass
class ChunkReceipt:
    chunk_index: int
    uploaded_chunks: int
    total_chunks: int

    @property
    def progress_percent(self) -> int:
        return int(self.uploaded_chunks * 100 // self.total_chunks)


@dataclass
class AssembledUpload:
    session: UploadSession
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def _require_positive_int(value, field: str) -> int:
    if value is None or value == "":
        raise ValidationError(f"Missing required parameter: {field}", field=field)
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field=field)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field=field)
    if number <= 0:
        raise ValidationError(f"{field} must be greater than zero", field=field)
    return number


def _is_session_id(session_id: str) -> bool:
    try:
        return str(uuid.UUID(session_id)) == session_id
    except (TypeError, ValueError, AttributeError):
        return False


class UploadSessionManager:
    """Reassembles uploads delivered as indexed chunks across requests.

    Chunks may arrive in any order and be resent; completeness is only
    checked at ``complete()``. Expiry is driven by ``sweep_expired()``, which
    the API layer calls at the start of every request.
    """

    def __init__(
        self,
        store: UploadSessionStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_total_chunks: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_total_chunks = max_total_chunks
        self.clock = clock

    async def create_session(
        self,
        file_name: Optional[str],
        file_size,
        total_chunks,
        mime_type: Optional[str],
    ) -> str:
        if not file_name or not str(file_name).strip():
            raise ValidationError("Missing required parameter: fileName", field="fileName")
        if not mime_type:
            raise ValidationError("Missing required parameter: mimeType", field="mimeType")
        check_image_type(mime_type)
        normalize_file_name(str(file_name), mime_type)
        file_size = _require_positive_int(file_size, "fileSize")
        total_chunks = _require_positive_int(total_chunks, "totalChunks")
        if total_chunks > self.max_total_chunks:
            raise ValidationError(
                f"totalChunks may not exceed {self.max_total_chunks}", field="totalChunks"
            )
        if total_chunks > file_size:
            raise ValidationError(
                "totalChunks may not exceed fileSize, every chunk carries at least one byte",
                field="totalChunks",
            )

        now = self.clock()
        session = UploadSession(
            session_id=str(uuid.uuid4()),
            file_name=str(file_name).strip(),
            file_size=file_size,
            total_chunks=total_chunks,
            mime_type=mime_type,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        await self.store.save_session(session)
        logger.info(
            f"Created upload session {session.session_id}: file={session.file_name}, "
            f"size={file_size}, chunks={total_chunks}"
        )
        return session.session_id

    async def _get_live_session(self, session_id: Optional[str]) -> UploadSession:
        if not session_id:
            raise ValidationError("Missing required parameter: sessionId", field="sessionId")
        # ids double as storage keys and directory names
        if not _is_session_id(session_id):
            raise SessionNotFound(session_id)
        session = await self.store.load_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.is_expired(self.clock()):
            await self.store.delete_session(session_id)
            raise SessionExpired(session_id)
        return session

    async def get_session(self, session_id: str) -> UploadSession:
        return await self._get_live_session(session_id)

    async def ingest_chunk(
        self,
        session_id: Optional[str],
        chunk_index,
        total_chunks,
        data: Optional[bytes],
    ) -> ChunkReceipt:
        session = await self._get_live_session(session_id)

        if chunk_index is None or chunk_index == "":
            raise ValidationError("Missing required parameter: chunkIndex", field="chunkIndex")
        try:
            chunk_index = int(chunk_index)
        except (TypeError, ValueError):
            raise ValidationError("chunkIndex must be an integer", field="chunkIndex")
        if not 0 <= chunk_index < session.total_chunks:
            raise ValidationError(
                f"chunkIndex {chunk_index} is outside 0..{session.total_chunks - 1}",
                field="chunkIndex",
            )
        if total_chunks is not None and _require_positive_int(total_chunks, "totalChunks") != session.total_chunks:
            raise ValidationError(
                f"totalChunks {total_chunks} does not match session ({session.total_chunks})",
                field="totalChunks",
            )
        if not data:
            raise ValidationError("Chunk payload is empty", field="chunk")

        await self.store.write_chunk(session.session_id, chunk_index, data)

        session.expires_at = self.clock() + self.ttl_seconds
        await self.store.save_session(session)

        uploaded = len(await self.store.chunk_indexes(session.session_id))
        receipt = ChunkReceipt(
            chunk_index=chunk_index,
            uploaded_chunks=uploaded,
            total_chunks=session.total_chunks,
        )
        logger.debug(
            f"Session {session.session_id[:8]}... chunk {chunk_index} stored "
            f"({len(data)} bytes, {receipt.progress_percent}%)"
        )
        return receipt

    async def complete(self, session_id: Optional[str]) -> AssembledUpload:
        session = await self._get_live_session(session_id)

        indexes = await self.store.chunk_indexes(session.session_id)
        if len(indexes) != session.total_chunks:
            missing = sorted(set(range(session.total_chunks)) - indexes)
            logger.warning(
                f"Session {session.session_id} incomplete: "
                f"{len(indexes)}/{session.total_chunks} chunks, missing {missing[:10]}"
            )
            raise IncompleteError(
                session.session_id, len(indexes), session.total_chunks, missing
            )

        chunks = await self.store.read_chunks(session.session_id)
        parts = []
        for index in range(session.total_chunks):
            if index not in chunks:
                if await self.store.load_session(session.session_id) is None:
                    # completed, cancelled or swept by another worker meanwhile
                    raise SessionNotFound(session.session_id)
                raise RuntimeError(
                    f"Chunk {index} of session {session.session_id} vanished after the completeness check"
                )
            parts.append(chunks[index])
        data = b"".join(parts)

        await self.store.delete_session(session.session_id)

        if len(data) != session.file_size:
            logger.warning(
                f"Session {session.session_id} assembled {len(data)} bytes, "
                f"declared fileSize was {session.file_size}"
            )
        logger.info(
            f"Assembled session {session.session_id}: {session.file_name} ({len(data)} bytes)"
        )
        return AssembledUpload(session=session, data=data)

    async def cancel(self, session_id: Optional[str]) -> None:
        if not session_id or not _is_session_id(session_id):
            return
        await self.store.delete_session(session_id)
        logger.info(f"Cancelled upload session {session_id}")

    async def sweep_expired(self, now: Optional[float] = None) -> list[str]:
        expired = await self.store.delete_expired(self.clock() if now is None else now)
        for session_id in expired:
            logger.info(f"Cleaned up expired upload session {session_id}")
        return expired
