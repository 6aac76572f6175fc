import json
import os
import shutil
import uuid
from pathlib import Path

import aiofiles
from loguru import logger

from pixrepo.uploads.backend import UploadSession

SESSION_FILE = "session.json"
CHUNK_PREFIX = "chunk_"
CHUNK_SUFFIX = ".part"


class LocalSessionStore:
    """Session store on a directory shared by every worker on the host."""

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = sessions_dir

    def _get_session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def _chunk_path(self, session_id: str, index: int) -> Path:
        return self._get_session_dir(session_id) / f"{CHUNK_PREFIX}{index:06d}{CHUNK_SUFFIX}"

    async def _write_atomic(self, path: Path, content: bytes) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(content)
        os.replace(tmp_path, path)

    async def save_session(self, session: UploadSession) -> None:
        session_dir = self._get_session_dir(session.session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        content = json.dumps(session.to_dict()).encode("utf-8")
        await self._write_atomic(session_dir / SESSION_FILE, content)

    async def load_session(self, session_id: str) -> UploadSession | None:
        session_file = self._get_session_dir(session_id) / SESSION_FILE
        try:
            async with aiofiles.open(session_file, "r") as f:
                return UploadSession.from_dict(json.loads(await f.read()))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, KeyError) as e:
            logger.warning(f"Unreadable session file {session_file}: {e}")
            return None

    async def write_chunk(self, session_id: str, index: int, data: bytes) -> None:
        session_dir = self._get_session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        await self._write_atomic(self._chunk_path(session_id, index), data)

    def _chunk_files(self, session_id: str) -> dict[int, Path]:
        session_dir = self._get_session_dir(session_id)
        if not session_dir.exists():
            return {}
        chunks = {}
        for path in session_dir.glob(f"{CHUNK_PREFIX}*{CHUNK_SUFFIX}"):
            index = path.name[len(CHUNK_PREFIX) : -len(CHUNK_SUFFIX)]
            if index.isdigit():
                chunks[int(index)] = path
        return chunks

    async def chunk_indexes(self, session_id: str) -> set[int]:
        return set(self._chunk_files(session_id))

    async def read_chunks(self, session_id: str) -> dict[int, bytes]:
        chunks = {}
        for index, path in self._chunk_files(session_id).items():
            try:
                async with aiofiles.open(path, "rb") as f:
                    chunks[index] = await f.read()
            except FileNotFoundError:
                logger.debug(f"Chunk {index} of session {session_id[:8]}... disappeared while reading")
        return chunks

    async def delete_session(self, session_id: str) -> None:
        session_dir = self._get_session_dir(session_id)
        if session_dir.exists():
            shutil.rmtree(session_dir, ignore_errors=True)

    async def delete_expired(self, now: float) -> list[str]:
        if not self.sessions_dir.exists():
            return []

        expired = []
        for session_dir in self.sessions_dir.iterdir():
            if not session_dir.is_dir():
                continue
            session = await self.load_session(session_dir.name)
            if session is not None and session.is_expired(now):
                await self.delete_session(session_dir.name)
                expired.append(session_dir.name)
        return expired
