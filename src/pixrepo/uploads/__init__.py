from pixrepo.config import Settings
from pixrepo.uploads.backend import UploadSession, UploadSessionStore
from pixrepo.uploads.local import LocalSessionStore
from pixrepo.uploads.manager import AssembledUpload, ChunkReceipt, UploadSessionManager
from pixrepo.uploads.memory import MemorySessionStore
from pixrepo.uploads.s3 import S3SessionStore


def create_session_store(settings: Settings) -> UploadSessionStore:
    store_type = settings.SESSION_STORE.lower()

    if store_type == "memory":
        return MemorySessionStore()

    if store_type == "local":
        return LocalSessionStore(settings.SESSION_DIR.expanduser().resolve())

    if store_type == "s3":
        if not settings.SESSION_S3_BUCKET:
            raise ValueError("SESSION_S3_BUCKET is required when SESSION_STORE=s3")
        return S3SessionStore(
            bucket=settings.SESSION_S3_BUCKET,
            region=settings.SESSION_S3_REGION,
            prefix=settings.SESSION_S3_PREFIX,
            endpoint_url=settings.SESSION_S3_ENDPOINT,
        )

    raise ValueError(f"Unknown session store type: {settings.SESSION_STORE}")


__all__ = [
    "AssembledUpload",
    "ChunkReceipt",
    "LocalSessionStore",
    "MemorySessionStore",
    "S3SessionStore",
    "UploadSession",
    "UploadSessionManager",
    "UploadSessionStore",
    "create_session_store",
]
