import asyncio
import json
from typing import Optional

import aioboto3
from botocore.exceptions import ClientError
from loguru import logger

from pixrepo.uploads.backend import UploadSession

SESSION_FILE = "session.json"


class S3SessionStore:
    """Session store in an S3-compatible bucket, visible to every instance.

    Each chunk is its own object, so concurrent chunk writes never contend.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        prefix: str = "upload-sessions",
        endpoint_url: Optional[str] = None,
    ):
        self.bucket = bucket
        self.region = region
        self.prefix = prefix.rstrip("/")
        self.endpoint_url = endpoint_url
        self._session = aioboto3.Session()

    def _get_client_kwargs(self) -> dict:
        kwargs = {"region_name": self.region}
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        return kwargs

    def _client(self):
        return self._session.client("s3", **self._get_client_kwargs())

    def _session_prefix(self, session_id: str) -> str:
        return f"{self.prefix}/{session_id}/"

    def _session_key(self, session_id: str) -> str:
        return f"{self._session_prefix(session_id)}{SESSION_FILE}"

    def _chunk_prefix(self, session_id: str) -> str:
        return f"{self._session_prefix(session_id)}chunks/"

    def _chunk_key(self, session_id: str, index: int) -> str:
        return f"{self._chunk_prefix(session_id)}{index:06d}"

    async def save_session(self, session: UploadSession) -> None:
        async with self._client() as s3:
            await s3.put_object(
                Bucket=self.bucket,
                Key=self._session_key(session.session_id),
                Body=json.dumps(session.to_dict()).encode("utf-8"),
                ContentType="application/json",
            )

    async def load_session(self, session_id: str) -> UploadSession | None:
        async with self._client() as s3:
            try:
                response = await s3.get_object(
                    Bucket=self.bucket, Key=self._session_key(session_id)
                )
            except ClientError as e:
                if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                    return None
                raise
            async with response["Body"] as stream:
                content = await stream.read()
        try:
            return UploadSession.from_dict(json.loads(content.decode("utf-8")))
        except (json.JSONDecodeError, KeyError) as e:
            logger.warning(f"Unreadable session object for {session_id}: {e}")
            return None

    async def write_chunk(self, session_id: str, index: int, data: bytes) -> None:
        async with self._client() as s3:
            await s3.put_object(
                Bucket=self.bucket, Key=self._chunk_key(session_id, index), Body=data
            )
            logger.debug(f"Stored chunk {index} of session {session_id[:8]}... in s3://{self.bucket}")

    async def _list_chunk_keys(self, s3, session_id: str) -> dict[int, str]:
        chunk_prefix = self._chunk_prefix(session_id)
        keys = {}
        paginator = s3.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=self.bucket, Prefix=chunk_prefix):
            for obj in page.get("Contents", []):
                index = obj["Key"][len(chunk_prefix) :]
                if index.isdigit():
                    keys[int(index)] = obj["Key"]
        return keys

    async def chunk_indexes(self, session_id: str) -> set[int]:
        async with self._client() as s3:
            return set(await self._list_chunk_keys(s3, session_id))

    async def read_chunks(self, session_id: str) -> dict[int, bytes]:
        async with self._client() as s3:
            keys = await self._list_chunk_keys(s3, session_id)

            async def fetch(key: str) -> bytes:
                response = await s3.get_object(Bucket=self.bucket, Key=key)
                async with response["Body"] as stream:
                    return await stream.read()

            contents = await asyncio.gather(*[fetch(key) for key in keys.values()])
        return dict(zip(keys.keys(), contents))

    async def delete_session(self, session_id: str) -> None:
        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            objects_to_delete = []
            async for page in paginator.paginate(
                Bucket=self.bucket, Prefix=self._session_prefix(session_id)
            ):
                for obj in page.get("Contents", []):
                    objects_to_delete.append({"Key": obj["Key"]})

            for i in range(0, len(objects_to_delete), 1000):
                batch = objects_to_delete[i : i + 1000]
                await s3.delete_objects(Bucket=self.bucket, Delete={"Objects": batch})

        if objects_to_delete:
            logger.debug(
                f"Removed session {session_id[:8]}... from s3://{self.bucket} ({len(objects_to_delete)} objects)"
            )

    async def _list_session_ids(self) -> list[str]:
        session_ids = []
        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(
                Bucket=self.bucket, Prefix=f"{self.prefix}/", Delimiter="/"
            ):
                for prefix in page.get("CommonPrefixes", []):
                    parts = prefix["Prefix"].rstrip("/").split("/")
                    if parts:
                        session_ids.append(parts[-1])
        return session_ids

    async def delete_expired(self, now: float) -> list[str]:
        session_ids = await self._list_session_ids()
        sessions = await asyncio.gather(*[self.load_session(sid) for sid in session_ids])

        expired = [s.session_id for s in sessions if s is not None and s.is_expired(now)]
        for session_id in expired:
            await self.delete_session(session_id)
        return expired
