import random

import pytest

from pixrepo.errors import IncompleteError, SessionExpired, SessionNotFound, ValidationError
from pixrepo.uploads import MemorySessionStore, UploadSessionManager


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def manager(store, clock):
    return UploadSessionManager(store, ttl_seconds=600, max_total_chunks=100, clock=clock)


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_returns_unique_ids(self, manager):
        first = await manager.create_session("a.png", 300, 3, "image/png")
        second = await manager.create_session("a.png", 300, 3, "image/png")
        assert first != second

    @pytest.mark.asyncio
    async def test_sets_expiry_from_ttl(self, manager, store, clock):
        session_id = await manager.create_session("a.png", 300, 3, "image/png")
        session = await store.load_session(session_id)
        assert session.expires_at == clock.now + 600
        assert await store.chunk_indexes(session_id) == set()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "args,field",
        [
            ((None, 300, 3, "image/png"), "fileName"),
            (("a.png", None, 3, "image/png"), "fileSize"),
            (("a.png", 300, None, "image/png"), "totalChunks"),
            (("a.png", 300, 3, None), "mimeType"),
            (("a.png", 0, 3, "image/png"), "fileSize"),
            (("a.png", 300, -1, "image/png"), "totalChunks"),
            (("a.png", 300, 3, "application/pdf"), "mimeType"),
            (("a.png", 300, 101, "image/png"), "totalChunks"),
        ],
    )
    async def test_rejects_invalid_input(self, manager, store, args, field):
        with pytest.raises(ValidationError) as exc_info:
            await manager.create_session(*args)
        assert exc_info.value.details["field"] == field
        assert await store.delete_expired(float("inf")) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("file_name", ["a/b.png", "..", "a\\b.png"])
    async def test_rejects_path_like_file_names(self, manager, store, file_name):
        with pytest.raises(ValidationError) as exc_info:
            await manager.create_session(file_name, 300, 3, "image/png")
        assert exc_info.value.details["field"] == "fileName"
        assert await store.delete_expired(float("inf")) == []


class TestIngestChunk:
    @pytest.mark.asyncio
    async def test_reports_progress(self, manager):
        session_id = await manager.create_session("a.png", 400, 4, "image/png")

        receipt = await manager.ingest_chunk(session_id, 3, 4, b"d" * 100)
        assert receipt.chunk_index == 3
        assert receipt.progress_percent == 25

        receipt = await manager.ingest_chunk(session_id, 0, 4, b"a" * 100)
        assert receipt.progress_percent == 50

    @pytest.mark.asyncio
    async def test_duplicate_index_last_write_wins(self, manager):
        session_id = await manager.create_session("a.png", 2, 2, "image/png")
        await manager.ingest_chunk(session_id, 0, 2, b"x")
        receipt = await manager.ingest_chunk(session_id, 0, 2, b"y")
        assert receipt.uploaded_chunks == 1

        await manager.ingest_chunk(session_id, 1, 2, b"z")
        assembled = await manager.complete(session_id)
        assert assembled.data == b"yz"

    @pytest.mark.asyncio
    async def test_unknown_session(self, manager):
        with pytest.raises(SessionNotFound):
            await manager.ingest_chunk("nope", 0, 1, b"x")

    @pytest.mark.asyncio
    async def test_refreshes_expiry(self, manager, store, clock):
        session_id = await manager.create_session("a.png", 300, 3, "image/png")
        clock.advance(500)
        await manager.ingest_chunk(session_id, 0, 3, b"a" * 100)
        session = await store.load_session(session_id)
        assert session.expires_at == clock.now + 600

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "index,total,data",
        [(3, 3, b"x"), (-1, 3, b"x"), ("abc", 3, b"x"), (None, 3, b"x"), (0, 5, b"x"), (0, 3, b"")],
    )
    async def test_rejects_bad_chunks(self, manager, store, index, total, data):
        session_id = await manager.create_session("a.png", 300, 3, "image/png")
        with pytest.raises(ValidationError):
            await manager.ingest_chunk(session_id, index, total, data)
        assert await store.chunk_indexes(session_id) == set()


class TestComplete:
    @pytest.mark.asyncio
    async def test_out_of_order_chunks_reassemble_in_index_order(self, manager, store):
        session_id = await manager.create_session("a.png", 300, 3, "image/png")
        chunk0, chunk1, chunk2 = b"0" * 100, b"1" * 100, b"2" * 100

        await manager.ingest_chunk(session_id, 2, 3, chunk2)
        await manager.ingest_chunk(session_id, 0, 3, chunk0)
        await manager.ingest_chunk(session_id, 1, 3, chunk1)
        assembled = await manager.complete(session_id)

        assert assembled.data == chunk0 + chunk1 + chunk2
        assert assembled.size == 300
        assert assembled.session.file_name == "a.png"
        assert await store.load_session(session_id) is None

    @pytest.mark.asyncio
    async def test_random_split_and_permutation_round_trips(self, manager):
        rng = random.Random(42)
        payload = bytes(rng.randrange(256) for _ in range(5000))
        cuts = sorted(rng.sample(range(1, len(payload)), 9))
        pieces = [payload[a:b] for a, b in zip([0] + cuts, cuts + [len(payload)])]

        session_id = await manager.create_session("r.jpg", len(payload), len(pieces), "image/jpeg")
        order = list(range(len(pieces)))
        rng.shuffle(order)
        for index in order:
            await manager.ingest_chunk(session_id, index, len(pieces), pieces[index])

        assembled = await manager.complete(session_id)
        assert assembled.data == payload

    @pytest.mark.asyncio
    async def test_incomplete_keeps_session(self, manager, store):
        session_id = await manager.create_session("a.png", 300, 3, "image/png")
        await manager.ingest_chunk(session_id, 0, 3, b"a" * 100)
        await manager.ingest_chunk(session_id, 2, 3, b"c" * 100)

        with pytest.raises(IncompleteError) as exc_info:
            await manager.complete(session_id)

        assert exc_info.value.uploaded == 2
        assert exc_info.value.expected == 3
        assert exc_info.value.missing == [1]
        assert await store.load_session(session_id) is not None

        await manager.ingest_chunk(session_id, 1, 3, b"b" * 100)
        assembled = await manager.complete(session_id)
        assert assembled.data == b"a" * 100 + b"b" * 100 + b"c" * 100

    @pytest.mark.asyncio
    async def test_completed_session_is_single_use(self, manager):
        session_id = await manager.create_session("a.png", 1, 1, "image/png")
        await manager.ingest_chunk(session_id, 0, 1, b"a")
        await manager.complete(session_id)

        with pytest.raises(SessionNotFound):
            await manager.complete(session_id)

    @pytest.mark.asyncio
    async def test_session_removed_while_reading_is_not_found(self, clock):
        class RacingStore(MemorySessionStore):
            async def read_chunks(self, session_id):
                await self.delete_session(session_id)
                return {}

        manager = UploadSessionManager(RacingStore(), ttl_seconds=600, clock=clock)
        session_id = await manager.create_session("a.png", 2, 2, "image/png")
        await manager.ingest_chunk(session_id, 0, 2, b"a")
        await manager.ingest_chunk(session_id, 1, 2, b"b")

        with pytest.raises(SessionNotFound):
            await manager.complete(session_id)

    @pytest.mark.asyncio
    async def test_unknown_session(self, manager):
        with pytest.raises(SessionNotFound):
            await manager.complete("missing")


class TestExpiry:
    @pytest.mark.asyncio
    async def test_sweep_removes_expired_sessions(self, manager, store, clock):
        old = await manager.create_session("old.png", 1, 1, "image/png")
        clock.advance(300)
        fresh = await manager.create_session("new.png", 1, 1, "image/png")
        clock.advance(300)

        expired = await manager.sweep_expired()

        assert expired == [old]
        assert await store.load_session(old) is None
        assert await store.load_session(fresh) is not None

    @pytest.mark.asyncio
    async def test_expired_session_rejects_chunks_and_complete(self, manager, clock):
        session_id = await manager.create_session("a.png", 1, 1, "image/png")
        clock.advance(601)

        with pytest.raises(SessionExpired):
            await manager.ingest_chunk(session_id, 0, 1, b"a")
        with pytest.raises(SessionNotFound):
            await manager.complete(session_id)

    @pytest.mark.asyncio
    async def test_sweep_with_explicit_now(self, manager, clock):
        session_id = await manager.create_session("a.png", 1, 1, "image/png")
        assert await manager.sweep_expired(now=clock.now + 600) == [session_id]


class TestCancel:
    @pytest.mark.asyncio
    async def test_discards_state(self, manager, store):
        session_id = await manager.create_session("a.png", 200, 2, "image/png")
        await manager.ingest_chunk(session_id, 0, 2, b"a" * 100)

        await manager.cancel(session_id)

        assert await store.load_session(session_id) is None
        assert await store.chunk_indexes(session_id) == set()

    @pytest.mark.asyncio
    async def test_is_idempotent(self, manager):
        await manager.cancel("never-existed")
        await manager.cancel("never-existed")
        await manager.cancel(None)


class TestSessionIds:
    @pytest.mark.asyncio
    async def test_path_like_ids_never_reach_the_store(self, temp_sessions_dir, clock):
        from pixrepo.uploads import LocalSessionStore

        sessions_dir = temp_sessions_dir / "sessions"
        sessions_dir.mkdir()
        (temp_sessions_dir / "keep.txt").write_text("x")
        manager = UploadSessionManager(LocalSessionStore(sessions_dir), clock=clock)

        await manager.cancel("..")
        with pytest.raises(SessionNotFound):
            await manager.ingest_chunk("..", 0, 1, b"x")

        assert (temp_sessions_dir / "keep.txt").exists()
