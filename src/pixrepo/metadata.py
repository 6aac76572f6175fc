from typing import Optional

from loguru import logger
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from pixrepo.config import StoreSettings
from pixrepo.errors import ConflictError, ValidationError
from pixrepo.models import (
    BackingStore,
    FileRecord,
    Folder,
    Setting,
    StoreStatus,
    utcnow,
)


def create_db_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


class MetadataStore:
    """Relational metadata for stores, folders, files and settings.

    Every method opens its own short-lived session; nothing here holds a
    transaction across an await in the callers.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "MetadataStore":
        return cls(create_db_engine(database_url))

    def create_all(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    # stores

    def get_active_store(self) -> Optional[BackingStore]:
        with Session(self.engine) as session:
            statement = (
                select(BackingStore)
                .where(BackingStore.status == StoreStatus.ACTIVE)
                .order_by(BackingStore.priority.asc(), BackingStore.id.asc())
                .limit(1)
            )
            return session.exec(statement).first()

    def get_store(self, store_id: int) -> Optional[BackingStore]:
        with Session(self.engine) as session:
            return session.get(BackingStore, store_id)

    def get_store_by_name(self, name: str) -> Optional[BackingStore]:
        with Session(self.engine) as session:
            return session.exec(
                select(BackingStore).where(BackingStore.name == name)
            ).first()

    def list_stores(self) -> list[BackingStore]:
        with Session(self.engine) as session:
            statement = select(BackingStore).order_by(
                BackingStore.priority.asc(), BackingStore.id.asc()
            )
            return list(session.exec(statement).all())

    def store_names_like(self, base_name: str) -> list[str]:
        with Session(self.engine) as session:
            statement = select(BackingStore.name).where(
                BackingStore.name.like(f"{base_name}-%")
            )
            return list(session.exec(statement).all())

    def first_deploy_hook(self) -> Optional[str]:
        with Session(self.engine) as session:
            statement = (
                select(BackingStore.deploy_hook)
                .where(BackingStore.deploy_hook.is_not(None))
                .where(BackingStore.deploy_hook != "")
                .order_by(BackingStore.id.asc())
                .limit(1)
            )
            return session.exec(statement).first()

    def insert_store(self, store: BackingStore) -> BackingStore:
        with Session(self.engine) as session:
            session.add(store)
            session.commit()
            session.refresh(store)
        logger.info(f"Recorded backing store {store.full_name} (id={store.id})")
        return store

    def insert_store_if_absent(self, store: BackingStore) -> tuple[BackingStore, bool]:
        """Insert a store row, or return the row that already holds its name.

        The second element is True when this call created the row.
        """
        with Session(self.engine) as session:
            session.add(store)
            try:
                session.commit()
                created = True
            except IntegrityError:
                session.rollback()
                created = False
            if created:
                session.refresh(store)

        if created:
            logger.info(f"Recorded backing store {store.full_name} (id={store.id})")
            return store, True

        existing = self.get_store_by_name(store.name)
        if existing is None:
            raise RuntimeError(f"Store {store.name} violated a constraint but is not recorded")
        logger.info(f"Store {existing.full_name} was recorded concurrently (id={existing.id})")
        return existing, False

    def activate_only(self, store_id: int) -> None:
        """Mark ``store_id`` active and every other store inactive."""
        now = utcnow()
        with Session(self.engine) as session:
            for store in session.exec(select(BackingStore)).all():
                wanted = StoreStatus.ACTIVE if store.id == store_id else StoreStatus.INACTIVE
                if store.status != wanted:
                    store.status = wanted
                    store.updated_at = now
                    session.add(store)
            session.commit()

    def update_store(self, store_id: int, **values) -> Optional[BackingStore]:
        with Session(self.engine) as session:
            store = session.get(BackingStore, store_id)
            if store is None:
                return None
            for key, value in values.items():
                setattr(store, key, value)
            store.updated_at = utcnow()
            session.add(store)
            session.commit()
            session.refresh(store)
            return store

    def add_to_size_estimate(
        self, store_id: int, size_delta: int, count_delta: int
    ) -> Optional[BackingStore]:
        """Apply an incremental change to the running totals, clamped at zero."""
        with Session(self.engine) as session:
            store = session.get(BackingStore, store_id)
            if store is None:
                return None
            store.size_estimate = max(0, store.size_estimate + size_delta)
            store.file_count = max(0, store.file_count + count_delta)
            store.updated_at = utcnow()
            session.add(store)
            session.commit()
            session.refresh(store)
            return store

    # folders

    def get_folder(self, path: str, store_id: int) -> Optional[Folder]:
        with Session(self.engine) as session:
            statement = select(Folder).where(
                Folder.path == path, Folder.repository_id == store_id
            )
            return session.exec(statement).first()

    def get_folder_by_id(self, folder_id: int) -> Optional[Folder]:
        with Session(self.engine) as session:
            return session.get(Folder, folder_id)

    def insert_folder_if_absent(self, name: str, path: str, store_id: int) -> bool:
        """Insert a folder row; a uniqueness violation is a no-op.

        Returns True when this call created the row.
        """
        with Session(self.engine) as session:
            session.add(Folder(name=name, path=path, repository_id=store_id))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug(f"Folder {path} already recorded for store {store_id}")
                return False
        return True

    # files

    def find_file(
        self, store_id: int, filename: str, folder_id: Optional[int] = None
    ) -> Optional[FileRecord]:
        with Session(self.engine) as session:
            statement = select(FileRecord).where(FileRecord.filename == filename)
            if folder_id is not None:
                statement = statement.where(FileRecord.folder_id == folder_id)
            else:
                statement = statement.where(
                    FileRecord.repository_id == store_id,
                    FileRecord.folder_id.is_(None),
                )
            return session.exec(statement).first()

    def insert_file(self, record: FileRecord) -> FileRecord:
        """Check-then-insert; an existing ``(folder, filename)`` is a conflict."""
        existing = self.find_file(record.repository_id, record.filename, record.folder_id)
        if existing is not None:
            raise ConflictError(record.filename, existing.remote_path)

        with Session(self.engine) as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise ConflictError(record.filename, record.remote_path)
            session.refresh(record)
        return record

    def get_file(self, file_id: int) -> Optional[FileRecord]:
        with Session(self.engine) as session:
            return session.get(FileRecord, file_id)

    def delete_file(self, file_id: int) -> bool:
        with Session(self.engine) as session:
            record = session.get(FileRecord, file_id)
            if record is None:
                return False
            session.delete(record)
            session.commit()
        return True

    def file_stats(self, store_id: int) -> tuple[int, int]:
        with Session(self.engine) as session:
            statement = select(
                func.count(FileRecord.id), func.coalesce(func.sum(FileRecord.size), 0)
            ).where(FileRecord.repository_id == store_id)
            count, total = session.exec(statement).one()
        return int(count or 0), int(total or 0)

    # settings

    def get_setting_rows(self) -> dict[str, str]:
        with Session(self.engine) as session:
            return {row.key: row.value for row in session.exec(select(Setting)).all()}

    def load_store_settings(self) -> StoreSettings:
        return StoreSettings.from_rows(self.get_setting_rows())

    def set_setting(self, key: str, value: str) -> None:
        with Session(self.engine) as session:
            row = session.get(Setting, key)
            if row is None:
                row = Setting(key=key, value=value)
            else:
                row.value = value
                row.updated_at = utcnow()
            session.add(row)
            session.commit()

    def update_settings(self, values: dict) -> StoreSettings:
        """Validate and persist store settings; the write boundary for thresholds."""
        merged = self.load_store_settings().model_dump()
        merged.update(values)
        try:
            validated = StoreSettings(**merged)
        except ValueError as e:
            raise ValidationError(f"Invalid settings: {e}")

        for key, value in validated.to_rows().items():
            if key in values:
                self.set_setting(key, value)
        logger.info(f"Updated settings: {sorted(values)}")
        return validated
