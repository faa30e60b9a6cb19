"""Keyed document store over the SQL models.

The billing core only ever needs equality lookups on a single field, creates,
updates by internal id, and one conditional update used for claiming ledger
rows. Documents are plain dicts keyed by column name (``metadata``, not the
``metadata_`` attribute the declarative models use).
"""

from typing import Any, Protocol

from sqlalchemy import inspect, select, update
from sqlalchemy.exc import IntegrityError

from app.db.base import Database
from app.db.models import PolarCustomer, PolarSubscription, PolarWebhookEvent, User

WEBHOOK_EVENTS = "polar_webhook_events"
CUSTOMERS = "polar_customers"
SUBSCRIPTIONS = "polar_subscriptions"
USERS = "users"

COLLECTIONS: dict[str, type] = {
    WEBHOOK_EVENTS: PolarWebhookEvent,
    CUSTOMERS: PolarCustomer,
    SUBSCRIPTIONS: PolarSubscription,
    USERS: User,
}


class DocumentNotFoundError(LookupError):
    """Raised by find_by_id when no document has the given id."""

    def __init__(self, collection: str, doc_id: Any):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"{collection}/{doc_id} not found")


class DuplicateKeyError(Exception):
    """Raised when a write violates a unique field."""

    def __init__(self, collection: str, detail: str = ""):
        self.collection = collection
        super().__init__(f"Duplicate key in {collection}: {detail}".rstrip(": "))


class DocumentStore(Protocol):
    async def find(
        self,
        collection: str,
        where: dict[str, Any],
        limit: int = 1,
        order_by: str | None = None,
    ) -> list[dict]: ...

    async def find_by_id(self, collection: str, doc_id: Any) -> dict: ...

    async def create(self, collection: str, data: dict[str, Any]) -> dict: ...

    async def update(self, collection: str, doc_id: Any, data: dict[str, Any]) -> dict: ...

    async def compare_and_update(
        self,
        collection: str,
        doc_id: Any,
        expected: dict[str, Any],
        data: dict[str, Any],
    ) -> dict | None:
        """Apply ``data`` only if every ``expected`` field still holds; None otherwise."""
        ...


def _column_keys(model: type) -> dict[str, str]:
    """Map column name -> ORM attribute key."""
    return {attr.columns[0].name: attr.key for attr in inspect(model).column_attrs}


class SqlDocumentStore:
    """DocumentStore backed by async SQLAlchemy sessions."""

    def __init__(self, database: Database):
        self.database = database
        self._keys = {name: _column_keys(model) for name, model in COLLECTIONS.items()}

    def _model(self, collection: str) -> type:
        try:
            return COLLECTIONS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    def _attr(self, collection: str, field: str) -> str:
        try:
            return self._keys[collection][field]
        except KeyError:
            raise ValueError(f"Unknown field {field!r} for {collection}") from None

    def _values(self, collection: str, data: dict[str, Any]) -> dict[str, Any]:
        return {self._attr(collection, field): value for field, value in data.items()}

    def _to_doc(self, collection: str, row) -> dict:
        return {name: getattr(row, key) for name, key in self._keys[collection].items()}

    def _conditions(self, collection: str, where: dict[str, Any]) -> list:
        model = self._model(collection)
        conditions = []
        for field, value in where.items():
            column = getattr(model, self._attr(collection, field))
            conditions.append(column.is_(None) if value is None else column == value)
        return conditions

    async def find(
        self,
        collection: str,
        where: dict[str, Any],
        limit: int = 1,
        order_by: str | None = None,
    ) -> list[dict]:
        model = self._model(collection)
        stmt = select(model).where(*self._conditions(collection, where)).limit(limit)
        if order_by:
            stmt = stmt.order_by(getattr(model, self._attr(collection, order_by)))
        async with self.database.session_factory() as session:
            result = await session.execute(stmt)
            return [self._to_doc(collection, row) for row in result.scalars().all()]

    async def find_by_id(self, collection: str, doc_id: Any) -> dict:
        model = self._model(collection)
        async with self.database.session_factory() as session:
            row = await session.get(model, doc_id)
            if row is None:
                raise DocumentNotFoundError(collection, doc_id)
            return self._to_doc(collection, row)

    async def create(self, collection: str, data: dict[str, Any]) -> dict:
        model = self._model(collection)
        async with self.database.session_factory() as session:
            row = model(**self._values(collection, data))
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateKeyError(collection, str(exc.orig)) from exc
            await session.refresh(row)
            return self._to_doc(collection, row)

    async def update(self, collection: str, doc_id: Any, data: dict[str, Any]) -> dict:
        model = self._model(collection)
        async with self.database.session_factory() as session:
            row = await session.get(model, doc_id)
            if row is None:
                raise DocumentNotFoundError(collection, doc_id)
            for key, value in self._values(collection, data).items():
                setattr(row, key, value)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateKeyError(collection, str(exc.orig)) from exc
            await session.refresh(row)
            return self._to_doc(collection, row)

    async def compare_and_update(
        self,
        collection: str,
        doc_id: Any,
        expected: dict[str, Any],
        data: dict[str, Any],
    ) -> dict | None:
        model = self._model(collection)
        stmt = (
            update(model)
            .where(model.id == doc_id, *self._conditions(collection, expected))
            .values(**self._values(collection, data))
            .execution_options(synchronize_session=False)
        )
        async with self.database.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                return None
        return await self.find_by_id(collection, doc_id)
