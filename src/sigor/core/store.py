"""Async Cosmos DB backend shared by every store.

The :class:`Backend` is constructed once at the application root and
passed to each store, instead of each store opening its own client.
It also owns the :class:`~sigor.core.realtime.ChangeFeed`: every insert,
update, and delete performed through a store publishes a change event.

When ``COSMOS_ENDPOINT`` is not set, falls back to an in-memory store
for local development and testing.
"""

import asyncio
import logging
import os
import uuid
from datetime import UTC, datetime
from typing import Any, ClassVar, Self

from dotenv import load_dotenv
from pydantic import BaseModel, Field, TypeAdapter

from sigor.core.config import get_cosmos_database
from sigor.core.realtime import ChangeEvent, ChangeFeed, watch_container

logger = logging.getLogger(__name__)

_DATETIME = TypeAdapter(datetime)


def to_iso(value: datetime) -> str:
    """Serialize a datetime exactly as documents store it (UTC, JSON mode)."""
    return _DATETIME.dump_python(value.astimezone(UTC), mode="json")


def utcnow() -> datetime:
    return datetime.now(UTC)


class Document(BaseModel):
    """Base for every stored document: UUID id plus Cosmos (de)serialization."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    def to_cosmos(self) -> dict:
        """Serialize for Cosmos DB storage."""
        return self.model_dump(mode="json")

    @classmethod
    def from_cosmos(cls, data: dict) -> Self:
        """Deserialize from Cosmos DB document."""
        return cls.model_validate(data)


class Backend:
    """Connection to the hosted document backend.

    Usage::

        async with Backend() as backend:
            occurrences = OccurrenceStore(backend)
            await occurrences.create(doc)
    """

    def __init__(self, *, feed: ChangeFeed | None = None) -> None:
        """Initialize backend. Call ``__aenter__`` to connect."""
        self.feed = feed or ChangeFeed()
        self.in_memory = False
        self._client = None
        self._credential = None
        self._database = None
        self._tables: dict[str, dict[str, dict]] = {}
        self._watchers: list[asyncio.Task] = []

    async def __aenter__(self) -> Self:
        """Connect to Cosmos DB, or fall back to in-memory mode."""
        load_dotenv()

        endpoint = os.getenv("COSMOS_ENDPOINT")
        key = os.getenv("COSMOS_KEY")

        if endpoint and key:
            from azure.cosmos.aio import CosmosClient

            self._client = CosmosClient(endpoint, credential=key)
        elif endpoint:
            from azure.cosmos.aio import CosmosClient
            from azure.identity.aio import DefaultAzureCredential

            self._credential = DefaultAzureCredential()
            self._client = CosmosClient(endpoint, credential=self._credential)
        else:
            logger.warning("No COSMOS_ENDPOINT set, using in-memory backend (dev only)")
            self.in_memory = True
            return self

        self._database = self._client.get_database_client(get_cosmos_database())
        logger.info("Connected to Cosmos DB: %s", get_cosmos_database())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Stop watchers, close subscriptions and connections."""
        for task in self._watchers:
            task.cancel()
        if self._watchers:
            await asyncio.gather(*self._watchers, return_exceptions=True)
        self._watchers.clear()
        self.feed.close()
        if self._client:
            await self._client.close()
            self._client = None
        if self._credential:
            await self._credential.close()
            self._credential = None
        self._database = None

    def table(self, name: str) -> dict[str, dict]:
        """In-memory table by name (dev/test mode only)."""
        return self._tables.setdefault(name, {})

    def container(self, name: str):
        """Cosmos container client by name."""
        if self._database is None:
            raise RuntimeError("Backend is not connected to Cosmos DB")
        return self._database.get_container_client(name)

    def publish(self, table: str, kind: str, new: dict | None = None, old: dict | None = None):
        self.feed.publish(ChangeEvent(table=table, kind=kind, new=new or {}, old=old or {}))

    def watch(self, *tables: str, poll_interval: float = 1.0) -> None:
        """Republish changes other clients make to these containers.

        No-op in in-memory mode, where every write already goes through
        this process's feed.
        """
        if self.in_memory:
            return
        for name in tables:
            task = asyncio.create_task(
                watch_container(self.container(name), name, self.feed, poll_interval=poll_interval)
            )
            self._watchers.append(task)
            logger.info("Watching change feed for %s", name)


class BaseStore:
    """Async CRUD for one container of one document model.

    Subclasses set ``container_name`` and ``model`` and add their domain
    queries, each with a Cosmos SQL path and an in-memory path.
    Containers are partitioned on ``/id`` unless ``partition_field`` says
    otherwise.
    """

    container_name: ClassVar[str]
    model: ClassVar[type[Document]]
    partition_field: ClassVar[str] = "id"

    def __init__(self, backend: Backend) -> None:
        self._backend = backend

    @property
    def _in_memory(self) -> bool:
        return self._backend.in_memory

    @property
    def _memory(self) -> dict[str, dict]:
        return self._backend.table(self.container_name)

    @property
    def _container(self):
        return self._backend.container(self.container_name)

    @property
    def feed(self) -> ChangeFeed:
        return self._backend.feed

    # ------------------------------------------------------------------
    # Core CRUD
    # ------------------------------------------------------------------

    async def create(self, doc: Document) -> Document:
        """Insert a new document and publish an ``insert`` event.

        Raises:
            ConflictError: If a document with the same id exists (in-memory
                mode; Cosmos raises ``CosmosResourceExistsError``)
        """
        body = doc.to_cosmos()
        if self._in_memory:
            if doc.id in self._memory:
                raise ConflictError(f"{self.container_name} {doc.id} already exists")
            self._memory[doc.id] = body
            logger.debug("Created %s %s (in-memory)", self.container_name, doc.id)
        else:
            body = await self._container.create_item(body=body)
            logger.debug("Created %s %s", self.container_name, doc.id)
        self._backend.publish(self.container_name, "insert", new=body)
        return self.model.from_cosmos(body)

    async def get(self, doc_id: str) -> Document | None:
        """Read a document by id.

        Returns:
            The document if found, None otherwise
        """
        if self._in_memory:
            data = self._memory.get(doc_id)
            return self.model.from_cosmos(data) if data else None

        if self.partition_field == "id":
            try:
                result = await self._container.read_item(item=doc_id, partition_key=doc_id)
                return self.model.from_cosmos(result)
            except Exception:
                logger.debug("%s not found: %s", self.container_name, doc_id)
                return None

        items = await self._query(
            "SELECT * FROM c WHERE c.id = @id", [{"name": "@id", "value": doc_id}], max_items=1
        )
        return items[0] if items else None

    async def replace(self, doc: Document) -> Document:
        """Write every field of an existing document, stamping ``updated_at``.

        Last write wins: there is no version check.
        """
        if "updated_at" in type(doc).model_fields:
            doc.updated_at = utcnow()
        body = doc.to_cosmos()
        if self._in_memory:
            old = self._memory.get(doc.id, {})
            self._memory[doc.id] = body
            logger.debug("Updated %s %s (in-memory)", self.container_name, doc.id)
        else:
            old = {}
            body = await self._container.replace_item(item=doc.id, body=body)
            logger.debug("Updated %s %s", self.container_name, doc.id)
        self._backend.publish(self.container_name, "update", new=body, old=old)
        return self.model.from_cosmos(body)

    async def delete(self, doc: Document) -> None:
        """Delete a document and publish a ``delete`` event."""
        body = doc.to_cosmos()
        if self._in_memory:
            self._memory.pop(doc.id, None)
            logger.debug("Deleted %s %s (in-memory)", self.container_name, doc.id)
        else:
            await self._container.delete_item(
                item=doc.id, partition_key=body[self.partition_field]
            )
            logger.debug("Deleted %s %s", self.container_name, doc.id)
        self._backend.publish(self.container_name, "delete", old=body)

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def _query(
        self,
        query: str,
        parameters: list[dict] | None = None,
        *,
        max_items: int | None = None,
        partition_key: Any = None,
    ) -> list[Document]:
        """Run a Cosmos SQL query and deserialize the results (Cosmos mode)."""
        kwargs: dict = {"query": query, "parameters": parameters or None}
        if partition_key is not None:
            kwargs["partition_key"] = partition_key
        if max_items:
            kwargs["max_item_count"] = max_items

        items = []
        async for item in self._container.query_items(**kwargs):
            items.append(self.model.from_cosmos(item))
            if max_items and len(items) >= max_items:
                break
        return items

    async def _count(self, where: str = "", parameters: list[dict] | None = None) -> int:
        """Server-side ``COUNT`` without fetching row payloads (Cosmos mode)."""
        query = f"SELECT VALUE COUNT(1) FROM c{where}"
        async for value in self._container.query_items(query=query, parameters=parameters or None):
            return int(value)
        return 0

    def _scan(self) -> list[Document]:
        """Every in-memory document, deserialized (dev mode only)."""
        return [self.model.from_cosmos(data) for data in self._memory.values()]

    async def list_all(self, *, max_items: int = 500) -> list[Document]:
        """List every document in the container."""
        if self._in_memory:
            return self._scan()[:max_items]
        return await self._query("SELECT * FROM c", max_items=max_items)

    async def count(self) -> int:
        """Count documents without fetching them."""
        if self._in_memory:
            return len(self._memory)
        return await self._count()

    async def get_many(self, ids: list[str]) -> dict[str, Document]:
        """Fetch several documents by id, keyed by id. Missing ids are skipped."""
        unique = list(dict.fromkeys(i for i in ids if i))
        if not unique:
            return {}

        if self._in_memory:
            return {i: self.model.from_cosmos(self._memory[i]) for i in unique if i in self._memory}

        docs = await self._query(
            "SELECT * FROM c WHERE ARRAY_CONTAINS(@ids, c.id)",
            [{"name": "@ids", "value": unique}],
        )
        return {d.id: d for d in docs}


class NotFoundError(LookupError):
    """A document a mutator depends on does not exist."""


class ConflictError(ValueError):
    """A document with the same id already exists."""
