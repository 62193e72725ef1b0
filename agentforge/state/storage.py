"""Key-value storage adapters backing the state store."""
from __future__ import annotations

import abc
import copy
import dataclasses
import fnmatch
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field

from agentforge.core.errors import ConfigurationError, StateStoreError, TransactionError


class QueryOptions(BaseModel):
    filter: Optional[Dict[str, Any]] = None
    sort: Optional[Dict[str, Literal["asc", "desc"]]] = None
    limit: Optional[int] = Field(default=None, ge=0)
    offset: Optional[int] = Field(default=None, ge=0)
    prefix: Optional[str] = None


@dataclass(slots=True)
class QueryResult:
    key: str
    value: Any


def _field(value: Any, name: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(name)
    return getattr(value, name, None)


class StorageAdapter(abc.ABC):
    """Minimal contract a persistence backend must satisfy.

    Keys are namespaced strings such as ``"workflow:<id>"``. ``query`` and the
    transaction trio are optional; adapters that support them flip the
    matching class flags.
    """

    supports_query: ClassVar[bool] = False
    supports_transactions: ClassVar[bool] = False

    @abc.abstractmethod
    async def get(self, key: str) -> Any: ...

    @abc.abstractmethod
    async def set(self, key: str, value: Any) -> None: ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None: ...

    @abc.abstractmethod
    async def list(self, pattern: str) -> List[str]: ...

    async def query(self, options: QueryOptions) -> List[QueryResult]:
        raise NotImplementedError(f"{type(self).__name__} does not support queries")

    async def begin_transaction(self) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not support transactions")

    async def commit_transaction(self) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not support transactions")

    async def rollback_transaction(self) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not support transactions")

    async def close(self) -> None:
        return None


class MemoryStorageAdapter(StorageAdapter):
    """Process-local adapter holding deep copies of every value.

    ``ttl`` is in seconds. When ``max_size`` is exceeded the oldest key is
    evicted. Transactions work on a snapshot that replaces the live map on
    commit.
    """

    supports_query = True
    supports_transactions = True

    def __init__(
        self,
        *,
        max_size: Optional[int] = None,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._store: Dict[str, Any] = {}
        self._expirations: Dict[str, float] = {}
        self._transaction: Optional[Dict[str, Any]] = None
        self._max_size = max_size
        self._ttl = ttl
        self._closed = False

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    def _view(self) -> Dict[str, Any]:
        return self._transaction if self._transaction is not None else self._store

    def _ensure_open(self) -> None:
        if self._closed:
            raise StateStoreError("Storage adapter is closed")

    def _expire(self, key: str) -> None:
        deadline = self._expirations.get(key)
        if deadline is not None and self._clock() > deadline:
            self._store.pop(key, None)
            self._expirations.pop(key, None)

    async def get(self, key: str) -> Any:
        self._ensure_open()
        self._expire(key)
        return copy.deepcopy(self._view().get(key))

    async def set(self, key: str, value: Any) -> None:
        self._ensure_open()
        if self._transaction is not None:
            self._transaction[key] = copy.deepcopy(value)
            return
        self._store.pop(key, None)
        self._store[key] = copy.deepcopy(value)
        if self._ttl is not None:
            self._expirations[key] = self._clock() + self._ttl
        if self._max_size is not None:
            while len(self._store) > self._max_size:
                oldest = next(iter(self._store))
                self._store.pop(oldest)
                self._expirations.pop(oldest, None)

    async def delete(self, key: str) -> None:
        self._ensure_open()
        if self._transaction is not None:
            self._transaction.pop(key, None)
            return
        self._store.pop(key, None)
        self._expirations.pop(key, None)

    async def list(self, pattern: str) -> List[str]:
        self._ensure_open()
        for key in list(self._store):
            self._expire(key)
        return [key for key in self._view() if fnmatch.fnmatchcase(key, pattern)]

    async def query(self, options: QueryOptions) -> List[QueryResult]:
        self._ensure_open()
        for key in list(self._store):
            self._expire(key)
        results = [
            QueryResult(key=key, value=copy.deepcopy(value))
            for key, value in self._view().items()
            if (options.prefix is None or key.startswith(options.prefix))
            and all(_field(value, name) == expected for name, expected in (options.filter or {}).items())
        ]
        # Apply sort keys last-to-first so the first key has the highest precedence.
        for name, order in reversed(list((options.sort or {}).items())):
            results.sort(key=lambda item: _field(item.value, name), reverse=order == "desc")
        if options.offset:
            results = results[options.offset :]
        if options.limit is not None:
            results = results[: options.limit]
        return results

    async def begin_transaction(self) -> None:
        self._ensure_open()
        if self._transaction is not None:
            raise TransactionError("Transaction already in progress")
        self._transaction = dict(self._store)

    async def commit_transaction(self) -> None:
        if self._transaction is None:
            raise TransactionError("No transaction in progress")
        self._store, self._transaction = self._transaction, None

    async def rollback_transaction(self) -> None:
        if self._transaction is None:
            raise TransactionError("No transaction in progress")
        self._transaction = None

    async def close(self) -> None:
        self._closed = True
        self._transaction = None


class StorageFactory:
    """Registry of adapter types selectable by name, e.g. from configuration."""

    _adapters: ClassVar[Dict[str, Type[StorageAdapter]]] = {"memory": MemoryStorageAdapter}

    @classmethod
    def register(cls, name: str, adapter_cls: Type[StorageAdapter]) -> None:
        if not (isinstance(adapter_cls, type) and issubclass(adapter_cls, StorageAdapter)):
            raise ConfigurationError(f"{adapter_cls!r} is not a StorageAdapter subclass")
        cls._adapters[name] = adapter_cls

    @classmethod
    def available(cls) -> List[str]:
        return sorted(cls._adapters)

    @classmethod
    def create(cls, name: str, **options: Any) -> StorageAdapter:
        if name == "custom":
            adapter = options.get("adapter")
            if not isinstance(adapter, StorageAdapter):
                raise ConfigurationError("Custom storage requires an 'adapter' implementing StorageAdapter")
            return adapter
        adapter_cls = cls._adapters.get(name)
        if adapter_cls is None:
            raise ConfigurationError(
                f"Unsupported storage type: {name}",
                context={"available": cls.available()},
            )
        return adapter_cls(**options)


def merge_state(current: Any, changes: Any) -> Any:
    """Shallow-merge ``changes`` into ``current``; non-mapping changes replace it."""
    if current is None or not isinstance(changes, Mapping):
        return dict(changes) if isinstance(changes, Mapping) else changes
    if dataclasses.is_dataclass(current) and not isinstance(current, type):
        return dataclasses.replace(current, **changes)
    if isinstance(current, Mapping):
        return {**current, **changes}
    return changes
