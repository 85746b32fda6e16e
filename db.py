"""
Database Module
===============
Record store for catalog entities and orders.

One async CRUD interface (RecordStore) with three backends:
- MemoryStore: process-local, seeded with the demo catalog
- SupabaseStore: managed Postgres through supabase-py
- NocoDBStore: NocoDB v2 REST API through requests

and two decorators:
- ResilientStore: bounded retries with backoff plus a circuit breaker
- FallbackStore: try each store in order until one answers, keeping
  by-id operations on the store that issued the id

Only PersistenceError triggers retries and fallback. NotFoundError means the
store answered.
"""

import asyncio
import itertools
import json
import logging
from copy import deepcopy
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests
from postgrest.exceptions import APIError
from prometheus_client import Counter
from supabase import Client, create_client

from errors import NotFoundError, PersistenceError


logger = logging.getLogger(__name__)


TABLES = ("categories", "menu", "extras", "orders")

# Defaults (overridden from StorageConfig by build_store)
MAX_RETRIES = 3
RETRY_DELAY = 0.5  # seconds
OPERATION_TIMEOUT = 10.0  # seconds
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds


# ============================================================================
# METRICS
# ============================================================================

store_operations = Counter(
    'store_operations_total',
    'Record store operations',
    ['store', 'operation', 'result']
)
store_fallbacks = Counter(
    'store_fallbacks_total',
    'Fallbacks from a failing record store',
    ['from_store']
)


# ============================================================================
# INTERFACE
# ============================================================================

class RecordStore:
    """
    CRUD per table. Records are plain dicts with an integer "id".

    Implementations raise NotFoundError for unknown ids and PersistenceError
    for anything that prevented the store from answering.
    """

    name = "store"

    async def list(self, table: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def get(self, table: str, record_id: int) -> Dict[str, Any]:
        raise NotImplementedError

    async def create(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def update(self, table: str, record_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def delete(self, table: str, record_id: int):
        raise NotImplementedError

    def is_healthy(self) -> bool:
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {"store": self.name, "healthy": self.is_healthy()}


def _check_table(table: str):
    if table not in TABLES:
        raise PersistenceError(f"Unknown table: {table}")


def _matches(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(record.get(key) == value for key, value in filters.items())


# ============================================================================
# MEMORY STORE
# ============================================================================

class MemoryStore(RecordStore):
    """In-process store. Returns deep copies so callers cannot alias rows."""

    name = "memory"

    def __init__(self, seed: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._tables: Dict[str, Dict[int, Dict[str, Any]]] = {t: {} for t in TABLES}
        self._ids: Dict[str, Any] = {}

        for table, rows in (seed or {}).items():
            _check_table(table)
            for row in rows:
                self._tables[table][int(row["id"])] = deepcopy(row)

        for table in TABLES:
            start = max(self._tables[table].keys(), default=0) + 1
            self._ids[table] = itertools.count(start)

        logger.info(
            "MemoryStore initialized ("
            + ", ".join(f"{t}={len(self._tables[t])}" for t in TABLES)
            + ")"
        )

    async def list(self, table, filters=None):
        _check_table(table)
        return [
            deepcopy(row)
            for _, row in sorted(self._tables[table].items())
            if _matches(row, filters)
        ]

    async def get(self, table, record_id):
        _check_table(table)
        row = self._tables[table].get(int(record_id))
        if row is None:
            raise NotFoundError(f"{table} record {record_id} not found")
        return deepcopy(row)

    async def create(self, table, data):
        _check_table(table)
        record_id = next(self._ids[table])
        row = {**deepcopy(data), "id": record_id}
        self._tables[table][record_id] = row
        return deepcopy(row)

    async def update(self, table, record_id, data):
        _check_table(table)
        row = self._tables[table].get(int(record_id))
        if row is None:
            raise NotFoundError(f"{table} record {record_id} not found")
        updates = {k: deepcopy(v) for k, v in data.items() if k != "id"}
        row.update(updates)
        return deepcopy(row)

    async def delete(self, table, record_id):
        _check_table(table)
        if self._tables[table].pop(int(record_id), None) is None:
            raise NotFoundError(f"{table} record {record_id} not found")


# ============================================================================
# SUPABASE STORE
# ============================================================================

class SupabaseStore(RecordStore):
    """
    Supabase (PostgREST) backend.

    The supabase client is synchronous; calls run in the default executor
    with a timeout so the event loop never blocks.
    """

    name = "supabase"

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        client: Optional[Client] = None,
        timeout: float = OPERATION_TIMEOUT
    ):
        self.client: Optional[Client] = client
        self.timeout = timeout

        if self.client is None:
            self._initialize_client(url, key)

    def _initialize_client(self, url: Optional[str], key: Optional[str]):
        """Initialize Supabase client."""
        if not url or not key:
            logger.error("SUPABASE_URL and SUPABASE_KEY required")
            return

        try:
            self.client = create_client(url, key)
            logger.info("Supabase client initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {str(e)}")

    async def _execute(self, operation: str, table: str, build: Callable[[], Any]) -> List[Dict[str, Any]]:
        _check_table(table)

        if not self.client:
            raise PersistenceError("Supabase client not initialized")

        try:
            loop = asyncio.get_event_loop()
            result = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: build().execute()),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Supabase {operation} timeout on {table}")
            raise PersistenceError(f"Supabase {operation} timed out on {table}")
        except APIError as e:
            logger.error(f"Supabase {operation} error on {table}: {e.message}")
            raise PersistenceError(f"Supabase rejected {operation} on {table}: {e.message}")
        except Exception as e:
            logger.error(f"Supabase {operation} error on {table}: {str(e)}")
            raise PersistenceError(f"Supabase {operation} failed on {table}: {str(e)}")

        return result.data or []

    async def list(self, table, filters=None):
        def build():
            query = self.client.table(table).select("*")
            for key, value in (filters or {}).items():
                query = query.eq(key, value)
            return query.order("id")

        return await self._execute("list", table, build)

    async def get(self, table, record_id):
        rows = await self._execute(
            "get", table,
            lambda: self.client.table(table).select("*").eq("id", record_id)
        )
        if not rows:
            raise NotFoundError(f"{table} record {record_id} not found")
        return rows[0]

    async def create(self, table, data):
        payload = {k: v for k, v in data.items() if k != "id"}
        rows = await self._execute(
            "create", table,
            lambda: self.client.table(table).insert(payload)
        )
        if not rows:
            raise PersistenceError(f"Supabase returned no row for insert into {table}")
        return rows[0]

    async def update(self, table, record_id, data):
        payload = {k: v for k, v in data.items() if k != "id"}
        rows = await self._execute(
            "update", table,
            lambda: self.client.table(table).update(payload).eq("id", record_id)
        )
        if not rows:
            raise NotFoundError(f"{table} record {record_id} not found")
        return rows[0]

    async def delete(self, table, record_id):
        rows = await self._execute(
            "delete", table,
            lambda: self.client.table(table).delete().eq("id", record_id)
        )
        if not rows:
            raise NotFoundError(f"{table} record {record_id} not found")

    def is_healthy(self) -> bool:
        return self.client is not None


# ============================================================================
# NOCODB STORE
# ============================================================================

# Columns holding lists/objects; NocoDB keeps them as JSON text
JSON_FIELDS = ("menu_items", "category_ids")

NOCODB_PAGE_SIZE = 100


class NocoDBStore(RecordStore):
    """
    NocoDB v2 REST backend (``/api/v2/tables/{table_id}/records``).

    NocoDB names the primary key "Id"; records are normalized to "id".
    """

    name = "nocodb"

    def __init__(
        self,
        base_url: str,
        token: Optional[str],
        table_ids: Dict[str, str],
        session: Optional[requests.Session] = None,
        timeout: float = OPERATION_TIMEOUT
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.table_ids = dict(table_ids)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "xc-token": token or "",
        })

        logger.info(f"NocoDBStore initialized ({self.base_url})")

    def _records_url(self, table: str) -> str:
        _check_table(table)
        table_id = self.table_ids.get(table)
        if not table_id:
            raise PersistenceError(f"No NocoDB table id configured for {table}")
        return f"{self.base_url}/api/v2/tables/{table_id}/records"

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        if not self.token:
            raise PersistenceError("NocoDB token not configured")

        try:
            loop = asyncio.get_event_loop()
            response = await loop.run_in_executor(
                None,
                lambda: self.session.request(method, url, timeout=self.timeout, **kwargs)
            )
        except requests.RequestException as e:
            logger.error(f"NocoDB {method} {url} failed: {str(e)}")
            raise PersistenceError(f"NocoDB unreachable: {str(e)}")

        if response.status_code == 404:
            raise NotFoundError("NocoDB record not found")

        if response.status_code >= 400:
            logger.error(
                f"NocoDB API error: {response.status_code} - {response.text[:200]}"
            )
            raise PersistenceError(f"NocoDB API error: {response.status_code}")

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError:
            raise PersistenceError("NocoDB returned invalid JSON")

    @staticmethod
    def _encode(data: Dict[str, Any]) -> Dict[str, Any]:
        encoded = {}
        for key, value in data.items():
            if key in ("id", "Id"):
                continue
            if isinstance(value, (list, dict)):
                value = json.dumps(value)
            encoded[key] = value
        return encoded

    @staticmethod
    def _decode(record: Dict[str, Any]) -> Dict[str, Any]:
        decoded = dict(record)
        if "Id" in decoded:
            decoded["id"] = int(decoded.pop("Id"))
        for key in JSON_FIELDS:
            value = decoded.get(key)
            if isinstance(value, str) and value:
                try:
                    decoded[key] = json.loads(value)
                except ValueError:
                    logger.warning(f"NocoDB field {key} is not valid JSON")
        return decoded

    @staticmethod
    def _where(filters: Optional[Dict[str, Any]]) -> Optional[str]:
        if not filters:
            return None
        clauses = []
        for key, value in filters.items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            clauses.append(f"({key},eq,{value})")
        return "~and".join(clauses)

    async def list(self, table, filters=None):
        url = self._records_url(table)
        records: List[Dict[str, Any]] = []
        offset = 0

        while True:
            params: Dict[str, Any] = {"limit": NOCODB_PAGE_SIZE, "offset": offset}
            where = self._where(filters)
            if where:
                params["where"] = where

            body = await self._request("GET", url, params=params) or {}
            page = body.get("list", []) if isinstance(body, dict) else body
            records.extend(self._decode(r) for r in page)

            page_info = body.get("pageInfo", {}) if isinstance(body, dict) else {}
            if page_info.get("isLastPage", True) or not page:
                break
            offset += len(page)

        return records

    async def get(self, table, record_id):
        try:
            body = await self._request("GET", f"{self._records_url(table)}/{record_id}")
        except NotFoundError:
            raise NotFoundError(f"{table} record {record_id} not found")
        if not body:
            raise NotFoundError(f"{table} record {record_id} not found")
        return self._decode(body)

    async def create(self, table, data):
        body = await self._request("POST", self._records_url(table), json=self._encode(data))
        new_id = (body or {}).get("Id")
        if new_id is None:
            raise PersistenceError(f"NocoDB returned no id for insert into {table}")
        return await self.get(table, new_id)

    async def update(self, table, record_id, data):
        payload = {"Id": int(record_id), **self._encode(data)}
        try:
            await self._request("PATCH", self._records_url(table), json=payload)
        except NotFoundError:
            raise NotFoundError(f"{table} record {record_id} not found")
        return await self.get(table, record_id)

    async def delete(self, table, record_id):
        try:
            await self._request("DELETE", self._records_url(table), json={"Id": int(record_id)})
        except NotFoundError:
            raise NotFoundError(f"{table} record {record_id} not found")

    def is_healthy(self) -> bool:
        return bool(self.token)


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for store operations."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= 2:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = datetime.utcnow()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.threshold:
            self.state = CircuitState.OPEN
            logger.error(
                f"Circuit breaker opened "
                f"(failures: {self.failure_count})"
            )

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.last_failure_time:
                elapsed = (datetime.utcnow() - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test requests
        return True

    def get_state(self) -> str:
        return self.state.value


# ============================================================================
# RESILIENT STORE
# ============================================================================

class ResilientStore(RecordStore):
    """
    Retries PersistenceError with linear backoff and trips a circuit breaker
    after repeated failures.

    Creates carrying an ``idempotency_key`` look the key up before each retry,
    so a write that landed before its response was lost is not duplicated.
    """

    def __init__(
        self,
        inner: RecordStore,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self.inner = inner
        self.name = inner.name
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0
        self.retry_count = 0

    async def _call(
        self,
        operation: str,
        func: Callable[[], Any],
        before_retry: Optional[Callable[[], Any]] = None
    ) -> Any:
        if not self.circuit_breaker.can_execute():
            logger.warning(f"Circuit breaker open for {self.name}, skipping {operation}")
            store_operations.labels(store=self.name, operation=operation, result="rejected").inc()
            raise PersistenceError(f"{self.name} unavailable (circuit open)")

        last_error: Optional[PersistenceError] = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0 and before_retry is not None:
                try:
                    existing = await before_retry()
                except PersistenceError as e:
                    existing = None
                    logger.debug(f"Pre-retry lookup failed on {self.name}: {e}")
                if existing is not None:
                    self.circuit_breaker.record_success()
                    return existing

            try:
                result = await func()
            except NotFoundError:
                self.circuit_breaker.record_success()
                store_operations.labels(store=self.name, operation=operation, result="not_found").inc()
                raise
            except PersistenceError as e:
                last_error = e
                self.error_count += 1
                logger.error(
                    f"{self.name} {operation} error (attempt {attempt + 1}): {e.message}"
                )
                if attempt < self.max_retries:
                    self.retry_count += 1
                    await asyncio.sleep(self.retry_delay * (attempt + 1))
                continue

            self.circuit_breaker.record_success()
            if operation in ("list", "get"):
                self.read_count += 1
            else:
                self.write_count += 1
            store_operations.labels(store=self.name, operation=operation, result="ok").inc()
            return result

        self.circuit_breaker.record_failure()
        store_operations.labels(store=self.name, operation=operation, result="error").inc()
        raise last_error

    async def list(self, table, filters=None):
        return await self._call("list", lambda: self.inner.list(table, filters))

    async def get(self, table, record_id):
        return await self._call("get", lambda: self.inner.get(table, record_id))

    async def create(self, table, data):
        before_retry = None
        key = data.get("idempotency_key")
        if key:
            async def before_retry():
                rows = await self.inner.list(table, {"idempotency_key": key})
                return rows[0] if rows else None

        return await self._call(
            "create",
            lambda: self.inner.create(table, data),
            before_retry=before_retry
        )

    async def update(self, table, record_id, data):
        return await self._call("update", lambda: self.inner.update(table, record_id, data))

    async def delete(self, table, record_id):
        return await self._call("delete", lambda: self.inner.delete(table, record_id))

    def is_healthy(self) -> bool:
        return (
            self.inner.is_healthy() and
            self.circuit_breaker.state != CircuitState.OPEN
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "store": self.name,
            "healthy": self.is_healthy(),
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "retries": self.retry_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count,
        }


# ============================================================================
# FALLBACK STORE
# ============================================================================

class FallbackStore(RecordStore):
    """
    Try each store in order; move to the next only on PersistenceError.

    Stores assign ids independently, so an id only means something to the
    store that returned it. ``list`` and ``create`` fall through the chain
    and remember which store answered for each returned id. ``get``,
    ``update`` and ``delete`` go to that store alone (the first store when
    the id was never seen) and raise PersistenceError when it fails.
    """

    def __init__(self, stores: Sequence[RecordStore]):
        if not stores:
            raise ValueError("FallbackStore needs at least one store")
        self.stores = list(stores)
        self.name = "+".join(s.name for s in self.stores)
        # (table, id) -> store, only for records held outside the first store
        self._owners: Dict[Tuple[str, Any], RecordStore] = {}

    def _remember(self, table: str, store: RecordStore, records: List[Dict[str, Any]]):
        primary = store is self.stores[0]
        for record in records:
            key = (table, record.get("id"))
            if primary:
                self._owners.pop(key, None)
            else:
                self._owners[key] = store

    def owner_of(self, table: str, record_id: Any) -> RecordStore:
        return self._owners.get((table, record_id), self.stores[0])

    async def _first_available(
        self,
        operation: str,
        table: str,
        call: Callable[[RecordStore], Any]
    ) -> Tuple[RecordStore, Any]:
        last_error: Optional[PersistenceError] = None

        for store in self.stores:
            try:
                return store, await call(store)
            except PersistenceError as e:
                last_error = e
                store_fallbacks.labels(from_store=store.name).inc()
                logger.warning(
                    f"{store.name} failed {operation} on {table} ({e.message}), trying next store"
                )

        raise PersistenceError(
            f"All stores failed {operation}: {last_error.message if last_error else 'unknown'}"
        )

    async def _on_owner(self, operation: str, table: str, record_id: Any, call: Callable[[RecordStore], Any]) -> Any:
        store = self.owner_of(table, record_id)
        try:
            return await call(store)
        except PersistenceError as e:
            logger.error(
                f"{store.name} failed {operation} on {table} {record_id}; "
                f"not retrying on a store that did not issue the id"
            )
            raise PersistenceError(
                f"{store.name} failed {operation}: {e.message}",
                {"table": table, "id": record_id, "store": store.name}
            )

    async def list(self, table, filters=None):
        store, rows = await self._first_available("list", table, lambda s: s.list(table, filters))
        self._remember(table, store, rows)
        return rows

    async def get(self, table, record_id):
        return await self._on_owner("get", table, record_id, lambda s: s.get(table, record_id))

    async def create(self, table, data):
        store, record = await self._first_available("create", table, lambda s: s.create(table, data))
        self._remember(table, store, [record])
        return record

    async def update(self, table, record_id, data):
        return await self._on_owner(
            "update", table, record_id, lambda s: s.update(table, record_id, data)
        )

    async def delete(self, table, record_id):
        await self._on_owner("delete", table, record_id, lambda s: s.delete(table, record_id))
        self._owners.pop((table, record_id), None)

    def is_healthy(self) -> bool:
        return any(store.is_healthy() for store in self.stores)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "store": self.name,
            "healthy": self.is_healthy(),
            "backends": [store.get_stats() for store in self.stores],
        }


# ============================================================================
# FACTORY
# ============================================================================

def build_store(storage_config) -> RecordStore:
    """
    Build the configured store chain from StorageConfig.

    Remote backends are wrapped in ResilientStore; the memory store is used
    as-is. A single backend is returned without a FallbackStore.
    """
    from seed import seed_records

    stores: List[RecordStore] = []

    for backend in storage_config.backends:
        if backend == "memory":
            seed = seed_records() if storage_config.seed_memory_store else None
            stores.append(MemoryStore(seed=seed))
            continue

        if backend == "supabase":
            inner: RecordStore = SupabaseStore(
                storage_config.supabase_url,
                storage_config.supabase_key,
                timeout=storage_config.timeout
            )
        else:
            inner = NocoDBStore(
                storage_config.nocodb_base_url,
                storage_config.nocodb_token,
                storage_config.nocodb_tables,
                timeout=storage_config.timeout
            )

        stores.append(ResilientStore(
            inner,
            max_retries=storage_config.max_retries,
            retry_delay=storage_config.retry_delay,
            circuit_breaker=CircuitBreaker(
                threshold=storage_config.circuit_breaker_threshold,
                timeout=storage_config.circuit_breaker_timeout
            )
        ))

    logger.info(f"Record store chain: {' -> '.join(s.name for s in stores)}")

    if len(stores) == 1:
        return stores[0]
    return FallbackStore(stores)
