"""DAN event and key registry.

Each shop gets a deterministic key pair derived from its id, namespace and
a deployment salt. Outbound events are hashed, signed with the private key
and chained to the shop's previous event through ``prevHash``. Events that
cannot reach the control plane are appended to a local JSON buffer and
re-sent, in one insert, before the next publish or when a listener
reconnects. Delivery is at least once.

After an event is delivered or buffered, the shop's policies (see
``shelfsync.policies``) are evaluated against its payload.

Control-plane tables (Supabase / PostgREST):

    dan_keys    (shop_id PK, namespace, public_key, fingerprint,
                 capability_scope, last_seen_at)
    dan_events  (event_id PK, shop_id, namespace, event_type, payload,
                 share_scope, vector_context, proofs, actor_public_key,
                 actor_fingerprint, actor_signature, created_at)
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import inspect
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
from pydantic import Field

from .models import CamelModel, DanShareScope, ShopContext, utc_now_iso
from .policies import POLICY_TRIGGER_EVENT, PolicyEngine, PolicyStore
from .state import read_json, write_json

logger = logging.getLogger("shelfsync.dan")

KEYS_FILE = "dan_keys.json"
BUFFER_FILE = "dan_event_buffer.json"
CAPABILITY_SCOPE = [DanShareScope.LOCAL, DanShareScope.DAN]


class DanEventType(str, Enum):
    OFFER_CREATED = "inventory.offer.created"
    OFFER_RESERVED = "inventory.offer.reserved"
    OFFER_FULFILLED = "inventory.offer.fulfilled"
    BATCH_RECEIPT_ATTESTED = "batch.receipt.attested"
    DELIVERY_CAPACITY_UPDATED = "delivery.capacity.updated"
    POLICY_TRIGGER_EXECUTED = "policy.trigger.executed"


class ControlPlaneError(Exception):
    """The control plane rejected a request or could not be reached."""


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class DanKeyMaterial(CamelModel):
    public_key: str
    fingerprint: str
    private_key: str
    derived_at: str = Field(default_factory=utc_now_iso)
    last_registered_at: str | None = None
    chain_head: str | None = None


class DanActor(CamelModel):
    public_key: str
    fingerprint: str
    signature: str


class DanEventRecord(CamelModel):
    event_id: str
    event_type: str
    shop_id: str
    namespace: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    share_scope: list[DanShareScope] = Field(default_factory=lambda: [DanShareScope.LOCAL])
    vector_context: dict[str, Any] | None = None
    proofs: dict[str, Any] = Field(default_factory=dict)
    actor: DanActor
    created_at: str = Field(default_factory=utc_now_iso)

    def to_row(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "shop_id": self.shop_id,
            "namespace": self.namespace,
            "event_type": self.event_type,
            "payload": self.payload,
            "share_scope": [scope.value for scope in self.share_scope],
            "vector_context": self.vector_context,
            "proofs": self.proofs,
            "actor_public_key": self.actor.public_key,
            "actor_fingerprint": self.actor.fingerprint,
            "actor_signature": self.actor.signature,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> DanEventRecord:
        return cls(
            event_id=row["event_id"],
            event_type=row["event_type"],
            shop_id=row["shop_id"],
            namespace=row.get("namespace"),
            payload=row.get("payload") or {},
            share_scope=row.get("share_scope") or [DanShareScope.LOCAL],
            vector_context=row.get("vector_context"),
            proofs=row.get("proofs") or {},
            actor=DanActor(
                public_key=row.get("actor_public_key", ""),
                fingerprint=row.get("actor_fingerprint", ""),
                signature=row.get("actor_signature", ""),
            ),
            created_at=row.get("created_at") or utc_now_iso(),
        )


class DanContext(CamelModel):
    enabled: bool
    shop_id: str | None = None
    namespace: str | None = None
    public_key: str | None = None
    fingerprint: str | None = None
    capability_scope: list[DanShareScope] = Field(
        default_factory=lambda: [DanShareScope.LOCAL]
    )
    last_registered_at: str | None = None
    reason: str


# ---------------------------------------------------------------------------
# Hashing and keys
# ---------------------------------------------------------------------------


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_payload(payload: Any) -> str:
    """SHA-256 of the canonical JSON form (sorted keys, compact)."""
    if isinstance(payload, str):
        return sha256_hex(payload)
    canonical = json.dumps(payload or {}, sort_keys=True, separators=(",", ":"), default=str)
    return sha256_hex(canonical)


def derive_key_material(shop_id: str, namespace: str | None, salt: str) -> DanKeyMaterial:
    private_key = sha256_hex(f"{shop_id}:{namespace or 'global'}:{salt}:private")
    public_key = sha256_hex(f"{private_key}:public")
    return DanKeyMaterial(
        private_key=private_key,
        public_key=public_key,
        fingerprint=public_key[:16],
    )


def sign(private_key: str, payload_hash: str) -> str:
    return sha256_hex(f"{private_key}:{payload_hash}")


def resolve_share_scope(scopes: Iterable[DanShareScope | str] | None) -> list[DanShareScope]:
    """``scopes`` with ``local`` always present, first-seen order, no duplicates."""
    resolved = [DanShareScope.LOCAL]
    for scope in scopes or []:
        scope = DanShareScope(scope)
        if scope not in resolved:
            resolved.append(scope)
    return resolved


def verify_chain(records: list[DanEventRecord]) -> bool:
    """Check every payload hash and every ``prevHash`` link of one shop's events."""
    previous: str | None = None
    for index, record in enumerate(records):
        expected = hash_payload(record.payload)
        if record.proofs.get("hash") != expected:
            logger.warning("Event %s payload hash mismatch", record.event_id)
            return False
        if index > 0 and record.proofs.get("prevHash") != previous:
            logger.warning("Event %s breaks the chain", record.event_id)
            return False
        previous = expected
    return True


# ---------------------------------------------------------------------------
# Local durability
# ---------------------------------------------------------------------------


class KeyStore:
    """Key material per shop in a local JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def _all(self) -> dict[str, Any]:
        return read_json(self.path, {})

    def get(self, shop_id: str) -> DanKeyMaterial | None:
        raw = self._all().get(shop_id)
        return DanKeyMaterial.model_validate(raw) if raw else None

    def put(self, shop_id: str, key: DanKeyMaterial) -> None:
        keys = self._all()
        keys[shop_id] = key.model_dump(by_alias=True)
        write_json(self.path, keys)


class EventBuffer:
    """Undelivered events in a local JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def read(self) -> list[DanEventRecord]:
        return [DanEventRecord.model_validate(raw) for raw in read_json(self.path, [])]

    def append(self, record: DanEventRecord) -> None:
        buffered = read_json(self.path, [])
        buffered.append(record.model_dump(by_alias=True, mode="json"))
        write_json(self.path, buffered)

    def clear(self) -> None:
        write_json(self.path, [])

    def __len__(self) -> int:
        return len(read_json(self.path, []))


# ---------------------------------------------------------------------------
# Control plane
# ---------------------------------------------------------------------------


class ControlPlane(ABC):
    @abstractmethod
    async def register_key(self, row: dict[str, Any]) -> None: ...

    @abstractmethod
    async def insert_events(self, rows: list[dict[str, Any]]) -> None: ...

    @abstractmethod
    async def fetch_events(self, since: str | None, limit: int = 100) -> list[dict[str, Any]]:
        """Rows of ``dan_events`` created after ``since``, oldest first."""

    async def close(self) -> None:
        pass


class InMemoryControlPlane(ControlPlane):
    """Control plane kept in process memory; for development and tests."""

    def __init__(self) -> None:
        self.keys: dict[str, dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []

    async def register_key(self, row: dict[str, Any]) -> None:
        self.keys[row["shop_id"]] = dict(row)

    async def insert_events(self, rows: list[dict[str, Any]]) -> None:
        self.events.extend(dict(row) for row in rows)

    async def fetch_events(self, since: str | None, limit: int = 100) -> list[dict[str, Any]]:
        rows = sorted(
            (row for row in self.events if since is None or row["created_at"] > since),
            key=lambda row: row["created_at"],
        )
        return rows[:limit]


class SupabaseControlPlane(ControlPlane):
    """PostgREST access to the ``dan_keys`` and ``dan_events`` tables."""

    def __init__(
        self,
        url: str,
        service_key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/rest/v1",
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        logger.info("DAN control plane: %s", url)

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        try:
            resp = await self._client.request(
                method, f"/{table}", params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            raise ControlPlaneError(f"{method} {table} failed: {e}") from e
        if resp.status_code >= 400:
            raise ControlPlaneError(f"{method} {table} -> {resp.status_code}: {resp.text}")
        return resp

    async def register_key(self, row: dict[str, Any]) -> None:
        await self._request(
            "POST",
            "dan_keys",
            params={"on_conflict": "shop_id"},
            json=row,
            prefer="resolution=merge-duplicates",
        )

    async def insert_events(self, rows: list[dict[str, Any]]) -> None:
        await self._request("POST", "dan_events", json=rows, prefer="return=minimal")

    async def fetch_events(self, since: str | None, limit: int = 100) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"order": "created_at.asc", "limit": str(limit)}
        if since:
            params["created_at"] = f"gt.{since}"
        resp = await self._request("GET", "dan_events", params=params)
        return resp.json()

    async def close(self) -> None:
        await self._client.aclose()


def create_control_plane(url: str = "", service_key: str = "") -> ControlPlane | None:
    if url and service_key:
        return SupabaseControlPlane(url, service_key)
    logger.info("No DAN control plane configured; events will be buffered locally")
    return None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class DanRegistry:
    def __init__(
        self,
        *,
        enabled: bool,
        salt: str,
        state_dir: str | Path,
        control_plane: ControlPlane | None = None,
        policies: PolicyEngine | None = None,
    ) -> None:
        self.enabled = enabled
        self.salt = salt
        self.control_plane = control_plane
        state = Path(state_dir).expanduser()
        self.keys = KeyStore(state / KEYS_FILE)
        self.buffer = EventBuffer(state / BUFFER_FILE)
        self.policies = policies or PolicyEngine(PolicyStore(state), publish=self.publish)

    async def _register(self, shop: ShopContext, key: DanKeyMaterial) -> DanKeyMaterial:
        if self.control_plane is None:
            return key
        now = utc_now_iso()
        try:
            await self.control_plane.register_key(
                {
                    "shop_id": shop.id,
                    "namespace": shop.namespace,
                    "public_key": key.public_key,
                    "fingerprint": key.fingerprint,
                    "capability_scope": [scope.value for scope in CAPABILITY_SCOPE],
                    "last_seen_at": now,
                }
            )
        except ControlPlaneError as e:
            logger.warning("Failed to register DAN key for shop %s: %s", shop.id, e)
            return key
        key = key.model_copy(update={"last_registered_at": now})
        self.keys.put(shop.id, key)
        return key

    async def ensure_key(self, shop: ShopContext) -> DanKeyMaterial | None:
        if not self.enabled:
            return None
        key = self.keys.get(shop.id)
        if key is None:
            key = derive_key_material(shop.id, shop.namespace, self.salt)
            self.keys.put(shop.id, key)
        return await self._register(shop, key)

    async def get_context(self, shop: ShopContext | None) -> DanContext:
        if shop is None:
            return DanContext(enabled=False, reason="no-shop")
        if not self.enabled:
            return DanContext(
                enabled=False, shop_id=shop.id, namespace=shop.namespace, reason="flag-disabled"
            )
        key = await self.ensure_key(shop)
        return DanContext(
            enabled=True,
            shop_id=shop.id,
            namespace=shop.namespace,
            public_key=key.public_key,
            fingerprint=key.fingerprint,
            capability_scope=list(CAPABILITY_SCOPE),
            last_registered_at=key.last_registered_at or key.derived_at,
            reason="ok",
        )

    async def flush_buffered(self) -> int:
        """Send every buffered event in one insert; returns how many were sent."""
        if self.control_plane is None:
            return 0
        buffered = self.buffer.read()
        if not buffered:
            return 0
        try:
            await self.control_plane.insert_events([record.to_row() for record in buffered])
        except ControlPlaneError as e:
            logger.warning("Failed to flush %d buffered DAN event(s): %s", len(buffered), e)
            return 0
        self.buffer.clear()
        logger.info("Flushed %d buffered DAN event(s)", len(buffered))
        return len(buffered)

    async def publish(
        self,
        shop: ShopContext | None,
        event_type: DanEventType | str,
        payload: dict[str, Any] | None = None,
        *,
        share_scope: Iterable[DanShareScope | str] | None = None,
        vector_context: dict[str, Any] | None = None,
        proofs: dict[str, Any] | None = None,
    ) -> DanEventRecord | None:
        """Sign, chain and deliver one event, then run the shop's policies on it.

        None when DAN is disabled.
        """
        if not self.enabled or shop is None:
            return None
        key = await self.ensure_key(shop)

        body = json.loads(json.dumps(payload or {}, default=str))
        payload_hash = hash_payload(body)
        record = DanEventRecord(
            event_id=str(uuid.uuid4()),
            event_type=DanEventType(event_type).value,
            shop_id=shop.id,
            namespace=shop.namespace,
            payload=body,
            share_scope=resolve_share_scope(share_scope),
            vector_context=vector_context,
            proofs={**(proofs or {}), "hash": payload_hash, "prevHash": key.chain_head},
            actor=DanActor(
                public_key=key.public_key,
                fingerprint=key.fingerprint,
                signature=sign(key.private_key, payload_hash),
            ),
        )
        self.keys.put(shop.id, key.model_copy(update={"chain_head": payload_hash}))

        await self.flush_buffered()
        if self.control_plane is None:
            self.buffer.append(record)
            await self._evaluate_policies(shop, record)
            return record
        try:
            await self.control_plane.insert_events([record.to_row()])
        except ControlPlaneError as e:
            logger.warning("DAN event %s buffered: %s", record.event_id, e)
            self.buffer.append(record)
        await self._evaluate_policies(shop, record)
        return record

    async def _evaluate_policies(self, shop: ShopContext, record: DanEventRecord) -> None:
        if record.event_type == POLICY_TRIGGER_EVENT:
            return
        await self.policies.evaluate(shop, record.event_type, record.payload)

    async def close(self) -> None:
        await self.policies.close()
        if self.control_plane is not None:
            await self.control_plane.close()


# ---------------------------------------------------------------------------
# Listener
# ---------------------------------------------------------------------------

EventHandler = Callable[[DanEventRecord], Awaitable[None] | None]


class DanEventListener:
    """Polls ``dan_events`` for new rows in a background task.

    On the first successful poll, and on every successful poll that follows
    a failed one, the registry's local buffer is flushed.
    """

    def __init__(
        self,
        registry: DanRegistry,
        handler: EventHandler,
        *,
        interval: float = 15.0,
        since: str | None = None,
    ) -> None:
        self.registry = registry
        self.handler = handler
        self.interval = interval
        self.last_seen = since
        self._connected = False
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self.registry.control_plane is None or not self.registry.enabled:
            logger.warning("DAN listener not started: control plane missing or DAN disabled")
            return
        if self._task and not self._task.done():
            logger.warning("DAN listener already running")
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info("DAN listener started (interval=%ss)", self.interval)

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("DAN listener stopped")

    async def aclose(self) -> None:
        """Stop the loop and wait for it to exit."""
        task = self._task
        self.stop()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("DAN listener error")
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> int:
        """Fetch and deliver new events; returns how many were delivered."""
        control_plane = self.registry.control_plane
        if control_plane is None:
            return 0
        try:
            rows = await control_plane.fetch_events(self.last_seen)
        except ControlPlaneError as e:
            if self._connected:
                logger.warning("DAN listener disconnected: %s", e)
            self._connected = False
            return 0

        if not self._connected:
            self._connected = True
            await self.registry.flush_buffered()

        for row in rows:
            record = DanEventRecord.from_row(row)
            outcome = self.handler(record)
            if inspect.isawaitable(outcome):
                await outcome
            if self.last_seen is None or record.created_at > self.last_seen:
                self.last_seen = record.created_at
        return len(rows)
