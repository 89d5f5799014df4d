"""Load tenant configuration documents into frozen ``TenantConfig`` snapshots.

Documents come from a read-only ``TenantConfigStore`` (a directory of JSON
files in production, a dict in tests).  ``ConfigLoader`` validates each
document once, caches the resulting snapshot for a short TTL, and
quarantines documents that fail validation so a broken edit never reaches
the hot path of a live call.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from receptionist.errors import TenantConfigError, TenantNotFoundError
from receptionist.tenants.schema import TenantConfig

log = logging.getLogger("receptionist.tenants.loader")


# ── Stores ─────────────────────────────────────────────────────────


class TenantConfigStore(ABC):
    """Read-only source of raw tenant configuration documents."""

    @abstractmethod
    async def fetch(self, tenant_id: str) -> dict[str, Any]:
        """Return the raw document for ``tenant_id``.

        Raises:
            TenantNotFoundError: no document exists for the tenant.
        """


class InMemoryTenantConfigStore(TenantConfigStore):
    """Documents held in a dict keyed by tenant id."""

    def __init__(self, documents: dict[str, dict[str, Any]] | None = None) -> None:
        self._documents = dict(documents or {})

    def put(self, tenant_id: str, document: dict[str, Any]) -> None:
        """Replace a tenant's document (simulates an admin edit)."""
        self._documents[tenant_id] = document

    async def fetch(self, tenant_id: str) -> dict[str, Any]:
        document = self._documents.get(tenant_id)
        if document is None:
            raise TenantNotFoundError(tenant_id)
        return json.loads(json.dumps(document))


class FileTenantConfigStore(TenantConfigStore):
    """One ``<tenant_id>.json`` (or ``.jsonl``) file per tenant in a directory."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    async def fetch(self, tenant_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._read, tenant_id)

    def _read(self, tenant_id: str) -> dict[str, Any]:
        if not tenant_id or "/" in tenant_id or "\\" in tenant_id or tenant_id.startswith("."):
            raise TenantNotFoundError(tenant_id)

        for suffix in (".json", ".jsonl"):
            path = self._directory / f"{tenant_id}{suffix}"
            if not path.is_file():
                continue
            text = path.read_text(encoding="utf-8").strip()
            if suffix == ".jsonl":
                # JSONL: one document per line, take the first non-empty line
                lines = [line.strip() for line in text.splitlines() if line.strip()]
                text = lines[0] if lines else ""
            try:
                data = json.loads(text)
            except json.JSONDecodeError as exc:
                raise TenantConfigError(tenant_id, f"invalid JSON in {path.name}: {exc}") from exc
            if not isinstance(data, dict):
                raise TenantConfigError(tenant_id, f"{path.name} is not a JSON object")
            return data

        raise TenantNotFoundError(tenant_id)


# ── Loader ─────────────────────────────────────────────────────────


def parse_tenant_config(tenant_id: str, data: dict[str, Any]) -> TenantConfig:
    """Validate a raw document into a ``TenantConfig``.

    The document's own ``tenant_id`` must match the requested one when
    present; otherwise it is filled in.
    """
    data = dict(data)
    declared = data.setdefault("tenant_id", tenant_id)
    if declared != tenant_id:
        raise TenantConfigError(
            tenant_id, f"document declares tenant_id {declared!r}"
        )
    try:
        return TenantConfig.model_validate(data)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()[:5]
        )
        raise TenantConfigError(tenant_id, f"invalid configuration: {errors}") from exc


class ConfigLoader:
    """Resolve a tenant's active configuration into an immutable snapshot."""

    def __init__(
        self,
        store: TenantConfigStore,
        cache_ttl_seconds: float = 60.0,
        max_entries: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = cache_ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._cache: OrderedDict[str, tuple[float, TenantConfig]] = OrderedDict()
        self._quarantine: dict[str, tuple[float, str]] = {}

    async def load(self, tenant_id: str) -> TenantConfig:
        """Return the tenant's validated snapshot.

        Raises:
            TenantConfigError: the document is missing, malformed, or
                quarantined after a recent validation failure.
        """
        now = self._clock()

        cached = self._cache.get(tenant_id)
        if cached and now - cached[0] < self._ttl:
            return cached[1]

        quarantined = self._quarantine.get(tenant_id)
        if quarantined and now - quarantined[0] < self._ttl:
            raise TenantConfigError(tenant_id, f"quarantined: {quarantined[1]}")

        raw = await self._store.fetch(tenant_id)
        try:
            config = parse_tenant_config(tenant_id, raw)
        except TenantConfigError as exc:
            self._quarantine[tenant_id] = (now, exc.reason)
            self._cache.pop(tenant_id, None)
            log.error("Tenant config quarantined: %s", exc)
            raise

        self._quarantine.pop(tenant_id, None)
        self._remember(tenant_id, now, config)
        log.info(
            "Tenant config loaded: tenant=%s revision=%s scenarios=%d",
            tenant_id, config.revision or "-", len(config.scenarios),
        )
        return config

    def invalidate(self, tenant_id: str | None = None) -> None:
        """Drop cached snapshots (one tenant, or all)."""
        if tenant_id is None:
            self._cache.clear()
            self._quarantine.clear()
        else:
            self._cache.pop(tenant_id, None)
            self._quarantine.pop(tenant_id, None)

    def _remember(self, tenant_id: str, now: float, config: TenantConfig) -> None:
        self._cache[tenant_id] = (now, config)
        self._cache.move_to_end(tenant_id)
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)
