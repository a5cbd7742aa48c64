"""
Identity provider configuration: layered resolution and persistence.

The provider configuration is two values, the Descope project id and the
Descope API base URL. Each one resolves independently, in this order:

    1. A persisted override (JSON object under key "config" in the
       "descope-config" blob store), when present and non-empty
    2. The process settings (DESCOPE_PROJECT_ID / DESCOPE_BASE_URL)
    3. The hard-coded default (only base_url has one)

So a stored projectId with no stored baseUrl still takes baseUrl from the
environment or the default.

The durable store is optional. When it is missing or failing, resolve() logs
and carries on with the lower layers, and update() keeps the merged config in a
ConfigCache owned by the resolver so the change is still visible to this
process. A fresh process starts with an empty cache and does not see it.

One ConfigResolver is built per process (see ConfigResolver.from_settings) and
handed to everything that needs the provider configuration.
"""

import functools
import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any
from urllib.parse import urlparse

from anyio import to_thread

from descope_mcp.blob_store import BlobStoreUnavailable, FileBlobStore
from descope_mcp.config import Settings

logger = logging.getLogger("mcp-server.config")

DEFAULT_BASE_URL = "https://api.descope.com"
CONFIG_KEY = "config"
CONFIG_FIELDS = ("projectId", "baseUrl")


class ConfigValidationError(Exception):
    """Raised by update() when the submitted configuration is malformed."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class PersistenceUnavailable(Exception):
    """
    Raised by update(require_durable=True) when the durable write failed.

    The update is already in effect for this process when this is raised;
    `config` holds the effective configuration including it.
    """

    def __init__(self, message: str, config: "ProviderConfig", status_code: int = 503):
        self.message = message
        self.config = config
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class ProviderConfig:
    """
    Effective identity provider configuration.

    Attributes:
        base_url: Descope API base URL, always absolute and non-empty
        project_id: Descope project id, None when nothing configures one
    """

    base_url: str
    project_id: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"projectId": self.project_id, "baseUrl": self.base_url}


class ConfigCache:
    """
    In-process copy of configuration that could not be persisted.

    Holds the full persisted view (every field, not just the changed ones) as
    of the last failed write. Readers take the current mapping without locking;
    writers swap in a new immutable mapping under a lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Mapping[str, str] = MappingProxyType({})

    def snapshot(self) -> Mapping[str, str]:
        return self._values

    def put(self, values: Mapping[str, str]) -> None:
        with self._lock:
            self._values = MappingProxyType(dict(values))

    def clear(self) -> None:
        with self._lock:
            self._values = MappingProxyType({})


def validate_partial(partial: Any) -> dict[str, str]:
    """
    Check a submitted partial configuration and return the fields it sets.

    None values count as "not provided". An empty string is kept: it clears
    the persisted override for that field.

    Raises:
        ConfigValidationError: on a non-object body, unknown fields,
            non-string values or a base URL that is not absolute http(s)
    """
    if not isinstance(partial, Mapping):
        raise ConfigValidationError("Configuration must be a JSON object")

    unknown = sorted(set(partial) - set(CONFIG_FIELDS))
    if unknown:
        raise ConfigValidationError(f"Unknown configuration field(s): {', '.join(unknown)}")

    changes: dict[str, str] = {}
    for field in CONFIG_FIELDS:
        value = partial.get(field)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ConfigValidationError(f"{field} must be a string")
        changes[field] = value.strip()

    base_url = changes.get("baseUrl")
    if base_url:
        parsed = urlparse(base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigValidationError("baseUrl must be an absolute http(s) URL")
        changes["baseUrl"] = base_url.rstrip("/")

    return changes


class ConfigResolver:
    """
    Resolves and updates the provider configuration.

    Args:
        store: Durable blob store with get(key) and set(key, value); raises
               BlobStoreUnavailable when it cannot be used
        fallback: Process-level values (from Settings), used per field when
                  no override is persisted
        cache: Holder for updates that failed to persist. A new one is
               created when omitted.
    """

    def __init__(self, store, fallback: ProviderConfig, cache: ConfigCache | None = None):
        self.store = store
        self.fallback = fallback
        self.cache = cache if cache is not None else ConfigCache()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConfigResolver":
        store = FileBlobStore(settings.blob_store_dir, settings.config_store_name)
        fallback = ProviderConfig(
            base_url=settings.descope_base_url or DEFAULT_BASE_URL,
            project_id=settings.descope_project_id or None,
        )
        return cls(store, fallback)

    def _load_stored(self) -> dict[str, str]:
        try:
            raw = self.store.get(CONFIG_KEY)
        except BlobStoreUnavailable as e:
            logger.warning(
                "Failed to load configuration from blob store, using fallbacks",
                extra={"log_data": {"error": str(e)}},
            )
            return {}
        except Exception as e:
            # Stores are injected; a read failure of any kind only drops the override layer.
            logger.exception(
                "Unexpected error reading configuration from blob store, using fallbacks",
                extra={"log_data": {"error": str(e), "store": type(self.store).__name__}},
            )
            return {}

        if not isinstance(raw, str) or not raw:
            return {}

        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(
                "Stored configuration is not valid JSON, ignoring it",
                extra={"log_data": {"error": str(e)}},
            )
            return {}

        if not isinstance(value, dict):
            logger.error("Stored configuration is not a JSON object, ignoring it")
            return {}

        return {
            field: value[field]
            for field in CONFIG_FIELDS
            if isinstance(value.get(field), str)
        }

    def persisted(self) -> dict[str, str]:
        """The persisted layer: the durable store plus this process's unsaved updates."""
        return {**self._load_stored(), **self.cache.snapshot()}

    def resolve(self) -> ProviderConfig:
        """Return the effective configuration. Never raises."""
        persisted = self.persisted()
        return ProviderConfig(
            base_url=persisted.get("baseUrl") or self.fallback.base_url or DEFAULT_BASE_URL,
            project_id=persisted.get("projectId") or self.fallback.project_id,
        )

    async def resolve_async(self) -> ProviderConfig:
        """resolve() on a worker thread, for callers on the event loop."""
        return await to_thread.run_sync(self.resolve)

    async def update_async(self, partial: Mapping[str, Any], *, require_durable: bool = False) -> ProviderConfig:
        return await to_thread.run_sync(functools.partial(self.update, partial, require_durable=require_durable))

    def update(self, partial: Mapping[str, Any], *, require_durable: bool = False) -> ProviderConfig:
        """
        Merge `partial` over the persisted configuration and save it.

        The merge is over the persisted layer only, so values that currently
        come from the environment or the default are not frozen into storage.

        When the durable write fails the merged configuration is kept in the
        cache and the effective configuration reflects it for the rest of this
        process. That is logged; with require_durable=True it is also raised.

        Returns:
            The effective configuration after the update

        Raises:
            ConfigValidationError: if `partial` is malformed (nothing changes)
            PersistenceUnavailable: only with require_durable=True
        """
        changes = validate_partial(partial)
        merged = {**self.persisted(), **changes}

        try:
            self.store.set(CONFIG_KEY, json.dumps(merged))
        except BlobStoreUnavailable as e:
            self.cache.put(merged)
            logger.warning(
                "Configuration will not be persisted, keeping it in memory for this process",
                extra={"log_data": {"error": str(e), "fields": sorted(changes)}},
            )
            if require_durable:
                raise PersistenceUnavailable(
                    f"Configuration could not be persisted: {e}", config=self.resolve()
                ) from e
        else:
            self.cache.clear()
            logger.info(
                "Configuration updated",
                extra={"log_data": {"fields": sorted(changes)}},
            )

        return self.resolve()
