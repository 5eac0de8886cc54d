"""Pluggable credential storage backends.

Provides the TokenStore ABC keyed by (provider_id, user_id), the optional
AccountDeletion capability, and concrete implementations for in-memory,
JSON file, OS keyring and Redis-backed persistence, plus a replicated store
that mirrors a fast backend into a durable one.

A stored record that cannot be decoded is logged, removed from the backend
that held it and reported as absent.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import logging
import os
import re
import tempfile
import threading
import time

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..exceptions import AccountNotFoundError, CorruptedPersistedData
from ..types import AccountKey, Credential, UserProfile


if TYPE_CHECKING:
    from ..config import StorageSettings


logger = logging.getLogger("cloudauth.auth")

_GLOB_SPECIAL = re.compile(r"[\\*?\[\]]")


class TokenStore(ABC):
    """Abstract base class for credential storage.

    All methods are async to support both local and network-backed stores.
    """

    @abstractmethod
    async def store_token(self, provider_id: str, user_id: str, credential: Credential) -> None:
        """Create or overwrite the credential of an account.

        Parameters
        ----------
        provider_id : str
            Provider identifier.
        user_id : str
            User identifier.
        credential : Credential
            The credential to persist.
        """

    @abstractmethod
    async def get_token(self, provider_id: str, user_id: str) -> Credential | None:
        """Load the credential of an account.

        Returns
        -------
        Credential or None
            The stored credential, or None if absent or unreadable.
        """

    @abstractmethod
    async def get_all_tokens(self, provider_id: str) -> dict[str, Credential]:
        """Load every readable credential of a provider, keyed by user id."""

    @abstractmethod
    async def remove_token(self, provider_id: str, user_id: str) -> None:
        """Delete an account's credential.

        Clears the provider's active pointer if it referenced this user.
        """

    @abstractmethod
    async def remove_all_tokens(self, provider_id: str) -> None:
        """Delete every credential of a provider and its active pointer."""

    @abstractmethod
    async def get_active_user(self, provider_id: str) -> str | None:
        """Return the provider's active user id.

        A pointer that references a missing credential is cleared and
        reported as None.
        """

    @abstractmethod
    async def set_active_user(self, provider_id: str, user_id: str) -> None:
        """Point the provider's active account at ``user_id``.

        Raises
        ------
        AccountNotFoundError
            If no credential is stored for the account.
        """

    @abstractmethod
    async def clear_active_user(self, provider_id: str) -> None:
        """Remove the provider's active pointer."""

    async def has_token(self, provider_id: str, user_id: str) -> bool:
        """Check whether a readable credential is stored for an account."""
        return await self.get_token(provider_id, user_id) is not None

    async def close(self) -> None:  # noqa: B027
        """Release connections held by the backend."""


class AccountDeletion(ABC):
    """Bulk account management offered by some token stores.

    Detected with ``isinstance(store, AccountDeletion)``.
    """

    @abstractmethod
    async def delete_user_account(self, provider_id: str, user_id: str) -> bool:
        """Delete one account. Returns True if it existed."""

    @abstractmethod
    async def delete_all_accounts_for_provider(self, provider_id: str) -> int:
        """Delete every account of a provider. Returns how many were removed."""

    @abstractmethod
    async def list_user_ids_for_provider(self, provider_id: str) -> list[str]:
        """List the user ids that have a stored credential."""

    @abstractmethod
    async def user_account_exists(self, provider_id: str, user_id: str) -> bool:
        """Check whether an account has a stored credential."""


def _serialize_credential(credential: Credential) -> str:
    """Serialize a Credential to JSON."""
    profile = credential.profile
    return json.dumps(
        {
            "access_token": credential.access_token,
            "refresh_token": credential.refresh_token,
            "expires_at": credential.expires_at,
            "token_type": credential.token_type,
            "scope": credential.scope,
            "extra": credential.extra,
            "has_permission_issues": credential.has_permission_issues,
            "needs_reauth": credential.needs_reauth,
            "last_error": credential.last_error,
            "created_at": credential.created_at,
            "updated_at": credential.updated_at,
            "profile": (
                None
                if profile is None
                else {
                    "name": profile.name,
                    "email": profile.email,
                    "picture_url": profile.picture_url,
                    "updated_at": profile.updated_at,
                }
            ),
        }
    )


def _deserialize_credential(data: str | bytes, key: str | None = None) -> Credential:
    """Deserialize a Credential from JSON.

    Raises
    ------
    CorruptedPersistedData
        If the record is not valid JSON or lacks an access token.
    """
    try:
        obj = json.loads(data)
        if not isinstance(obj, dict):
            msg = f"expected an object, got {type(obj).__name__}"
            raise TypeError(msg)
        access_token = obj["access_token"]
        if not isinstance(access_token, str) or not access_token:
            msg = "access_token must be a non-empty string"
            raise TypeError(msg)
        raw_profile = obj.get("profile")
        profile = None
        if isinstance(raw_profile, dict):
            profile = UserProfile(
                name=raw_profile.get("name"),
                email=raw_profile.get("email"),
                picture_url=raw_profile.get("picture_url"),
                updated_at=float(raw_profile.get("updated_at") or time.time()),
            )
        expires_at = obj.get("expires_at")
        now = time.time()
        return Credential(
            access_token=access_token,
            refresh_token=obj.get("refresh_token"),
            expires_at=float(expires_at) if expires_at is not None else None,
            token_type=obj.get("token_type") or "Bearer",
            scope=obj.get("scope") or "",
            extra=dict(obj.get("extra") or {}),
            has_permission_issues=bool(obj.get("has_permission_issues", False)),
            needs_reauth=bool(obj.get("needs_reauth", False)),
            profile=profile,
            last_error=obj.get("last_error"),
            created_at=float(obj.get("created_at") or now),
            updated_at=float(obj.get("updated_at") or now),
        )
    except (ValueError, TypeError, KeyError) as exc:
        msg = f"Unreadable credential record: {exc}"
        raise CorruptedPersistedData(msg, key=key) from exc


def _token_key(provider_id: str, user_id: str) -> str:
    """Storage key of an account's credential."""
    return f"token:{AccountKey(provider_id, user_id)}"


def _active_key(provider_id: str) -> str:
    """Storage key of a provider's active-account pointer."""
    return f"active:{provider_id}"


async def _run_blocking(func: Any, *args: Any) -> Any:
    """Run a blocking call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args))


class KeyValueTokenStore(TokenStore, AccountDeletion):
    """TokenStore over a single string key space.

    Subclasses provide four raw primitives; this class maps the credential
    contract onto keys ``token:<provider>:<user>`` and ``active:<provider>``.
    """

    @abstractmethod
    async def _get(self, key: str) -> str | None:
        """Read a raw value."""

    @abstractmethod
    async def _set(self, key: str, value: str) -> None:
        """Write a raw value."""

    @abstractmethod
    async def _delete(self, key: str) -> None:
        """Delete a raw value (missing keys are ignored)."""

    @abstractmethod
    async def _scan(self, prefix: str) -> list[str]:
        """List the keys starting with ``prefix``."""

    async def _load(self, key: str) -> Credential | None:
        """Read and decode a record, discarding it if corrupted."""
        raw = await self._get(key)
        if raw is None:
            return None
        try:
            return _deserialize_credential(raw, key=key)
        except CorruptedPersistedData as exc:
            logger.warning("Discarding corrupted token record: %s", exc)
            await self._delete(key)
            return None

    async def store_token(self, provider_id: str, user_id: str, credential: Credential) -> None:
        """Persist a credential."""
        await self._set(_token_key(provider_id, user_id), _serialize_credential(credential))

    async def get_token(self, provider_id: str, user_id: str) -> Credential | None:
        """Load a credential."""
        return await self._load(_token_key(provider_id, user_id))

    async def get_all_tokens(self, provider_id: str) -> dict[str, Credential]:
        """Load every credential of a provider."""
        prefix = f"token:{provider_id}:"
        tokens: dict[str, Credential] = {}
        for key in sorted(await self._scan(prefix)):
            credential = await self._load(key)
            if credential is not None:
                tokens[key[len(prefix) :]] = credential
        return tokens

    async def remove_token(self, provider_id: str, user_id: str) -> None:
        """Delete a credential and any active pointer at it."""
        await self._delete(_token_key(provider_id, user_id))
        if await self._get(_active_key(provider_id)) == user_id:
            await self._delete(_active_key(provider_id))

    async def remove_all_tokens(self, provider_id: str) -> None:
        """Delete all credentials of a provider."""
        for key in await self._scan(f"token:{provider_id}:"):
            await self._delete(key)
        await self._delete(_active_key(provider_id))

    async def get_active_user(self, provider_id: str) -> str | None:
        """Return the active user id, clearing a dangling pointer."""
        user_id = await self._get(_active_key(provider_id))
        if not user_id:
            return None
        if await self._load(_token_key(provider_id, user_id)) is None:
            logger.info("Clearing active pointer of %s: no credential for it", provider_id)
            await self._delete(_active_key(provider_id))
            return None
        return user_id

    async def set_active_user(self, provider_id: str, user_id: str) -> None:
        """Set the active user id."""
        if not await self.has_token(provider_id, user_id):
            msg = "Cannot activate an account without a stored credential"
            raise AccountNotFoundError(msg, provider_id=provider_id, user_id=user_id)
        await self._set(_active_key(provider_id), user_id)

    async def clear_active_user(self, provider_id: str) -> None:
        """Remove the active pointer."""
        await self._delete(_active_key(provider_id))

    async def delete_user_account(self, provider_id: str, user_id: str) -> bool:
        """Delete one account."""
        existed = await self._get(_token_key(provider_id, user_id)) is not None
        await self.remove_token(provider_id, user_id)
        return existed

    async def delete_all_accounts_for_provider(self, provider_id: str) -> int:
        """Delete every account of a provider."""
        count = len(await self._scan(f"token:{provider_id}:"))
        await self.remove_all_tokens(provider_id)
        return count

    async def list_user_ids_for_provider(self, provider_id: str) -> list[str]:
        """List user ids with a readable credential."""
        return list(await self.get_all_tokens(provider_id))

    async def user_account_exists(self, provider_id: str, user_id: str) -> bool:
        """Check whether an account exists."""
        return await self.has_token(provider_id, user_id)


class MemoryTokenStore(KeyValueTokenStore):
    """In-memory token store for tests and the fast side of a replicated store.

    Guarded by an asyncio.Lock.
    """

    def __init__(self) -> None:
        """Initialize the memory token store."""
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def _get(self, key: str) -> str | None:
        async with self._lock:
            return self._data.get(key)

    async def _set(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value

    async def _delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def _scan(self, prefix: str) -> list[str]:
        async with self._lock:
            return [key for key in self._data if key.startswith(prefix)]


class FileTokenStore(KeyValueTokenStore):
    """Durable token store backed by one JSON document.

    Writes go to a temporary file in the same directory that is then moved
    over the document, so a crash never leaves a half-written file. The file
    is created with mode ``0o600``. File I/O runs in the default executor.

    Parameters
    ----------
    path : str or Path
        Location of the JSON document.
    """

    def __init__(self, path: str | Path) -> None:
        """Initialize the file token store."""
        self._path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        """Location of the JSON document."""
        return self._path

    def _read_document(self) -> dict[str, str]:
        """Read all entries; an unreadable document counts as empty."""
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            document = json.loads(text)
        except ValueError as exc:
            logger.warning("Token file %s is corrupted, treating it as empty: %s", self._path, exc)
            return {}
        entries = document.get("entries") if isinstance(document, dict) else None
        if not isinstance(entries, dict):
            logger.warning("Token file %s has no entries map, treating it as empty", self._path)
            return {}
        return {k: v for k, v in entries.items() if isinstance(k, str) and isinstance(v, str)}

    def _write_document(self, entries: dict[str, str]) -> None:
        """Atomically replace the document."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"version": 1, "entries": entries}, fh, indent=2, sort_keys=True)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise

    async def _get(self, key: str) -> str | None:
        async with self._lock:
            entries = await _run_blocking(self._read_document)
        return entries.get(key)

    async def _set(self, key: str, value: str) -> None:
        async with self._lock:
            entries = await _run_blocking(self._read_document)
            entries[key] = value
            await _run_blocking(self._write_document, entries)

    async def _delete(self, key: str) -> None:
        async with self._lock:
            entries = await _run_blocking(self._read_document)
            if key not in entries:
                return
            del entries[key]
            await _run_blocking(self._write_document, entries)

    async def _scan(self, prefix: str) -> list[str]:
        async with self._lock:
            entries = await _run_blocking(self._read_document)
        return [key for key in entries if key.startswith(prefix)]


class RedisTokenStore(KeyValueTokenStore):
    """Redis-backed token store for multi-worker deployments.

    Records never expire; an account is only removed on request.

    Parameters
    ----------
    redis_url : str
        Redis connection URL.
    prefix : str
        Key prefix for namespacing (default "cloudauth").
    pool_size : int
        Connection pool size (default 10).
    client : redis.asyncio.Redis, optional
        Pre-built client; ``redis_url`` and ``pool_size`` are then ignored.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "cloudauth",
        pool_size: int = 10,
        client: Any = None,
    ) -> None:
        """Initialize the Redis token store."""
        self._prefix = prefix
        if client is not None:
            self._redis: Any = client
            return
        try:
            from redis.asyncio import Redis as RedisClient
        except ImportError:
            msg = "Redis backend requires the 'redis' package. Install with: pip install cloudauth[redis]"
            raise ImportError(msg) from None

        self._redis = RedisClient.from_url(
            redis_url,
            max_connections=pool_size,
            decode_responses=True,
        )

    def _key(self, key: str) -> str:
        """Build a Redis key with prefix."""
        return f"{self._prefix}:{key}"

    async def _get(self, key: str) -> str | None:
        value = await self._redis.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def _set(self, key: str, value: str) -> None:
        await self._redis.set(self._key(key), value)

    async def _delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def _scan(self, prefix: str) -> list[str]:
        strip = len(self._prefix) + 1
        keys = []
        pattern = _GLOB_SPECIAL.sub(r"\\\g<0>", self._key(prefix)) + "*"
        async for key in self._redis.scan_iter(match=pattern):
            name = key.decode("utf-8") if isinstance(key, bytes) else key
            keys.append(name[strip:])
        return keys

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self._redis.aclose()


class KeyringTokenStore(TokenStore):
    """OS keyring-backed token store for persistent native credentials.

    The keyring API cannot enumerate entries, so a JSON list of user ids is
    kept per provider under ``index:<provider>``. Bulk deletion is not
    offered.

    Requires the ``keyring`` package: ``pip install cloudauth[keyring]``

    Parameters
    ----------
    service_name : str
        Service name for keyring storage (default "cloudauth").
    backend : keyring.backend.KeyringBackend, optional
        Backend to use instead of the system default.
    """

    def __init__(self, service_name: str = "cloudauth", backend: Any = None) -> None:
        """Initialize the keyring token store."""
        try:
            import keyring as _keyring
            import keyring.errors as _keyring_errors
        except ImportError:
            msg = "Install keyring for persistent token storage: pip install cloudauth[keyring]"
            raise ImportError(msg) from None
        self._service_name = service_name
        self._keyring = backend if backend is not None else _keyring
        self._delete_error = _keyring_errors.PasswordDeleteError
        self._lock = asyncio.Lock()

    async def _get(self, name: str) -> str | None:
        return await _run_blocking(self._keyring.get_password, self._service_name, name)

    async def _set(self, name: str, value: str) -> None:
        await _run_blocking(self._keyring.set_password, self._service_name, name, value)

    async def _delete(self, name: str) -> None:
        try:
            await _run_blocking(self._keyring.delete_password, self._service_name, name)
        except self._delete_error:
            logger.debug("Keyring entry %s was already absent", name)

    async def _read_index(self, provider_id: str) -> list[str]:
        raw = await self._get(f"index:{provider_id}")
        if raw is None:
            return []
        try:
            user_ids = json.loads(raw)
        except ValueError:
            user_ids = None
        if not isinstance(user_ids, list):
            logger.warning("Keyring index of %s is corrupted, rebuilding it", provider_id)
            await self._delete(f"index:{provider_id}")
            return []
        return [uid for uid in user_ids if isinstance(uid, str)]

    async def _write_index(self, provider_id: str, user_ids: list[str]) -> None:
        if user_ids:
            await self._set(f"index:{provider_id}", json.dumps(user_ids))
        else:
            await self._delete(f"index:{provider_id}")

    async def store_token(self, provider_id: str, user_id: str, credential: Credential) -> None:
        """Save a credential to the OS keyring."""
        async with self._lock:
            await self._set(_token_key(provider_id, user_id), _serialize_credential(credential))
            user_ids = await self._read_index(provider_id)
            if user_id not in user_ids:
                await self._write_index(provider_id, [*user_ids, user_id])

    async def get_token(self, provider_id: str, user_id: str) -> Credential | None:
        """Load a credential from the OS keyring."""
        key = _token_key(provider_id, user_id)
        raw = await self._get(key)
        if raw is None:
            return None
        try:
            return _deserialize_credential(raw, key=key)
        except CorruptedPersistedData as exc:
            logger.warning("Discarding corrupted keyring record: %s", exc)
            await self._delete(key)
            return None

    async def get_all_tokens(self, provider_id: str) -> dict[str, Credential]:
        """Load every indexed credential of a provider."""
        tokens: dict[str, Credential] = {}
        for user_id in await self._read_index(provider_id):
            credential = await self.get_token(provider_id, user_id)
            if credential is not None:
                tokens[user_id] = credential
        return tokens

    async def remove_token(self, provider_id: str, user_id: str) -> None:
        """Delete a credential from the OS keyring."""
        async with self._lock:
            await self._delete(_token_key(provider_id, user_id))
            user_ids = await self._read_index(provider_id)
            if user_id in user_ids:
                await self._write_index(provider_id, [u for u in user_ids if u != user_id])
            if await self._get(_active_key(provider_id)) == user_id:
                await self._delete(_active_key(provider_id))

    async def remove_all_tokens(self, provider_id: str) -> None:
        """Delete every indexed credential of a provider."""
        async with self._lock:
            for user_id in await self._read_index(provider_id):
                await self._delete(_token_key(provider_id, user_id))
            await self._write_index(provider_id, [])
            await self._delete(_active_key(provider_id))

    async def get_active_user(self, provider_id: str) -> str | None:
        """Return the active user id, clearing a dangling pointer."""
        user_id = await self._get(_active_key(provider_id))
        if not user_id:
            return None
        if await self.get_token(provider_id, user_id) is None:
            logger.info("Clearing active pointer of %s: no credential for it", provider_id)
            await self._delete(_active_key(provider_id))
            return None
        return user_id

    async def set_active_user(self, provider_id: str, user_id: str) -> None:
        """Set the active user id."""
        if not await self.has_token(provider_id, user_id):
            msg = "Cannot activate an account without a stored credential"
            raise AccountNotFoundError(msg, provider_id=provider_id, user_id=user_id)
        await self._set(_active_key(provider_id), user_id)

    async def clear_active_user(self, provider_id: str) -> None:
        """Remove the active pointer."""
        await self._delete(_active_key(provider_id))


class ReplicatedTokenStore(TokenStore, AccountDeletion):
    """Mirrors a fast primary store into a durable secondary store.

    Mutations are applied to the primary first; its failures propagate.
    The secondary is then updated on a best-effort basis: its failures are
    logged and never rolled back. Reads consult the secondary only when
    the primary has no record, and warm the primary with what they find.

    A removal the secondary fails to apply leaves a tombstone. Tombstoned
    accounts are never read back from the secondary, and the removal is
    retried before the next mutation.

    Parameters
    ----------
    primary : TokenStore
        Authoritative, fast store (e.g. MemoryTokenStore).
    secondary : TokenStore
        Durable store (e.g. FileTokenStore).
    """

    def __init__(self, primary: TokenStore, secondary: TokenStore) -> None:
        """Initialize the replicated store."""
        self.primary = primary
        self.secondary = secondary
        self._tombstones: set[tuple[str, str]] = set()

    async def _replicate(self, operation: str, *args: Any) -> Any:
        """Apply an operation to the secondary, logging failures."""
        try:
            return await getattr(self.secondary, operation)(*args)
        except Exception:
            logger.warning("Secondary token store failed during %s", operation, exc_info=True)
            return None

    async def _remove_from_secondary(self, provider_id: str, user_id: str) -> bool:
        """Remove one account from the secondary, tracking the outcome."""
        try:
            await self.secondary.remove_token(provider_id, user_id)
        except Exception:
            logger.warning(
                "Secondary token store failed during remove_token; keeping tombstone for %s",
                AccountKey(provider_id, user_id),
                exc_info=True,
            )
            self._tombstones.add((provider_id, user_id))
            return False
        self._tombstones.discard((provider_id, user_id))
        return True

    async def _retry_removals(self) -> None:
        """Re-apply removals the secondary missed earlier."""
        for provider_id, user_id in sorted(self._tombstones):
            await self._remove_from_secondary(provider_id, user_id)

    def is_tombstoned(self, provider_id: str, user_id: str) -> bool:
        """Whether a removal of this account is still pending on the secondary."""
        return (provider_id, user_id) in self._tombstones

    async def store_token(self, provider_id: str, user_id: str, credential: Credential) -> None:
        """Store in primary, then secondary."""
        await self._retry_removals()
        await self.primary.store_token(provider_id, user_id, credential)
        self._tombstones.discard((provider_id, user_id))
        await self._replicate("store_token", provider_id, user_id, credential)

    async def get_token(self, provider_id: str, user_id: str) -> Credential | None:
        """Read from primary, falling back to secondary."""
        credential = await self.primary.get_token(provider_id, user_id)
        if credential is not None or self.is_tombstoned(provider_id, user_id):
            return credential
        credential = await self._replicate("get_token", provider_id, user_id)
        if credential is not None:
            try:
                await self.primary.store_token(provider_id, user_id, credential)
            except Exception:
                logger.warning("Could not warm primary token store", exc_info=True)
        return credential

    async def get_all_tokens(self, provider_id: str) -> dict[str, Credential]:
        """Union of both stores; primary records win."""
        durable = await self._replicate("get_all_tokens", provider_id) or {}
        durable = {
            user_id: credential
            for user_id, credential in durable.items()
            if not self.is_tombstoned(provider_id, user_id)
        }
        return {**durable, **await self.primary.get_all_tokens(provider_id)}

    async def remove_token(self, provider_id: str, user_id: str) -> None:
        """Remove from both stores."""
        await self._retry_removals()
        await self.primary.remove_token(provider_id, user_id)
        await self._remove_from_secondary(provider_id, user_id)

    async def remove_all_tokens(self, provider_id: str) -> None:
        """Remove every credential of a provider from both stores."""
        await self._retry_removals()
        known = await self.get_all_tokens(provider_id)
        await self.primary.remove_all_tokens(provider_id)
        try:
            await self.secondary.remove_all_tokens(provider_id)
        except Exception:
            logger.warning(
                "Secondary token store failed during remove_all_tokens; keeping %d tombstones",
                len(known),
                exc_info=True,
            )
            self._tombstones.update((provider_id, user_id) for user_id in known)
            return
        self._tombstones = {key for key in self._tombstones if key[0] != provider_id}

    async def get_active_user(self, provider_id: str) -> str | None:
        """Read the pointer from primary, falling back to secondary."""
        user_id = await self.primary.get_active_user(provider_id)
        if user_id is not None:
            return user_id
        user_id = await self._replicate("get_active_user", provider_id)
        if user_id is None:
            return None
        if await self.get_token(provider_id, user_id) is None:
            return None
        try:
            await self.primary.set_active_user(provider_id, user_id)
        except Exception:
            logger.warning("Could not warm primary active pointer", exc_info=True)
        return user_id

    async def set_active_user(self, provider_id: str, user_id: str) -> None:
        """Set the pointer in both stores."""
        await self._retry_removals()
        # Pull the credential into the primary when only the secondary has it
        await self.get_token(provider_id, user_id)
        await self.primary.set_active_user(provider_id, user_id)
        await self._replicate("set_active_user", provider_id, user_id)

    async def clear_active_user(self, provider_id: str) -> None:
        """Clear the pointer in both stores."""
        await self._retry_removals()
        await self.primary.clear_active_user(provider_id)
        await self._replicate("clear_active_user", provider_id)

    async def delete_user_account(self, provider_id: str, user_id: str) -> bool:
        """Delete one account from both stores."""
        existed = await self.has_token(provider_id, user_id)
        await self.remove_token(provider_id, user_id)
        return existed

    async def delete_all_accounts_for_provider(self, provider_id: str) -> int:
        """Delete every account of a provider from both stores."""
        count = len(await self.get_all_tokens(provider_id))
        await self.remove_all_tokens(provider_id)
        return count

    async def list_user_ids_for_provider(self, provider_id: str) -> list[str]:
        """List user ids known to either store."""
        return sorted(await self.get_all_tokens(provider_id))

    async def user_account_exists(self, provider_id: str, user_id: str) -> bool:
        """Check whether either store holds the account."""
        return await self.has_token(provider_id, user_id)

    async def close(self) -> None:
        """Close both stores."""
        await self.primary.close()
        await self.secondary.close()


def _build_store(backend: str, **kwargs: Any) -> TokenStore:
    """Construct a store for a backend name."""
    if backend == "memory":
        return MemoryTokenStore()
    if backend == "file":
        return FileTokenStore(kwargs.get("path") or Path("~/.config/cloudauth/tokens.json"))
    if backend == "keyring":
        return KeyringTokenStore(service_name=kwargs.get("service_name", "cloudauth"))
    if backend == "redis":
        return RedisTokenStore(
            redis_url=kwargs.get("redis_url", "redis://localhost:6379/0"),
            prefix=kwargs.get("prefix", "cloudauth"),
            pool_size=kwargs.get("pool_size", 10),
        )
    if backend == "replicated":
        primary = kwargs.get("primary", "memory")
        secondary = kwargs.get("secondary", "file")
        if primary == "replicated" or secondary == "replicated":
            msg = "A replicated store cannot nest another replicated store"
            raise ValueError(msg)
        return ReplicatedTokenStore(
            primary if isinstance(primary, TokenStore) else _build_store(primary, **kwargs),
            secondary if isinstance(secondary, TokenStore) else _build_store(secondary, **kwargs),
        )
    msg = f"Unknown token store backend: {backend}"
    raise ValueError(msg)


def create_token_store(settings: StorageSettings | None = None) -> TokenStore:
    """Build a new store from storage settings.

    Parameters
    ----------
    settings : StorageSettings, optional
        Storage section; defaults to ``get_settings().storage``.
    """
    if settings is None:
        from ..config import get_settings

        settings = get_settings().storage

    return _build_store(
        settings.backend,
        path=settings.resolved_file_path,
        service_name=settings.keyring_service,
        redis_url=settings.redis_url,
        prefix=settings.redis_prefix,
        primary=settings.replica_primary,
        secondary=settings.replica_secondary,
    )


_token_store_instance: TokenStore | None = None
_token_store_lock = threading.Lock()


def get_token_store(backend: str = "memory", **kwargs: Any) -> TokenStore:
    """Factory function for token stores.

    Returns a singleton instance. Call ``reset_token_store()`` to clear
    the cached instance (e.g. in tests).

    Parameters
    ----------
    backend : str
        Storage backend: "memory", "file", "keyring", "redis" or "replicated".
    **kwargs : Any
        Backend options: ``path``, ``service_name``, ``redis_url``,
        ``prefix``, ``pool_size``, ``primary``, ``secondary``.

    Returns
    -------
    TokenStore
        A configured token store instance.
    """
    global _token_store_instance  # noqa: PLW0603

    with _token_store_lock:
        if _token_store_instance is None:
            _token_store_instance = _build_store(backend, **kwargs)
        return _token_store_instance


def reset_token_store() -> None:
    """Reset the singleton token store instance.

    Useful for tests that need a fresh token store between runs.
    """
    global _token_store_instance  # noqa: PLW0603

    with _token_store_lock:
        _token_store_instance = None
