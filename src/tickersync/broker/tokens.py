"""Bearer token lifecycle with per-mode single-flight issuance.

The provider allows one token issuance per minute per app key and rejects
the rest with EGW00133. Tokens are therefore cached in memory, persisted
through a credential store, and issued by at most one in-flight request per
trading mode. Concurrent callers share that request's result.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

from tickersync.broker.types import TOKEN_QUOTA_CODE
from tickersync.exceptions import AuthFailure
from tickersync.logging import get_logger
from tickersync.models import Credential, TradingMode

logger = get_logger(__name__)

TokenIssuer = Callable[[TradingMode], Awaitable[Credential]]


class CredentialStore(Protocol):
    async def load_credential(self, mode: TradingMode) -> Credential | None: ...

    async def save_credential(self, mode: TradingMode, credential: Credential) -> None: ...

    async def delete_credential(self, mode: TradingMode) -> None: ...


class TokenManager:
    """Caches, persists and issues bearer tokens for each trading mode.

    Args:
        issuer: Coroutine performing the actual issuance request.
        store: Optional persistent store; tokens survive restarts through it.
        validity_seconds: Lifetime of a token from issuance.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        store: CredentialStore | None = None,
        validity_seconds: float = 12 * 3600,
    ) -> None:
        self._issuer = issuer
        self._store = store
        self._validity = validity_seconds
        self._credentials: dict[TradingMode, Credential] = {}
        self._pending: dict[TradingMode, asyncio.Task[Credential]] = {}

    async def get_token(self, mode: TradingMode) -> Credential:
        """Return a valid credential, issuing one if needed."""
        pending = self._pending.get(mode)
        if pending is not None:
            return await asyncio.shield(pending)

        cached = self._credentials.get(mode)
        if cached is not None and cached.is_valid(self._validity):
            return cached

        task = asyncio.create_task(self._acquire(mode))
        self._pending[mode] = task
        task.add_done_callback(lambda done, m=mode: self._clear_pending(m, done))
        return await asyncio.shield(task)

    async def invalidate(self, mode: TradingMode, token: str | None = None) -> None:
        """Forget the credential for a mode.

        When `token` is given, only invalidate if it is still the current one,
        so callers that saw an expiry on an already-replaced token do not throw
        away the fresh credential.
        """
        current = self._credentials.get(mode)
        if token is not None and current is not None and current.token != token:
            return
        self._credentials.pop(mode, None)
        if self._store is not None:
            await self._store.delete_credential(mode)
        logger.info("token_invalidated", mode=mode.value)

    def _clear_pending(self, mode: TradingMode, task: asyncio.Task[Credential]) -> None:
        if self._pending.get(mode) is task:
            del self._pending[mode]
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter was cancelled
            task.exception()

    async def _acquire(self, mode: TradingMode) -> Credential:
        if self._store is not None:
            stored = await self._store.load_credential(mode)
            if stored is not None and stored.is_valid(self._validity):
                self._credentials[mode] = stored
                logger.debug("token_loaded_from_store", mode=mode.value)
                return stored

        try:
            credential = await self._issuer(mode)
        except AuthFailure as exc:
            if exc.code == TOKEN_QUOTA_CODE and self._store is not None:
                # Another process may have issued one within the last minute
                stored = await self._store.load_credential(mode)
                if stored is not None:
                    logger.warning("token_quota_reusing_stored", mode=mode.value)
                    self._credentials[mode] = stored
                    return stored
            logger.error("token_issue_failed", mode=mode.value, code=exc.code, status=exc.status)
            raise

        self._credentials[mode] = credential
        if self._store is not None:
            await self._store.save_credential(mode, credential)
        logger.info("token_issued", mode=mode.value)
        return credential
