"""OAuth credential lifecycle for calendar accounts.

The token manager is the only component that writes token fields on a
``CalendarAccount``.  Refresh is single-flighted per account: callers that
ask for a token while a refresh is in flight await that refresh instead of
issuing a second refresh-token exchange.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from studycal.core.logging import account_context
from studycal.core.metrics import EngineMetrics
from studycal.errors import (
    AuthError,
    CalendarError,
    NotFoundError,
    TransientError,
    sanitize_error_message,
)
from studycal.models import CalendarAccount, ConnectionStatus, utcnow
from studycal.providers.base import CalendarProvider
from studycal.storage.base import CalendarStore

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_BUFFER = timedelta(minutes=5)


class TokenLifecycleManager:
    """Hands out valid access tokens and owns refresh, connect, and revoke."""

    def __init__(
        self,
        store: CalendarStore,
        provider: CalendarProvider,
        *,
        expiry_buffer: timedelta = DEFAULT_EXPIRY_BUFFER,
        call_timeout: float = 20.0,
        clock: Callable[[], datetime] = utcnow,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._expiry_buffer = expiry_buffer
        self._call_timeout = call_timeout
        self._clock = clock
        self._metrics = metrics or EngineMetrics(provider.name)
        self._inflight: dict[str, asyncio.Task[CalendarAccount]] = {}
        self._forced: set[asyncio.Task[CalendarAccount]] = set()

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _is_fresh(self, account: CalendarAccount) -> bool:
        if not account.access_token or account.token_expires_at is None:
            return False
        return account.token_expires_at - self._expiry_buffer > self._clock()

    async def _load(self, account_id: str) -> CalendarAccount:
        account = await self._store.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Calendar account {account_id!r} not found")
        return account

    @staticmethod
    def _require_usable(account: CalendarAccount) -> None:
        if account.status is ConnectionStatus.revoked:
            raise AuthError(
                f"Calendar account {account.account_id} is disconnected; reconnect required",
                reauth_required=True,
            )
        if account.status is ConnectionStatus.error:
            raise AuthError(
                f"Calendar account {account.account_id} needs to be reconnected",
                reauth_required=True,
            )

    async def get_valid_token(self, account_id: str, *, force_refresh: bool = False) -> str:
        """Return an access token that is valid for at least the expiry buffer.

        Raises ``AuthError(reauth_required=True)`` when the account can only
        be recovered by the user reconnecting.
        """
        account = await self._load(account_id)
        self._require_usable(account)
        if not force_refresh and self._is_fresh(account):
            assert account.access_token is not None
            return account.access_token

        refreshed = await self.refresh(account_id, force=force_refresh)
        assert refreshed.access_token is not None
        return refreshed.access_token

    async def refresh(self, account_id: str, *, force: bool = True) -> CalendarAccount:
        """Exchange the stored refresh token for a new access token.

        Concurrent calls for the same account share one in-flight exchange.
        With ``force=False`` the exchange is skipped when the stored token is
        fresh by the time the refresh runs (another caller already renewed it).
        """
        while True:
            task = self._inflight.get(account_id)
            if task is None or task.done():
                task = asyncio.create_task(
                    self._refresh(account_id, force=force),
                    name=f"studycal-token-refresh-{account_id}",
                )
                self._inflight[account_id] = task
                if force:
                    self._forced.add(task)
                task.add_done_callback(lambda t: self._refresh_done(account_id, t))
                break
            if not force or task in self._forced:
                break
            # A lazy refresh may return the token the provider just rejected.
            await asyncio.shield(task)
        return await asyncio.shield(task)

    def _refresh_done(self, account_id: str, task: asyncio.Task[CalendarAccount]) -> None:
        self._forced.discard(task)
        if self._inflight.get(account_id) is task:
            del self._inflight[account_id]
        # Mark the exception retrieved when every waiter was cancelled.
        if not task.cancelled():
            task.exception()

    async def _refresh(self, account_id: str, *, force: bool) -> CalendarAccount:
        with account_context(account_id):
            account = await self._load(account_id)
            self._require_usable(account)
            if not force and self._is_fresh(account):
                return account
            if not account.refresh_token:
                self._metrics.token_refresh("reauth_required")
                await self._mark_error(account, "No refresh token stored for account")
                raise AuthError(
                    f"Calendar account {account_id} has no refresh token; reconnect required",
                    reauth_required=True,
                )

            try:
                async with asyncio.timeout(self._call_timeout):
                    tokens = await self._provider.refresh_access_token(
                        refresh_token=account.refresh_token
                    )
            except TimeoutError as exc:
                self._metrics.token_refresh("failed")
                raise TransientError(
                    f"Token refresh timed out after {self._call_timeout}s"
                ) from exc
            except AuthError as exc:
                if not exc.reauth_required:
                    self._metrics.token_refresh("failed")
                    raise
                self._metrics.token_refresh("reauth_required")
                await self._mark_error(account, sanitize_error_message(exc))
                logger.warning(
                    "Refresh token rejected for account %s; reconnect required", account_id
                )
                raise AuthError(
                    f"Calendar access for account {account_id} was revoked; reconnect required",
                    reauth_required=True,
                ) from exc
            except CalendarError:
                self._metrics.token_refresh("failed")
                raise

            updated = account.model_copy(
                update={
                    "access_token": tokens.access_token,
                    # Providers may omit the refresh token on refresh; keep the old one.
                    "refresh_token": tokens.refresh_token or account.refresh_token,
                    "token_expires_at": tokens.expires_at,
                    "scopes": tokens.scopes or account.scopes,
                    "status": ConnectionStatus.connected,
                    "last_error": None,
                    "updated_at": self._clock(),
                }
            )
            saved = await self._store.save_account(updated)
            self._metrics.token_refresh("success")
            logger.info(
                "Refreshed access token for account %s (expires %s)",
                account_id,
                tokens.expires_at.isoformat(),
            )
            return saved

    async def _mark_error(self, account: CalendarAccount, message: str) -> None:
        await self._store.save_account(
            account.model_copy(
                update={
                    "status": ConnectionStatus.error,
                    "last_error": message,
                    "updated_at": self._clock(),
                }
            )
        )

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def authorization_url(self, *, state: str, login_hint: str | None = None) -> str:
        return self._provider.authorization_url(state=state, login_hint=login_hint)

    async def connect(self, user_id: str, code: str) -> CalendarAccount:
        """Exchange an authorization code and persist a connected account.

        Reconnecting an existing (user, provider) pair reuses its account id.
        """
        async with asyncio.timeout(self._call_timeout):
            tokens = await self._provider.exchange_code(code=code)

        existing = await self._store.find_account(user_id, self._provider.name)
        refresh_token = tokens.refresh_token or (existing.refresh_token if existing else None)
        if not refresh_token:
            raise AuthError(
                "Provider did not issue a refresh token; grant offline access and retry",
                reauth_required=True,
            )

        now = self._clock()
        if existing is None:
            account = CalendarAccount(
                user_id=user_id,
                provider=self._provider.name,
                created_at=now,
            )
        else:
            account = existing
        account = account.model_copy(
            update={
                "access_token": tokens.access_token,
                "refresh_token": refresh_token,
                "token_expires_at": tokens.expires_at,
                "scopes": tokens.scopes,
                "status": ConnectionStatus.connected,
                "last_error": None,
                "updated_at": now,
            }
        )
        saved = await self._store.save_account(account)
        logger.info(
            "Connected %s calendar account %s for user %s",
            self._provider.name,
            saved.account_id,
            user_id,
        )
        return saved

    async def set_default_calendar(
        self, account_id: str, calendar_id: str | None
    ) -> CalendarAccount:
        account = await self._load(account_id)
        return await self._store.save_account(
            account.model_copy(
                update={"default_calendar_id": calendar_id, "updated_at": self._clock()}
            )
        )

    async def revoke(self, account_id: str) -> CalendarAccount:
        """Revoke remotely (best effort) and mark the account revoked locally."""
        account = await self._load(account_id)
        token = account.refresh_token or account.access_token
        if token:
            try:
                async with asyncio.timeout(self._call_timeout):
                    await self._provider.revoke_token(token=token)
            except (CalendarError, TimeoutError) as exc:
                logger.warning(
                    "Remote token revocation failed for account %s: %s",
                    account_id,
                    sanitize_error_message(exc),
                )

        revoked = account.model_copy(
            update={
                "access_token": None,
                "refresh_token": None,
                "token_expires_at": None,
                "status": ConnectionStatus.revoked,
                "updated_at": self._clock(),
            }
        )
        saved = await self._store.save_account(revoked)
        logger.info("Disconnected calendar account %s", account_id)
        return saved
