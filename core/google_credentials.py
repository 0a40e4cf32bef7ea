"""OAuth access credential lifecycle for the Google Drive backup."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

import db
from core.errors import AuthExpired, AuthRequired, NetworkFailure
from core.snapshot import format_instant, parse_instant

__all__ = [
    "Credential",
    "CredentialManager",
    "DEFAULT_SCOPES",
    "DEFAULT_TOKEN_LIFETIME",
    "GoogleOAuthProvider",
    "OAuthProvider",
    "TokenGrant",
]

logger = logging.getLogger(__name__)

DEFAULT_SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/drive.file",)
DEFAULT_TOKEN_LIFETIME = 3600
DEFAULT_LOOKAHEAD_SECONDS = 5 * 60
GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

T = TypeVar("T")


@dataclass
class TokenGrant:
    """Token material returned by an OAuth provider."""

    access_token: str
    expires_in: Optional[float] = None
    refresh_token: Optional[str] = None


@dataclass
class Credential:
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    authorized: bool = False
    refresh_token: Optional[str] = None


class OAuthProvider(Protocol):
    def request_token(self, interactive: bool, refresh_token: Optional[str]) -> TokenGrant:
        """Obtain a token, prompting the user only when ``interactive``."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GoogleOAuthProvider:
    """Installed-app OAuth flow with refresh-token based silent renewal."""

    def __init__(
        self,
        client_id: str,
        client_secret: Optional[str] = None,
        scopes: Optional[Sequence[str]] = None,
    ) -> None:
        if not client_id:
            raise ValueError("Google OAuth client id is required")
        self.client_id = client_id
        self.client_secret = client_secret or ""
        self.scopes = list(scopes or DEFAULT_SCOPES)

    def _client_config(self) -> Dict[str, Dict[str, object]]:
        return {
            "installed": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
                "redirect_uris": ["http://localhost"],
            }
        }

    def request_token(self, interactive: bool, refresh_token: Optional[str]) -> TokenGrant:
        if interactive:
            return self._interactive(refresh_token)
        if not refresh_token:
            raise AuthRequired("No active Google session. Please sign in to Google Drive.")
        return self._refresh(refresh_token)

    def _interactive(self, refresh_token: Optional[str]) -> TokenGrant:
        flow = InstalledAppFlow.from_client_config(self._client_config(), self.scopes)
        # Returning users already granted access; only first sign-in needs consent.
        prompt = "select_account" if refresh_token else "consent"
        try:
            credentials = flow.run_local_server(port=0, prompt=prompt, access_type="offline")
        except OAuth2Error as exc:
            raise AuthRequired(f"Google authorization failed: {exc.description or exc.error}") from exc
        except OSError as exc:
            raise NetworkFailure(f"Google authorization could not complete: {exc}") from exc
        return self._grant(credentials, refresh_token)

    def _refresh(self, refresh_token: str) -> TokenGrant:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=self.scopes,
        )
        try:
            credentials.refresh(Request())
        except RefreshError as exc:
            raise AuthRequired(f"Silent token renewal was rejected: {exc}") from exc
        except TransportError as exc:
            raise NetworkFailure(f"Silent token renewal failed: {exc}") from exc
        return self._grant(credentials, refresh_token)

    @staticmethod
    def _grant(credentials: Credentials, fallback_refresh: Optional[str]) -> TokenGrant:
        expires_in: Optional[float] = None
        if credentials.expiry is not None:
            # google-auth reports a naive UTC expiry.
            expiry = credentials.expiry.replace(tzinfo=timezone.utc)
            expires_in = max(0.0, (expiry - _utc_now()).total_seconds())
        return TokenGrant(
            access_token=credentials.token,
            expires_in=expires_in,
            refresh_token=credentials.refresh_token or fallback_refresh,
        )


class CredentialManager:
    """Own the Drive access token: acquisition, renewal, expiry and sign-out.

    Every authenticated request should go through :meth:`call`, which renews
    the token ahead of expiry and retries once after a 401 before giving up.
    """

    def __init__(
        self,
        store: db.RecordStore,
        provider: OAuthProvider,
        *,
        lookahead_seconds: float = DEFAULT_LOOKAHEAD_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._lookahead = timedelta(seconds=lookahead_seconds)
        self._clock = clock or _utc_now
        self._credential = Credential()
        self._renew_lock = asyncio.Lock()
        self._invalidation_listeners: List[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def credential(self) -> Credential:
        return self._credential

    @property
    def is_authorized(self) -> bool:
        return self._credential.authorized and bool(self._credential.access_token)

    def is_expiring_soon(self) -> bool:
        expires_at = self._credential.expires_at
        if expires_at is None:
            return True
        return expires_at <= self._clock() + self._lookahead

    def add_invalidation_listener(self, listener: Callable[[], None]) -> None:
        if listener not in self._invalidation_listeners:
            self._invalidation_listeners.append(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def load(self) -> bool:
        """Restore the persisted credential; return whether it is usable."""

        token = await self._store.get_setting(db.ACCESS_TOKEN_KEY)
        expiry = parse_instant(await self._store.get_setting(db.TOKEN_EXPIRY_KEY))
        refresh_token = await self._store.get_setting(db.REFRESH_TOKEN_KEY)

        if token and expiry and expiry > self._clock():
            self._credential = Credential(token, expiry, True, refresh_token)
            logger.info("[Auth] Loaded existing Google Drive token")
            return True
        if token and refresh_token:
            # Expired, but the session can renew it on first use.
            self._credential = Credential(token, expiry, True, refresh_token)
            logger.info("[Auth] Stored token expired; it will be renewed silently")
            return True
        if token or expiry or refresh_token:
            logger.info("[Auth] Stored token expired; clearing it")
            await self.invalidate()
        return False

    async def authorize(self, interactive: bool) -> Credential:
        """Obtain a fresh credential and persist it.

        Non-interactive calls only use the stored session and fail with
        :class:`AuthRequired` instead of prompting.
        """

        refresh_token = self._credential.refresh_token
        if not interactive and not refresh_token:
            raise AuthRequired("No active Google session. Please sign in to Google Drive.")

        grant = await asyncio.to_thread(self._provider.request_token, interactive, refresh_token)
        if not grant.access_token:
            raise AuthRequired("Google did not return an access token.")

        lifetime = grant.expires_in if grant.expires_in else DEFAULT_TOKEN_LIFETIME
        self._credential = Credential(
            access_token=grant.access_token,
            expires_at=self._clock() + timedelta(seconds=lifetime),
            authorized=True,
            refresh_token=grant.refresh_token or refresh_token,
        )
        await self._persist()
        logger.info(
            "[Auth] Google Drive %s successful",
            "authorization" if interactive else "token renewal",
        )
        return self._credential

    async def renew_silently(self) -> bool:
        """Try one silent renewal; ``False`` when the session is gone."""

        try:
            await self.authorize(interactive=False)
        except AuthRequired as exc:
            logger.warning("[Auth] Silent token renewal failed: %s", exc)
            return False
        return True

    async def ensure_fresh(self) -> str:
        """Return a usable access token, renewing it ahead of expiry."""

        if self._credential.authorized and self.is_expiring_soon():
            async with self._renew_lock:
                if self.is_expiring_soon():
                    logger.info("[Auth] Token expiring soon, attempting silent renewal")
                    try:
                        await self.renew_silently()
                    except NetworkFailure as exc:
                        logger.warning("[Auth] Token renewal postponed: %s", exc)
        if not self.is_authorized:
            raise AuthRequired("Not authorized. Please sign in to Google Drive.")
        return str(self._credential.access_token)

    async def call(self, operation: Callable[[str], Awaitable[T]]) -> T:
        """Run ``operation(access_token)`` with renewal and a single 401 retry."""

        token = await self.ensure_fresh()
        try:
            return await operation(token)
        except AuthExpired:
            logger.warning("[Auth] Received 401, attempting silent token renewal")

        async with self._renew_lock:
            renewed = await self.renew_silently()
        if renewed:
            try:
                return await operation(str(self._credential.access_token))
            except AuthExpired:
                logger.warning("[Auth] Renewed token was rejected as well")
        await self.invalidate()
        raise AuthRequired("Authorization expired. Please sign in again.")

    async def invalidate(self) -> None:
        """Forget the credential in memory and in the settings store."""

        self._credential = Credential()
        for key in (db.ACCESS_TOKEN_KEY, db.TOKEN_EXPIRY_KEY, db.REFRESH_TOKEN_KEY, db.FOLDER_ID_KEY):
            await self._store.delete_setting(key)
        for listener in list(self._invalidation_listeners):
            try:
                listener()
            except Exception:
                logger.exception("Credential invalidation listener failed")
        logger.info("[Auth] Signed out from Google Drive")

    async def _persist(self) -> None:
        credential = self._credential
        await self._store.set_setting(db.ACCESS_TOKEN_KEY, credential.access_token)
        await self._store.set_setting(
            db.TOKEN_EXPIRY_KEY,
            format_instant(credential.expires_at) if credential.expires_at else None,
        )
        if credential.refresh_token:
            await self._store.set_setting(db.REFRESH_TOKEN_KEY, credential.refresh_token)
