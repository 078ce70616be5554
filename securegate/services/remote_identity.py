"""
Remote Identity Service.

``RemoteIdentityService`` is the contract the core consumes for every
server round-trip: login/registration, token refresh, profile CRUD,
account deletion, audit batch upload, and the per-category fetchers used
by data export.

``SupabaseIdentityService`` implements it over the Supabase auth API and
the ``users``, ``clients``, ``skin_analyses`` and ``audit_logs`` tables.
The Supabase client is blocking, so every call runs on a worker thread
via ``asyncio.to_thread``; all failures are translated into the
``securegate.errors`` taxonomy before they leave this module.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, TypeVar, runtime_checkable

import httpx

from securegate.database import DatabaseManager
from securegate.errors import (
    NetworkError,
    NotAuthorizedError,
    SecureGateError,
    ServerError,
    error_for_code,
)
from securegate.logger import StructuredLogger
from securegate.models.audit_models import AuditEvent
from securegate.models.auth_models import BACKEND_ERROR_MAP
from securegate.models.enums import LoginProvider
from securegate.models.identity import AuthGrant, Identity, TokenBundle

T = TypeVar("T")

Record = dict[str, Any]


@runtime_checkable
class RemoteIdentityService(Protocol):
    """Server operations the core depends on.

    Every method raises only ``securegate.errors`` exceptions
    (``InvalidCredentialsError``, ``NetworkError``, ``ServerError``,
    ``NotAuthorizedError``, ``RequiresFullLoginError``).
    """

    async def login(self, email: str, password: str) -> AuthGrant: ...

    async def create_user(self, email: str, password: str) -> AuthGrant: ...

    async def create_or_login_federated(
        self,
        provider_user_id: str,
        email: str,
        display_name: Optional[str] = None,
        identity_token: Optional[str] = None,
    ) -> AuthGrant: ...

    async def refresh_access_token(self, refresh_token: str) -> TokenBundle: ...

    async def fetch_user(self, user_id: str, access_token: Optional[str] = None) -> Identity: ...

    async def update_user_profile(
        self, identity: Identity, access_token: Optional[str] = None,
    ) -> Identity: ...

    async def delete_user(self, user_id: str, access_token: Optional[str] = None) -> None: ...

    async def upload_audit_batch(self, events: Sequence[AuditEvent]) -> None: ...

    async def fetch_clients(
        self, user_id: str, access_token: Optional[str] = None,
    ) -> list[Record]: ...

    async def fetch_analyses(
        self, user_id: str, access_token: Optional[str] = None,
    ) -> list[Record]: ...


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def classify_remote_error(exc: BaseException) -> SecureGateError:
    """Map a backend or transport exception onto the error taxonomy."""
    if isinstance(exc, SecureGateError):
        return exc

    # RuntimeError is what DatabaseManager.supabase raises with no backend.
    if isinstance(exc, (ConnectionError, TimeoutError, httpx.TransportError, RuntimeError)):
        return NetworkError(str(exc))

    error_str = str(exc).lower()
    for code_key, error_code in BACKEND_ERROR_MAP.items():
        if code_key in error_str:
            return error_for_code(error_code, str(exc))

    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    if status in (401, 403):
        return NotAuthorizedError(str(exc))
    return ServerError(str(exc), status_code=status if isinstance(status, int) else None)


# ---------------------------------------------------------------------------
# Supabase adapter
# ---------------------------------------------------------------------------

class SupabaseIdentityService:
    """``RemoteIdentityService`` backed by Supabase.

    Parameters
    ----------
    db:
        ``DatabaseManager`` exposing the (optional) Supabase client.
    logger:
        Structured logger.
    timeout_s:
        Upper bound for a single remote call.
    """

    USERS_TABLE: str = "users"
    CLIENTS_TABLE: str = "clients"
    ANALYSES_TABLE: str = "skin_analyses"
    AUDIT_TABLE: str = "audit_logs"

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        timeout_s: float = 30.0,
    ) -> None:
        self._db: DatabaseManager = db
        self._logger: StructuredLogger = logger
        self._timeout_s: float = timeout_s
        # The shared client carries one Authorization header at a time.
        self._client_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> AuthGrant:
        def _op() -> AuthGrant:
            response = self._db.supabase.auth.sign_in_with_password(
                {"email": email, "password": password},
            )
            return self._grant_from_response(response, LoginProvider.PASSWORD)

        return await self._call("login", _op)

    async def create_user(self, email: str, password: str) -> AuthGrant:
        def _op() -> AuthGrant:
            response = self._db.supabase.auth.sign_up(
                {"email": email, "password": password},
            )
            return self._grant_from_response(response, LoginProvider.PASSWORD)

        return await self._call("create_user", _op)

    async def create_or_login_federated(
        self,
        provider_user_id: str,
        email: str,
        display_name: Optional[str] = None,
        identity_token: Optional[str] = None,
    ) -> AuthGrant:
        def _op() -> AuthGrant:
            if not identity_token:
                raise NotAuthorizedError("federated sign-in requires an identity token")
            response = self._db.supabase.auth.sign_in_with_id_token(
                {"provider": "apple", "token": identity_token},
            )
            grant = self._grant_from_response(response, LoginProvider.FEDERATED)
            if display_name and not grant.identity.display_name:
                grant = grant.model_copy(update={
                    "identity": grant.identity.model_copy(update={"display_name": display_name}),
                })
            return grant

        return await self._call("create_or_login_federated", _op)

    async def refresh_access_token(self, refresh_token: str) -> TokenBundle:
        def _op() -> TokenBundle:
            response = self._db.supabase.auth.refresh_session(refresh_token)
            if response.session is None or response.user is None:
                raise ServerError("refresh returned no session")
            return self._tokens_from_session(response.session, response.user.id)

        return await self._call("refresh_access_token", _op)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def fetch_user(self, user_id: str, access_token: Optional[str] = None) -> Identity:
        def _op() -> Identity:
            with self._client_lock:
                client = self._authorized(access_token)
                response = (
                    client.table(self.USERS_TABLE)
                    .select("*")
                    .eq("id", user_id)
                    .maybe_single()
                    .execute()
                )
            if response is None or not response.data:
                raise NotAuthorizedError(f"user {user_id} not visible")
            return self._identity_from_row(response.data)

        return await self._call("fetch_user", _op)

    async def update_user_profile(
        self, identity: Identity, access_token: Optional[str] = None,
    ) -> Identity:
        def _op() -> Identity:
            payload: Record = {
                "display_name": identity.display_name,
                "avatar_url": identity.avatar_url,
            }
            with self._client_lock:
                client = self._authorized(access_token)
                response = (
                    client.table(self.USERS_TABLE)
                    .update(payload)
                    .eq("id", identity.id)
                    .execute()
                )
            if not response.data:
                raise NotAuthorizedError(f"profile {identity.id} not updated")
            return self._identity_from_row(response.data[0], identity.provider)

        return await self._call("update_user_profile", _op)

    async def delete_user(self, user_id: str, access_token: Optional[str] = None) -> None:
        def _op() -> None:
            with self._client_lock:
                client = self._authorized(access_token)
                response = (
                    client.table(self.USERS_TABLE).delete().eq("id", user_id).execute()
                )
            # Row-level security filters rows the caller does not own.
            if not response.data:
                raise NotAuthorizedError(f"account {user_id} not deleted")

        await self._call("delete_user", _op)

    # ------------------------------------------------------------------
    # Audit + export
    # ------------------------------------------------------------------

    async def upload_audit_batch(self, events: Sequence[AuditEvent]) -> None:
        rows = [
            {
                "id": e.id,
                "user_id": e.user_id,
                "user_email": e.user_email,
                "event_type": str(e.event_type),
                "resource_type": e.resource_type,
                "resource_id": e.resource_id,
                "timestamp": e.timestamp.isoformat(),
                "ip_address": e.ip_address,
                "device_info": e.device_info,
            }
            for e in events
        ]

        def _op() -> None:
            with self._client_lock:
                (
                    self._db.supabase.table(self.AUDIT_TABLE)
                    .upsert(rows, on_conflict="id", ignore_duplicates=True)
                    .execute()
                )

        await self._call("upload_audit_batch", _op)

    async def fetch_clients(
        self, user_id: str, access_token: Optional[str] = None,
    ) -> list[Record]:
        return await self._fetch_owned(self.CLIENTS_TABLE, user_id, access_token)

    async def fetch_analyses(
        self, user_id: str, access_token: Optional[str] = None,
    ) -> list[Record]:
        return await self._fetch_owned(self.ANALYSES_TABLE, user_id, access_token)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _fetch_owned(
        self, table: str, user_id: str, access_token: Optional[str],
    ) -> list[Record]:
        def _op() -> list[Record]:
            with self._client_lock:
                client = self._authorized(access_token)
                response = (
                    client.table(table).select("*").eq("user_id", user_id).execute()
                )
            return list(response.data or [])

        return await self._call(f"fetch {table}", _op)

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self._timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_remote_error(exc)
            self._logger.warning(
                "Remote %s failed (%s): %s", operation, error.code, exc,
                extra={"event": "REMOTE_FAILED", "error_code": str(error.code)},
            )
            raise error from exc

    def _authorized(self, access_token: Optional[str]) -> Any:
        client = self._db.supabase
        if access_token:
            client.postgrest.auth(access_token)
        return client

    def _grant_from_response(self, response: Any, provider: LoginProvider) -> AuthGrant:
        user = response.user
        if user is None:
            raise ServerError("authentication returned no user")
        metadata: Record = getattr(user, "user_metadata", None) or {}
        identity = Identity(
            id=user.id,
            email=user.email or "",
            display_name=metadata.get("full_name") or metadata.get("name"),
            avatar_url=metadata.get("avatar_url"),
            provider=provider,
        )
        tokens: Optional[TokenBundle] = None
        if response.session is not None:
            tokens = self._tokens_from_session(response.session, user.id)
        return AuthGrant(identity=identity, tokens=tokens)

    @staticmethod
    def _tokens_from_session(session: Any, user_id: str) -> TokenBundle:
        return TokenBundle(
            user_id=user_id,
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            expires_at=datetime.fromtimestamp(session.expires_at or 0, tz=timezone.utc),
        )

    @staticmethod
    def _identity_from_row(
        row: Record, provider: LoginProvider = LoginProvider.PASSWORD,
    ) -> Identity:
        return Identity(
            id=str(row["id"]),
            email=row.get("email") or "",
            display_name=row.get("display_name") or row.get("full_name"),
            avatar_url=row.get("avatar_url") or row.get("profile_image_url"),
            company_id=row.get("company_id"),
            is_company_admin=bool(row.get("is_company_admin", False)),
            provider=LoginProvider(row.get("provider") or provider),
        )
