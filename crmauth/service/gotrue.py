from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from crmauth.config import Settings
from crmauth.logging import get_logger
from crmauth.service.errors import IdentityProviderError, InvalidCredentials
from crmauth.service.identity import AuthEventEmitter
from crmauth.storage.device import DeviceStorage, read_json, write_json
from crmauth.storage.models import (
    AssuranceLevel,
    AssuranceLevels,
    AuthEvent,
    FactorStatus,
    MFAChallenge,
    MFAFactor,
    Session,
    UserProfile,
)

logger = get_logger(__name__)

# Error codes the auth API uses for a rejected email/password pair
_CREDENTIAL_ERROR_CODES = {"invalid_credentials", "invalid_grant"}


def _decode_claims(token: str) -> dict:
    """Read (not verify) the claims of a JWT issued by the auth API."""
    try:
        _, payload_b64, _ = token.split(".")
        padding = "=" * ((4 - len(payload_b64) % 4) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload_b64 + padding))
    except (ValueError, TypeError):
        return {}
    return claims if isinstance(claims, dict) else {}


def _error_from_response(resp: httpx.Response) -> IdentityProviderError:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = body.get("error_code") or body.get("code") or body.get("error")
    message = (
        body.get("msg")
        or body.get("message")
        or body.get("error_description")
        or resp.reason_phrase
        or "request failed"
    )
    if resp.status_code == 400 and (
        str(code) in _CREDENTIAL_ERROR_CODES or "Invalid login credentials" in str(message)
    ):
        return InvalidCredentials(str(message))
    return IdentityProviderError(
        str(message),
        code=str(code) if code is not None else None,
        status_code=resp.status_code,
        transient=resp.status_code >= 500 or resp.status_code == 429,
    )


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    json_body: Any = None,
    params: Optional[Dict[str, str]] = None,
    allow_status: tuple[int, ...] = (),
) -> httpx.Response:
    """Send one request, mapping transport and HTTP failures to provider errors."""
    try:
        resp = await client.request(
            method, url, headers=headers, json=json_body, params=params
        )
    except httpx.HTTPError as exc:
        logger.warning("identity_transport_error", method=method, url=url, error=str(exc))
        raise IdentityProviderError(
            "Unable to reach the authentication service",
            code="network_error",
            transient=True,
        ) from exc
    if resp.status_code >= 400 and resp.status_code not in allow_status:
        raise _error_from_response(resp)
    return resp


class GoTrueIdentityProvider(AuthEventEmitter):
    """Identity provider backed by a hosted GoTrue auth API.

    The token blob lives in device storage under ``auth_token_storage_key``;
    removing that key is what other tabs observe as a logout.
    """

    def __init__(
        self,
        settings: Settings,
        storage: DeviceStorage,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__()
        self.settings = settings
        self.storage = storage
        self.storage_key = settings.auth_token_storage_key
        self.client = client or httpx.AsyncClient(
            timeout=settings.identity_timeout_seconds, follow_redirects=False
        )
        self.mfa = GoTrueMFA(self)

    def _url(self, path: str) -> str:
        return f"{self.settings.identity_url}/auth/v1{path}"

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.settings.identity_anon_key:
            headers["apikey"] = self.settings.identity_anon_key
        bearer = access_token or self.settings.identity_anon_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: Optional[Dict[str, str]] = None,
        access_token: Optional[str] = None,
        allow_status: tuple[int, ...] = (),
    ) -> Dict[str, Any]:
        resp = await send_request(
            self.client,
            method,
            self._url(path),
            headers=self._headers(access_token),
            json_body=json_body,
            params=params,
            allow_status=allow_status,
        )
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"items": data}

    def session_from_payload(self, payload: Dict[str, Any]) -> Session:
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        user = payload.get("user") or {}
        if not access_token or not refresh_token or not user.get("id"):
            raise IdentityProviderError(
                "Malformed session response", code="bad_session_payload"
            )
        if payload.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(payload["expires_at"]), tz=timezone.utc)
        else:
            expires_in = int(payload.get("expires_in") or 3600)
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        claims = _decode_claims(access_token)
        try:
            aal = AssuranceLevel(claims.get("aal", AssuranceLevel.AAL1.value))
        except ValueError:
            aal = AssuranceLevel.AAL1
        return Session(
            user_id=str(user["id"]),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            assurance_level=aal,
            email=user.get("email"),
        )

    def load_session(self) -> Optional[Session]:
        # Re-read on every call; another tab may have replaced or removed it
        data = read_json(self.storage, self.storage_key)
        if not isinstance(data, dict):
            return None
        try:
            return Session.from_dict(data)
        except (KeyError, ValueError, TypeError):
            logger.warning("persisted_session_unreadable")
            return None

    def save_session(self, session: Session) -> None:
        write_json(self.storage, self.storage_key, session.to_dict())

    def current_access_token(self) -> Optional[str]:
        session = self.load_session()
        return session.access_token if session else None

    async def get_persisted_session(self) -> Optional[Session]:
        return self.load_session()

    async def refresh_session(self) -> Session:
        current = self.load_session()
        if not current:
            raise IdentityProviderError("No session to refresh", code="session_missing")
        payload = await self.request(
            "POST",
            "/token",
            params={"grant_type": "refresh_token"},
            json_body={"refresh_token": current.refresh_token},
        )
        session = self.session_from_payload(payload)
        self.save_session(session)
        await self._emit(AuthEvent.TOKEN_REFRESHED, session)
        return session

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        payload = await self.request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json_body={"email": email, "password": password},
        )
        session = self.session_from_payload(payload)
        self.save_session(session)
        await self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        current = self.load_session()
        if current is None:
            return
        # 401/404: the server already forgot this session, so local cleanup suffices
        await self.request(
            "POST",
            "/logout",
            access_token=current.access_token,
            allow_status=(401, 403, 404),
        )
        self.storage.remove_item(self.storage_key)
        await self._emit(AuthEvent.SIGNED_OUT, None)

    async def reset_password_for_email(self, email: str, redirect_to: str) -> None:
        await self.request(
            "POST",
            "/recover",
            params={"redirect_to": redirect_to},
            json_body={"email": email},
        )

    async def update_user_password(self, new_password: str) -> None:
        token = self.current_access_token()
        if not token:
            raise IdentityProviderError("Not signed in", code="session_missing")
        await self.request(
            "PUT", "/user", json_body={"password": new_password}, access_token=token
        )
        await self._emit(AuthEvent.USER_UPDATED, self.load_session())

    async def close(self) -> None:
        await self.client.aclose()


class GoTrueMFA:
    """TOTP factor lifecycle against the auth API's ``/factors`` endpoints."""

    def __init__(self, provider: GoTrueIdentityProvider) -> None:
        self.provider = provider

    def _token(self) -> str:
        token = self.provider.current_access_token()
        if not token:
            raise IdentityProviderError("Not signed in", code="session_missing")
        return token

    async def list_factors(self) -> List[MFAFactor]:
        user = await self.provider.request("GET", "/user", access_token=self._token())
        factors: List[MFAFactor] = []
        for raw in user.get("factors") or []:
            if raw.get("factor_type") != "totp":
                continue
            status = (
                FactorStatus.VERIFIED
                if raw.get("status") == "verified"
                else FactorStatus.UNVERIFIED
            )
            factors.append(
                MFAFactor(
                    id=raw["id"],
                    status=status,
                    friendly_name=raw.get("friendly_name"),
                )
            )
        return factors

    async def enroll(self, friendly_name: Optional[str] = None) -> MFAFactor:
        body: Dict[str, Any] = {"factor_type": "totp"}
        if friendly_name:
            body["friendly_name"] = friendly_name
        data = await self.provider.request(
            "POST", "/factors", json_body=body, access_token=self._token()
        )
        totp = data.get("totp") or {}
        return MFAFactor(
            id=data["id"],
            status=FactorStatus.UNVERIFIED,
            friendly_name=data.get("friendly_name") or friendly_name,
            secret=totp.get("secret"),
            uri=totp.get("uri"),
            qr_code=totp.get("qr_code"),
        )

    async def challenge(self, factor_id: str) -> MFAChallenge:
        data = await self.provider.request(
            "POST", f"/factors/{factor_id}/challenge", access_token=self._token()
        )
        expires_raw = data.get("expires_at")
        expires_at = (
            datetime.fromtimestamp(int(expires_raw), tz=timezone.utc)
            if expires_raw
            else datetime.now(timezone.utc) + timedelta(minutes=5)
        )
        return MFAChallenge(id=data["id"], factor_id=factor_id, expires_at=expires_at)

    async def verify(self, factor_id: str, challenge_id: str, code: str) -> Session:
        payload = await self.provider.request(
            "POST",
            f"/factors/{factor_id}/verify",
            json_body={"challenge_id": challenge_id, "code": code},
            access_token=self._token(),
        )
        session = self.provider.session_from_payload(payload)
        self.provider.save_session(session)
        await self.provider._emit(AuthEvent.MFA_CHALLENGE_VERIFIED, session)
        return session

    async def unenroll(self, factor_id: str) -> None:
        await self.provider.request(
            "DELETE", f"/factors/{factor_id}", access_token=self._token()
        )

    async def get_assurance_level(self) -> AssuranceLevels:
        session = self.provider.load_session()
        if session is None:
            return AssuranceLevels(AssuranceLevel.AAL1, AssuranceLevel.AAL1)
        factors = await self.list_factors()
        next_level = (
            AssuranceLevel.AAL2
            if any(f.verified for f in factors)
            else AssuranceLevel.AAL1
        )
        return AssuranceLevels(session.assurance_level, next_level)


class PostgrestProfileStore:
    """``profiles`` table access through the hosted PostgREST API."""

    _OBJECT_MEDIA_TYPE = "application/vnd.pgrst.object+json"

    def __init__(
        self,
        settings: Settings,
        provider: GoTrueIdentityProvider,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.client = client or provider.client

    def _url(self) -> str:
        return f"{self.settings.identity_url}/rest/v1/profiles"

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = self.provider._headers(self.provider.current_access_token())
        headers["Accept"] = self._OBJECT_MEDIA_TYPE
        headers.update(extra)
        return headers

    @staticmethod
    def _to_profile(resp: httpx.Response) -> UserProfile:
        try:
            return UserProfile.from_record(resp.json())
        except (KeyError, TypeError, ValueError) as exc:
            raise IdentityProviderError(
                "Profile record is malformed", code="profile_invalid"
            ) from exc

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        resp = await send_request(
            self.client,
            "GET",
            self._url(),
            headers=self._headers(),
            params={"id": f"eq.{user_id}", "select": "*"},
            # 406: object media type requested but zero rows matched
            allow_status=(406,),
        )
        if resp.status_code == 406:
            return None
        return self._to_profile(resp)

    async def update_profile(self, user_id: str, fields: Dict[str, Any]) -> UserProfile:
        resp = await send_request(
            self.client,
            "PATCH",
            self._url(),
            headers=self._headers(Prefer="return=representation"),
            params={"id": f"eq.{user_id}", "select": "*"},
            json_body=fields,
        )
        return self._to_profile(resp)
