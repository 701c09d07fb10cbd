"""Client for the upstream identity providers (Google, Microsoft).

Providers are a closed set described by a table of :class:`ProviderConfig`
entries plus one profile normalizer each.  Supporting another provider means
adding one table entry and one normalizer.

Every network call carries a bounded timeout.  Failures (transport errors,
non-2xx responses, malformed JSON) are logged with provider and status and
returned as ``None``; nothing raises across this module's boundary except
:class:`ValueError` for an unsupported provider, which is a caller bug.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Final, Iterable, Literal, Mapping
from urllib.parse import urlencode

import requests

from mcp_token_broker.central_auth.models import UpstreamTokenResult, UpstreamUserInfo

_LOG = logging.getLogger("mcp-token-broker.central_auth.upstream")

Provider = Literal["google", "microsoft"]

_DEFAULT_TIMEOUT: Final[tuple[float, float]] = (5, 20)


@dataclass(frozen=True)
class ProviderConfig:
    """Endpoints, scopes and client credentials of one upstream provider."""

    name: str
    client_id: str
    client_secret: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    scopes: tuple[str, ...]
    extra_authorize_params: Mapping[str, str] = field(default_factory=dict)


def google_provider(client_id: str, client_secret: str) -> ProviderConfig:
    return ProviderConfig(
        name="google",
        client_id=client_id,
        client_secret=client_secret,
        authorization_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
        token_endpoint="https://oauth2.googleapis.com/token",
        userinfo_endpoint="https://openidconnect.googleapis.com/v1/userinfo",
        scopes=("openid", "profile", "email"),
        extra_authorize_params={"access_type": "offline", "prompt": "consent"},
    )


def microsoft_provider(
    client_id: str, client_secret: str, tenant_id: str = "common"
) -> ProviderConfig:
    base = f"https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0"
    return ProviderConfig(
        name="microsoft",
        client_id=client_id,
        client_secret=client_secret,
        authorization_endpoint=f"{base}/authorize",
        token_endpoint=f"{base}/token",
        userinfo_endpoint="https://graph.microsoft.com/v1.0/me",
        # Microsoft grants refresh tokens through the offline_access scope
        scopes=("openid", "profile", "email", "offline_access", "User.Read"),
        extra_authorize_params={"prompt": "consent"},
    )


# --------------------------------------------------------------------------- #
# Profile normalizers                                                         #
# --------------------------------------------------------------------------- #
def _str_or_none(value: Any) -> str | None:
    return str(value) if value not in (None, "") else None


def _normalize_google(data: Mapping[str, Any]) -> UpstreamUserInfo:
    verified = data.get("email_verified", False)
    if isinstance(verified, str):
        verified = verified.lower() == "true"
    return UpstreamUserInfo(
        provider="google",
        subject=str(data.get("sub") or ""),
        email=_str_or_none(data.get("email")),
        email_verified=bool(verified),
        name=_str_or_none(data.get("name")),
        given_name=_str_or_none(data.get("given_name")),
        family_name=_str_or_none(data.get("family_name")),
        picture=_str_or_none(data.get("picture")),
        locale=_str_or_none(data.get("locale")),
    )


def _normalize_microsoft(data: Mapping[str, Any]) -> UpstreamUserInfo:
    return UpstreamUserInfo(
        provider="microsoft",
        subject=str(data.get("id") or ""),
        email=_str_or_none(data.get("mail") or data.get("userPrincipalName")),
        # Graph only returns addresses owned by the tenant
        email_verified=True,
        name=_str_or_none(data.get("displayName")),
        given_name=_str_or_none(data.get("givenName")),
        family_name=_str_or_none(data.get("surname")),
        locale=_str_or_none(data.get("preferredLanguage")),
    )


PROFILE_NORMALIZERS: Final[dict[str, Callable[[Mapping[str, Any]], UpstreamUserInfo]]] = {
    "google": _normalize_google,
    "microsoft": _normalize_microsoft,
}


def _token_result(data: Mapping[str, Any]) -> UpstreamTokenResult | None:
    access_token = data.get("access_token")
    if not access_token:
        return None
    try:
        expires_in = int(data.get("expires_in") or 3600)
    except (TypeError, ValueError):
        expires_in = 3600
    return UpstreamTokenResult(
        access_token=str(access_token),
        expires_in=expires_in,
        refresh_token=_str_or_none(data.get("refresh_token")),
        id_token=_str_or_none(data.get("id_token")),
        token_type=str(data.get("token_type") or "Bearer"),
        scope=_str_or_none(data.get("scope")),
    )


# --------------------------------------------------------------------------- #
# Client                                                                      #
# --------------------------------------------------------------------------- #
class UpstreamIdentityClient:
    """Talks to the configured upstream providers."""

    def __init__(
        self,
        providers: Mapping[str, ProviderConfig],
        *,
        timeout: float | tuple[float, float] = _DEFAULT_TIMEOUT,
    ) -> None:
        self.providers = dict(providers)
        self.timeout = timeout

    def supported_providers(self) -> list[str]:
        return list(self.providers)

    def is_supported(self, provider: str | None) -> bool:
        return bool(provider) and provider in self.providers

    def _provider(self, provider: str) -> ProviderConfig:
        try:
            return self.providers[provider]
        except KeyError:
            raise ValueError(f"unsupported provider: {provider}") from None

    def build_authorization_url(
        self,
        provider: str,
        state: str,
        code_challenge: str,
        redirect_uri: str,
        scopes: Iterable[str] | None = None,
    ) -> str:
        """Return the provider's authorize URL for an S256 PKCE request."""
        cfg = self._provider(provider)
        scope_list = list(scopes) if scopes else list(cfg.scopes)
        params: dict[str, str] = {
            "client_id": cfg.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": " ".join(scope_list),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        params.update(cfg.extra_authorize_params)
        return f"{cfg.authorization_endpoint}?{urlencode(params)}"

    def exchange_code(
        self,
        provider: str,
        code: str,
        code_verifier: str,
        redirect_uri: str,
    ) -> UpstreamTokenResult | None:
        """Redeem an upstream authorization code and attach the user profile."""
        cfg = self._provider(provider)
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": cfg.client_id,
            "client_secret": cfg.client_secret,
            "code_verifier": code_verifier,
        }
        data = self._post_token(cfg, payload, action="code exchange")
        result = _token_result(data) if data is not None else None
        if result is None:
            return None

        user_info = self.fetch_user_info(provider, result.access_token)
        _LOG.info(
            "Exchanged upstream code provider=%s refresh_token=%s profile=%s",
            provider,
            bool(result.refresh_token),
            bool(user_info),
        )
        return dataclasses.replace(result, user_info=user_info)

    def refresh_upstream_token(
        self, provider: str, refresh_token: str
    ) -> UpstreamTokenResult | None:
        """Run the refresh grant; the previous refresh token is kept if none is returned."""
        cfg = self._provider(provider)
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": cfg.client_id,
            "client_secret": cfg.client_secret,
        }
        data = self._post_token(cfg, payload, action="token refresh")
        result = _token_result(data) if data is not None else None
        if result is None:
            return None
        if not result.refresh_token:
            result = dataclasses.replace(result, refresh_token=refresh_token)
        return result

    def fetch_user_info(self, provider: str, access_token: str) -> UpstreamUserInfo | None:
        cfg = self._provider(provider)
        try:
            resp = requests.get(
                cfg.userinfo_endpoint,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            _LOG.error("Userinfo request failed provider=%s: %s", provider, type(exc).__name__)
            return None

        if not resp.ok:
            _LOG.error(
                "Userinfo endpoint returned status=%s provider=%s", resp.status_code, provider
            )
            return None
        try:
            data = resp.json()
        except ValueError:
            _LOG.error("Userinfo response is not JSON provider=%s", provider)
            return None
        if not isinstance(data, dict):
            return None
        return PROFILE_NORMALIZERS[provider](data)

    def _post_token(
        self, cfg: ProviderConfig, payload: dict[str, str], *, action: str
    ) -> dict[str, Any] | None:
        try:
            resp = requests.post(
                cfg.token_endpoint,
                data=payload,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            _LOG.error("Upstream %s failed provider=%s: %s", action, cfg.name, type(exc).__name__)
            return None

        if not resp.ok:
            _LOG.error(
                "Upstream %s returned status=%s provider=%s",
                action,
                resp.status_code,
                cfg.name,
            )
            return None
        try:
            data = resp.json()
        except ValueError:
            _LOG.error("Upstream %s response is not JSON provider=%s", action, cfg.name)
            return None
        return data if isinstance(data, dict) else None
