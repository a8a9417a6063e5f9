from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx

from iamcore.config import Settings
from iamcore.logging import get_logger
from iamcore.service.errors import (
    AuthenticationError,
    ExternalServiceError,
    ValidationError,
)
from iamcore.storage.models import SSO_PROVIDER

logger = get_logger(__name__)

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}


@dataclass(frozen=True)
class ExternalIdentity:
    """Provider-neutral identity handed to the orchestrator."""

    provider: str
    external_id: str
    email: str
    display_name: Optional[str] = None
    avatar: Optional[str] = None


class IdentityResolver:
    """Maps one provider's userinfo payload onto an :class:`ExternalIdentity`."""

    provider: str = ""

    def extract(self, profile: dict) -> dict:
        raise NotImplementedError

    def resolve(self, profile: dict) -> ExternalIdentity:
        if not isinstance(profile, dict):
            raise ValidationError("profile must be an object")
        fields = self.extract(profile)
        external_id = fields.get("external_id")
        if external_id is None or str(external_id).strip() in {"", "None"}:
            raise ValidationError(
                "provider profile is missing an id", detail={"provider": self.provider}
            )
        email = (fields.get("email") or "").strip()
        if not email or "@" not in email:
            raise ValidationError(
                "provider profile is missing an email", detail={"provider": self.provider}
            )
        return ExternalIdentity(
            provider=self.provider,
            external_id=str(external_id).strip(),
            email=email,
            display_name=fields.get("display_name") or None,
            avatar=fields.get("avatar") or None,
        )


class GoogleResolver(IdentityResolver):
    provider = "google"

    def extract(self, profile: dict) -> dict:
        return {
            "external_id": profile.get("id") or profile.get("sub"),
            "email": profile.get("email"),
            "display_name": profile.get("name"),
            "avatar": profile.get("picture"),
        }


class GitHubResolver(IdentityResolver):
    provider = "github"

    def extract(self, profile: dict) -> dict:
        return {
            "external_id": profile.get("id"),
            "email": profile.get("email"),
            "display_name": profile.get("name") or profile.get("login"),
            "avatar": profile.get("avatar_url"),
        }


class MicrosoftResolver(IdentityResolver):
    provider = "microsoft"

    def extract(self, profile: dict) -> dict:
        return {
            "external_id": profile.get("id"),
            "email": profile.get("mail") or profile.get("userPrincipalName"),
            "display_name": profile.get("displayName"),
            # Graph needs a separate call for photos
            "avatar": None,
        }


IDENTITY_RESOLVERS: Dict[str, IdentityResolver] = {
    resolver.provider: resolver
    for resolver in (GoogleResolver(), GitHubResolver(), MicrosoftResolver())
}


def get_resolver(provider: str) -> IdentityResolver:
    resolver = IDENTITY_RESOLVERS.get((provider or "").lower())
    if not resolver:
        raise ValidationError("unsupported provider", detail={"provider": provider})
    return resolver


def _validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValidationError("OAuth redirect URI must be http(s)")
    if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ValidationError("insecure redirect URI not allowed outside localhost")
    if not parsed.netloc:
        raise ValidationError("OAuth redirect URI must include host")
    return redirect_uri


class OAuthClient:
    """Authorization-code client for the supported social providers."""

    def __init__(
        self,
        settings: Settings,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.timeout = timeout
        self.transport = transport

    def credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        elif provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        elif provider == "microsoft":
            return (
                self.settings.oauth_microsoft_client_id,
                self.settings.oauth_microsoft_client_secret,
            )
        return None, None

    def _provider_config(self, provider: str) -> dict:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError("unsupported provider", detail={"provider": provider})
        return OAUTH_PROVIDERS[provider]

    def _redirect_uri(self) -> str:
        if not self.settings.oauth_redirect_uri:
            logger.error("oauth_no_redirect_uri_configured")
            raise ValidationError("no OAuth redirect URI configured")
        return _validate_redirect_uri(self.settings.oauth_redirect_uri)

    def authorization_url(self, provider: str, state: str) -> str:
        provider_config = self._provider_config(provider)
        client_id, _ = self.credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(
                "OAuth provider is not configured", detail={"provider": provider}
            )
        params = {
            "client_id": client_id,
            "redirect_uri": self._redirect_uri(),
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return f"{provider_config['auth_url']}?{urlencode(params)}"

    async def fetch_profile(self, provider: str, code: str) -> dict:
        """Exchange ``code`` for an access token and return the raw userinfo."""
        provider_config = self._provider_config(provider)
        client_id, client_secret = self.credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            raise ValidationError(
                "OAuth provider is not configured", detail={"provider": provider}
            )
        redirect_uri = self._redirect_uri()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise AuthenticationError(
                        "authorization code rejected", detail={"provider": provider}
                    )

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                # GitHub requires a special header
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    raise ExternalServiceError(
                        "identity provider returned an invalid profile",
                        detail={"provider": provider},
                    )

                # GitHub hides private emails from /user
                if provider == "github" and not userinfo.get("email"):
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
                        userinfo["email"] = next(
                            (
                                e["email"]
                                for e in emails
                                if isinstance(e, dict) and e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            if exc.response.status_code in {400, 401, 403}:
                raise AuthenticationError(
                    "authorization code rejected", detail={"provider": provider}
                ) from exc
            raise ExternalServiceError(
                "identity provider unavailable", detail={"provider": provider}
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise ExternalServiceError(
                "identity provider unavailable", detail={"provider": provider}
            ) from exc
        logger.info("oauth_exchange_success", provider=provider)
        return userinfo


class SSOVerifier(Protocol):
    async def verify(self, token: str) -> ExternalIdentity: ...


class HttpSSOVerifier:
    """Resolve an SSO bearer token through the provider's userinfo endpoint."""

    def __init__(
        self,
        userinfo_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.userinfo_url = userinfo_url
        self.timeout = timeout
        self.transport = transport

    async def verify(self, token: str) -> ExternalIdentity:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(
                    self.userinfo_url,
                    headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("sso_userinfo_rejected", status_code=exc.response.status_code)
            if exc.response.status_code in {401, 403}:
                raise AuthenticationError("sso token rejected") from exc
            raise ExternalServiceError("sso provider unavailable") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("sso_userinfo_failed", error=str(exc))
            raise ExternalServiceError("sso provider unavailable") from exc
        if not isinstance(payload, dict):
            raise ExternalServiceError("sso provider returned an invalid profile")
        subject = payload.get("sub") or payload.get("id")
        email = (payload.get("email") or "").strip()
        if not subject or not email:
            raise AuthenticationError("sso profile is incomplete")
        return ExternalIdentity(
            provider=SSO_PROVIDER,
            external_id=str(subject),
            email=email,
            display_name=payload.get("name"),
            avatar=payload.get("picture"),
        )


class StaticSSOVerifier:
    """Maps every non-empty token to one configured identity."""

    def __init__(self, email: str, name: str = "SSO User") -> None:
        self.email = email
        self.name = name

    async def verify(self, token: str) -> ExternalIdentity:
        return ExternalIdentity(
            provider=SSO_PROVIDER,
            external_id=self.email.strip().lower(),
            email=self.email,
            display_name=self.name,
        )


def build_sso_verifier(settings: Settings) -> Optional[SSOVerifier]:
    if settings.sso_userinfo_url:
        return HttpSSOVerifier(settings.sso_userinfo_url)
    if settings.sso_static_email:
        return StaticSSOVerifier(settings.sso_static_email, settings.sso_static_name)
    return None
