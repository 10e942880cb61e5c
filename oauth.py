"""
Google and Facebook sign-in (authorization-code flow).

The callback exchanges the code for an access token, fetches the profile and
normalizes it into an OAuthProfile for UserRepository.find_or_create_oauth_user.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from config import Settings
from errors import AuthenticationError

logger = logging.getLogger(__name__)

PROVIDERS: Dict[str, Dict[str, Any]] = {
    "google": {
        "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "profile_url": "https://www.googleapis.com/oauth2/v3/userinfo",
        "scope": "openid profile email",
    },
    "facebook": {
        "authorize_url": "https://www.facebook.com/v18.0/dialog/oauth",
        "token_url": "https://graph.facebook.com/v18.0/oauth/access_token",
        "profile_url": "https://graph.facebook.com/me",
        "scope": "email,public_profile",
    },
}


@dataclass
class OAuthProfile:
    provider: str
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None


def _split_name(name: Optional[str]):
    parts = (name or "").split()
    if not parts:
        return None, None
    return parts[0], " ".join(parts[1:])


def parse_profile(provider: str, data: Dict[str, Any]) -> OAuthProfile:
    if provider == "google":
        pid = data.get("sub") or data.get("id")
        first, last = data.get("given_name"), data.get("family_name")
        picture = data.get("picture")
    else:
        pid = data.get("id")
        first, last = data.get("first_name"), data.get("last_name")
        picture = ((data.get("picture") or {}).get("data") or {}).get("url")
    if not first:
        first, fallback_last = _split_name(data.get("name"))
        last = last or fallback_last
    if not pid:
        raise AuthenticationError(f"{provider} profile has no id")
    email = data.get("email")
    return OAuthProfile(
        provider=provider,
        id=str(pid),
        email=email.lower() if email else None,
        first_name=first,
        last_name=last,
        picture=picture,
    )


class OAuthClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings
        self._transport = transport

    def _credentials(self, provider: str):
        if provider == "google":
            return self.settings.google_client_id, self.settings.google_client_secret
        if provider == "facebook":
            return self.settings.facebook_app_id, self.settings.facebook_app_secret
        return "", ""

    def is_configured(self, provider: str) -> bool:
        client_id, secret = self._credentials(provider)
        return bool(client_id and secret)

    def configured_providers(self) -> Dict[str, bool]:
        return {name: self.is_configured(name) for name in PROVIDERS}

    def redirect_uri(self, provider: str) -> str:
        return f"{self.settings.oauth_callback_base_url}/auth/{provider}/callback"

    def authorization_url(self, provider: str, state: str) -> str:
        if provider not in PROVIDERS or not self.is_configured(provider):
            raise AuthenticationError(f"{provider} login is not configured")
        cfg = PROVIDERS[provider]
        client_id, _ = self._credentials(provider)
        params = {
            "client_id": client_id,
            "redirect_uri": self.redirect_uri(provider),
            "response_type": "code",
            "scope": cfg["scope"],
            "state": state,
        }
        return f"{cfg['authorize_url']}?{urlencode(params)}"

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=10.0, transport=self._transport)

    def exchange_code(self, provider: str, code: str) -> str:
        cfg = PROVIDERS[provider]
        client_id, secret = self._credentials(provider)
        data = {
            "client_id": client_id,
            "client_secret": secret,
            "code": code,
            "redirect_uri": self.redirect_uri(provider),
            "grant_type": "authorization_code",
        }
        try:
            with self._client() as client:
                resp = client.post(cfg["token_url"], data=data)
            resp.raise_for_status()
            token = resp.json().get("access_token")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("%s token exchange failed: %s", provider, e)
            raise AuthenticationError(f"{provider} login failed") from e
        if not token:
            raise AuthenticationError(f"{provider} login failed")
        return token

    def fetch_profile(self, provider: str, access_token: str) -> OAuthProfile:
        cfg = PROVIDERS[provider]
        params = {"fields": "id,email,first_name,last_name,name,picture"} if provider == "facebook" else None
        try:
            with self._client() as client:
                resp = client.get(cfg["profile_url"], params=params,
                                  headers={"Authorization": f"Bearer {access_token}"})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("%s profile fetch failed: %s", provider, e)
            raise AuthenticationError(f"{provider} login failed") from e
        return parse_profile(provider, data)
