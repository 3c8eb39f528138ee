from datetime import timedelta

import httpx

from broker.core.clock import utcnow
from broker.core.config import settings
from broker.domain.models.connection import Platform
from broker.integrations.platform_adapters.base_adapter import (
    AdapterAuthError,
    AdapterPermanentError,
    BasePlatformAdapter,
    ConnectedIdentity,
)

TWITTER_AUTHORIZE_URL = "https://twitter.com/i/oauth2/authorize"
TWITTER_TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
TWITTER_REVOKE_URL = "https://api.twitter.com/2/oauth2/revoke"
TWITTER_ME_URL = "https://api.twitter.com/2/users/me"
TWITTER_CREATE_POST_URL = "https://api.twitter.com/2/tweets"
TWITTER_MAX_LENGTH = 280


class TwitterAdapter(BasePlatformAdapter):
    platform = Platform.TWITTER.value
    display_name = "Twitter"

    def _client_credentials(self) -> tuple[str, str]:
        if not settings.twitter_client_id or not settings.twitter_client_secret:
            raise AdapterPermanentError("Twitter OAuth client configuration missing")
        return settings.twitter_client_id, settings.twitter_client_secret

    def build_authorization_url(self, *, state: str, redirect_uri: str, code_challenge: str) -> str:
        client_id, _ = self._client_credentials()
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": settings.twitter_oauth_scope,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return str(httpx.URL(TWITTER_AUTHORIZE_URL, params=params))

    async def exchange_code(self, *, code: str, redirect_uri: str, code_verifier: str) -> ConnectedIdentity:
        client_id, client_secret = self._client_credentials()
        response = await self._send(
            "POST",
            TWITTER_TOKEN_URL,
            operation="token exchange",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
                "client_id": client_id,
            },
            auth=(client_id, client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        self._raise_for_status(response, operation="token exchange")
        token_payload = response.json()
        access_token = str(token_payload.get("access_token") or "")
        if not access_token:
            raise AdapterAuthError("Twitter token response missing access token")

        profile_response = await self._send(
            "GET",
            TWITTER_ME_URL,
            operation="profile fetch",
            params={"user.fields": "verified,public_metrics"},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        self._raise_for_status(profile_response, operation="profile fetch")
        profile = profile_response.json().get("data") or {}
        if not profile.get("id"):
            raise AdapterPermanentError("Twitter profile id missing")

        expires_in = token_payload.get("expires_in")
        public_metrics = profile.get("public_metrics") or {}
        return ConnectedIdentity(
            external_account_id=str(profile["id"]),
            username=profile.get("username"),
            access_token=access_token,
            refresh_token=token_payload.get("refresh_token"),
            expires_at=utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
            scopes=str(token_payload.get("scope") or settings.twitter_oauth_scope).split(),
            verified=bool(profile.get("verified", False)),
            follower_count=public_metrics.get("followers_count"),
        )

    async def revoke(self, *, access_token: str) -> bool:
        client_id, client_secret = self._client_credentials()
        response = await self._send(
            "POST",
            TWITTER_REVOKE_URL,
            operation="token revoke",
            data={"token": access_token, "token_type_hint": "access_token", "client_id": client_id},
            auth=(client_id, client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return response.status_code < 400

    def validate_content(self, content: str, options: dict | None = None) -> None:
        text = content.strip()
        if not text:
            raise AdapterPermanentError("Twitter post content is empty")
        if len(text) > TWITTER_MAX_LENGTH:
            raise AdapterPermanentError(
                f"Twitter posts are limited to {TWITTER_MAX_LENGTH} characters (got {len(text)})"
            )

    async def publish_text(self, *, access_token: str, content: str, options: dict | None = None) -> dict:
        self.validate_content(content, options)
        text = content.strip()

        response = await self._send(
            "POST",
            TWITTER_CREATE_POST_URL,
            operation="publish",
            json={"text": text},
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
        )
        self._raise_for_status(response, operation="publish")
        data = response.json().get("data") or {}
        external_post_id = str(data.get("id") or "")
        if not external_post_id:
            raise AdapterPermanentError("Twitter publish response missing post id")
        return {"external_post_id": external_post_id, "platform": self.platform}
