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

REDDIT_AUTHORIZE_URL = "https://www.reddit.com/api/v1/authorize"
REDDIT_TOKEN_URL = "https://www.reddit.com/api/v1/access_token"
REDDIT_REVOKE_URL = "https://www.reddit.com/api/v1/revoke_token"
REDDIT_ME_URL = "https://oauth.reddit.com/api/v1/me"
REDDIT_SUBMIT_URL = "https://oauth.reddit.com/api/submit"
REDDIT_TITLE_MAX_LENGTH = 300


class RedditAdapter(BasePlatformAdapter):
    """Reddit OAuth web-app flow.

    Reddit does not support PKCE, so the code challenge is accepted and ignored; the
    state token alone protects the callback.
    """

    platform = Platform.REDDIT.value
    display_name = "Reddit"

    def _client_credentials(self) -> tuple[str, str]:
        if not settings.reddit_client_id or not settings.reddit_client_secret:
            raise AdapterPermanentError("Reddit OAuth client configuration missing")
        return settings.reddit_client_id, settings.reddit_client_secret

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        headers = {"User-Agent": settings.reddit_user_agent}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def build_authorization_url(self, *, state: str, redirect_uri: str, code_challenge: str) -> str:
        client_id, _ = self._client_credentials()
        params = {
            "client_id": client_id,
            "response_type": "code",
            "state": state,
            "redirect_uri": redirect_uri,
            "duration": "permanent",
            "scope": settings.reddit_oauth_scope,
        }
        return str(httpx.URL(REDDIT_AUTHORIZE_URL, params=params))

    async def exchange_code(self, *, code: str, redirect_uri: str, code_verifier: str) -> ConnectedIdentity:
        client_id, client_secret = self._client_credentials()
        response = await self._send(
            "POST",
            REDDIT_TOKEN_URL,
            operation="token exchange",
            data={"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            auth=(client_id, client_secret),
            headers=self._headers(),
        )
        self._raise_for_status(response, operation="token exchange")
        token_payload = response.json()
        # Reddit reports grant failures with a 200 and an error field.
        if token_payload.get("error"):
            raise AdapterAuthError(f"Reddit token exchange rejected: {token_payload['error']}")
        access_token = str(token_payload.get("access_token") or "")
        if not access_token:
            raise AdapterAuthError("Reddit token response missing access token")

        profile_response = await self._send(
            "GET", REDDIT_ME_URL, operation="profile fetch", headers=self._headers(access_token)
        )
        self._raise_for_status(profile_response, operation="profile fetch")
        profile = profile_response.json()
        if not profile.get("id"):
            raise AdapterPermanentError("Reddit profile id missing")

        expires_in = token_payload.get("expires_in")
        subreddit = profile.get("subreddit") or {}
        return ConnectedIdentity(
            external_account_id=str(profile["id"]),
            username=profile.get("name"),
            access_token=access_token,
            refresh_token=token_payload.get("refresh_token"),
            expires_at=utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
            scopes=str(token_payload.get("scope") or settings.reddit_oauth_scope).replace(",", " ").split(),
            verified=bool(profile.get("verified", False)),
            follower_count=subreddit.get("subscribers"),
        )

    async def revoke(self, *, access_token: str) -> bool:
        client_id, client_secret = self._client_credentials()
        response = await self._send(
            "POST",
            REDDIT_REVOKE_URL,
            operation="token revoke",
            data={"token": access_token, "token_type_hint": "access_token"},
            auth=(client_id, client_secret),
            headers=self._headers(),
        )
        return response.status_code < 400

    @staticmethod
    def _submission_fields(content: str, options: dict | None) -> tuple[str, str, str]:
        options = options or {}
        subreddit = str(options.get("subreddit") or "").strip().removeprefix("r/")
        if not subreddit:
            raise AdapterPermanentError("Reddit publish requires a subreddit")
        body = content.strip()
        title = str(options.get("title") or "").strip()
        if not title and body:
            title = body.splitlines()[0].strip()
        if not title:
            raise AdapterPermanentError("Reddit publish requires a title")
        return subreddit, title, body

    def validate_content(self, content: str, options: dict | None = None) -> None:
        self._submission_fields(content, options)

    async def publish_text(self, *, access_token: str, content: str, options: dict | None = None) -> dict:
        subreddit, title, body = self._submission_fields(content, options)

        response = await self._send(
            "POST",
            REDDIT_SUBMIT_URL,
            operation="publish",
            data={
                "sr": subreddit,
                "kind": "self",
                "title": title[:REDDIT_TITLE_MAX_LENGTH],
                "text": body,
                "api_type": "json",
            },
            headers=self._headers(access_token),
        )
        self._raise_for_status(response, operation="publish")
        payload = response.json().get("json") or {}
        errors = payload.get("errors") or []
        if errors:
            raise AdapterPermanentError(f"Reddit publish rejected: {errors[0]}")
        data = payload.get("data") or {}
        external_post_id = str(data.get("name") or data.get("id") or "")
        if not external_post_id:
            raise AdapterPermanentError("Reddit publish response missing post id")
        return {"external_post_id": external_post_id, "platform": self.platform, "url": data.get("url")}
