"""Google OAuth2 web-server flow for Gmail access.

Handles the authorization-code flow: building the consent URL, exchanging
the returned code for tokens, refreshing access tokens, and looking up the
signed-in user's profile.

Key features:
- Offline access so Google returns a refresh token on first consent
- Retry with exponential backoff and jitter on transient token endpoint failures
- Client secret read from GOOGLE_CLIENT_SECRET when not configured

Usage:
    from finmail.config import get_config
    from finmail.gmail.oauth import GoogleOAuth

    oauth = GoogleOAuth.from_config(get_config().google)
    url = oauth.get_authorization_url()

    tokens = oauth.exchange_code(code)
    profile = oauth.get_user_info(tokens["access_token"])
"""

from __future__ import annotations

import os
import random
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import requests

from finmail.core.errors import AuthenticationError
from finmail.core.logging import get_logger
from finmail.core.rate_limiter import get_bucket

if TYPE_CHECKING:
    from finmail.config_schema import GoogleConfig

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

OAUTH_MAX_RETRIES = 3
OAUTH_RETRY_DELAYS = [1.0, 2.0, 4.0]

OAUTH_RATE = 5.0
OAUTH_CAPACITY = 5


class GoogleOAuth:
    """Google OAuth2 client for the authorization-code flow.

    Attributes:
        client_id: OAuth client ID from Google Cloud Console
        client_secret: OAuth client secret
        redirect_uri: Redirect URI registered for the client
        scopes: Scopes requested at consent

    Security notes:
        - Tokens are never logged
        - The client secret should come from the environment, not config.yaml
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str | None,
        redirect_uri: str,
        scopes: list[str],
        session: requests.Session | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.session = session or requests.Session()
        self._rate_bucket = get_bucket(name="google_oauth", rate=OAUTH_RATE, capacity=OAUTH_CAPACITY)

    @classmethod
    def from_config(cls, config: GoogleConfig) -> GoogleOAuth:
        """Build from the google config section, reading the secret from the environment."""
        return cls(
            client_id=config.client_id or os.environ.get("GOOGLE_CLIENT_ID", ""),
            client_secret=config.client_secret or os.environ.get("GOOGLE_CLIENT_SECRET"),
            redirect_uri=config.redirect_uri,
            scopes=list(config.scopes),
        )

    def _require_client(self) -> None:
        if not self.client_id or not self.client_secret:
            raise AuthenticationError(
                "Google OAuth client is not configured. "
                "Set google.client_id in config.yaml and GOOGLE_CLIENT_SECRET in the environment."
            )

    def get_authorization_url(self, state: str | None = None) -> str:
        """Build the consent screen URL.

        Args:
            state: Opaque value echoed back to the redirect URI

        Returns:
            URL the browser should be sent to
        """
        if not self.client_id:
            raise AuthenticationError(
                "google.client_id is not set. "
                "Create an OAuth client in Google Cloud Console and add its ID to config.yaml."
            )
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for tokens.

        Returns:
            Token response with access_token, and refresh_token on first consent

        Raises:
            AuthenticationError: If the exchange fails
        """
        self._require_client()
        tokens = self._token_request(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
            action="exchange authorization code",
        )
        logger.info("oauth_code_exchanged", has_refresh_token="refresh_token" in tokens)
        return tokens

    def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        """Get a fresh access token.

        Raises:
            AuthenticationError: If the refresh token is revoked or the call fails
        """
        self._require_client()
        tokens = self._token_request(
            {
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            },
            action="refresh access token",
        )
        logger.info("oauth_token_refreshed")
        return tokens

    def get_user_info(self, access_token: str) -> dict[str, Any]:
        """Fetch the signed-in user's profile (id, email, name).

        Raises:
            AuthenticationError: If the token is rejected
        """
        self._rate_bucket.consume_sync()
        try:
            response = self.session.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=30.0,
            )
        except requests.exceptions.RequestException as e:
            raise AuthenticationError(f"Failed to fetch Google user profile: {e}") from e

        if response.status_code != 200:
            raise AuthenticationError(
                f"Google rejected the access token ({response.status_code}). "
                "Sign in again to grant Gmail access."
            )
        return response.json()

    def _token_request(self, data: dict[str, Any], action: str) -> dict[str, Any]:
        """POST to the token endpoint with retry on 5xx and connection errors."""
        last_error = ""
        for attempt in range(OAUTH_MAX_RETRIES + 1):
            self._rate_bucket.consume_sync()
            try:
                response = self.session.post(GOOGLE_TOKEN_URL, data=data, timeout=30.0)
            except requests.exceptions.RequestException as e:
                last_error = str(e)
            else:
                if response.status_code < 400:
                    return response.json()
                if response.status_code < 500:
                    try:
                        payload = response.json()
                        reason = payload.get("error_description") or payload.get("error")
                    except ValueError:
                        reason = response.text
                    logger.error("oauth_request_rejected", action=action, status_code=response.status_code)
                    raise AuthenticationError(
                        f"Failed to {action}: {reason}. "
                        "The code or refresh token may be expired or revoked; sign in again."
                    )
                last_error = f"HTTP {response.status_code}"

            if attempt < OAUTH_MAX_RETRIES:
                base_delay = OAUTH_RETRY_DELAYS[min(attempt, len(OAUTH_RETRY_DELAYS) - 1)]
                delay = base_delay + base_delay * 0.2 * (2 * random.random() - 1)
                logger.warning("oauth_request_retry", action=action, attempt=attempt + 1, delay=delay)
                time.sleep(delay)

        raise AuthenticationError(
            f"Failed to {action} after {OAUTH_MAX_RETRIES} retries: {last_error}. "
            "Google's token endpoint may be unavailable; try again later."
        )
