"""Gmail REST API client with retry logic and error handling.

This module provides the HTTP client every Gmail call goes through:
- Automatic retry with exponential backoff for 5xx and 429 responses
- One transparent access-token refresh on a 401 when a refresh token is known
- Proactive token-bucket rate limiting
- Pagination over nextPageToken

Usage:
    from finmail.gmail.client import GmailClient

    client = GmailClient(access_token, refresh_token=refresh_token, oauth=oauth)

    profile = client.get("/profile")
    ids = client.paginate("/messages", "messages", params={"q": "receipt"}, max_items=50)
"""

import random
import time
from typing import TYPE_CHECKING, Any

import requests

from finmail.core.errors import AuthenticationError, GmailAPIError, RateLimitExceeded
from finmail.core.logging import get_logger
from finmail.core.rate_limiter import get_bucket

if TYPE_CHECKING:
    from finmail.gmail.oauth import GoogleOAuth

logger = get_logger(__name__)

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Gmail allows 250 quota units/sec per user; messages.get costs 5 units
GMAIL_RATE = 40.0
GMAIL_CAPACITY = 40

# Gmail caps list page size at 500
MAX_PAGE_SIZE = 500


class GmailClient:
    """Gmail API client bound to one user's tokens.

    Attributes:
        access_token: Current OAuth access token (replaced after a refresh)
        refresh_token: OAuth refresh token, if the user granted offline access
        token_refreshed: True once the access token has been refreshed, so the
            caller knows to persist the new one

    Example:
        client = GmailClient(user.access_token, user.refresh_token, oauth)
        labels = client.get("/labels")["labels"]
    """

    def __init__(
        self,
        access_token: str,
        refresh_token: str | None = None,
        oauth: "GoogleOAuth | None" = None,
        base_url: str = GMAIL_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        session: requests.Session | None = None,
    ):
        if not access_token:
            raise AuthenticationError(
                "No Gmail access token available. Connect the Gmail account first."
            )

        self.access_token = access_token
        self.refresh_token = refresh_token
        self.oauth = oauth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.token_refreshed = False

        self.session = session or requests.Session()
        self._rate_bucket = get_bucket(name="gmail", rate=GMAIL_RATE, capacity=GMAIL_CAPACITY)

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _make_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _try_refresh(self) -> bool:
        """Refresh the access token once. Returns True if a new token was obtained."""
        if self.token_refreshed or not self.refresh_token or self.oauth is None:
            return False

        tokens = self.oauth.refresh_access_token(self.refresh_token)
        self.access_token = tokens["access_token"]
        if tokens.get("refresh_token"):
            self.refresh_token = tokens["refresh_token"]
        self.token_refreshed = True
        return True

    def _handle_error_response(
        self, response: requests.Response, method: str, endpoint: str
    ) -> None:
        """Raise the error matching a failed Gmail response.

        Raises:
            GmailAPIError: With the status code and Google's error reason
            RateLimitExceeded: For a 429 that survived all retries
        """
        try:
            error_info = response.json().get("error", {})
            error_message = error_info.get("message", response.text)
            errors = error_info.get("errors") or [{}]
            error_reason = errors[0].get("reason") or error_info.get("status", "unknown")
        except (ValueError, AttributeError):
            error_reason = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "Gmail API error",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            error_reason=error_reason,
            error_message=error_message[:200],
        )

        if response.status_code == 401:
            raise GmailAPIError(
                f"Authentication failed (401): {error_message}. "
                "The Gmail token has expired or been revoked; reconnect the Gmail account.",
                status_code=401,
                error_reason=error_reason,
            )
        elif response.status_code == 403:
            raise GmailAPIError(
                f"Permission denied (403): {error_message}. "
                "Check that the Gmail scopes were granted at consent.",
                status_code=403,
                error_reason=error_reason,
            )
        elif response.status_code == 404:
            raise GmailAPIError(
                f"Resource not found (404): {error_message}. "
                f"The message or label behind '{endpoint}' may have been deleted.",
                status_code=404,
                error_reason=error_reason,
            )
        elif response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "unknown")
            raise RateLimitExceeded(
                f"Gmail rate limit exceeded (429). Retry after: {retry_after} seconds. "
                "Reduce gmail.max_results or sync less often."
            )
        else:
            raise GmailAPIError(
                f"Gmail API error ({response.status_code}): {error_message}",
                status_code=response.status_code,
                error_reason=error_reason,
            )

    def _should_retry(self, response: requests.Response, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return 500 <= response.status_code < 600 or response.status_code == 429

    def _get_retry_delay(self, response: requests.Response | None, attempt: int) -> float:
        """Backoff delay with ±20% jitter, honoring Retry-After on 429."""
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    base_delay = float(retry_after)
                    return base_delay + base_delay * 0.2 * (2 * random.random() - 1)
                except ValueError:
                    pass

        base_delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
        jitter = base_delay * 0.2 * (2 * random.random() - 1)
        return base_delay + jitter

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """Make an HTTP request to the Gmail API with retry logic.

        Returns:
            Parsed JSON response ({} for 204 No Content)

        Raises:
            GmailAPIError: For API errors (4xx, 5xx) and exhausted retries
            RateLimitExceeded: When rate limits cannot be recovered
            AuthenticationError: When a token refresh fails
        """
        url = self._make_url(endpoint)
        last_response = None

        for attempt in range(self.max_retries + 1):
            try:
                self._rate_bucket.consume_sync()

                logger.debug(
                    "Gmail API request",
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt + 1,
                )

                response = self.session.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    params=params,
                    json=json,
                    timeout=timeout,
                )
                last_response = response

                if response.status_code < 400:
                    if response.status_code == 204 or not response.content:
                        return {}
                    return response.json()

                if response.status_code == 401 and self._try_refresh():
                    logger.info("Gmail access token refreshed, retrying request", endpoint=endpoint)
                    continue

                if self._should_retry(response, attempt):
                    delay = self._get_retry_delay(response, attempt)
                    logger.warning(
                        "Retrying Gmail API request",
                        method=method,
                        endpoint=endpoint,
                        status_code=response.status_code,
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue

                self._handle_error_response(response, method, endpoint)

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "Gmail API connection problem, retrying",
                        method=method,
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        error=str(e),
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue
                raise GmailAPIError(
                    f"Request to {endpoint} failed after {self.max_retries} retries: {e}. "
                    "Check your internet connection and try again.",
                    status_code=None,
                ) from e

        if last_response is not None:
            self._handle_error_response(last_response, method, endpoint)

        raise GmailAPIError(
            f"Request to {endpoint} failed after {self.max_retries} retries",
            status_code=None,
        )

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params)

    def post(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self.request("POST", endpoint, params=params, json=json)

    def paginate(
        self,
        endpoint: str,
        items_key: str,
        params: dict[str, Any] | None = None,
        max_items: int | None = None,
    ) -> list[dict[str, Any]]:
        """Collect items across pages by following nextPageToken.

        Args:
            endpoint: API endpoint path (e.g. "/messages")
            items_key: Response key holding the page's items (e.g. "messages")
            params: Query parameters for every page
            max_items: Stop once this many items are collected (None for all)

        Returns:
            Items in the order Gmail returned them, truncated to max_items
        """
        all_items: list[dict[str, Any]] = []
        page_params = dict(params) if params else {}
        if max_items:
            page_params["maxResults"] = min(max_items, MAX_PAGE_SIZE)

        page_count = 0
        while True:
            response = self.get(endpoint, params=page_params)
            all_items.extend(response.get(items_key, []))
            page_count += 1

            next_token = response.get("nextPageToken")
            if not next_token or (max_items and len(all_items) >= max_items):
                break
            page_params["pageToken"] = next_token

        logger.debug(
            "Pagination complete",
            endpoint=endpoint,
            total_pages=page_count,
            total_items=len(all_items),
        )

        if max_items:
            return all_items[:max_items]
        return all_items
