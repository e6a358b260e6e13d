"""
Mail Provider API Client

Stateless wrapper around a mail.tm-style REST API. Translates HTTP status
codes into the relay's error taxonomy; retrying is left to the caller.
"""

import logging
from typing import Any, Dict, List, Optional
import requests

from .models import MessageDetail, MessageSummary
from ..core.config import ProviderConfig
from ..core.exceptions import (
    AuthExpiredError,
    InvalidCredentialsError,
    MailboxNotFoundError,
    MailProviderError,
    MessageNotFoundError,
    TransientError,
)


logger = logging.getLogger(__name__)


class MailProviderClient:
    """
    mail.tm-compatible API client.

    Supports:
    - Bearer-token authenticated inbox operations (list/fetch/delete)
    - Token issuance from address + password
    - Account creation and domain listing

    Every request carries a bounded timeout; a timeout, connection error,
    429 or 5xx surfaces as TransientError.

    Usage:
        client = MailProviderClient(ProviderConfig(base_url="https://api.mail.tm"))
        token = client.authenticate("user@example.test", "secret")
        messages = client.list_messages(token)
    """

    COLLECTION_KEY = "hydra:member"

    def __init__(self, config: ProviderConfig, http: Optional[requests.Session] = None):
        """
        Initialize provider client.

        Args:
            config: ProviderConfig with base URL and timeout
            http: Optional requests.Session (for connection reuse / testing)
        """
        self.base_url = config.base_url.rstrip("/")
        self.timeout = config.timeout_seconds
        self.http = http or requests.Session()

        logger.info(f"MailProviderClient initialized (base_url: {self.base_url}, timeout: {self.timeout}s)")

    def _request(
        self,
        method: str,
        endpoint: str,
        token: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        """
        Make a request and classify transport-level and server-side failures.

        Client errors (4xx other than 429) are returned to the caller, which
        knows what a 401 or 404 means for that endpoint.

        Raises:
            TransientError: On timeout, connection failure, 429 or 5xx
        """
        url = f"{self.base_url}{endpoint}"
        headers = {"Accept": "application/ld+json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            logger.debug(f"{method} {url}")
            response = self.http.request(
                method=method, url=url, headers=headers, json=json, params=params, timeout=self.timeout
            )
        except requests.Timeout as e:
            raise TransientError(f"{method} {endpoint} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise TransientError(f"{method} {endpoint} failed: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "?")
            raise TransientError(f"Rate limited on {method} {endpoint} (Retry-After: {retry_after})", 429)

        if response.status_code >= 500:
            raise TransientError(
                f"Provider error on {method} {endpoint}: {response.status_code}", response.status_code
            )

        return response

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            data = response.json()
            return data.get("hydra:description") or data.get("detail") or data.get("message") or response.text
        except ValueError:
            return response.text

    def _raise_for_inbox_status(self, response: requests.Response, endpoint: str, missing_error=MailboxNotFoundError):
        """Map 4xx on token-authenticated endpoints."""
        if response.status_code == 401:
            raise AuthExpiredError(f"Token rejected on {endpoint}", 401)
        if response.status_code == 404:
            raise missing_error(f"{endpoint} not found", 404)
        if response.status_code >= 400:
            detail = self._error_detail(response)
            logger.error(f"{endpoint} failed: {response.status_code} {detail}")
            raise MailProviderError(f"{endpoint} failed: {response.status_code} - {detail}", response.status_code)

    # ========================================================================
    # INBOX OPERATIONS
    # ========================================================================

    def list_messages(self, token: str, page: int = 1) -> List[MessageSummary]:
        """
        List inbox messages, newest first.

        Args:
            token: Bearer token for the mailbox
            page: Provider page number (30 messages per page on mail.tm)

        Returns:
            List of MessageSummary in provider order

        Raises:
            AuthExpiredError: Token rejected
            MailboxNotFoundError: Mailbox deleted on the provider side
            TransientError: Network/5xx/timeout
        """
        response = self._request("GET", "/messages", token=token, params={"page": page})
        self._raise_for_inbox_status(response, "/messages")

        members = response.json().get(self.COLLECTION_KEY, [])
        return [MessageSummary.from_api(item) for item in members]

    def fetch_message(self, token: str, message_id: str) -> MessageDetail:
        """Fetch a full message."""
        endpoint = f"/messages/{message_id}"
        response = self._request("GET", endpoint, token=token)
        self._raise_for_inbox_status(response, endpoint, missing_error=MessageNotFoundError)
        return MessageDetail.from_api(response.json())

    def delete_message(self, token: str, message_id: str) -> bool:
        """
        Delete a message.

        Deleting an id the provider no longer has is treated as success.

        Returns:
            True when the message is gone
        """
        endpoint = f"/messages/{message_id}"
        response = self._request("DELETE", endpoint, token=token)
        if response.status_code == 404:
            logger.debug(f"Message {message_id} already deleted")
            return True
        self._raise_for_inbox_status(response, endpoint)
        return True

    # ========================================================================
    # ACCOUNT OPERATIONS
    # ========================================================================

    def authenticate(self, address: str, secret: str) -> str:
        """
        Obtain a bearer token for a mailbox.

        Raises:
            InvalidCredentialsError: Address/secret rejected
            TransientError: Network/5xx/timeout
        """
        response = self._request("POST", "/token", json={"address": address, "password": secret})

        if response.status_code in (400, 401, 404, 422):
            raise InvalidCredentialsError(f"Credentials rejected for {address}", response.status_code)
        if response.status_code >= 400:
            raise MailProviderError(
                f"Token request failed: {response.status_code} - {self._error_detail(response)}",
                response.status_code,
            )

        token = response.json().get("token")
        if not token:
            raise InvalidCredentialsError(f"No token issued for {address}")

        logger.info(f"Token issued for {address}")
        return token

    def create_account(self, address: str, password: str) -> Dict[str, Any]:
        """
        Create a mailbox on the provider.

        Returns:
            Account resource (id, address, ...)
        """
        response = self._request("POST", "/accounts", json={"address": address, "password": password})
        if response.status_code != 201:
            raise MailProviderError(
                f"Account creation failed for {address}: {response.status_code} - {self._error_detail(response)}",
                response.status_code,
            )
        logger.info(f"Created provider account {address}")
        return response.json()

    def get_domains(self) -> List[str]:
        """Active domains accepted for new accounts."""
        response = self._request("GET", "/domains")
        if response.status_code >= 400:
            raise MailProviderError(f"Domain listing failed: {response.status_code}", response.status_code)
        return [
            d["domain"]
            for d in response.json().get(self.COLLECTION_KEY, [])
            if d.get("isActive", True)
        ]
