"""
Push notification dispatch through the FCM HTTP v1 API.

Credentials come from a service-account document: a signed JWT assertion is
exchanged at the document's ``token_uri`` for a short-lived bearer token.
Dispatch is advisory only and never raises to the caller.
"""
import json
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import jwt

from chatsync.core import metrics
from chatsync.core.config import Settings
from chatsync.core.errors import StoreUnavailableError
from chatsync.core.logging import get_logger
from chatsync.services.profiles import ProfileStore

logger = get_logger(__name__)

DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
TOKEN_LIFETIME = 3600
# Refresh this many seconds before the token expires
TOKEN_EXPIRY_MARGIN = 60

ANDROID_CHANNEL_ID = "chat_channel"


class NotificationOutcome(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class CredentialsError(Exception):
    """Bearer token could not be obtained."""


@dataclass
class ServiceAccount:
    project_id: str
    client_email: str
    private_key: str
    token_uri: str = DEFAULT_TOKEN_URI

    @classmethod
    def from_info(cls, info: Dict[str, Any]) -> "ServiceAccount":
        return cls(
            project_id=info["project_id"],
            client_email=info["client_email"],
            private_key=info["private_key"],
            token_uri=info.get("token_uri") or DEFAULT_TOKEN_URI,
        )

    @classmethod
    def load(cls, settings: Settings) -> Optional["ServiceAccount"]:
        """Read the document from inline JSON or a file; None if unavailable."""
        try:
            if settings.service_account_json:
                return cls.from_info(json.loads(settings.service_account_json))
            if settings.service_account_file:
                path = Path(settings.service_account_file)
                if not path.exists():
                    logger.warning(f"Service account file not found at {path}, push notifications disabled")
                    return None
                return cls.from_info(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Service account document unreadable, push notifications disabled: {e}")
            return None

        logger.info("No service account configured, push notifications disabled")
        return None


class AccessTokenProvider:
    """Mints and caches OAuth2 bearer tokens for a service account."""

    def __init__(self, account: ServiceAccount, http: httpx.AsyncClient, scope: str):
        self._account = account
        self._http = http
        self._scope = scope
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def get_token(self) -> str:
        if self._token and time.time() < self._expires_at - TOKEN_EXPIRY_MARGIN:
            return self._token

        now = int(time.time())
        claims = {
            "iss": self._account.client_email,
            "scope": self._scope,
            "aud": self._account.token_uri,
            "iat": now,
            "exp": now + TOKEN_LIFETIME,
        }
        try:
            assertion = jwt.encode(claims, self._account.private_key, algorithm="RS256")
            resp = await self._http.post(
                self._account.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            )
            resp.raise_for_status()
            data = resp.json()
            self._token = data["access_token"]
            self._expires_at = now + int(data.get("expires_in", TOKEN_LIFETIME))
        except (jwt.PyJWTError, httpx.HTTPError, KeyError, ValueError) as e:
            self.invalidate()
            raise CredentialsError(str(e)) from e

        logger.debug("Access token refreshed", extra={"extra_data": {"client_email": self._account.client_email}})
        return self._token


class PushNotifier:
    """Relays new-message alerts to a recipient's device."""

    def __init__(
        self,
        profiles: ProfileStore,
        http: httpx.AsyncClient,
        account: Optional[ServiceAccount],
        fcm_base_url: str = "https://fcm.googleapis.com",
        scope: str = "https://www.googleapis.com/auth/firebase.messaging",
        retries: int = 1,
    ):
        self._profiles = profiles
        self._http = http
        self._account = account
        self._fcm_base_url = fcm_base_url.rstrip("/")
        self._retries = retries
        self._tokens = AccessTokenProvider(account, http, scope) if account else None

    @property
    def send_url(self) -> Optional[str]:
        if not self._account:
            return None
        return f"{self._fcm_base_url}/v1/projects/{self._account.project_id}/messages:send"

    @staticmethod
    def build_payload(
        token: str,
        title: str,
        body: str,
        conversation_id: str,
        sender_id: str,
        receiver_id: str,
    ) -> Dict[str, Any]:
        return {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                "data": {
                    "chatId": conversation_id,
                    "senderId": sender_id,
                    "receiverId": receiver_id,
                    "title": title,
                },
                "android": {
                    "priority": "high",
                    "notification": {"channel_id": ANDROID_CHANNEL_ID, "visibility": "public"},
                },
                "apns": {"payload": {"aps": {"content-available": 1}}},
            }
        }

    async def notify(
        self,
        conversation_id: str,
        sender_id: str,
        receiver_id: str,
        title: str,
        body: str,
    ) -> NotificationOutcome:
        context = {"conversation_id": conversation_id, "sender_id": sender_id, "receiver_id": receiver_id}

        if sender_id == receiver_id:
            logger.debug("Skipping notification: sender and receiver are the same", extra={"extra_data": context})
            return self._done(NotificationOutcome.SKIPPED)

        try:
            device_token = await self._profiles.get_push_token(receiver_id)
        except StoreUnavailableError as e:
            logger.warning("Push token lookup failed", extra={"extra_data": {**context, "error": str(e)}})
            return self._done(NotificationOutcome.SKIPPED)

        if not device_token:
            logger.info("Skipping notification: receiver has no push token", extra={"extra_data": context})
            return self._done(NotificationOutcome.SKIPPED)

        if self._tokens is None:
            logger.info("Skipping notification: no delivery credentials", extra={"extra_data": context})
            return self._done(NotificationOutcome.SKIPPED)

        payload = self.build_payload(device_token, title, body, conversation_id, sender_id, receiver_id)

        for attempt in range(1, self._retries + 2):
            try:
                bearer = await self._tokens.get_token()
                resp = await self._http.post(
                    self.send_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {bearer}", "Content-Type": "application/json"},
                )
            except CredentialsError as e:
                logger.warning(
                    "Could not obtain push credentials",
                    extra={"extra_data": {**context, "attempt": attempt, "error": str(e)}},
                )
                continue
            except httpx.RequestError as e:
                logger.warning(
                    "Push transport error",
                    extra={"extra_data": {**context, "attempt": attempt, "error": str(e)}},
                )
                continue

            if resp.is_success:
                logger.info("Push notification sent", extra={"extra_data": context})
                return self._done(NotificationOutcome.SENT)

            logger.warning(
                "Push notification rejected",
                extra={"extra_data": {**context, "attempt": attempt, "status_code": resp.status_code, "body": resp.text[:512]}},
            )
            if resp.status_code == 401:
                self._tokens.invalidate()
            elif resp.status_code < 500:
                break

        return self._done(NotificationOutcome.FAILED)

    @staticmethod
    def _done(outcome: NotificationOutcome) -> NotificationOutcome:
        metrics.increment("chat_notifications_total", {"outcome": outcome.value})
        return outcome
