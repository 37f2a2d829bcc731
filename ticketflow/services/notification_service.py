"""Notification Channels - Email (Graph), Telegram, webhook and in-app delivery"""
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx

from ..config.settings import settings
from ..domain.enums import NotificationCategory
from ..domain.errors import ChannelError, WebhookError, ActionTimeoutError
from ..domain.models import InAppNotification
from ..repositories.inapp_notification_repo import InAppNotificationRepository
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


def _client(transport: Optional[httpx.BaseTransport], timeout_s: float) -> httpx.Client:
    return httpx.Client(transport=transport, timeout=httpx.Timeout(timeout_s))


class EmailChannel:
    """
    Email through Microsoft Graph sendMail with a service mailbox

    The token comes from the OAuth2 password grant (service mailbox credentials)
    and is cached until shortly before expiry.
    """

    GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        self._transport = transport
        self._access_token: Optional[str] = None
        self._token_expiry = None
        self._token_lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return settings.email_configured

    def send(self, recipients: List[str], subject: str, body: str, timeout_s: float, is_html: bool = True) -> Dict[str, Any]:
        """Send one message to all recipients"""
        if not self.configured:
            raise ChannelError("Email channel is not configured")
        if not recipients:
            raise ChannelError("No email recipients")

        access_token = self._get_access_token(timeout_s)
        message = {
            "message": {
                "subject": subject,
                "body": {
                    "contentType": "HTML" if is_html else "Text",
                    "content": body
                },
                "toRecipients": [
                    {"emailAddress": {"address": email}}
                    for email in recipients
                ]
            },
            "saveToSentItems": False
        }
        try:
            with _client(self._transport, timeout_s) as client:
                response = client.post(
                    f"{self.GRAPH_BASE_URL}/me/sendMail",
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json"
                    },
                    json=message
                )
        except httpx.TimeoutException:
            raise ActionTimeoutError("Graph sendMail timed out", details={"timeout_s": timeout_s})
        except httpx.HTTPError as e:
            raise ChannelError(f"Graph sendMail failed: {e}")

        if response.status_code not in (200, 202):
            raise ChannelError(
                f"Graph API error: {response.status_code}",
                details={"response": response.text[:500]}
            )
        logger.info(f"Sent email to {len(recipients)} recipient(s)")
        return {"recipients": recipients, "status_code": response.status_code}

    def _get_access_token(self, timeout_s: float) -> str:
        with self._token_lock:
            if self._access_token and self._token_expiry and utc_now() < self._token_expiry:
                return self._access_token

            token_url = f"https://login.microsoftonline.com/{settings.aad_tenant_id}/oauth2/v2.0/token"
            try:
                with _client(self._transport, timeout_s) as client:
                    response = client.post(
                        token_url,
                        data={
                            "client_id": settings.aad_client_id,
                            "client_secret": settings.aad_client_secret,
                            "scope": "https://graph.microsoft.com/.default",
                            "username": settings.service_mailbox_email,
                            "password": settings.service_mailbox_password,
                            "grant_type": "password"
                        }
                    )
            except httpx.TimeoutException:
                raise ActionTimeoutError("Token request timed out", details={"timeout_s": timeout_s})
            except httpx.HTTPError as e:
                raise ChannelError(f"Token request failed: {e}")

            if response.status_code != 200:
                raise ChannelError(
                    f"Failed to get access token: {response.status_code}",
                    details={"response": response.text[:500]}
                )

            token_data = response.json()
            self._access_token = token_data["access_token"]
            expires_in = token_data.get("expires_in", 3600)
            self._token_expiry = utc_now() + timedelta(seconds=expires_in - 300)
            return self._access_token


class TelegramChannel:
    """Telegram Bot API sendMessage"""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        api_base: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._bot_token = bot_token if bot_token is not None else settings.telegram_bot_token
        self._api_base = (api_base or settings.telegram_api_base).rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._bot_token)

    def send_message(self, chat_id: str, text: str, timeout_s: float, parse_mode: Optional[str] = "HTML") -> Dict[str, Any]:
        if not self.configured:
            raise ChannelError("Telegram channel is not configured")

        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        try:
            with _client(self._transport, timeout_s) as client:
                response = client.post(f"{self._api_base}/bot{self._bot_token}/sendMessage", json=payload)
        except httpx.TimeoutException:
            raise ActionTimeoutError("Telegram sendMessage timed out", details={"timeout_s": timeout_s})
        except httpx.HTTPError as e:
            raise ChannelError(f"Telegram sendMessage failed: {e}")

        body = response.json() if response.headers.get("content-type", "").startswith("application/json") else {}
        if response.status_code != 200 or not body.get("ok", False):
            raise ChannelError(
                f"Telegram API error: {response.status_code}",
                details={"chat_id": chat_id, "description": body.get("description")}
            )
        return {"chat_id": chat_id, "message_id": (body.get("result") or {}).get("message_id")}


class WebhookChannel:
    """Outbound HTTP calls for webhook actions"""

    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        self._transport = transport

    def invoke(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[Any],
        timeout_s: float,
    ) -> Dict[str, Any]:
        """
        Call the endpoint; non-2xx responses raise WebhookError

        Raises:
            ActionTimeoutError: no response within timeout_s
            WebhookError: non-2xx response
            ChannelError: connection-level failure
        """
        request_kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None and method != "GET":
            request_kwargs["json"] = body
        try:
            with _client(self._transport, timeout_s) as client:
                response = client.request(method, url, **request_kwargs)
        except httpx.TimeoutException:
            raise ActionTimeoutError(
                f"Webhook {method} {url} timed out after {int(timeout_s * 1000)} ms",
                details={"url": url, "timeout_ms": int(timeout_s * 1000)}
            )
        except httpx.HTTPError as e:
            raise ChannelError(f"Webhook {method} {url} failed: {e}", details={"url": url})

        if not response.is_success:
            raise WebhookError(
                f"Webhook returned HTTP {response.status_code}",
                details={"url": url, "status_code": response.status_code, "response": response.text[:500]}
            )
        return {"status_code": response.status_code, "response": response.text[:1000]}


class InAppChannel:
    """Notification bell entries"""

    def __init__(self, repo: Optional[InAppNotificationRepository] = None):
        self.repo = repo or InAppNotificationRepository()

    def send(
        self,
        recipient_id: str,
        title: str,
        message: str,
        ticket_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        category: NotificationCategory = NotificationCategory.WORKFLOW_ACTION,
    ) -> InAppNotification:
        return self.repo.create_notification(
            recipient_id=recipient_id,
            title=title,
            message=message,
            category=category,
            ticket_id=ticket_id,
            actor_id=actor_id,
        )


class NotificationChannels:
    """Bundle of delivery channels handed to the action pipeline"""

    def __init__(
        self,
        email: Optional[EmailChannel] = None,
        telegram: Optional[TelegramChannel] = None,
        webhook: Optional[WebhookChannel] = None,
        in_app: Optional[InAppChannel] = None,
    ):
        self.email = email or EmailChannel()
        self.telegram = telegram or TelegramChannel()
        self.webhook = webhook or WebhookChannel()
        self.in_app = in_app or InAppChannel()
