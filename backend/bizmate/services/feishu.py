"""Feishu (Lark) chat transport.

This module provides:
- FeishuClient: tenant token caching, text delivery with retry and
  splitting of long replies, and image download
- Webhook helpers: signature verification, payload decryption and
  parsing of message events into FeishuMessageEvent records
"""

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from pydantic import BaseModel

from bizmate.core.config import settings
from bizmate.core.errors import ErrorCode, ServiceError
from bizmate.models.base import utc_now
from bizmate.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

USER_ID_PREFIX = "feishu:"

CONTINUATION_SUFFIX = "\n\n...(内容太长，继续发送剩余部分)"
CONTINUATION_PREFIX = "(接上条)\n\n"


# =============================================================================
# Exceptions
# =============================================================================


class FeishuError(ServiceError):
    """Raised when a Feishu API call fails."""
    error_code = ErrorCode.TRANSPORT_ERROR

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


# =============================================================================
# Webhook Payloads
# =============================================================================


class FeishuMessageEvent(BaseModel):
    """An inbound ``im.message.receive_v1`` event."""
    event_id: Optional[str] = None
    message_id: str
    chat_id: str
    open_id: Optional[str] = None
    message_type: str
    content: str = ""

    @property
    def user_id(self) -> str:
        """Stable user id: platform prefix plus the sender's open_id."""
        return f"{USER_ID_PREFIX}{self.open_id or self.chat_id}"

    @property
    def dedupe_key(self) -> str:
        return self.message_id

    def _content_json(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.content)
        except (TypeError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    @property
    def text(self) -> str:
        """Message text with surrounding quotes and whitespace removed."""
        data = self._content_json()
        text = data.get("text", "") if data else self.content
        text = str(text or "").strip()
        if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
            text = text[1:-1]
        return text.strip()

    @property
    def image_key(self) -> Optional[str]:
        return self._content_json().get("image_key")


def verify_signature(
    body: bytes,
    timestamp: Optional[str],
    nonce: Optional[str],
    signature: Optional[str],
    encrypt_key: Optional[str] = None,
) -> bool:
    """Check ``X-Lark-Signature`` against sha256(timestamp + nonce + key + body).

    Always true when no encrypt key is configured.
    """
    key = encrypt_key if encrypt_key is not None else settings.feishu_encrypt_key
    if not key:
        return True
    if not (timestamp and nonce and signature):
        return False
    digest = hashlib.sha256(
        timestamp.encode("utf-8") + nonce.encode("utf-8") + key.encode("utf-8") + body
    ).hexdigest()
    return hmac.compare_digest(digest, signature)


def decrypt_payload(encrypted: str, encrypt_key: Optional[str] = None) -> Dict[str, Any]:
    """Decrypt an ``{"encrypt": ...}`` webhook body (AES-256-CBC, IV prefix).

    Raises:
        FeishuError: If the payload cannot be decrypted or parsed
    """
    key = encrypt_key if encrypt_key is not None else settings.feishu_encrypt_key
    if not key:
        raise FeishuError("Received encrypted event but FEISHU_ENCRYPT_KEY is not set")

    try:
        raw = base64.b64decode(encrypted)
        aes_key = hashlib.sha256(key.encode("utf-8")).digest()
        decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(raw[:16])).decryptor()
        padded = decryptor.update(raw[16:]) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return json.loads(plain.decode("utf-8"))
    except ValueError as e:
        raise FeishuError(f"Cannot decrypt event payload: {e}") from e


def parse_message_event(payload: Dict[str, Any]) -> Optional[FeishuMessageEvent]:
    """Extract a message event from a v2 webhook payload; None for other events."""
    header = payload.get("header") or {}
    event = payload.get("event") or {}
    event_type = header.get("event_type") or ""
    if "message" not in event_type:
        return None

    message = event.get("message") or {}
    sender_id = (event.get("sender") or {}).get("sender_id") or {}
    if not message.get("message_id") or not message.get("chat_id"):
        return None

    return FeishuMessageEvent(
        event_id=header.get("event_id"),
        message_id=message["message_id"],
        chat_id=message["chat_id"],
        open_id=sender_id.get("open_id"),
        message_type=message.get("message_type") or "unknown",
        content=message.get("content") or "",
    )


def split_message(text: str, max_length: int) -> List[str]:
    """Split a reply into chunks of at most ``max_length`` characters of body.

    Every chunk but the last ends with a "continued" marker and every chunk
    but the first starts with one.
    """
    if len(text) <= max_length:
        return [text]

    pieces = [text[i:i + max_length] for i in range(0, len(text), max_length)]
    chunks = []
    for index, piece in enumerate(pieces):
        if index > 0:
            piece = CONTINUATION_PREFIX + piece
        if index < len(pieces) - 1:
            piece = piece + CONTINUATION_SUFFIX
        chunks.append(piece)
    return chunks


# =============================================================================
# Client
# =============================================================================


class FeishuClient:
    """Async client for the Feishu Open API.

    Example:
        ```python
        async with FeishuClient() as feishu:
            await feishu.send_text(chat_id, "⏳ 正在思考...")
        ```
    """

    TOKEN_LIFETIME = timedelta(minutes=90)

    def __init__(
        self,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        max_length: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the Feishu client.

        Args:
            app_id: Feishu app id
            app_secret: Feishu app secret
            base_url: Open API base URL
            max_length: Longest text body sent in one message
            retry_policy: Retry applied to each outgoing message
            timeout: Request timeout in seconds
            http_client: Pre-built HTTP client (tests)
            clock: Source of the current time
        """
        self.app_id = app_id if app_id is not None else settings.feishu_app_id
        self.app_secret = app_secret if app_secret is not None else settings.feishu_app_secret
        self.base_url = (base_url or settings.feishu_base_url).rstrip("/")
        self.max_length = max_length or settings.feishu_message_max_length
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.feishu_send_max_attempts,
            backoff=settings.feishu_send_backoff_seconds,
            multiplier=1.0,
            retry_on=(FeishuError,),
        )
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = http_client
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FeishuClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.app_secret)

    @staticmethod
    def _check_body(response: httpx.Response, action: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400 or data.get("code", 0) != 0:
            raise FeishuError(
                f"{action} failed ({response.status_code}): {data.get('msg') or response.text[:200]}",
                code=data.get("code"),
            )
        return data

    async def get_tenant_access_token(self) -> str:
        """Cached tenant access token, refetched 90 minutes after issue."""
        if self._token and self._token_expiry and self._clock() < self._token_expiry:
            return self._token

        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/auth/v3/tenant_access_token/internal",
                json={"app_id": self.app_id, "app_secret": self.app_secret},
            )
        except httpx.HTTPError as e:
            raise FeishuError(f"Cannot reach Feishu: {e}") from e

        data = self._check_body(response, "Fetching tenant access token")
        token = data.get("tenant_access_token")
        if not token:
            raise FeishuError("Feishu returned no tenant_access_token")

        self._token = token
        self._token_expiry = self._clock() + self.TOKEN_LIFETIME
        logger.info("Fetched Feishu tenant access token")
        return token

    async def _send_chunk(self, chat_id: str, text: str) -> None:
        token = await self.get_tenant_access_token()
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/im/v1/messages",
                params={"receive_id_type": "chat_id"},
                headers={"Authorization": f"Bearer {token}"},
                json={
                    "receive_id": chat_id,
                    "msg_type": "text",
                    "content": json.dumps({"text": text}, ensure_ascii=False),
                },
            )
        except httpx.HTTPError as e:
            raise FeishuError(f"Sending message failed: {e}") from e
        self._check_body(response, "Sending message")

    async def send_text(self, chat_id: str, text: str) -> None:
        """Deliver ``text`` to a chat, split into several messages if too long.

        Raises:
            FeishuError: A chunk could not be delivered within the retry policy
        """
        chunks = split_message(text, self.max_length)
        logger.info(f"Sending {len(text)} chars to {chat_id} in {len(chunks)} message(s)")
        for chunk in chunks:
            await self.retry_policy.run(lambda chunk=chunk: self._send_chunk(chat_id, chunk))

    async def download_image(self, message_id: str, image_key: str) -> bytes:
        """Download an image attached to a received message.

        Raises:
            FeishuError: If the download fails
        """
        token = await self.get_tenant_access_token()
        client = await self._get_client()
        try:
            response = await client.get(
                f"{self.base_url}/im/v1/messages/{message_id}/resources/{image_key}",
                params={"type": "image"},
                headers={"Authorization": f"Bearer {token}"},
                timeout=30.0,
            )
        except httpx.HTTPError as e:
            raise FeishuError(f"Downloading image failed: {e}") from e

        if response.status_code >= 400:
            raise FeishuError(f"Downloading image failed ({response.status_code})")
        logger.info(f"Downloaded image {image_key} ({len(response.content)} bytes)")
        return response.content
