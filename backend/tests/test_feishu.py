"""Tests for the Feishu transport and webhook helpers."""

import hashlib
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from bizmate.services.feishu import (
    CONTINUATION_PREFIX,
    CONTINUATION_SUFFIX,
    FeishuClient,
    FeishuError,
    FeishuMessageEvent,
    decrypt_payload,
    parse_message_event,
    split_message,
    verify_signature,
)
from bizmate.services.retry import RetryPolicy

from conftest import MutableClock, encrypt, message_payload

BASE_URL = "https://open.feishu.test/open-apis"


class FeishuAPI:
    """MockTransport handler for the Feishu Open API."""

    def __init__(self, send_failures: int = 0):
        self.send_failures = send_failures
        self.token_requests = 0
        self.sent = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/auth/v3/tenant_access_token/internal"):
            self.token_requests += 1
            return httpx.Response(200, json={"code": 0, "tenant_access_token": f"t-{self.token_requests}", "expire": 7200})
        if path.endswith("/im/v1/messages"):
            if self.send_failures:
                self.send_failures -= 1
                return httpx.Response(200, json={"code": 99991400, "msg": "request trigger frequency limit"})
            self.sent.append(json.loads(request.content))
            return httpx.Response(200, json={"code": 0, "data": {}})
        if "/resources/" in path:
            if path.endswith("/missing"):
                return httpx.Response(404, json={"code": 234003, "msg": "file not found"})
            return httpx.Response(200, content=b"\x89PNG")
        return httpx.Response(404)


def client_for(api: FeishuAPI, clock=None, max_length=4000) -> FeishuClient:
    return FeishuClient(
        app_id="cli_app",
        app_secret="secret",
        base_url=BASE_URL,
        max_length=max_length,
        retry_policy=RetryPolicy(max_attempts=3, backoff=0.0, retry_on=(FeishuError,), sleep=AsyncMock()),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(api)),
        clock=clock or MutableClock(),
    )


class TestSplitMessage:
    def test_short_message_unchanged(self):
        assert split_message("hello", 10) == ["hello"]

    def test_long_message_is_chunked_with_markers(self):
        text = "a" * 10 + "b" * 10 + "c" * 5
        chunks = split_message(text, 10)

        assert len(chunks) == 3
        assert chunks[0] == "a" * 10 + CONTINUATION_SUFFIX
        assert chunks[1] == CONTINUATION_PREFIX + "b" * 10 + CONTINUATION_SUFFIX
        assert chunks[2] == CONTINUATION_PREFIX + "c" * 5


class TestWebhookHelpers:
    def test_signature(self):
        body = b'{"event":{}}'
        digest = hashlib.sha256(b"1700000000" + b"nonce" + b"key" + body).hexdigest()

        assert verify_signature(body, "1700000000", "nonce", digest, encrypt_key="key")
        assert not verify_signature(body, "1700000000", "nonce", "0" * 64, encrypt_key="key")
        assert not verify_signature(body, None, None, None, encrypt_key="key")
        assert verify_signature(body, None, None, None, encrypt_key="")

    def test_decrypt_round_trip(self):
        payload = {"type": "url_verification", "challenge": "abc"}
        assert decrypt_payload(encrypt(payload, "key"), encrypt_key="key") == payload

    def test_decrypt_with_wrong_key_fails(self):
        with pytest.raises(FeishuError):
            decrypt_payload(encrypt({"a": 1}, "key"), encrypt_key="other")

    def test_decrypt_without_key_fails(self):
        with pytest.raises(FeishuError):
            decrypt_payload("abc", encrypt_key="")

    def test_parse_text_event(self):
        event = parse_message_event(message_payload())

        assert event.event_id == "ev_1"
        assert event.message_id == "om_1"
        assert event.chat_id == "oc_1"
        assert event.user_id == "feishu:ou_1"
        assert event.dedupe_key == "om_1"
        assert event.text == "你好"

    def test_parse_image_event(self):
        event = parse_message_event(message_payload("image", '{"image_key":"img_v2_1"}'))
        assert event.message_type == "image"
        assert event.image_key == "img_v2_1"

    def test_user_id_falls_back_to_chat(self):
        event = parse_message_event(message_payload(open_id=None))
        assert event.user_id == "feishu:oc_1"

    def test_non_message_events_are_ignored(self):
        payload = message_payload()
        payload["header"]["event_type"] = "contact.user.created_v3"
        assert parse_message_event(payload) is None
        assert parse_message_event({"header": {"event_type": "im.message.receive_v1"}, "event": {}}) is None

    @pytest.mark.parametrize(
        "content,expected",
        [
            ('{"text":" 确认 "}', "确认"),
            ('{"text":"\\"ok\\""}', "ok"),
            ("plain", "plain"),
        ],
    )
    def test_text_is_cleaned(self, content, expected):
        event = FeishuMessageEvent(message_id="om", chat_id="oc", message_type="text", content=content)
        assert event.text == expected


class TestFeishuClient:
    async def test_token_is_cached(self):
        api = FeishuAPI()
        clock = MutableClock()
        client = client_for(api, clock)

        assert await client.get_tenant_access_token() == "t-1"
        assert await client.get_tenant_access_token() == "t-1"
        clock.advance(minutes=91)
        assert await client.get_tenant_access_token() == "t-2"

    async def test_send_text(self):
        api = FeishuAPI()
        await client_for(api).send_text("oc_1", "你好")

        assert api.sent == [{
            "receive_id": "oc_1",
            "msg_type": "text",
            "content": json.dumps({"text": "你好"}, ensure_ascii=False),
        }]

    async def test_send_retries_on_api_error(self):
        api = FeishuAPI(send_failures=2)
        await client_for(api).send_text("oc_1", "hi")
        assert len(api.sent) == 1

    async def test_send_gives_up_after_policy(self):
        api = FeishuAPI(send_failures=5)
        with pytest.raises(FeishuError) as exc_info:
            await client_for(api).send_text("oc_1", "hi")
        assert exc_info.value.code == 99991400
        assert api.sent == []

    async def test_long_reply_sent_in_chunks(self):
        api = FeishuAPI()
        await client_for(api, max_length=10).send_text("oc_1", "x" * 25)

        texts = [json.loads(message["content"])["text"] for message in api.sent]
        assert len(texts) == 3
        assert texts[0].endswith(CONTINUATION_SUFFIX)

    async def test_download_image(self):
        assert await client_for(FeishuAPI()).download_image("om_1", "img_1") == b"\x89PNG"

    async def test_download_failure_raises(self):
        with pytest.raises(FeishuError):
            await client_for(FeishuAPI()).download_image("om_1", "missing")
