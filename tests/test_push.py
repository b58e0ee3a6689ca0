"""
Push tests.
Covers: best-effort dispatch, idempotency keys, token subscription, webhook sender.
"""
from __future__ import annotations

import httpx
import pytest

from herald.clients.content_api import ContentApiClient
from herald.clients.push_sender import LoggingPushSender, WebhookPushSender
from herald.core.exceptions import ApiError
from herald.schemas.push_token import PushToken
from herald.services.push_dispatcher import PushDispatcher
from herald.services.push_registry import PushTokenRegistry

from conftest import FakeContentApi, RecordingPushSender

pytestmark = pytest.mark.asyncio


class TestDispatch:
    async def test_empty_recipients_is_success_without_request(
        self, api: ContentApiClient, fake_api: FakeContentApi, push_sender: RecordingPushSender
    ) -> None:
        report = await PushDispatcher(api, push_sender).dispatch([], "Hi", "there")

        assert report.ok
        assert report.tokens == 0
        assert fake_api.requests == []

    async def test_sends_to_every_active_token(
        self, api: ContentApiClient, fake_api: FakeContentApi, push_sender: RecordingPushSender
    ) -> None:
        fake_api.add_push_token(1, "tok-a")
        fake_api.add_push_token(1, "tok-b", device_type="android")
        fake_api.add_push_token(2, "tok-c")
        fake_api.add_push_token(2, "tok-old", is_active=False)
        fake_api.add_push_token(9, "tok-other")

        report = await PushDispatcher(api, push_sender).dispatch(
            [1, 2], "Deploy", "Done", notification_id=40
        )

        assert sorted(report.sent) == ["tok-a", "tok-b", "tok-c"]
        assert report.tokens == 3
        assert sorted(report.reached_user_ids) == [1, 2]
        assert report.ok
        assert sorted(s["key"] for s in push_sender.sent) == [
            "push:40:tok-a",
            "push:40:tok-b",
            "push:40:tok-c",
        ]
        query = fake_api.requests_to("GET", "/push-tokens")[0]["query"]
        assert ("user", "1") in query and ("user", "2") in query
        assert ("isActive", "true") in query

    async def test_no_tokens_is_success(
        self, api: ContentApiClient, push_sender: RecordingPushSender
    ) -> None:
        report = await PushDispatcher(api, push_sender).dispatch([5], "Hi", "there")

        assert report.ok
        assert report.sent == []

    async def test_repeat_dispatch_is_skipped(
        self, api: ContentApiClient, fake_api: FakeContentApi, push_sender: RecordingPushSender
    ) -> None:
        fake_api.add_push_token(1, "tok-a")
        dispatcher = PushDispatcher(api, push_sender)

        await dispatcher.dispatch([1], "Deploy", "Done", notification_id=40)
        again = await dispatcher.dispatch([1], "Deploy", "Done", notification_id=40)

        assert len(push_sender.sent) == 1
        assert again.skipped == 1
        assert again.sent == []

    async def test_ad_hoc_pushes_are_not_deduplicated(
        self, api: ContentApiClient, fake_api: FakeContentApi, push_sender: RecordingPushSender
    ) -> None:
        fake_api.add_push_token(1, "tok-a")
        dispatcher = PushDispatcher(api, push_sender)

        await dispatcher.dispatch([1], "Ping", "one")
        await dispatcher.dispatch([1], "Ping", "two")

        assert len(push_sender.sent) == 2
        assert push_sender.sent[0]["key"] != push_sender.sent[1]["key"]

    async def test_tokens_beyond_first_page_are_reached(
        self, api: ContentApiClient, fake_api: FakeContentApi, push_sender: RecordingPushSender
    ) -> None:
        for user_id in range(1, 31):
            fake_api.add_push_token(user_id, f"tok-{user_id}")

        report = await PushDispatcher(api, push_sender).dispatch(
            range(1, 31), "Deploy", "Done", notification_id=8
        )

        assert report.tokens == 30
        assert sorted(s["user_id"] for s in push_sender.sent) == list(range(1, 31))
        assert len(fake_api.requests_to("GET", "/push-tokens")) == 2

    async def test_remembered_keys_are_bounded(
        self, api: ContentApiClient, fake_api: FakeContentApi, push_sender: RecordingPushSender
    ) -> None:
        fake_api.add_push_token(1, "tok-a")
        dispatcher = PushDispatcher(api, push_sender, remembered_keys=2)

        for notification_id in (1, 2, 3):
            await dispatcher.dispatch([1], "Deploy", "Done", notification_id=notification_id)
        newest = await dispatcher.dispatch([1], "Deploy", "Done", notification_id=3)
        evicted = await dispatcher.dispatch([1], "Deploy", "Done", notification_id=1)

        assert newest.skipped == 1
        assert evicted.sent == ["tok-a"]
        assert len(push_sender.sent) == 4

    async def test_send_failure_is_reported(
        self, api: ContentApiClient, fake_api: FakeContentApi, push_sender: RecordingPushSender
    ) -> None:
        fake_api.add_push_token(1, "tok-a")
        fake_api.add_push_token(2, "tok-bad")
        push_sender.failing_tokens = {"tok-bad"}

        report = await PushDispatcher(api, push_sender).dispatch(
            [1, 2], "Deploy", "Done", notification_id=3
        )

        assert report.sent == ["tok-a"]
        assert [f.token for f in report.failed] == ["tok-bad"]
        assert not report.ok

    async def test_failed_send_can_be_retried(
        self, api: ContentApiClient, fake_api: FakeContentApi, push_sender: RecordingPushSender
    ) -> None:
        fake_api.add_push_token(1, "tok-a")
        push_sender.failing_tokens = {"tok-a"}
        dispatcher = PushDispatcher(api, push_sender)
        await dispatcher.dispatch([1], "Deploy", "Done", notification_id=3)

        push_sender.failing_tokens = set()
        report = await dispatcher.dispatch([1], "Deploy", "Done", notification_id=3)

        assert report.sent == ["tok-a"]

    async def test_token_lookup_failure_never_raises(
        self, api: ContentApiClient, fake_api: FakeContentApi, push_sender: RecordingPushSender
    ) -> None:
        fake_api.broken.add("push-tokens")

        report = await PushDispatcher(api, push_sender).dispatch([1], "Deploy", "Done")

        assert report.error is not None
        assert not report.ok
        assert push_sender.sent == []


class TestRegistry:
    async def test_subscribe_creates_token(
        self, api: ContentApiClient, fake_api: FakeContentApi
    ) -> None:
        token = await PushTokenRegistry(api).subscribe(1, "tok-new", "ios")

        assert token.user_id == 1
        assert token.device_type == "ios"
        assert token.is_active
        assert len(fake_api.push_tokens) == 1

    async def test_resubscribe_updates_in_place(
        self, api: ContentApiClient, fake_api: FakeContentApi
    ) -> None:
        existing = fake_api.add_push_token(1, "tok-old", device_type="ios", is_active=False)

        token = await PushTokenRegistry(api).subscribe(1, "tok-new", "ios")

        assert token.id == existing["id"]
        assert token.token == "tok-new"
        assert token.is_active
        assert len(fake_api.push_tokens) == 1

    async def test_unsubscribe_deactivates_matching_tokens(
        self, api: ContentApiClient, fake_api: FakeContentApi
    ) -> None:
        fake_api.add_push_token(1, "tok-a", device_type="web")
        fake_api.add_push_token(1, "tok-b", device_type="web")
        fake_api.add_push_token(1, "tok-c", device_type="ios")

        count = await PushTokenRegistry(api).unsubscribe(1, "web")

        assert count == 2
        states = {t["token"]: t["isActive"] for t in fake_api.push_tokens}
        assert states == {"tok-a": False, "tok-b": False, "tok-c": True}


class TestSenders:
    async def test_webhook_sender_posts_with_key(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        sender = WebhookPushSender("http://push.test/send", transport=httpx.MockTransport(handler))
        token = PushToken(id=1, user_id=2, token="tok-a", device_type="web")
        await sender.send(token, "Hi", "there", idempotency_key="push:1:tok-a")
        await sender.aclose()

        assert seen[0].headers["Idempotency-Key"] == "push:1:tok-a"
        assert b'"token":"tok-a"' in seen[0].content.replace(b" ", b"")

    async def test_webhook_sender_raises_on_rejection(self) -> None:
        sender = WebhookPushSender(
            "http://push.test/send",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        token = PushToken(id=1, user_id=2, token="tok-a", device_type="web")

        with pytest.raises(ApiError) as exc_info:
            await sender.send(token, "Hi", "there", idempotency_key="k")
        await sender.aclose()

        assert exc_info.value.status_code == 500

    async def test_logging_sender_only_logs(self, caplog: pytest.LogCaptureFixture) -> None:
        token = PushToken(id=1, user_id=2, token="tok-a", device_type="web")
        with caplog.at_level("INFO", logger="herald.clients.push_sender"):
            await LoggingPushSender().send(token, "Hi", "there", idempotency_key="k")

        assert "not sent" in caplog.text
