"""Tests for the Redis, Prometheus, Kafka and face-service adapters.

External services are replaced by mocks: a MagicMock redis client, an
AsyncMock Kafka producer, and an httpx.MockTransport for the face service.
The sliding-window Lua script itself runs against fakeredis.
"""

import asyncio
import json
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis
import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from presence_admission.adapters.alerts import (
    EVENT_REJECTED,
    EVENT_REVIEW_REQUIRED,
    KafkaAlertDispatcher,
    LoggingAlertDispatcher,
)
from presence_admission.adapters.face_client import HttpFaceRecognitionEvaluator
from presence_admission.adapters.metrics import PrometheusMetricsRecorder
from presence_admission.adapters.redis_store import SLIDING_WINDOW_SCRIPT, RedisCacheStore, RedisCounterStore
from presence_admission.core.rate_limiter import RateLimiter
from presence_admission.core.schemas import FaceEvidence, LivenessConfig, PolicyDecision, PresenceMode
from presence_admission.errors import StoreUnavailableError, TransientStoreError
from tests.conftest import make_fake_context, make_fake_policy

# ---------------------------------------------------------------------------
# Redis stores
# ---------------------------------------------------------------------------


def _redis_client(script_result: Any = None) -> MagicMock:
    client = MagicMock()
    client.register_script.return_value = AsyncMock(return_value=script_result)
    return client


class TestRedisCounterStore:
    """Tests for RedisCounterStore."""

    def test_registers_sliding_window_script(self) -> None:
        """The Lua script is registered once at construction."""
        client = _redis_client()

        RedisCounterStore(client)

        client.register_script.assert_called_once_with(SLIDING_WINDOW_SCRIPT)

    @pytest.mark.asyncio()
    async def test_admitted(self) -> None:
        """An admitted attempt runs the script against the prefixed key."""
        client = _redis_client([1, 3, 1_000])
        store = RedisCounterStore(client, key_prefix="attendance:")

        result = await store.sliding_window_admit("rate_limit:user-1", 2_000, 60_000, 12)

        assert result == (True, 3, 1_000)
        script = client.register_script.return_value
        kwargs = script.await_args.kwargs
        assert kwargs["keys"] == ["attendance:rate_limit:user-1"]
        assert kwargs["args"][:3] == [2_000, 60_000, 12]

    @pytest.mark.asyncio()
    async def test_blocked_with_empty_window_reports_no_oldest(self) -> None:
        """A -1 oldest score from the script is reported as None."""
        store = RedisCounterStore(_redis_client([0, 0, -1]))

        assert await store.sliding_window_admit("k", 2_000, 60_000, 0) == (False, 0, None)

    @pytest.mark.asyncio()
    async def test_connection_error_is_transient(self) -> None:
        """Connection errors become TransientStoreError."""
        client = _redis_client()
        client.register_script.return_value.side_effect = RedisConnectionError("refused")
        store = RedisCounterStore(client)

        with pytest.raises(TransientStoreError):
            await store.sliding_window_admit("k", 2_000, 60_000, 12)

    @pytest.mark.asyncio()
    async def test_command_error_is_unavailable(self) -> None:
        """Other redis errors become StoreUnavailableError."""
        client = _redis_client()
        client.register_script.return_value.side_effect = ResponseError("NOSCRIPT")
        store = RedisCounterStore(client)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.sliding_window_admit("k", 2_000, 60_000, 12)

        assert not isinstance(exc_info.value, TransientStoreError)

    @pytest.mark.asyncio()
    async def test_count_window_uses_pipeline(self) -> None:
        """count_window() prunes and counts inside one transaction."""
        client = _redis_client()
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[2, 5])
        client.pipeline.return_value.__aenter__.return_value = pipe
        store = RedisCounterStore(client, key_prefix="p:")

        count = await store.count_window("k", 100_000, 60_000)

        assert count == 5
        pipe.zremrangebyscore.assert_called_once_with("p:k", "-inf", 40_000)
        pipe.zcard.assert_called_once_with("p:k")


_BASE_MS = 1_700_000_000_000


def _fake_redis() -> fakeredis.FakeAsyncRedis:
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())


class TestRedisCounterStoreScript:
    """Tests for the sliding-window script executed by a Lua-enabled fakeredis."""

    @pytest.mark.asyncio()
    async def test_thirteenth_attempt_is_blocked(self) -> None:
        """Twelve attempts inside one window are admitted and the thirteenth is not."""
        store = RedisCounterStore(_fake_redis())

        results = [await store.sliding_window_admit("k", _BASE_MS + i * 1_000, 60_000, 12) for i in range(13)]

        assert all(admitted for admitted, _, _ in results[:12])
        assert [count for _, count, _ in results[:12]] == list(range(12))
        assert results[12] == (False, 12, _BASE_MS)

    @pytest.mark.asyncio()
    async def test_reset_at_is_oldest_plus_window(self) -> None:
        """A blocked identity is told to retry one window after its oldest attempt."""
        now = [_BASE_MS]
        limiter = RateLimiter(
            RedisCounterStore(_fake_redis()),
            max_requests=12,
            window_seconds=60,
            clock=lambda: now[0],
        )
        for i in range(12):
            now[0] = _BASE_MS + i * 1_000
            assert (await limiter.check_and_consume("user-1")).passed is True

        now[0] = _BASE_MS + 30_000
        result = await limiter.check_and_consume("user-1")

        assert result.blocked is True
        assert result.remaining == 0
        assert result.reset_at == datetime.fromtimestamp((_BASE_MS + 60_000) / 1000, tz=UTC)

    @pytest.mark.asyncio()
    async def test_oldest_attempt_leaves_the_window(self) -> None:
        """An attempt exactly one window old is pruned and frees a slot."""
        store = RedisCounterStore(_fake_redis())
        await store.sliding_window_admit("k", _BASE_MS, 60_000, 1)
        assert (await store.sliding_window_admit("k", _BASE_MS + 59_999, 60_000, 1))[0] is False

        assert await store.sliding_window_admit("k", _BASE_MS + 60_000, 60_000, 1) == (True, 0, None)

    @pytest.mark.asyncio()
    async def test_admitted_attempt_sets_key_expiry(self) -> None:
        """The counter key expires two windows after an admitted attempt."""
        client = _fake_redis()
        store = RedisCounterStore(client, key_prefix="attendance:")

        await store.sliding_window_admit("rate_limit:user-1", _BASE_MS, 60_000, 12)

        ttl_ms = await client.pttl("attendance:rate_limit:user-1")
        assert 0 < ttl_ms <= 120_000

    @pytest.mark.asyncio()
    async def test_concurrent_attempts_never_exceed_limit(self) -> None:
        """Concurrent attempts at the same instant admit exactly the limit."""
        client = _fake_redis()
        store = RedisCounterStore(client, key_prefix="p:")

        results = await asyncio.gather(*(store.sliding_window_admit("k", _BASE_MS, 60_000, 12) for _ in range(30)))

        assert sum(1 for admitted, _, _ in results if admitted) == 12
        assert await client.zcard("p:k") == 12

    @pytest.mark.asyncio()
    async def test_count_window_prunes_expired_attempts(self) -> None:
        """count_window() only counts attempts still inside the window."""
        store = RedisCounterStore(_fake_redis())
        for offset in (0, 10_000, 20_000):
            await store.sliding_window_admit("k", _BASE_MS + offset, 60_000, 12)

        assert await store.count_window("k", _BASE_MS + 65_000, 60_000) == 2
        await store.delete("k")
        assert await store.count_window("k", _BASE_MS + 65_000, 60_000) == 0


class TestRedisCacheStore:
    """Tests for RedisCacheStore."""

    @pytest.mark.asyncio()
    async def test_get_decodes_bytes(self) -> None:
        """Byte values are decoded to str and misses return None."""
        client = AsyncMock()
        client.get.side_effect = [b"value", None]
        store = RedisCacheStore(client, key_prefix="p:")

        assert await store.get("k") == "value"
        assert await store.get("missing") is None
        client.get.assert_any_await("p:k")

    @pytest.mark.asyncio()
    async def test_set_with_and_without_ttl(self) -> None:
        """A TTL uses SETEX, no TTL uses SET."""
        client = AsyncMock()
        store = RedisCacheStore(client, key_prefix="p:")

        await store.set("a", "1", ttl_seconds=300)
        await store.set("b", "2")

        client.setex.assert_awaited_once_with("p:a", 300, "1")
        client.set.assert_awaited_once_with("p:b", "2")

    @pytest.mark.asyncio()
    async def test_delete_error_translated(self) -> None:
        """Connection errors on delete become TransientStoreError."""
        client = AsyncMock()
        client.delete.side_effect = RedisConnectionError("refused")

        with pytest.raises(TransientStoreError):
            await RedisCacheStore(client).delete("k")


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestPrometheusMetricsRecorder:
    """Tests for PrometheusMetricsRecorder."""

    def test_counters_increment(self, metrics: PrometheusMetricsRecorder) -> None:
        """Each record_* call increments its counter."""
        metrics.record_submission(PolicyDecision.ACCEPTED)
        metrics.record_submission(PolicyDecision.ACCEPTED)
        metrics.record_submission(PolicyDecision.REVIEW)
        metrics.record_rate_limit_block("user-1")
        metrics.record_motion_violation("user-1", "speed")
        metrics.record_device_trust_failure("user-1", "device-1")

        sample = metrics.registry.get_sample_value
        assert sample("attendance_submissions_total", {"decision": "accepted"}) == 2.0
        assert sample("attendance_submissions_total", {"decision": "review"}) == 1.0
        assert sample("rate_limit_blocks_total") == 1.0
        assert sample("motion_guard_violations_total", {"violation_type": "speed"}) == 1.0
        assert sample("device_trust_failures_total") == 1.0

    def test_export_text(self, metrics: PrometheusMetricsRecorder) -> None:
        """export_text() renders the Prometheus exposition format."""
        metrics.record_submission(PolicyDecision.REJECTED)

        text = metrics.export_text()

        assert "# TYPE attendance_submissions_total counter" in text
        assert 'attendance_submissions_total{decision="rejected"} 1.0' in text

    def test_disabled_recorder_is_noop(self) -> None:
        """A disabled recorder never increments."""
        metrics = PrometheusMetricsRecorder(enabled=False)

        metrics.record_rate_limit_block("user-1")
        metrics.record_submission(PolicyDecision.ACCEPTED)

        assert metrics.registry.get_sample_value("rate_limit_blocks_total") == 0.0
        assert metrics.registry.get_sample_value("attendance_submissions_total", {"decision": "accepted"}) is None

    def test_recorders_do_not_share_registries(self) -> None:
        """Two recorders can coexist in one process."""
        first = PrometheusMetricsRecorder()
        second = PrometheusMetricsRecorder()

        first.record_rate_limit_block("user-1")

        assert second.registry.get_sample_value("rate_limit_blocks_total") == 0.0


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class TestKafkaAlertDispatcher:
    """Tests for KafkaAlertDispatcher."""

    @pytest.mark.asyncio()
    async def test_review_alert_published_keyed_by_user(self) -> None:
        """on_review() publishes a review_required envelope keyed by user id."""
        producer = AsyncMock()
        dispatcher = KafkaAlertDispatcher(topic="alerts", producer=producer)

        await dispatcher.on_review({"user_id": "user-1", "attendance_id": "att-1"})

        producer.send_and_wait.assert_awaited_once()
        call = producer.send_and_wait.await_args
        assert call.args == ("alerts",)
        assert call.kwargs["key"] == "user-1"
        event = call.kwargs["value"]
        assert event["event_type"] == EVENT_REVIEW_REQUIRED
        assert event["source_service"] == "presence-admission"
        assert event["payload"]["attendance_id"] == "att-1"
        json.dumps(event)

    @pytest.mark.asyncio()
    async def test_rejection_alert(self) -> None:
        """on_rejection() publishes a rejected envelope."""
        producer = AsyncMock()
        dispatcher = KafkaAlertDispatcher(producer=producer)

        await dispatcher.on_rejection({"user_id": "user-1", "rationale": "no"})

        assert producer.send_and_wait.await_args.kwargs["value"]["event_type"] == EVENT_REJECTED

    @pytest.mark.asyncio()
    async def test_send_failure_swallowed(self) -> None:
        """A failed send is logged and never raised."""
        producer = AsyncMock()
        producer.send_and_wait.side_effect = RuntimeError("broker unavailable")

        await KafkaAlertDispatcher(producer=producer).on_review({"user_id": "user-1"})

    @pytest.mark.asyncio()
    async def test_not_started_skips_publish(self) -> None:
        """A dispatcher that was never started publishes nothing."""
        await KafkaAlertDispatcher().on_review({"user_id": "user-1"})

    @pytest.mark.asyncio()
    async def test_start_and_stop_injected_producer(self) -> None:
        """start()/stop() drive the producer lifecycle."""
        producer = AsyncMock()
        dispatcher = KafkaAlertDispatcher(producer=producer)

        await dispatcher.start()
        await dispatcher.stop()
        await dispatcher.stop()

        producer.start.assert_awaited_once()
        producer.stop.assert_awaited_once()


class TestLoggingAlertDispatcher:
    """Tests for LoggingAlertDispatcher."""

    @pytest.mark.asyncio()
    async def test_logs_without_raising(self) -> None:
        """Both hooks only log."""
        dispatcher = LoggingAlertDispatcher()

        await dispatcher.on_review({"user_id": "user-1", "attendance_id": "att-1"})
        await dispatcher.on_rejection({"user_id": "user-1", "rationale": "no"})

    @pytest.mark.asyncio()
    async def test_alert_payload_is_logged_as_one_field(self) -> None:
        """Payload keys that collide with log fields, such as timestamp, are kept intact."""
        dispatcher = LoggingAlertDispatcher()
        data = {"user_id": "user-1", "timestamp": "2024-03-04T09:05:00+00:00", "event": "attendance"}

        with patch("presence_admission.adapters.alerts.logger") as logger:
            await dispatcher.on_review(data)
            await dispatcher.on_rejection(data)

        logger.warning.assert_any_call("Attendance requires review", alert=data)
        logger.warning.assert_any_call("Attendance rejected", alert=data)


# ---------------------------------------------------------------------------
# Face recognition
# ---------------------------------------------------------------------------


def _face_client(routes: dict[str, Any]) -> httpx.AsyncClient:
    """AsyncClient whose transport answers per path.

    A route value is either a JSON body (200), an (status, body) tuple, or an
    exception instance to raise.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        answer = routes[request.url.path]
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, tuple):
            return httpx.Response(answer[0], json=answer[1])
        return httpx.Response(200, json=answer)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _face_context() -> Any:
    return make_fake_context().model_copy(update={"face": FaceEvidence(image_data=b"\x89PNG")})


def _liveness_policy(enabled: bool = True) -> Any:
    return make_fake_policy().model_copy(
        update={"liveness_config": LivenessConfig(enabled=enabled, min_confidence=0.8, require_blink=True)}
    )


class TestHttpFaceRecognitionEvaluator:
    """Tests for HttpFaceRecognitionEvaluator."""

    @pytest.mark.asyncio()
    async def test_recognized_and_live(self) -> None:
        """A confident match that passes liveness passes the factor."""
        seen: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            seen.append(body)
            if request.url.path == "/v1/recognize":
                return httpx.Response(200, json={"recognized": True, "user_id": "user-1", "confidence": 0.93})
            return httpx.Response(200, json={"is_live": True, "confidence": 0.9})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        evaluator = HttpFaceRecognitionEvaluator("http://face/", client=client)

        result = await evaluator.evaluate(_face_context(), _liveness_policy())

        assert evaluator.mode == PresenceMode.FACE
        assert result.passed is True
        assert result.confidence == pytest.approx(0.93)
        assert result.details["liveness_confidence"] == pytest.approx(0.9)
        assert seen[0]["image"] == "iVBORw=="
        assert seen[1]["require_blink"] is True

    @pytest.mark.asyncio()
    async def test_no_face_image(self) -> None:
        """A submission without a face image fails without calling the service."""
        evaluator = HttpFaceRecognitionEvaluator("http://face", client=_face_client({}))

        result = await evaluator.evaluate(make_fake_context(), make_fake_policy())

        assert result.passed is False
        assert result.error == "No face image provided"

    @pytest.mark.asyncio()
    async def test_different_user_fails(self) -> None:
        """A face recognized as someone else fails."""
        client = _face_client({"/v1/recognize": {"recognized": True, "user_id": "user-2", "confidence": 0.99}})

        result = await HttpFaceRecognitionEvaluator("http://face", client=client).evaluate(
            _face_context(), make_fake_policy()
        )

        assert result.passed is False
        assert result.error == "Face does not match the submitting user"

    @pytest.mark.asyncio()
    async def test_low_confidence_fails(self) -> None:
        """A match below the policy's minimum confidence fails."""
        client = _face_client({"/v1/recognize": {"recognized": True, "user_id": "user-1", "confidence": 0.5}})

        result = await HttpFaceRecognitionEvaluator("http://face", client=client).evaluate(
            _face_context(), _liveness_policy()
        )

        assert result.passed is False
        assert result.error == "Confidence below threshold"
        assert result.confidence == pytest.approx(0.5)

    @pytest.mark.asyncio()
    async def test_liveness_failure(self) -> None:
        """A recognized face that fails liveness fails the factor."""
        client = _face_client(
            {
                "/v1/recognize": {"recognized": True, "user_id": "user-1", "confidence": 0.95},
                "/v1/liveness": {"is_live": False, "confidence": 0.2},
            }
        )

        result = await HttpFaceRecognitionEvaluator("http://face", client=client).evaluate(
            _face_context(), _liveness_policy()
        )

        assert result.passed is False
        assert result.error == "Liveness check failed"

    @pytest.mark.asyncio()
    async def test_liveness_disabled_skips_call(self) -> None:
        """With liveness disabled only recognition is called."""
        client = _face_client({"/v1/recognize": {"recognized": True, "user_id": "user-1", "confidence": 0.95}})

        result = await HttpFaceRecognitionEvaluator("http://face", client=client).evaluate(
            _face_context(), _liveness_policy(enabled=False)
        )

        assert result.passed is True

    @pytest.mark.asyncio()
    async def test_timeout_fails_closed(self) -> None:
        """A timed-out call fails the factor instead of raising."""
        client = _face_client({"/v1/recognize": httpx.ReadTimeout("too slow")})

        result = await HttpFaceRecognitionEvaluator("http://face", timeout_ms=250, client=client).evaluate(
            _face_context(), make_fake_policy()
        )

        assert result.passed is False
        assert result.error == "Face service timed out after 250ms"

    @pytest.mark.asyncio()
    async def test_connection_error_fails_closed(self) -> None:
        """An unreachable service fails the factor."""
        client = _face_client({"/v1/recognize": httpx.ConnectError("refused")})

        result = await HttpFaceRecognitionEvaluator("http://face", client=client).evaluate(
            _face_context(), make_fake_policy()
        )

        assert result.error == "Face service unavailable"

    @pytest.mark.asyncio()
    async def test_server_error_fails_closed(self) -> None:
        """A non-200 answer fails the factor."""
        client = _face_client({"/v1/recognize": (503, {"detail": "overloaded"})})

        result = await HttpFaceRecognitionEvaluator("http://face", client=client).evaluate(
            _face_context(), make_fake_policy()
        )

        assert result.passed is False
        assert result.error == "Face service returned status 503"
