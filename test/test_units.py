import asyncio
import os
import warnings
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from pydantic import ValidationError as PydanticValidationError
from firebase_admin import exceptions as firebase_exceptions, messaging
from pywebpush import WebPushException

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from app.config import Settings
from app.models.notification import (
    BatchNotificationRequest, ExplicitUsers, PushPayload, SingleUser, summarize_recipients,
)
from app.services.delivery import (
    DeliveryAdapter, DeliveryOutcome, classify_fcm_error, result_for_status,
    SENT, EXPIRED, PAYLOAD_TOO_LARGE, RATE_LIMITED, UNKNOWN_ERROR,
)
from app.services.dispatcher import BatchDispatcher, MAX_ERRORS_PER_BATCH, describe_failures, partition
from app.services.notification_service import compute_progress, status_of
from app.services.progress_poller import ProgressPoller, COMPLETED, TIMED_OUT, IDLE
from app.services.recipient_resolver import Recipient, CHANNEL_WEBPUSH, CHANNEL_FCM
from app.services.task_supervisor import TaskSupervisor


def make_recipients(count):
    return [
        Recipient(
            id=f"{i}:webpush:{i}",
            user_id=i,
            channel=CHANNEL_WEBPUSH,
            target={"endpoint": f"https://push.example.com/{i}", "keys": {"p256dh": "p", "auth": "a"}},
            subscription_id=i,
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def settings():
    return Settings(vapid_public_key="public", vapid_private_key="private", vapid_email="ops@school.test")


@pytest.fixture
def payload():
    return PushPayload(title="Term dates", body="School reopens Monday")


class RecordingStore:
    def __init__(self):
        self.increments = []
        self.failed_ids = []
        self.errors = []
        self.reasons = []

    async def increment_stats(self, notification_id, sent_delta, failed_delta, errors=()):
        self.increments.append((sent_delta, failed_delta))
        self.errors.extend(errors)

    async def mark_failed(self, notification_id, reason=None):
        self.failed_ids.append(notification_id)
        self.reasons.append(reason)


class ScriptedAdapter:
    """Returns queued results per recipient, then SENT."""

    def __init__(self, script=None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls = []

    async def send(self, recipient, payload):
        self.calls.append(recipient.id)
        await asyncio.sleep(0)
        queue = self.script.get(recipient.id)
        result = queue.pop(0) if queue else SENT
        return DeliveryOutcome(recipient.id, result)


###############################################################
# 1. Request models
###############################################################

def test_utc_001_payload_defaults(payload):
    rendered = payload.render(timestamp_ms=1234)
    assert rendered["icon"] == "/icons/icon-192x192.png"
    assert rendered["badge"] == "/icons/badge-72x72.png"
    assert rendered["url"] == "/notifications"
    assert rendered["tag"] == "default"
    assert rendered["requireInteraction"] is False
    assert rendered["actions"] == []
    assert rendered["timestamp"] == 1234


def test_utc_002_batch_request_drops_unknown_fields():
    request = BatchNotificationRequest.model_validate({
        "title": "T", "body": "B", "recipients": [{"kind": "all_parents"}],
        "requireInteraction": True, "tag": "fees", "sound": "loud",
    })
    push = request.to_payload()
    assert push.require_interaction is True
    assert push.tag == "fees"
    assert push.url == "/notifications"
    assert "sound" not in push.render()


def test_utc_003_explicit_ids_are_deduplicated():
    spec = ExplicitUsers(kind="explicit", ids=[3, "3", "7", 7, "9"])
    assert spec.ids == ["3", "7", "9"]


def test_utc_004_unknown_recipient_kind_rejected():
    from pydantic import ValidationError
    with pytest.raises(ValidationError):
        BatchNotificationRequest.model_validate({"title": "T", "recipients": [{"kind": "all_pets"}]})


def test_utc_005_summarize_recipients():
    specs = [SingleUser(kind="user", id="4"), ExplicitUsers(kind="explicit", ids=["1", "2"])]
    assert summarize_recipients(specs) == "user:4,explicit:2"
    assert summarize_recipients([]) == "none"


###############################################################
# 2. Delivery outcome mapping
###############################################################

@pytest.mark.parametrize("status_code, expected", [
    (201, SENT), (404, EXPIRED), (410, EXPIRED), (413, PAYLOAD_TOO_LARGE),
    (429, RATE_LIMITED), (500, UNKNOWN_ERROR), (None, UNKNOWN_ERROR),
])
def test_utc_006_result_for_status(status_code, expected):
    assert result_for_status(status_code) == expected


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, expected", [(410, EXPIRED), (413, PAYLOAD_TOO_LARGE), (429, RATE_LIMITED)])
async def test_utc_007_web_push_errors_are_mapped(mocker, settings, payload, status_code, expected):
    mock_webpush = mocker.patch(
        "app.services.delivery.webpush",
        side_effect=WebPushException("Push failed", response=MagicMock(status_code=status_code)),
    )
    recipient = make_recipients(1)[0]
    outcome = await DeliveryAdapter(settings).send(recipient, payload)

    assert outcome.result == expected
    assert outcome.status_code == status_code
    assert outcome.should_remove_subscription is (expected == EXPIRED)
    assert mock_webpush.call_args.kwargs["vapid_private_key"] == "private"
    assert mock_webpush.call_args.kwargs["ttl"] == 24 * 60 * 60


@pytest.mark.asyncio
async def test_utc_008_web_push_success(mocker, settings, payload):
    mocker.patch("app.services.delivery.webpush", return_value=MagicMock(status_code=201))
    outcome = await DeliveryAdapter(settings).send(make_recipients(1)[0], payload)
    assert outcome.ok
    assert outcome.status_code == 201


@pytest.mark.asyncio
async def test_utc_009_web_push_without_vapid_keys(mocker, payload):
    mock_webpush = mocker.patch("app.services.delivery.webpush")
    outcome = await DeliveryAdapter(Settings()).send(make_recipients(1)[0], payload)
    assert outcome.result == UNKNOWN_ERROR
    mock_webpush.assert_not_called()


@pytest.mark.parametrize("error, expected", [
    (messaging.UnregisteredError("Requested entity was not found."), EXPIRED),
    (firebase_exceptions.NotFoundError("not found"), EXPIRED),
    (messaging.QuotaExceededError("quota"), RATE_LIMITED),
    (firebase_exceptions.InvalidArgumentError("Message is too big"), PAYLOAD_TOO_LARGE),
    (firebase_exceptions.InvalidArgumentError("bad token format"), UNKNOWN_ERROR),
    (firebase_exceptions.UnavailableError("unavailable"), UNKNOWN_ERROR),
])
def test_utc_010_classify_fcm_error(error, expected):
    assert classify_fcm_error(error) == expected


def test_utc_011_fcm_http_status_takes_precedence():
    error = firebase_exceptions.UnknownError("gone", http_response=SimpleNamespace(status_code=410))
    assert classify_fcm_error(error) == EXPIRED


@pytest.mark.asyncio
async def test_utc_012_fcm_send(mocker, settings, payload):
    mock_send = mocker.patch("app.services.delivery.messaging.send", return_value="projects/x/messages/1")
    recipient = Recipient(id="5:fcm", user_id=5, channel=CHANNEL_FCM, target="device-token")

    outcome = await DeliveryAdapter(settings).send(recipient, payload)

    assert outcome.ok
    message = mock_send.call_args.args[0]
    assert message.fid == "device-token"
    assert message.notification.title == "Term dates"
    assert message.data["url"] == "/notifications"


@pytest.mark.asyncio
async def test_utc_013_fcm_unregistered_token(mocker, settings, payload):
    mocker.patch("app.services.delivery.messaging.send", side_effect=messaging.UnregisteredError("gone"))
    recipient = Recipient(id="5:fcm", user_id=5, channel=CHANNEL_FCM, target="device-token")
    outcome = await DeliveryAdapter(settings).send(recipient, payload)
    assert outcome.result == EXPIRED
    assert outcome.should_remove_subscription


###############################################################
# 3. Batching and dispatch
###############################################################

def test_utc_014_partition_sizes():
    batches = partition(make_recipients(10), 4)
    assert [len(b) for b in batches] == [4, 4, 2]
    assert partition([], 4) == []
    with pytest.raises(ValueError):
        partition(make_recipients(2), 0)


@pytest.mark.asyncio
async def test_utc_015_dispatch_produces_one_increment_per_batch(payload):
    store = RecordingStore()
    dispatcher = BatchDispatcher(ScriptedAdapter(), store, batch_size=4, max_concurrent_batches=2)

    summary = await dispatcher.dispatch(1, make_recipients(10), payload)

    assert summary.batches == 3
    assert sorted(s + f for s, f in store.increments) == [2, 4, 4]
    assert sum(s + f for s, f in store.increments) == 10
    assert (summary.sent, summary.failed) == (10, 0)


@pytest.mark.asyncio
async def test_utc_016_failures_are_counted_not_raised(payload):
    recipients = make_recipients(10)
    script = {r.id: [EXPIRED] for r in recipients[:3]}
    expired = []

    async def on_expired(recipient):
        expired.append(recipient.id)

    dispatcher = BatchDispatcher(ScriptedAdapter(script), RecordingStore(), batch_size=4, on_expired=on_expired)
    summary = await dispatcher.dispatch(1, recipients, payload)

    assert (summary.sent, summary.failed) == (7, 3)
    assert sorted(expired) == sorted(r.id for r in recipients[:3])


@pytest.mark.asyncio
async def test_utc_017_adapter_exception_costs_one_recipient(payload):
    class ExplodingAdapter(ScriptedAdapter):
        async def send(self, recipient, payload):
            if recipient.user_id == 2:
                raise RuntimeError("socket closed")
            return await super().send(recipient, payload)

    summary = await BatchDispatcher(ExplodingAdapter(), RecordingStore(), batch_size=2).dispatch(
        1, make_recipients(3), payload
    )
    assert (summary.sent, summary.failed) == (2, 1)


@pytest.mark.asyncio
async def test_utc_018_no_retry_by_default(payload):
    recipient = make_recipients(1)[0]
    adapter = ScriptedAdapter({recipient.id: [RATE_LIMITED]})
    summary = await BatchDispatcher(adapter, RecordingStore()).dispatch(1, [recipient], payload)
    assert summary.failed == 1
    assert adapter.calls == [recipient.id]


@pytest.mark.asyncio
async def test_utc_019_optional_retry_with_backoff(payload):
    recipient = make_recipients(1)[0]
    adapter = ScriptedAdapter({recipient.id: [RATE_LIMITED, UNKNOWN_ERROR]})
    dispatcher = BatchDispatcher(adapter, RecordingStore(), retry_attempts=3, retry_backoff_seconds=0)

    summary = await dispatcher.dispatch(1, [recipient], payload)

    assert summary.sent == 1
    assert len(adapter.calls) == 3


@pytest.mark.asyncio
async def test_utc_020_expired_is_never_retried(payload):
    recipient = make_recipients(1)[0]
    adapter = ScriptedAdapter({recipient.id: [EXPIRED]})
    await BatchDispatcher(adapter, RecordingStore(), retry_attempts=3, retry_backoff_seconds=0).dispatch(
        1, [recipient], payload
    )
    assert len(adapter.calls) == 1


@pytest.mark.asyncio
async def test_utc_021_store_failure_marks_record_failed(payload):
    from app.utils.errors import RecordStoreError

    class BrokenStore(RecordingStore):
        async def increment_stats(self, notification_id, sent_delta, failed_delta, errors=()):
            raise RecordStoreError("Failed to update notification stats", details="disk full")

    store = BrokenStore()
    with pytest.raises(RecordStoreError):
        await BatchDispatcher(ScriptedAdapter(), store, batch_size=5).dispatch(42, make_recipients(5), payload)
    assert store.failed_ids == [42]


###############################################################
# 4. Status reporting
###############################################################

@pytest.mark.parametrize("total, sent, failed, expected", [
    (0, 0, 0, 100), (10, 0, 0, 0), (3, 1, 0, 33), (3, 1, 1, 67), (10, 7, 3, 100), (4, 5, 0, 100),
])
def test_utc_022_compute_progress(total, sent, failed, expected):
    assert compute_progress(total, sent, failed) == expected


def test_utc_023_empty_record_reports_completed():
    record = SimpleNamespace(
        id=1, status="processing", total=0, sent=0, failed=0, remaining=0, type="alert", priority="high"
    )
    status = status_of(record)
    assert status.status == "completed"
    assert status.progress == 100


###############################################################
# 5. Task supervisor
###############################################################

@pytest.mark.asyncio
async def test_utc_024_supervisor_tracks_and_drains(caplog):
    supervisor = TaskSupervisor()
    done = []

    async def work():
        await asyncio.sleep(0)
        done.append(True)

    async def boom():
        raise RuntimeError("dispatch crashed")

    supervisor.spawn(work(), name="ok")
    supervisor.spawn(boom(), name="bad")
    assert supervisor.active == 2

    await supervisor.drain()

    assert done == [True]
    assert supervisor.active == 0
    assert "dispatch crashed" in caplog.text


@pytest.mark.asyncio
async def test_utc_025_supervisor_shutdown_cancels_stragglers():
    supervisor = TaskSupervisor()
    task = supervisor.spawn(asyncio.sleep(60), name="slow")
    await supervisor.shutdown(timeout=0.01)
    assert task.cancelled()
    assert supervisor.active == 0


###############################################################
# 6. Progress poller
###############################################################

def status_body(status, sent, total=4):
    return {
        "success": True,
        "status": {
            "id": 9, "status": status, "progress": compute_progress(total, sent, 0),
            "stats": {"total": total, "sent": sent, "failed": 0, "remaining": total - sent},
        },
    }


@pytest.mark.asyncio
async def test_utc_026_poller_stops_on_terminal_status():
    bodies = [status_body("processing", 0), status_body("processing", 2), status_body("completed", 4)]
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=bodies[min(len(requests) - 1, len(bodies) - 1)])

    seen = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        poller = ProgressPoller("http://test", 9, interval=0, grace_period=0, on_update=seen.append, client=client)
        assert poller.state == IDLE
        state = await poller.run()

    assert state == COMPLETED
    assert len(requests) == 3
    assert requests[0].url.params["id"] == "9"
    assert [s.progress for s in seen] == [0, 50, 100]
    assert poller.last_status.stats.sent == 4


@pytest.mark.asyncio
async def test_utc_027_poller_survives_errors_and_times_out():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(500, json={"error": "boom"})
        return httpx.Response(200, json=status_body("processing", 1))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        poller = ProgressPoller("http://test", 9, interval=0.01, max_duration=0.05, grace_period=0, client=client)
        state = await poller.run()

    assert state == TIMED_OUT
    assert len(calls) >= 2
    assert poller.last_status.status == "processing"


@pytest.mark.asyncio
async def test_utc_028_poller_skips_unreadable_responses():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(200, text="<html>proxy login</html>")
        if len(calls) == 2:
            return httpx.Response(200, json={"success": True, "status": {"id": "nine", "status": "???"}})
        return httpx.Response(200, json=status_body("completed", 4))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        poller = ProgressPoller("http://test", 9, interval=0, max_duration=5, grace_period=0, client=client)
        state = await poller.run()

    assert state == COMPLETED
    assert len(calls) == 3
    assert poller.last_status.status == "completed"


###############################################################
# 7. Configuration and failure detail
###############################################################

@pytest.mark.parametrize("field", ["batch_size", "max_concurrent_batches"])
def test_utc_029_settings_reject_zero_limits(field):
    with pytest.raises(PydanticValidationError):
        Settings(**{field: 0})
    with pytest.raises(PydanticValidationError):
        Settings(retry_attempts=-1)


@pytest.mark.parametrize("kwargs", [
    {"batch_size": 0}, {"max_concurrent_batches": 0}, {"retry_attempts": -1},
])
def test_utc_030_dispatcher_rejects_unusable_limits(kwargs):
    with pytest.raises(ValueError):
        BatchDispatcher(ScriptedAdapter(), RecordingStore(), **kwargs)


def test_utc_031_failure_lines_are_bounded():
    outcomes = [DeliveryOutcome(f"r{i}", EXPIRED, detail="gone") for i in range(MAX_ERRORS_PER_BATCH + 3)]
    outcomes.append(DeliveryOutcome("ok", SENT))

    lines = describe_failures(2, outcomes)

    assert len(lines) == MAX_ERRORS_PER_BATCH + 1
    assert lines[0] == "r0: expired (gone)"
    assert lines[-1] == "Batch 2: 3 more failures not listed"
    assert describe_failures(0, [DeliveryOutcome("ok", SENT)]) == []


@pytest.mark.asyncio
async def test_utc_032_batch_failures_reach_the_store(payload):
    recipients = make_recipients(3)
    store = RecordingStore()
    adapter = ScriptedAdapter({recipients[1].id: [PAYLOAD_TOO_LARGE]})

    await BatchDispatcher(adapter, store, batch_size=3).dispatch(1, recipients, payload)

    assert store.errors == [f"{recipients[1].id}: payload_too_large"]


@pytest.mark.asyncio
async def test_utc_033_aborted_dispatch_records_reason_and_traceback(payload, caplog):
    from app.utils.errors import RecordStoreError

    class BrokenStore(RecordingStore):
        async def increment_stats(self, notification_id, sent_delta, failed_delta, errors=()):
            raise RecordStoreError("Failed to update notification stats", details="disk full")

    store = BrokenStore()
    with pytest.raises(RecordStoreError):
        await BatchDispatcher(ScriptedAdapter(), store, batch_size=5).dispatch(7, make_recipients(2), payload)

    assert store.reasons[0].startswith("Dispatch aborted: RecordStoreError")
    aborted = [r for r in caplog.records if "aborted" in r.getMessage()]
    assert aborted and aborted[0].exc_info is not None


@pytest.mark.asyncio
async def test_utc_034_supervisor_logs_failure_traceback(caplog):
    supervisor = TaskSupervisor()

    async def boom():
        raise RuntimeError("dispatch crashed")

    supervisor.spawn(boom(), name="bad")
    await supervisor.drain()

    failures = [r for r in caplog.records if "bad failed" in r.getMessage()]
    assert failures and failures[0].exc_info[0] is RuntimeError


def test_utc_035_fcm_message_builds_without_deprecation_warnings(settings, payload):
    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        message = DeliveryAdapter(settings).build_fcm_message("device-token", payload)
    assert message.fid == "device-token"
    assert message.token is None
