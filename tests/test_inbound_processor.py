import json
import threading
import time

import pytest
import redis

from carebird.inbound_processor import InboundProcessor, Keyword, classify_keyword
from carebird.idempotency import ProcessedEventCache, RedisEventCache
from carebird.templates import MessageTemplates

PHONE = "+15551230000"


def classic(text, event_id="evt-1", phone=PHONE, **extra):
    body = {"id": event_id, "from": phone, "to": "+18005550000", "message": text}
    body.update(extra)
    return json.dumps(body).encode()


def phone_message(store, phone=PHONE):
    record = store.find_by_phone(phone)
    return record["fields"]["Message"] if record else None


def test_malformed_json_is_client_error(processor, store, messenger):
    result = processor.handle_inbound(b"{not json")

    assert result.status_code == 400
    assert result.body == {"status": "error", "message": "Invalid JSON payload"}
    assert messenger.calls == []


def test_non_object_json_is_client_error(processor):
    assert processor.handle_inbound(b"[1, 2]").status_code == 400


def test_challenge_is_echoed_without_state_change(processor, store):
    result = processor.handle_inbound(json.dumps({"type": "webhook_verification", "challenge": "xyz"}))

    assert result.status_code == 200
    assert result.body == {"challenge": "xyz", "verified": True}
    assert store.phones().all() == []


def test_missing_sender_is_acknowledged_without_side_effects(processor, store, messenger):
    result = processor.handle_inbound(json.dumps({"id": "evt-x", "message": "LOVE"}))

    assert result.status_code == 200
    assert result.body["warning"] == "No valid phone number found"
    assert result.body["event_id"] == "evt-x"
    assert store.phones().all() == []
    assert messenger.calls == []


def test_empty_content_is_acknowledged(processor, store, messenger):
    result = processor.handle_inbound(classic("   "))

    assert result.status_code == 200
    assert result.body["warning"] == "Empty message text"
    assert store.phones().all() == []
    assert messenger.calls == []


def test_plain_message_creates_then_updates_phone_record(processor, store, messenger):
    first = processor.handle_inbound(classic("hello", event_id="e1"))
    second = processor.handle_inbound(classic("again", event_id="e2"))

    assert first.body["action"] == "created"
    assert second.body["action"] == "updated"
    assert second.body["keyword"] is None
    assert second.body["replySent"] is False
    assert phone_message(store) == "again"
    assert len(store.phones().all()) == 1
    assert messenger.calls == []


def test_phone_whitespace_is_stripped(processor, store):
    result = processor.handle_inbound(classic("hi", phone="+1 555 123 0000"))

    assert result.body["phone"] == PHONE
    assert store.find_by_phone(PHONE) is not None


def test_love_replies_with_link_in_conversation(processor, messenger):
    body = {
        "service": "channels",
        "payload": {
            "id": "evt-love",
            "conversationId": "conv-1",
            "sender": {"contact": {"identifierValue": PHONE}},
            "body": {"type": "text", "text": {"text": " love "}},
        },
    }

    result = processor.handle_inbound(json.dumps(body))

    assert result.body["keyword"] == "LOVE"
    assert result.body["replySent"] is True
    assert len(messenger.calls) == 1
    method, conversation_id, phone, text = messenger.calls[0]
    assert (method, conversation_id, phone) == ("send_in_conversation", "conv-1", PHONE)
    assert "http://localhost:3000/?phone=%2B15551230000" in text


def test_duplicate_love_sends_one_reply(processor, store, messenger, monkeypatch):
    first = processor.handle_inbound(classic("LOVE", event_id="dup-1"))
    stamp = store.find_by_phone(PHONE)["fields"]["Last Updated"]

    writes = []
    monkeypatch.setattr(store, "create_phone_record", lambda *a, **k: writes.append(("create", a)))
    monkeypatch.setattr(store, "update_phone_record", lambda *a, **k: writes.append(("update", a)))

    second = processor.handle_inbound(classic("LOVE", event_id="dup-1"))

    assert first.body["replySent"] is True
    assert writes == []
    assert store.find_by_phone(PHONE)["fields"]["Last Updated"] == stamp
    assert second.status_code == 200
    assert second.body == {
        "status": "received",
        "event_id": "dup-1",
        "action": "duplicate",
        "message": "Already processed",
    }
    assert len(messenger.calls) == 1


def test_events_without_id_are_not_deduplicated(processor, messenger):
    raw = json.dumps({"from": PHONE, "message": "LOVE"})
    processor.handle_inbound(raw)
    processor.handle_inbound(raw)

    assert len(messenger.calls) == 2


def test_concurrent_deliveries_of_one_event_run_workflow_once(processor, payments, messenger, monkeypatch, add_payment):
    add_payment(PHONE, **{"Stripe Subscription ID": "sub_1"})
    send = messenger.send_to_phone

    def slow_send(phone, text):
        time.sleep(0.2)
        return send(phone, text)

    monkeypatch.setattr(messenger, "send_to_phone", slow_send)

    barrier = threading.Barrier(2)
    results = []

    def deliver():
        barrier.wait()
        results.append(processor.handle_inbound(classic("UNSUB", event_id="evt-race")))

    threads = [threading.Thread(target=deliver) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert payments.cancelled == ["sub_1"]
    assert len(messenger.calls) == 1
    assert sorted(r.body.get("action") for r in results) == ["created", "duplicate"]


class DownRedis:
    def exists(self, key):
        raise redis.exceptions.ConnectionError("redis down")

    def set(self, key, value, nx=False, ex=None):
        raise redis.exceptions.ConnectionError("redis down")

    def delete(self, key):
        raise redis.exceptions.ConnectionError("redis down")


def test_stop_is_persisted_when_redis_is_down(cfg, store, payments, messenger):
    proc = InboundProcessor(
        cfg,
        store=store,
        payments=payments,
        messenger=messenger,
        cache=RedisEventCache(DownRedis()),
        templates=MessageTemplates(),
    )

    result = proc.handle_inbound(classic("STOP", event_id="e1"))
    again = proc.handle_inbound(classic("STOP", event_id="e1"))

    assert result.status_code == 200
    assert "error" not in result.body
    assert result.body["stopProcessed"] is True
    assert phone_message(store) == "STOP"
    assert again.body["action"] == "duplicate"
    assert len(messenger.calls) == 1


def test_lowercase_unsub_cancels_exactly_once(processor, store, payments, messenger, add_payment):
    rec = add_payment(PHONE, **{"Stripe Subscription ID": "sub_1"})

    result = processor.handle_inbound(classic("unsub"))

    assert result.body["keyword"] == "UNSUB"
    assert result.body["unsubProcessed"] is True
    assert payments.cancelled == ["sub_1"]
    fields = store.payments().get(rec["id"])["fields"]
    assert (fields["Tier"], fields["Status"]) == ("free", "completed")
    assert messenger.calls[0][0] == "send_to_phone"


def test_unsubscribe_without_payment_record_still_replies(processor, payments, messenger):
    result = processor.handle_inbound(classic("UNSUBSCRIBE"))

    assert result.body["unsubProcessed"] is False
    assert result.body["replySent"] is True
    assert payments.cancelled == []
    assert messenger.calls[0][2] == MessageTemplates().unsubReply


def test_stop_leaves_stop_marker_and_cancels(processor, store, payments, add_payment):
    rec = add_payment(PHONE, **{"Stripe Subscription ID": "sub_7"})

    result = processor.handle_inbound(classic("Stop"))

    assert result.body["stopProcessed"] is True
    assert phone_message(store) == "Stop"
    assert store.has_stop_message(PHONE) is True
    fields = store.payments().get(rec["id"])["fields"]
    assert (fields["Tier"], fields["Status"]) == ("free", "cancelled")
    assert payments.cancelled == ["sub_7"]


def test_stop_marker_persists_even_when_sends_fail(processor, store, messenger):
    messenger.fail = {"send_in_conversation", "send_to_phone", "send_direct"}

    result = processor.handle_inbound(classic("STOP", conversationId="conv-3"))

    assert result.status_code == 200
    assert result.body["stopProcessed"] is True
    assert result.body["replySent"] is False
    assert phone_message(store) == "STOP"
    assert [c[0] for c in messenger.calls] == ["send_in_conversation", "send_to_phone", "send_direct"]


def test_reply_falls_back_to_direct_send(processor, messenger):
    messenger.fail = {"send_in_conversation", "send_to_phone"}

    assert processor.reply_in_conversation(PHONE, "hi", "conv-1") is True
    assert [c[0] for c in messenger.calls] == ["send_in_conversation", "send_to_phone", "send_direct"]


def test_reply_without_conversation_starts_with_lookup(processor, messenger):
    assert processor.reply_in_conversation(PHONE, "hi", None) is True
    assert messenger.calls == [("send_to_phone", PHONE, "hi")]


def test_templates_loaded_from_store_when_not_injected(cfg, store, payments, messenger):
    store.content().create(
        {"Name": "Messages", "Section": "messages", "JSON Data": json.dumps({"loveReply": "Hi! {link}"})}
    )
    proc = InboundProcessor(cfg, store=store, payments=payments, messenger=messenger, cache=ProcessedEventCache(10))

    proc.handle_inbound(classic("LOVE"))

    assert messenger.calls[0][2] == "Hi! http://localhost:3000/?phone=%2B15551230000"


def test_stop_with_store_update_failure_is_acknowledged(processor, store, monkeypatch, add_payment):
    add_payment(PHONE, **{"Stripe Subscription ID": "sub_2"})

    def boom(*_a, **_k):
        raise RuntimeError("airtable down")

    monkeypatch.setattr(store, "update_payment_record", boom)

    result = processor.handle_inbound(classic("STOP"))

    assert result.status_code == 200
    assert result.body["stopProcessed"] is True
    assert phone_message(store) == "STOP"


def test_store_outage_is_acknowledged_with_error(processor, store, monkeypatch, messenger):
    def boom(*_a, **_k):
        raise RuntimeError("airtable unreachable")

    monkeypatch.setattr(store, "find_by_phone", boom)

    result = processor.handle_inbound(classic("LOVE", event_id="evt-err"))

    assert result.status_code == 200
    assert result.body["status"] == "received"
    assert result.body["event_id"] == "evt-err"
    assert "airtable unreachable" in result.body["error"]
    assert "processingTimeMs" in result.body
    assert messenger.calls == []


def test_failed_event_is_retried_on_redelivery(processor, store, monkeypatch, messenger):
    find = store.find_by_phone
    outages = [RuntimeError("airtable unreachable")]

    def flaky(phone):
        if outages:
            raise outages.pop()
        return find(phone)

    monkeypatch.setattr(store, "find_by_phone", flaky)
    failed = processor.handle_inbound(classic("LOVE", event_id="evt-retry"))
    retried = processor.handle_inbound(classic("LOVE", event_id="evt-retry"))

    assert "error" in failed.body
    assert retried.body["action"] == "created"
    assert retried.body["replySent"] is True
    assert len(messenger.calls) == 1


@pytest.mark.parametrize(
    "text, expected",
    [
        ("LOVE", Keyword.LOVE),
        ("  love\n", Keyword.LOVE),
        ("Unsubscribe", Keyword.UNSUB),
        ("stop", Keyword.STOP),
        ("stop please", None),
        ("I LOVE it", None),
        ("", None),
    ],
)
def test_classify_keyword(text, expected):
    assert classify_keyword(text) is expected
