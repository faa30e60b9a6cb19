"""Tests for event normalization, classification and payload helpers."""

import hashlib
import json
from datetime import UTC, datetime

import pytest

from app.core.exceptions import InvalidPayloadError
from app.domain.webhook_events import (
    EVENT_CATEGORIES,
    ID_SOURCE_CONTENT_HASH,
    ID_SOURCE_HEADER,
    ID_SOURCE_PAYLOAD,
    BillingInterval,
    EventCategory,
    alias_key_present,
    classify_event,
    first_present,
    merge_metadata,
    normalize_event,
    normalize_interval,
    parse_datetime,
)

pytestmark = pytest.mark.unit


class TestNormalizeEvent:
    def test_basic_event(self):
        body = b'{"id":"evt_1","type":"subscription.created","data":{"id":"sub_1"}}'
        envelope = normalize_event(body)
        assert envelope.event_id == "evt_1"
        assert envelope.event_type == "subscription.created"
        assert envelope.data == {"id": "sub_1"}
        assert envelope.id_source == ID_SOURCE_PAYLOAD
        assert envelope.raw["id"] == "evt_1"

    def test_event_alias_for_type(self):
        envelope = normalize_event(b'{"event":"customer.updated","event_id":"e2","data":{}}')
        assert envelope.event_type == "customer.updated"
        assert envelope.event_id == "e2"

    def test_webhook_id_alias(self):
        envelope = normalize_event(b'{"type":"order.paid","webhook_id":"wh_9"}')
        assert envelope.event_id == "wh_9"

    def test_numeric_id_becomes_string(self):
        envelope = normalize_event(b'{"type":"order.paid","id":42}')
        assert envelope.event_id == "42"

    def test_data_falls_back_to_whole_event(self):
        envelope = normalize_event(b'{"type":"customer.created","id":"cus_1","email":"a@b.com"}')
        assert envelope.data["email"] == "a@b.com"
        assert envelope.data is envelope.raw

    def test_non_object_data_falls_back_to_whole_event(self):
        envelope = normalize_event(b'{"type":"x.y","id":"e","data":"nope"}')
        assert envelope.data["data"] == "nope"

    def test_delivery_header_id_used_when_body_has_none(self):
        envelope = normalize_event(b'{"type":"subscription.updated","data":{}}', delivery_id="msg_7")
        assert envelope.event_id == "msg_7"
        assert envelope.id_source == ID_SOURCE_HEADER

    def test_content_hash_id_is_deterministic(self):
        body = b'{"type":"subscription.updated","data":{"id":"sub_1"}}'
        first = normalize_event(body)
        second = normalize_event(body)
        assert first.event_id == second.event_id
        assert first.event_id == f"subscription.updated:sha256:{hashlib.sha256(body).hexdigest()}"
        assert first.id_source == ID_SOURCE_CONTENT_HASH

    def test_accepts_str_body(self):
        assert normalize_event('{"type":"a.b","id":"1"}').event_id == "1"

    @pytest.mark.parametrize(
        "body",
        [b"not json", b"", b"[1,2]", b'"text"', b'{"id":"evt_1"}', b'{"type":""}', b'{"type":5}', b"\xff\xfe"],
    )
    def test_invalid_payloads(self, body):
        with pytest.raises(InvalidPayloadError):
            normalize_event(body)

    def test_category_and_cancellation(self):
        envelope = normalize_event(json.dumps({"type": "subscription.revoked", "id": "e"}))
        assert envelope.category == EventCategory.SUBSCRIPTION
        assert envelope.is_cancellation is True


class TestClassifyEvent:
    def test_every_known_event_maps_to_its_prefix(self):
        for event_type, category in EVENT_CATEGORIES.items():
            assert classify_event(event_type) == category, event_type

    @pytest.mark.parametrize(
        ("event_type", "expected"),
        [
            ("subscription.created", EventCategory.SUBSCRIPTION),
            ("subscription.revoked", EventCategory.SUBSCRIPTION),
            ("customer.updated", EventCategory.CUSTOMER),
            ("order.paid", EventCategory.ORDER),
            ("checkout.updated", EventCategory.CHECKOUT),
            ("benefit_grant.revoked", EventCategory.BENEFIT),
            ("refund.created", EventCategory.REFUND),
            ("product.updated", EventCategory.PRODUCT),
            ("subscription.paused", EventCategory.SUBSCRIPTION),
            ("customer.subscription.updated", EventCategory.SUBSCRIPTION),
            ("order.disputed", EventCategory.ORDER),
            ("organization.updated", EventCategory.OTHER),
            ("", EventCategory.OTHER),
            ("SUBSCRIPTION.CREATED", EventCategory.SUBSCRIPTION),
        ],
    )
    def test_classification(self, event_type, expected):
        assert classify_event(event_type) == expected


class TestNormalizeInterval:
    @pytest.mark.parametrize("value", ["year", "yearly", "annual", "ANNUAL", "Annually", "per_year"])
    def test_annual(self, value):
        assert normalize_interval(value) == BillingInterval.ANNUAL

    @pytest.mark.parametrize("value", ["month", "monthly", "", None, "week", "day"])
    def test_monthly(self, value):
        assert normalize_interval(value) == BillingInterval.MONTHLY


class TestMergeMetadata:
    def test_merge_not_replace(self):
        assert merge_metadata({"a": 1}, {"b": 2}) == {"a": 1, "b": 2}

    def test_precedence_stored_nested_top_level_tags(self):
        merged = merge_metadata(
            {"k": "stored", "s": 1},
            {"k": "nested", "n": 2},
            {"k": "top", "t": 3},
            tags={"k": "tag", "webhook_type": "subscription.updated"},
        )
        assert merged == {"k": "tag", "s": 1, "n": 2, "t": 3, "webhook_type": "subscription.updated"}

    def test_later_layer_beats_earlier(self):
        assert merge_metadata({"k": 1}, {"k": 2}, {"k": 3}) == {"k": 3}

    def test_non_dict_layers_ignored(self):
        assert merge_metadata(None, "junk", ["x"], {"a": 1}) == {"a": 1}

    def test_stored_not_mutated(self):
        stored = {"a": 1}
        merge_metadata(stored, {"b": 2})
        assert stored == {"a": 1}


class TestPayloadHelpers:
    def test_first_present_priority_and_blank_skipping(self):
        payload = {"customer_id": "  ", "customerId": "cus_2"}
        assert first_present(payload, "customer_id") == "cus_2"

    def test_first_present_strips_and_handles_non_dict(self):
        assert first_present({"status": " active "}, "status") == "active"
        assert first_present(None, "status") is None
        assert first_present("str", "status") is None

    def test_alias_key_present_with_null(self):
        assert alias_key_present({"canceledAt": None}, "canceled_at") is True
        assert alias_key_present({}, "canceled_at") is False

    def test_parse_datetime(self):
        parsed = parse_datetime("2026-01-01T00:00:00Z")
        assert parsed == datetime(2026, 1, 1, tzinfo=UTC)

    def test_parse_datetime_naive_assumed_utc(self):
        assert parse_datetime("2026-01-01T10:00:00").tzinfo is not None

    def test_parse_datetime_offset_converted_to_utc(self):
        parsed = parse_datetime("2026-01-01T02:00:00+02:00")
        assert parsed == datetime(2026, 1, 1, tzinfo=UTC)

    @pytest.mark.parametrize("value", [None, "", "not-a-date", True, {}])
    def test_parse_datetime_invalid(self, value):
        assert parse_datetime(value) is None
