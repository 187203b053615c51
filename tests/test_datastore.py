import pytest

from carebird.config import load_settings
from carebird.datastore import DatastoreError, InMemoryTable, RecordStore, eq_formula


def test_in_memory_when_airtable_not_configured(store):
    assert store.in_memory is True
    assert isinstance(store.phones(), InMemoryTable)


def test_live_tables_requested_when_configured(monkeypatch):
    monkeypatch.delenv("CAREBIRD_FORCE_IN_MEMORY")
    monkeypatch.setenv("AIRTABLE_API_KEY", "pat123")
    monkeypatch.setenv("AIRTABLE_BASE_ID", "app123")

    store = RecordStore(load_settings())

    assert store.in_memory is False
    assert store.phones().name == "Phone Numbers"


def test_phone_record_create_update_and_find(store):
    created = store.create_phone_record("+15551230000", "hi")
    store.update_phone_record(created["id"], "+15551230000", "STOP")

    found = store.find_by_phone("+15551230000")
    assert found["id"] == created["id"]
    assert found["fields"]["Message"] == "STOP"
    assert found["fields"]["Last Updated"].endswith("Z")
    assert store.has_stop_message("+15551230000") is True
    assert store.has_stop_message("+10000000000") is False


def test_formula_escapes_quotes(store):
    store.create_phone_record("o'brien", "x")

    assert eq_formula("Phone Number", "o'brien") == "{Phone Number}='o\\'brien'"
    assert store.find_by_phone("o'brien") is not None


def test_update_payment_record_maps_logical_keys(store):
    rec = store.payments().create({"Phone Number": "+1", "Tier": "10"})

    store.update_payment_record(rec["id"], {"tier": "free", "stripe_session_id": ""})

    fields = store.payments().get(rec["id"])["fields"]
    assert fields["Tier"] == "free"
    assert fields["Stripe Session ID"] == ""


def test_update_payment_record_rejects_unknown_key(store):
    rec = store.payments().create({"Phone Number": "+1"})

    with pytest.raises(ValueError):
        store.update_payment_record(rec["id"], {"nickname": "x"})


def test_unknown_record_update_wraps_error(store):
    with pytest.raises(DatastoreError) as exc:
        store.update_phone_record("rec_missing", "+1", "hi")

    assert exc.value.action == "update_phone_record"
    assert exc.value.table == "Phone Numbers"


def test_table_names_follow_env_overrides(monkeypatch, store):
    monkeypatch.setenv("PHONE_NUMBERS_TABLE", "Phones v2")

    assert store.phones().name == "Phones v2"
