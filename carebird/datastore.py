"""Schema-aware Airtable Record Store with an in-memory table for local runs and tests."""

from __future__ import annotations

import itertools
import json
import re
import threading
from typing import Any, Callable, Dict, List, Optional, TypeVar

from pyairtable import Api

from carebird.airtable_schema import (
    BROADCAST_STATUSES,
    CONTENT_TABLE,
    MESSAGES_SECTION,
    PAYMENT_UPDATE_KEYS,
    PAYMENTS_TABLE,
    PHONE_NUMBERS_TABLE,
    STOP_MARKER,
    content_field_map,
    payments_field_map,
    phone_field_map,
)
from carebird.config import Settings
from carebird.runtime import get_logger, iso_now

logger = get_logger(__name__)

T = TypeVar("T")

_PAIR_PATTERN = re.compile(r"\{([^}]+)\}\s*=\s*'((?:[^'\\]|\\.)*)'")


class DatastoreError(RuntimeError):
    """Raised when an Airtable call fails; carries the table and action."""

    def __init__(self, message: str, *, table: str, action: str) -> None:
        super().__init__(message)
        self.table = table
        self.action = action


def escape_formula_value(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


def eq_formula(field_name: str, value: str) -> str:
    return f"{{{field_name}}}='{escape_formula_value(value)}'"


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


def _formula_match(record: Dict[str, Any], formula: str) -> bool:
    """Evaluate the `{F}='v'` / `OR(...)` / `AND(...)` subset this module emits."""
    matches = _PAIR_PATTERN.findall(formula)
    if not matches:
        return False
    fields = record.get("fields", {})
    results = [str(fields.get(name, "")) == _unescape(expected) for name, expected in matches]
    if formula.strip().upper().startswith("OR("):
        return any(results)
    return all(results)


class InMemoryTable:
    """Minimal Airtable drop-in replacement used for local runs and tests."""

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, Dict[str, Any]] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def create(self, fields: Dict[str, Any]):
        with self._lock:
            record_id = f"rec_{self.name.replace(' ', '')}_{next(self._sequence)}"
            record = {"id": record_id, "fields": dict(fields)}
            self._records[record_id] = record
        return record

    def update(self, record_id: str, fields: Dict[str, Any]):
        with self._lock:
            if record_id not in self._records:
                raise KeyError(f"Unknown record id {record_id} in {self.name}")
            self._records[record_id]["fields"].update(fields)
            return self._records[record_id]

    def get(self, record_id: str):
        return self._records.get(record_id)

    def all(self, **kwargs):
        records = list(self._records.values())
        formula = kwargs.get("formula")
        max_records = kwargs.get("max_records")
        if formula:
            records = [rec for rec in records if _formula_match(rec, formula)]
        if max_records is not None:
            records = records[: int(max_records)]
        return records

    def first(self, **kwargs):
        found = self.all(max_records=1, **{k: v for k, v in kwargs.items() if k != "max_records"})
        return found[0] if found else None


class RecordStore:
    """
    Record Store over the Phone Numbers, Payments and Content tables.

    Every method raises DatastoreError on failure; callers decide whether the
    failure is fatal to their workflow.
    """

    def __init__(self, cfg: Settings, *, tables: Optional[Dict[str, Any]] = None) -> None:
        self.cfg = cfg
        self._tables: Dict[str, Any] = dict(tables or {})
        self._api: Optional[Api] = None
        self.in_memory = cfg.FORCE_IN_MEMORY or not (cfg.AIRTABLE_API_KEY and cfg.AIRTABLE_BASE_ID)
        if self.in_memory and not tables:
            logger.warning("⚠️ Airtable not configured (key=%s, base=%s) → in-memory tables",
                           bool(cfg.AIRTABLE_API_KEY), bool(cfg.AIRTABLE_BASE_ID))

    # ---------------- table access ----------------
    def table(self, name: str):
        if name in self._tables:
            return self._tables[name]
        if self.in_memory:
            tbl = InMemoryTable(name)
        else:
            if self._api is None:
                self._api = Api(self.cfg.AIRTABLE_API_KEY, timeout=(self.cfg.HTTP_TIMEOUT_SEC, self.cfg.HTTP_TIMEOUT_SEC))
            tbl = self._api.table(self.cfg.AIRTABLE_BASE_ID, name)
        self._tables[name] = tbl
        return tbl

    def phones(self):
        return self.table(PHONE_NUMBERS_TABLE.name())

    def payments(self):
        return self.table(PAYMENTS_TABLE.name())

    def content(self):
        return self.table(CONTENT_TABLE.name())

    def _call(self, tbl: Any, action: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except DatastoreError:
            raise
        except Exception as exc:
            name = getattr(tbl, "name", str(tbl))
            logger.error("Airtable %s failed [%s]: %s", action, name, exc)
            raise DatastoreError(f"Airtable {action} failed: {exc}", table=str(name), action=action) from exc

    # ---------------- Phone Numbers ----------------
    def find_by_phone(self, phone: str) -> Optional[Dict[str, Any]]:
        if not phone:
            return None
        tbl = self.phones()
        formula = eq_formula(phone_field_map()["PHONE"], phone)
        return self._call(tbl, "find_by_phone", lambda: tbl.first(formula=formula))

    def create_phone_record(self, phone: str, message: str) -> Dict[str, Any]:
        f = phone_field_map()
        tbl = self.phones()
        payload = {f["PHONE"]: phone, f["MESSAGE"]: message or "", f["LAST_UPDATED"]: iso_now()}
        record = self._call(tbl, "create_phone_record", lambda: tbl.create(payload))
        logger.info("🆕 Phone record created: %s", record.get("id"))
        return record

    def update_phone_record(self, record_id: str, phone: str, message: str) -> Dict[str, Any]:
        f = phone_field_map()
        tbl = self.phones()
        payload = {f["PHONE"]: phone, f["MESSAGE"]: message or "", f["LAST_UPDATED"]: iso_now()}
        record = self._call(tbl, "update_phone_record", lambda: tbl.update(record_id, payload))
        logger.info("🔄 Phone record updated: %s", record_id)
        return record

    def has_stop_message(self, phone: str) -> bool:
        record = self.find_by_phone(phone)
        if not record:
            return False
        message = (record.get("fields") or {}).get(phone_field_map()["MESSAGE"]) or ""
        return str(message).strip().upper() == STOP_MARKER

    # ---------------- Payments ----------------
    def find_payment_by_phone(self, phone: str) -> Optional[Dict[str, Any]]:
        if not phone:
            return None
        tbl = self.payments()
        formula = eq_formula(payments_field_map()["PHONE"], phone)
        return self._call(tbl, "find_payment_by_phone", lambda: tbl.first(formula=formula))

    def update_payment_record(self, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Update by logical key (tier, amount, status, stripe_*_id...); '' clears a field."""
        f = payments_field_map()
        payload: Dict[str, Any] = {}
        for key, value in fields.items():
            if key not in PAYMENT_UPDATE_KEYS:
                raise ValueError(f"Unknown payment field '{key}'")
            payload[f[PAYMENT_UPDATE_KEYS[key]]] = value
        tbl = self.payments()
        record = self._call(tbl, "update_payment_record", lambda: tbl.update(record_id, payload))
        logger.info("📝 Payment record %s updated: %s", record_id, sorted(fields))
        return record

    def get_active_payments(self) -> List[Dict[str, Any]]:
        status_field = payments_field_map()["STATUS"]
        formula = "OR(" + ",".join(eq_formula(status_field, s) for s in BROADCAST_STATUSES) + ")"
        tbl = self.payments()
        return self._call(tbl, "get_active_payments", lambda: tbl.all(formula=formula))

    # ---------------- Content ----------------
    def get_messages_section(self) -> Dict[str, Any]:
        """Return the parsed JSON of the Content row whose Section is 'messages'."""
        f = content_field_map()
        tbl = self.content()
        record = self._call(tbl, "get_messages_section",
                            lambda: tbl.first(formula=eq_formula(f["SECTION"], MESSAGES_SECTION)))
        if not record:
            return {}
        raw = (record.get("fields") or {}).get(f["JSON_DATA"]) or ""
        try:
            data = json.loads(raw) if raw else {}
        except ValueError:
            logger.warning("⚠️ Content 'messages' JSON is invalid; ignoring")
            return {}
        return data if isinstance(data, dict) else {}
