from __future__ import annotations

"""
Central Airtable schema definitions and helpers.

Canonical table and field names for the Phone Numbers, Payments and Content
tables live here so the datastore and the workflows import logical keys
instead of hard-coding column strings. Environment variables can override
individual names (to align with copied bases), but the defaults always
reflect the live schema.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple


# ---------------------------------------------------------------------------
# Core data containers
# ---------------------------------------------------------------------------


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    v = value.strip()
    return v if v else None


@dataclass(frozen=True)
class FieldDefinition:
    """
    Represents an Airtable column.

    Args:
        default: Canonical field name in Airtable.
        env_vars: Ordered list of env vars that can override the field name
                  (first non-empty wins).
        options: Allowed values for single-select fields (if applicable).
    """

    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)
    options: Tuple[str, ...] = field(default_factory=tuple)

    def resolve(self) -> str:
        """Return the active field name (env override or default)."""
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default


@dataclass(frozen=True)
class TableDefinition:
    """
    Airtable table metadata with helpers to resolve field names.

    Args:
        default: Human-readable table name in Airtable.
        env_vars: Env vars that can rename the table.
        fields: Mapping of logical keys → FieldDefinition.
    """

    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)
    fields: Dict[str, FieldDefinition] = field(default_factory=dict)

    def name(self) -> str:
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default

    def field_names(self) -> Dict[str, str]:
        return {key: f.resolve() for key, f in self.fields.items()}


# ---------------------------------------------------------------------------
# Payments table enumerations
# ---------------------------------------------------------------------------


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ACTIVE = "active"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentType(str, Enum):
    ONE_TIME = "one-time"
    MONTHLY = "monthly"


# Tier is free-form: "free", a numeric amount, or "custom".
FREE_TIER = "free"

# Statuses that receive the monthly broadcast.
BROADCAST_STATUSES = (PaymentStatus.ACTIVE.value, PaymentStatus.COMPLETED.value)

# Last message that suppresses all future outbound messaging.
STOP_MARKER = "STOP"


# ---------------------------------------------------------------------------
# Table schemas
# ---------------------------------------------------------------------------


PHONE_NUMBERS_TABLE = TableDefinition(
    default="Phone Numbers",
    env_vars=("PHONE_NUMBERS_TABLE",),
    fields={
        "PHONE": FieldDefinition(default="Phone Number", env_vars=("PHONE_NUMBER_FIELD",)),
        "MESSAGE": FieldDefinition(default="Message", env_vars=("PHONE_MESSAGE_FIELD",)),
        "LAST_UPDATED": FieldDefinition(default="Last Updated", env_vars=("PHONE_LAST_UPDATED_FIELD",)),
    },
)


PAYMENTS_TABLE = TableDefinition(
    default="Payments",
    env_vars=("PAYMENTS_TABLE",),
    fields={
        "PHONE": FieldDefinition(default="Phone Number", env_vars=("PAYMENT_PHONE_FIELD",)),
        "EMAIL": FieldDefinition(default="Email", env_vars=("PAYMENT_EMAIL_FIELD",)),
        "TIER": FieldDefinition(default="Tier", env_vars=("PAYMENT_TIER_FIELD",)),
        "AMOUNT": FieldDefinition(default="Amount", env_vars=("PAYMENT_AMOUNT_FIELD",)),
        "PAYMENT_TYPE": FieldDefinition(
            default="Payment Type",
            env_vars=("PAYMENT_TYPE_FIELD",),
            options=tuple(t.value for t in PaymentType),
        ),
        "STATUS": FieldDefinition(
            default="Status",
            env_vars=("PAYMENT_STATUS_FIELD",),
            options=tuple(s.value for s in PaymentStatus),
        ),
        "STRIPE_CUSTOMER_ID": FieldDefinition(default="Stripe Customer ID"),
        "STRIPE_SUBSCRIPTION_ID": FieldDefinition(default="Stripe Subscription ID"),
        "STRIPE_PAYMENT_INTENT_ID": FieldDefinition(default="Stripe Payment Intent ID"),
        "STRIPE_SESSION_ID": FieldDefinition(default="Stripe Session ID"),
    },
)


CONTENT_TABLE = TableDefinition(
    default="Content",
    env_vars=("CONTENT_TABLE",),
    fields={
        "NAME": FieldDefinition(default="Name"),
        "SECTION": FieldDefinition(default="Section"),
        "JSON_DATA": FieldDefinition(default="JSON Data"),
    },
)

MESSAGES_SECTION = "messages"


def phone_field_map() -> Dict[str, str]:
    return PHONE_NUMBERS_TABLE.field_names()


def payments_field_map() -> Dict[str, str]:
    return PAYMENTS_TABLE.field_names()


def content_field_map() -> Dict[str, str]:
    return CONTENT_TABLE.field_names()


# Logical keys accepted by update_payment_record → Payments field keys.
PAYMENT_UPDATE_KEYS: Dict[str, str] = {
    "tier": "TIER",
    "amount": "AMOUNT",
    "status": "STATUS",
    "payment_type": "PAYMENT_TYPE",
    "email": "EMAIL",
    "phone": "PHONE",
    "stripe_customer_id": "STRIPE_CUSTOMER_ID",
    "stripe_subscription_id": "STRIPE_SUBSCRIPTION_ID",
    "stripe_payment_intent_id": "STRIPE_PAYMENT_INTENT_ID",
    "stripe_session_id": "STRIPE_SESSION_ID",
}

# The four external identifiers cleared by unsubscribe / stop.
EXTERNAL_ID_KEYS: Tuple[str, ...] = (
    "stripe_customer_id",
    "stripe_subscription_id",
    "stripe_payment_intent_id",
    "stripe_session_id",
)
