from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from offline_sync.domain.models import EntityType, strip_client_fields

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordRules:
    required: tuple[str, ...] = ()
    enums: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    defaults: Mapping[str, Any] = field(default_factory=dict)
    numeric_fields: tuple[str, ...] = ()


RULES_BY_ENTITY: dict[EntityType, RecordRules] = {
    EntityType.TRANSACTIONS: RecordRules(
        required=("total_amount",),
        enums={
            "transaction_type": ("spa", "restaurant", "retail"),
            "status": ("pending", "completed", "cancelled", "refunded", "paid"),
        },
        defaults={
            "transaction_type": "restaurant",
            "status": "pending",
            "subtotal": 0,
            "total_amount": 0,
            "tax_amount": 0,
            "discount_amount": 0,
            "tip_amount": 0,
        },
        numeric_fields=("subtotal", "total_amount", "tax_amount", "discount_amount", "tip_amount"),
    ),
    EntityType.STAFF: RecordRules(
        required=("name", "email"),
        enums={"role": ("admin", "manager", "staff", "therapist", "chef", "waiter")},
        defaults={"role": "staff", "is_active": True},
    ),
}


def _to_number(value: Any) -> float | int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return 0


def clean_outbound_payload(entity_type: EntityType, payload: dict[str, Any]) -> dict[str, Any]:
    """Normalizes a payload before it leaves the device.

    Missing fields take their defaults, out-of-range enum values fall back to the
    default (or the first allowed value) and money fields become numbers. A required
    field that is still empty is only warned about; the remote store has the final say
    and rejects the record as a validation error.
    """
    cleaned = strip_client_fields(payload)
    rules = RULES_BY_ENTITY.get(entity_type)
    if rules is None:
        return cleaned

    for key, default in rules.defaults.items():
        if cleaned.get(key) is None:
            cleaned[key] = default

    for required in rules.required:
        value = cleaned.get(required)
        if value is None or value == "":
            if required in rules.defaults:
                cleaned[required] = rules.defaults[required]
            elif required == "name":
                cleaned[required] = f"Unnamed {entity_type.value.rstrip('s')}"
            else:
                logger.warning("Missing required field %s in %s", required, entity_type.value)

    for key, allowed in rules.enums.items():
        value = cleaned.get(key)
        if value and value not in allowed:
            fallback = rules.defaults.get(key) or allowed[0]
            logger.warning("Invalid %s value %r in %s, using %r", key, value, entity_type.value, fallback)
            cleaned[key] = fallback

    for key in rules.numeric_fields:
        cleaned[key] = _to_number(cleaned.get(key))

    return cleaned
