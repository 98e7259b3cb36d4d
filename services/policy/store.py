"""
services/policy/store.py
Admin-configurable session policy parameters.

Values live in `session_policies` as text and are typed by their definition.
Every read goes to the database; a missing row or an unparseable value falls
back to the compiled-in default so the engine never breaks on bad config.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import ValidationException
from shared.models.models import PartyRole, PolicyType, SessionPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyDefinition:
    key: str
    type: PolicyType
    default: Any
    description: str
    group: str
    minimum: Optional[int] = None
    maximum: Optional[int] = None


_DEFINITIONS = [
    # Mentee rules
    PolicyDefinition(
        "cancellation_cutoff_hours", PolicyType.INTEGER, 2,
        "Hours before a session after which a mentee cancellation is late", "mentee_rules", 0,
    ),
    PolicyDefinition(
        "reschedule_cutoff_hours", PolicyType.INTEGER, 4,
        "Minimum hours before a session for a mentee to propose a new time", "mentee_rules", 0,
    ),
    PolicyDefinition(
        "max_reschedules_per_session", PolicyType.INTEGER, 2,
        "Maximum accepted reschedules a mentee may initiate per session", "mentee_rules", 0,
    ),
    PolicyDefinition(
        "require_cancellation_reason", PolicyType.BOOLEAN, True,
        "Participants must give a reason when cancelling", "mentee_rules",
    ),
    # Mentor rules
    PolicyDefinition(
        "mentor_cancellation_cutoff_hours", PolicyType.INTEGER, 1,
        "Hours before a session after which a mentor cancellation is late", "mentor_rules", 0,
    ),
    PolicyDefinition(
        "mentor_reschedule_cutoff_hours", PolicyType.INTEGER, 2,
        "Minimum hours before a session for a mentor to propose a new time", "mentor_rules", 0,
    ),
    PolicyDefinition(
        "mentor_max_reschedules_per_session", PolicyType.INTEGER, 5,
        "Maximum accepted reschedules a mentor may initiate per session", "mentor_rules", 0,
    ),
    # Refund rules
    PolicyDefinition(
        "free_cancellation_hours", PolicyType.INTEGER, 24,
        "Cancellations earlier than this many hours before the session are fully refunded",
        "refund_rules", 0,
    ),
    PolicyDefinition(
        "partial_refund_percentage", PolicyType.INTEGER, 50,
        "Refund percentage between the cutoff and the free cancellation window",
        "refund_rules", 0, 100,
    ),
    PolicyDefinition(
        "late_cancellation_refund_percentage", PolicyType.INTEGER, 0,
        "Refund percentage for cancellations after the cutoff", "refund_rules", 0, 100,
    ),
    # Reschedule settings
    PolicyDefinition(
        "reschedule_request_expiry_hours", PolicyType.INTEGER, 48,
        "Hours a reschedule proposal stays open before it expires", "reschedule_settings", 1,
    ),
    PolicyDefinition(
        "max_counter_proposals", PolicyType.INTEGER, 3,
        "Maximum counter-proposals within one reschedule negotiation", "reschedule_settings", 0,
    ),
]

POLICY_DEFINITIONS: dict[str, PolicyDefinition] = {d.key: d for d in _DEFINITIONS}
POLICY_GROUPS = ("mentee_rules", "mentor_rules", "refund_rules", "reschedule_settings")

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


# ── Typing helpers ────────────────────────────────────────────

def parse_policy_value(raw: str, policy_type: PolicyType) -> Any:
    """Convert a stored text value to its typed form. Raises ValueError when malformed."""
    if policy_type == PolicyType.INTEGER:
        return int(str(raw).strip())
    if policy_type == PolicyType.BOOLEAN:
        text = str(raw).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if policy_type == PolicyType.JSON:
        return json.loads(raw)
    return str(raw)


def serialize_policy_value(value: Any, policy_type: PolicyType) -> str:
    if policy_type == PolicyType.BOOLEAN and isinstance(value, bool):
        return "true" if value else "false"
    if policy_type == PolicyType.JSON and not isinstance(value, str):
        return json.dumps(value)
    return str(value)


def _coerce(definition: PolicyDefinition, value: Any) -> Any:
    """Validate an admin-supplied value against its definition."""
    if definition.type == PolicyType.INTEGER and isinstance(value, bool):
        raise ValueError("expected an integer")
    typed = parse_policy_value(serialize_policy_value(value, definition.type), definition.type)
    if definition.minimum is not None and typed < definition.minimum:
        raise ValueError(f"must be >= {definition.minimum}")
    if definition.maximum is not None and typed > definition.maximum:
        raise ValueError(f"must be <= {definition.maximum}")
    return typed


@dataclass(frozen=True)
class PolicyChange:
    key: str
    previous: Any
    new: Any


# ── Store ─────────────────────────────────────────────────────

class PolicyStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _rows(self, keys: Optional[Iterable[str]] = None) -> dict[str, SessionPolicy]:
        query = select(SessionPolicy)
        if keys is not None:
            query = query.where(SessionPolicy.policy_key.in_(list(keys)))
        result = await self.db.execute(query)
        return {row.policy_key: row for row in result.scalars()}

    def _typed(self, definition: PolicyDefinition, row: Optional[SessionPolicy]) -> Any:
        if row is None:
            return definition.default
        try:
            return parse_policy_value(row.policy_value, definition.type)
        except (ValueError, TypeError):
            logger.warning(
                f"Unparseable value {row.policy_value!r} for policy {definition.key}; using default"
            )
            return definition.default

    async def get_value(self, key: str) -> Any:
        definition = POLICY_DEFINITIONS[key]
        rows = await self._rows([key])
        return self._typed(definition, rows.get(key))

    async def get_values(self, *keys: str) -> dict[str, Any]:
        definitions = [POLICY_DEFINITIONS[k] for k in keys]
        rows = await self._rows(keys)
        return {d.key: self._typed(d, rows.get(d.key)) for d in definitions}

    async def snapshot(self) -> dict[str, Any]:
        """Effective value of every known policy. Stored with audit entries."""
        rows = await self._rows()
        return {key: self._typed(d, rows.get(key)) for key, d in POLICY_DEFINITIONS.items()}

    async def list_policies(self) -> list[dict[str, Any]]:
        rows = await self._rows()
        entries = []
        for key, definition in POLICY_DEFINITIONS.items():
            row = rows.get(key)
            entries.append({
                "key": key,
                "value": self._typed(definition, row),
                "type": definition.type.value,
                "description": (row.description if row and row.description else definition.description),
                "default_value": definition.default,
                "is_default": row is None,
            })
        return entries

    async def grouped(self) -> dict[str, dict[str, Any]]:
        values = await self.snapshot()
        groups: dict[str, dict[str, Any]] = {g: {} for g in POLICY_GROUPS}
        for key, definition in POLICY_DEFINITIONS.items():
            groups[definition.group][key] = values[key]
        return groups

    async def for_role(self, role: PartyRole) -> dict[str, int]:
        values = await self.snapshot()
        if role == PartyRole.MENTOR:
            return {
                "cancellation_cutoff_hours": values["mentor_cancellation_cutoff_hours"],
                "reschedule_cutoff_hours": values["mentor_reschedule_cutoff_hours"],
                "max_reschedules": values["mentor_max_reschedules_per_session"],
                "free_cancellation_hours": values["free_cancellation_hours"],
            }
        return {
            "cancellation_cutoff_hours": values["cancellation_cutoff_hours"],
            "reschedule_cutoff_hours": values["reschedule_cutoff_hours"],
            "max_reschedules": values["max_reschedules_per_session"],
            "free_cancellation_hours": values["free_cancellation_hours"],
        }

    async def update(self, updates: list[tuple[str, Any]]) -> list[PolicyChange]:
        """Validate every update first, then upsert. Nothing is written if any item is invalid."""
        invalid_keys = [key for key, _ in updates if key not in POLICY_DEFINITIONS]
        if invalid_keys:
            raise ValidationException(
                "Invalid policy keys", details={"invalid_keys": invalid_keys}
            )

        coerced: list[tuple[PolicyDefinition, Any]] = []
        errors: dict[str, str] = {}
        for key, value in updates:
            definition = POLICY_DEFINITIONS[key]
            try:
                coerced.append((definition, _coerce(definition, value)))
            except (ValueError, TypeError) as exc:
                errors[key] = str(exc)
        if errors:
            raise ValidationException("Invalid policy values", details={"errors": errors})

        rows = await self._rows([d.key for d, _ in coerced])
        changes = []
        for definition, value in coerced:
            row = rows.get(definition.key)
            previous = self._typed(definition, row)
            self._upsert(definition, row, value)
            changes.append(PolicyChange(definition.key, previous, value))
        await self.db.flush()
        return changes

    async def reset(self) -> list[PolicyChange]:
        rows = await self._rows()
        changes = []
        for key, definition in POLICY_DEFINITIONS.items():
            row = rows.get(key)
            previous = self._typed(definition, row)
            self._upsert(definition, row, definition.default)
            changes.append(PolicyChange(key, previous, definition.default))
        await self.db.flush()
        return changes

    def _upsert(self, definition: PolicyDefinition, row: Optional[SessionPolicy], value: Any) -> None:
        text = serialize_policy_value(value, definition.type)
        if row is None:
            self.db.add(SessionPolicy(
                policy_key=definition.key,
                policy_value=text,
                policy_type=definition.type,
                description=definition.description,
            ))
        else:
            row.policy_value = text
            row.policy_type = definition.type
