"""
tests/test_policies.py
Policy store typing, fallbacks and validation, plus the public policy view.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.policy.store import (
    POLICY_DEFINITIONS,
    PolicyStore,
    parse_policy_value,
    serialize_policy_value,
)
from shared.exceptions import ValidationException
from shared.models.models import PartyRole, PolicyType, SessionPolicy


# ── Parsing ────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "raw, policy_type, expected",
    [
        ("24", PolicyType.INTEGER, 24),
        (" 7 ", PolicyType.INTEGER, 7),
        ("true", PolicyType.BOOLEAN, True),
        ("Off", PolicyType.BOOLEAN, False),
        ('{"a": 1}', PolicyType.JSON, {"a": 1}),
        ("hello", PolicyType.STRING, "hello"),
    ],
)
def test_parse_policy_value(raw, policy_type, expected):
    assert parse_policy_value(raw, policy_type) == expected


def test_parse_rejects_malformed_boolean():
    with pytest.raises(ValueError):
        parse_policy_value("maybe", PolicyType.BOOLEAN)


def test_serialize_boolean_as_lowercase_text():
    assert serialize_policy_value(False, PolicyType.BOOLEAN) == "false"


# ── Store ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_defaults_when_table_is_empty(db: AsyncSession):
    snapshot = await PolicyStore(db).snapshot()
    assert set(snapshot) == set(POLICY_DEFINITIONS)
    assert snapshot["cancellation_cutoff_hours"] == 2
    assert snapshot["mentor_cancellation_cutoff_hours"] == 1
    assert snapshot["require_cancellation_reason"] is True
    assert snapshot["reschedule_request_expiry_hours"] == 48


@pytest.mark.asyncio
async def test_unparseable_value_falls_back_to_default(db: AsyncSession):
    db.add(SessionPolicy(
        policy_key="free_cancellation_hours",
        policy_value="twenty-four",
        policy_type=PolicyType.INTEGER,
    ))
    await db.commit()

    assert await PolicyStore(db).get_value("free_cancellation_hours") == 24


@pytest.mark.asyncio
async def test_stored_value_overrides_default(db: AsyncSession):
    db.add(SessionPolicy(
        policy_key="require_cancellation_reason",
        policy_value="no",
        policy_type=PolicyType.BOOLEAN,
    ))
    await db.commit()

    values = await PolicyStore(db).get_values("require_cancellation_reason", "max_counter_proposals")
    assert values == {"require_cancellation_reason": False, "max_counter_proposals": 3}


@pytest.mark.asyncio
async def test_update_is_all_or_nothing(db: AsyncSession):
    store = PolicyStore(db)
    with pytest.raises(ValidationException) as exc:
        await store.update([
            ("cancellation_cutoff_hours", 6),
            ("late_cancellation_refund_percentage", -5),
        ])
    assert "late_cancellation_refund_percentage" in exc.value.details["errors"]
    assert await store.get_value("cancellation_cutoff_hours") == 2


@pytest.mark.asyncio
async def test_update_rejects_boolean_for_integer(db: AsyncSession):
    with pytest.raises(ValidationException):
        await PolicyStore(db).update([("max_counter_proposals", True)])


@pytest.mark.asyncio
async def test_update_then_reset(db: AsyncSession):
    store = PolicyStore(db)
    changes = await store.update([("mentor_reschedule_cutoff_hours", 6)])
    await db.commit()
    assert changes[0].previous == 2 and changes[0].new == 6

    listed = {p["key"]: p for p in await store.list_policies()}
    assert listed["mentor_reschedule_cutoff_hours"]["is_default"] is False

    await store.reset()
    await db.commit()
    assert await store.get_value("mentor_reschedule_cutoff_hours") == 2


@pytest.mark.asyncio
async def test_role_views(db: AsyncSession):
    store = PolicyStore(db)
    assert await store.for_role(PartyRole.MENTOR) == {
        "cancellation_cutoff_hours": 1,
        "reschedule_cutoff_hours": 2,
        "max_reschedules": 5,
        "free_cancellation_hours": 24,
    }
    assert (await store.for_role(PartyRole.MENTEE))["max_reschedules"] == 2


# ── Public Endpoint ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_session_policies_endpoint(client: AsyncClient):
    response = await client.get("/session-policies?role=mentee")
    assert response.status_code == 200
    assert response.json()["data"]["cancellation_cutoff_hours"] == 2

    both = await client.get("/session-policies")
    assert set(both.json()["data"]) == {"mentee", "mentor"}
