"""Usage metering and bring-your-own-key configuration."""

from __future__ import annotations

import datetime as dt

import pytest

from packages.kanthink.errors import ValidationFailed
from packages.kanthink.workspace import schemas, usage
from packages.kanthink.workspace.models import UsageRecord
from packages.kanthink.workspace.schema.enums import LLMProviderName, UserTier


def test_month_bounds_roll_over_the_year() -> None:
    start, end = usage.month_bounds(dt.datetime(2025, 12, 14, 9, 30, tzinfo=dt.timezone.utc))

    assert start == dt.datetime(2025, 12, 1, tzinfo=dt.timezone.utc)
    assert end == dt.datetime(2026, 1, 1, tzinfo=dt.timezone.utc)


def test_free_tier_limit(service, make_user) -> None:
    alice = make_user("alice@example.com")
    service.settings.free_monthly_limit = 2

    for _ in range(2):
        assert usage.record_usage(service.session, alice.id, "generate-cards") is True
    service.session.commit()

    status = service.get_usage(alice.id)
    assert (status.used, status.limit, status.remaining, status.allowed) == (2, 2, 0, False)
    assert status.tier is UserTier.FREE

    check = usage.check_usage_limit(service.session, alice.id, service.settings)
    assert check.allowed is False
    assert check.message == (
        "You've used all 2 free AI requests this month. Upgrade to Premium for "
        "200 requests, or add your own API key for unlimited usage."
    )


def test_premium_limit_and_message(service, make_user) -> None:
    make_user("alice@example.com")
    alice = service.set_user_tier("alice@example.com", UserTier.PREMIUM)
    service.settings.premium_monthly_limit = 1
    usage.record_usage(service.session, alice.id, "generate-cards")
    service.session.commit()

    check = usage.check_usage_limit(service.session, alice.id, service.settings)

    assert check.allowed is False
    assert check.message.startswith("You've reached your monthly limit.")


def test_previous_month_is_not_counted(service, make_user) -> None:
    alice = make_user("alice@example.com")
    start, _ = usage.month_bounds()
    service.session.add(
        UsageRecord(
            user_id=alice.id,
            request_type="generate-cards",
            created_at=start - dt.timedelta(days=1),
        )
    )
    service.session.commit()

    status = service.get_usage(alice.id)

    assert status.used == 0
    assert status.remaining == service.settings.free_monthly_limit


def test_byok_users_are_unmetered(service, make_user) -> None:
    alice = make_user("alice@example.com")
    service.save_byok(
        schemas.ByokSaveRequest(provider="anthropic", api_key="  sk-ant-123456789  "),
        alice.id,
    )

    assert usage.record_usage(service.session, alice.id, "generate-cards") is False
    status = service.get_usage(alice.id)
    assert status.has_byok is True
    assert status.limit is None and status.remaining is None
    assert status.allowed is True

    config = service.get_byok_status(alice.id)
    assert config.provider is LLMProviderName.ANTHROPIC
    assert config.api_key == "sk-ant-123456789"

    updated = service.update_byok_model(schemas.ByokModelRequest(model="claude-3-5-haiku-latest"), alice.id)
    assert updated.model == "claude-3-5-haiku-latest"

    service.clear_byok(alice.id)
    assert service.get_byok_status(alice.id) is None
    assert service.get_usage(alice.id).has_byok is False


def test_byok_validation(service, make_user) -> None:
    alice = make_user("alice@example.com")

    with pytest.raises(ValidationFailed) as excinfo:
        service.save_byok(schemas.ByokSaveRequest(provider="mistral", api_key="k"), alice.id)
    assert excinfo.value.message == (
        "Invalid provider. Must be one of: anthropic, openai, google"
    )

    with pytest.raises(ValidationFailed) as excinfo:
        service.save_byok(schemas.ByokSaveRequest(provider="openai", api_key="   "), alice.id)
    assert excinfo.value.message == "API key is required"

    with pytest.raises(ValidationFailed):
        service.update_byok_model(schemas.ByokModelRequest(model="gpt-4o"), alice.id)


@pytest.mark.parametrize(
    ("api_key", "masked"),
    [("sk-abcdefgh1234", "****1234"), ("short", "****"), (None, None)],
)
def test_mask_key(api_key, masked) -> None:
    assert usage.mask_key(api_key) == masked


def test_byok_endpoints_never_return_the_key(client, signup) -> None:
    headers = signup(client, "alice@example.com")

    assert client.get("/api/byok/status", headers=headers).json() == {
        "configured": False,
        "provider": None,
        "model": None,
        "masked_key": None,
    }

    saved = client.post(
        "/api/byok/save",
        json={"provider": "openai", "api_key": "sk-live-abcdef9876", "model": "gpt-4o-mini"},
        headers=headers,
    )
    assert saved.status_code == 200
    assert saved.json() == {
        "configured": True,
        "provider": "openai",
        "model": "gpt-4o-mini",
        "masked_key": "****9876",
    }
    assert "sk-live" not in client.get("/api/byok/status", headers=headers).text

    usage_body = client.get("/api/usage", headers=headers).json()
    assert usage_body["has_byok"] is True
    assert usage_body["limit"] is None

    rejected = client.post(
        "/api/byok/save", json={"provider": "cohere", "api_key": "x"}, headers=headers
    )
    assert rejected.status_code == 400

    cleared = client.post("/api/byok/clear", headers=headers)
    assert cleared.json() == {"success": True}
    usage_body = client.get("/api/usage", headers=headers).json()
    assert usage_body["limit"] == 10
    assert usage_body["used"] == 0
