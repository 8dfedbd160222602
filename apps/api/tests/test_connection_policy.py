import pytest

from services.connection_policy import FREEMIUM_CAP_MESSAGE, ConnectionPolicy
from services.connectors.types import AccountIdentity
from services.errors import PolicyDenied
from services.sessions import (
    AccountTokens,
    PlatformConnection,
    Session,
    SubscriptionPlan,
    now_ms,
)


def _connection(user_id="acct-1", username="jane", expires_at=None, access_token="token"):
    return PlatformConnection(
        account=AccountIdentity(user_id=user_id, username=username),
        account_tokens=AccountTokens(
            access_token=access_token,
            expires_at=now_ms() + 3_600_000 if expires_at is None else expires_at,
        ),
        connected_at=now_ms(),
    )


def _session(plan=SubscriptionPlan.FREEMIUM, **connections):
    return Session(user_id="user-1", plan=plan, connected_platforms=connections)


@pytest.fixture
def policy():
    return ConnectionPolicy(premium_platforms=["amazon"], freemium_max_connections=1)


def test_freemium_user_can_connect_first_platform(policy):
    decision = policy.evaluate_additional_connection("facebook", SubscriptionPlan.FREEMIUM, _session())
    assert decision.allowed
    assert decision.error is None


def test_freemium_cap_blocks_second_platform(policy):
    session = _session(facebook=_connection())

    decision = policy.evaluate_additional_connection("twitter", SubscriptionPlan.FREEMIUM, session)

    assert not decision.allowed
    assert decision.error.message == FREEMIUM_CAP_MESSAGE
    assert decision.error.status_code == 403


def test_premium_platform_denied_before_cap_for_freemium(policy):
    session = _session(facebook=_connection())

    decision = policy.evaluate_additional_connection("amazon", SubscriptionPlan.FREEMIUM, session)

    assert decision.error.message == "amazon connectivity requires a premium subscription"


def test_already_connected_platform_is_denied(policy):
    session = _session(plan=SubscriptionPlan.PREMIUM_MONTHLY, twitter=_connection())

    decision = policy.evaluate_additional_connection("twitter", SubscriptionPlan.PREMIUM_MONTHLY, session)

    assert decision.error.message == "twitter is already connected to your account"


def test_premium_plans_have_no_cap(policy):
    session = _session(
        plan=SubscriptionPlan.PREMIUM_YEARLY,
        facebook=_connection(),
        twitter=_connection(user_id="tw-1"),
        instagram=_connection(user_id="ig-1"),
    )

    assert policy.evaluate_additional_connection("amazon", SubscriptionPlan.PREMIUM_YEARLY, session).allowed
    assert policy.is_multi_platform_allowed(SubscriptionPlan.PREMIUM_YEARLY)


def test_validate_raises_policy_denied(policy):
    with pytest.raises(PolicyDenied) as exc_info:
        policy.validate_additional_connection("amazon", SubscriptionPlan.FREEMIUM, _session())
    assert exc_info.value.status_code == 403


def test_x_alias_resolves_to_twitter(policy):
    session = _session(plan=SubscriptionPlan.PREMIUM_MONTHLY, twitter=_connection())
    assert policy.is_platform_connected("x", session)


def test_connection_without_account_id_does_not_count(policy):
    session = _session(facebook=_connection(user_id=""))

    assert policy.get_connected_platform_count(session) == 0
    assert policy.evaluate_additional_connection("twitter", SubscriptionPlan.FREEMIUM, session).allowed


def test_downgraded_user_keeps_existing_connections(policy):
    session = _session(
        plan=SubscriptionPlan.FREEMIUM,
        facebook=_connection(),
        amazon=_connection(user_id="amzn-1"),
    )

    assert policy.get_connected_platform_count(session) == 2
    decision = policy.evaluate_additional_connection("twitter", SubscriptionPlan.FREEMIUM, session)
    assert decision.error.message == FREEMIUM_CAP_MESSAGE


def test_available_platforms_reports_token_validity(policy):
    session = _session(
        plan=SubscriptionPlan.PREMIUM_MONTHLY,
        facebook=_connection(username="Jane Doe"),
        twitter=_connection(user_id="tw-1", expires_at=now_ms() - 1000),
    )

    available = {entry["platform"]: entry for entry in policy.get_available_platforms(session.plan, session)}

    assert list(available) == ["facebook", "instagram", "twitter", "amazon"]
    assert available["facebook"]["isConnected"] is True
    assert available["facebook"]["hasValidToken"] is True
    assert available["facebook"]["username"] == "Jane Doe"
    assert available["twitter"]["isConnected"] is True
    assert available["twitter"]["hasValidToken"] is False
    assert available["instagram"] == {
        "platform": "instagram",
        "isConnected": False,
        "username": None,
        "accountId": None,
        "connectedAt": None,
        "hasValidToken": False,
        "requiresPremium": False,
    }
    assert available["amazon"]["requiresPremium"] is True


def test_locked_platforms_and_requirements(policy):
    assert policy.get_premium_locked_platforms(SubscriptionPlan.FREEMIUM) == ["amazon"]
    assert policy.get_premium_locked_platforms(SubscriptionPlan.PREMIUM_MONTHLY) == []

    requirements = policy.get_platform_requirements("amazon")
    assert requirements["requiresPremium"] is True
    assert "Premium subscription required" in requirements["limitations"]
    assert policy.get_platform_requirements("myspace")["limitations"] == ["Unknown platform"]


def test_gated_set_is_configurable():
    policy = ConnectionPolicy(premium_platforms=["amazon", "x"], freemium_max_connections=2)
    session = _session(facebook=_connection())

    assert policy.requires_premium("twitter")
    assert policy.evaluate_additional_connection("instagram", SubscriptionPlan.FREEMIUM, session).allowed
    assert policy.connection_limits() == {"freemiumMaxConnections": 2, "premiumMaxConnections": "unlimited"}
