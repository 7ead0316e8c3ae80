from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from featuregate import db
from featuregate.cache import EntitlementCache
from featuregate.client import EntitlementApiClient
from featuregate.constants import Reason
from featuregate.gate import AccessGate, InvalidTransitionError, Invocation, InvocationState
from featuregate.main import app
from featuregate.models import UsageCounter, UsageEvent


@pytest_asyncio.fixture()
async def http(database):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture()
def catalog(feature_factory):
    feature_factory("word_game", category="games", is_paid=False, required_plan="free", free_limit=10)
    feature_factory("voice_calls", required_plan="basic", free_limit=1, free_limit_type="per_week")
    feature_factory("video_calls", required_plan="premium", free_limit=0)
    feature_factory("certificates", category="learning", required_plan="pro", free_limit=-1)
    feature_factory("retired_game", category="games", is_paid=False, is_active=False)


async def signed_in_api(http: AsyncClient, email: str = "learner@example.com") -> tuple[EntitlementApiClient, int]:
    response = await http.post("/auth/register", json={"email": email, "full_name": "Test Learner"})
    assert response.status_code == 201, response.text
    body = response.json()
    return EntitlementApiClient(http, token=body["access_token"]), body["user"]["id"]


def offline_client() -> AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network unreachable", request=request)

    return AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")


def responding_client(payload: dict, status_code: int = 200) -> AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload)

    return AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")


class Action:
    def __init__(self, value: str = "started") -> None:
        self.value = value
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        return self.value


@pytest.mark.asyncio
async def test_advisory_access_before_and_after_refresh(http, catalog) -> None:
    api, _ = await signed_in_api(http)
    cache = EntitlementCache(api)

    assert cache.advisory_access("word_game") is None
    assert cache.is_stale is True

    assert await cache.refresh() is True

    assert cache.is_stale is False
    assert cache.advisory_access("word_game") is True
    assert cache.advisory_access("voice_calls") is None
    assert cache.advisory_access("video_calls") is False
    assert cache.advisory_access("certificates") is True
    assert cache.advisory_access("retired_game") is False
    assert cache.advisory_access("unknown_feature") is False
    assert cache.info("voice_calls").free_limit == 1
    assert [feature.key for feature in cache.menu_features("games")] == ["word_game"]
    assert sorted(feature.key for feature in cache.accessible_features()) == ["certificates", "word_game"]
    assert [feature.key for feature in cache.locked_features()] == ["video_calls"]


@pytest.mark.asyncio
async def test_upgrade_unlocks_features_in_the_cache(http, catalog, plan_setter) -> None:
    api, user_id = await signed_in_api(http)
    cache = EntitlementCache(api)
    await cache.refresh()
    assert [feature.key for feature in cache.locked_features()] == ["video_calls"]

    plan_setter(user_id, "premium")
    cache.invalidate()
    await cache.refresh()

    assert cache.locked_features() == []
    assert sorted(feature.key for feature in cache.accessible_features()) == [
        "certificates",
        "video_calls",
        "voice_calls",
        "word_game",
    ]


@pytest.mark.asyncio
async def test_advisory_access_follows_plan_and_expiry(http, catalog, plan_setter) -> None:
    api, user_id = await signed_in_api(http)
    now = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)
    clock = {"now": now}
    cache = EntitlementCache(api, clock=lambda: clock["now"])
    plan_setter(user_id, "premium", now + timedelta(hours=1))

    await cache.refresh()
    assert cache.advisory_access("video_calls") is True
    assert cache.advisory_access("voice_calls") is True

    clock["now"] = now + timedelta(hours=1, seconds=1)
    assert cache.advisory_access("video_calls") is False
    assert cache.advisory_access("voice_calls") is None


@pytest.mark.asyncio
async def test_signed_out_cache_respects_requires_auth(http, catalog) -> None:
    cache = EntitlementCache(EntitlementApiClient(http))

    assert await cache.refresh() is True
    assert cache.advisory_access("word_game") is False


@pytest.mark.asyncio
async def test_refresh_failure_keeps_the_previous_snapshot(http, catalog) -> None:
    api, _ = await signed_in_api(http)
    cache = EntitlementCache(api)
    await cache.refresh()
    version = cache.version

    api.http = offline_client()
    cache.invalidate()

    assert await cache.refresh() is False
    assert cache.version == version
    assert cache.is_stale is True
    assert cache.advisory_access("word_game") is True


@pytest.mark.asyncio
async def test_unchanged_catalog_is_not_downloaded_again(http, catalog) -> None:
    api, _ = await signed_in_api(http)
    cache = EntitlementCache(api)
    await cache.refresh()

    assert await api.fetch_catalog(cache.version) is None
    assert await cache.refresh() is True
    assert cache.info("word_game") is not None


@pytest.mark.asyncio
async def test_background_refresh_supersedes_the_one_in_flight() -> None:
    release = asyncio.Event()
    catalog_calls = []

    async def handler(request: httpx.Request) -> httpx.Response:
        catalog_calls.append(request.url.path)
        if len(catalog_calls) == 1:
            await release.wait()
        return httpx.Response(
            200,
            json={
                "version": f"v{len(catalog_calls)}",
                "maxAge": 60,
                "plans": [{"name": "free", "rank": 0}, {"name": "basic", "rank": 1}],
                "features": [],
            },
        )

    async with AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
        cache = EntitlementCache(EntitlementApiClient(client))
        first = cache.refresh_in_background()
        await asyncio.sleep(0.01)

        second = cache.refresh_in_background()
        assert await second is True

        with pytest.raises(asyncio.CancelledError):
            await first

    assert first.cancelled()
    assert cache.version == "v2"
    assert cache.ttl_seconds == 60


@pytest.mark.asyncio
async def test_free_feature_runs_without_a_server_check(http, catalog) -> None:
    api, _ = await signed_in_api(http)
    cache = EntitlementCache(api)
    await cache.refresh()
    api.http = offline_client()
    action = Action()

    result = await AccessGate(cache, api).invoke("word_game", action)

    assert result.allowed is True
    assert result.value == "started"
    assert action.calls == 1
    assert result.history == (
        InvocationState.IDLE,
        InvocationState.GRANTED,
        InvocationState.EXECUTING,
        InvocationState.DONE,
    )


@pytest.mark.asyncio
async def test_paid_feature_is_checked_charged_and_reported(http, catalog) -> None:
    api, user_id = await signed_in_api(http)
    cache = EntitlementCache(api)
    await cache.refresh()
    gate = AccessGate(cache, api)

    async def start_call() -> str:
        return "call-1"

    result = await gate.invoke("voice_calls", start_call)
    await gate.drain()

    assert result.allowed is True
    assert result.value == "call-1"
    assert result.verdict.remaining == 0
    assert result.history == (
        InvocationState.IDLE,
        InvocationState.CHECKING,
        InvocationState.GRANTED,
        InvocationState.EXECUTING,
        InvocationState.DONE,
    )
    with db.open_session() as session:
        assert session.scalar(select(UsageCounter.count).where(UsageCounter.user_id == user_id)) == 1
        assert len(session.scalars(select(UsageEvent)).all()) == 1

    action = Action()
    denied = await gate.invoke("voice_calls", action)

    assert denied.allowed is False
    assert denied.reason is Reason.QUOTA_EXHAUSTED
    assert action.calls == 0
    assert denied.history[-2:] == (InvocationState.DENIED, InvocationState.DONE)


@pytest.mark.asyncio
async def test_gate_never_self_grants_when_offline(http, catalog, plan_setter) -> None:
    api, user_id = await signed_in_api(http)
    plan_setter(user_id, "pro")
    cache = EntitlementCache(api)
    await cache.refresh()
    assert cache.advisory_access("video_calls") is True

    api.http = offline_client()
    action = Action()
    result = await AccessGate(cache, api).invoke("video_calls", action)

    assert result.allowed is False
    assert result.reason is Reason.VERIFICATION_FAILED
    assert action.calls == 0
    assert InvocationState.ERROR in result.history


@pytest.mark.asyncio
async def test_hung_check_times_out_as_a_denial() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={"canAccess": True, "reason": "ok"})

    async with AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
        api = EntitlementApiClient(client, token="t")
        gate = AccessGate(EntitlementCache(api), api, check_timeout=0.05)
        action = Action()

        result = await asyncio.wait_for(gate.invoke("voice_calls", action), timeout=2)

    assert result.reason is Reason.VERIFICATION_FAILED
    assert action.calls == 0


@pytest.mark.parametrize(
    ("payload", "status_code"),
    [
        ({"canAccess": True, "reason": "ok"}, 500),
        ({"canAccess": True}, 200),
        ({"canAccess": True, "reason": "trust_me"}, 200),
        ({"canAccess": True, "reason": "quota_exhausted"}, 200),
    ],
    ids=["server-error", "missing-reason", "unknown-reason", "allow-without-ok"],
)
@pytest.mark.asyncio
async def test_anything_but_an_explicit_ok_is_a_denial(payload, status_code) -> None:
    async with responding_client(payload, status_code) as client:
        api = EntitlementApiClient(client, token="t")
        action = Action()

        result = await AccessGate(EntitlementCache(api), api).invoke("voice_calls", action)

    assert result.allowed is False
    assert result.reason is Reason.VERIFICATION_FAILED
    assert action.calls == 0


@pytest.mark.asyncio
async def test_failed_usage_notification_does_not_undo_the_action() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/features/access":
            return httpx.Response(200, json={"canAccess": True, "reason": "ok", "remaining": 2})
        return httpx.Response(503, json={"detail": "unavailable"})

    async with AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
        api = EntitlementApiClient(client, token="t")
        gate = AccessGate(EntitlementCache(api), api)
        action = Action()

        result = await gate.invoke("lectures", action)
        await gate.drain()

    assert result.allowed is True
    assert result.verdict.remaining == 2
    assert action.calls == 1


@pytest.mark.asyncio
async def test_action_errors_propagate_after_a_grant() -> None:
    async with responding_client({"canAccess": True, "reason": "ok"}) as client:
        api = EntitlementApiClient(client, token="t")
        gate = AccessGate(EntitlementCache(api), api)

        def broken_action():
            raise RuntimeError("media transport unavailable")

        with pytest.raises(RuntimeError, match="media transport"):
            await gate.invoke("voice_calls", broken_action)


def test_invocations_do_not_reenter_states() -> None:
    invocation = Invocation("voice_calls")
    invocation.advance(InvocationState.CHECKING)
    invocation.advance(InvocationState.DENIED)
    invocation.advance(InvocationState.DONE)

    with pytest.raises(InvalidTransitionError):
        invocation.advance(InvocationState.CHECKING)
    with pytest.raises(InvalidTransitionError):
        Invocation("voice_calls").advance(InvocationState.EXECUTING)
