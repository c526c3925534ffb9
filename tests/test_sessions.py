from datetime import UTC, datetime, timedelta

import pytest

from donorlink.errors import Forbidden, NotFound, ValidationError
from donorlink.sessions import SessionGuard
from donorlink.services import Services


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 6, 20, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def guard(services: Services, clock: Clock) -> SessionGuard:
    return SessionGuard(services.coordinator, window_seconds=30, clock=clock)


def test_other_account_on_same_device_conflicts(guard: SessionGuard) -> None:
    ada = guard.register("requester-ada", "laptop")
    olu = guard.register("donor-olu", "laptop")

    assert [s.session_id for s in guard.conflict(olu.session_id)] == [ada.session_id]
    assert [s.session_id for s in guard.conflict(ada.session_id)] == [olu.session_id]


def test_no_conflict_for_same_user_or_other_device(guard: SessionGuard) -> None:
    first = guard.register("donor-olu", "laptop")
    guard.register("donor-olu", "laptop")
    guard.register("requester-ada", "phone")

    assert guard.conflict(first.session_id) == []


def test_stale_sessions_do_not_conflict(guard: SessionGuard, clock: Clock) -> None:
    ada = guard.register("requester-ada", "laptop")
    clock.advance(31)
    olu = guard.register("donor-olu", "laptop")

    assert guard.conflict(olu.session_id) == []

    guard.touch(ada.session_id)
    assert [s.session_id for s in guard.conflict(olu.session_id)] == [ada.session_id]


def test_register_uses_given_session_id(guard: SessionGuard) -> None:
    session = guard.register("donor-olu", "laptop", session_id="tab-1")
    assert session.session_id == "tab-1"
    assert guard.is_active("tab-1")
    assert [s.session_id for s in guard.sessions_for_user("donor-olu")] == ["tab-1"]

    with pytest.raises(ValidationError):
        guard.register("", "laptop")


@pytest.mark.asyncio
async def test_force_logout_others_pushes_invalidation(
    guard: SessionGuard, services: Services, users, connect
) -> None:
    ada = guard.register("requester-ada", "laptop")
    olu = guard.register("donor-olu", "laptop")
    elsewhere = guard.register("donor-mei", "phone")

    ada_tab = connect(users["requester-ada"], session_id=ada.session_id)
    olu_tab = connect(users["donor-olu"], session_id=olu.session_id)
    await services.coordinator.join("req-ikeja-high", ada_tab)
    await services.coordinator.join("req-ikeja-high", olu_tab)

    invalidated = await guard.force_logout_others(olu.session_id)

    assert [s.session_id for s in invalidated] == [ada.session_id]
    assert not guard.is_active(ada.session_id)
    assert guard.is_active(olu.session_id)
    assert guard.is_active(elsewhere.session_id)
    assert ada_tab.events("session-invalidated") == [{"sessionId": ada.session_id}]
    assert olu_tab.events("session-invalidated") == []
    assert [u.id for u in services.coordinator.presence("req-ikeja-high")] == ["donor-olu"]
    assert guard.sessions_for_user("requester-ada") == []


@pytest.mark.asyncio
async def test_inactive_session_cannot_log_out_others(guard: SessionGuard) -> None:
    mine = guard.register("donor-olu", "laptop")
    other = guard.register("requester-ada", "laptop")
    await guard.force_logout_others(other.session_id)

    with pytest.raises(ValidationError):
        await guard.force_logout_others(mine.session_id)


@pytest.mark.asyncio
async def test_end_and_unknown_sessions(guard: SessionGuard) -> None:
    session = guard.register("donor-olu", "laptop")
    await guard.end(session.session_id)
    assert not guard.is_active(session.session_id)

    assert not guard.is_active("missing")
    with pytest.raises(NotFound):
        guard.conflict("missing")
    with pytest.raises(NotFound):
        guard.touch("missing")
    with pytest.raises(NotFound):
        await guard.end("missing")


def test_guard_works_without_coordinator(clock: Clock) -> None:
    guard = SessionGuard(clock=clock)
    a = guard.register("a", "device")
    guard.register("b", "device")
    assert len(guard.conflict(a.session_id)) == 1


def test_owned_by_checks_the_user(guard: SessionGuard) -> None:
    session = guard.register("donor-olu", "laptop")

    assert guard.owned_by(session.session_id, "donor-olu").session_id == session.session_id
    with pytest.raises(Forbidden):
        guard.owned_by(session.session_id, "requester-ada")
    with pytest.raises(NotFound):
        guard.owned_by("missing", "donor-olu")
