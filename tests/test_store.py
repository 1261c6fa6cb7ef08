"""Tests for the application state container."""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from fasting_tracker.adapters.sqlite_gateway import SqliteGateway
from fasting_tracker.domain.achievements import (
    LONGEST_FAST,
    STREAK_7,
    WEIGHT_MILESTONE,
)
from fasting_tracker.domain.fasting import FastingSession
from fasting_tracker.errors import (
    DataIntegrityWarning,
    SessionAlreadyActiveError,
    StorageError,
    ValidationError,
)
from fasting_tracker.services.store import AppState, AppStore
from tests.conftest import (
    NOW,
    TODAY,
    FakeClock,
    FlakyGateway,
    completed_session,
    create_legacy_achievements,
    days_ago,
)


def _unlocked(store: AppStore) -> set[str]:
    return {a.type for a in store.state.achievements if a.is_unlocked}


def test_initialize_loads_what_it_can(gateway: SqliteGateway, clock: FakeClock) -> None:
    flaky = FlakyGateway(gateway, failing={"list_achievements", "list_weight_entries"})
    store = AppStore(gateway=flaky, clock=clock)

    async def scenario() -> AppState:
        await gateway.initialize_schema()
        await gateway.start_fasting_session("20:4", NOW - timedelta(hours=3))
        await gateway.add_hydration_entry(400, TODAY)
        return await store.initialize()

    state = asyncio.run(scenario())

    assert state.initialized
    assert state.current_session is not None
    assert state.current_session.preset_type == "20:4"
    assert state.achievements == []
    assert state.weight_entries == []
    assert state.daily_hydration_total == 400.0
    assert "get_user_profile" in flaky.calls


def test_initialize_completes_when_schema_setup_fails(
    gateway: SqliteGateway, clock: FakeClock
) -> None:
    flaky = FlakyGateway(gateway, failing={"initialize_schema"})
    store = AppStore(gateway=flaky, clock=clock)

    state = asyncio.run(store.initialize())

    assert state.initialized
    assert state.current_session is None
    assert state.achievements == []


def test_start_and_end_fasting(store: AppStore, clock: FakeClock) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await store.initialize()
        started = await store.start_fasting("16:8")
        clock.advance(hours=16)
        closed = await store.end_fasting()
        stored = await store.gateway.get_fasting_stats()
        return started, closed, stored

    started, closed, stats = asyncio.run(scenario())

    assert started.start_time == NOW
    assert closed is not None
    assert closed.id == started.id
    assert closed.is_completed
    assert closed.duration_hours == 16.0
    assert store.state.current_session is None
    assert stats.total_sessions == 1


def test_end_fasting_without_session_returns_none(store: AppStore) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await store.initialize()
        return await store.end_fasting()

    assert asyncio.run(scenario()) is None


def test_start_fasting_rejects_unknown_preset_and_second_session(
    store: AppStore,
) -> None:
    async def scenario() -> None:
        await store.initialize()
        with pytest.raises(ValidationError):
            await store.start_fasting("36:12")
        await store.start_fasting("18:6")
        with pytest.raises(SessionAlreadyActiveError):
            await store.start_fasting("16:8")

    asyncio.run(scenario())

    assert store.state.current_session is not None
    assert store.state.current_session.preset_type == "18:6"


def test_failed_close_keeps_the_session_open(
    gateway: SqliteGateway, clock: FakeClock
) -> None:
    flaky = FlakyGateway(gateway, failing={"close_fasting_session"})
    store = AppStore(gateway=flaky, clock=clock)

    async def scenario() -> FastingSession:
        await store.initialize()
        session = await store.start_fasting("16:8")
        clock.advance(hours=2)
        with pytest.raises(StorageError):
            await store.end_fasting()
        return session

    session = asyncio.run(scenario())

    assert store.state.current_session == session


def test_fasting_timer_tracks_the_clock(store: AppStore, clock: FakeClock) -> None:
    async def scenario() -> None:
        await store.initialize()
        await store.start_fasting("18:6")

    asyncio.run(scenario())
    clock.advance(hours=2)
    timer = store.get_fasting_timer()

    assert timer is not None
    assert timer.elapsed_seconds == 2 * 3600
    assert timer.remaining_seconds == 16 * 3600
    assert timer.preset_type == "18:6"


def test_fasting_timer_falls_back_to_default_preset(store: AppStore) -> None:
    store.state = replace(
        store.state,
        current_session=FastingSession(
            id=1,
            start_time=NOW - timedelta(hours=1),
            end_time=None,
            duration_hours=None,
            preset_type="custom",
            is_completed=False,
        ),
    )

    timer = store.get_fasting_timer()

    assert timer is not None
    assert timer.target_seconds == 16 * 3600
    assert store.get_fasting_timer(NOW - timedelta(hours=2)).elapsed_seconds == 0


@pytest.mark.parametrize("value", [0, -1, 500.1, "abc", True, None, float("nan")])
def test_add_weight_rejects_out_of_range_values(store: AppStore, value: object) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await store.initialize()
        with pytest.raises(ValidationError):
            await store.add_weight(value)
        return await store.gateway.list_weight_entries()

    assert asyncio.run(scenario()) == []


def test_add_weight_records_today(store: AppStore) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await store.initialize()
        await store.add_weight(500)
        return await store.add_weight(70.5)

    entries = asyncio.run(scenario())

    assert entries[0].weight == 70.5
    assert entries[0].date == TODAY
    assert len(entries) == 2
    assert store.state.current_weight == 70.5


def test_hydration_corrections_are_summed(store: AppStore) -> None:
    async def scenario() -> list[float]:
        await store.initialize()
        first = await store.add_hydration(250)
        second = await store.add_hydration(-250)
        with pytest.raises(ValidationError):
            await store.add_hydration("a glass")
        return [first, second, await store.load_daily_hydration()]

    assert asyncio.run(scenario()) == [250.0, 0.0, 0.0]
    assert store.state.daily_hydration_total == 0.0


def test_streak_of_seven_unlocks_once(store: AppStore) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await store.initialize()
        for offset in range(6):
            await store.gateway.save_fasting_session(completed_session(offset))
        six_days = await store.check_streak_achievements()
        await store.gateway.save_fasting_session(completed_session(6))
        seven_days = await store.check_streak_achievements()
        again = await store.check_streak_achievements()
        return six_days, seven_days, again

    six_days, seven_days, again = asyncio.run(scenario())

    assert six_days == []
    assert seven_days == [STREAK_7]
    assert again == []
    assert _unlocked(store) == {STREAK_7}


def test_long_average_unlocks_longest_fast(store: AppStore) -> None:
    async def scenario() -> list[str]:
        await store.initialize()
        await store.gateway.save_fasting_session(completed_session(3, hours=30.0))
        return await store.check_streak_achievements()

    assert asyncio.run(scenario()) == [LONGEST_FAST]


def test_ending_a_fast_checks_achievements(store: AppStore, clock: FakeClock) -> None:
    async def scenario() -> None:
        await store.initialize()
        await store.start_fasting("extended")
        clock.advance(hours=26)
        await store.end_fasting()

    asyncio.run(scenario())

    assert _unlocked(store) == {LONGEST_FAST}


def test_weekly_stats_keep_previous_values_on_partial_failure(
    store: AppStore, gateway: SqliteGateway
) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await store.initialize()
        await gateway.save_fasting_session(completed_session(1, hours=16.0))
        await gateway.save_fasting_session(completed_session(3, hours=18.0))
        await gateway.add_weight_entry(80.0, days_ago(5))
        await gateway.add_weight_entry(79.0, TODAY)
        await gateway.add_hydration_entry(500, TODAY)
        await gateway.add_hydration_entry(300, days_ago(2))
        first = await store.load_weekly_stats()

        await gateway.save_fasting_session(completed_session(0, hours=12.0))
        await gateway.add_hydration_entry(200, TODAY)
        store.gateway = FlakyGateway(gateway, failing={"list_daily_hydration"})
        second = await store.load_weekly_stats()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.fasting.total_sessions == 2
    assert first.fasting.avg_duration == 17.0
    assert first.weight_change == -1.0
    assert first.total_hydration == 800.0
    assert first.current_streak == 1

    assert second.fasting.total_sessions == 3
    assert second.total_hydration == 800.0
    assert second.current_streak == 2
    assert store.state.weekly_stats == second


def test_weekly_chart_data(store: AppStore, gateway: SqliteGateway) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await store.initialize()
        await gateway.save_fasting_session(completed_session(1, hours=16.0))
        await gateway.save_fasting_session(completed_session(6, hours=20.0))
        await gateway.save_fasting_session(completed_session(9, hours=18.0))
        await gateway.add_hydration_entry(500, TODAY)
        return await store.load_weekly_chart_data()

    chart = asyncio.run(scenario())

    assert chart.days[0] == days_ago(6)
    assert chart.days[-1] == TODAY
    assert chart.fasting_hours == [20.0, 0.0, 0.0, 0.0, 0.0, 16.0, 0.0]
    assert chart.hydration_ml == [0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 500.0]


def test_clear_all_data_resets_state(store: AppStore) -> None:
    async def scenario() -> AppState:
        await store.initialize()
        await store.add_weight(80)
        await store.add_hydration(300)
        await store.start_fasting("16:8")
        return await store.clear_all_data()

    state = asyncio.run(scenario())

    assert state.initialized
    assert state.current_session is None
    assert state.weight_entries == []
    assert state.current_weight is None
    assert state.daily_hydration_total == 0.0
    assert len(state.achievements) == 4


def test_export_snapshot(store: AppStore, gateway: SqliteGateway) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await gateway.initialize_schema()
        await gateway.unlock_achievement(STREAK_7, NOW)
        await gateway.save_fasting_session(completed_session(1, hours=16.0))
        await store.initialize()
        await store.add_weight(80)
        return await store.export_snapshot()

    snapshot = asyncio.run(scenario())

    assert snapshot == {
        "exported_at": NOW.isoformat(),
        "weight_entries": [{"date": TODAY.isoformat(), "weight": 80.0}],
        "fasting_stats": {
            "total_sessions": 1,
            "avg_duration": 16.0,
            "total_hours": 16.0,
        },
        "achievements": [
            {
                "type": STREAK_7,
                "title": "7-Day Streak",
                "unlocked_at": NOW.isoformat(),
            }
        ],
    }


def test_duplicate_achievements_warn_and_repair(
    store: AppStore, gateway: SqliteGateway
) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await create_legacy_achievements(gateway, copies=3)
        with pytest.warns(DataIntegrityWarning):
            detected = await store.initialize()
        repaired = await store.repair_duplicate_achievements()
        return detected.duplicate_achievements, repaired

    duplicates, repaired = asyncio.run(scenario())

    assert duplicates == 12
    assert len(repaired) == 4
    assert store.state.duplicate_achievements is None


def test_reset_achievements_locks_everything(store: AppStore) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await store.initialize()
        await store.gateway.save_fasting_session(completed_session(2, hours=25.0))
        await store.check_streak_achievements()
        return await store.reset_achievements()

    achievements = asyncio.run(scenario())

    assert len(achievements) == 4
    assert _unlocked(store) == set()


def test_update_settings_persists_and_reloads(
    store: AppStore, gateway: SqliteGateway, clock: FakeClock
) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await store.initialize()
        await store.update_settings(weight_unit="lb", reminder_time="07:30")
        with pytest.raises(ValidationError):
            await store.update_settings(weight_unit="stone")
        with pytest.raises(ValidationError):
            await store.update_settings(theme="dark")
        reloaded = AppStore(gateway=gateway, clock=clock)
        await reloaded.initialize()
        return await gateway.get_settings(), reloaded.state.settings

    stored, reloaded = asyncio.run(scenario())

    assert stored == {"reminder_time": "07:30", "weight_unit": "lb"}
    assert reloaded.weight_unit == "lb"
    assert reloaded.reminder_time == "07:30"
    assert reloaded.hydration_unit == "ml"


def test_reaching_target_weight_unlocks_milestone(
    store: AppStore, gateway: SqliteGateway, clock: FakeClock
) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        await store.initialize()
        await store.add_weight_entry(80.0, days_ago(10))
        await store.set_target_weight(75)
        before = _unlocked(store)
        await store.add_weight(74.8)
        reloaded = AppStore(gateway=gateway, clock=clock)
        await reloaded.initialize()
        return before, reloaded.state.target_weight

    before, reloaded_target = asyncio.run(scenario())

    assert before == set()
    assert _unlocked(store) == {WEIGHT_MILESTONE}
    assert store.state.target_weight == 75.0
    assert reloaded_target == 75.0


def test_health_summary_uses_profile_height(store: AppStore) -> None:
    async def scenario() -> None:
        await store.initialize()
        with pytest.raises(ValidationError):
            await store.update_user_profile(age=0)
        await store.update_user_profile(name="Sam", height=175)
        await store.add_weight(70)

    assert store.get_health_summary() is None
    asyncio.run(scenario())
    summary = store.get_health_summary()

    assert summary is not None
    assert summary.bmi == pytest.approx(22.86, abs=0.01)
    assert summary.status == "normal"
    assert store.state.user_profile is not None
    assert store.state.user_profile.name == "Sam"


def test_subscribers_receive_state_changes(store: AppStore) -> None:
    received: list[AppState] = []
    unsubscribe = store.subscribe(received.append)

    async def first() -> None:
        await store.initialize()
        await store.add_hydration(250)

    asyncio.run(first())
    count = len(received)
    unsubscribe()

    assert received[-1].daily_hydration_total == 250.0
    assert received[0].initialized
    assert count >= 2
    store._notify()
    assert len(received) == count
