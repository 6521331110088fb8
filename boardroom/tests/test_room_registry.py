import pytest

from boardroom.services.room_registry import RoomRegistry


@pytest.mark.anyio("asyncio")
async def test_join_reports_first_presence_and_sorted_members():
    registry = RoomRegistry()

    first, members = await registry.join("MTG-1", "user-b", "conn-b")
    assert first is True
    assert members == ["user-b"]

    first, members = await registry.join("MTG-1", "user-a", "conn-a")
    assert first is True
    assert members == ["user-a", "user-b"]


@pytest.mark.anyio("asyncio")
async def test_rejoin_from_same_connection_is_idempotent():
    registry = RoomRegistry()
    await registry.join("MTG-1", "user-a", "conn-a")

    first, members = await registry.join("MTG-1", "user-a", "conn-a")

    assert first is False
    assert members == ["user-a"]
    assert await registry.leave("MTG-1", "user-a", "conn-a") is True
    assert await registry.members_of("MTG-1") == []


@pytest.mark.anyio("asyncio")
async def test_user_stays_present_until_last_connection_leaves():
    registry = RoomRegistry()
    await registry.join("MTG-1", "user-a", "tab-1")
    first, _ = await registry.join("MTG-1", "user-a", "tab-2")
    assert first is False

    assert await registry.leave("MTG-1", "user-a", "tab-1") is False
    assert await registry.members_of("MTG-1") == ["user-a"]

    assert await registry.leave("MTG-1", "user-a", "tab-2") is True
    assert await registry.members_of("MTG-1") == []


@pytest.mark.anyio("asyncio")
async def test_leave_unknown_room_is_a_no_op():
    registry = RoomRegistry()

    assert await registry.leave("MTG-missing", "user-a", "conn-a") is False
    assert await registry.members_of("MTG-missing") == []


@pytest.mark.anyio("asyncio")
async def test_remove_everywhere_for_connection_returns_vacated_rooms():
    registry = RoomRegistry()
    await registry.join("MTG-2", "user-a", "conn-a")
    await registry.join("MTG-1", "user-a", "conn-a")
    await registry.join("MTG-1", "user-b", "conn-b")
    # user-a also holds MTG-3 through another tab, so that room is not vacated.
    await registry.join("MTG-3", "user-a", "conn-a")
    await registry.join("MTG-3", "user-a", "conn-other")

    vacated = await registry.remove_everywhere("user-a", "conn-a")

    assert vacated == ["MTG-1", "MTG-2"]
    assert await registry.members_of("MTG-1") == ["user-b"]
    assert await registry.members_of("MTG-2") == []
    assert await registry.members_of("MTG-3") == ["user-a"]
    assert await registry.remove_everywhere("user-a", "conn-a") == []
    assert await registry.leave("MTG-3", "user-a", "conn-other") is True


@pytest.mark.anyio("asyncio")
async def test_remove_everywhere_without_connection_evicts_every_tab():
    registry = RoomRegistry()
    await registry.join("MTG-1", "user-a", "tab-1")
    await registry.join("MTG-1", "user-a", "tab-2")
    await registry.join("MTG-2", "user-a", "tab-2")
    await registry.join("MTG-2", "user-b", "conn-b")

    vacated = await registry.remove_everywhere("user-a")

    assert vacated == ["MTG-1", "MTG-2"]
    assert await registry.members_of("MTG-1") == []
    assert await registry.members_of("MTG-2") == ["user-b"]
    assert await registry.remove_everywhere("user-a", "tab-2") == []


@pytest.mark.anyio("asyncio")
async def test_clear_drops_all_rooms():
    registry = RoomRegistry()
    await registry.join("MTG-1", "user-a", "conn-a")

    await registry.clear()

    assert await registry.members_of("MTG-1") == []
    assert await registry.leave("MTG-1", "user-a", "conn-a") is False
