"""Tests for observer fan-out, filtering and slow/broken observer isolation."""

import pytest

from guardlink.commands.models import Command, CommandAction
from guardlink.errors import DeviceNotFound
from guardlink.presence.channel import ObserverRole, PresenceChannel
from guardlink.presence.events import CommandAcknowledged, CommandIssued, event_adapter
from guardlink.registry.models import LockState
from guardlink.registry.registry import DeviceRegistry


def _issued(command_id: int, device_id: str = "dev-1", owner: str = "fam-1") -> CommandIssued:
    return CommandIssued(
        device_id=device_id,
        owner_member_id=owner,
        command_id=command_id,
        action=CommandAction.lock,
    )


@pytest.fixture
def family(registry: DeviceRegistry) -> DeviceRegistry:
    registry.register("dev-1", "fam-1", name="Emma's phone")
    registry.register("dev-2", "fam-1")
    registry.register("dev-9", "fam-2")
    return registry


class TestConnect:
    @pytest.mark.asyncio
    async def test_dashboard_gets_welcome_and_snapshot(
        self, family, channel, transport_cls, settle
    ):
        transport = transport_cls()
        session_id = await channel.connect(
            transport, ObserverRole.dashboard, owner_member_id="fam-1"
        )
        await settle()

        assert transport.types() == ["welcome", "snapshot"]
        assert transport.sent[0]["session_id"] == session_id
        devices = transport.sent[1]["devices"]
        assert [d["device_id"] for d in devices] == ["dev-1", "dev-2"]
        assert devices[0]["lock_state"] == "unlocked"
        await channel.close()

    @pytest.mark.asyncio
    async def test_agent_gets_own_device_only(self, family, channel, transport_cls, settle):
        transport = transport_cls()
        await channel.connect(transport, ObserverRole.device_agent, device_id="dev-2")
        await settle()

        snapshot = transport.of_type("snapshot")[0]
        assert [d["device_id"] for d in snapshot["devices"]] == ["dev-2"]
        assert snapshot["owner_member_id"] == "fam-1"
        await channel.close()

    @pytest.mark.asyncio
    async def test_agent_for_unknown_device_rejected(self, family, channel, transport_cls):
        with pytest.raises(DeviceNotFound):
            await channel.connect(transport_cls(), ObserverRole.device_agent, device_id="ghost")
        assert len(channel) == 0

    @pytest.mark.asyncio
    async def test_agent_needs_device_id(self, family, channel, transport_cls):
        with pytest.raises(ValueError):
            await channel.connect(transport_cls(), ObserverRole.device_agent)

    @pytest.mark.asyncio
    async def test_pending_command_replayed_on_connect(
        self, family, channel, transport_cls, settle
    ):
        family.apply(
            Command(id=7, device_id="dev-1", action=CommandAction.lock, issued_by="parent-1")
        )
        transport = transport_cls()
        await channel.connect(transport, ObserverRole.device_agent, device_id="dev-1")
        await settle()

        assert transport.types() == ["welcome", "snapshot", "command_issued"]
        replay = transport.sent[2]
        assert replay["command_id"] == 7
        assert replay["action"] == "lock"
        assert replay["replay"] is True

        decoded = event_adapter.validate_python(replay)
        assert isinstance(decoded, CommandIssued)
        assert decoded.action == CommandAction.lock
        await channel.close()


class TestPublish:
    @pytest.mark.asyncio
    async def test_events_arrive_in_publish_order(self, family, channel, transport_cls, settle):
        transport = transport_cls()
        await channel.connect(transport, ObserverRole.dashboard)
        for command_id in range(1, 6):
            channel.publish(_issued(command_id))
        await settle()

        issued = transport.of_type("command_issued")
        assert [m["command_id"] for m in issued] == [1, 2, 3, 4, 5]
        await channel.close()

    @pytest.mark.asyncio
    async def test_dashboard_filtered_by_family(self, family, channel, transport_cls, settle):
        fam1 = transport_cls()
        fam2 = transport_cls()
        everyone = transport_cls()
        await channel.connect(fam1, ObserverRole.dashboard, owner_member_id="fam-1")
        await channel.connect(fam2, ObserverRole.dashboard, owner_member_id="fam-2")
        await channel.connect(everyone, ObserverRole.dashboard)

        assert channel.publish(_issued(1, "dev-9", "fam-2")) == 2
        await settle()

        assert fam1.of_type("command_issued") == []
        assert len(fam2.of_type("command_issued")) == 1
        assert len(everyone.of_type("command_issued")) == 1
        await channel.close()

    @pytest.mark.asyncio
    async def test_agent_only_sees_own_commands(self, family, channel, transport_cls, settle):
        agent = transport_cls()
        await channel.connect(agent, ObserverRole.device_agent, device_id="dev-1")

        channel.publish(_issued(1, "dev-2"))
        channel.publish(_issued(2, "dev-1"))
        channel.publish(
            CommandAcknowledged(
                device_id="dev-1",
                owner_member_id="fam-1",
                command_id=2,
                result_state=LockState.locked,
            )
        )
        await settle()

        issued = agent.of_type("command_issued")
        assert [m["command_id"] for m in issued] == [2]
        assert agent.of_type("command_acknowledged") == []
        await channel.close()

    @pytest.mark.asyncio
    async def test_publish_without_observers(self, family, channel):
        assert channel.publish(_issued(1)) == 0


class TestIsolation:
    @pytest.mark.asyncio
    async def test_broken_observer_dropped_others_unaffected(
        self, family, channel, transport_cls, settle
    ):
        healthy = transport_cls()
        broken = transport_cls(fail=True)
        await channel.connect(healthy, ObserverRole.dashboard)
        await channel.connect(broken, ObserverRole.dashboard)
        await settle()

        assert len(channel) == 1
        assert broken.closed_with == 1011

        assert channel.publish(_issued(1)) == 1
        await settle()
        assert len(healthy.of_type("command_issued")) == 1
        await channel.close()

    @pytest.mark.asyncio
    async def test_hanging_observer_times_out(self, family, registry, transport_cls, settle):
        channel = PresenceChannel(registry, buffer_limit=10, send_timeout=0.1)
        healthy = transport_cls()
        stuck = transport_cls(hang=True)
        await channel.connect(healthy, ObserverRole.dashboard)
        await channel.connect(stuck, ObserverRole.dashboard)

        channel.publish(_issued(1))
        await settle(0.3)

        assert [o.transport for o in channel.observers()] == [healthy]
        assert stuck.closed_with == 1011
        assert len(healthy.of_type("command_issued")) == 1
        await channel.close()

    @pytest.mark.asyncio
    async def test_backlogged_observer_dropped(self, family, registry, transport_cls, settle):
        channel = PresenceChannel(registry, buffer_limit=5, send_timeout=30)
        healthy = transport_cls()
        stuck = transport_cls(hang=True)
        await channel.connect(healthy, ObserverRole.dashboard)
        await channel.connect(stuck, ObserverRole.dashboard)
        await settle()

        for command_id in range(1, 11):
            channel.publish(_issued(command_id))
            await settle(0.01)

        assert len(channel) == 1
        assert stuck.closed_with == 1011
        issued = healthy.of_type("command_issued")
        assert [m["command_id"] for m in issued] == list(range(1, 11))
        await channel.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_disconnect(self, family, channel, transport_cls):
        session_id = await channel.connect(transport_cls(), ObserverRole.dashboard)
        assert len(channel) == 1
        await channel.disconnect(session_id)
        assert len(channel) == 0
        # Unknown or repeated disconnects are harmless
        await channel.disconnect(session_id)

    @pytest.mark.asyncio
    async def test_close_drops_everyone(self, family, channel, transport_cls):
        transports = [transport_cls() for _ in range(3)]
        for t in transports:
            await channel.connect(t, ObserverRole.dashboard)
        await channel.close()
        assert len(channel) == 0
        assert all(t.closed_with == 1011 for t in transports)
