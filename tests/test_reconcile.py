"""Tests for reconnecting servers when the config changes."""

import asyncio

from mcp_broker.mcp_manager.config import MCPConfigStorage
from mcp_broker.mcp_manager.models import ServerStatus


def server(manager, name):
    return next(s for s in manager.get_servers() if s.name == name)


class TestCarryForward:
    async def test_unchanged_server_keeps_client(self, manager, factory, config):
        client = server(manager, "alpha").client

        await manager.handle_settings_update(config.copy())

        assert server(manager, "alpha").client is client
        assert len(factory.clients) == 2
        assert not client.closed

    async def test_tool_option_change_does_not_reconnect(self, manager, factory, config):
        client = server(manager, "alpha").client
        updated = config.copy()
        updated.set_tool_option("alpha", "echo", disabled=True)

        await manager.handle_settings_update(updated)

        alpha = server(manager, "alpha")
        assert alpha.client is client
        assert alpha.config is updated.servers["alpha"]
        assert alpha.config.tool_option("echo").disabled

    async def test_error_state_is_not_retried(self, make_manager, factory, config):
        factory.connect_errors["alpha"] = RuntimeError("spawn failed")
        manager = make_manager(config)
        await manager.initialize()

        await manager.handle_settings_update(config.copy())

        assert server(manager, "alpha").status is ServerStatus.ERROR
        assert len(factory.clients_for("alpha")) == 1
        await manager.cleanup()


class TestChanges:
    async def test_changed_parameters_reconnect(self, manager, factory, config):
        old_client = server(manager, "alpha").client
        updated = config.copy()
        updated.set_env("alpha", "TOKEN", "rotated")

        await manager.handle_settings_update(updated)
        await manager._registry.drain()

        alpha = server(manager, "alpha")
        assert alpha.status is ServerStatus.CONNECTED
        assert alpha.client is not old_client
        assert alpha.client.parameters.env["TOKEN"] == "rotated"
        assert old_client.closed
        assert not server(manager, "beta").client.closed

    async def test_removed_server_is_closed(self, manager, config):
        beta_client = server(manager, "beta").client
        updated = config.copy()
        updated.remove_server("beta")

        await manager.handle_settings_update(updated)
        await manager._registry.drain()

        assert [s.name for s in manager.get_servers()] == ["alpha"]
        assert beta_client.closed

    async def test_disabled_server_is_closed(self, manager, config):
        alpha_client = server(manager, "alpha").client
        updated = config.copy()
        updated.disable_server("alpha")

        await manager.handle_settings_update(updated)
        await manager._registry.drain()

        assert server(manager, "alpha").status is ServerStatus.DISCONNECTED
        assert alpha_client.closed

    async def test_added_server_connects(self, manager, factory, config):
        factory.tools["gamma"] = []
        updated = config.copy()
        updated.add_server("gamma", "gamma-server")

        await manager.handle_settings_update(updated)

        assert [s.name for s in manager.get_servers()] == ["alpha", "beta", "gamma"]
        assert server(manager, "gamma").status is ServerStatus.CONNECTED

    async def test_connecting_state_is_published_first(self, manager, factory, config):
        gate = asyncio.Event()
        factory.connect_gates["alpha-v2"] = gate
        updated = config.copy()
        updated.remove_server("alpha")
        updated.add_server("alpha", "alpha-v2")

        task = asyncio.create_task(manager.handle_settings_update(updated))
        await asyncio.sleep(0)

        assert server(manager, "alpha").status is ServerStatus.CONNECTING
        assert server(manager, "beta").status is ServerStatus.CONNECTED

        gate.set()
        await task

        assert server(manager, "alpha").status is ServerStatus.CONNECTED
        assert server(manager, "alpha").client.parameters.command == "alpha-v2"


class TestRace:
    async def test_stale_connect_does_not_overwrite_newer_one(self, manager, factory, config):
        slow_gate = asyncio.Event()
        factory.connect_gates["alpha-slow"] = slow_gate

        first = config.copy()
        first.remove_server("alpha")
        first.add_server("alpha", "alpha-slow")
        second = config.copy()
        second.remove_server("alpha")
        second.add_server("alpha", "alpha-fast")

        slow_update = asyncio.create_task(manager.handle_settings_update(first))
        await asyncio.sleep(0)
        await manager.handle_settings_update(second)

        fast_state = server(manager, "alpha")
        assert fast_state.status is ServerStatus.CONNECTED
        assert fast_state.client.parameters.command == "alpha-fast"

        slow_gate.set()
        await slow_update
        await manager._registry.drain()

        assert server(manager, "alpha") is fast_state
        slow_client = next(
            c for c in factory.clients_for("alpha")
            if c.parameters.command == "alpha-slow"
        )
        assert slow_client.closed
        assert not fast_state.client.closed

    async def test_connect_finishing_after_removal_is_closed(self, manager, factory, config):
        gate = asyncio.Event()
        factory.connect_gates["alpha-v2"] = gate
        changed = config.copy()
        changed.remove_server("alpha")
        changed.add_server("alpha", "alpha-v2")
        removed = config.copy()
        removed.remove_server("alpha")

        pending = asyncio.create_task(manager.handle_settings_update(changed))
        await asyncio.sleep(0)
        await manager.handle_settings_update(removed)
        gate.set()
        await pending
        await manager._registry.drain()

        assert [s.name for s in manager.get_servers()] == ["beta"]
        assert all(c.closed for c in factory.clients_for("alpha"))


class TestSettingsListener:
    async def test_saved_config_is_applied(self, make_manager, config, tmp_path):
        storage = MCPConfigStorage(tmp_path / "mcp.json")
        manager = make_manager(config, register_settings_listener=storage.on_change)
        await manager.initialize()

        updated = config.copy()
        updated.disable_server("beta")
        storage.save(updated)
        await asyncio.gather(*manager._background)

        assert server(manager, "beta").status is ServerStatus.DISCONNECTED
        await manager.cleanup()

    def test_save_outside_event_loop_is_deferred(self, make_manager, config, tmp_path):
        storage = MCPConfigStorage(tmp_path / "mcp.json")
        manager = make_manager(config, register_settings_listener=storage.on_change)
        received = []
        storage.on_change(received.append)

        updated = config.copy()
        updated.disable_server("beta")
        storage.save(updated)

        assert len(received) == 1

        async def start():
            await manager.initialize()
            states = {s.name: s.status for s in manager.get_servers()}
            await manager.cleanup()
            return states

        states = asyncio.run(start())
        assert states == {
            "alpha": ServerStatus.CONNECTED,
            "beta": ServerStatus.DISCONNECTED,
        }
