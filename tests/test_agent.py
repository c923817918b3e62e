"""Unit tests for the Agent polling loop.

The loop is driven one tick at a time with a fake clock, real address
observer logic (with stubbed probes) and the in-memory firewall backend.
"""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from azure_sql_agent.cli import (
    AddressObserver,
    Agent,
    AgentConfig,
    ConfigError,
    DesktopNotifier,
    FirewallReconciler,
    ProbeError,
    RunContext,
    ServerConfig,
)

LAN = ("192.168.1.10", "192.168.1.1", "eth0")


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(*names: str, prefix: str = "myprefix") -> AgentConfig:
    return AgentConfig(
        prefix=prefix,
        servers=tuple(ServerConfig(f"sub-{n}", "rg", n) for n in names),
    )


def create_test_agent(firewall, tmp_path: Path, config=None, public="203.0.113.5", lan=LAN):
    clock = FakeClock()
    internal_probe = MagicMock(return_value=lan)
    public_probe = MagicMock(return_value=public)
    notifier = MagicMock(spec=DesktopNotifier)
    agent = Agent(
        config=config or make_config("A", "B"),
        observer=AddressObserver(internal_probe=internal_probe, public_probe=public_probe),
        reconciler=FirewallReconciler(firewall, notifier),
        config_path=str(tmp_path / "config.json"),
        public_interval=300,
        clock=clock,
        sleep=MagicMock(),
    )
    return agent, clock, internal_probe, public_probe


# =============================================================================
# Triggers
# =============================================================================


def test_first_tick_reconciles_all_servers(firewall, tmp_path: Path) -> None:
    agent, _, _, public_probe = create_test_agent(firewall, tmp_path)

    result = agent.tick()

    assert result is not None
    assert result.rules_created == 2
    assert firewall.list_calls == ["A", "B"]
    public_probe.assert_called_once()


def test_no_public_check_before_timer_elapses(firewall, tmp_path: Path) -> None:
    agent, clock, _, public_probe = create_test_agent(firewall, tmp_path)
    agent.tick()
    public_probe.reset_mock()

    for _ in range(5):
        clock.advance(1)
        assert agent.tick() is None

    public_probe.assert_not_called()
    assert agent.ctx.next_public_check == 1300.0


def test_timer_rechecks_without_reconciling_when_unchanged(firewall, tmp_path: Path) -> None:
    agent, clock, _, public_probe = create_test_agent(firewall, tmp_path)
    agent.tick()
    firewall.list_calls.clear()
    public_probe.reset_mock()

    clock.advance(301)
    assert agent.tick() is None

    public_probe.assert_called_once()
    assert firewall.list_calls == []
    assert agent.ctx.next_public_check == clock.now + 300


def test_timer_detects_public_change(firewall, tmp_path: Path) -> None:
    agent, clock, _, public_probe = create_test_agent(firewall, tmp_path)
    agent.tick()
    public_probe.return_value = "203.0.113.9"

    clock.advance(301)
    result = agent.tick()

    assert result is not None
    assert result.rules_created == 2
    assert result.rules_deleted == 2
    assert firewall.names("A") == ["myprefix-3405803785"]


def test_internal_change_triggers_public_check(firewall, tmp_path: Path) -> None:
    agent, clock, internal_probe, public_probe = create_test_agent(firewall, tmp_path)
    agent.tick()
    internal_probe.return_value = ("10.1.0.7", "10.1.0.1", "wlan0")
    public_probe.return_value = "198.51.100.20"
    public_probe.reset_mock()

    clock.advance(1)
    result = agent.tick()

    public_probe.assert_called_once()
    assert result is not None
    assert agent.ctx.public_ip == "198.51.100.20"


def test_internal_change_with_same_public_address_skips_reconcile(firewall, tmp_path: Path) -> None:
    agent, clock, internal_probe, _ = create_test_agent(firewall, tmp_path)
    agent.tick()
    firewall.list_calls.clear()
    internal_probe.return_value = ("10.1.0.7", "10.1.0.1", "wlan0")

    clock.advance(1)
    assert agent.tick() is None
    assert firewall.list_calls == []


def test_public_probe_failure_skips_reconcile(firewall, tmp_path: Path) -> None:
    agent, _, _, public_probe = create_test_agent(firewall, tmp_path)
    public_probe.side_effect = ProbeError("offline")

    assert agent.tick() is None
    assert firewall.list_calls == []
    assert agent.ctx.public_ip is None


# =============================================================================
# Forced Reload
# =============================================================================


def test_forced_reload_with_known_address_reconciles_immediately(firewall, tmp_path: Path) -> None:
    (tmp_path / "config.json").write_text(
        json.dumps(
            {
                "prefix": "newprefix",
                "servers": [{"subscription": "s", "resourceGroup": "rg", "name": "A"}],
            }
        )
    )
    agent, clock, internal_probe, public_probe = create_test_agent(firewall, tmp_path)
    agent.tick()
    internal_probe.reset_mock()
    public_probe.reset_mock()

    agent.ctx.reload_requested.set()
    clock.advance(1)
    result = agent.tick()

    assert result is not None
    assert not agent.ctx.reload_requested.is_set()
    internal_probe.assert_not_called()
    public_probe.assert_not_called()
    assert agent.config.prefix == "newprefix"
    assert "newprefix-3405803781" in firewall.names("A")


def test_forced_reload_waits_for_public_address(firewall, tmp_path: Path) -> None:
    agent, clock, internal_probe, public_probe = create_test_agent(firewall, tmp_path)
    public_probe.side_effect = ProbeError("offline")
    agent.ctx.reload_requested.set()

    assert agent.tick() is None
    assert agent.ctx.reload_requested.is_set()
    internal_probe.assert_not_called()

    public_probe.side_effect = None
    clock.advance(1)
    result = agent.tick()

    assert result is not None
    assert not agent.ctx.reload_requested.is_set()

    # the pending reload does not cause a second run
    firewall.list_calls.clear()
    clock.advance(1)
    assert agent.tick() is None
    assert firewall.list_calls == []


def test_failed_reload_keeps_previous_config(firewall, tmp_path: Path) -> None:
    (tmp_path / "config.json").write_text("prefix: [unclosed\n")
    agent, clock, _, _ = create_test_agent(firewall, tmp_path)
    agent.tick()
    previous = agent.config

    agent.ctx.reload_requested.set()
    clock.advance(1)
    agent.tick()

    assert agent.config is previous


# =============================================================================
# Failures
# =============================================================================


def test_reconcile_failure_keeps_loop_alive_and_retries_later(firewall, tmp_path: Path) -> None:
    firewall.failing_servers = {"A"}
    agent, clock, _, _ = create_test_agent(firewall, tmp_path)

    assert agent.tick() is None
    assert agent.ctx.public_ip is None

    firewall.failing_servers = set()
    clock.advance(1)
    assert agent.tick() is None

    clock.advance(300)
    result = agent.tick()
    assert result is not None
    assert result.servers == ["A", "B"]


def test_missing_prefix_is_fatal(firewall, tmp_path: Path) -> None:
    agent, _, _, _ = create_test_agent(firewall, tmp_path, config=make_config("A", prefix=""))

    with pytest.raises(ConfigError):
        agent.tick()


def test_run_forever_sleeps_between_ticks(firewall, tmp_path: Path) -> None:
    agent, _, _, _ = create_test_agent(firewall, tmp_path)
    agent.internal_interval = 1
    agent._sleep = MagicMock(side_effect=[None, KeyboardInterrupt])

    with pytest.raises(KeyboardInterrupt):
        agent.run_forever()

    assert agent._sleep.call_count == 2
    agent._sleep.assert_called_with(1)


def test_default_context_schedules_first_public_check(firewall, tmp_path: Path) -> None:
    agent, clock, _, _ = create_test_agent(firewall, tmp_path)

    assert isinstance(agent.ctx, RunContext)
    assert agent.ctx.next_public_check == clock.now + 300
