"""Shared fixtures: an in-memory firewall backend with call tracking."""

from typing import Dict, List, Set, Tuple

import pytest

from azure_sql_agent.cli import AzCliError, FirewallBackend, FirewallRule, ServerConfig


class MockFirewallBackend(FirewallBackend):
    """In-memory rule storage per server name, recording every remote call."""

    def __init__(self) -> None:
        self.rules: Dict[str, Dict[str, FirewallRule]] = {}
        self.select_calls: List[str] = []
        self.list_calls: List[str] = []
        self.delete_calls: List[Tuple[str, str]] = []
        self.create_calls: List[Tuple[str, str, str, str]] = []
        self.failing_servers: Set[str] = set()
        self.failing_operations: Set[str] = set()

    def add_rule(self, server: str, name: str, start_ip: str, end_ip: str = "") -> None:
        self.rules.setdefault(server, {})[name] = FirewallRule(name, start_ip, end_ip or start_ip)

    def names(self, server: str) -> List[str]:
        return sorted(self.rules.get(server, {}))

    def _maybe_fail(self, server: ServerConfig, operation: str) -> None:
        if server.name in self.failing_servers and (
            not self.failing_operations or operation in self.failing_operations
        ):
            raise AzCliError(f"ERROR: {operation} failed for {server.name}")

    def select_subscription(self, server: ServerConfig) -> None:
        self.select_calls.append(server.subscription)
        self._maybe_fail(server, "select")

    def list_rules(self, server: ServerConfig) -> List[FirewallRule]:
        self.list_calls.append(server.name)
        self._maybe_fail(server, "list")
        return list(self.rules.get(server.name, {}).values())

    def delete_rule(self, server: ServerConfig, name: str) -> None:
        self.delete_calls.append((server.name, name))
        self._maybe_fail(server, "delete")
        self.rules.get(server.name, {}).pop(name, None)

    def create_rule(self, server: ServerConfig, name: str, start_ip: str, end_ip: str) -> None:
        self.create_calls.append((server.name, name, start_ip, end_ip))
        self._maybe_fail(server, "create")
        self.add_rule(server.name, name, start_ip, end_ip)


@pytest.fixture
def firewall() -> MockFirewallBackend:
    return MockFirewallBackend()
