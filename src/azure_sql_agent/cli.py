#!/usr/bin/env python3
"""azure-sql-agent - Keep Azure SQL firewall rules pointed at your public IP

Runs as a long-lived agent on a workstation or small server whose public
address changes from time to time (home/office connections). Every configured
Azure SQL server gets exactly one firewall rule named "<prefix>-<ip-as-int>"
that admits the current public IPv4 address. Stale rules carrying the same
prefix are removed; rules created by hand (other names) are never touched.

The agent drives the Azure CLI (`az`), so it uses whatever account the CLI is
logged into. Run `az login` once before starting the agent.

Configuration file (~/.azure-sql-agent/config.json, created on first run):

    {
      "prefix": "my-prefix",
      "notifications": false,
      "errorNotifications": true,
      "servers": [
        {
          "subscription": "hex-subscription-id",
          "resourceGroup": "resource-group-name",
          "name": "server-name",
          "prefix": "optional-per-server-prefix"
        }
      ]
    }

    Editing the file while the agent runs forces a firewall update.

Environment variables:

    AZURE_SQL_AGENT_HOME       Directory for config, PID file and log
                               (default: ~/.azure-sql-agent)
    LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)
    AZ_COMMAND                 Azure CLI executable (default: az)
    AZ_RETRIES                 Extra attempts for a failing az call (default: 2)
    AZ_RETRY_DELAY_SECONDS     Delay between az attempts (default: 3)
    INTERNAL_CHECK_SECONDS     Local network poll interval (default: 1)
    PUBLIC_CHECK_SECONDS       Periodic public IP recheck interval (default: 300)
    PUBLIC_IP_URL              Service returning the public IPv4 as plain text
                               (default: https://api.ipify.org)
    PUBLIC_IP_TIMEOUT_SECONDS  Timeout for the public IP lookup (default: 5)

Usage:

    azure-sql-agent             start the agent in the background
    azure-sql-agent -f          run in the foreground, logging to the console
    azure-sql-agent -f -d       same, with debug output
    azure-sql-agent --version   show the version number and exit
"""

from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import logging.handlers
import os
import socket
import subprocess
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests
from plyer import notification
from pyroute2 import IPRoute

__version__ = "1.2.0"

# =============================================================================
# Configuration
# =============================================================================

AGENT_HOME = os.getenv("AZURE_SQL_AGENT_HOME", os.path.expanduser("~/.azure-sql-agent"))
CONFIG_PATH = os.path.join(AGENT_HOME, "config.json")
PID_PATH = os.path.join(AGENT_HOME, "agent.pid")
LOG_PATH = os.path.join(AGENT_HOME, "agent.log")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Remote control (Azure CLI)
AZ_COMMAND = os.getenv("AZ_COMMAND", "az")
AZ_RETRIES = int(os.getenv("AZ_RETRIES", "2"))
AZ_RETRY_DELAY_SECONDS = float(os.getenv("AZ_RETRY_DELAY_SECONDS", "3"))

# Polling cadence
INTERNAL_CHECK_SECONDS = float(os.getenv("INTERNAL_CHECK_SECONDS", "1"))
PUBLIC_CHECK_SECONDS = float(os.getenv("PUBLIC_CHECK_SECONDS", "300"))

# Public address lookup
PUBLIC_IP_URL = os.getenv("PUBLIC_IP_URL", "https://api.ipify.org")
PUBLIC_IP_TIMEOUT_SECONDS = float(os.getenv("PUBLIC_IP_TIMEOUT_SECONDS", "5"))

DAEMON_ENV = "AZURE_SQL_AGENT_DAEMON"
NOTIFICATION_TITLE = "Azure SQL Agent"

DEFAULT_CONFIG: Dict[str, Any] = {
    "prefix": "my-prefix",
    "notifications": False,
    "errorNotifications": True,
    "servers": [
        {
            "subscription": "hex-subscription-id",
            "resourceGroup": "resource-group-name",
            "name": "server-name",
        }
    ],
}

# =============================================================================
# Logging Setup
# =============================================================================

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format=LOG_FORMAT,
    datefmt=LOG_DATEFMT,
)
logger = logging.getLogger(__name__)


def configure_logging(log_path: str, *, debug: bool = False, foreground: bool = True) -> None:
    """Attach the rotating agent.log handler and apply the debug toggle.

    In background mode the console handler is dropped, the detached process
    has no terminal to write to.
    """
    root = logging.getLogger()
    Path(log_path).parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=100 * 1024, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    if not foreground:
        for handler in list(root.handlers):
            if type(handler) is logging.StreamHandler:
                root.removeHandler(handler)
    root.addHandler(file_handler)
    if debug:
        root.setLevel(logging.DEBUG)


# =============================================================================
# Errors
# =============================================================================


class AgentError(Exception):
    """Base class for errors raised by the agent."""


class ConfigError(AgentError):
    """The configuration is unusable (unreadable file, missing prefix)."""


class AzCliError(AgentError):
    """An az invocation kept failing after all retries."""

    def __init__(self, message: str, args: Sequence[str] = ()):
        super().__init__(message)
        self.stderr = message
        self.az_args = list(args)


class ReconcileError(AgentError):
    """Updating the firewall of one server failed."""

    def __init__(self, server: "ServerConfig", cause: Exception):
        super().__init__(f"Failed to update firewall of server '{server.name}': {cause}")
        self.server = server
        self.cause = cause


class ProbeError(AgentError):
    """A network probe could not determine an address."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ServerConfig:
    """One Azure SQL server whose firewall is managed by the agent."""

    subscription: str
    resource_group: str
    name: str
    prefix: str = ""

    def effective_prefix(self, default: str) -> str:
        prefix = self.prefix or default
        if not prefix:
            raise ConfigError(f"No prefix configured for server '{self.name}'!")
        return prefix


@dataclass(frozen=True)
class AgentConfig:
    """Snapshot of the configuration file. A reload builds a new one."""

    prefix: str = ""
    notifications: bool = False
    error_notifications: bool = True
    servers: Tuple[ServerConfig, ...] = ()


@dataclass(frozen=True)
class FirewallRule:
    """Firewall rule as reported by `az sql server firewall-rule list`."""

    name: str
    start_ip: str
    end_ip: str

    def matches(self, ip_address: str) -> bool:
        return self.start_ip == ip_address and self.end_ip == ip_address


@dataclass
class ReconciliationResult:
    """Tally of one reconciliation run across all servers."""

    rules_created: int = 0
    rules_deleted: int = 0
    servers: List[str] = field(default_factory=list)


@dataclass
class RunContext:
    """State carried across loop iterations, owned by the Agent.

    The config watcher thread only ever touches `reload_requested`.
    """

    internal_ip: Optional[str] = None
    gateway: Optional[str] = None
    interface: Optional[str] = None
    public_ip: Optional[str] = None
    next_public_check: Optional[float] = None
    reload_requested: threading.Event = field(default_factory=threading.Event)


# =============================================================================
# Configuration Loading
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _is_disabled(value: Any) -> bool:
    """Only an explicit false turns a default-on flag off."""
    if isinstance(value, str):
        return value.strip().lower() in {"false", "no", "off", "0"}
    return value is False


def rule_name(prefix: str, ip_address: str) -> str:
    """Name of the managed rule for an address, e.g. "my-prefix-167772161"."""
    return f"{prefix}-{int(ipaddress.IPv4Address(ip_address))}"


def parse_config(data: Any) -> AgentConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration must be an object, got {type(data).__name__}")

    servers: List[ServerConfig] = []
    raw_servers = data.get("servers") or []
    if not isinstance(raw_servers, list):
        logger.warning("Config key 'servers' is not a list, ignoring it")
        raw_servers = []

    for item in raw_servers:
        if not isinstance(item, dict):
            logger.warning(f"Skipping malformed server entry: {item}")
            continue
        subscription = str(item.get("subscription") or "").strip()
        resource_group = str(item.get("resourceGroup") or "").strip()
        name = str(item.get("name") or "").strip()
        if not subscription or not resource_group or not name:
            logger.warning(
                f"Skipping server entry without subscription/resourceGroup/name: {item}"
            )
            continue
        servers.append(
            ServerConfig(
                subscription=subscription,
                resource_group=resource_group,
                name=name,
                prefix=str(item.get("prefix") or "").strip(),
            )
        )

    return AgentConfig(
        prefix=str(data.get("prefix") or "").strip(),
        notifications=_parse_bool(data.get("notifications"), default=False),
        error_notifications=not _is_disabled(data.get("errorNotifications")),
        servers=tuple(servers),
    )


def load_config(config_path: str) -> AgentConfig:
    """Read the config file, writing the defaults first if it doesn't exist."""
    path = Path(config_path)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(DEFAULT_CONFIG, indent=2) + "\n", "utf-8")
        logger.info(f"Default configuration written: {path}")
        return parse_config(DEFAULT_CONFIG)

    try:
        data = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read configuration {path}: {e}") from e
    return parse_config(data)


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except OSError:
        return 0.0


class ConfigWatcher:
    """Background thread that flags a forced reload when the config changes."""

    def __init__(self, config_path: str, ctx: RunContext, interval: float = 1.0):
        self.config_path = config_path
        self.ctx = ctx
        self.interval = interval
        self._last_mtime = get_config_file_mtime(config_path)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="config-watcher", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def check(self) -> bool:
        mtime = get_config_file_mtime(self.config_path)
        if mtime == self._last_mtime:
            return False
        self._last_mtime = mtime
        logger.debug("Config file change detected!")
        self.ctx.reload_requested.set()
        return True

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.check()


# =============================================================================
# Notifications
# =============================================================================


class DesktopNotifier:
    """Fire-and-forget desktop notifications via plyer."""

    def __init__(self, title: str = NOTIFICATION_TITLE, log_path: str = LOG_PATH):
        self.title = title
        self.log_path = log_path

    def notify(self, message: str) -> None:
        try:
            notification.notify(title=self.title, message=message, timeout=10)
        except Exception as e:
            logger.warning(f"Failed to show desktop notification: {e}")

    def success(self, config: AgentConfig, result: ReconciliationResult, ip_address: str) -> bool:
        if not config.notifications:
            return False
        if not result.rules_created:
            logger.debug("Not showing notification as no new rules were created")
            return False
        self.notify(
            f"Firewall rules have been successfully updated for your public IP address {ip_address}"
        )
        return True

    def error(self, config: AgentConfig) -> bool:
        if not config.error_notifications:
            return False
        self.notify(f"An error occurred! Please see {self.log_path} for more details.")
        return True


# =============================================================================
# Remote Control Client
# =============================================================================


Runner = Callable[..., "subprocess.CompletedProcess[str]"]


class AzCli:
    """Runs `az` with a bounded retry policy and parses its JSON output."""

    def __init__(
        self,
        command: str = AZ_COMMAND,
        *,
        retries: int = AZ_RETRIES,
        retry_delay: float = AZ_RETRY_DELAY_SECONDS,
        runner: Runner = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.command = command
        self.retries = max(0, retries)
        self.retry_delay = retry_delay
        self._runner = runner
        self._sleep = sleep

    def _describe(self, args: Sequence[str]) -> str:
        words = []
        for arg in args:
            if arg.startswith("-"):
                break
            words.append(arg)
        return " ".join([self.command, *words])

    def _run_once(self, args: Sequence[str]) -> Any:
        try:
            proc = self._runner([self.command, *args], capture_output=True, text=True)
        except OSError as e:
            raise AzCliError(f"Failed to run {self.command}: {e}", args) from e

        if proc.returncode != 0:
            message = (proc.stderr or "").strip() or f"exit status {proc.returncode}"
            raise AzCliError(message, args)

        stdout = (proc.stdout or "").strip()
        if not stdout:
            return {}
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise AzCliError(f"Invalid JSON from {self._describe(args)}: {e}", args) from e

    def invoke(self, args: Sequence[str]) -> Any:
        """Run az with the given arguments, returning parsed stdout or {}."""
        logger.debug(f" -> {self._describe(args)}")
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._run_once(args)
            except AzCliError as e:
                if attempt > self.retries:
                    raise
                logger.debug(
                    f"command failed (attempt {attempt}/{self.retries + 1}), retrying: "
                    f"{self.command} {' '.join(args)}: {e}"
                )
                logger.debug(f"sleeping for {self.retry_delay}s...")
                self._sleep(self.retry_delay)


class FirewallBackend(ABC):
    """Remote surface holding the firewall rules of the managed servers."""

    @abstractmethod
    def select_subscription(self, server: ServerConfig) -> None:
        pass

    @abstractmethod
    def list_rules(self, server: ServerConfig) -> List[FirewallRule]:
        pass

    @abstractmethod
    def delete_rule(self, server: ServerConfig, name: str) -> None:
        pass

    @abstractmethod
    def create_rule(self, server: ServerConfig, name: str, start_ip: str, end_ip: str) -> None:
        pass


class AzureSqlFirewall(FirewallBackend):
    """Azure SQL server firewall rules, managed through the Azure CLI."""

    def __init__(self, az: AzCli):
        self.az = az

    def select_subscription(self, server: ServerConfig) -> None:
        self.az.invoke(["account", "set", "--subscription", server.subscription])

    def list_rules(self, server: ServerConfig) -> List[FirewallRule]:
        data = self.az.invoke(
            [
                "sql", "server", "firewall-rule", "list",
                "-g", server.resource_group, "-s", server.name,
                "--output", "json",
            ]
        )
        if not isinstance(data, list):
            logger.debug(f"Unexpected rule list from server '{server.name}': {data!r}")
            return []

        rules: List[FirewallRule] = []
        for item in data:
            name = item.get("name") if isinstance(item, dict) else None
            if not isinstance(name, str):
                logger.warning(f"Skipping malformed firewall rule: {item}")
                continue
            rules.append(
                FirewallRule(
                    name=name,
                    start_ip=str(item.get("startIpAddress") or ""),
                    end_ip=str(item.get("endIpAddress") or ""),
                )
            )
        return rules

    def delete_rule(self, server: ServerConfig, name: str) -> None:
        self.az.invoke(
            [
                "sql", "server", "firewall-rule", "delete",
                "-g", server.resource_group, "-s", server.name, "-n", name,
            ]
        )

    def create_rule(self, server: ServerConfig, name: str, start_ip: str, end_ip: str) -> None:
        self.az.invoke(
            [
                "sql", "server", "firewall-rule", "create",
                "-g", server.resource_group, "-s", server.name, "-n", name,
                "--start-ip-address", start_ip, "--end-ip-address", end_ip,
            ]
        )


# =============================================================================
# Address Observer
# =============================================================================


def probe_internal_address() -> Tuple[str, str, str]:
    """Return (primary IPv4, default gateway, gateway interface)."""
    # No packets are sent for a UDP connect, it only picks the outgoing route.
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.connect(("8.8.8.8", 80))
        internal_ip = s.getsockname()[0]

    with IPRoute() as ipr:
        routes = ipr.get_default_routes(family=socket.AF_INET)
        if not routes:
            raise ProbeError("No default IPv4 route")
        route = routes[0]
        gateway = route.get_attr("RTA_GATEWAY")
        oif = route.get_attr("RTA_OIF")
        links = ipr.get_links(oif) if oif is not None else []
        interface = links[0].get_attr("IFLA_IFNAME") if links else None

    if not gateway or not interface:
        raise ProbeError("Default route has no gateway/interface")
    return internal_ip, gateway, interface


class PublicAddressResolver:
    """Looks up the egress IPv4 address from a plain-text echo service."""

    def __init__(self, url: str = PUBLIC_IP_URL, timeout: float = PUBLIC_IP_TIMEOUT_SECONDS):
        self._url = url
        self._timeout = timeout
        self._session = requests.Session()

    def __call__(self) -> str:
        try:
            response = self._session.get(self._url, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ProbeError(f"Public IP lookup via {self._url} failed: {e}") from e

        text = response.text.strip()
        try:
            return str(ipaddress.IPv4Address(text))
        except ValueError as e:
            raise ProbeError(f"Unexpected public IP response: {text[:64]!r}") from e


class AddressObserver:
    """Detects changes of the local network setup and of the public address.

    Both probes absorb failures: the cached value is reset to unknown and the
    probe reports "unchanged".
    """

    def __init__(
        self,
        internal_probe: Callable[[], Tuple[str, str, str]] = probe_internal_address,
        public_probe: Optional[Callable[[], str]] = None,
    ):
        self._internal_probe = internal_probe
        self._public_probe = public_probe or PublicAddressResolver()

    def internal_address_changed(self, ctx: RunContext) -> bool:
        try:
            internal_ip, gateway, interface = self._internal_probe()
        except Exception as e:
            logger.debug(f"Internal address probe failed: {e}")
            ctx.internal_ip = None
            ctx.gateway = None
            ctx.interface = None
            return False

        changed = False
        if ctx.internal_ip is None or ctx.internal_ip != internal_ip:
            ctx.internal_ip = internal_ip
            changed = True
        if ctx.gateway is None or ctx.gateway != gateway or ctx.interface != interface:
            ctx.gateway = gateway
            ctx.interface = interface
            changed = True
        return changed

    def public_address_changed(self, ctx: RunContext) -> bool:
        try:
            public_ip = self._public_probe()
        except Exception as e:
            logger.debug(f"Public address probe failed: {e}")
            ctx.public_ip = None
            return False

        logger.debug(f"Public IP: {public_ip}")
        if ctx.public_ip == public_ip:
            return False
        ctx.public_ip = public_ip
        return True


# =============================================================================
# Reconciler
# =============================================================================


class FirewallReconciler:
    def __init__(self, backend: FirewallBackend, notifier: Optional[DesktopNotifier] = None):
        self.backend = backend
        self.notifier = notifier or DesktopNotifier()

    def reconcile_server(
        self,
        config: AgentConfig,
        server: ServerConfig,
        ip_address: str,
        result: Optional[ReconciliationResult] = None,
    ) -> int:
        """Converge one server to a single rule for ip_address.

        Returns the number of rules created (0 or 1). A missing prefix raises
        ConfigError straight away; remote failures raise ReconcileError after
        the error notification.
        """
        if result is None:
            result = ReconciliationResult()
        base_prefix = server.effective_prefix(config.prefix)
        prefix = f"{base_prefix}-"

        try:
            self.backend.select_subscription(server)
            rules = self.backend.list_rules(server)

            exists = False
            stale: List[FirewallRule] = []
            for rule in rules:
                if not rule.name.startswith(prefix):
                    continue
                if rule.matches(ip_address) and not exists:
                    exists = True
                else:
                    stale.append(rule)

            for rule in stale:
                logger.info(
                    f"Deleting stale rule '{rule.name}' ({rule.start_ip}) on server '{server.name}'"
                )
                self.backend.delete_rule(server, rule.name)
                result.rules_deleted += 1

            created = 0
            if exists:
                logger.debug("Entry already exists in firewall!")
            else:
                name = rule_name(base_prefix, ip_address)
                logger.info(f"Creating rule '{name}' for {ip_address} on server '{server.name}'")
                self.backend.create_rule(server, name, ip_address, ip_address)
                created = 1
                result.rules_created += 1
        except Exception as e:
            self.notifier.error(config)
            raise ReconcileError(server, e) from e

        result.servers.append(server.name)
        logger.info(f"Server configured: {server.name}")
        return created

    def reconcile_all(self, config: AgentConfig, ip_address: str) -> ReconciliationResult:
        """Update every configured server in order, stopping at the first failure."""
        result = ReconciliationResult()
        for server in config.servers:
            self.reconcile_server(config, server, ip_address, result)
        self.notifier.success(config, result, ip_address)
        return result


# =============================================================================
# Scheduler
# =============================================================================


class Agent:
    """Polling loop deciding when the firewalls need to be reconciled."""

    def __init__(
        self,
        *,
        config: AgentConfig,
        observer: AddressObserver,
        reconciler: FirewallReconciler,
        config_path: str = CONFIG_PATH,
        ctx: Optional[RunContext] = None,
        internal_interval: float = INTERNAL_CHECK_SECONDS,
        public_interval: float = PUBLIC_CHECK_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.observer = observer
        self.reconciler = reconciler
        self.config_path = config_path
        self.internal_interval = internal_interval
        self.public_interval = public_interval
        self._clock = clock
        self._sleep = sleep
        self.ctx = ctx or RunContext(next_public_check=clock() + public_interval)

    def _reconciliation_due(self) -> bool:
        ctx = self.ctx
        if ctx.reload_requested.is_set():
            if ctx.public_ip:
                return True
            # if this fails, we'll try again in the next loop
            logger.debug("Full reload requested, but no public IP available!")
            return self.observer.public_address_changed(ctx)

        now = self._clock()
        if self.observer.internal_address_changed(ctx):
            logger.debug("Internal IP changed!")
        elif ctx.next_public_check is None or now > ctx.next_public_check:
            logger.debug("Public IP check timer triggered!")
        else:
            return False

        ctx.next_public_check = now + self.public_interval
        return self.observer.public_address_changed(ctx)

    def _reload_config(self) -> None:
        try:
            self.config = load_config(self.config_path)
            logger.info(f"Reloaded configuration: {len(self.config.servers)} server(s)")
        except ConfigError as e:
            logger.error(f"Failed to reload configuration: {e}")
            logger.warning("Continuing with previous configuration")

    def tick(self) -> Optional[ReconciliationResult]:
        """Run one loop iteration. Returns the result if a reconciliation ran."""
        if not self._reconciliation_due():
            return None
        ip_address = self.ctx.public_ip
        if not ip_address:
            return None

        if self.ctx.reload_requested.is_set():
            self.ctx.reload_requested.clear()
            self._reload_config()

        logger.debug("Setting firewall rules...")
        try:
            result = self.reconciler.reconcile_all(self.config, ip_address)
        except ReconcileError as e:
            logger.error(str(e))
            # forget the address so the next public check retries the update
            self.ctx.public_ip = None
            return None

        logger.info(
            f"Firewall rules up to date for {ip_address}: "
            f"{result.rules_created} created, {result.rules_deleted} deleted"
        )
        return result

    def run_forever(self) -> None:
        while True:
            self.tick()
            self._sleep(self.internal_interval)


# =============================================================================
# Main
# =============================================================================


def get_version() -> str:
    try:
        return version("azure-sql-agent")
    except PackageNotFoundError:
        return __version__


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="azure-sql-agent",
        description="Keep Azure SQL firewall rules in sync with your public IP address.",
    )
    parser.add_argument(
        "-f", "--foreground", action="store_true", help="run the agent in the foreground"
    )
    parser.add_argument(
        "-d", "--debug", action="store_true", help="show additional debugging output"
    )
    parser.add_argument(
        "--version", action="store_true", help="show the version number and exit"
    )
    return parser


def spawn_background(argv: Sequence[str]) -> int:
    """Start a detached copy of this agent and return its PID."""
    env = dict(os.environ)
    env[DAEMON_ENV] = "1"
    proc = subprocess.Popen(
        [sys.executable, *argv],
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True,
    )
    return proc.pid


def write_pid(pid_path: str, pid: int) -> None:
    path = Path(pid_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{pid}", "utf-8")


def run_agent(config_path: str = CONFIG_PATH) -> None:
    """Load the config, start the watcher and loop until killed."""
    try:
        config = load_config(config_path)
        ctx = RunContext(next_public_check=time.time() + PUBLIC_CHECK_SECONDS)
        watcher = ConfigWatcher(config_path, ctx)
        watcher.start()

        agent = Agent(
            config=config,
            observer=AddressObserver(),
            reconciler=FirewallReconciler(AzureSqlFirewall(AzCli()), DesktopNotifier()),
            config_path=config_path,
            ctx=ctx,
        )
        logger.info(f"azure-sql-agent {get_version()} started, {len(config.servers)} server(s)")
        agent.run_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()
    options, unknown = parser.parse_known_args(list(argv))

    if unknown:
        for arg in unknown:
            print(f"Unknown argument: {arg}", file=sys.stderr)
        parser.print_help()
        return
    if options.version:
        print(f"version {get_version()}")
        return

    if options.foreground or os.environ.get(DAEMON_ENV):
        configure_logging(LOG_PATH, debug=options.debug, foreground=options.foreground)
        run_agent(CONFIG_PATH)
        return

    pid = spawn_background([sys.argv[0], *argv])
    print(f"Agent is running now: {pid}")
    write_pid(PID_PATH, pid)


if __name__ == "__main__":
    main()
