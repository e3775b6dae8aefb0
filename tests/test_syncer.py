"""Unit tests for TunnelDockSyncer and TunnelReconciler reconciliation logic.

Tests the poll loop end to end against in-memory runtime and provider fakes:
upserts fire on state transitions, stale routes are swept, and provider
failures are retried on later ticks.
"""

from pathlib import Path
from typing import Any, Dict, List, Set

import pytest

from tunneldock.cli import (
    ContainerInfo,
    ContainerRuntime,
    ContainerRuntimeError,
    DNSRecord,
    OriginRequest,
    RemoteApiError,
    RoutingDeclaration,
    StateStore,
    TunnelDockSyncer,
    TunnelProvider,
    TunnelReconciler,
)

TUNNEL_ID = "tun"
TARGET = "tun.cfargotunnel.com"
DOMAIN = "example.com"
CATCH_ALL = {"hostname": "*", "service": "http_status:404"}

# =============================================================================
# Mock Tunnel Provider
# =============================================================================


class MockTunnelProvider(TunnelProvider):
    """Mock provider with in-memory ingress rules and DNS records, tracking calls."""

    def __init__(
        self,
        rules: List[Dict[str, Any]] | None = None,
        records: List[DNSRecord] | None = None,
    ):
        self.rules: List[Dict[str, Any]] = list(rules) if rules is not None else [dict(CATCH_ALL)]
        self.records: Dict[str, DNSRecord] = {r.id: r for r in records or []}
        self.failing_hostnames: Set[str] = set()
        self.fail_puts = False
        self.put_calls: List[List[Dict[str, Any]]] = []
        self.create_calls: List[tuple[str, str]] = []
        self.update_calls: List[tuple[str, str]] = []
        self.delete_calls: List[str] = []
        self._next_id = 1

    @property
    def name(self) -> str:
        return "MockTunnel"

    def initialize(self) -> str:
        return DOMAIN

    def get_ingress_config(self, tunnel_id: str) -> List[Dict[str, Any]]:
        return [dict(r) for r in self.rules]

    def put_ingress_config(self, tunnel_id: str, rules: List[Dict[str, Any]]) -> None:
        if self.fail_puts:
            raise RemoteApiError("PUT configurations returned 500", status_code=500)
        self.put_calls.append(rules)
        self.rules = [dict(r) for r in rules]

    def list_dns_records(self, hostname: str) -> List[DNSRecord]:
        if hostname in self.failing_hostnames:
            raise RemoteApiError(f"GET dns_records for {hostname} returned 500", status_code=500)
        return [r for r in self.records.values() if r.name == hostname]

    def create_dns_record(self, hostname: str, target: str) -> DNSRecord:
        self.create_calls.append((hostname, target))
        record = DNSRecord(id=f"rec{self._next_id}", name=hostname, content=target)
        self._next_id += 1
        self.records[record.id] = record
        return record

    def update_dns_record(self, record_id: str, target: str) -> None:
        self.update_calls.append((record_id, target))
        old = self.records[record_id]
        self.records[record_id] = DNSRecord(id=old.id, name=old.name, content=target)

    def delete_dns_record(self, record_id: str) -> None:
        self.delete_calls.append(record_id)
        self.records.pop(record_id, None)

    @property
    def call_count(self) -> int:
        return (
            len(self.put_calls)
            + len(self.create_calls)
            + len(self.update_calls)
            + len(self.delete_calls)
        )

    def hostnames(self) -> List[str]:
        return [r["hostname"] for r in self.rules]


# =============================================================================
# Mock Container Runtime
# =============================================================================


class MockRuntime(ContainerRuntime):
    """Mock runtime returning whatever containers the test sets."""

    def __init__(self, containers: List[ContainerInfo] | None = None):
        self.containers = containers or []
        self.fail = False

    @property
    def name(self) -> str:
        return "MockRuntime"

    def list_all(self) -> List[ContainerInfo]:
        if self.fail:
            raise ContainerRuntimeError("daemon unavailable")
        return list(self.containers)


# =============================================================================
# Test Helpers
# =============================================================================


def make_container(
    name: str = "web1",
    state: str = "running",
    port: int | None = 8080,
    **extra_labels: str,
) -> ContainerInfo:
    labels = {"tunneldock.assign": "true"}
    if port is not None:
        labels["tunneldock.service.port"] = str(port)
    labels.update({f"tunneldock.{k}": v for k, v in extra_labels.items()})
    return ContainerInfo(name=name, state=state, labels=labels)


def create_test_syncer(
    tmp_path: Path,
    containers: List[ContainerInfo] | None = None,
    provider: MockTunnelProvider | None = None,
    retract_stopped: bool = False,
) -> tuple[TunnelDockSyncer, MockRuntime, MockTunnelProvider, StateStore]:
    """Create a test syncer with mocked collaborators.

    Returns tuple of (syncer, runtime, provider, state_store) for verification.
    """
    runtime = MockRuntime(containers)
    provider = provider or MockTunnelProvider()
    state_store = StateStore(str(tmp_path / "state.json"))
    syncer = TunnelDockSyncer(
        runtime=runtime,
        provider=provider,
        state_store=state_store,
        tunnel_id=TUNNEL_ID,
        domain=DOMAIN,
        retract_stopped=retract_stopped,
        sleep=lambda seconds: None,
    )
    return syncer, runtime, provider, state_store


def declaration(hostname: str = "web1.example.com", service: str = "http://localhost:8080"):
    return RoutingDeclaration(
        container_name="web1", hostname=hostname, port=8080, service=service
    )


# =============================================================================
# Reconciler Upsert Path
# =============================================================================


def test_upsert_creates_rule_and_record(tmp_path: Path) -> None:
    provider = MockTunnelProvider(rules=[{"hostname": "other.example.com", "service": "x"}, CATCH_ALL])
    reconciler = TunnelReconciler(
        provider=provider, state_store=StateStore(str(tmp_path / "s.json")), tunnel_id=TUNNEL_ID
    )

    result = reconciler.upsert(declaration())

    assert result.config_status == "updated"
    assert result.dns_status == "created"
    assert provider.hostnames() == ["other.example.com", "web1.example.com", "*"]
    assert provider.create_calls == [("web1.example.com", TARGET)]


def test_upsert_twice_is_idempotent(tmp_path: Path) -> None:
    provider = MockTunnelProvider()
    reconciler = TunnelReconciler(
        provider=provider, state_store=StateStore(str(tmp_path / "s.json")), tunnel_id=TUNNEL_ID
    )

    reconciler.upsert(declaration())
    second = reconciler.upsert(declaration())

    assert second.dns_status == "unchanged"
    assert provider.hostnames() == ["web1.example.com", "*"]
    assert len(provider.create_calls) == 1
    assert provider.update_calls == []


def test_upsert_updates_record_with_wrong_target(tmp_path: Path) -> None:
    provider = MockTunnelProvider(
        records=[DNSRecord(id="r1", name="web1.example.com", content="old.cfargotunnel.com")]
    )
    reconciler = TunnelReconciler(
        provider=provider, state_store=StateStore(str(tmp_path / "s.json")), tunnel_id=TUNNEL_ID
    )

    result = reconciler.upsert(declaration())

    assert result.dns_status == "updated"
    assert provider.update_calls == [("r1", TARGET)]
    assert provider.create_calls == []


def test_upsert_consolidates_duplicate_records(tmp_path: Path) -> None:
    provider = MockTunnelProvider(
        records=[
            DNSRecord(id="r1", name="web1.example.com", content=TARGET),
            DNSRecord(id="r2", name="web1.example.com", content=TARGET),
        ]
    )
    reconciler = TunnelReconciler(
        provider=provider, state_store=StateStore(str(tmp_path / "s.json")), tunnel_id=TUNNEL_ID
    )

    result = reconciler.upsert(declaration())

    assert result.dns_status == "unchanged"
    assert provider.delete_calls == ["r2"]


def test_upsert_persists_sync_and_domain_records(tmp_path: Path) -> None:
    store = StateStore(str(tmp_path / "s.json"))
    reconciler = TunnelReconciler(
        provider=MockTunnelProvider(), state_store=store, tunnel_id=TUNNEL_ID
    )
    decl = RoutingDeclaration(
        container_name="web1",
        hostname="web1.example.com",
        port=8080,
        service="http://localhost:8080",
        origin_request=OriginRequest(no_tls_verify=True),
    )

    reconciler.upsert(decl)

    state = store.load()
    tunnel = state.tunnels["web1.example.com"]
    assert tunnel.tunnel_id == TUNNEL_ID
    assert tunnel.service == "http://localhost:8080"
    assert tunnel.config_status == "updated"
    assert tunnel.dns_status == "created"
    assert tunnel.origin_request == {"noTLSVerify": True}
    domain = state.domains["web1.example.com"]
    assert domain.target == TARGET
    assert domain.status == "created"


def test_upsert_dns_failure_keeps_ingress_only_record(tmp_path: Path) -> None:
    store = StateStore(str(tmp_path / "s.json"))
    provider = MockTunnelProvider()
    provider.failing_hostnames.add("web1.example.com")
    reconciler = TunnelReconciler(provider=provider, state_store=store, tunnel_id=TUNNEL_ID)

    with pytest.raises(RemoteApiError):
        reconciler.upsert(declaration())

    # No rollback: the ingress rule stays and the record shows the config step only
    assert "web1.example.com" in provider.hostnames()
    state = store.load()
    assert state.tunnels["web1.example.com"].dns_status is None
    assert "web1.example.com" not in state.domains


# =============================================================================
# Poll Loop Scenarios
# =============================================================================


def test_create_scenario(tmp_path: Path) -> None:
    """created -> running inserts the rule before the catch-all and adds a CNAME."""
    syncer, _, provider, store = create_test_syncer(
        tmp_path, containers=[make_container(state="running")]
    )

    observed = syncer.sync_once({"web1": "created"})

    assert observed == {"web1": "running"}
    assert provider.rules == [
        {
            "hostname": "web1.example.com",
            "service": "http://localhost:8080",
            "originRequest": {
                "connectTimeout": 0,
                "disableChunkedEncoding": False,
                "http2Origin": False,
                "noTLSVerify": False,
                "tcpKeepAlive": 30,
            },
        },
        CATCH_ALL,
    ]
    assert provider.create_calls == [("web1.example.com", TARGET)]
    assert "web1.example.com" in store.load().tunnels


def test_steady_running_container_makes_no_calls(tmp_path: Path) -> None:
    syncer, _, provider, _ = create_test_syncer(tmp_path, containers=[make_container()])

    previous = syncer.sync_once()
    calls_after_first_tick = provider.call_count
    syncer.sync_once(previous)

    assert calls_after_first_tick > 0
    assert provider.call_count == calls_after_first_tick


def test_restart_fires_upsert_again(tmp_path: Path) -> None:
    syncer, runtime, provider, _ = create_test_syncer(tmp_path, containers=[make_container()])

    previous = syncer.sync_once()
    runtime.containers = [make_container(state="exited")]
    previous = syncer.sync_once(previous)
    runtime.containers = [make_container(state="running")]
    syncer.sync_once(previous)

    assert len(provider.put_calls) == 2
    assert provider.hostnames() == ["web1.example.com", "*"]


def test_removal_scenario(tmp_path: Path) -> None:
    """A container that disappears has its rule, record and local state removed."""
    syncer, runtime, provider, store = create_test_syncer(
        tmp_path, containers=[make_container(), make_container("api", port=3000)]
    )
    previous = syncer.sync_once()

    runtime.containers = [make_container("api", port=3000)]
    syncer.sync_once(previous)

    assert provider.hostnames() == ["api.example.com", "*"]
    assert [r.name for r in provider.records.values()] == ["api.example.com"]
    state = store.load()
    assert set(state.tunnels) == {"api.example.com"}
    assert set(state.domains) == {"api.example.com"}


def test_dropping_assign_label_retracts_route(tmp_path: Path) -> None:
    syncer, runtime, provider, store = create_test_syncer(tmp_path, containers=[make_container()])
    previous = syncer.sync_once()

    runtime.containers = [ContainerInfo(name="web1", state="running", labels={})]
    syncer.sync_once(previous)

    assert provider.hostnames() == ["*"]
    assert store.load().tunnels == {}


def test_stopped_container_keeps_route_by_default(tmp_path: Path) -> None:
    syncer, runtime, provider, store = create_test_syncer(tmp_path, containers=[make_container()])
    previous = syncer.sync_once()

    runtime.containers = [make_container(state="exited")]
    syncer.sync_once(previous)

    assert provider.hostnames() == ["web1.example.com", "*"]
    assert "web1.example.com" in store.load().tunnels


def test_stopped_container_retracted_when_configured(tmp_path: Path) -> None:
    syncer, runtime, provider, store = create_test_syncer(
        tmp_path, containers=[make_container()], retract_stopped=True
    )
    previous = syncer.sync_once()

    runtime.containers = [make_container(state="exited")]
    syncer.sync_once(previous)

    assert provider.hostnames() == ["*"]
    assert provider.records == {}
    assert store.load().tunnels == {}


def test_snapshot_saved_every_tick(tmp_path: Path) -> None:
    syncer, runtime, _, store = create_test_syncer(tmp_path, containers=[make_container()])
    previous = syncer.sync_once()

    runtime.containers = [make_container(), make_container("db", state="exited", port=None)]
    syncer.sync_once(previous)

    state = store.load()
    assert [c.name for c in state.containers] == ["web1", "db"]
    assert "web1.example.com" in state.tunnels


def test_custom_hostname_is_qualified(tmp_path: Path) -> None:
    syncer, _, provider, _ = create_test_syncer(
        tmp_path, containers=[make_container(hostname="blog")]
    )

    syncer.sync_once()

    assert provider.hostnames() == ["blog.example.com", "*"]


# =============================================================================
# Failure Handling
# =============================================================================


def test_failed_upsert_is_retried_next_tick(tmp_path: Path) -> None:
    syncer, _, provider, store = create_test_syncer(tmp_path, containers=[make_container()])
    provider.fail_puts = True

    previous = syncer.sync_once()

    assert previous == {}
    assert store.load().tunnels == {}

    provider.fail_puts = False
    syncer.sync_once(previous)

    assert provider.hostnames() == ["web1.example.com", "*"]
    assert store.load().tunnels["web1.example.com"].dns_status == "created"


def test_failure_on_one_hostname_does_not_block_others(tmp_path: Path) -> None:
    syncer, _, provider, store = create_test_syncer(
        tmp_path, containers=[make_container(), make_container("api", port=3000)]
    )
    provider.failing_hostnames.add("web1.example.com")

    observed = syncer.sync_once()

    assert observed == {"api": "running"}
    assert store.load().tunnels["api.example.com"].dns_status == "created"


def test_failed_retraction_keeps_local_record(tmp_path: Path) -> None:
    syncer, runtime, provider, store = create_test_syncer(
        tmp_path, containers=[make_container(), make_container("api", port=3000)]
    )
    previous = syncer.sync_once()

    runtime.containers = []
    provider.failing_hostnames.add("web1.example.com")
    syncer.sync_once(previous)

    assert set(store.load().tunnels) == {"web1.example.com"}
    assert provider.hostnames() == ["web1.example.com", "*"]

    provider.failing_hostnames.clear()
    assert syncer.sweep([]) == ["web1.example.com"]
    assert store.load().tunnels == {}
    assert provider.hostnames() == ["*"]


def test_sweep_of_unknown_dns_record_is_noop(tmp_path: Path) -> None:
    syncer, _, provider, store = create_test_syncer(tmp_path)
    store.update_tunnel("ghost.example.com", tunnel_id=TUNNEL_ID, service="http://localhost:80")

    retracted = syncer.sweep([])

    assert retracted == ["ghost.example.com"]
    assert provider.delete_calls == []
    assert provider.hostnames() == ["*"]


def test_sweep_restores_missing_catch_all(tmp_path: Path) -> None:
    provider = MockTunnelProvider(rules=[{"hostname": "ghost.example.com", "service": "x"}])
    syncer, _, provider, store = create_test_syncer(tmp_path, provider=provider)
    store.update_tunnel("ghost.example.com", tunnel_id=TUNNEL_ID, service="x")

    syncer.sweep([])

    assert provider.rules == [CATCH_ALL]


def test_watch_survives_runtime_errors(tmp_path: Path) -> None:
    syncer, runtime, provider, _ = create_test_syncer(tmp_path, containers=[make_container()])
    runtime.fail = True
    sleeps: List[float] = []
    syncer._sleep = sleeps.append

    syncer.watch(2.5, max_ticks=2)

    assert sleeps == [2.5, 2.5]
    assert provider.call_count == 0


def test_watch_passes_previous_states_between_ticks(tmp_path: Path) -> None:
    syncer, _, provider, _ = create_test_syncer(tmp_path, containers=[make_container()])

    syncer.watch(0, max_ticks=3)

    assert len(provider.put_calls) == 1
    assert len(provider.create_calls) == 1
