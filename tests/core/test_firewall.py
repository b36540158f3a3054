import threading

import pytest

from ipwarden.core.errors import ApplyFailed, PrivilegeRequired
from ipwarden.core.firewall import (
    LinuxFirewall,
    MacFirewall,
    MemoryFirewall,
    ResultStatus,
    UnsupportedFirewall,
    WindowsFirewall,
    create_firewall,
    detect_platform,
)
from ipwarden.core.firewall.memory import MemoryExecutor
from ipwarden.core.retry import RetryPolicy
from ipwarden.core.rules import IPAddressDelta


def _ranges(fw, name):
    return [str(r) for r in fw.store.get(name).ranges]


def test_block_then_delta_splits_range(memory_firewall):
    assert memory_firewall.block("grp", ["1.2.3.0-1.2.3.10"])
    result = memory_firewall.block_delta("grp", [IPAddressDelta.of("1.2.3.5", added=False)])
    assert result.ok
    assert _ranges(memory_firewall, "IPWarden_grp") == ["1.2.3.0-1.2.3.4", "1.2.3.6-1.2.3.10"]


def test_rule_naming_per_family(memory_firewall):
    memory_firewall.block(None, ["1.1.1.1", "2001:db8::1"])
    memory_firewall.allow(["9.9.9.9"])
    assert memory_firewall.get_rule_names().value == ["IPWarden_Allow", "IPWarden_Block", "IPWarden_Block_6"]
    assert memory_firewall.get_rule_names("Block").value == ["IPWarden_Block", "IPWarden_Block_6"]


def test_block_replaces_group_and_empties_absent_family(memory_firewall):
    memory_firewall.block("B", ["1.1.1.1", "2001:db8::1"])
    memory_firewall.block("B", ["2.2.2.2"])
    assert _ranges(memory_firewall, "IPWarden_B") == ["2.2.2.2"]
    assert _ranges(memory_firewall, "IPWarden_B_6") == []
    assert memory_firewall.is_ip_address_blocked("1.1.1.1").value == (False, None)


def test_invalid_addresses(memory_firewall):
    result = memory_firewall.block("B", ["not-an-ip", "999.1.1.1"])
    assert result.status is ResultStatus.INVALID_ADDRESS
    assert not result
    assert memory_firewall.block("B", ["bogus", "3.3.3.3"])
    assert _ranges(memory_firewall, "IPWarden_B") == ["3.3.3.3"]
    assert memory_firewall.block("B", ["3.3.3.3"], ports=["http"]).status is ResultStatus.INVALID_ADDRESS
    assert memory_firewall.is_ip_address_blocked("nope").status is ResultStatus.INVALID_ADDRESS


def test_delta_is_idempotent(memory_firewall, memory_executor):
    memory_firewall.block_delta("B", [("5.5.5.5", True)])
    snapshot = memory_firewall.store.get("IPWarden_B")
    calls = len(memory_executor.calls)
    assert memory_firewall.block_delta("B", [("5.5.5.5", True)]).value == []
    assert memory_firewall.store.get("IPWarden_B") is snapshot
    assert len(memory_executor.calls) == calls


def test_ports_scope_queries(memory_firewall):
    memory_firewall.block("Ssh", ["7.7.7.7"], ports=["22", "2200-2299"])
    assert memory_firewall.is_ip_address_blocked("7.7.7.7", 22).value == (True, "IPWarden_Ssh")
    assert memory_firewall.is_ip_address_blocked("7.7.7.7", 2250).value[0]
    assert memory_firewall.is_ip_address_blocked("7.7.7.7", 443).value == (False, None)
    # delta without ports keeps the group's ports
    memory_firewall.block_delta("Ssh", [("7.7.7.8", True)])
    assert not memory_firewall.is_ip_address_blocked("7.7.7.8", 443).value[0]


def test_enumerations(memory_firewall):
    memory_firewall.block("B", ["10.0.0.0/24", "1.1.1.1"])
    memory_firewall.allow(["192.0.2.1"])
    assert memory_firewall.enumerate_banned_addresses().value == ["1.1.1.1", "10.0.0.0/24"]
    assert memory_firewall.enumerate_allowed_addresses().value == ["192.0.2.1"]
    assert [str(r) for r in memory_firewall.enumerate_ip_addresses("B").value] == ["1.1.1.1", "10.0.0.0/24"]
    assert memory_firewall.is_ip_address_allowed("192.0.2.1").value is True


def test_failed_apply_rolls_back_and_keeps_state(no_retry):
    executor = MemoryExecutor()
    fw = MemoryFirewall(executor=executor, retry=no_retry)
    assert fw.block("B", ["1.1.1.1"])
    executor.fail_next = 1
    result = fw.block("B", ["2.2.2.2"])
    assert result.status is ResultStatus.FAILED
    assert _ranges(fw, "IPWarden_B") == ["1.1.1.1"]
    assert executor.calls[-1] == ("rewrite", "IPWarden_B")


def test_failed_first_apply_deletes_partial_rule(no_retry):
    executor = MemoryExecutor(fail_next=1)
    fw = MemoryFirewall(executor=executor, retry=no_retry)
    assert not fw.block("B", ["1.1.1.1"])
    assert fw.store.get("IPWarden_B") is None
    assert executor.calls == [("apply", "IPWarden_B"), ("delete", "IPWarden_B")]


def test_partial_multi_family_apply_is_rolled_back(no_retry):
    class FailIPv6(MemoryExecutor):
        def apply_group(self, old, new, added, removed):
            super().apply_group(old, new, added, removed)
            if new.name.endswith("_6"):
                raise ApplyFailed("ip6tables exploded")

    executor = FailIPv6()
    fw = MemoryFirewall(executor=executor, retry=no_retry)
    result = fw.block("B", ["1.1.1.1", "2001:db8::1"])
    assert not result
    assert fw.get_rule_names().value == []
    assert ("delete", "IPWarden_B") in executor.calls
    assert ("delete", "IPWarden_B_6") in executor.calls


def test_retry_recovers_transient_failure():
    executor = MemoryExecutor(fail_next=2)
    fw = MemoryFirewall(executor=executor, retry=RetryPolicy(attempts=3, delay=0))
    assert fw.block("B", ["1.1.1.1"])
    assert executor.calls.count(("apply", "IPWarden_B")) == 3


def test_permission_denied_is_not_retried():
    executor = MemoryExecutor(fail_next=5, error=PrivilegeRequired("must be root"))
    fw = MemoryFirewall(executor=executor, retry=RetryPolicy(attempts=3, delay=0))
    result = fw.block("B", ["1.1.1.1"])
    assert result.status is ResultStatus.PERMISSION_DENIED
    assert executor.calls.count(("apply", "IPWarden_B")) == 1


def test_cancelled_operation_changes_nothing(memory_firewall, memory_executor, cancelled):
    result = memory_firewall.block("B", ["1.1.1.1"], cancel=cancelled)
    assert result.status is ResultStatus.CANCELLED
    assert memory_firewall.get_rule_names().value == []
    assert memory_executor.calls == []


def test_delete_and_truncate(memory_firewall):
    memory_firewall.block("B", ["1.1.1.1", "::2"])
    assert memory_firewall.delete_rule("IPWarden_B").value is True
    assert memory_firewall.delete_rule("IPWarden_B").value is False
    assert memory_firewall.truncate().value == ["IPWarden_B_6"]
    assert memory_firewall.get_rule_names().value == []


def test_memory_state_persistence_is_not_supported(memory_firewall, tmp_path):
    assert memory_firewall.save_state(tmp_path / "x").status is ResultStatus.NOT_SUPPORTED


def test_concurrent_deltas_compose(memory_firewall):
    def ban(i):
        memory_firewall.block_delta("B", [(f"10.0.{i}.1", True)])

    threads = [threading.Thread(target=ban, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(memory_firewall.store.get("IPWarden_B").ranges) == 20


@pytest.mark.parametrize("operation,args", [
    ("allow", (["1.1.1.1"],)),
    ("block", ("B", ["1.1.1.1"])),
    ("block_delta", ("B", [("1.1.1.1", True)])),
    ("get_rule_names", ()),
    ("delete_rule", ("x",)),
    ("enumerate_allowed_addresses", ()),
    ("enumerate_banned_addresses", ()),
    ("enumerate_ip_addresses", ()),
    ("is_ip_address_allowed", ("1.1.1.1",)),
    ("is_ip_address_blocked", ("1.1.1.1",)),
    ("truncate", ()),
    ("save_state", ("/tmp/x",)),
    ("restore_state", ("/tmp/x",)),
])
def test_macos_reports_not_supported(operation, args):
    result = getattr(MacFirewall(), operation)(*args)
    assert result.status is ResultStatus.NOT_SUPPORTED
    assert not result


def test_unsupported_logs_once_per_operation(caplog):
    fw = UnsupportedFirewall(platform_name="plan9")
    with caplog.at_level("WARNING"):
        fw.truncate()
        fw.truncate()
        fw.allow([])
    messages = [r.getMessage() for r in caplog.records]
    assert sum("truncate" in m for m in messages) == 1
    assert sum("allow" in m for m in messages) == 1


def test_factory(monkeypatch):
    assert isinstance(create_firewall("linux"), LinuxFirewall)
    assert isinstance(create_firewall("Windows"), WindowsFirewall)
    assert isinstance(create_firewall("darwin"), MacFirewall)
    assert isinstance(create_firewall("memory"), MemoryFirewall)
    unknown = create_firewall("plan9")
    assert type(unknown) is UnsupportedFirewall
    assert unknown.block("B", ["1.1.1.1"]).status is ResultStatus.NOT_SUPPORTED

    monkeypatch.setenv("IPWARDEN_PLATFORM", "memory")
    assert detect_platform() == "memory"
    assert isinstance(create_firewall(), MemoryFirewall)
    monkeypatch.delenv("IPWARDEN_PLATFORM")
    monkeypatch.setattr("ipwarden.core.firewall.platform.system", lambda: "Darwin")
    assert detect_platform() == "macos"


def test_factory_passes_options():
    fw = create_firewall("memory", rule_prefix="X_", retry=RetryPolicy(attempts=1))
    fw.block("B", ["1.1.1.1"])
    assert fw.get_rule_names().value == ["X_B"]
