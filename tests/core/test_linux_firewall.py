from ipwarden.core.address import IPV4, IPV6, PortRange
from ipwarden.core.firewall import LinuxFirewall, ResultStatus
from ipwarden.core.firewall.linux import IpsetExecutor
from ipwarden.core.rangeset import RangeSet
from ipwarden.core.retry import RetryPolicy
from ipwarden.core.rules import ACTION_ALLOW, RuleGroup
from tests.utils.fake_subprocess import FakeSubprocess


def _firewall(fake, **kwargs):
    return LinuxFirewall(executor=IpsetExecutor(runner=fake), retry=RetryPolicy(attempts=1, delay=0), **kwargs)


def test_swap_payload_for_new_group():
    group = RuleGroup("IPWarden_Block", IPV4, RangeSet(IPV4, ["1.2.3.0-1.2.3.2"]))
    payload = IpsetExecutor().swap_payload(group).splitlines()
    assert payload[0].startswith("create IPWarden_Block_t hash:net family inet ")
    assert "maxelem 1048576" in payload[0]
    assert payload[1] == "flush IPWarden_Block_t"
    assert payload[2:4] == ["add IPWarden_Block_t 1.2.3.0/31 -exist", "add IPWarden_Block_t 1.2.3.2/32 -exist"]
    assert payload[-2:] == ["swap IPWarden_Block_t IPWarden_Block", "destroy IPWarden_Block_t"]


def test_rule_spec():
    executor = IpsetExecutor()
    group = RuleGroup("IPWarden_Ssh_6", IPV6, RangeSet(IPV6), ports=(PortRange(22, 22), PortRange(2200, 2299)))
    assert executor.rule_spec(group) == [
        "-m", "set", "--match-set", "IPWarden_Ssh_6", "src",
        "-p", "tcp", "-m", "multiport", "--dports", "22,2200:2299",
        "-j", "DROP",
    ]
    assert executor.iptables_binary(IPV6) == "ip6tables"


def test_block_creates_set_and_rule():
    fake = FakeSubprocess()
    fake.when("iptables -C").then_stdout("", returncode=1, stderr="Bad rule")
    fw = _firewall(fake)
    assert fw.block("Block", ["5.6.7.8"])
    restore = fake.inputs("ipset restore")
    assert len(restore) == 1
    assert "add IPWarden_Block_t 5.6.7.8/32 -exist" in restore[0]
    assert fake.commands("iptables -A INPUT -m set --match-set IPWarden_Block src -j DROP")


def test_allow_rule_is_inserted_first():
    fake = FakeSubprocess()
    fake.when("iptables -C").then_stdout("", returncode=1)
    fw = _firewall(fake)
    assert fw.allow(["192.0.2.1"])
    assert fake.commands("iptables -I INPUT 1 -m set --match-set IPWarden_Allow src -j ACCEPT")


def test_delta_sends_only_changed_entries():
    fake = FakeSubprocess()
    fw = _firewall(fake)
    fw.block("Block", ["1.2.3.0-1.2.3.10"])
    fake.calls.clear()
    assert fw.block_delta("Block", [("1.2.3.5", False), ("9.9.9.9", True)])
    payloads = fake.inputs("ipset restore -!")
    assert payloads == ["del IPWarden_Block 1.2.3.5/32 -exist\nadd IPWarden_Block 9.9.9.9/32 -exist\n"]
    # rule already present (iptables -C succeeds by default), so nothing is appended
    assert not fake.commands("iptables -A")


def test_permission_error_maps_to_permission_denied():
    fake = FakeSubprocess()
    fake.when("ipset restore").then_stdout("", returncode=1, stderr="ipset v7.1: Operation not permitted")
    fw = _firewall(fake)
    result = fw.block("Block", ["1.1.1.1"])
    assert result.status is ResultStatus.PERMISSION_DENIED
    assert fw.store.get("IPWarden_Block") is None


def test_missing_tool_is_a_failure():
    fake = FakeSubprocess()
    fake.when("ipset").then_raise(FileNotFoundError("ipset"))
    fw = _firewall(fake)
    result = fw.block("Block", ["1.1.1.1"])
    assert result.status is ResultStatus.FAILED
    assert "not found" in result.message


def test_overlong_names_are_rejected():
    fake = FakeSubprocess()
    fw = _firewall(fake, rule_prefix="AVeryLongRulePrefixForIpset_")
    assert fw.block("BlockList", ["1.1.1.1"]).status is ResultStatus.FAILED
    assert not fake.inputs("ipset restore")


def test_changing_ports_replaces_iptables_rule():
    fake = FakeSubprocess()
    fw = _firewall(fake)
    fw.block("Ssh", ["1.1.1.1"], ports=["22"])
    fake.calls.clear()
    assert fw.block("Ssh", ["1.1.1.1"], ports=["2222"])
    assert fake.commands("iptables -D INPUT -m set --match-set IPWarden_Ssh src -p tcp -m multiport --dports 22 ")


def test_delete_rule_removes_rule_and_set():
    fake = FakeSubprocess()
    fw = _firewall(fake)
    fw.block("Block", ["1.1.1.1"])
    fake.calls.clear()
    fake.when("iptables -C").then_stdout("", returncode=1)
    assert fw.delete_rule("IPWarden_Block").value is True
    assert fake.commands("ipset destroy IPWarden_Block")


IPSET_SAVE = """create IPWarden_Block hash:net family inet hashsize 1024 maxelem 1048576
add IPWarden_Block 1.2.3.0/31
add IPWarden_Block 1.2.3.2
create IPWarden_Allow_6 hash:net family inet6 hashsize 1024 maxelem 1048576
add IPWarden_Allow_6 2001:db8::/64
create docker_set hash:ip family inet hashsize 1024 maxelem 65536
add docker_set 172.17.0.2
"""

IPTABLES_S = """-P INPUT ACCEPT
-A INPUT -m set --match-set IPWarden_Block src -p tcp -m multiport --dports 22,8000:8080 -j DROP
"""

IP6TABLES_S = """-P INPUT ACCEPT
-A INPUT -m set --match-set IPWarden_Allow_6 src -j ACCEPT
"""


def test_startup_rebuild_from_ipset_save():
    fake = FakeSubprocess()
    fake.when("ipset save").then_stdout(IPSET_SAVE)
    fake.when("ip6tables -S").then_stdout(IP6TABLES_S)
    fake.when("iptables -S").then_stdout(IPTABLES_S)
    fw = _firewall(fake, load_existing=True)
    assert fw.get_rule_names().value == ["IPWarden_Allow_6", "IPWarden_Block"]
    block = fw.store.get("IPWarden_Block")
    assert [str(r) for r in block.ranges] == ["1.2.3.0-1.2.3.2"]
    assert block.ports == (PortRange(22, 22), PortRange(8000, 8080))
    assert fw.store.get("IPWarden_Allow_6").action == ACTION_ALLOW
    assert fw.is_ip_address_allowed("2001:db8::5").value is True


def test_save_and_restore_state(tmp_path):
    fake = FakeSubprocess()
    fake.when("ipset save").then_stdout(IPSET_SAVE)
    fw = _firewall(fake)
    path = tmp_path / "state" / "ipset.save"
    assert fw.save_state(path)
    assert path.read_text() == IPSET_SAVE
    assert not (tmp_path / "state" / "ipset.tmp").exists()

    fake.when("iptables -C").then_stdout("", returncode=1)
    result = fw.restore_state(path)
    assert result.value == 2
    assert fake.inputs("ipset restore -!") == [IPSET_SAVE]
    assert fake.commands("iptables -A INPUT -m set --match-set IPWarden_Block src -j DROP")


def test_restore_missing_file_fails(tmp_path):
    fw = _firewall(FakeSubprocess())
    assert fw.restore_state(tmp_path / "missing").status is ResultStatus.FAILED
