"""Test configuration and fixtures."""
import threading

import pytest
import yaml

from ipwarden.core.firewall.memory import MemoryExecutor, MemoryFirewall
from ipwarden.core.retry import RetryPolicy
from ipwarden.utils import cmd_runner
from tests.utils.fake_subprocess import FakeSubprocess


@pytest.fixture(autouse=True)
def _no_platform_override(monkeypatch):
    monkeypatch.delenv("IPWARDEN_PLATFORM", raising=False)
    monkeypatch.delenv("IPWARDEN_CONFIG", raising=False)


@pytest.fixture
def fake_subprocess():
    """A FakeSubprocess installed as the module-wide runner."""
    fake = FakeSubprocess()
    cmd_runner.set_runner(fake)
    yield fake
    cmd_runner.reset_runner()


@pytest.fixture
def no_retry():
    return RetryPolicy(attempts=1, delay=0)


@pytest.fixture
def memory_executor():
    return MemoryExecutor()


@pytest.fixture
def memory_firewall(memory_executor, no_retry):
    return MemoryFirewall(executor=memory_executor, retry=no_retry)


@pytest.fixture
def cancelled():
    event = threading.Event()
    event.set()
    return event


@pytest.fixture
def warden_yaml(tmp_path):
    """Write a minimal ipwarden.yaml and return its path."""
    config = {
        "firewall": {"platform": "memory", "rule_prefix": "IPW_", "retry": {"attempts": 1, "delay_seconds": 0}},
        "banning": {"failed_login_threshold": 3, "ban_seconds": 60, "whitelist": ["203.0.113.0/24"]},
        "updaters": {"interval_seconds": 1, "ban_file": str(tmp_path / "ban.txt")},
    }
    path = tmp_path / "ipwarden.yaml"
    path.write_text(yaml.safe_dump(config))
    return path
