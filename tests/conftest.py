"""
Pytest configuration and fixtures for proxyguard tests.

External nginx/pgrep commands are replaced by FakeRunner, which answers
the way the real binaries do and records every call.
"""

import asyncio
from pathlib import Path
from typing import List

import pytest

from nginx_ctl import CommandResult, NginxControl, ReloadCoordinator, StatusInspector
from whitelist import WhitelistGroup, ClientEntry, DestinationEntry

TEST_OK_OUTPUT = (
    "nginx: the configuration file {path} syntax is ok\n"
    "nginx: configuration file {path} test is successful\n"
)
TEST_FAIL_OUTPUT = (
    'nginx: [emerg] unexpected "}}" in {path}:3\n'
    "nginx: configuration file {path} test failed\n"
)


class FakeRunner:
    """Scripted stand-in for run_command"""

    def __init__(self, test_ok=True, reload_ok=True, running=True, delay=0.0):
        self.test_ok = test_ok
        self.reload_ok = reload_ok
        self.running = running
        self.delay = delay
        self.calls: List[List[str]] = []
        self.tested_paths: List[str] = []
        self.tested_texts: List[str] = []

    async def __call__(self, cmd, timeout):
        self.calls.append(list(cmd))
        if self.delay:
            await asyncio.sleep(self.delay)

        if cmd[0] == "pgrep":
            if self.running:
                return CommandResult(0, "1234\n")
            return CommandResult(1)

        if "-t" in cmd:
            path = cmd[-1]
            self.tested_paths.append(path)
            if Path(path).exists():
                self.tested_texts.append(Path(path).read_text(encoding="utf-8"))
            if self.test_ok:
                return CommandResult(0, "", TEST_OK_OUTPUT.format(path=path))
            return CommandResult(1, "", TEST_FAIL_OUTPUT.format(path=path))

        if cmd[1:] == ["-s", "reload"]:
            if self.reload_ok:
                return CommandResult(0)
            return CommandResult(1, "", 'nginx: [error] invalid PID number "" in "/run/nginx.pid"\n')

        return CommandResult(127, "", f"unexpected command {cmd}")

    def commands(self) -> List[str]:
        """Short names of the commands run, in order"""
        names = []
        for cmd in self.calls:
            if cmd[0] == "pgrep":
                names.append("pgrep")
            elif "-t" in cmd:
                names.append("test")
            elif "reload" in cmd:
                names.append("reload")
        return names


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def nginx(runner) -> NginxControl:
    return NginxControl("nginx", runner=runner, timeout=5)


@pytest.fixture
def coordinator(nginx) -> ReloadCoordinator:
    return ReloadCoordinator(nginx, backup_retention=3)


@pytest.fixture
def inspector(nginx) -> StatusInspector:
    return StatusInspector(nginx)


@pytest.fixture
def config_path(tmp_path) -> Path:
    return tmp_path / "nginx" / "nginx.conf"


def make_group(name, clients, destinations, enabled=True, group_id=None, description="") -> WhitelistGroup:
    kwargs = {}
    if group_id:
        kwargs["id"] = group_id
    return WhitelistGroup(
        name=name,
        description=description,
        clients=[ClientEntry(value=c) for c in clients],
        destinations=[DestinationEntry(value=d) for d in destinations],
        enabled=enabled,
        **kwargs,
    )


@pytest.fixture
def office_group() -> WhitelistGroup:
    return make_group(
        "Office",
        ["192.168.1.10", "10.0.0.0/24"],
        ["example.com", "*.github.com", "pypi.org"],
        group_id="grp-office",
        description="Office workstations",
    )


@pytest.fixture
def lab_group() -> WhitelistGroup:
    return make_group("Lab", ["172.16.5.0/24"], ["updates.lab.local"], group_id="grp-lab")
