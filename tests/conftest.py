"""Shared fixtures: an in-memory supervisor and a manager rooted in tmp_path."""

import pytest

from worker_manager.config import ManagerOptions
from worker_manager.errors import SupervisorError
from worker_manager.manager import ProcessManager
from worker_manager.models import ProcessInfo, STATUS_ONLINE, STATUS_STOPPED
from worker_manager.supervisor import SupervisorAdapter


class FakeSupervisor(SupervisorAdapter):
    """In-memory supervisor that records every call.

    `fail("stop")` makes the next and all later stop calls raise; pass an
    exception instance to raise something other than SupervisorError.
    """

    def __init__(self):
        self._connected = False
        self._next_id = 0
        self.apps: dict[str, list[ProcessInfo]] = {}
        self.specs = {}
        self.calls = []
        self.failures = {}

    def fail(self, operation: str, error: Exception = None):
        self.failures[operation] = error or SupervisorError(f"{operation} failed")

    def _record(self, operation: str, *args):
        self.calls.append((operation, *args))
        if operation in self.failures:
            raise self.failures[operation]

    def _require(self, name: str) -> list[ProcessInfo]:
        if name not in self.apps:
            raise SupervisorError(f"Process {name} not found")
        return self.apps[name]

    def called(self, operation: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == operation]

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        self._record("connect")
        self._connected = True

    async def disconnect(self):
        self._record("disconnect")
        self._connected = False

    async def launch(self, spec):
        self._record("launch", spec.name)
        pm_id = self._next_id
        self._next_id += 1
        self.specs[spec.name] = spec
        self.apps[spec.name] = [ProcessInfo(pm_id=pm_id, name=spec.name, pid=4000 + pm_id, status=STATUS_ONLINE)]
        return pm_id

    async def start(self, name):
        self._record("start", name)
        for info in self._require(name):
            info.status = STATUS_ONLINE

    async def stop(self, name):
        self._record("stop", name)
        for info in self._require(name):
            info.status = STATUS_STOPPED

    async def restart(self, name):
        self._record("restart", name)
        for info in self._require(name):
            info.status = STATUS_ONLINE
            info.restarts += 1

    async def delete(self, name):
        self._record("delete", name)
        self._require(name)
        del self.apps[name]

    async def stop_all(self):
        self._record("stop_all")
        for infos in self.apps.values():
            for info in infos:
                info.status = STATUS_STOPPED

    async def restart_all(self):
        self._record("restart_all")
        for infos in self.apps.values():
            for info in infos:
                info.status = STATUS_ONLINE
                info.restarts += 1

    async def describe(self, name):
        self._record("describe", name)
        return list(self.apps.get(name, []))

    async def list(self):
        self._record("list")
        return [info for infos in self.apps.values() for info in infos]


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def options(tmp_path):
    return ManagerOptions(base_dir=tmp_path)


@pytest.fixture
def exit_calls():
    return []


@pytest.fixture
def manager(options, supervisor, exit_calls):
    return ProcessManager(options, supervisor=supervisor, exit_func=lambda: exit_calls.append(True))
