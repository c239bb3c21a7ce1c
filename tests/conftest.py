import asyncio
import os
import sys
import time

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dorc import db  # noqa: E402
from dorc.errors import ContainerStartError  # noqa: E402
from dorc.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite file."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "dorc.db")))
    db.init_db()
    return tmp_path / "dorc.db"


class FakeRuntime:
    """In-memory container platform.

    Probe results are scripted per ``"<revision>/<container>"`` key: a list of
    exit codes (the last one repeats) or a callable returning one. Unscripted
    containers always pass.
    """

    def __init__(self):
        self.running = {}  # runtime name -> key
        self.launches = []  # keys, in start order
        self.stopped = []  # runtime names, in stop order
        self.env = {}  # key -> env passed at start
        self.probes = {}
        self.exec_delay = {}  # key -> seconds
        self.exec_times = {}  # key -> [time.monotonic()]
        self.fail_start = set()  # keys
        self.start_delay = {}  # key -> seconds before the container exists
        self.is_running_errors = {}  # key -> number of failing is_running calls left
        self.cancelled_execs = 0

    async def start(self, name, spec, env, labels):
        await asyncio.sleep(0)
        key = f"{labels['dorc.revision']}/{spec.name}"
        if key in self.fail_start:
            raise ContainerStartError(f"cannot start {name}")
        if self.start_delay.get(key):
            await asyncio.sleep(self.start_delay[key])
        self.launches.append(key)
        self.env[key] = dict(env)
        self.running[name] = key

    async def stop(self, name):
        await asyncio.sleep(0)
        self.stopped.append(name)
        self.running.pop(name, None)

    async def is_running(self, name):
        key = self.running.get(name)
        if self.is_running_errors.get(key):
            self.is_running_errors[key] -= 1
            raise ConnectionError("docker daemon unreachable")
        return name in self.running

    async def exec(self, name, command):
        key = self.running.get(name)
        if key is None:
            return -1
        self.exec_times.setdefault(key, []).append(time.monotonic())
        try:
            delay = self.exec_delay.get(key, 0)
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self.cancelled_execs += 1
            raise
        script = self.probes.get(key, 0)
        if callable(script):
            return script()
        if isinstance(script, list):
            return script.pop(0) if len(script) > 1 else script[0]
        return script

    def http_base(self, name, port):
        return f"http://{name}:{port}"

    def kill(self, key):
        for name, k in list(self.running.items()):
            if k == key:
                del self.running[name]


@pytest.fixture
def runtime():
    return FakeRuntime()
