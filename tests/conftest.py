from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path
from typing import Any, Optional

import pytest

_FAKE_INITDB_SCRIPT = """#!/usr/bin/env python3
import os
import sys

argv = sys.argv[1:]
if os.environ.get("FAKE_INITDB_FAIL"):
    print("initdb: could not create directory: Permission denied", file=sys.stderr)
    sys.exit(1)
if "-D" not in argv:
    print("initdb: no data directory specified", file=sys.stderr)
    sys.exit(1)
data_dir = argv[argv.index("-D") + 1]
os.makedirs(data_dir)
with open(os.path.join(data_dir, "postgresql.conf"), "w") as f:
    f.write("# fake postgresql.conf\\n")
print("Success. You can now start the database server")
"""

_FAKE_POSTGRES_SCRIPT = """#!/usr/bin/env python3
import os
import signal
import sys
import time

STATE_DIR = os.environ["FAKE_PG_STATE"]


def on_term(signum, frame):
    with open(os.path.join(STATE_DIR, "postgres-terminated"), "w") as f:
        f.write("1")
    sys.exit(0)


signal.signal(signal.SIGTERM, on_term)
with open(os.path.join(STATE_DIR, "postgres-argv"), "w") as f:
    f.write(" ".join(sys.argv[1:]))
if os.environ.get("FAKE_PG_EXIT"):
    print("FATAL: could not bind Unix socket", file=sys.stderr)
    sys.exit(1)
while True:
    time.sleep(0.1)
"""

_FAKE_CREATEDB_SCRIPT = """#!/usr/bin/env python3
import fcntl
import json
import os
import sys

STATE_DIR = os.environ["FAKE_PG_STATE"]
failures = int(os.environ.get("FAKE_CREATEDB_FAILURES", "0"))
name = sys.argv[-1]

lock = open(os.path.join(STATE_DIR, "createdb.lock"), "w")
fcntl.flock(lock, fcntl.LOCK_EX)

counter_path = os.path.join(STATE_DIR, "createdb-attempts")
attempt = 1
if os.path.exists(counter_path):
    with open(counter_path) as f:
        attempt = int(f.read()) + 1
with open(counter_path, "w") as f:
    f.write(str(attempt))

if attempt <= failures:
    print(f"createdb: attempt {attempt}: could not connect to server", file=sys.stderr)
    sys.exit(1)

db_path = os.path.join(STATE_DIR, "databases.json")
dbs = []
if os.path.exists(db_path):
    with open(db_path) as f:
        dbs = json.load(f)
if name in dbs:
    print(f'createdb: attempt {attempt}: database "{name}" already exists', file=sys.stderr)
    sys.exit(1)
dbs.append(name)
with open(db_path, "w") as f:
    json.dump(dbs, f)
"""


@pytest.fixture
def fake_pg_bin(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict[str, Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    for name, script in (
        ("initdb", _FAKE_INITDB_SCRIPT),
        ("postgres", _FAKE_POSTGRES_SCRIPT),
        ("createdb", _FAKE_CREATEDB_SCRIPT),
    ):
        path = bin_dir / name
        path.write_text(script)
        path.chmod(0o755)

    state_dir = tmp_path / "pg-state"
    state_dir.mkdir()
    base_dir = tmp_path / "sandbox"
    base_dir.mkdir()

    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("FAKE_PG_STATE", str(state_dir))
    for var in ("FAKE_INITDB_FAIL", "FAKE_PG_EXIT", "FAKE_CREATEDB_FAILURES"):
        monkeypatch.delenv(var, raising=False)

    import pg_sandbox_server as sm

    monkeypatch.setattr(sm, "PG_BIN_DIR", "")

    return {
        "tmp_path": tmp_path,
        "bin_dir": bin_dir,
        "state_dir": state_dir,
        "base_dir": base_dir,
    }


def _createdb_attempts(state_dir: Path) -> int:
    path = state_dir / "createdb-attempts"
    return int(path.read_text()) if path.exists() else 0


# ── Fake tenant service ──────────────────────────────────────────────────


class FakeConn:
    def __init__(self, service: "FakeService"):
        self._service = service

    async def execute(self, sql: str, *args: Any) -> str:
        self._service.executed.append(sql)
        return "CREATE TABLE"


class FakeService:
    def __init__(
        self,
        config,
        events: list,
        listen_error: Optional[BaseException] = None,
        close_delay: float = 0.01,
    ):
        self.config = config
        self._events = events
        self._listen_error = listen_error
        self._close_delay = close_delay
        self.executed: list[str] = []
        self.listen_calls = 0
        self.closed = False

    @property
    def port(self) -> int:
        return self.config.port

    async def listen(self):
        self.listen_calls += 1
        if self._listen_error is not None:
            raise self._listen_error
        self._events.append(("listen", self.config.port))

    @contextlib.asynccontextmanager
    async def connection(self):
        yield FakeConn(self)

    async def close(self):
        await asyncio.sleep(self._close_delay)
        self.closed = True
        self._events.append(("close", self.config.port))


def _service_factory(events: list, **kwargs: Any):
    created: list[FakeService] = []

    def factory(config):
        svc = FakeService(config, events, **kwargs)
        created.append(svc)
        return svc

    factory.created = created  # type: ignore[attr-defined]
    return factory


def _test_logger() -> logging.Logger:
    return logging.getLogger("pg-sandbox.test")


def _configure_shutdown(sm, monkeypatch: pytest.MonkeyPatch, events: list, holder: dict):
    """Shrink the grace period and replace the process-group kill."""
    monkeypatch.setattr(sm, "SHUTDOWN_GRACE", 0.2)

    def fake_kill():
        events.append("kill")
        sb = holder.get("sandbox")
        if sb is not None and sb.pg_proc is not None and sb.pg_proc.returncode is None:
            sb.pg_proc.terminate()

    monkeypatch.setattr(sm, "_kill_process_group", fake_kill)
