#!/usr/bin/env python3
"""MCP server exposing throwaway PostgreSQL sandboxes for tests.

Each sandbox is a worker process that owns a private ``initdb`` cluster, a
``postgres`` process listening only on a Unix socket directory, and one
tenant service per database created on demand. The parent side talks to
the worker over its stdin/stdout with newline-delimited JSON.
"""

import asyncio
import contextlib
import json
import logging
import os
import random
import re
import shutil
import signal
import sys
import tempfile
import traceback
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import asyncpg
from mcp.server.fastmcp import FastMCP

# ── Logging (stdout is MCP protocol or the control channel) ─────────────

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

log = logging.getLogger("pg-sandbox")

# ── Config ───────────────────────────────────────────────────────────────

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Directory holding initdb/postgres/createdb; empty means look on PATH
PG_BIN_DIR = os.environ.get("PG_BIN_DIR", "")

BIND_IP = "127.0.0.1"
SERVICE_NAME = "pg-sandbox"

PG_CONFIG = "\n".join(
    [
        "listen_addresses = ''",
        "fsync = off",
        "synchronous_commit = off",
        "full_page_writes = off",
    ]
)

BUCKETS_CONFIG_SQL = (
    "CREATE TABLE IF NOT EXISTS buckets_config ( "
    "name text PRIMARY KEY, "
    "index text NOT NULL, "
    "pre text NOT NULL, "
    "post text NOT NULL, "
    "options text, "
    "mtime timestamp without time zone DEFAULT now() NOT NULL"
    ");"
)

# Tenant service ports are drawn from [low, high)
PORT_RANGE = (2000, 10000)

SERVICE_MAX_CONNECTIONS = 5
SERVICE_QUERY_TIMEOUT_MS = 30000

# createdb races the postgres startup, so early failures are expected
CREATEDB_ATTEMPTS = 5
CREATEDB_RETRY_DELAY = 0.0

# Time postgres gets after SIGTERM before its files are removed
SHUTDOWN_GRACE = float(os.environ.get("PG_SANDBOX_SHUTDOWN_GRACE", "5"))

SUPERVISOR_STOP_TIMEOUT = SHUTDOWN_GRACE + 10.0

MAX_LINE = 1 << 20

_WORKER_SCRIPT = os.path.abspath(__file__)
_SANDBOX_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_DB_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

# Control message types
MSG_LOG_LOCATION = "log_location"
MSG_READY = "ready"
MSG_STARTUP_FAILED = "startup_failed"
MSG_PROVISION = "provision"
MSG_PROVISIONED = "provisioned"
MSG_PROVISION_FAILED = "provision_failed"
MSG_PROTOCOL_ERROR = "protocol_error"


# ── Errors ───────────────────────────────────────────────────────────────


class SandboxError(RuntimeError):
    """Failure inside the sandbox; the message includes its cause."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        full = f"{message}: {cause}" if cause is not None else message
        super().__init__(full)
        self.__cause__ = cause


class CommandError(SandboxError):
    def __init__(self, argv: list[str], exit_code: int, stderr: str):
        detail = stderr.strip() or "no output"
        super().__init__(f"{argv[0]} exited with status {exit_code} ({detail})")
        self.argv = argv
        self.exit_code = exit_code
        self.stderr = stderr


class ProtocolError(ValueError):
    pass


class WorkerError(RuntimeError):
    """Failure reported by (or inferred about) a sandbox worker."""

    def __init__(
        self,
        req_id: Optional[str],
        message: str,
        causes: Optional[list[str]] = None,
        worker_traceback: str = "",
    ):
        super().__init__(message)
        self.req_id = req_id
        self.message = message
        self.causes = causes or []
        self.worker_traceback = worker_traceback

    @classmethod
    def from_detail(cls, req_id: Optional[str], detail: Any) -> "WorkerError":
        if not isinstance(detail, dict):
            return cls(req_id, str(detail))
        return cls(
            req_id,
            str(detail.get("message", "unknown error")),
            [str(c) for c in detail.get("causes") or []],
            str(detail.get("traceback", "")),
        )


class WorkerExitedError(WorkerError):
    pass


def _cause_chain(exc: BaseException) -> list[str]:
    causes = []
    seen = {id(exc)}
    cur = exc.__cause__ or exc.__context__
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        causes.append(f"{type(cur).__name__}: {cur}")
        cur = cur.__cause__ or cur.__context__
    return causes


def error_detail(exc: BaseException) -> dict:
    """Serialize an exception for the control channel."""
    return {
        "message": str(exc) or type(exc).__name__,
        "causes": _cause_chain(exc),
        "traceback": "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        ),
    }


# ── Helpers ──────────────────────────────────────────────────────────────


def _pg_bin(name: str) -> str:
    return os.path.join(PG_BIN_DIR, name) if PG_BIN_DIR else name


async def _run(cmd: list[str], timeout: Optional[float] = None) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


async def _check_call(cmd: list[str], log: logging.Logger) -> str:
    log.info(f"Executing command: {' '.join(cmd)}")
    code, stdout, stderr = await _run(cmd)
    log.info(f"Finished {cmd[0]} (exit {code})")
    if code != 0:
        raise CommandError(cmd, code, stderr)
    return stdout


def _random_port() -> int:
    low, high = PORT_RANGE
    return random.randrange(low, high)


def _kill_process_group():
    # The worker leads its own session, so this reaches postgres and any
    # createdb stragglers without touching the supervisor.
    os.killpg(os.getpgid(0), signal.SIGTERM)


async def run_pipeline(
    steps: list[Callable[[Any], Awaitable[Any]]], initial: Any = None
) -> Any:
    """Run steps in order, feeding each the previous result.

    The first exception propagates and no later step runs.
    """
    value = initial
    for step in steps:
        value = await step(value)
    return value


async def retry_async(
    fn: Callable[[int], Awaitable[Any]],
    attempts: int,
    delay: float = 0.0,
    log: logging.Logger = log,
    what: str = "operation",
) -> Any:
    """Call ``fn(attempt)`` until it succeeds; re-raise the last failure."""
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        try:
            return await fn(attempt)
        except Exception as e:
            if attempt >= attempts:
                log.error(f"{what} failed (attempt {attempt}/{attempts}); aborting: {e}")
                raise
            log.warning(f"{what} failed (attempt {attempt}/{attempts}); retrying: {e}")
            if delay:
                await asyncio.sleep(delay)


# ── Temporary storage ────────────────────────────────────────────────────


class TempDir:
    """Private directory under $TMPDIR, removed by an idempotent cleanup()."""

    def __init__(self, prefix: str = "pg-sandbox-"):
        self.path = tempfile.mkdtemp(prefix=prefix)
        self.removed = False

    def cleanup(self):
        if self.removed:
            return
        self.removed = True
        shutil.rmtree(self.path, ignore_errors=True)


# ── Tenant service ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class ConnectionInfo:
    socket_dir: str
    database: str

    @property
    def dsn(self) -> str:
        return f"postgresql:///{quote(self.database)}?host={quote(self.socket_dir)}"


@dataclass
class StandaloneBackend:
    url: ConnectionInfo
    max_connections: int = SERVICE_MAX_CONNECTIONS
    query_timeout_ms: int = SERVICE_QUERY_TIMEOUT_MS


@dataclass
class ServiceConfig:
    name: str
    port: int
    bind_ip: str
    backend: StandaloneBackend
    audit: bool = False
    log: logging.Logger = field(default=log, repr=False)


def make_service_config(
    log: logging.Logger, conn: ConnectionInfo
) -> tuple[ServiceConfig, dict]:
    """Build the server config and the matching client endpoint."""
    port = _random_port()
    config = ServiceConfig(
        name=SERVICE_NAME,
        port=port,
        bind_ip=BIND_IP,
        backend=StandaloneBackend(url=conn),
        audit=False,
        log=log,
    )
    return config, {"host": BIND_IP, "port": port}


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


class TenantService:
    """JSON-lines TCP front end for one tenant database."""

    def __init__(
        self,
        config: ServiceConfig,
        pool_factory: Callable[..., Awaitable[Any]] = asyncpg.create_pool,
    ):
        self.config = config
        self.log = config.log
        self._pool_factory = pool_factory
        self._pool: Any = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: set[asyncio.StreamWriter] = set()
        self.closed = False

    @property
    def port(self) -> int:
        return self.config.port

    async def listen(self):
        backend = self.config.backend
        self._pool = await self._pool_factory(
            host=backend.url.socket_dir,
            database=backend.url.database,
            min_size=1,
            max_size=backend.max_connections,
            command_timeout=backend.query_timeout_ms / 1000,
        )
        try:
            self._server = await asyncio.start_server(
                self._handle_client,
                host=self.config.bind_ip,
                port=self.config.port,
                limit=MAX_LINE,
            )
        except OSError:
            await self._pool.close()
            self._pool = None
            raise
        if self.closed:
            # close() ran while the pool or server was still starting
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            if self._pool is not None:
                await self._pool.close()
                self._pool = None
            raise SandboxError("Tenant service closed while starting")
        self.log.info(
            f"{self.config.name} listening on {self.config.bind_ip}:{self.config.port} "
            f"(db={backend.url.database})"
        )

    @contextlib.asynccontextmanager
    async def connection(self):
        if self._pool is None:
            raise SandboxError("Tenant service has no connection pool")
        async with self._pool.acquire() as conn:
            yield conn

    async def close(self):
        if self.closed:
            return
        self.closed = True
        if self._server is not None:
            self._server.close()
            for writer in list(self._writers):
                writer.close()
            await self._server.wait_closed()
            self._server = None
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self.log.info(f"{self.config.name} on port {self.config.port} closed")

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        self._writers.add(writer)
        try:
            while True:
                try:
                    line = await reader.readline()
                except (asyncio.LimitOverrunError, ValueError):
                    await self._send(
                        writer, None, error=("INVALID_REQUEST", "Request too long")
                    )
                    return
                if not line:
                    return
                await self._handle_line(writer, line)
        except ConnectionError:
            pass
        finally:
            self._writers.discard(writer)
            writer.close()

    async def _handle_line(self, writer: asyncio.StreamWriter, line: bytes):
        req_id = None
        try:
            req = json.loads(line)
        except ValueError as e:
            await self._send(writer, req_id, error=("INVALID_REQUEST", f"Invalid JSON: {e}"))
            return
        if not isinstance(req, dict):
            await self._send(
                writer, req_id, error=("INVALID_REQUEST", "Request must be a JSON object")
            )
            return
        req_id = req.get("id")
        method = req.get("method", "")
        params = req.get("params") or {}
        if not isinstance(method, str) or not method:
            await self._send(writer, req_id, error=("INVALID_REQUEST", "Missing method"))
            return
        if not isinstance(params, dict):
            await self._send(
                writer, req_id, error=("INVALID_REQUEST", "params must be an object")
            )
            return
        if self.config.audit:
            self.log.info(f"audit {self.config.name}:{self.config.port} {method} {params}")
        try:
            result = await self._dispatch(method, params)
        except ValueError as e:
            await self._send(writer, req_id, error=("INVALID_REQUEST", str(e)))
        except asyncpg.PostgresError as e:
            await self._send(writer, req_id, error=("QUERY_FAILED", str(e)))
        except Exception as e:
            self.log.exception(f"{method} request failed")
            await self._send(writer, req_id, error=("INTERNAL_ERROR", str(e)))
        else:
            await self._send(writer, req_id, result=result)

    async def _send(
        self,
        writer: asyncio.StreamWriter,
        req_id: Any,
        result: Any = None,
        error: Optional[tuple[str, str]] = None,
    ):
        if error:
            resp: dict = {"id": req_id, "error": {"code": error[0], "message": error[1]}}
        else:
            resp = {"id": req_id, "result": result}
        writer.write((json.dumps(resp, separators=(",", ":")) + "\n").encode())
        await writer.drain()

    async def _dispatch(self, method: str, params: dict) -> Any:
        if method == "ping":
            return {"ok": True, "database": self.config.backend.url.database}

        if method in ("query", "execute"):
            sql = params.get("sql", "")
            args = params.get("args") or []
            if not isinstance(sql, str) or not sql:
                raise ValueError("params.sql required")
            if not isinstance(args, list):
                raise ValueError("params.args must be a list")
            async with self.connection() as conn:
                if method == "execute":
                    return {"status": await conn.execute(sql, *args)}
                rows = await conn.fetch(sql, *args)
            return {"rows": [_jsonable(dict(r)) for r in rows]}

        if method == "buckets":
            async with self.connection() as conn:
                rows = await conn.fetch("SELECT name, index, options FROM buckets_config")
            return {"buckets": [_jsonable(dict(r)) for r in rows]}

        raise ValueError(f"Unknown method: {method}")


# ── Sandbox ──────────────────────────────────────────────────────────────


class Sandbox:
    """One throwaway postgres cluster plus the tenant services built on it.

    Startup: initdb into ``db_dir``, then launch postgres bound to
    ``unix_dir`` only. Per request: createdb (retried while postgres comes
    up), then start a tenant service and create its bookkeeping table.
    """

    def __init__(
        self,
        log: logging.Logger,
        base_dir: str,
        cleanup: Callable[[], None],
        service_factory: Callable[[ServiceConfig], Any] = TenantService,
    ):
        self.log = log
        self.base_dir = base_dir
        self.db_dir = os.path.join(base_dir, "db")
        self.unix_dir = os.path.join(base_dir, "unix")
        self._cleanup = cleanup
        self._service_factory = service_factory
        self.stopping = False
        self.pg_proc: Optional[asyncio.subprocess.Process] = None
        self.services: list = []
        self._pg_watch: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    # ── Startup pipeline ─────────────────────────────────────────────

    async def start(self):
        await run_pipeline([self._init_db, self._start_pg])

    async def _init_db(self, _=None):
        args = [_pg_bin("initdb"), "-D", self.db_dir, "-E", "UNICODE", "-A", "trust"]
        try:
            await _check_call(args, self.log)
        except (CommandError, OSError) as e:
            raise SandboxError("initdb failed", e) from e

        cfg = os.path.join(self.db_dir, "postgresql.conf")
        try:
            with open(cfg, "a") as f:
                f.write("\n" + PG_CONFIG + "\n")
        except OSError as e:
            raise SandboxError("Failed to append to PG config", e) from e

        try:
            os.mkdir(self.unix_dir)
        except OSError as e:
            raise SandboxError("Failed to create directory for Unix sockets", e) from e

    async def _start_pg(self, _=None):
        args = [_pg_bin("postgres"), "-D", self.db_dir, "-k", self.unix_dir]
        self.log.info(f"Executing command: {' '.join(args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SandboxError("Failed to start postgres", e) from e
        self.pg_proc = proc
        self._pg_watch = asyncio.create_task(self._watch_pg(proc))

    async def _watch_pg(self, proc: asyncio.subprocess.Process):
        _, stderr = await proc.communicate()
        output = stderr.decode(errors="replace").strip()
        if proc.returncode:
            self.log.error(f"Postgres exited with status {proc.returncode}: {output}")
        else:
            self.log.info(f"Postgres exited non-fatally: {output}")
        self._stop_task = asyncio.ensure_future(self.stop())

    # ── On-demand pipeline ───────────────────────────────────────────

    async def provision(self, database: str) -> dict:
        """Create ``database`` and a tenant service for it; return its endpoint."""
        if self.stopping:
            raise SandboxError(f"Sandbox is stopping; refusing to create {database!r}")
        return await run_pipeline([self._create_db, self._start_service], database)

    async def _create_db(self, database: str) -> ConnectionInfo:
        args = [_pg_bin("createdb"), "-E", "UNICODE", "-h", self.unix_dir, database]

        async def attempt(_n: int):
            await _check_call(args, self.log)

        try:
            await retry_async(
                attempt,
                attempts=CREATEDB_ATTEMPTS,
                delay=CREATEDB_RETRY_DELAY,
                log=self.log,
                what=f"createdb {database}",
            )
        except (CommandError, OSError) as e:
            raise SandboxError(f"Failed to create database {database!r}", e) from e
        return ConnectionInfo(socket_dir=self.unix_dir, database=database)

    async def _start_service(self, conn: ConnectionInfo) -> dict:
        # createdb may still be running when stop() snapshots self.services
        if self.stopping:
            raise SandboxError(
                f"Sandbox is stopping; not starting a service for {conn.database!r}"
            )
        config, client = make_service_config(self.log, conn)
        service = self._service_factory(config)
        self.services.append(service)

        try:
            await service.listen()
        except Exception as e:
            raise SandboxError("Failed to start tenant service", e) from e
        if self.stopping:
            await service.close()
            raise SandboxError(f"Sandbox stopped while starting service for {conn.database!r}")

        try:
            async with service.connection() as pg:
                await pg.execute(BUCKETS_CONFIG_SQL)
        except Exception as e:
            self.log.error(f"Error setting up database and tables: {e}")
            raise SandboxError("Failed to set up tenant tables", e) from e

        self.log.info(f"Database and tables ready for {conn.database}")
        return client

    # ── Shutdown ─────────────────────────────────────────────────────

    async def stop(self):
        if self.stopping:
            return
        self.stopping = True

        if self.pg_proc is not None:
            results = await asyncio.gather(
                *[s.close() for s in self.services], return_exceptions=True
            )
            for svc, res in zip(self.services, results):
                if isinstance(res, BaseException):
                    self.log.warning(f"Tenant service on port {svc.port} failed to close: {res}")

            self.log.info("Killing off Postgres children")
            _kill_process_group()

            # Exit is not confirmed; postgres gets a fixed grace period.
            await asyncio.sleep(SHUTDOWN_GRACE)

        self._cleanup()
        self.log.info(f"Sandbox {self.base_dir} cleaned up")
        self._stopped.set()

    async def wait_stopped(self):
        await self._stopped.wait()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()


# ── Control channel ──────────────────────────────────────────────────────


def encode_message(message: dict) -> bytes:
    return (json.dumps(message, separators=(",", ":")) + "\n").encode()


def decode_message(line: bytes) -> dict:
    try:
        message = json.loads(line)
    except ValueError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolError("Message must be a JSON object")
    if not isinstance(message.get("type"), str):
        raise ProtocolError("Message has no type")
    return message


class ControlChannel:
    """Ordered JSON-lines messages over a reader/writer stream pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer

    async def send(self, message: dict):
        self._writer.write(encode_message(message))
        await self._writer.drain()

    async def receive(self) -> Optional[dict]:
        """Next message, or None once the peer has disconnected."""
        try:
            line = await self._reader.readline()
        except ValueError as e:
            raise ProtocolError(f"Message exceeds {MAX_LINE} bytes") from e
        if not line:
            return None
        return decode_message(line)

    def close(self):
        self._writer.close()


async def _stdio_channel() -> ControlChannel:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_LINE)
    await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
    )
    transport, protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout
    )
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return ControlChannel(reader, writer)


# ── Worker (child process) ───────────────────────────────────────────────


class Worker:
    """Owns one sandbox and answers the supervisor over a control channel."""

    def __init__(
        self,
        channel: ControlChannel,
        req_id: str,
        log: logging.Logger,
        log_file: str,
        sandbox_factory: Callable[..., Any] = Sandbox,
        tempdir_factory: Callable[[], TempDir] = TempDir,
    ):
        self.channel = channel
        self.req_id = req_id
        self.log = log
        self.log_file = log_file
        self._sandbox_factory = sandbox_factory
        self._tempdir_factory = tempdir_factory
        self.sandbox: Any = None
        self._halted = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    def halt(self):
        self._halted.set()

    async def serve(self) -> int:
        await self.channel.send({"type": MSG_LOG_LOCATION, "path": self.log_file})

        try:
            tmp = self._tempdir_factory()
        except OSError as e:
            await self._fail_startup(SandboxError("Failed to allocate sandbox directory", e))
            return 1

        self.sandbox = self._sandbox_factory(self.log, tmp.path, tmp.cleanup)
        self.log.info(f"Starting up sandboxed Postgres instance in {tmp.path}")
        try:
            await self.sandbox.start()
        except Exception as e:
            self.log.exception("Postgres setup failed")
            await self._fail_startup(e)
            await self.sandbox.stop()
            await self.sandbox.wait_stopped()
            return 1

        if self._halted.is_set():
            self.log.info("Halted during startup; not reporting ready")
            await self.sandbox.stop()
            await self.sandbox.wait_stopped()
            return 0

        self.log.info("Postgres setup succeeded")
        await self.channel.send({"type": MSG_READY, "req_id": self.req_id})

        reader = asyncio.create_task(self._read_loop())
        watcher = asyncio.create_task(self._watch_sandbox())
        await self._halted.wait()
        reader.cancel()
        watcher.cancel()

        await self.sandbox.stop()
        await self.sandbox.wait_stopped()
        for task in list(self._tasks):
            task.cancel()
        return 0

    async def _fail_startup(self, exc: BaseException):
        await self.channel.send(
            {"type": MSG_STARTUP_FAILED, "req_id": self.req_id, "error": error_detail(exc)}
        )

    async def _watch_sandbox(self):
        await self.sandbox.wait_stopped()
        self.log.info("Sandbox stopped; worker exiting")
        self.halt()

    async def _read_loop(self):
        while True:
            try:
                message = await self.channel.receive()
            except ProtocolError as e:
                self.log.error(f"Undecodable message from supervisor: {e}")
                await self.channel.send(
                    {"type": MSG_PROTOCOL_ERROR, "req_id": None, "error": error_detail(e)}
                )
                continue
            if message is None:
                self.log.info("Supervisor disconnected")
                self.halt()
                return
            self.dispatch(message)

    def dispatch(self, message: dict):
        mtype = message.get("type")
        req_id = message.get("req_id")
        if mtype == MSG_PROVISION and isinstance(req_id, str) and req_id:
            database = message.get("database") or req_id
            task = asyncio.create_task(self._provision(req_id, database))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return

        self.log.error(f"Worker received unknown message from supervisor: {message}")
        err = ProtocolError(f"Unknown message type: {json.dumps(mtype)}")
        task = asyncio.create_task(
            self.channel.send(
                {"type": MSG_PROTOCOL_ERROR, "req_id": req_id, "error": error_detail(err)}
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _provision(self, req_id: str, database: str):
        try:
            config = await self.sandbox.provision(database)
        except Exception as e:
            self.log.error(f"Creating new tenant service failed for {req_id}: {e}")
            await self.channel.send(
                {"type": MSG_PROVISION_FAILED, "req_id": req_id, "error": error_detail(e)}
            )
            return
        await self.channel.send(
            {"type": MSG_PROVISIONED, "req_id": req_id, "config": config}
        )


def _worker_logger(log_file: str) -> logging.Logger:
    worker_log = logging.getLogger(f"pg-sandbox.worker.{os.getpid()}")
    worker_log.setLevel(LOG_LEVEL)
    worker_log.propagate = False
    handler = logging.FileHandler(log_file)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    worker_log.addHandler(handler)
    return worker_log


async def _worker_main(req_id: str) -> int:
    log_file = os.path.join(tempfile.gettempdir(), f"pg-sandbox-log-{os.getpid()}")
    worker_log = _worker_logger(log_file)
    channel = await _stdio_channel()
    worker = Worker(channel, req_id, worker_log, log_file)
    asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, worker.halt)
    return await worker.serve()


# ── Supervisor (parent side) ─────────────────────────────────────────────


class SandboxSupervisor:
    """Spawns one sandbox worker and relays its events to the caller."""

    def __init__(
        self,
        req_id: Optional[str] = None,
        argv: Optional[list[str]] = None,
        on_log_file: Optional[Callable[[str], None]] = None,
    ):
        self.req_id = req_id or uuid.uuid4().hex[:8]
        self._argv = argv or [sys.executable, _WORKER_SCRIPT, "worker"]
        self._on_log_file = on_log_file
        self.log_file: Optional[str] = None
        self.endpoints: dict[str, dict] = {}
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._channel: Optional[ControlChannel] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._startup: Optional[asyncio.Future] = None
        self._pending: dict[str, asyncio.Future] = {}

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self):
        """Spawn the worker and wait for its sandbox to come up."""
        if self._proc is not None:
            raise RuntimeError(f"Sandbox {self.req_id} already started")
        self._startup = asyncio.get_running_loop().create_future()
        self._proc = await asyncio.create_subprocess_exec(
            *self._argv,
            self.req_id,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            start_new_session=True,
            limit=MAX_LINE,
        )
        if self._proc.stdin is None or self._proc.stdout is None:
            raise RuntimeError("Worker process has no stdin/stdout")
        self._channel = ControlChannel(self._proc.stdout, self._proc.stdin)
        self._reader_task = asyncio.create_task(self._read_loop())
        log.info(f"Spawned sandbox worker {self._proc.pid} for {self.req_id}")
        await self._startup

    async def provision(self, req_id: str, database: Optional[str] = None) -> dict:
        """Create a tenant database plus service; return ``{"host", "port"}``."""
        if self._channel is None or not self.running:
            raise WorkerExitedError(req_id, f"Sandbox {self.req_id} is not running")
        if req_id in self._pending:
            raise ValueError(f"Request {req_id!r} already in flight")
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        message = {"type": MSG_PROVISION, "req_id": req_id, "database": database or req_id}
        try:
            await self._channel.send(message)
        except (ConnectionError, RuntimeError) as e:
            self._pending.pop(req_id, None)
            raise WorkerExitedError(req_id, f"Could not reach sandbox worker: {e}") from e
        config = await fut
        self.endpoints[req_id] = config
        return config

    async def stop(self):
        """Disconnect from the worker and wait for its teardown."""
        if self._proc is None:
            return
        if self._channel is not None and self._proc.returncode is None:
            self._channel.close()
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=SUPERVISOR_STOP_TIMEOUT)
        except asyncio.TimeoutError:
            log.warning(f"Sandbox worker {self._proc.pid} did not exit; terminating")
            self._proc.terminate()
            await self._proc.wait()
        if self._reader_task is not None:
            await self._reader_task

    async def _read_loop(self):
        assert self._channel is not None and self._proc is not None
        while True:
            try:
                message = await self._channel.receive()
            except ProtocolError as e:
                # a lost line may have been a reply; nothing can be matched to it
                log.warning(f"Sandbox {self.req_id}: bad message from worker: {e}")
                self._fail_all(f"sent an unreadable message ({e})", WorkerError)
                continue
            if message is None:
                break
            self._dispatch(message)

        code = await self._proc.wait()
        log.info(f"Sandbox worker for {self.req_id} exited with status {code}")
        self._fail_all(f"exited with status {code}")

    def _fail_all(self, reason: str, error_type: type = WorkerExitedError):
        if self._startup is not None and not self._startup.done():
            self._startup.set_exception(
                error_type(
                    self.req_id,
                    f"Sandbox worker {reason} before reporting readiness",
                )
            )
        pending, self._pending = self._pending, {}
        for req_id, fut in pending.items():
            if not fut.done():
                fut.set_exception(
                    error_type(
                        req_id, f"Sandbox worker {reason} before replying"
                    )
                )

    def _dispatch(self, message: dict):
        mtype = message["type"]
        req_id = message.get("req_id")

        if mtype == MSG_LOG_LOCATION:
            self.log_file = message.get("path")
            log.info(f"Sandbox {self.req_id} logging to {self.log_file}")
            if self._on_log_file and self.log_file:
                self._on_log_file(self.log_file)
            return

        if mtype in (MSG_READY, MSG_STARTUP_FAILED):
            if self._startup is None or self._startup.done():
                log.warning(f"Sandbox {self.req_id}: unexpected {mtype} message")
                return
            if mtype == MSG_READY:
                self._startup.set_result(None)
            else:
                self._startup.set_exception(
                    WorkerError.from_detail(req_id or self.req_id, message.get("error"))
                )
            return

        if mtype in (MSG_PROVISIONED, MSG_PROVISION_FAILED, MSG_PROTOCOL_ERROR):
            fut = self._pending.pop(req_id, None) if req_id is not None else None
            if fut is None or fut.done():
                log.warning(f"Sandbox {self.req_id}: {mtype} for unknown request {req_id}")
                return
            if mtype == MSG_PROVISIONED:
                fut.set_result(message.get("config"))
            else:
                fut.set_exception(WorkerError.from_detail(req_id, message.get("error")))
            return

        log.warning(f"Sandbox {self.req_id}: unknown message type {mtype!r}")


# ── Sandbox manager (named supervisors) ──────────────────────────────────


class SandboxManager:
    """Named sandboxes, each backed by its own worker process."""

    def __init__(self, supervisor_factory: Callable[..., SandboxSupervisor] = SandboxSupervisor):
        self._supervisor_factory = supervisor_factory
        self._sandboxes: dict[str, SandboxSupervisor] = {}
        self._boot_locks: dict[str, asyncio.Lock] = {}

    async def get_sandbox(self, name: str = "default") -> SandboxSupervisor:
        if not name or not _SANDBOX_NAME_RE.match(name):
            raise ValueError(f"Invalid sandbox name: {name!r}")
        lock = self._boot_locks.setdefault(name, asyncio.Lock())
        async with lock:
            sup = self._sandboxes.get(name)
            if sup is not None and sup.running:
                return sup
            if sup is not None:
                log.warning(f"Sandbox '{name}' worker is gone; starting a new one")
                self._sandboxes.pop(name, None)
            sup = self._supervisor_factory(req_id=f"{name}-{uuid.uuid4().hex[:6]}")
            try:
                await sup.start()
            except Exception:
                await sup.stop()
                raise
            self._sandboxes[name] = sup
            return sup

    async def create_database(self, db_name: str, sandbox: str = "default") -> dict:
        if not _DB_NAME_RE.match(db_name or ""):
            raise ValueError(f"Invalid database name: {db_name!r}")
        sup = await self.get_sandbox(sandbox)
        return await sup.provision(db_name)

    async def destroy(self, name: str) -> str:
        sup = self._sandboxes.pop(name, None)
        if sup is None:
            return f"Error: no active sandbox '{name}'"
        await sup.stop()
        return f"Destroyed sandbox '{name}'"

    async def shutdown(self):
        names = list(self._sandboxes.keys())
        results = await asyncio.gather(
            *[self.destroy(n) for n in names], return_exceptions=True
        )
        for name, res in zip(names, results):
            if isinstance(res, BaseException):
                log.warning(f"Failed to stop sandbox '{name}': {res}")
        log.info("All sandboxes destroyed")

    def status(self) -> dict:
        return {
            name: {
                "req_id": sup.req_id,
                "running": sup.running,
                "log_file": sup.log_file,
                "databases": dict(sup.endpoints),
            }
            for name, sup in self._sandboxes.items()
        }


# ── MCP Server ───────────────────────────────────────────────────────────

manager = SandboxManager()


@contextlib.asynccontextmanager
async def _lifespan(_server):
    try:
        yield
    finally:
        await manager.shutdown()


mcp_server = FastMCP(
    "pg-sandbox",
    instructions=(
        "You have access to throwaway PostgreSQL sandboxes for tests. "
        "Use create_database to create a fresh database and get a tenant "
        "service endpoint (host/port) for it; the sandbox cluster starts on "
        "first use. Pass sandbox='name' to use a separate cluster. "
        "Use status to list sandboxes and their databases, and destroy to "
        "tear a sandbox down; all of its files are removed."
    ),
    lifespan=_lifespan,
)


@mcp_server.tool()
async def start_sandbox(sandbox: str = "default") -> str:
    """Start a sandbox cluster (no-op if it is already running).

    Args:
        sandbox: Sandbox name.
    """
    try:
        sup = await manager.get_sandbox(sandbox)
    except (ValueError, WorkerError) as e:
        return f"Error: {e}"
    return f"Sandbox '{sandbox}' ready (log: {sup.log_file})"


@mcp_server.tool()
async def create_database(name: str, sandbox: str = "default") -> str:
    """Create a tenant database and start a service endpoint for it.

    Args:
        name: Database name (letters, digits, underscore).
        sandbox: Sandbox to create it in; started if needed.
    """
    try:
        config = await manager.create_database(name, sandbox=sandbox)
    except (ValueError, WorkerError) as e:
        return f"Error: {e}"
    return json.dumps(config)


@mcp_server.tool()
async def destroy(sandbox: str) -> str:
    """Stop a sandbox, its services and postgres, and remove its files."""
    return await manager.destroy(sandbox)


@mcp_server.tool()
async def status() -> str:
    """List running sandboxes with their log files and databases."""
    info = manager.status()
    if not info:
        return "No sandboxes running"
    return json.dumps(info, indent=2)


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    if sys.argv[1:2] == ["worker"]:
        req_id = sys.argv[2] if len(sys.argv) > 2 else uuid.uuid4().hex[:8]
        sys.exit(asyncio.run(_worker_main(req_id)))
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT, stream=sys.stderr)
    mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
