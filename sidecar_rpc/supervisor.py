"""Worker process supervisor with a bounded restart policy.

Spawns the worker with protocol-server flags, polls until an
:class:`~sidecar_rpc.rpc.RpcClient` can connect, and reacts to unexpected
exits by scheduling restarts until the restart budget is spent.

State changes go through :func:`transition`, a pure function of
``(state, trigger)``; the :class:`Supervisor` owns the child process, the
client session, and at most one restart timer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import Any

from sidecar_rpc.rpc import ClientEvent, Endpoint, Observable, RpcClient, RpcError
from sidecar_rpc.rpc._transport import DEFAULT_HOST, DEFAULT_PORT

__all__ = [
    "InvalidTransition",
    "NotConnectedError",
    "OutputMode",
    "State",
    "Supervisor",
    "SupervisorConfig",
    "SupervisorError",
    "SupervisorEvent",
    "Trigger",
    "transition",
]

_logger = logging.getLogger("sidecar_rpc.supervisor")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class SupervisorError(Exception):
    """A start attempt failed or the supervisor was used in the wrong state."""


class NotConnectedError(SupervisorError):
    """Raised by :meth:`Supervisor.call` when no client session exists."""


class InvalidTransition(SupervisorError):
    """Raised by :func:`transition` for a trigger not allowed in a state."""


class _StartAborted(SupervisorError):
    """A start attempt was superseded by :meth:`Supervisor.stop`."""


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class State(Enum):
    """Lifecycle states of a supervised worker."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"
    RESTARTING = "restarting"


class Trigger(Enum):
    """Inputs to :func:`transition`."""

    START = "start"
    READY = "ready"
    FAIL = "fail"
    SCHEDULE_RESTART = "schedule_restart"
    STOP = "stop"
    HALTED = "halted"


_TRANSITIONS: Mapping[tuple[State, Trigger], State] = {
    (State.IDLE, Trigger.START): State.STARTING,
    (State.STOPPED, Trigger.START): State.STARTING,
    (State.ERROR, Trigger.START): State.STARTING,
    (State.RESTARTING, Trigger.START): State.STARTING,
    (State.STARTING, Trigger.READY): State.RUNNING,
    (State.STARTING, Trigger.FAIL): State.ERROR,
    (State.RUNNING, Trigger.FAIL): State.ERROR,
    (State.STARTING, Trigger.SCHEDULE_RESTART): State.RESTARTING,
    (State.RUNNING, Trigger.SCHEDULE_RESTART): State.RESTARTING,
    (State.ERROR, Trigger.SCHEDULE_RESTART): State.RESTARTING,
    (State.STARTING, Trigger.STOP): State.STOPPING,
    (State.RUNNING, Trigger.STOP): State.STOPPING,
    (State.ERROR, Trigger.STOP): State.STOPPING,
    (State.RESTARTING, Trigger.STOP): State.STOPPING,
    (State.STOPPING, Trigger.HALTED): State.STOPPED,
}


def transition(state: State, trigger: Trigger) -> State:
    """Return the state reached from *state* on *trigger*.

    Raises:
        InvalidTransition: If *trigger* is not allowed in *state*.

    """
    try:
        return _TRANSITIONS[(state, trigger)]
    except KeyError:
        raise InvalidTransition(f"{trigger.value} is not allowed in state {state.value}") from None


def should_restart(auto_restart: bool, restart_count: int, max_restarts: int) -> bool:
    """Restart policy: restart while enabled and under the budget."""
    return auto_restart and restart_count < max_restarts


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class OutputMode(Enum):
    """How to handle the worker's stdout and stderr.

    Members:
        INHERIT: Worker output goes to the parent's stdout/stderr.
        PIPE: Parent drains worker output and forwards each line to a
            ``logging.Logger``.
        DEVNULL: Worker output discarded at OS level.
    """

    INHERIT = "inherit"
    PIPE = "pipe"
    DEVNULL = "devnull"


@dataclass(frozen=True)
class SupervisorConfig:
    """Configuration for :class:`Supervisor`.

    Attributes:
        executable: Worker executable.
        args: Arguments placed before the ``serve`` subcommand.
        host: Host the worker listens on and the client connects to.
        port: TCP port the worker listens on.
        socket_path: Unix socket path; overrides ``host``/``port`` when set.
        token: Shared secret passed to the worker and used by the client.
        verbose: Pass ``--verbose`` to the worker.
        auto_restart: Restart the worker after unexpected exits.
        restart_delay: Seconds between a failure and the restart attempt.
        max_restarts: Restart budget; reset when a start reaches Running.
        startup_timeout: Seconds a start attempt may take to connect.
        startup_initial_delay: Seconds before the first connect attempt.
        poll_interval: Seconds between connect attempts during startup.
        stop_grace: Seconds between SIGTERM and SIGKILL on stop.
        reconnect_interval: Client reconnect interval while Running.
        request_timeout: Default per-call timeout for :meth:`Supervisor.call`.
        output: Handling of the worker's stdout/stderr.
        env: Extra environment variables for the worker.
        cwd: Working directory for the worker.

    """

    executable: str = "sidecar-rpc"
    args: Sequence[str] = ()
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    socket_path: str | None = None
    token: str | None = None
    verbose: bool = False
    auto_restart: bool = True
    restart_delay: float = 5.0
    max_restarts: int = 5
    startup_timeout: float = 10.0
    startup_initial_delay: float = 1.0
    poll_interval: float = 0.5
    stop_grace: float = 5.0
    reconnect_interval: float = 5.0
    request_timeout: float | None = None
    output: OutputMode = OutputMode.PIPE
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: str | None = None

    def __post_init__(self) -> None:
        """Validate numeric bounds."""
        if self.max_restarts < 0:
            raise ValueError(f"max_restarts must be >= 0, got {self.max_restarts}")
        if self.startup_timeout <= 0:
            raise ValueError(f"startup_timeout must be > 0, got {self.startup_timeout}")
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {self.poll_interval}")

    @property
    def endpoint(self) -> Endpoint:
        """Endpoint the worker is told to listen on."""
        if self.socket_path is not None:
            return Endpoint.unix(self.socket_path)
        return Endpoint.tcp(self.host, self.port)

    def command(self) -> list[str]:
        """Full worker argv."""
        argv = [self.executable, *self.args, "serve"]
        if self.socket_path is not None:
            argv += ["--socket", self.socket_path]
        else:
            argv += ["--port", str(self.port), "--host", self.host]
        if self.token is not None:
            argv += ["--token", self.token]
        if self.verbose:
            argv.append("--verbose")
        return argv


class SupervisorEvent(StrEnum):
    """Events emitted by :class:`Supervisor`."""

    STATE_CHANGE = "state-change"
    STARTED = "started"
    STOPPED = "stopped"
    PROCESS_ERROR = "process-error"
    PROCESS_EXIT = "process-exit"
    MAX_RESTARTS_REACHED = "max-restarts-reached"
    RESTART_FAILED = "restart-failed"
    IPC_CONNECTED = "ipc-connected"
    IPC_DISCONNECTED = "ipc-disconnected"
    IPC_ERROR = "ipc-error"


# ---------------------------------------------------------------------------
# Output draining
# ---------------------------------------------------------------------------


async def _drain_output(stream: asyncio.StreamReader, logger: logging.Logger, pid: int) -> None:
    """Forward worker output line-by-line to *logger* until EOF."""
    try:
        while True:
            raw = await stream.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                logger.info(line, extra={"worker_pid": pid})
    except (OSError, ValueError):
        # ValueError: a line longer than the stream limit
        _logger.debug("Worker output drain stopped (pid=%d)", pid, exc_info=True)


def _describe_exit(returncode: int) -> dict[str, Any]:
    """``{"code": ..., "signal": ...}`` for a finished process."""
    if returncode < 0:
        try:
            sig_name: str | None = signal.Signals(-returncode).name
        except ValueError:
            sig_name = str(-returncode)
        return {"code": None, "signal": sig_name}
    return {"code": returncode, "signal": None}


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class Supervisor(Observable[SupervisorEvent]):
    """Owns one worker process and the client session connected to it.

    Example::

        sup = Supervisor(SupervisorConfig(port=9123, token="secret"))
        sup.on(SupervisorEvent.MAX_RESTARTS_REACHED, lambda n: print("gave up after", n))
        await sup.start()
        print(await sup.call("system.ping"))
        await sup.stop()

    Not thread-safe: use from a single event loop.
    """

    def __init__(self, config: SupervisorConfig | None = None) -> None:
        """Initialize in state ``IDLE`` (nothing is spawned yet)."""
        super().__init__()
        self._config = config or SupervisorConfig()
        self._state = State.IDLE
        self._proc: asyncio.subprocess.Process | None = None
        self._client: RpcClient | None = None
        self._restart_timer: asyncio.TimerHandle | None = None
        self._restart_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._restart_count = 0
        self._generation = 0
        self._stop_future: asyncio.Future[None] | None = None
        self._start_attempt: asyncio.Future[None] | None = None
        self._worker_logger = logging.getLogger("sidecar_rpc.worker")

    # -- accessors ----------------------------------------------------------

    @property
    def config(self) -> SupervisorConfig:
        """The supervisor configuration."""
        return self._config

    @property
    def state(self) -> State:
        """Current lifecycle state."""
        return self._state

    @property
    def is_running(self) -> bool:
        """Whether the worker is up and the client session is connected."""
        return self._state is State.RUNNING

    @property
    def restart_count(self) -> int:
        """Automatic restarts since the last start that reached Running."""
        return self._restart_count

    @property
    def pid(self) -> int | None:
        """PID of the current worker process, if any."""
        return self._proc.pid if self._proc is not None else None

    @property
    def client(self) -> RpcClient | None:
        """The client session while Running."""
        return self._client

    @property
    def restart_pending(self) -> bool:
        """Whether a restart timer is armed."""
        return self._restart_timer is not None

    # -- state helpers ------------------------------------------------------

    def _fire(self, trigger: Trigger) -> None:
        old = self._state
        new = transition(old, trigger)
        self._state = new
        if new is not old:
            _logger.debug("State %s -> %s (%s)", old.value, new.value, trigger.value)
            self._emit(SupervisorEvent.STATE_CHANGE, {"from": old.value, "to": new.value})

    def _spawn_background(self, coro: Any, name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _cancel_restart_timer(self) -> None:
        if self._restart_timer is not None:
            self._restart_timer.cancel()
            self._restart_timer = None

    def _arm_restart_timer(self) -> None:
        self._cancel_restart_timer()
        loop = asyncio.get_running_loop()
        self._restart_timer = loop.call_later(self._config.restart_delay, self._on_restart_timer)

    def _on_restart_timer(self) -> None:
        self._restart_timer = None
        self._restart_task = self._spawn_background(self._restart_due(), "sidecar-rpc-restart")

    async def _restart_due(self) -> None:
        if self._state is not State.RESTARTING:
            return
        _logger.info(
            "Restarting worker (attempt %d/%d)",
            self._restart_count,
            self._config.max_restarts,
            extra={"restart_count": self._restart_count},
        )
        try:
            await self._attempt_start()
        except _StartAborted:
            pass
        except SupervisorError as exc:
            self._emit(SupervisorEvent.RESTART_FAILED, exc)

    def _handle_failure(self, exc: BaseException) -> None:
        """Apply the restart policy after a failed start or an unexpected exit."""
        cfg = self._config
        if should_restart(cfg.auto_restart, self._restart_count, cfg.max_restarts):
            self._restart_count += 1
            self._fire(Trigger.SCHEDULE_RESTART)
            self._arm_restart_timer()
            _logger.warning(
                "Worker failed (%s); restart %d/%d in %.1fs",
                exc,
                self._restart_count,
                cfg.max_restarts,
                cfg.restart_delay,
                extra={"restart_count": self._restart_count},
            )
            return
        self._fire(Trigger.FAIL)
        if cfg.auto_restart:
            _logger.error(
                "Worker failed (%s); giving up after %d restart(s)",
                exc,
                self._restart_count,
                extra={"restart_count": self._restart_count},
            )
            self._emit(SupervisorEvent.MAX_RESTARTS_REACHED, self._restart_count)
        else:
            _logger.error("Worker failed (%s); auto-restart disabled", exc)

    # -- start --------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the worker and wait until the client session is connected.

        No-op when already Running.  A pending restart is cancelled and
        replaced by this attempt.

        Raises:
            SupervisorError: If the attempt fails.  The restart policy has
                already been applied by then (state is Restarting or Error).

        """
        if self._state is State.RUNNING:
            return
        if self._state in (State.STARTING, State.STOPPING):
            raise SupervisorError(f"Cannot start while {self._state.value}")
        self._cancel_restart_timer()
        await self._attempt_start()

    def _check_current(self, generation: int) -> None:
        if generation != self._generation or self._state is not State.STARTING:
            raise _StartAborted("Start attempt aborted by stop()")

    async def _attempt_start(self) -> None:
        self._fire(Trigger.START)
        self._generation += 1
        attempt = asyncio.get_running_loop().create_future()
        self._start_attempt = attempt
        try:
            await self._run_attempt(self._generation)
        finally:
            attempt.set_result(None)
            if self._start_attempt is attempt:
                self._start_attempt = None

    async def _run_attempt(self, generation: int) -> None:
        cfg = self._config
        try:
            proc = await self._spawn()
        except OSError as exc:
            _logger.error("Failed to spawn worker %s: %s", cfg.executable, exc)
            self._emit(SupervisorEvent.PROCESS_ERROR, exc)
            if generation == self._generation and self._state is State.STARTING:
                self._handle_failure(exc)
            raise SupervisorError(f"Failed to spawn worker: {exc}") from exc

        if generation != self._generation or self._state is not State.STARTING:
            await self._terminate(proc)
            raise _StartAborted("Start attempt aborted by stop()")

        self._proc = proc
        self._spawn_background(self._watch_exit(proc, generation), f"sidecar-rpc-exit[{proc.pid}]")

        client = self._make_client()
        try:
            await self._connect_with_retry(client, proc, generation)
        except _StartAborted:
            await client.disconnect()
            raise
        except SupervisorError as exc:
            await client.disconnect()
            if generation == self._generation and self._state is State.STARTING:
                self._proc = None
                self._handle_failure(exc)
                await self._terminate(proc)
            raise

        self._client = client
        self._restart_count = 0
        self._fire(Trigger.READY)
        _logger.info(
            "Worker running: pid=%d, endpoint=%s",
            proc.pid,
            cfg.endpoint,
            extra={"worker_pid": proc.pid, "endpoint": str(cfg.endpoint)},
        )
        self._emit(SupervisorEvent.STARTED)

    async def _spawn(self) -> asyncio.subprocess.Process:
        cfg = self._config
        argv = cfg.command()
        if cfg.output is OutputMode.PIPE:
            out: int | None = asyncio.subprocess.PIPE
        elif cfg.output is OutputMode.DEVNULL:
            out = asyncio.subprocess.DEVNULL
        else:
            out = None
        env = {**os.environ, **cfg.env} if cfg.env else None
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=out,
            stderr=out,
            env=env,
            cwd=cfg.cwd,
        )
        _logger.info("Spawned worker: pid=%d, cmd=%s", proc.pid, argv[0], extra={"worker_pid": proc.pid})
        if cfg.output is OutputMode.PIPE:
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    self._spawn_background(
                        _drain_output(stream, self._worker_logger, proc.pid), f"sidecar-rpc-drain[{proc.pid}]"
                    )
        return proc

    def _make_client(self) -> RpcClient:
        cfg = self._config
        client = RpcClient(
            cfg.endpoint,
            token=cfg.token,
            reconnect=True,
            reconnect_interval=cfg.reconnect_interval,
            request_timeout=cfg.request_timeout,
        )
        client.on(ClientEvent.CONNECTED, lambda: self._emit(SupervisorEvent.IPC_CONNECTED))
        client.on(ClientEvent.DISCONNECTED, lambda reason: self._emit(SupervisorEvent.IPC_DISCONNECTED, reason))
        client.on(ClientEvent.ERROR, lambda exc: self._emit(SupervisorEvent.IPC_ERROR, exc))
        return client

    async def _connect_with_retry(self, client: RpcClient, proc: asyncio.subprocess.Process, generation: int) -> None:
        """Poll ``client.connect()`` until it succeeds or the startup timeout elapses."""
        cfg = self._config
        loop = asyncio.get_running_loop()
        deadline = loop.time() + cfg.startup_timeout
        delay = cfg.startup_initial_delay
        last_exc: BaseException | None = None
        attempts = 0
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise SupervisorError(
                    f"Worker did not accept connections within {cfg.startup_timeout}s ({attempts} attempt(s))"
                ) from last_exc
            await asyncio.sleep(min(delay, remaining))
            delay = cfg.poll_interval
            self._check_current(generation)
            if proc.returncode is not None:
                raise SupervisorError(f"Worker exited during startup ({_describe_exit(proc.returncode)})")
            attempts += 1
            try:
                await asyncio.wait_for(client.connect(), timeout=max(deadline - loop.time(), cfg.poll_interval))
            except (OSError, RpcError, TimeoutError) as exc:
                last_exc = exc
                _logger.debug("Connect attempt %d to %s failed: %s", attempts, cfg.endpoint, exc)
                continue
            self._check_current(generation)
            if proc.returncode is not None:
                raise SupervisorError(f"Worker exited during startup ({_describe_exit(proc.returncode)})")
            return

    async def _watch_exit(self, proc: asyncio.subprocess.Process, generation: int) -> None:
        returncode = await proc.wait()
        details = _describe_exit(returncode)
        self._emit(SupervisorEvent.PROCESS_EXIT, details)
        if generation != self._generation or self._proc is not proc:
            return
        if self._state is not State.RUNNING:
            # Startup failures are decided by the connect poll
            return
        _logger.warning("Worker exited unexpectedly: pid=%d, %s", proc.pid, details, extra={"worker_pid": proc.pid})
        self._proc = None
        client = self._client
        self._client = None
        self._handle_failure(SupervisorError(f"Worker exited unexpectedly ({details})"))
        if client is not None:
            await client.disconnect()

    # -- stop ---------------------------------------------------------------

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL once the grace period expires."""
        if proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.stop_grace)
        except TimeoutError:
            _logger.warning(
                "Worker pid=%d did not exit within %.1fs; sending SIGKILL",
                proc.pid,
                self._config.stop_grace,
                extra={"worker_pid": proc.pid},
            )
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(proc.wait(), timeout=self._config.stop_grace)

    async def stop(self) -> None:
        """Disconnect the client and terminate the worker.

        No-op when Idle or Stopped.  Concurrent callers wait for the stop
        already in progress.
        """
        if self._state in (State.IDLE, State.STOPPED):
            return
        if self._state is State.STOPPING:
            if self._stop_future is not None:
                await asyncio.shield(self._stop_future)
            return

        self._fire(Trigger.STOP)
        self._generation += 1
        self._stop_future = asyncio.get_running_loop().create_future()
        try:
            self._cancel_restart_timer()
            client = self._client
            self._client = None
            if client is not None:
                await client.disconnect()
            proc = self._proc
            self._proc = None
            if proc is not None:
                await self._terminate(proc)
                _logger.info("Worker stopped: pid=%d", proc.pid, extra={"worker_pid": proc.pid})
            attempt = self._start_attempt
            if attempt is not None:
                # The attempt terminates any child it spawned after the generation bump
                await asyncio.shield(attempt)
            self._fire(Trigger.HALTED)
            self._emit(SupervisorEvent.STOPPED)
        finally:
            self._stop_future.set_result(None)
            self._stop_future = None

    async def restart(self) -> None:
        """Stop, then start."""
        await self.stop()
        await self.start()

    async def close(self) -> None:
        """Stop and wait for background tasks (restart attempts, output drains)."""
        await self.stop()
        pending = [t for t in self._background if t is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -- calls --------------------------------------------------------------

    async def call(self, method: str, params: Any = None, *, timeout: float | None = None) -> Any:
        """Call *method* on the worker through the client session.

        Raises:
            NotConnectedError: If there is no connected client session.
            RpcError: On error responses, timeouts or connection loss.

        """
        client = self._client
        if client is None or not client.is_connected:
            raise NotConnectedError("IPC client not connected")
        return await client.call(method, params, timeout=timeout)

    async def call_stream(
        self,
        method: str,
        params: Any = None,
        on_chunk: Any = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Streaming variant of :meth:`call`."""
        client = self._client
        if client is None or not client.is_connected:
            raise NotConnectedError("IPC client not connected")
        return await client.call_stream(method, params, on_chunk, timeout=timeout)
