"""Provider protocol and the shared lifecycle implementation.

:class:`BaseSandboxProvider` owns everything that is the same for every
backend: the instance registry, the state machine, per-instance locking,
path confinement, timeouts and error wrapping.  Subclasses implement the
underscore-prefixed primitives, which may raise :class:`SandboxError` or
:class:`OSError` freely; the public methods translate both into the
documented :class:`SandboxErrorCode` for that operation.  A
:class:`SandboxTimeoutError` keeps its ``TIMEOUT`` code.
"""

from __future__ import annotations

import contextlib
import logging
import os
import posixpath
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import ClassVar, Protocol, runtime_checkable

from agentcell.runtime.errors import (
    ConfigValidationError,
    SandboxError,
    SandboxErrorCode,
    SandboxNotFoundError,
    SandboxTimeoutError,
)
from agentcell.runtime.sandbox.environment import filter_exec_env, sanitize_for_policy
from agentcell.runtime.sandbox.execution import (
    RunningCommand,
    collect,
    describe_command,
    normalize_command,
    stream_process,
)
from agentcell.runtime.sandbox.lifecycle import mark_error, require_status, transition
from agentcell.runtime.sandbox.models import (
    ExecOptions,
    ExecResult,
    ExecStreamEvent,
    HealthStatus,
    LifecycleEvent,
    LifecycleEventType,
    ProviderKind,
    ResourceUsage,
    SandboxConfig,
    SandboxInstance,
    SandboxStatus,
    utcnow,
)
from agentcell.runtime.sandbox.policy import validate_config
from agentcell.runtime.sandbox.registry import InstanceRegistry, RegistryEntry
from agentcell.runtime.sandbox.settings import SandboxSettings

logger = logging.getLogger(__name__)

S = SandboxStatus

LifecycleListener = Callable[[LifecycleEvent], None]

# States in which the filesystem of a sandbox can be reached.
_FILE_STATES = (S.CREATING, S.RUNNING, S.STOPPED)


@dataclass(frozen=True, slots=True)
class HostCapacity:
    """What the machine behind a provider can offer a single sandbox."""

    cpus: float | None = None
    memory_mb: int | None = None


@runtime_checkable
class SandboxProvider(Protocol):
    """Capability set every sandbox backend offers."""

    kind: ProviderKind

    async def create(self, agent_id: str, project_id: str, config: SandboxConfig) -> SandboxInstance: ...

    async def start(self, sandbox_id: str) -> SandboxInstance: ...

    async def stop(self, sandbox_id: str) -> SandboxInstance: ...

    async def pause(self, sandbox_id: str) -> SandboxInstance: ...

    async def resume(self, sandbox_id: str) -> SandboxInstance: ...

    async def remove(self, sandbox_id: str) -> None: ...

    async def exec(
        self,
        sandbox_id: str,
        command: str | Sequence[str],
        options: ExecOptions | None = None,
    ) -> ExecResult: ...

    def exec_stream(
        self,
        sandbox_id: str,
        command: str | Sequence[str],
        options: ExecOptions | None = None,
    ) -> AsyncIterator[ExecStreamEvent]: ...

    async def read_file(self, sandbox_id: str, path: str) -> str: ...

    async def write_file(self, sandbox_id: str, path: str, content: str | bytes) -> None: ...

    async def copy_in(self, sandbox_id: str, host_path: str, sandbox_path: str) -> None: ...

    async def copy_out(self, sandbox_id: str, sandbox_path: str, host_path: str) -> None: ...

    async def get_status(self, sandbox_id: str) -> SandboxInstance: ...

    async def get_resource_usage(self, sandbox_id: str) -> ResourceUsage: ...

    async def list(self, project_id: str | None = None) -> list[SandboxInstance]: ...

    async def health_check(self) -> HealthStatus: ...

    async def cleanup(
        self,
        older_than: timedelta | None = None,
        statuses: Iterable[SandboxStatus] = (S.STOPPED,),
    ) -> int: ...

    def owns(self, sandbox_id: str) -> bool: ...

    def on(self, listener: LifecycleListener) -> Callable[[], None]: ...

    async def close(self) -> None: ...


class BaseSandboxProvider(ABC):
    """Generic implementation of :class:`SandboxProvider`.

    Each instance owns a private :class:`InstanceRegistry`; two providers
    never see each other's sandboxes.

    Args:
        settings: Process-level sandbox settings.
        host_env: Environment the passthrough list reads from.  Defaults to
            a snapshot of ``os.environ`` taken at construction.
    """

    kind: ClassVar[ProviderKind]

    def __init__(
        self,
        settings: SandboxSettings | None = None,
        *,
        host_env: Mapping[str, str] | None = None,
    ) -> None:
        self._settings = settings or SandboxSettings()
        self._host_env = dict(os.environ if host_env is None else host_env)
        self.registry = InstanceRegistry()
        self._listeners: list[LifecycleListener] = []

    @property
    def settings(self) -> SandboxSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, listener: LifecycleListener) -> Callable[[], None]:
        """Register a lifecycle listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event_type: LifecycleEventType, instance: SandboxInstance, detail: str = "") -> None:
        event = LifecycleEvent(
            type=event_type,
            sandbox_id=instance.id,
            project_id=instance.project_id,
            detail=detail,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Lifecycle listener failed on %s", event_type)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(self, agent_id: str, project_id: str, config: SandboxConfig) -> SandboxInstance:
        """Materialize a new sandbox and register it as ``creating``.

        Nothing is registered when materialization fails.

        Raises:
            SandboxError: ``INVALID_CONFIG`` or ``CREATION_FAILED``.
        """
        if config.provider != self.kind:
            raise SandboxError(
                SandboxErrorCode.INVALID_CONFIG,
                f"{self.kind.value} provider cannot create {config.provider.value} sandboxes",
            )
        try:
            validate_config(config)
        except ConfigValidationError as exc:
            raise SandboxError(SandboxErrorCode.INVALID_CONFIG, exc.detail) from exc
        await self._check_capacity(config)

        instance = SandboxInstance(
            id=uuid.uuid4().hex,
            agent_id=agent_id,
            project_id=project_id,
            provider=self.kind,
            workspace_path=config.allowed_root_directory,
        )
        entry = RegistryEntry(
            instance=instance,
            config=config,
            env=sanitize_for_policy(config.environment, self._host_env),
        )
        self._emit("sandbox:creating", instance)

        try:
            await self._materialize(entry)
        except (SandboxError, OSError) as exc:
            detail = _detail(exc)
            logger.error("Failed to create sandbox %s: %s", instance.id, detail)
            try:
                await self._release_storage(entry)
            except (SandboxError, OSError) as cleanup_exc:
                logger.warning("Leaked storage for failed sandbox %s: %s", instance.id, cleanup_exc)
            self._emit("sandbox:error", instance, detail)
            raise SandboxError(_code(exc, SandboxErrorCode.CREATION_FAILED), detail, sandbox_id=instance.id) from exc

        self.registry.add(entry)
        logger.info(
            "Created %s sandbox %s for agent=%s project=%s",
            self.kind.value, instance.id, agent_id, project_id,
        )
        self._emit("sandbox:created", instance)
        return instance.model_copy()

    async def start(self, sandbox_id: str) -> SandboxInstance:
        """``creating|stopped -> running``."""
        entry = self.registry.get(sandbox_id)
        async with entry.state_lock:
            self._ensure_registered(entry)
            require_status(entry.instance, (S.CREATING, S.STOPPED), "start")
            try:
                await self._start(entry)
            except (SandboxError, OSError) as exc:
                raise self._fail(entry, SandboxErrorCode.START_FAILED, exc) from exc
            transition(entry.instance, S.RUNNING, "start")
            self._emit("sandbox:started", entry.instance)
            return entry.instance.model_copy()

    async def stop(self, sandbox_id: str) -> SandboxInstance:
        """``running|paused|error -> stopped``; a no-op on ``stopped``.

        In-flight commands are killed.
        """
        entry = self.registry.get(sandbox_id)
        async with entry.state_lock:
            self._ensure_registered(entry)
            if entry.instance.status == S.STOPPED:
                return entry.instance.model_copy()
            require_status(entry.instance, (S.RUNNING, S.PAUSED, S.ERROR), "stop")
            self._emit("sandbox:stopping", entry.instance)
            try:
                await self._stop_entry(entry)
            except (SandboxError, OSError) as exc:
                raise self._fail(entry, SandboxErrorCode.STOP_FAILED, exc) from exc
            transition(entry.instance, S.STOPPED, "stop")
            self._emit("sandbox:stopped", entry.instance)
            return entry.instance.model_copy()

    async def pause(self, sandbox_id: str) -> SandboxInstance:
        """``running -> paused``.  Commands in flight are frozen, not killed."""
        entry = self.registry.get(sandbox_id)
        async with entry.state_lock:
            self._ensure_registered(entry)
            require_status(entry.instance, (S.RUNNING,), "pause")
            try:
                await self._pause(entry)
            except (SandboxError, OSError) as exc:
                raise SandboxError(_code(exc, SandboxErrorCode.STOP_FAILED), _detail(exc), sandbox_id=entry.id) from exc
            transition(entry.instance, S.PAUSED, "pause")
            self._emit("sandbox:paused", entry.instance)
            return entry.instance.model_copy()

    async def resume(self, sandbox_id: str) -> SandboxInstance:
        """``paused -> running``."""
        entry = self.registry.get(sandbox_id)
        async with entry.state_lock:
            self._ensure_registered(entry)
            require_status(entry.instance, (S.PAUSED,), "resume")
            try:
                await self._resume(entry)
            except (SandboxError, OSError) as exc:
                raise SandboxError(_code(exc, SandboxErrorCode.START_FAILED), _detail(exc), sandbox_id=entry.id) from exc
            transition(entry.instance, S.RUNNING, "resume")
            self._emit("sandbox:resumed", entry.instance)
            return entry.instance.model_copy()

    async def remove(self, sandbox_id: str) -> None:
        """Tear the sandbox down and forget it.

        Storage cleanup failures are logged and otherwise ignored; failing
        to destroy the container or process raises ``REMOVAL_FAILED`` and
        leaves the instance registered in ``error``.

        Raises:
            SandboxNotFoundError: The id is unknown or already removed.
        """
        entry = self.registry.get(sandbox_id)
        async with entry.state_lock:
            self._ensure_registered(entry)
            if entry.instance.status in (S.RUNNING, S.PAUSED):
                try:
                    await self._stop_entry(entry)
                except (SandboxError, OSError) as exc:
                    logger.warning("Best-effort stop of %s failed: %s", sandbox_id, _detail(exc))

            try:
                await self._destroy(entry)
            except (SandboxError, OSError) as exc:
                raise self._fail(entry, SandboxErrorCode.REMOVAL_FAILED, exc) from exc

            try:
                await self._release_storage(entry)
            except (SandboxError, OSError) as exc:
                logger.warning("Leaked storage for sandbox %s: %s", sandbox_id, _detail(exc))

            transition(entry.instance, S.REMOVED, "remove")
            self.registry.discard(sandbox_id)
            logger.info("Removed sandbox %s", sandbox_id)
            self._emit("sandbox:removed", entry.instance)

    async def cleanup(
        self,
        older_than: timedelta | None = None,
        statuses: Iterable[SandboxStatus] = (S.STOPPED,),
    ) -> int:
        """Remove sandboxes in *statuses* idle for at least *older_than*.

        Returns the number removed.  A failure on one sandbox is logged and
        the sweep continues.
        """
        wanted = set(statuses)
        now = utcnow()
        removed = 0
        for entry in self.registry:
            instance = entry.instance
            if instance.status not in wanted:
                continue
            if older_than is not None and now - instance.last_activity_at < older_than:
                continue
            try:
                await self.remove(instance.id)
            except SandboxError as exc:
                logger.warning("Cleanup of sandbox %s failed: %s", instance.id, exc)
                continue
            removed += 1
        if removed:
            logger.info("Cleaned up %d %s sandbox(es)", removed, self.kind.value)
        return removed

    async def close(self) -> None:
        """Remove every sandbox this provider still holds."""
        await self.cleanup(statuses=list(S))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def exec(
        self,
        sandbox_id: str,
        command: str | Sequence[str],
        options: ExecOptions | None = None,
    ) -> ExecResult:
        """Run *command* to completion.

        A timeout is not an error: the result carries ``exit_code=124`` and
        ``timed_out=True``.
        """
        async with contextlib.aclosing(self.exec_stream(sandbox_id, command, options)) as events:
            return await collect(events)

    async def exec_stream(
        self,
        sandbox_id: str,
        command: str | Sequence[str],
        options: ExecOptions | None = None,
    ) -> AsyncIterator[ExecStreamEvent]:
        """Run *command*, yielding output chunks and then one exit event.

        Calls against the same sandbox queue behind each other in arrival
        order.  The queue slot is held until the stream is exhausted or
        closed, so consumers that stop early should close the iterator
        (``contextlib.aclosing``).

        Raises:
            SandboxError: Before the first event, when the sandbox is
                unknown, not ``running`` or the command cannot be spawned.
        """
        opts = options or ExecOptions()
        argv = normalize_command(command)
        entry = self.registry.get(sandbox_id)
        require_status(entry.instance, (S.RUNNING,), "exec")

        async with entry.exec_lock:
            # The instance may have been stopped or removed while queued.
            self._ensure_registered(entry)
            require_status(entry.instance, (S.RUNNING,), "exec")

            config = entry.config
            cwd = self._confine(entry, opts.cwd or config.allowed_root_directory, SandboxErrorCode.EXEC_FAILED)
            env = {**entry.env, **filter_exec_env(opts.env, config.environment.blocked)}
            timeout_ms = opts.timeout_ms or config.resources.timeout_ms

            logger.debug("Sandbox %s exec: %s", sandbox_id, describe_command(argv))
            try:
                running = await self._spawn(
                    entry, argv, cwd=cwd, env=env, user=opts.user, stdin=opts.stdin is not None,
                )
            except (SandboxError, OSError) as exc:
                raise SandboxError(_code(exc, SandboxErrorCode.EXEC_FAILED), _detail(exc), sandbox_id=sandbox_id) from exc

            entry.active.add(running)
            entry.touch()
            try:
                async for event in stream_process(
                    running,
                    timeout_ms=timeout_ms,
                    stdin=opts.stdin,
                    chunk_size=self._settings.chunk_size,
                    buffer_chunks=self._settings.stream_buffer_chunks,
                ):
                    yield event
            finally:
                entry.active.discard(running)
                entry.touch()

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def read_file(self, sandbox_id: str, path: str) -> str:
        entry = self.registry.get(sandbox_id)
        require_status(entry.instance, _FILE_STATES, "read_file")
        target = self._confine(entry, path, SandboxErrorCode.FILE_NOT_FOUND)
        try:
            data = await self._read_file(entry, target)
        except (SandboxError, OSError) as exc:
            raise SandboxError(_code(exc, SandboxErrorCode.FILE_NOT_FOUND), f"{target}: {_detail(exc)}", sandbox_id=sandbox_id) from exc
        entry.touch()
        return data.decode(errors="replace")

    async def write_file(self, sandbox_id: str, path: str, content: str | bytes) -> None:
        entry = self.registry.get(sandbox_id)
        require_status(entry.instance, _FILE_STATES, "write_file")
        target = self._confine(entry, path, SandboxErrorCode.WRITE_FAILED)
        data = content.encode() if isinstance(content, str) else content
        try:
            await self._write_file(entry, target, data)
        except (SandboxError, OSError) as exc:
            raise SandboxError(_code(exc, SandboxErrorCode.WRITE_FAILED), f"{target}: {_detail(exc)}", sandbox_id=sandbox_id) from exc
        entry.touch()

    async def copy_in(self, sandbox_id: str, host_path: str, sandbox_path: str) -> None:
        """Copy a host file or directory into the sandbox."""
        entry = self.registry.get(sandbox_id)
        require_status(entry.instance, _FILE_STATES, "copy_in")
        target = self._confine(entry, sandbox_path, SandboxErrorCode.COPY_FAILED)
        if not os.path.exists(host_path):
            raise SandboxError(SandboxErrorCode.COPY_FAILED, f"host path does not exist: {host_path}", sandbox_id=sandbox_id)
        try:
            await self._copy_in(entry, host_path, target)
        except (SandboxError, OSError) as exc:
            raise SandboxError(_code(exc, SandboxErrorCode.COPY_FAILED), _detail(exc), sandbox_id=sandbox_id) from exc
        entry.touch()

    async def copy_out(self, sandbox_id: str, sandbox_path: str, host_path: str) -> None:
        """Copy a sandbox file or directory to the host."""
        entry = self.registry.get(sandbox_id)
        require_status(entry.instance, _FILE_STATES, "copy_out")
        source = self._confine(entry, sandbox_path, SandboxErrorCode.COPY_FAILED)
        try:
            await self._copy_out(entry, source, host_path)
        except (SandboxError, OSError) as exc:
            raise SandboxError(_code(exc, SandboxErrorCode.COPY_FAILED), _detail(exc), sandbox_id=sandbox_id) from exc
        entry.touch()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, sandbox_id: str) -> SandboxInstance:
        return self.registry.get(sandbox_id).instance.model_copy()

    async def get_resource_usage(self, sandbox_id: str) -> ResourceUsage:
        entry = self.registry.get(sandbox_id)
        require_status(entry.instance, (S.RUNNING, S.PAUSED), "get_resource_usage")
        try:
            return await self._usage(entry)
        except (SandboxError, OSError, ValueError) as exc:
            raise SandboxError(_code(exc, SandboxErrorCode.STATS_FAILED), _detail(exc), sandbox_id=sandbox_id) from exc

    async def list(self, project_id: str | None = None) -> list[SandboxInstance]:
        return [e.instance.model_copy() for e in self.registry.entries(project_id)]

    async def health_check(self) -> HealthStatus:
        """Report whether the backend can currently create sandboxes."""
        try:
            return await self._health()
        except (SandboxError, OSError, ValueError) as exc:
            return HealthStatus(healthy=False, provider=self.kind, message=_detail(exc))

    def owns(self, sandbox_id: str) -> bool:
        return sandbox_id in self.registry

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _check_capacity(self, config: SandboxConfig) -> None:
        """Refuse ceilings the host could never satisfy."""
        capacity = await self._capacity()
        if capacity is None:
            return
        res = config.resources
        if capacity.cpus is not None and res.cpus > capacity.cpus:
            raise SandboxError(
                SandboxErrorCode.RESOURCE_LIMIT_EXCEEDED,
                f"cpus: requested {res.cpus:g}, host limit {capacity.cpus:g}",
            )
        if capacity.memory_mb is not None and res.memory_mb > capacity.memory_mb:
            raise SandboxError(
                SandboxErrorCode.RESOURCE_LIMIT_EXCEEDED,
                f"memory_mb: requested {res.memory_mb}, host limit {capacity.memory_mb}",
            )

    async def _capacity(self) -> HostCapacity | None:
        """Host ceilings for :meth:`create` to check against; ``None`` skips the check."""
        return None

    def _ensure_registered(self, entry: RegistryEntry) -> None:
        if entry.id not in self.registry:
            raise SandboxNotFoundError(entry.id)

    async def _stop_entry(self, entry: RegistryEntry) -> None:
        try:
            await self._stop(entry, self._settings.stop_grace_seconds)
        finally:
            # Whatever survived the graceful stop is killed outright.
            for running in list(entry.active):
                await running.kill()

    def _fail(self, entry: RegistryEntry, code: SandboxErrorCode, exc: BaseException) -> SandboxError:
        detail = _detail(exc)
        mark_error(entry.instance, detail)
        logger.error("Sandbox %s: %s: %s", entry.id, code.value, detail)
        self._emit("sandbox:error", entry.instance, detail)
        return SandboxError(_code(exc, code), detail, sandbox_id=entry.id)

    @staticmethod
    def _confine(entry: RegistryEntry, path: str, code: SandboxErrorCode) -> str:
        """Resolve *path* against the sandbox root and refuse escapes."""
        root = posixpath.normpath(entry.config.allowed_root_directory)
        resolved = posixpath.normpath(posixpath.join(root, path))
        if resolved != root and not resolved.startswith(root.rstrip("/") + "/"):
            raise SandboxError(code, f"path {path!r} escapes {root}", sandbox_id=entry.id)
        return resolved

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _materialize(self, entry: RegistryEntry) -> None:
        """Create the backing container/workspace; set ``instance.handle``."""

    @abstractmethod
    async def _start(self, entry: RegistryEntry) -> None: ...

    @abstractmethod
    async def _stop(self, entry: RegistryEntry, grace_seconds: float) -> None: ...

    @abstractmethod
    async def _pause(self, entry: RegistryEntry) -> None: ...

    @abstractmethod
    async def _resume(self, entry: RegistryEntry) -> None: ...

    @abstractmethod
    async def _destroy(self, entry: RegistryEntry) -> None:
        """Delete the handle.  Must succeed when the handle is already gone."""

    @abstractmethod
    async def _release_storage(self, entry: RegistryEntry) -> None: ...

    @abstractmethod
    async def _spawn(
        self,
        entry: RegistryEntry,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
        user: str | None,
        stdin: bool,
    ) -> RunningCommand: ...

    @abstractmethod
    async def _read_file(self, entry: RegistryEntry, path: str) -> bytes: ...

    @abstractmethod
    async def _write_file(self, entry: RegistryEntry, path: str, data: bytes) -> None: ...

    @abstractmethod
    async def _copy_in(self, entry: RegistryEntry, host_path: str, path: str) -> None: ...

    @abstractmethod
    async def _copy_out(self, entry: RegistryEntry, path: str, host_path: str) -> None: ...

    @abstractmethod
    async def _usage(self, entry: RegistryEntry) -> ResourceUsage: ...

    @abstractmethod
    async def _health(self) -> HealthStatus: ...


def _detail(exc: BaseException) -> str:
    if isinstance(exc, SandboxError) and exc.detail:
        return exc.detail
    return str(exc) or type(exc).__name__


def _code(exc: BaseException, default: SandboxErrorCode) -> SandboxErrorCode:
    """The code to surface for *exc*: deadlines keep ``TIMEOUT``."""
    if isinstance(exc, SandboxTimeoutError):
        return SandboxErrorCode.TIMEOUT
    return default
