"""SandboxManager: the facade the orchestrator talks to.

Resolves caller overrides into a :class:`SandboxConfig`, routes each call
to the provider that owns the sandbox and converts every
:class:`SandboxError` into an :class:`Err` result.  Nothing raised by a
provider escapes, except from :meth:`SandboxManager.exec_stream`, which
as an iterator raises :class:`SandboxError` before its first event.

Usage::

    manager = SandboxManager(load_settings())
    created = await manager.create("agent-1", "project-9", {"network": {"mode": "none"}})
    sandbox = created.unwrap()
    await manager.start(sandbox.id)
    result = await manager.exec(sandbox.id, "pytest -q", ExecOptions(timeout_ms=120_000))
    await manager.remove(sandbox.id)
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping, Sequence
from datetime import timedelta
from typing import Any, TypeVar

from opentelemetry import trace

from agentcell.runtime.errors import (
    ConfigValidationError,
    SandboxError,
    SandboxErrorCode,
    SandboxNotFoundError,
)
from agentcell.runtime.result import Err, Ok, Result
from agentcell.runtime.sandbox.bridge import StreamBridge
from agentcell.runtime.sandbox.models import (
    ExecOptions,
    ExecResult,
    ExecStreamEvent,
    ExitEvent,
    HealthStatus,
    LifecycleEvent,
    ProviderKind,
    ResourceUsage,
    SandboxConfig,
    SandboxInstance,
    SandboxOverrides,
    SandboxStatus,
)
from agentcell.runtime.sandbox.policy import PolicyResolver
from agentcell.runtime.sandbox.providers import SandboxProvider, create_provider
from agentcell.runtime.sandbox.providers.devcontainer import resolve_with_descriptor
from agentcell.runtime.sandbox.settings import SandboxSettings
from agentcell.utils.telemetry import (
    ATTR_AGENT_ID,
    ATTR_COMMAND,
    ATTR_ERROR_CODE,
    ATTR_PROJECT_ID,
    ATTR_PROVIDER,
    ATTR_SANDBOX_ID,
    ATTR_SANDBOX_STATUS,
    exec_attributes,
    get_tracer,
)

logger = logging.getLogger(__name__)

_tracer = get_tracer(__name__)

T = TypeVar("T")

LifecycleListener = Callable[[LifecycleEvent], None]


class SandboxManager:
    """Typed-result facade over one provider per :class:`ProviderKind`.

    Providers are created lazily on first use.  Tests inject their own
    through *providers*; each manager owns its providers and their
    registries, so two managers never share state.

    Args:
        settings: Defaults and process-level knobs.
        providers: Pre-built providers keyed by kind.
        host_env: Host environment handed to lazily-created providers.
        bridge: When set, :meth:`exec_stream` calls that pass a
            ``stream_id`` are mirrored to the bridge's sink.
    """

    def __init__(
        self,
        settings: SandboxSettings | None = None,
        *,
        providers: Mapping[ProviderKind, SandboxProvider] | None = None,
        host_env: Mapping[str, str] | None = None,
        bridge: StreamBridge | None = None,
    ) -> None:
        self._settings = settings or SandboxSettings()
        self._resolver = PolicyResolver(self._settings.defaults)
        self._providers: dict[ProviderKind, SandboxProvider] = dict(providers or {})
        self._host_env = host_env
        self._bridge = bridge
        self._listeners: list[LifecycleListener] = []
        self._subscriptions: list[Callable[[], None]] = []
        for provider in self._providers.values():
            self._subscribe(provider)

    @property
    def settings(self) -> SandboxSettings:
        return self._settings

    @property
    def resolver(self) -> PolicyResolver:
        return self._resolver

    def provider(self, kind: ProviderKind | str) -> SandboxProvider:
        """Return the provider for *kind*, creating it on first use."""
        kind = ProviderKind(kind)
        provider = self._providers.get(kind)
        if provider is None:
            provider = create_provider(kind, self._settings, host_env=self._host_env)
            self._providers[kind] = provider
            self._subscribe(provider)
        return provider

    def resolve(self, overrides: SandboxOverrides | Mapping[str, Any] | None = None) -> SandboxConfig:
        """Effective config for *overrides*.

        Raises:
            ConfigValidationError: On schema or range errors.
        """
        return resolve_with_descriptor(self._resolver, overrides)

    def on(self, listener: LifecycleListener) -> Callable[[], None]:
        """Listen to lifecycle events from every provider, present and future."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create(
        self,
        agent_id: str,
        project_id: str,
        overrides: SandboxOverrides | Mapping[str, Any] | None = None,
    ) -> Result[SandboxInstance]:
        """Resolve *overrides* and create a sandbox (status ``creating``)."""
        with _tracer.start_as_current_span("sandbox.create") as span:
            span.set_attribute(ATTR_AGENT_ID, agent_id)
            span.set_attribute(ATTR_PROJECT_ID, project_id)
            try:
                config = self.resolve(overrides)
            except ConfigValidationError as exc:
                return _err(span, SandboxError(SandboxErrorCode.INVALID_CONFIG, exc.detail))
            span.set_attribute(ATTR_PROVIDER, config.provider.value)

            result = await self._call(span, lambda: self.provider(config.provider).create(agent_id, project_id, config))
            if result.ok:
                span.set_attribute(ATTR_SANDBOX_ID, result.value.id)
                span.set_attribute(ATTR_SANDBOX_STATUS, result.value.status.value)
            return result

    async def start(self, sandbox_id: str) -> Result[SandboxInstance]:
        return await self._routed(sandbox_id, lambda p: p.start(sandbox_id))

    async def stop(self, sandbox_id: str) -> Result[SandboxInstance]:
        """Stop the sandbox, killing in-flight commands.  Idempotent."""
        return await self._routed(sandbox_id, lambda p: p.stop(sandbox_id))

    async def pause(self, sandbox_id: str) -> Result[SandboxInstance]:
        return await self._routed(sandbox_id, lambda p: p.pause(sandbox_id))

    async def resume(self, sandbox_id: str) -> Result[SandboxInstance]:
        return await self._routed(sandbox_id, lambda p: p.resume(sandbox_id))

    async def remove(self, sandbox_id: str) -> Result[None]:
        """Remove the sandbox.  A second call returns ``Err(NOT_FOUND)``."""
        with _tracer.start_as_current_span("sandbox.remove") as span:
            span.set_attribute(ATTR_SANDBOX_ID, sandbox_id)
            return await self._call(span, lambda: self._locate(sandbox_id).remove(sandbox_id))

    async def cleanup(
        self,
        older_than: timedelta | None = None,
        statuses: Iterable[SandboxStatus] = (SandboxStatus.STOPPED,),
    ) -> int:
        """Sweep every active provider; see :meth:`BaseSandboxProvider.cleanup`."""
        wanted = tuple(statuses)
        removed = 0
        for provider in list(self._providers.values()):
            removed += await provider.cleanup(older_than, wanted)
        return removed

    async def close(self) -> None:
        """Remove every sandbox and detach listeners."""
        for provider in list(self._providers.values()):
            await provider.close()
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        if self._bridge is not None:
            await self._bridge.drain()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def exec(
        self,
        sandbox_id: str,
        command: str | Sequence[str],
        options: ExecOptions | None = None,
    ) -> Result[ExecResult]:
        """Run *command* to completion.  A timeout is ``Ok`` with ``timed_out=True``."""
        with _tracer.start_as_current_span("sandbox.exec") as span:
            span.set_attribute(ATTR_SANDBOX_ID, sandbox_id)
            span.set_attribute(ATTR_COMMAND, _command_text(command))
            result = await self._call(span, lambda: self._locate(sandbox_id).exec(sandbox_id, command, options))
            if result.ok:
                done = result.value
                span.set_attributes(exec_attributes(done.exit_code, done.timed_out, done.duration_ms))
            return result

    async def exec_stream(
        self,
        sandbox_id: str,
        command: str | Sequence[str],
        options: ExecOptions | None = None,
        *,
        stream_id: str | None = None,
    ) -> AsyncIterator[ExecStreamEvent]:
        """Stream *command*'s output, ending with one :class:`ExitEvent`.

        stdout and stderr chunks each keep their own order; between the two
        channels events come in arrival order, so output written to both at
        nearly the same moment may interleave either way.

        When *stream_id* is given and the manager has a bridge, every event
        is also published to the durable stream *stream_id*.

        Raises:
            SandboxError: Before the first event when the sandbox is unknown
                or not ``running``.
        """
        span = _tracer.start_span("sandbox.exec_stream")
        span.set_attribute(ATTR_SANDBOX_ID, sandbox_id)
        span.set_attribute(ATTR_COMMAND, _command_text(command))
        try:
            events = self._locate(sandbox_id).exec_stream(sandbox_id, command, options)
            if stream_id is not None and self._bridge is not None:
                events = self._bridge.forward(stream_id, sandbox_id, events)
            async with contextlib.aclosing(events) as stream:
                async for event in stream:
                    if isinstance(event, ExitEvent):
                        span.set_attributes(exec_attributes(event.exit_code, event.timed_out, event.duration_ms))
                    yield event
        except SandboxError as exc:
            span.set_attribute(ATTR_ERROR_CODE, exc.code.value)
            raise
        finally:
            span.end()

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def read_file(self, sandbox_id: str, path: str) -> Result[str]:
        return await self._routed(sandbox_id, lambda p: p.read_file(sandbox_id, path))

    async def write_file(self, sandbox_id: str, path: str, content: str | bytes) -> Result[None]:
        return await self._routed(sandbox_id, lambda p: p.write_file(sandbox_id, path, content))

    async def copy_in(self, sandbox_id: str, host_path: str, sandbox_path: str) -> Result[None]:
        return await self._routed(sandbox_id, lambda p: p.copy_in(sandbox_id, host_path, sandbox_path))

    async def copy_out(self, sandbox_id: str, sandbox_path: str, host_path: str) -> Result[None]:
        return await self._routed(sandbox_id, lambda p: p.copy_out(sandbox_id, sandbox_path, host_path))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(self, sandbox_id: str) -> Result[SandboxInstance]:
        return await self._routed(sandbox_id, lambda p: p.get_status(sandbox_id))

    async def get_resource_usage(self, sandbox_id: str) -> Result[ResourceUsage]:
        return await self._routed(sandbox_id, lambda p: p.get_resource_usage(sandbox_id))

    async def list(self, project_id: str | None = None) -> list[SandboxInstance]:
        """Every sandbox held by any provider, optionally for one project."""
        instances: list[SandboxInstance] = []
        for provider in list(self._providers.values()):
            instances.extend(await provider.list(project_id))
        return sorted(instances, key=lambda i: i.created_at)

    async def health_check(self, kind: ProviderKind | str | None = None) -> HealthStatus:
        """Health of the provider for *kind* (the configured default when omitted)."""
        return await self.provider(kind or self._settings.defaults.provider).health_check()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _subscribe(self, provider: SandboxProvider) -> None:
        self._subscriptions.append(provider.on(self._dispatch))

    def _dispatch(self, event: LifecycleEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Lifecycle listener failed on %s", event.type)

    def _locate(self, sandbox_id: str) -> SandboxProvider:
        for provider in self._providers.values():
            if provider.owns(sandbox_id):
                return provider
        raise SandboxNotFoundError(sandbox_id)

    async def _routed(
        self,
        sandbox_id: str,
        call: Callable[[SandboxProvider], Awaitable[T]],
    ) -> Result[T]:
        try:
            provider = self._locate(sandbox_id)
            return Ok(await call(provider))
        except SandboxError as exc:
            logger.debug("Sandbox call on %s failed: %s", sandbox_id, exc)
            return Err(exc)

    @staticmethod
    async def _call(span: trace.Span, call: Callable[[], Awaitable[T]]) -> Result[T]:
        try:
            return Ok(await call())
        except SandboxError as exc:
            return _err(span, exc)


def _err(span: trace.Span, error: SandboxError) -> Err:
    span.set_attribute(ATTR_ERROR_CODE, error.code.value)
    logger.debug("Sandbox call failed: %s", error)
    return Err(error)


def _command_text(command: str | Sequence[str]) -> str:
    return command if isinstance(command, str) else " ".join(command)
