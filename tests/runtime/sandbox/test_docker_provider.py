"""Tests for DockerProvider (docker CLI mocked)."""

import io
import json
import tarfile
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentcell.runtime.errors import SandboxError, SandboxErrorCode, SandboxNotFoundError, SandboxTimeoutError
from agentcell.runtime.sandbox.models import ProviderKind, SandboxConfig, SandboxInstance, SandboxStatus
from agentcell.runtime.sandbox.policy import PolicyResolver
from agentcell.runtime.sandbox.providers.docker import (
    LABEL_PROJECT_ID,
    LABEL_SANDBOX_ID,
    DockerProvider,
    _DockerOutput,
    build_tar,
    parse_size,
    parse_stats,
)
from agentcell.runtime.sandbox.registry import RegistryEntry
from agentcell.runtime.sandbox.settings import SandboxSettings

DOCKER_INFO = json.dumps({
    "ServerVersion": "27.1.1",
    "Containers": 3,
    "ContainersRunning": 1,
    "Images": 12,
    "NCPU": 8,
    "MemTotal": 16 * 1024 * 1024 * 1024,
})


def _mock_docker_output(stdout: str = "", stderr: str = "", returncode: int = 0, data: bytes = b"") -> _DockerOutput:
    return _DockerOutput(stdout=stdout, stderr=stderr, returncode=returncode, data=data)


def _config(**overrides) -> SandboxConfig:
    return PolicyResolver(SandboxSettings().defaults).resolve(overrides)


class _DockerFake:
    """Records docker CLI calls and answers the ones the provider depends on."""

    def __init__(self, fail: str | None = None, *, image_present: bool = True) -> None:
        self.calls: list[list[str]] = []
        self.timeouts: dict[str, float | None] = {}
        self.fail = fail
        self.image_present = image_present

    async def run(self, cmd, *, ignore_errors=False, capture_stderr=False, input=None, timeout=None):
        self.calls.append(list(cmd))
        verb = cmd[1]
        self.timeouts[verb] = timeout
        if verb == self.fail:
            if ignore_errors:
                return _mock_docker_output(stderr="boom", returncode=1)
            raise SandboxError(SandboxErrorCode.EXEC_FAILED, f"docker {verb} failed")
        if verb == "image" and not self.image_present:
            return _mock_docker_output(stderr="No such image", returncode=1)
        if verb == "pull":
            self.image_present = True
        if verb == "info":
            return _mock_docker_output(stdout=DOCKER_INFO)
        if verb == "create":
            return _mock_docker_output(stdout="c0ffee")
        return _mock_docker_output()

    def verbs(self) -> list[str]:
        return [cmd[1] for cmd in self.calls]


class TestDockerProviderLifecycle:
    async def test_create_start_stop_remove(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        fake = _DockerFake()
        with patch.object(DockerProvider, "_run_docker", side_effect=fake.run):
            instance = await provider.create("agent", "proj", _config())
            assert instance.status == SandboxStatus.CREATING
            assert instance.handle == "c0ffee"
            assert instance.provider == ProviderKind.DOCKER

            running = await provider.start(instance.id)
            assert running.status == SandboxStatus.RUNNING

            stopped = await provider.stop(instance.id)
            assert stopped.status == SandboxStatus.STOPPED

            await provider.remove(instance.id)

        assert fake.verbs() == ["info", "image", "volume", "create", "start", "stop", "rm", "volume"]
        assert fake.calls[-1][:4] == ["docker", "volume", "rm", "-f"]
        assert not provider.owns(instance.id)

    async def test_stop_is_idempotent(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        fake = _DockerFake()
        with patch.object(DockerProvider, "_run_docker", side_effect=fake.run):
            instance = await provider.create("agent", "proj", _config())
            await provider.start(instance.id)
            await provider.stop(instance.id)
            again = await provider.stop(instance.id)
        assert again.status == SandboxStatus.STOPPED
        assert fake.verbs().count("stop") == 1

    async def test_remove_twice_is_not_found(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        with patch.object(DockerProvider, "_run_docker", side_effect=_DockerFake().run):
            instance = await provider.create("agent", "proj", _config())
            await provider.remove(instance.id)
            with pytest.raises(SandboxNotFoundError):
                await provider.remove(instance.id)

    async def test_creation_failure_registers_nothing(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        fake = _DockerFake(fail="create")
        with patch.object(DockerProvider, "_run_docker", side_effect=fake.run):
            with pytest.raises(SandboxError) as exc_info:
                await provider.create("agent", "proj", _config())
        assert exc_info.value.code == SandboxErrorCode.CREATION_FAILED
        assert len(provider.registry) == 0
        # The volume created before the failure is released.
        assert fake.calls[-1][:3] == ["docker", "volume", "rm"]

    async def test_start_failure_marks_error(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        with patch.object(DockerProvider, "_run_docker", side_effect=_DockerFake(fail="start").run):
            instance = await provider.create("agent", "proj", _config())
            with pytest.raises(SandboxError) as exc_info:
                await provider.start(instance.id)
            status = await provider.get_status(instance.id)
        assert exc_info.value.code == SandboxErrorCode.START_FAILED
        assert status.status == SandboxStatus.ERROR
        assert "docker start failed" in (status.error or "")

    async def test_remove_tolerates_missing_container(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})

        async def mock_run(cmd, *, ignore_errors=False, capture_stderr=False, input=None, timeout=None):
            if cmd[1] == "info":
                return _mock_docker_output(stdout=DOCKER_INFO)
            if cmd[1] == "rm":
                return _mock_docker_output(stderr="Error: No such container: c0ffee", returncode=1)
            return _mock_docker_output(stdout="c0ffee")

        with patch.object(DockerProvider, "_run_docker", side_effect=mock_run):
            instance = await provider.create("agent", "proj", _config())
            await provider.remove(instance.id)
        assert not provider.owns(instance.id)

    async def test_remove_failure_raises_removal_failed(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        with patch.object(DockerProvider, "_run_docker", side_effect=_DockerFake(fail="rm").run):
            instance = await provider.create("agent", "proj", _config())
            with pytest.raises(SandboxError) as exc_info:
                await provider.remove(instance.id)
        assert exc_info.value.code == SandboxErrorCode.REMOVAL_FAILED
        assert provider.owns(instance.id)

    async def test_pause_and_resume(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        fake = _DockerFake()
        with patch.object(DockerProvider, "_run_docker", side_effect=fake.run):
            instance = await provider.create("agent", "proj", _config())
            await provider.start(instance.id)
            paused = await provider.pause(instance.id)
            resumed = await provider.resume(instance.id)
        assert paused.status == SandboxStatus.PAUSED
        assert resumed.status == SandboxStatus.RUNNING
        assert "pause" in fake.verbs()
        assert "unpause" in fake.verbs()

    async def test_exec_requires_running(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        fake = _DockerFake()
        with patch.object(DockerProvider, "_run_docker", side_effect=fake.run):
            instance = await provider.create("agent", "proj", _config())
            with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as spawn:
                for command in ("echo hi", ["ls"]):
                    with pytest.raises(SandboxError) as exc_info:
                        await provider.exec(instance.id, command)
                    assert exc_info.value.code == SandboxErrorCode.INVALID_STATE
                    with pytest.raises(SandboxError):
                        async for _ in provider.exec_stream(instance.id, command):
                            pass
        spawn.assert_not_awaited()
        assert "exec" not in fake.verbs()
        assert (await provider.get_status(instance.id)).status == SandboxStatus.CREATING

    async def test_missing_image_is_pulled_before_create(self) -> None:
        provider = DockerProvider(SandboxSettings(pull_timeout_seconds=900), host_env={})
        fake = _DockerFake(image_present=False)
        with patch.object(DockerProvider, "_run_docker", side_effect=fake.run):
            await provider.create("agent", "proj", _config())
        verbs = fake.verbs()
        assert verbs.index("pull") < verbs.index("create")
        pull = next(cmd for cmd in fake.calls if cmd[1] == "pull")
        assert pull[-1] == "agentcell/sandbox:latest"
        assert fake.timeouts["pull"] == 900

    async def test_present_image_is_not_pulled(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        fake = _DockerFake()
        with patch.object(DockerProvider, "_run_docker", side_effect=fake.run):
            await provider.create("agent", "proj", _config())
        inspect = next(cmd for cmd in fake.calls if cmd[1] == "image")
        assert inspect[:3] == ["docker", "image", "inspect"]
        assert "pull" not in fake.verbs()

    async def test_pull_failure_is_creation_failed(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        fake = _DockerFake(fail="pull", image_present=False)
        with patch.object(DockerProvider, "_run_docker", side_effect=fake.run):
            with pytest.raises(SandboxError) as exc_info:
                await provider.create("agent", "proj", _config())
        assert exc_info.value.code == SandboxErrorCode.CREATION_FAILED
        assert "cannot pull image agentcell/sandbox:latest" in exc_info.value.detail
        assert "create" not in fake.verbs()
        assert len(provider.registry) == 0

    async def test_hung_docker_call_surfaces_timeout(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})

        async def hung_create(cmd, *, ignore_errors=False, capture_stderr=False, input=None, timeout=None):
            if cmd[1] == "create":
                raise SandboxTimeoutError(120.0)
            return await _DockerFake().run(cmd, ignore_errors=ignore_errors)

        with patch.object(DockerProvider, "_run_docker", side_effect=hung_create):
            with pytest.raises(SandboxError) as exc_info:
                await provider.create("agent", "proj", _config())
        assert exc_info.value.code == SandboxErrorCode.TIMEOUT
        assert len(provider.registry) == 0

    async def test_resource_limit_exceeded(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        with patch.object(DockerProvider, "_run_docker", side_effect=_DockerFake().run):
            with pytest.raises(SandboxError) as exc_info:
                await provider.create("agent", "proj", _config(resources={"cpus": 12}))
        assert exc_info.value.code == SandboxErrorCode.RESOURCE_LIMIT_EXCEEDED
        assert "cpus" in exc_info.value.detail

    async def test_wrong_provider_kind(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        with pytest.raises(SandboxError) as exc_info:
            await provider.create("agent", "proj", _config(provider="local"))
        assert exc_info.value.code == SandboxErrorCode.INVALID_CONFIG

    async def test_lifecycle_events(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        seen: list[str] = []
        unsubscribe = provider.on(lambda event: seen.append(event.type))
        with patch.object(DockerProvider, "_run_docker", side_effect=_DockerFake().run):
            instance = await provider.create("agent", "proj", _config())
            await provider.start(instance.id)
            unsubscribe()
            await provider.remove(instance.id)
        assert seen == ["sandbox:creating", "sandbox:created", "sandbox:started"]


class TestDockerProviderCommands:
    def _entry(self, config: SandboxConfig, env: dict[str, str]) -> RegistryEntry:
        instance = SandboxInstance(
            id="abc123",
            agent_id="agent-7",
            project_id="proj-9",
            provider=ProviderKind.DOCKER,
            workspace_path=config.allowed_root_directory,
            handle="c0ffee",
        )
        return RegistryEntry(instance=instance, config=config, env=env)

    def test_build_create_command(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        entry = self._entry(_config(), {"LANG": "C.UTF-8"})
        cmd = provider._build_create_command(entry, "agentcell-abc123", "type=volume,source=v,target=/workspace")

        assert cmd[:2] == ["docker", "create"]
        assert cmd[cmd.index("--name") + 1] == "agentcell-abc123"
        assert f"{LABEL_SANDBOX_ID}=abc123" in cmd
        assert f"{LABEL_PROJECT_ID}=proj-9" in cmd
        assert cmd[cmd.index("--network") + 1] == "none"
        assert cmd[cmd.index("--memory") + 1] == "4096m"
        assert cmd[cmd.index("--workdir") + 1] == "/workspace"
        env_values = [cmd[i + 1] for i, v in enumerate(cmd) if v == "-e"]
        assert env_values == ["LANG=C.UTF-8"]
        assert cmd[-4:] == ["tail", "agentcell/sandbox:latest", "-f", "/dev/null"]

    def test_build_create_command_runtime_args(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        entry = self._entry(_config(container={"runtime_args": ["--shm-size=1g"]}), {})
        cmd = provider._build_create_command(entry, "n", "m")
        assert "--shm-size=1g" in cmd
        assert cmd.index("--shm-size=1g") < cmd.index("--init")

    def test_build_exec_command(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        cmd = provider._build_exec_command(
            "c0ffee",
            ["ls", "-la"],
            cwd="/workspace/src",
            env={"CI": "1"},
            user="agent",
            stdin=True,
            pidfile="/tmp/p.pid",
        )
        assert cmd[:3] == ["docker", "exec", "-i"]
        assert cmd[cmd.index("-w") + 1] == "/workspace/src"
        assert cmd[cmd.index("-u") + 1] == "agent"
        assert cmd[cmd.index("-e") + 1] == "CI=1"
        handle_at = cmd.index("c0ffee")
        assert cmd[handle_at + 4] == "/tmp/p.pid"
        assert cmd[-2:] == ["ls", "-la"]

    def test_exec_wrapper_starts_own_process_group(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        cmd = provider._build_exec_command(
            "c0ffee", ["sh", "-c", "sleep 100; echo x"],
            cwd="/workspace", env={}, user=None, stdin=False, pidfile="/tmp/p.pid",
        )
        wrapper = cmd[cmd.index("c0ffee") + 3]
        assert 'setsid "$@"' in wrapper
        assert "trap 'rm -f \"$0\"' EXIT" in wrapper
        assert "exec \"$@\"" not in wrapper

    def test_kill_command_targets_process_group(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        cmd = provider._build_kill_command("c0ffee", "/tmp/p.pid")
        assert cmd[:6] == ["docker", "exec", "-u", "root", "c0ffee", "sh"]
        assert 'kill -s KILL -- -"$(cat "$0")"' in cmd[7]
        assert cmd[-1] == "/tmp/p.pid"

    async def test_timeout_kill_reaches_whole_group(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        fake = _DockerFake()
        client = MagicMock(returncode=None, pid=4242)
        with patch.object(DockerProvider, "_run_docker", side_effect=fake.run):
            instance = await provider.create("agent", "proj", _config())
            await provider.start(instance.id)
            entry = provider.registry.get(instance.id)
            with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock, return_value=client) as spawn:
                running = await provider._spawn(
                    entry, ["sh", "-c", "sleep 100; echo x"], cwd="/workspace", env={}, user=None, stdin=False,
                )
            await running.kill()

        exec_argv = list(spawn.await_args.args)
        pidfile = exec_argv[exec_argv.index("c0ffee") + 4]
        kill = fake.calls[-1]
        assert kill[:5] == ["docker", "exec", "-u", "root", "c0ffee"]
        assert "-- -" in kill[7]
        assert kill[-1] == pidfile
        client.kill.assert_called_once()

    async def test_bind_mount_skips_volume(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        fake = _DockerFake()
        with patch.object(DockerProvider, "_run_docker", side_effect=fake.run):
            await provider.create("agent", "proj", _config(container={"workspace_host_path": "/srv/repo"}))
        create = next(cmd for cmd in fake.calls if cmd[1] == "create")
        assert create[create.index("--mount") + 1] == "type=bind,source=/srv/repo,target=/workspace"
        assert "volume" not in fake.verbs()


class TestDockerProviderFiles:
    async def _running(self, provider: DockerProvider, run) -> str:
        with patch.object(DockerProvider, "_run_docker", side_effect=run):
            instance = await provider.create("agent", "proj", _config())
            await provider.start(instance.id)
        return instance.id

    async def test_read_file_extracts_tar(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        sandbox_id = await self._running(provider, _DockerFake().run)
        archive = build_tar("main.py", b"print('hi')\n")
        with patch.object(
            DockerProvider,
            "_run_docker",
            new_callable=AsyncMock,
            return_value=_mock_docker_output(data=archive),
        ) as mock_run:
            content = await provider.read_file(sandbox_id, "main.py")
        assert content == "print('hi')\n"
        assert mock_run.call_args.args[0] == ["docker", "cp", "c0ffee:/workspace/main.py", "-"]

    @pytest.mark.parametrize(
        "archive",
        [
            # docker cp of a directory streams its tree, directory entry first.
            build_tar("src/secret.py", b"TOKEN=1\n"),
            build_tar("secret.py", b"TOKEN=1\n"),
        ],
        ids=["directory", "other-file"],
    )
    async def test_read_file_rejects_non_matching_archive(self, archive: bytes) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        sandbox_id = await self._running(provider, _DockerFake().run)
        with patch.object(
            DockerProvider,
            "_run_docker",
            new_callable=AsyncMock,
            return_value=_mock_docker_output(data=archive),
        ):
            with pytest.raises(SandboxError) as exc_info:
                await provider.read_file(sandbox_id, "src")
        assert exc_info.value.code == SandboxErrorCode.FILE_NOT_FOUND
        assert "not a regular file" in exc_info.value.detail

    async def test_read_file_nested_path(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        sandbox_id = await self._running(provider, _DockerFake().run)
        with patch.object(
            DockerProvider,
            "_run_docker",
            new_callable=AsyncMock,
            return_value=_mock_docker_output(data=build_tar("app.py", b"x = 1\n")),
        ):
            assert await provider.read_file(sandbox_id, "src/app.py") == "x = 1\n"

    async def test_read_file_failure_is_file_not_found(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        sandbox_id = await self._running(provider, _DockerFake().run)
        with patch.object(DockerProvider, "_run_docker", side_effect=_DockerFake(fail="cp").run):
            with pytest.raises(SandboxError) as exc_info:
                await provider.read_file(sandbox_id, "missing.txt")
        assert exc_info.value.code == SandboxErrorCode.FILE_NOT_FOUND

    async def test_write_file_pipes_tar(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        sandbox_id = await self._running(provider, _DockerFake().run)
        with patch.object(
            DockerProvider, "_run_docker", new_callable=AsyncMock, return_value=_mock_docker_output(),
        ) as mock_run:
            await provider.write_file(sandbox_id, "src/app.py", "x = 1\n")
        assert mock_run.call_args.args[0] == ["docker", "cp", "-", "c0ffee:/workspace"]
        payload = mock_run.call_args.kwargs["input"]
        with tarfile.open(fileobj=io.BytesIO(payload)) as tar:
            member = tar.getmember("src/app.py")
            assert tar.extractfile(member).read() == b"x = 1\n"

    async def test_path_escape_rejected(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        sandbox_id = await self._running(provider, _DockerFake().run)
        with pytest.raises(SandboxError) as exc_info:
            await provider.write_file(sandbox_id, "../etc/passwd", "x")
        assert exc_info.value.code == SandboxErrorCode.WRITE_FAILED
        assert "escapes" in exc_info.value.detail

    async def test_copy_in_missing_host_path(self, tmp_path) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        sandbox_id = await self._running(provider, _DockerFake().run)
        with pytest.raises(SandboxError) as exc_info:
            await provider.copy_in(sandbox_id, str(tmp_path / "nope"), "dest")
        assert exc_info.value.code == SandboxErrorCode.COPY_FAILED

    async def test_copy_out(self, tmp_path) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        sandbox_id = await self._running(provider, _DockerFake().run)
        with patch.object(
            DockerProvider, "_run_docker", new_callable=AsyncMock, return_value=_mock_docker_output(),
        ) as mock_run:
            await provider.copy_out(sandbox_id, "dist", str(tmp_path))
        assert mock_run.call_args.args[0] == ["docker", "cp", "c0ffee:/workspace/dist", str(tmp_path)]


class TestDockerProviderQueries:
    async def test_resource_usage(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        stats = json.dumps({"MemUsage": "64MiB / 4GiB", "CPUPerc": "12.50%", "PIDs": "7"})

        async def mock_run(cmd, *, ignore_errors=False, capture_stderr=False, input=None, timeout=None):
            if cmd[1] == "info":
                return _mock_docker_output(stdout=DOCKER_INFO)
            if cmd[1] == "stats":
                return _mock_docker_output(stdout=stats)
            if cmd[1] == "inspect":
                return _mock_docker_output(stdout=str(2 * 1024 * 1024))
            return _mock_docker_output(stdout="c0ffee")

        with patch.object(DockerProvider, "_run_docker", side_effect=mock_run):
            instance = await provider.create("agent", "proj", _config())
            await provider.start(instance.id)
            usage = await provider.get_resource_usage(instance.id)
        assert usage.memory_mb == 64.0
        assert usage.cpu_percent == 12.5
        assert usage.pids == 7
        assert usage.disk_mb == 2.0

    async def test_resource_usage_requires_running(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        with patch.object(DockerProvider, "_run_docker", side_effect=_DockerFake().run):
            instance = await provider.create("agent", "proj", _config())
            with pytest.raises(SandboxError) as exc_info:
                await provider.get_resource_usage(instance.id)
        assert exc_info.value.code == SandboxErrorCode.INVALID_STATE

    async def test_health_check_healthy(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        with patch.object(DockerProvider, "_run_docker", side_effect=_DockerFake().run):
            status = await provider.health_check()
        assert status.healthy
        assert status.details["ncpu"] == 8
        assert status.details["mem_total_mb"] == 16384

    async def test_health_check_reports_default_image(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        with patch.object(DockerProvider, "_run_docker", side_effect=_DockerFake(image_present=False).run):
            status = await provider.health_check()
        assert status.healthy
        assert status.details["default_image"] == "agentcell/sandbox:latest"
        assert status.details["default_image_pulled"] is False

    async def test_health_check_daemon_down(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        with patch.object(
            DockerProvider,
            "_run_docker",
            new_callable=AsyncMock,
            side_effect=SandboxError(SandboxErrorCode.PROVIDER_UNAVAILABLE, "Failed to run docker"),
        ):
            status = await provider.health_check()
        assert not status.healthy
        assert "Failed to run docker" in status.message

    async def test_list_filters_by_project(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        with patch.object(DockerProvider, "_run_docker", side_effect=_DockerFake().run):
            await provider.create("agent", "p1", _config())
            await provider.create("agent", "p2", _config())
        assert [i.project_id for i in await provider.list("p1")] == ["p1"]
        assert len(await provider.list()) == 2


class TestParsers:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [("0B", 0), ("512kB", 512_000), ("1.5MiB", 1.5 * 1024**2), ("2GB", 2 * 1000**3), ("3", 3)],
    )
    def test_parse_size(self, text: str, expected: float) -> None:
        assert parse_size(text) == expected

    def test_parse_size_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_size("lots")

    def test_parse_stats_missing_values(self) -> None:
        usage = parse_stats(json.dumps({"MemUsage": "0B / 0B", "CPUPerc": "0.00%", "PIDs": "--"}), "<no value>")
        assert usage.pids == 0
        assert usage.disk_mb == 0.0

    def test_build_tar_adds_parent_dirs(self) -> None:
        with tarfile.open(fileobj=io.BytesIO(build_tar("a/b/c.txt", b"data"))) as tar:
            assert tar.getnames() == ["a", "a/b", "a/b/c.txt"]
            assert tar.getmember("a").isdir()


class TestRunDocker:
    async def test_hung_command_raises_timeout(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        started = time.monotonic()
        with pytest.raises(SandboxTimeoutError) as exc_info:
            await provider._run_docker(["sleep", "5"], timeout=0.2)
        assert exc_info.value.code == SandboxErrorCode.TIMEOUT
        assert time.monotonic() - started < 3

    async def test_default_deadline_from_settings(self) -> None:
        provider = DockerProvider(SandboxSettings(operation_timeout_seconds=0.2), host_env={})
        with pytest.raises(SandboxTimeoutError) as exc_info:
            await provider._run_docker(["sleep", "5"], ignore_errors=True)
        assert exc_info.value.timeout == 0.2

    async def test_completes_within_deadline(self) -> None:
        provider = DockerProvider(SandboxSettings(), host_env={})
        out = await provider._run_docker(["echo", "ready"], timeout=5)
        assert out.stdout == "ready"
        assert out.returncode == 0
