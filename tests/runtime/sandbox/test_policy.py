"""Tests for the policy resolver."""

import pytest
from pydantic import ValidationError

from agentcell.runtime.errors import ConfigValidationError
from agentcell.runtime.sandbox.models import NetworkMode, ProviderKind, SandboxConfig, SandboxOverrides
from agentcell.runtime.sandbox.policy import PolicyResolver, dedupe, parse_overrides, validate_config
from agentcell.runtime.sandbox.settings import DEFAULT_BLOCKED, SandboxSettings


class TestDedupe:
    def test_keeps_first_occurrence_order(self) -> None:
        assert dedupe(["a", "b"], ["b", "c", "a"]) == ("a", "b", "c")

    def test_empty(self) -> None:
        assert dedupe() == ()


class TestParseOverrides:
    def test_none_is_empty(self) -> None:
        assert parse_overrides(None) == SandboxOverrides()

    def test_passes_model_through(self) -> None:
        ov = SandboxOverrides(provider=ProviderKind.LOCAL)
        assert parse_overrides(ov) is ov

    def test_schema_error(self) -> None:
        with pytest.raises(ConfigValidationError):
            parse_overrides({"resources": {"memory_mb": "lots"}})


class TestPolicyResolver:
    def _resolver(self) -> PolicyResolver:
        return PolicyResolver(SandboxSettings().defaults)

    def test_no_overrides_returns_defaults(self) -> None:
        resolver = self._resolver()
        assert resolver.resolve() == resolver.defaults

    def test_scalar_override_wins(self) -> None:
        config = self._resolver().resolve({"resources": {"memory_mb": 1024}, "network": {"mode": "full"}})
        assert config.resources.memory_mb == 1024
        assert config.resources.cpus == 2.0
        assert config.network.mode == NetworkMode.FULL

    def test_blocked_is_union(self) -> None:
        config = self._resolver().resolve({"environment": {"blocked": ["MY_TOKEN"]}})
        assert config.environment.blocked[: len(DEFAULT_BLOCKED)] == DEFAULT_BLOCKED
        assert config.environment.blocked[-1] == "MY_TOKEN"

    def test_passthrough_union_dedupes(self) -> None:
        config = self._resolver().resolve({"environment": {"passthrough": ["LANG", "EDITOR"]}})
        assert config.environment.passthrough.count("LANG") == 1
        assert "EDITOR" in config.environment.passthrough

    def test_set_merges_and_override_wins(self) -> None:
        config = self._resolver().resolve({"environment": {"set": {"HOME": "/root", "CI": "1"}}})
        assert config.environment.set["HOME"] == "/root"
        assert config.environment.set["CI"] == "1"
        assert "PATH" in config.environment.set

    def test_allowed_hosts_replace(self) -> None:
        resolver = PolicyResolver(self._resolver().resolve({"network": {"allowed_hosts": ["a.example"]}}))
        config = resolver.resolve({"network": {"allowed_hosts": ["b.example", "b.example"]}})
        assert config.network.allowed_hosts == ("b.example",)

    def test_result_is_immutable(self) -> None:
        config = self._resolver().resolve()
        with pytest.raises(ValidationError):
            config.resources.memory_mb = 1  # type: ignore[misc]

    @pytest.mark.parametrize(
        ("overrides", "field"),
        [
            ({"resources": {"memory_mb": 256}}, "memory_mb"),
            ({"resources": {"memory_mb": 65536}}, "memory_mb"),
            ({"resources": {"cpus": 0.1}}, "cpus"),
            ({"resources": {"pids_limit": 8}}, "pids_limit"),
            ({"resources": {"disk_mb": 100}}, "disk_mb"),
            ({"resources": {"timeout_ms": 10}}, "timeout_ms"),
        ],
    )
    def test_out_of_range(self, overrides: dict, field: str) -> None:
        with pytest.raises(ConfigValidationError, match=field):
            self._resolver().resolve(overrides)


class TestValidateConfig:
    def test_defaults_are_valid(self) -> None:
        validate_config(SandboxConfig())

    def test_relative_root_rejected(self) -> None:
        with pytest.raises(ConfigValidationError, match="absolute"):
            validate_config(SandboxConfig(allowed_root_directory="workspace"))

    def test_bad_port(self) -> None:
        config = SandboxConfig.model_validate({"network": {"allowed_ports": [0]}})
        with pytest.raises(ConfigValidationError, match="port"):
            validate_config(config)

    def test_bad_env_name(self) -> None:
        config = SandboxConfig.model_validate({"environment": {"set": {"A=B": "x"}}})
        with pytest.raises(ConfigValidationError, match="environment"):
            validate_config(config)
