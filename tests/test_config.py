from datetime import timedelta
from pathlib import Path

import pytest

from stratus.config import (
    AgentSettings,
    ServerSettings,
    _deep_merge,
    agent_settings,
    load_config,
    log_config,
    resolve_cloud,
    server_settings,
    timeouts,
)
from stratus.constants import DEFAULT_AGENT_COMMAND, DEFAULT_READ_TIMEOUT, Provider

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


class TestDeepMerge:
    def test_shallow_override(self):
        assert _deep_merge({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}

    def test_nested_merge(self):
        base = {"clouds": {"aws": {"region": "us-east", "provider": "aws"}}}
        override = {"clouds": {"aws": {"region": "us-west"}}}
        result = _deep_merge(base, override)
        assert result == {"clouds": {"aws": {"region": "us-west", "provider": "aws"}}}

    def test_empty_base(self):
        assert _deep_merge({}, {"a": 1}) == {"a": 1}


class TestLoadConfig:
    def test_no_files_returns_empty_sections(self, tmp_path: Path):
        result = load_config(project_dir=tmp_path / "nope", global_path=tmp_path / "nope.toml")
        assert result == {"server": {}, "logging": {}, "timeouts": {}, "agent": {}, "clouds": {}}

    def test_project_overrides_global(self, tmp_path: Path):
        global_toml = tmp_path / "defaults.toml"
        global_toml.write_text('[server]\nport = 9000\nhost = "0.0.0.0"\n')
        project_dir = tmp_path / "project"
        project_dir.mkdir()
        (project_dir / "stratus.toml").write_text("[server]\nport = 9100\n")

        result = load_config(project_dir=project_dir, global_path=global_toml)

        assert result["server"] == {"port": 9100, "host": "0.0.0.0"}


class TestSettings:
    def test_defaults(self):
        config = {"server": {}, "logging": {}, "timeouts": {}, "agent": {}, "clouds": {}}
        assert server_settings(config) == ServerSettings()
        assert agent_settings(config) == AgentSettings()
        assert agent_settings(config).command == DEFAULT_AGENT_COMMAND
        assert log_config(config).level == "INFO"
        assert timeouts(config).read == DEFAULT_READ_TIMEOUT

    def test_values(self):
        config = {
            "server": {"port": 9999},
            "logging": {"level": "DEBUG", "console": False},
            "timeouts": {"create": 20},
            "agent": {"command": "/usr/local/bin/agent"},
            "clouds": {},
        }
        assert server_settings(config).port == 9999
        assert log_config(config).console is False
        assert timeouts(config).create == timedelta(minutes=20)
        assert agent_settings(config).command == "/usr/local/bin/agent"

    def test_unknown_key(self):
        config = {"server": {"prot": 1}, "logging": {}, "timeouts": {}, "agent": {}, "clouds": {}}
        with pytest.raises(ValueError, match="Unknown keys in \\[server\\]: prot"):
            server_settings(config)


class TestResolveCloud:
    def test_aws_cloud(self, tmp_path: Path):
        (tmp_path / "stratus.toml").write_text(
            "[timeouts]\n"
            "create = 30\n"
            "\n"
            "[clouds.train]\n"
            'provider = "aws"\n'
            'region = "eu-west"\n'
            'tags = { team = "research" }\n'
            "\n"
            "[clouds.train.timeouts]\n"
            "delete = 5\n"
        )
        cloud = resolve_cloud("train", project_dir=tmp_path, global_path=tmp_path / "none.toml")

        assert cloud.provider is Provider.AWS
        assert cloud.region == "eu-west"
        assert cloud.tags == {"team": "research"}
        assert cloud.timeouts.create == timedelta(minutes=30)
        assert cloud.timeouts.delete == timedelta(minutes=5)
        assert cloud.credentials is None

    def test_region_defaults(self, tmp_path: Path):
        (tmp_path / "stratus.toml").write_text('[clouds.k]\nprovider = "k8s"\n')
        cloud = resolve_cloud("k", project_dir=tmp_path, global_path=tmp_path / "none.toml")
        assert cloud.provider is Provider.K8S
        assert cloud.region == "us-east"

    def test_unknown_cloud(self, tmp_path: Path):
        with pytest.raises(KeyError, match="Cloud 'nope' not found"):
            resolve_cloud("nope", project_dir=tmp_path, global_path=tmp_path / "none.toml")

    def test_missing_provider(self, tmp_path: Path):
        (tmp_path / "stratus.toml").write_text('[clouds.x]\nregion = "us-west"\n')
        with pytest.raises(ValueError, match="missing 'provider'"):
            resolve_cloud("x", project_dir=tmp_path, global_path=tmp_path / "none.toml")

    def test_unknown_provider(self, tmp_path: Path):
        (tmp_path / "stratus.toml").write_text('[clouds.x]\nprovider = "ibm"\n')
        with pytest.raises(ValueError, match="Unknown provider 'ibm'"):
            resolve_cloud("x", project_dir=tmp_path, global_path=tmp_path / "none.toml")

    def test_unknown_cloud_key(self, tmp_path: Path):
        (tmp_path / "stratus.toml").write_text('[clouds.x]\nprovider = "gcp"\nzone = "a"\n')
        with pytest.raises(ValueError, match="Unknown keys in \\[clouds.x\\]: zone"):
            resolve_cloud("x", project_dir=tmp_path, global_path=tmp_path / "none.toml")
