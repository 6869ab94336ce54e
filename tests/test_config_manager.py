"""Unit tests for cleaner_utils/config_manager.py"""

import os
from unittest.mock import patch

import pytest
import yaml

from cleaner_utils.config_manager import DEFAULT_CLEANUP_POLICIES, ConfigManager, ConfigValidationError


def write_config(tmp_path, config):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(config))
    return str(path)


class TestConfigManagerInitialization:
    """Tests for ConfigManager initialization"""

    def test_loads_default_config_when_file_not_found(self):
        cm = ConfigManager(config_file="/nonexistent/config.yaml", validate=False)

        assert cm.get_max_workers() == 4
        assert cm.get_lock_timeout() == 0
        assert cm.get_git_timeout() == 120
        assert cm.reports_enabled() is True
        assert cm.get_cleanup_policies() == DEFAULT_CLEANUP_POLICIES

    def test_merges_user_config_with_defaults(self, tmp_path):
        path = write_config(tmp_path, {"cleanup": {"max_workers": 8}, "retry": {"max_retries": 5}})

        cm = ConfigManager(config_file=path, validate=False)

        assert cm.get_max_workers() == 8
        assert cm.get_max_retries() == 5
        # Untouched keys of a partially overridden section keep their defaults
        assert cm.get_retry_initial_delay() == 1.0
        assert cm.get_cleanup_policies() == DEFAULT_CLEANUP_POLICIES

    def test_uses_config_file_env_var(self, tmp_path):
        path = write_config(tmp_path, {"git": {"timeout": 30}})

        with patch.dict(os.environ, {"CONFIG_FILE": path}):
            cm = ConfigManager(validate=False)

        assert cm.config_file == path
        assert cm.get_git_timeout() == 30

    def test_malformed_yaml_raises(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("cleanup: [unclosed\n")

        with pytest.raises(ConfigValidationError) as exc_info:
            ConfigManager(config_file=str(path), validate=False)
        assert str(path) in str(exc_info.value)

    def test_non_mapping_config_raises(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- cleanup\n- git\n")

        with pytest.raises(ConfigValidationError):
            ConfigManager(config_file=str(path), validate=False)

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert ConfigManager(config_file=str(path), validate=False).get_max_workers() == 4


class TestGetters:
    def test_env_overrides(self, tmp_path):
        path = write_config(
            tmp_path,
            {"registry": {"docker_config": "/from/config"}, "kubernetes": {"kube_context": "config-ctx"}},
        )
        env = {"DOCKER_CONFIG": "/from/env", "KUBE_CONTEXT": "env-ctx", "CLEANUP_LOCK_DIR": str(tmp_path / "locks")}

        with patch.dict(os.environ, env):
            cm = ConfigManager(config_file=path, validate=False)
            assert cm.get_docker_config() == "/from/env"
            assert cm.get_kube_context() == "env-ctx"
            assert cm.get_lock_dir() == str(tmp_path / "locks")

    def test_lock_dir_expands_home(self, tmp_path):
        path = write_config(tmp_path, {"lock": {"dir": "~/locks"}})

        with patch.dict(os.environ, {"CLEANUP_LOCK_DIR": ""}):
            cm = ConfigManager(config_file=path, validate=False)
            assert cm.get_lock_dir() == os.path.expanduser("~/locks")

    def test_cleanup_report_path(self, tmp_path):
        path = write_config(tmp_path, {"reports": {"output_dir": "out", "cleanup_report": "nightly"}})

        cm = ConfigManager(config_file=path, validate=False)

        assert cm.get_cleanup_report_path() == os.path.join("out", "nightly")

    def test_cleanup_report_path_with_directory(self, tmp_path):
        path = write_config(tmp_path, {"reports": {"cleanup_report": "/var/reports/cleanup"}})

        cm = ConfigManager(config_file=path, validate=False)

        assert cm.get_cleanup_report_path() == "/var/reports/cleanup"

    def test_non_integer_raises(self, tmp_path):
        path = write_config(tmp_path, {"cleanup": {"max_workers": "many"}})

        cm = ConfigManager(config_file=path, validate=False)

        with pytest.raises(ConfigValidationError):
            cm.get_max_workers()

    def test_string_numbers_are_coerced(self, tmp_path):
        path = write_config(tmp_path, {"cleanup": {"max_workers": "6"}, "lock": {"timeout": "2.5"}})

        cm = ConfigManager(config_file=path, validate=False)

        assert cm.get_max_workers() == 6
        assert cm.get_lock_timeout() == 2.5


class TestValidation:
    """Tests for ConfigManager.validate_config"""

    def test_defaults_are_valid(self):
        ConfigManager(config_file="/nonexistent/config.yaml", validate=True)

    @pytest.mark.parametrize(
        "config,message",
        [
            ({"cleanup": {"max_workers": 0}}, "cleanup.max_workers"),
            ({"kubernetes": {"max_workers": 0}}, "kubernetes.max_workers"),
            ({"cleanup": {"policies": "git-branch:*"}}, "cleanup.policies"),
            ({"cleanup": {"policies": [{"pattern": "*"}]}}, "cleanup.policies[0]"),
            ({"lock": {"timeout": -1}}, "lock.timeout"),
            ({"git": {"timeout": 0}}, "git.timeout"),
            ({"retry": {"max_retries": -1}}, "retry.max_retries"),
            ({"retry": {"initial_delay": 10, "max_delay": 1}}, "retry.max_delay"),
            ({"retry": {"exponential_base": 0.5}}, "retry.exponential_base"),
            ({"reports": {"output_dir": " "}}, "reports.output_dir"),
        ],
    )
    def test_invalid_values(self, tmp_path, config, message):
        path = write_config(tmp_path, config)

        with pytest.raises(ConfigValidationError) as exc_info:
            ConfigManager(config_file=path, validate=True)
        assert message in str(exc_info.value)

    def test_high_worker_count_only_warns(self, tmp_path, caplog):
        path = write_config(tmp_path, {"cleanup": {"max_workers": 64}})

        ConfigManager(config_file=path, validate=True)

        assert "very high" in caplog.text
