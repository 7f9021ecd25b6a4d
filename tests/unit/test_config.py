"""Unit tests for settings and grouped configuration views."""

import pytest
from pydantic import ValidationError

from sessionbox.config import Settings
from sessionbox.config.redis import RedisConfig


class TestSettings:
    """Test flat settings validation."""

    def test_defaults(self):
        config = Settings(_env_file=None)

        assert config.container_workspace_path == "/workspace"
        assert config.container_ports == ["22/tcp", "80/tcp"]
        assert config.graceful_shutdown_timeout == 10.0
        assert config.reaper_batch_size == 10
        assert config.reaper_max_retries == 3

    @pytest.mark.parametrize("field", ["container_name_prefix", "label_prefix"])
    def test_empty_prefix_is_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: "   "})

    def test_prefix_is_stripped(self):
        assert Settings(_env_file=None, label_prefix=" box ").label_prefix == "box"

    def test_log_level_is_upper_cased(self):
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_session_store_backend(self):
        assert Settings(_env_file=None, session_store_backend="Redis").session_store_backend == "redis"
        with pytest.raises(ValidationError):
            Settings(_env_file=None, session_store_backend="sqlite")

    def test_emergency_resource_timeout_below_shutdown_timeout(self):
        config = Settings(
            _env_file=None, emergency_shutdown_timeout=8, emergency_resource_timeout=6
        )
        assert config.lifecycle.emergency_resource_timeout == 6

        with pytest.raises(ValidationError):
            Settings(_env_file=None, emergency_shutdown_timeout=2, emergency_resource_timeout=3)
        with pytest.raises(ValidationError):
            Settings(_env_file=None, emergency_resource_timeout=5)

    def test_memory_bounds(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, container_memory_mb=16)


class TestGroupedViews:
    """Test grouped configuration access."""

    def test_docker_view(self):
        config = Settings(_env_file=None, container_memory_mb=256, base_image_name="img")

        docker = config.docker

        assert docker.base_image_name == "img"
        assert docker.memory_limit_bytes == 256 * 1024 * 1024

    def test_lifecycle_view(self):
        config = Settings(_env_file=None, graceful_shutdown_timeout=3, force_exit_grace=0)

        assert config.lifecycle.graceful_shutdown_timeout == 3
        assert config.lifecycle.force_exit_grace == 0

    def test_overrides_flow_into_views(self):
        config = Settings(_env_file=None).model_copy(update={"api_port": 4000})
        assert config.api.api_port == 4000

    def test_logging_view(self):
        config = Settings(_env_file=None, log_format="console", log_file="/tmp/x.log")

        assert config.logging.log_format == "console"
        assert config.logging.log_file == "/tmp/x.log"


class TestRedisUrl:
    """Test Redis URL construction."""

    def test_url_from_parts(self):
        config = RedisConfig(redis_host="cache", redis_port=6380, redis_db=2)
        assert config.get_url() == "redis://cache:6380/2"

    def test_url_with_password(self):
        config = RedisConfig(redis_host="cache", redis_password="s3cret")
        assert config.get_url() == "redis://:s3cret@cache:6379/0"

    def test_explicit_url_wins(self):
        config = Settings(_env_file=None, redis_url="redis://other:1/3", redis_host="cache")
        assert config.get_redis_url() == "redis://other:1/3"
