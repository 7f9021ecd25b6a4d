"""Unit tests for ImageProvisioner."""

import pytest
import requests
from docker.errors import DockerException, ImageNotFound
from unittest.mock import MagicMock

from sessionbox.models.errors import ImageBuildError
from sessionbox.services.container.image import ImageProvisioner, format_bytes


@pytest.fixture
def build_dir(tmp_path):
    (tmp_path / "Dockerfile.base").write_text("FROM ubuntu:22.04\n")
    return tmp_path


@pytest.fixture
def provisioner(mock_docker_client, docker_config, build_dir):
    config = docker_config.model_copy(update={"build_context_dir": str(build_dir)})
    return ImageProvisioner(mock_docker_client, config)


def found_image():
    image = MagicMock()
    image.id = "sha256:0123456789abcdef0123"
    image.tags = ["sessionbox-test:latest"]
    image.attrs = {"Size": 5767168, "Created": "2024-05-01T10:00:00Z"}
    return image


class TestFormatBytes:
    """Test human-readable sizes."""

    def test_zero(self):
        assert format_bytes(0) == "0 Bytes"

    def test_kilobytes(self):
        assert format_bytes(1536) == "1.5 KB"

    def test_megabytes(self):
        assert format_bytes(5767168) == "5.5 MB"


class TestEngine:
    """Test engine availability checks."""

    @pytest.mark.asyncio
    async def test_engine_available(self, provisioner):
        assert await provisioner.is_engine_available() is True

    @pytest.mark.asyncio
    async def test_engine_unavailable(self, provisioner, mock_docker_client):
        mock_docker_client.ping.side_effect = DockerException("connection refused")
        assert await provisioner.is_engine_available() is False

    @pytest.mark.asyncio
    async def test_engine_info_none_on_error(self, provisioner, mock_docker_client):
        mock_docker_client.info.side_effect = DockerException("boom")
        assert await provisioner.engine_info() is None


class TestInspect:
    """Test image lookup."""

    @pytest.mark.asyncio
    async def test_inspect_found(self, provisioner, mock_docker_client):
        mock_docker_client.images.get.return_value = found_image()

        result = await provisioner.inspect()

        assert result.exists is True
        assert result.error is None
        assert result.image_info.size == 5767168
        assert result.image_info.tags == ["sessionbox-test:latest"]
        mock_docker_client.images.get.assert_called_once_with("sessionbox-test")

    @pytest.mark.asyncio
    async def test_inspect_missing_is_not_an_error(self, provisioner, mock_docker_client):
        mock_docker_client.images.get.side_effect = ImageNotFound("no such image")

        result = await provisioner.inspect()

        assert result.exists is False
        assert result.error is None

    @pytest.mark.asyncio
    async def test_inspect_engine_error(self, provisioner, mock_docker_client):
        mock_docker_client.images.get.side_effect = DockerException("socket closed")

        result = await provisioner.inspect()

        assert result.exists is False
        assert "socket closed" in result.error


class TestBuild:
    """Test image builds."""

    @pytest.mark.asyncio
    async def test_build_success_captures_logs(self, provisioner, mock_docker_client):
        mock_docker_client.api.build.return_value = iter([
            {"stream": "Step 1/2 : FROM ubuntu:22.04\n"},
            {"stream": " ---> abc\n"},
            {"aux": {"ID": "sha256:feedface"}},
            {"stream": "Successfully built feedface\n"},
        ])

        result = await provisioner.build({"NODE_VERSION": "20"})

        assert result.success is True
        assert result.image_id == "feedface"
        assert len(result.build_logs) == 3
        kwargs = mock_docker_client.api.build.call_args.kwargs
        assert kwargs["tag"] == "sessionbox-test"
        assert kwargs["dockerfile"] == "Dockerfile.base"
        assert kwargs["buildargs"] == {"NODE_VERSION": "20"}
        assert kwargs["decode"] is True

    @pytest.mark.asyncio
    async def test_build_error_chunk_fails(self, provisioner, mock_docker_client):
        mock_docker_client.api.build.return_value = iter([
            {"stream": "Step 1/2 : FROM ubuntu:22.04\n"},
            {"error": "The command '/bin/sh -c apt-get install' returned a non-zero code: 100"},
        ])

        result = await provisioner.build()

        assert result.success is False
        assert "non-zero code" in result.error
        assert result.build_logs[-1].startswith("The command")

    @pytest.mark.asyncio
    async def test_build_missing_dockerfile(self, mock_docker_client, docker_config, tmp_path):
        config = docker_config.model_copy(update={"build_context_dir": str(tmp_path / "empty")})
        provisioner = ImageProvisioner(mock_docker_client, config)

        result = await provisioner.build()

        assert result.success is False
        assert "Dockerfile not found" in result.error
        mock_docker_client.api.build.assert_not_called()

    @pytest.mark.asyncio
    async def test_build_engine_exception(self, provisioner, mock_docker_client):
        mock_docker_client.api.build.side_effect = DockerException("daemon went away")

        result = await provisioner.build()

        assert result.success is False
        assert "daemon went away" in result.error

    @pytest.mark.asyncio
    async def test_build_context_read_error(self, provisioner, mock_docker_client):
        mock_docker_client.api.build.side_effect = PermissionError("cannot read context file")

        result = await provisioner.build()

        assert result.success is False
        assert "cannot read context file" in result.error

    @pytest.mark.asyncio
    async def test_build_connection_lost_mid_stream(self, provisioner, mock_docker_client):
        def stream():
            yield {"stream": "Step 1/2 : FROM ubuntu:22.04\n"}
            raise requests.exceptions.ConnectionError("connection aborted")

        mock_docker_client.api.build.return_value = stream()

        result = await provisioner.build()

        assert result.success is False
        assert "connection aborted" in result.error
        assert result.build_logs == ["Step 1/2 : FROM ubuntu:22.04\n"]


class TestEnsure:
    """Test ensure (inspect, then build when missing)."""

    @pytest.mark.asyncio
    async def test_ensure_existing_image_skips_build(self, provisioner, mock_docker_client):
        mock_docker_client.images.get.return_value = found_image()

        result, logs = await provisioner.ensure_with_logs()

        assert result.exists is True
        assert logs == []
        mock_docker_client.api.build.assert_not_called()

    @pytest.mark.asyncio
    async def test_ensure_builds_missing_image(self, provisioner, mock_docker_client):
        mock_docker_client.images.get.side_effect = [ImageNotFound("missing"), found_image()]
        mock_docker_client.api.build.return_value = iter([
            {"stream": "Successfully built feedface\n"},
        ])

        result = await provisioner.ensure()

        assert result.exists is True
        mock_docker_client.api.build.assert_called_once()

    @pytest.mark.asyncio
    async def test_ensure_build_failure_keeps_logs(self, provisioner, mock_docker_client):
        mock_docker_client.images.get.side_effect = ImageNotFound("missing")
        mock_docker_client.api.build.return_value = iter([
            {"stream": "Step 1/3 : FROM ubuntu:22.04\n"},
            {"error": "pull access denied"},
        ])

        result, logs = await provisioner.ensure_with_logs()

        assert result.exists is False
        assert "pull access denied" in result.error
        error = ImageBuildError("sessionbox-test", result.error, logs)
        assert "pull access denied" in error.user_message()
        assert "Step 1/3" in error.user_message()
