"""
Unit tests for fleet_deploy.deploy.

Tests the deploy command flow: which services are built or skipped, the
multicontainer check and the choice between the release and legacy paths.
The build, release and legacy steps themselves are mocked.
"""

import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest

from fleet_common.errors import ExpectedError
from fleet_common.models import BuiltImage, Release
from fleet_deploy.deploy import SKIPPED_BUILD_LOG, FleetDeployOptions, deploy_to_fleet

COMPOSE = """
version: "2.1"
services:
  frontend:
    build: ./frontend
  api:
    build: ./api
"""


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("FLEET_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("FLEET_BUILDER_URL", raising=False)
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "docker-compose.yml").write_text(COMPOSE)
        for service in ("frontend", "api"):
            (root / service).mkdir()
            (root / service / "Dockerfile").write_text("FROM alpine\n")
        yield tmpdir


def make_app(slug="balena-app", multicontainer=True):
    return {
        "id": 5,
        "slug": "myorg/myfleet",
        "app_name": "myfleet",
        "device_type": "raspberrypi4-64",
        "arch": "aarch64",
        "application_type": {"slug": slug, "supports_multicontainer": multicontainer},
    }


@pytest.fixture
def cloud():
    cloud = Mock()
    cloud.token = "tok"
    cloud.api_url = "https://api.example.com"
    cloud.get_application.return_value = make_app()
    return cloud


@pytest.fixture
def engine():
    engine = Mock()
    engine.image_exists = AsyncMock(return_value=False)
    return engine


def built(*services):
    return [BuiltImage(service_name=s, name=f"myproj_{s}", logs=f"{s} built") for s in services]


def make_opts(project_dir, **kwargs):
    return FleetDeployOptions(
        fleet="myorg/myfleet",
        source=project_dir,
        project_name="myproj",
        noparent_check=True,
        **kwargs,
    )


class TestDeployToFleet:
    """Test suite for deploy_to_fleet."""

    @pytest.mark.asyncio
    async def test_builds_and_creates_release(self, engine, cloud, project_dir):
        """Test that every service is built and handed to the Release Manager in order."""
        release = Release(id=10, commit="abc123")
        with patch(
            "fleet_deploy.deploy.build_project",
            AsyncMock(return_value=built("frontend", "api")),
        ) as mock_build, patch(
            "fleet_deploy.deploy.deploy_project", AsyncMock(return_value=release)
        ) as mock_release:
            result = await deploy_to_fleet(
                engine,
                cloud,
                make_opts(project_dir, release_tags=["env", "prod"], note="first"),
                Mock(),
            )

        assert result is release
        build_kwargs = mock_build.await_args.kwargs
        assert list(build_kwargs["composition"]["services"]) == ["frontend", "api"]
        assert build_kwargs["arch"] == "aarch64"
        assert build_kwargs["device_type"] == "raspberrypi4-64"

        images = mock_release.await_args.args[3]
        assert [i.name for i in images] == ["myproj_frontend", "myproj_api"]
        assert mock_release.await_args.args[4] == 5
        cloud.set_release_tag.assert_called_once_with(10, "env", "prod")
        cloud.set_release_note.assert_called_once_with(10, "first")

    @pytest.mark.asyncio
    async def test_existing_images_skipped(self, engine, cloud, project_dir):
        """Test that a service whose image already exists is not rebuilt but still released."""
        engine.image_exists.side_effect = lambda name: name == "myproj_api"
        with patch(
            "fleet_deploy.deploy.build_project", AsyncMock(return_value=built("frontend"))
        ) as mock_build, patch(
            "fleet_deploy.deploy.deploy_project",
            AsyncMock(return_value=Release(id=10, commit="abc123")),
        ) as mock_release:
            await deploy_to_fleet(engine, cloud, make_opts(project_dir), Mock())

        build_kwargs = mock_build.await_args.kwargs
        assert list(build_kwargs["composition"]["services"]) == ["frontend"]
        assert [d.service_name for d in build_kwargs["descriptors"]] == ["frontend"]

        composition, images = mock_release.await_args.args[2:4]
        assert list(composition["services"]) == ["frontend", "api"]
        assert images[0].logs == "frontend built"
        assert (images[1].name, images[1].logs) == ("myproj_api", SKIPPED_BUILD_LOG)

    @pytest.mark.asyncio
    async def test_nothing_to_build(self, engine, cloud, project_dir):
        engine.image_exists.return_value = True
        with patch("fleet_deploy.deploy.build_project", AsyncMock()) as mock_build, patch(
            "fleet_deploy.deploy.deploy_project",
            AsyncMock(return_value=Release(id=10, commit="abc123")),
        ) as mock_release:
            await deploy_to_fleet(engine, cloud, make_opts(project_dir), Mock())

        mock_build.assert_not_awaited()
        images = mock_release.await_args.args[3]
        assert all(i.logs == SKIPPED_BUILD_LOG for i in images)

    @pytest.mark.asyncio
    async def test_forced_build_ignores_existing_images(self, engine, cloud, project_dir):
        engine.image_exists.return_value = True
        with patch(
            "fleet_deploy.deploy.build_project",
            AsyncMock(return_value=built("frontend", "api")),
        ) as mock_build, patch(
            "fleet_deploy.deploy.deploy_project",
            AsyncMock(return_value=Release(id=10, commit="abc123")),
        ):
            await deploy_to_fleet(engine, cloud, make_opts(project_dir, build=True), Mock())

        engine.image_exists.assert_not_awaited()
        assert list(mock_build.await_args.kwargs["composition"]["services"]) == ["frontend", "api"]

    @pytest.mark.asyncio
    async def test_multicontainer_not_supported(self, engine, cloud, project_dir):
        cloud.get_application.return_value = make_app(multicontainer=False)
        with patch("fleet_deploy.deploy.build_project", AsyncMock()) as mock_build:
            with pytest.raises(ExpectedError, match="does not support multiple containers"):
                await deploy_to_fleet(engine, cloud, make_opts(project_dir), Mock())
        mock_build.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_image_with_build_rejected(self, engine, cloud, project_dir):
        opts = make_opts(project_dir, image="nginx:latest", build=True)
        with pytest.raises(ExpectedError, match="not applicable"):
            await deploy_to_fleet(engine, cloud, opts, Mock())
        cloud.get_application.assert_not_called()

    @pytest.mark.asyncio
    async def test_legacy_application_uses_builder_upload(self, engine, cloud, project_dir):
        """Test that legacy fleets go through the builder upload, never the Release Manager."""
        cloud.get_application.return_value = make_app(slug="legacy-v2", multicontainer=False)
        cloud.get_user_info.return_value = {"id": 1, "username": "me"}
        cloud.get_release.return_value = Release(id=42, commit="legacy1")
        opts = make_opts(project_dir, image="nginx:latest", upload_logs=False)

        with patch("fleet_deploy.deploy.deploy_legacy", AsyncMock(return_value=42)) as mock_legacy, patch(
            "fleet_deploy.deploy.deploy_project", AsyncMock()
        ) as mock_release:
            engine.image_exists.return_value = True
            result = await deploy_to_fleet(engine, cloud, opts, Mock())

        assert result.id == 42
        mock_release.assert_not_awaited()
        args, kwargs = mock_legacy.await_args
        assert args[1:] == ("tok", "me", "https://builder.example.com")
        assert kwargs["app_name"] == "myorg/myfleet"
        assert kwargs["image_name"] == "nginx:latest"
        assert kwargs["should_upload_logs"] is False
        cloud.get_release.assert_called_once_with(42)
