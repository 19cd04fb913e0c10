"""
Unit tests for fleet_deploy.release.

Tests release creation, image tagging and pushing with a mocked engine and
cloud client, including partial push failures.
"""

import asyncio
import tempfile
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from fleet_common.config import RetryPolicy
from fleet_common.errors import ExpectedError
from fleet_common.models import BuiltImage, Release, ServiceImage
from fleet_deploy.release import (
    deploy_project,
    parse_image_location,
    parse_release_tag_keys_and_values,
)

SERVICES = ["frontend", "api", "worker"]
COMPOSITION = {"version": "2.1", "services": {name: {"build": {"context": name}} for name in SERVICES}}
NO_RETRY = RetryPolicy(min_delay_ms=0, max_delay_ms=0, max_attempts=1)


@pytest.fixture
def project_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def cloud():
    cloud = Mock()
    cloud.get_user_id.return_value = 1
    cloud.create_release.return_value = Release(id=10, commit="abc123")
    cloud.get_or_create_service.side_effect = lambda app_id, name: SERVICES.index(name) + 100
    cloud.create_image.side_effect = lambda service_id, name: ServiceImage(
        id=service_id + 100,
        service_name=name,
        location=f"registry.example.com/v2/{name}hash",
    )
    cloud.get_previous_repos.return_value = []
    cloud.authorize_push.return_value = "push-token"
    return cloud


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.registry_auth.return_value.__enter__.return_value = engine
    engine.tag = AsyncMock()
    engine.remove_image = AsyncMock()
    engine.inspect_image = AsyncMock(return_value={"Size": 1000})
    engine.push = AsyncMock(return_value="sha256:" + "b" * 64)
    return engine


def built_images() -> list[BuiltImage]:
    return [BuiltImage(service_name=name, name=f"proj_{name}", logs="built") for name in SERVICES]


async def run_deploy(engine, cloud, project_dir):
    with patch("fleet_deploy.release.PUSH_RETRY_POLICY", NO_RETRY):
        return await deploy_project(
            engine,
            cloud,
            COMPOSITION,
            built_images(),
            app_id=5,
            skip_log_upload=False,
            project_path=project_dir,
            is_draft=False,
            sink=Mock(),
        )


class TestDeployProject:
    """Test suite for deploy_project."""

    @pytest.mark.asyncio
    async def test_successful_release(self, engine, cloud, project_dir):
        """Test that every image is tagged, pushed, saved and then untagged."""
        release = await run_deploy(engine, cloud, project_dir)

        assert release.status == "success"
        assert engine.push.await_count == 3
        tagged_names = [c.args[1] for c in engine.tag.await_args_list]
        assert tagged_names == [f"registry.example.com/v2/{name}hash:latest" for name in SERVICES]
        removed = [c.args[0] for c in engine.remove_image.await_args_list]
        assert removed == tagged_names

        image_updates = [c.args for c in cloud.update_image.call_args_list]
        assert [image_id for image_id, _ in image_updates] == [200, 201, 202]
        assert all(fields["status"] == "success" for _, fields in image_updates)
        assert image_updates[0][1]["content_hash"] == "sha256:" + "b" * 64

        release_id, fields = cloud.update_release.call_args.args
        assert release_id == 10
        assert fields["status"] == "success"
        assert "end_timestamp" in fields

    @pytest.mark.asyncio
    async def test_partial_push_failure(self, engine, cloud, project_dir):
        """Test that a failed push still attempts the rest, fails the release and untags all."""

        async def push(name, on_line=None):
            if "apihash" in name:
                raise RuntimeError("Failed to push image: denied")
            return "sha256:" + "c" * 64

        engine.push.side_effect = push

        with pytest.raises(RuntimeError, match="denied"):
            await run_deploy(engine, cloud, project_dir)

        assert engine.push.await_count == 3
        statuses = {c.args[0]: c.args[1]["status"] for c in cloud.update_image.call_args_list}
        assert statuses == {200: "success", 201: "failed", 202: "success"}
        failed_fields = cloud.update_image.call_args_list[1].args[1]
        assert "denied" in failed_fields["error_message"]
        assert engine.remove_image.await_count == 3
        assert cloud.update_release.call_args.args[1]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_interrupt_marks_release_cancelled(self, engine, cloud, project_dir):
        """Test that an interrupted push saves the release as cancelled and removes the tags."""
        engine.push.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await run_deploy(engine, cloud, project_dir)

        cloud.update_release.assert_called_once()
        fields = cloud.update_release.call_args.args[1]
        assert fields["status"] == "cancelled"
        assert fields["end_timestamp"] is not None
        assert engine.remove_image.await_count == 3

    @pytest.mark.asyncio
    async def test_tag_failure_removes_earlier_tags(self, engine, cloud, project_dir):
        engine.tag.side_effect = [None, RuntimeError("Failed to tag image"), None]

        with pytest.raises(RuntimeError, match="Failed to tag"):
            await run_deploy(engine, cloud, project_dir)

        engine.push.assert_not_awaited()
        engine.remove_image.assert_awaited_once_with("registry.example.com/v2/frontendhash:latest")
        assert cloud.update_release.call_args.args[1]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_repeated_deploys_leave_no_tags(self, engine, cloud, project_dir):
        """Test that identical deploys create identical tags and remove every one of them."""
        live_tags = []

        async def tag(source, target):
            live_tags.append(target)

        async def remove_image(name):
            live_tags.remove(name)

        engine.tag.side_effect = tag
        engine.remove_image.side_effect = remove_image

        await run_deploy(engine, cloud, project_dir)
        first_tags = [c.args[1] for c in engine.tag.await_args_list]
        assert live_tags == []

        engine.tag.reset_mock()
        engine.push.side_effect = [None, RuntimeError("Failed to push image: timeout"), None] * 3
        with pytest.raises(RuntimeError):
            await run_deploy(engine, cloud, project_dir)
        second_tags = [c.args[1] for c in engine.tag.await_args_list]

        assert second_tags == first_tags
        assert len(set(first_tags)) == len(SERVICES)
        assert live_tags == []

    @pytest.mark.asyncio
    async def test_release_saved_once(self, engine, cloud, project_dir):
        """Test that a failed final save propagates after a single attempt."""
        cloud.update_release.side_effect = RuntimeError("save failed")

        with pytest.raises(RuntimeError, match="save failed"):
            await run_deploy(engine, cloud, project_dir)

        cloud.update_release.assert_called_once()
        assert engine.remove_image.await_count == 3

    @pytest.mark.asyncio
    async def test_skip_log_upload(self, engine, cloud, project_dir):
        with patch("fleet_deploy.release.PUSH_RETRY_POLICY", NO_RETRY):
            await deploy_project(
                engine,
                cloud,
                COMPOSITION,
                built_images(),
                app_id=5,
                skip_log_upload=True,
                project_path=project_dir,
                is_draft=True,
                sink=Mock(),
            )
        assert all("build_log" not in c.args[1] for c in cloud.update_image.call_args_list)
        assert cloud.create_release.call_args.kwargs["is_final"] is False


class TestReleaseTags:
    """Test suite for release tag parsing."""

    def test_pairs(self):
        assert parse_release_tag_keys_and_values(["env", "prod", "team", "core"]) == (
            ["env", "team"],
            ["prod", "core"],
        )

    def test_trailing_key_gets_empty_value(self):
        assert parse_release_tag_keys_and_values(["env", "prod", "pinned"]) == (
            ["env", "pinned"],
            ["prod", ""],
        )

    def test_empty_key(self):
        with pytest.raises(ExpectedError, match="cannot be empty"):
            parse_release_tag_keys_and_values(["", "x"])

    def test_whitespace_in_key(self):
        with pytest.raises(ExpectedError, match="whitespaces"):
            parse_release_tag_keys_and_values(["my key", "x"])


class TestParseImageLocation:
    """Test suite for parse_image_location."""

    def test_default_tag(self):
        assert parse_image_location("registry.example.com/v2/abc") == (
            "registry.example.com",
            "v2/abc",
            "latest",
        )

    def test_explicit_tag(self):
        assert parse_image_location("registry.example.com/v2/abc:build1") == (
            "registry.example.com",
            "v2/abc",
            "build1",
        )
