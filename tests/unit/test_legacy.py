"""
Unit tests for fleet_deploy.legacy.

Tests the builder's reply handling and the save, upload and log upload
sequence with mocked requests and engine.
"""

import gzip
import os
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from fleet_deploy.legacy import (
    deploy_legacy,
    gzip_chunks,
    handle_push_replies,
    is_legacy_application,
)


def upload_response(lines):
    response = MagicMock()
    response.__enter__.return_value = response
    response.iter_lines.return_value = iter(lines)
    return response


class TestHandlePushReplies:
    """Test suite for handle_push_replies."""

    def test_status_then_success(self):
        reply = handle_push_replies(
            iter(['{"type": "status", "message": "Pushing"}', "", '{"type": "success", "buildId": 7}'])
        )
        assert reply["buildId"] == 7

    def test_error_reply(self):
        with pytest.raises(RuntimeError, match="Remote error: quota exceeded"):
            handle_push_replies(iter(['{"type": "error", "error": "quota exceeded"}']))

    def test_unexpected_reply(self):
        with pytest.raises(RuntimeError, match="unexpected reply"):
            handle_push_replies(iter(['{"type": "progress"}']))

    def test_unparseable_reply(self):
        with pytest.raises(RuntimeError, match="Error parsing reply"):
            handle_push_replies(iter(["<html>Bad Gateway</html>"]))

    def test_stream_ends_without_success(self):
        with pytest.raises(RuntimeError, match="closed the connection"):
            handle_push_replies(iter(['{"type": "status", "message": "Pushing"}']))


class TestDeployLegacy:
    """Test suite for deploy_legacy."""

    @pytest.fixture
    def engine(self):
        saved = {}

        async def save_image(name, path):
            with open(path, "wb") as f:
                f.write(b"image layers" * 100)
            saved["path"] = path

        engine = Mock()
        engine.save_image = AsyncMock(side_effect=save_image)
        engine.saved = saved
        return engine

    async def deploy(self, engine, should_upload_logs=True):
        return await deploy_legacy(
            engine,
            "tok",
            "me",
            "https://builder.example.com",
            app_name="myfleet",
            image_name="myproj_main",
            build_logs="Step 1/1 : FROM alpine",
            should_upload_logs=should_upload_logs,
        )

    @pytest.mark.asyncio
    async def test_upload_and_logs(self, engine):
        """Test that the saved image is uploaded, the logs follow and the temp file is removed."""
        replies = upload_response(
            ['{"type": "status", "message": "Building"}', '{"type": "success", "buildId": 42}']
        )
        logs_response = Mock(status_code=200)

        with patch(
            "fleet_deploy.legacy.requests.post", side_effect=[replies, logs_response]
        ) as mock_post:
            build_id = await self.deploy(engine)

        assert build_id == 42
        engine.save_image.assert_awaited_once()
        assert engine.save_image.await_args.args[0] == "myproj_main"
        assert not os.path.exists(engine.saved["path"])

        upload_call, logs_call = mock_post.call_args_list
        assert upload_call.args == ("https://builder.example.com/v1/push",)
        assert upload_call.kwargs["params"] == {"owner": "me", "app": "myfleet"}
        assert upload_call.kwargs["headers"]["Content-Encoding"] == "gzip"
        assert upload_call.kwargs["headers"]["Authorization"] == "Bearer tok"
        assert logs_call.args == ("https://builder.example.com/v1/pushLogs",)
        assert logs_call.kwargs["params"]["buildId"] == 42
        assert logs_call.kwargs["data"] == b"Step 1/1 : FROM alpine"

    @pytest.mark.asyncio
    async def test_logs_not_uploaded(self, engine):
        replies = upload_response(['{"type": "success", "buildId": 42}'])
        with patch("fleet_deploy.legacy.requests.post", return_value=replies) as mock_post:
            await self.deploy(engine, should_upload_logs=False)
        assert mock_post.call_count == 1

    @pytest.mark.asyncio
    async def test_remote_error_removes_temp_file(self, engine):
        replies = upload_response(['{"type": "error", "error": "invalid image"}'])
        with patch("fleet_deploy.legacy.requests.post", return_value=replies) as mock_post:
            with pytest.raises(RuntimeError, match="invalid image"):
                await self.deploy(engine)
        assert mock_post.call_count == 1
        assert not os.path.exists(engine.saved["path"])


class TestHelpers:
    """Test suite for legacy helpers."""

    def test_is_legacy_application(self):
        assert is_legacy_application({"application_type": {"slug": "legacy-v1"}})
        assert not is_legacy_application({"application_type": {"slug": "microservices"}})

    def test_gzip_chunks(self, tmp_path):
        path = tmp_path / "image.tar"
        path.write_bytes(b"layer" * 1000)
        assert gzip.decompress(b"".join(gzip_chunks(str(path), chunk_size=256))) == b"layer" * 1000
