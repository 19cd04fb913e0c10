"""
Legacy single-image deploy.

Applications of the legacy types do not accept releases created by the
client. Instead the image is exported with ``docker save`` and uploaded,
gzip-compressed, to the builder's push endpoint, which creates the release
and replies with a stream of JSON status messages.
"""

import asyncio
import json
import logging
import os
import tempfile
import zlib
from collections.abc import Iterator
from typing import Any

import requests

from fleet_build.docker_engine import DockerEngine

logger = logging.getLogger(__name__)

LEGACY_APPLICATION_TYPES = ("legacy-v1", "legacy-v2")
UPLOAD_TIMEOUT = 3600
CHUNK_SIZE = 1024 * 1024


def is_legacy_application(app: dict[str, Any]) -> bool:
    return app["application_type"]["slug"] in LEGACY_APPLICATION_TYPES


def gzip_chunks(path: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield the gzip-compressed content of a file in chunks."""
    compressor = zlib.compressobj(6, zlib.DEFLATED, 16 + zlib.MAX_WBITS)
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            compressed = compressor.compress(chunk)
            if compressed:
                yield compressed
    yield compressor.flush()


def handle_push_replies(lines: Iterator[str]) -> dict[str, Any]:
    """
    Process the builder's JSON replies until success.

    Raises:
        RuntimeError: On an error reply, an unexpected reply, or a stream that
            ends without success
    """
    for line in lines:
        if not line:
            continue
        logger.debug(f"Received data: {line}")
        try:
            reply = json.loads(line)
        except ValueError as e:
            logger.error("Error parsing reply from remote side")
            raise RuntimeError(f"Error parsing reply from remote side: {line}") from e
        reply_type = reply.get("type")
        if reply_type == "error":
            raise RuntimeError(f"Remote error: {reply.get('error')}")
        if reply_type == "success":
            return reply
        if reply_type == "status":
            logger.info(reply.get("message", ""))
        else:
            raise RuntimeError(f"Received unexpected reply from remote: {line}")
    raise RuntimeError("Remote closed the connection before the deploy completed")


def upload_image(
    image_path: str, token: str, username: str, builder_url: str, app_name: str
) -> int:
    """Upload a saved image and return the build id the builder assigned."""
    response = requests.post(
        f"{builder_url}/v1/push",
        params={"owner": username, "app": app_name},
        data=gzip_chunks(image_path),
        headers={"Content-Encoding": "gzip", "Authorization": f"Bearer {token}"},
        stream=True,
        timeout=UPLOAD_TIMEOUT,
    )
    with response:
        reply = handle_push_replies(response.iter_lines(decode_unicode=True))
    return reply["buildId"]


def upload_logs(
    logs: str, token: str, username: str, builder_url: str, app_name: str, build_id: int
) -> None:
    response = requests.post(
        f"{builder_url}/v1/pushLogs",
        params={"owner": username, "app": app_name, "buildId": build_id},
        data=logs.encode(),
        headers={"Authorization": f"Bearer {token}"},
        timeout=UPLOAD_TIMEOUT,
    )
    if response.status_code >= 400:
        logger.warning(f"Failed to upload build logs: {response.status_code} {response.text}")


async def deploy_legacy(
    engine: DockerEngine,
    token: str,
    username: str,
    builder_url: str,
    *,
    app_name: str,
    image_name: str,
    build_logs: str,
    should_upload_logs: bool,
) -> int:
    """
    Deploy a single image through the builder.

    Args:
        engine: Engine holding the image
        token: Cloud API token
        username: Owner of the application
        builder_url: Builder base URL
        app_name: Application name, possibly prefixed by ``owner/``
        image_name: Local image to deploy
        build_logs: Build output to attach
        should_upload_logs: Upload ``build_logs`` after the image

    Returns:
        The id of the release created by the builder
    """
    fd, buffer_file = tempfile.mkstemp(prefix="fleet_legacy_", suffix=".tar")
    os.close(fd)
    logger.info("Initializing deploy...")
    try:
        await engine.save_image(image_name, buffer_file)
        logger.info("Uploading")
        build_id = await asyncio.to_thread(
            upload_image, buffer_file, token, username, builder_url, app_name
        )
    finally:
        try:
            os.unlink(buffer_file)
        except FileNotFoundError:
            pass

    if should_upload_logs:
        logger.info("Uploading logs...")
        await asyncio.to_thread(
            upload_logs, build_logs, token, username, builder_url, app_name, build_id
        )
    return build_id
