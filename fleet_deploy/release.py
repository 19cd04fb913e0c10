"""
Release Manager.

Creates a release on the cloud API, tags the built images to the registry
locations assigned to each service image, pushes them and records the
outcome. A release ends as ``success``, ``failed`` or, when interrupted,
``cancelled``. Tagged images are always removed and the release's end
timestamp is always saved, even when the push is interrupted.
"""

import asyncio
import json
import logging
import os
import re
import secrets
from datetime import UTC, datetime
from typing import Any

from fleet_build.docker_engine import DockerEngine
from fleet_build.project import get_contract_content
from fleet_common.config import RetryPolicy
from fleet_common.errors import ExpectedError
from fleet_common.events import ProgressSink, ServiceEvent
from fleet_common.models import BuiltImage, Release, ServiceImage, TaggedImage
from fleet_common.retry import retry_async

from .cloud_client import CloudClient

logger = logging.getLogger(__name__)

PUSH_RETRY_POLICY = RetryPolicy(min_delay_ms=2000, max_delay_ms=60000, max_attempts=3)
PUSH_BACKOFF_SCALER = 1.4

_IMAGE_LOCATION_RE = re.compile(r"(.*?)/(.*?)(?::([^/]*))?$")


def parse_release_tag_keys_and_values(release_tags: list[str]) -> tuple[list[str], list[str]]:
    """
    Split the raw ``--release-tag`` values into keys and values.

    Values alternate with keys; a trailing key without a value gets "".

    Returns:
        Tuple of (keys, values) of equal length

    Raises:
        ExpectedError: If a key is empty or contains whitespace
    """
    keys = release_tags[0::2]
    values = release_tags[1::2]
    for key in keys:
        if key == "":
            raise ExpectedError("Error: --release-tag keys cannot be empty")
        if re.search(r"\s", key):
            raise ExpectedError("Error: --release-tag keys cannot contain whitespaces")
    if len(values) != len(keys):
        values.append("")
    return keys, values


async def apply_release_tags(
    cloud: CloudClient, release_id: int, keys: list[str], values: list[str]
) -> None:
    for key, value in zip(keys, values):
        await asyncio.to_thread(cloud.set_release_tag, release_id, key, value)


async def create_release(
    cloud: CloudClient,
    app_id: int,
    composition: dict[str, Any],
    *,
    is_draft: bool = False,
    semver: str | None = None,
    contract: str | None = None,
) -> tuple[Release, dict[str, ServiceImage]]:
    """
    Create a release and one image record per service.

    Returns:
        Tuple of (release, service name -> ServiceImage)
    """
    user_id = await asyncio.to_thread(cloud.get_user_id)
    release = await asyncio.to_thread(
        cloud.create_release,
        app_id,
        user_id,
        composition,
        secrets.token_hex(16),
        semver=semver,
        is_final=not is_draft,
        contract=contract,
    )
    service_images = {}
    for service_name in composition["services"]:
        service_id = await asyncio.to_thread(cloud.get_or_create_service, app_id, service_name)
        image = await asyncio.to_thread(cloud.create_image, service_id, service_name)
        await asyncio.to_thread(cloud.link_image_to_release, image.id, release.id)
        service_images[service_name] = image
    return release, service_images


def parse_image_location(location: str) -> tuple[str, str, str]:
    """
    Split ``registry/repo[:tag]``.

    Raises:
        RuntimeError: If the location cannot be parsed
    """
    match = _IMAGE_LOCATION_RE.match(location)
    if match is None:
        raise RuntimeError(f"Could not parse imageName: '{location}'")
    registry, repo, tag = match.groups()
    return registry, repo, tag or "latest"


async def tag_service_images(
    engine: DockerEngine,
    images: list[BuiltImage],
    service_images: dict[str, ServiceImage],
) -> list[TaggedImage]:
    """
    Tag every built image to its service image location.

    If tagging fails part way, the tags already created are removed.
    """
    tagged: list[TaggedImage] = []
    try:
        for image in images:
            service_image = service_images[image.service_name]
            registry, repo, tag = parse_image_location(service_image.location)
            tagged_image = TaggedImage(
                service_name=image.service_name,
                service_image=service_image,
                local_image=image,
                registry=registry,
                repo=repo,
                tag=tag,
            )
            await engine.tag(image.name, tagged_image.name)
            tagged.append(tagged_image)
    except Exception:
        await untag_images(engine, tagged)
        raise
    return tagged


async def untag_images(engine: DockerEngine, tagged: list[TaggedImage]) -> None:
    """Remove every registry tag, attempting all of them even if some fail."""
    for tagged_image in tagged:
        try:
            await engine.remove_image(tagged_image.name)
        except RuntimeError as e:
            logger.warning(f"Failed to untag {tagged_image.name}: {e}")


async def get_push_token(cloud: CloudClient, app_id: int, tagged: list[TaggedImage]) -> str:
    previous_repos = await asyncio.to_thread(cloud.get_previous_repos, app_id)
    return await asyncio.to_thread(
        cloud.authorize_push,
        tagged[0].registry,
        [t.repo for t in tagged],
        previous_repos,
    )


async def push_and_update_image(
    engine: DockerEngine,
    cloud: CloudClient,
    tagged_image: TaggedImage,
    sink: ProgressSink,
    skip_log_upload: bool,
) -> None:
    """
    Push one image and record the result on its service image.

    The service image is saved whether or not the push succeeds.
    """
    service_image = tagged_image.service_image
    local_image = tagged_image.local_image

    def on_line(line: str) -> None:
        sink.on_service_event(tagged_image.service_name, ServiceEvent("pull_output", line))

    try:
        info = await engine.inspect_image(tagged_image.name)
        digest = await retry_async(
            lambda: engine.push(tagged_image.name, on_line=on_line),
            PUSH_RETRY_POLICY,
            label=tagged_image.name,
            scaler=PUSH_BACKOFF_SCALER,
        )
        service_image.image_size = info.get("Size") if info else local_image.size
        service_image.content_hash = digest
        service_image.build_log = local_image.logs
        service_image.dockerfile = local_image.dockerfile
        service_image.project_type = local_image.project_type
        if local_image.start_time:
            service_image.start_timestamp = local_image.start_time
        if local_image.end_time:
            service_image.end_timestamp = local_image.end_time
        service_image.push_timestamp = datetime.now(UTC)
        service_image.status = "success"
    except Exception as e:
        service_image.error_message = str(e)
        service_image.status = "failed"
        raise
    finally:
        logger.debug(f"Saving image {service_image.location}")
        if skip_log_upload:
            service_image.build_log = None
        await asyncio.to_thread(cloud.update_image, service_image.id, service_image.to_dict())


async def push_service_images(
    engine: DockerEngine,
    cloud: CloudClient,
    tagged: list[TaggedImage],
    token: str,
    sink: ProgressSink,
    skip_log_upload: bool,
) -> None:
    """
    Push images one at a time.

    Every image is attempted; the first failure is raised after all of them.
    """
    logger.info("Pushing images to registry...")
    first_error: Exception | None = None
    with engine.registry_auth(token_registry=tagged[0].registry, token=token) as push_engine:
        for tagged_image in tagged:
            try:
                await push_and_update_image(
                    push_engine, cloud, tagged_image, sink, skip_log_upload
                )
            except Exception as e:
                logger.error(f"Failed to push {tagged_image.name}: {e}")
                first_error = first_error or e
    if first_error is not None:
        raise first_error


async def deploy_project(
    engine: DockerEngine,
    cloud: CloudClient,
    composition: dict[str, Any],
    images: list[BuiltImage],
    app_id: int,
    *,
    skip_log_upload: bool,
    project_path: str,
    is_draft: bool,
    sink: ProgressSink,
) -> Release:
    """
    Create a release from built images and push them.

    Args:
        engine: Engine holding the built images
        cloud: Cloud API client
        composition: Normalized composition of the project
        images: One built image per service
        app_id: Target application id
        skip_log_upload: Do not attach build logs to the service images
        project_path: Project directory, searched for a balena.yml contract
        is_draft: Create the release as a draft (not final)
        sink: Receives push output per service

    Returns:
        The release, with status ``success``

    Raises:
        ExpectedError: For an invalid contract
        Exception: Whatever made the push fail; the release is marked failed first
    """
    contract = get_contract_content(os.path.join(project_path, "balena.yml"))

    logger.info("Creating release...")
    release, service_images = await create_release(
        cloud,
        app_id,
        composition,
        is_draft=is_draft,
        semver=str(contract["version"]) if contract and contract.get("version") else None,
        contract=json.dumps(contract) if contract else None,
    )
    try:
        logger.debug("Tagging images...")
        tagged = await tag_service_images(engine, images, service_images)
        try:
            token = await get_push_token(cloud, app_id, tagged)
            await push_service_images(engine, cloud, tagged, token, sink, skip_log_upload)
            release.status = "success"
        finally:
            logger.debug("Untagging images...")
            await untag_images(engine, tagged)
    except asyncio.CancelledError:
        logger.warning(f"Deploy interrupted; marking release {release.id} as cancelled")
        release.status = "cancelled"
        raise
    except Exception:
        release.status = "failed"
        raise
    finally:
        logger.info("Saving release...")
        release.end_timestamp = datetime.now(UTC)
        await asyncio.to_thread(cloud.update_release, release.id, release.to_dict())
    return release
