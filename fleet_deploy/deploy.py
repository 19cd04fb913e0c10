"""
Deploy a project to a fleet.

Builds whatever is not already available locally, then hands the images
to the Release Manager, or to the legacy builder upload for applications
of a legacy type. Release tags and a release note are applied afterwards.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field

from fleet_build.builder import build_project
from fleet_build.docker_engine import DockerEngine
from fleet_build.project import get_registry_secrets, load_project, validate_project_directory
from fleet_common.config import get_builder_url
from fleet_common.errors import ExpectedError
from fleet_common.events import ProgressSink
from fleet_common.models import BuiltImage, DockerOpts, ImageDescriptor, Release

from .cloud_client import CloudClient
from .legacy import deploy_legacy, is_legacy_application
from .release import apply_release_tags, deploy_project, parse_release_tag_keys_and_values

logger = logging.getLogger(__name__)

SKIPPED_BUILD_LOG = "Build skipped; image for service already exists."


@dataclass
class FleetDeployOptions:
    """Options of the ``deploy`` command."""

    fleet: str
    image: str | None = None
    source: str = "."
    build: bool = False
    upload_logs: bool = True
    emulated: bool = False
    draft: bool = False
    note: str | None = None
    release_tags: list[str] = field(default_factory=list)
    dockerfile: str | None = None
    project_name: str | None = None
    image_tag: str | None = None
    build_opts: DockerOpts = field(default_factory=DockerOpts)
    convert_eol: bool = True
    multi_dockerignore: bool = False
    use_gitignore: bool = True
    noparent_check: bool = False
    registry_secrets_path: str | None = None


def _descriptor_image_name(descriptor: ImageDescriptor) -> str:
    if isinstance(descriptor.image, dict):
        return descriptor.image.get("tag") or ""
    return descriptor.image


async def find_services_to_skip(
    engine: DockerEngine, descriptors: list[ImageDescriptor], force_build: bool
) -> list[str]:
    """Services whose image already exists locally, unless a build is forced."""
    if force_build:
        return []
    skipped = []
    for descriptor in descriptors:
        if await engine.image_exists(_descriptor_image_name(descriptor)):
            skipped.append(descriptor.service_name)
    return skipped


async def deploy_to_fleet(
    engine: DockerEngine,
    cloud: CloudClient,
    opts: FleetDeployOptions,
    sink: ProgressSink,
) -> Release:
    """
    Build (as needed) and deploy a project or image to a fleet.

    Raises:
        ExpectedError: For invalid options, a missing fleet or a project the
            fleet cannot run
        BuildError: If any service fails to build
    """
    if opts.image and opts.build:
        raise ExpectedError("Build option is not applicable when specifying an image")

    keys, values = parse_release_tag_keys_and_values(list(opts.release_tags))

    dockerfile_path = opts.dockerfile
    if opts.image:
        registry_secrets = get_registry_secrets(opts.registry_secrets_path)
    else:
        validation = validate_project_directory(
            opts.source,
            dockerfile_path=opts.dockerfile,
            no_parent_check=opts.noparent_check,
            registry_secrets_path=opts.registry_secrets_path,
        )
        dockerfile_path = validation.dockerfile_path or None
        registry_secrets = validation.registry_secrets

    app = await asyncio.to_thread(cloud.get_application, opts.fleet)

    try:
        project = load_project(
            opts.source,
            project_name=opts.project_name,
            image=opts.image,
            dockerfile_path=dockerfile_path,
            image_tag=opts.image_tag,
        )
        if (
            len(project.descriptors) > 1
            and not app["application_type"]["supports_multicontainer"]
        ):
            raise ExpectedError("Target fleet does not support multiple containers. Aborting!")

        skipped = await find_services_to_skip(engine, project.descriptors, opts.build)
        composition_to_build = copy.deepcopy(project.composition)
        for service_name in skipped:
            del composition_to_build["services"][service_name]

        built_by_service: dict[str, BuiltImage] = {}
        if not composition_to_build["services"]:
            logger.info("Everything is up to date (use --build to force a rebuild)")
        else:
            built = await build_project(
                engine,
                sink,
                project_path=project.path,
                project_name=project.name,
                composition=composition_to_build,
                descriptors=[d for d in project.descriptors if d.service_name not in skipped],
                arch=app["arch"],
                device_type=app["device_type"],
                emulated=opts.emulated,
                build_opts=opts.build_opts,
                image_tag=opts.image_tag,
                convert_eol=opts.convert_eol,
                multi_dockerignore=opts.multi_dockerignore,
                use_gitignore=opts.use_gitignore,
                registry_secrets=registry_secrets,
            )
            built_by_service = {image.service_name: image for image in built}

        images = [
            built_by_service.get(d.service_name)
            or BuiltImage(
                service_name=d.service_name,
                name=_descriptor_image_name(d),
                logs=SKIPPED_BUILD_LOG,
            )
            for d in project.descriptors
        ]

        if is_legacy_application(app):
            logger.warning("Target fleet requires legacy deploy method.")
            user = await asyncio.to_thread(cloud.get_user_info)
            release_id = await deploy_legacy(
                engine,
                cloud.token or "",
                user["username"],
                get_builder_url(cloud.api_url),
                app_name=opts.fleet,
                image_name=images[0].name,
                build_logs=images[0].logs,
                should_upload_logs=opts.upload_logs,
            )
            release = await asyncio.to_thread(cloud.get_release, release_id)
        else:
            release = await deploy_project(
                engine,
                cloud,
                project.composition,
                images,
                app["id"],
                skip_log_upload=not opts.upload_logs,
                project_path=project.path,
                is_draft=opts.draft,
                sink=sink,
            )
    except Exception:
        logger.error("Deploy failed")
        raise

    await apply_release_tags(cloud, release.id, keys, values)
    if opts.note:
        await asyncio.to_thread(cloud.set_release_note, release.id, opts.note)
    logger.info(f"Deploy succeeded! Release: {release.commit}")
    return release
