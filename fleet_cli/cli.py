"""
Fleet CLI.

Commands:
    fleet build [SOURCE]          Build a project locally
    fleet deploy FLEET [IMAGE]    Build (as needed) and deploy a release to a fleet
    fleet push DEVICE             Build on a local-mode device and run it there
"""

import asyncio
import logging
import sys

import click

from fleet_build.builder import build_project
from fleet_build.docker_engine import DockerEngine
from fleet_build.project import load_project, validate_project_directory
from fleet_common.errors import ExpectedError
from fleet_common.events import ConsoleSink, RunContext
from fleet_common.models import DockerOpts
from fleet_deploy.cloud_client import CloudClient
from fleet_deploy.deploy import FleetDeployOptions, deploy_to_fleet
from fleet_device.deploy import DeviceDeployOptions, deploy_to_device

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def run_async(coro):
    """
    Run a command coroutine and map failures to exit codes.

    Expected errors are printed without a traceback and exit with 1; an
    interrupt exits with 130.
    """
    try:
        return asyncio.run(coro)
    except ExpectedError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\n\nCancelled by user.", err=True)
        sys.exit(130)  # Standard exit code for SIGINT
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def parse_build_args(values: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated ``--buildArg NAME=value`` options."""
    build_args = {}
    for value in values:
        name, sep, arg = value.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"Could not parse build argument: '{value}'")
        build_args[name] = arg
    return build_args


def engine_options(func):
    """Options selecting the container engine to build with."""
    options = [
        click.option("--docker-host", "-h", "docker_host", help="Engine host or URL"),
        click.option("--docker-port", "-p", "docker_port", type=int, help="Engine TCP port"),
        click.option("--ca", help="Engine TLS CA certificate"),
        click.option("--cert", help="Engine TLS client certificate"),
        click.option("--key", help="Engine TLS client key"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_options(func):
    """Options shared by ``build`` and ``deploy``."""
    options = [
        click.option("--emulated", "-e", is_flag=True, help="Use QEMU for ARM emulation"),
        click.option("--dockerfile", help="Alternative Dockerfile name/path"),
        click.option("--projectName", "-n", "project_name", help="Name prefix for images"),
        click.option("--tag", "-t", "image_tag", help="Tag for generated image names"),
        click.option(
            "--buildArg", "-B", "build_args", multiple=True, help="Build argument NAME=value"
        ),
        click.option("--nocache", is_flag=True, help="Do not use the build cache"),
        click.option("--pull", is_flag=True, help="Always pull base images"),
        click.option("--squash", is_flag=True, help="Squash newly built layers"),
        click.option(
            "--noconvert-eol", "noconvert_eol", is_flag=True, help="Keep CRLF line endings"
        ),
        click.option(
            "--multi-dockerignore",
            "-m",
            "multi_dockerignore",
            is_flag=True,
            help="Use each service's own .dockerignore",
        ),
        click.option("--nogitignore", is_flag=True, help="Do not apply .gitignore files"),
        click.option(
            "--noparent-check",
            "noparent_check",
            is_flag=True,
            help="Skip the parent-directory composition check",
        ),
        click.option("--registry-secrets", "-R", "registry_secrets", help="Registry secrets file"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def make_engine(docker_host, docker_port, ca, cert, key) -> DockerEngine:
    return DockerEngine(host=docker_host, port=docker_port, ca=ca, cert=cert, key=key)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    help="Logging level",
)
@click.option("--debug", is_flag=True, help="Shorthand for --log-level DEBUG")
@click.option("--api-url", envvar="FLEET_API_URL", help="Cloud API URL")
@click.option("--token", help="Cloud API token (or FLEET_API_TOKEN, or ~/.fleet/config)")
@click.pass_context
def cli(ctx, log_level: str, debug: bool, api_url: str | None, token: str | None):
    """Fleet - build, deploy and live-develop multi-container projects."""
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, log_level.upper()),
        format=LOG_FORMAT,
    )
    run_context = RunContext()
    ctx.obj = {
        "sink": ConsoleSink(run_context, debug=debug),
        "run_context": run_context,
        "api_url": api_url,
        "token": token,
    }


def make_cloud(ctx) -> CloudClient:
    return CloudClient(
        api_url=ctx.obj["api_url"], token=ctx.obj["token"], context=ctx.obj["run_context"]
    )


@cli.command()
@click.argument("source", default=".", type=click.Path(exists=True, file_okay=False))
@click.option("--fleet", "-f", help="Fleet whose architecture and device type to build for")
@click.option("--arch", "-A", help="Architecture to build for")
@click.option("--deviceType", "-d", "device_type", help="Device type to build for")
@build_options
@engine_options
@click.pass_context
def build(ctx, source, fleet, arch, device_type, emulated, dockerfile, project_name, image_tag,
          build_args, nocache, pull, squash, noconvert_eol, multi_dockerignore, nogitignore,
          noparent_check, registry_secrets, docker_host, docker_port, ca, cert, key):
    """Build a project locally."""
    sink: ConsoleSink = ctx.obj["sink"]
    if not fleet and not device_type:
        raise click.UsageError(
            "You must specify either a fleet (--fleet) or a device type (--deviceType)"
        )
    opts = DockerOpts(
        build_args=parse_build_args(build_args), nocache=nocache, pull=pull, squash=squash
    )

    async def run():
        nonlocal arch, device_type
        if fleet:
            cloud = make_cloud(ctx)
            app = await asyncio.to_thread(cloud.get_application, fleet)
            arch, device_type = app["arch"], app["device_type"]
        elif not arch:
            cloud = make_cloud(ctx)
            arch = await asyncio.to_thread(cloud.get_device_type_arch, device_type)

        validation = validate_project_directory(
            source,
            dockerfile_path=dockerfile,
            no_parent_check=noparent_check,
            registry_secrets_path=registry_secrets,
        )
        project = load_project(
            source,
            project_name=project_name,
            dockerfile_path=validation.dockerfile_path or None,
            image_tag=image_tag,
        )
        engine = make_engine(docker_host, docker_port, ca, cert, key)
        images = await build_project(
            engine,
            sink,
            project_path=project.path,
            project_name=project.name,
            composition=project.composition,
            descriptors=project.descriptors,
            arch=arch,
            device_type=device_type,
            emulated=emulated,
            build_opts=opts,
            image_tag=image_tag,
            convert_eol=not noconvert_eol,
            multi_dockerignore=multi_dockerignore,
            use_gitignore=not nogitignore,
            registry_secrets=validation.registry_secrets,
        )
        for image in images:
            sink.log_info(f"Built {image.service_name}: {image.name}")
        sink.log_success("Build succeeded!")

    run_async(run())


@cli.command()
@click.argument("fleet")
@click.argument("image", required=False)
@click.option("--source", "-s", default=".", type=click.Path(exists=True, file_okay=False),
              help="Project source directory")
@click.option("--build", "-b", "force_build", is_flag=True, help="Force a rebuild")
@click.option("--nologupload", is_flag=True, help="Do not upload build logs")
@click.option("--draft", is_flag=True, help="Create a draft release")
@click.option("--note", help="Release note")
@click.option("--release-tag", "release_tags", multiple=True,
              help="Release tag key or value; repeat as KEY VALUE pairs")
@build_options
@engine_options
@click.pass_context
def deploy(ctx, fleet, image, source, force_build, nologupload, draft, note, release_tags,
           emulated, dockerfile, project_name, image_tag, build_args, nocache, pull, squash,
           noconvert_eol, multi_dockerignore, nogitignore, noparent_check, registry_secrets,
           docker_host, docker_port, ca, cert, key):
    """Deploy a project or an image to a fleet as a new release."""
    sink: ConsoleSink = ctx.obj["sink"]
    opts = FleetDeployOptions(
        fleet=fleet,
        image=image,
        source=source,
        build=force_build,
        upload_logs=not nologupload,
        emulated=emulated,
        draft=draft,
        note=note,
        release_tags=list(release_tags),
        dockerfile=dockerfile,
        project_name=project_name,
        image_tag=image_tag,
        build_opts=DockerOpts(
            build_args=parse_build_args(build_args), nocache=nocache, pull=pull, squash=squash
        ),
        convert_eol=not noconvert_eol,
        multi_dockerignore=multi_dockerignore,
        use_gitignore=not nogitignore,
        noparent_check=noparent_check,
        registry_secrets_path=registry_secrets,
    )

    async def run():
        engine = make_engine(docker_host, docker_port, ca, cert, key)
        release = await deploy_to_fleet(engine, make_cloud(ctx), opts, sink)
        sink.log_success(f"Release: {release.commit}")

    run_async(run())


@cli.command()
@click.argument("device")
@click.option("--source", "-s", default=".", type=click.Path(exists=True, file_okay=False),
              help="Project source directory")
@click.option("--device-port", type=int, help="Device engine port (default 2375)")
@click.option("--dockerfile", help="Alternative Dockerfile name/path")
@click.option("--nocache", "-c", is_flag=True, help="Do not use the build cache")
@click.option("--pull", is_flag=True, help="Always pull base images")
@click.option("--nolive", is_flag=True, help="Do not start a livepush session")
@click.option("--detached", "-d", is_flag=True, help="Do not stream device logs")
@click.option("--service", "services", multiple=True, help="Only show logs of these services")
@click.option("--system", is_flag=True, help="Only show system logs")
@click.option("--env", "-e", "env", multiple=True, help="Variable [service:]NAME=value")
@click.option("--noconvert-eol", "noconvert_eol", is_flag=True, help="Keep CRLF line endings")
@click.option("--multi-dockerignore", "-m", "multi_dockerignore", is_flag=True,
              help="Use each service's own .dockerignore")
@click.option("--nogitignore", is_flag=True, help="Do not apply .gitignore files")
@click.option("--noparent-check", "noparent_check", is_flag=True,
              help="Skip the parent-directory composition check")
@click.option("--registry-secrets", "-R", "registry_secrets", help="Registry secrets file")
@click.pass_context
def push(ctx, device, source, device_port, dockerfile, nocache, pull, nolive, detached,
         services, system, env, noconvert_eol, multi_dockerignore, nogitignore, noparent_check,
         registry_secrets):
    """Build a project on a local-mode device and run it there."""
    sink: ConsoleSink = ctx.obj["sink"]

    async def run():
        validation = validate_project_directory(
            source,
            dockerfile_path=dockerfile,
            no_parent_check=noparent_check,
            registry_secrets_path=registry_secrets,
        )
        opts = DeviceDeployOptions(
            source=source,
            device_host=device,
            device_port=device_port,
            dockerfile_path=validation.dockerfile_path or None,
            registry_secrets=validation.registry_secrets,
            multi_dockerignore=multi_dockerignore,
            nocache=nocache,
            noparent_check=noparent_check,
            nolive=nolive,
            pull=pull,
            detached=detached,
            services=list(services) or None,
            system=system,
            env=list(env),
            convert_eol=not noconvert_eol,
            use_gitignore=not nogitignore,
        )
        await deploy_to_device(opts, sink)

    run_async(run())


if __name__ == "__main__":
    cli()
