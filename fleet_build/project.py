"""
Project resolution.

Turns a project directory (or an explicit image name) into a
ComposeProject: a normalized composition plus one image descriptor per
service. Also hosts the project-level checks and files that live next to
the composition: alternative Dockerfile validation, registry secrets,
build metadata (.balena/balena.yml) and the release contract (balena.yml).
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from fleet_common.config import get_data_dir
from fleet_common.errors import ComposeParseError, ExpectedError
from fleet_common.models import ComposeProject, ImageDescriptor

logger = logging.getLogger(__name__)

COMPOSITION_FILE_NAMES = ["docker-compose.yml", "docker-compose.yaml"]
DEV_OVERLAY_FILE_NAME = "docker-compose.dev.yml"
DEFAULT_SERVICE_NAME = "main"
ALLOWED_CONTRACT_TYPES = ["sw.application", "sw.block"]
DOCKER_HUB_CANONICAL = "https://index.docker.io/v1/"
DOCKER_HUB_ALIASES = ["docker.io", "index.docker.io", "registry-1.docker.io"]

_SERVICE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


def make_image_name(project_name: str, service_name: str, tag: str | None = None) -> str:
    """
    Generate the local image name for a service.

    Returns:
        ``{project}_{service}`` or ``{project}_{service}:{tag}``, lowercased,
        with any ``:`` inside either part replaced by ``_``
    """
    name = f"{project_name}_{service_name}"
    if tag:
        name = ":".join(part.replace(":", "_") for part in (name, tag))
    return name.lower()


def default_composition(image: str | None = None, dockerfile: str | None = None) -> str:
    """Return the YAML for a single-service composition named ``main``."""
    service: dict[str, Any] = {}
    if image:
        service["image"] = image
    else:
        build: dict[str, Any] = {"context": "."}
        if dockerfile:
            build["dockerfile"] = dockerfile
        service["build"] = build
    service.update(
        {
            "privileged": True,
            "tty": True,
            "restart": "always",
            "network_mode": "host",
            "volumes": ["resin-data:/data"],
            "labels": {
                "io.resin.features.kernel-modules": "1",
                "io.resin.features.firmware": "1",
                "io.resin.features.dbus": "1",
                "io.resin.features.supervisor-api": "1",
                "io.resin.features.resin-api": "1",
            },
        }
    )
    composition = {
        "version": "2.1",
        "networks": {},
        "volumes": {"resin-data": {}},
        "services": {DEFAULT_SERVICE_NAME: service},
    }
    return yaml.safe_dump(composition, sort_keys=False)


def _list_to_dict(value: Any, what: str, service_name: str) -> dict[str, str]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    if isinstance(value, list):
        result = {}
        for item in value:
            key, sep, val = str(item).partition("=")
            result[key] = val if sep else ""
        return result
    raise ComposeParseError(f'Service "{service_name}": invalid {what} definition')


def _named_volume(entry: Any) -> str | None:
    if isinstance(entry, dict):
        return entry.get("source") if entry.get("type", "volume") == "volume" else None
    source, sep, _ = str(entry).partition(":")
    if not sep or not source or source[0] in "./~$":
        return None
    return source


def normalize_composition(raw: Any) -> dict[str, Any]:
    """
    Validate and normalize a parsed compose document.

    Raises:
        ComposeParseError: If the document is not a valid composition
    """
    if not isinstance(raw, dict):
        raise ComposeParseError("Invalid composition format: expected a mapping")

    if "services" not in raw and "version" not in raw:
        # version 1 format: services at the top level
        raw = {"version": "1", "services": raw}

    services = raw.get("services")
    if not isinstance(services, dict) or not services:
        raise ComposeParseError("Invalid composition format: no services defined")

    volumes = dict(raw.get("volumes") or {})
    networks = dict(raw.get("networks") or {})
    normalized_services: dict[str, dict[str, Any]] = {}

    for service_name, service in services.items():
        service_name = str(service_name)
        if not _SERVICE_NAME_RE.match(service_name):
            raise ComposeParseError(f'Invalid service name "{service_name}"')
        if not isinstance(service, dict):
            raise ComposeParseError(f'Service "{service_name}": definition must be a mapping')
        service = dict(service)

        build = service.get("build")
        if build is not None:
            if isinstance(build, str):
                build = {"context": build}
            elif not isinstance(build, dict):
                raise ComposeParseError(f'Service "{service_name}": invalid build definition')
            build = dict(build)
            build["context"] = build.get("context") or "."
            if "args" in build:
                build["args"] = _list_to_dict(build["args"], "build args", service_name)
            service["build"] = build
        elif not service.get("image"):
            raise ComposeParseError(
                f'Service "{service_name}": must define either "build" or "image"'
            )

        for key in ("environment", "labels"):
            if key in service:
                service[key] = _list_to_dict(service[key], key, service_name)

        for entry in service.get("volumes") or []:
            name = _named_volume(entry)
            if name and name not in volumes:
                volumes[name] = {}

        service_networks = service.get("networks") or []
        for name in service_networks:
            if name not in networks:
                networks[name] = {}

        normalized_services[service_name] = service

    return {
        "version": str(raw.get("version", "2.1")),
        "services": normalized_services,
        "volumes": {k: v or {} for k, v in volumes.items()},
        "networks": {k: v or {} for k, v in networks.items()},
    }


def parse_descriptors(composition: dict[str, Any]) -> list[ImageDescriptor]:
    """Produce one image descriptor per service, in composition order."""
    descriptors = []
    for service_name, service in composition["services"].items():
        build = service.get("build")
        if build is not None:
            image: str | dict[str, Any] = {"context": build["context"]}
            if build.get("dockerfile"):
                image["dockerfile"] = build["dockerfile"]
            if build.get("args"):
                image["args"] = dict(build["args"])
            if service.get("image"):
                image["tag"] = service["image"]
        else:
            image = service["image"]
        descriptors.append(ImageDescriptor(service_name=service_name, image=image))
    return descriptors


def create_project(
    compose_path: str,
    compose_str: str,
    project_name: str | None = None,
    image_tag: str | None = None,
) -> ComposeProject:
    """
    Parse a composition string into a ComposeProject.

    Build descriptors without an explicit tag get a generated image name.

    Raises:
        ComposeParseError: On malformed YAML or an invalid composition
    """
    try:
        raw = yaml.safe_load(compose_str)
    except yaml.YAMLError as e:
        raise ComposeParseError(f"Error parsing composition:\n{e}") from e
    composition = normalize_composition(raw)
    project_name = project_name or os.path.basename(os.path.normpath(compose_path))

    descriptors = parse_descriptors(composition)
    for descriptor in descriptors:
        if isinstance(descriptor.image, dict) and not descriptor.image.get("tag"):
            descriptor.image["tag"] = make_image_name(
                project_name, descriptor.service_name, image_tag
            )
    return ComposeProject(
        path=compose_path,
        name=project_name,
        composition=composition,
        descriptors=descriptors,
        compose_str=compose_str,
    )


def resolve_project(project_root: str | Path, quiet: bool = False) -> tuple[str, str]:
    """
    Find the first composition file in ``project_root``.

    Returns:
        Tuple of (file name, contents); both empty if none exists
    """
    for file_name in COMPOSITION_FILE_NAMES:
        path = Path(project_root) / file_name
        if path.exists():
            logger.debug(f'{file_name} file found at "{project_root}"')
            return file_name, path.read_text()
    if not quiet:
        logger.info(f'No "docker-compose.yml" file found at "{project_root}"')
    return "", ""


def merge_dev_compose_overlay(compose_str: str, project_root: str | Path) -> str:
    """Merge the ``services`` section of docker-compose.dev.yml, if present."""
    overlay_path = Path(project_root) / DEV_OVERLAY_FILE_NAME
    if not overlay_path.exists():
        return compose_str
    logger.info(f"Docker compose dev overlay detected ({DEV_OVERLAY_FILE_NAME}) - merging.")
    try:
        compose = yaml.safe_load(compose_str) or {}
        overlay = yaml.safe_load(overlay_path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ComposeParseError(
            f'Error merging docker compose dev overlay file "{overlay_path}":\n{e}'
        ) from e
    compose["services"] = {**(compose.get("services") or {}), **(overlay.get("services") or {})}
    return yaml.safe_dump(compose, sort_keys=False)


def load_project(
    project_path: str,
    *,
    project_name: str | None = None,
    image: str | None = None,
    dockerfile_path: str | None = None,
    image_tag: str | None = None,
    is_local: bool = False,
) -> ComposeProject:
    """
    Resolve a project directory into a ComposeProject.

    With an explicit image no filesystem scan happens. Otherwise the first
    composition file wins; without one a default single-service composition
    is built around the project's Dockerfile (or ``dockerfile_path``).
    The project is resolved fresh on every call.

    Args:
        project_path: Project source directory
        project_name: Name used in generated image names (default: directory name)
        image: Explicit image for a one-service composition
        dockerfile_path: Alternative Dockerfile, relative to the project
        image_tag: Tag appended to generated image names
        is_local: Merge the dev compose overlay (local device pushes)
    """
    logger.debug("Loading project...")
    if image:
        logger.info(f'Creating default composition with image: "{image}"')
        compose_str = default_composition(image=image)
    else:
        compose_name, compose_str = resolve_project(project_path)
        if compose_name:
            if dockerfile_path:
                logger.warning(
                    f'Ignoring alternative dockerfile "{dockerfile_path}" because '
                    f'composition file "{compose_name}" exists'
                )
        else:
            logger.info(f'Creating default composition with source: "{project_path}"')
            compose_str = default_composition(dockerfile=dockerfile_path)
        if is_local:
            compose_str = merge_dev_compose_overlay(compose_str, project_path)
    return create_project(project_path, compose_str, project_name, image_tag)


def service_dirs_from_composition(
    source_dir: str, composition: dict[str, Any] | None = None
) -> dict[str, str]:
    """
    Map each service name to its build context directory, relative to ``source_dir``.

    Without a composition, the composition file in ``source_dir`` is parsed
    if there is one.
    """
    if composition is None:
        _, compose_str = resolve_project(source_dir, quiet=True)
        if not compose_str:
            return {}
        composition = create_project(source_dir, compose_str).composition
    service_dirs = {}
    for service_name, service in composition.get("services", {}).items():
        build = service.get("build")
        directory = (build if isinstance(build, str) else (build or {}).get("context")) or "."
        directory = os.path.normpath(directory)
        if os.path.isabs(directory):
            directory = os.path.relpath(directory, source_dir)
        service_dirs[service_name] = directory or "."
    return service_dirs


def validate_specified_dockerfile(project_path: str, dockerfile_path: str) -> str:
    """
    Check an alternative Dockerfile path and return its normalized POSIX form.

    Raises:
        ExpectedError: If the path is absolute, escapes the project or does not exist
    """
    native_project = os.path.normpath(project_path)
    native_dockerfile = os.path.normpath(dockerfile_path.replace("/", os.sep))
    if os.path.isabs(native_dockerfile):
        raise ExpectedError(
            "Error: the specified Dockerfile cannot be an absolute path. The path must be\n"
            "relative to, and not a parent folder of, the project's source folder.\n"
            f'Specified dockerfile: "{native_dockerfile}"\n'
            f'Project\'s source folder: "{native_project}"'
        )
    if native_dockerfile.startswith(".."):
        raise ExpectedError(
            "Error: the specified Dockerfile cannot be in a parent folder of the project's\n"
            "source folder. Note that the path should be relative to the project's source\n"
            "folder, not the current folder.\n"
            f'Specified dockerfile: "{native_dockerfile}"\n'
            f'Project\'s source folder: "{native_project}"'
        )
    full_path = os.path.join(native_project, native_dockerfile)
    if not os.path.exists(full_path):
        raise ExpectedError(
            "Error: specified Dockerfile not found:\n"
            f'Specified dockerfile: "{full_path}"\n'
            f'Project\'s source folder: "{native_project}"\n'
            "Note that the specified Dockerfile path should be relative to the source folder."
        )
    return native_dockerfile.replace(os.sep, "/")


@dataclass
class ProjectValidationResult:
    dockerfile_path: str = ""
    registry_secrets: dict[str, dict[str, str]] = field(default_factory=dict)


def validate_project_directory(
    project_path: str,
    dockerfile_path: str | None = None,
    no_parent_check: bool = False,
    registry_secrets_path: str | None = None,
) -> ProjectValidationResult:
    """
    Sanity-check a project directory before any engine or network call.

    Returns:
        The normalized alternative Dockerfile path (if any) and parsed
        registry secrets

    Raises:
        ExpectedError: For a missing folder, missing project files, a
            composition file found only in the parent folder, or invalid
            registry secrets
    """
    if not os.path.isdir(project_path):
        raise ExpectedError(f'Could not access source folder: "{project_path}"')

    result = ProjectValidationResult()
    if dockerfile_path:
        result.dockerfile_path = validate_specified_dockerfile(project_path, dockerfile_path)
    else:
        project_file_re = re.compile(
            r"^(Dockerfile|Dockerfile\.\S+|docker-compose.ya?ml|package.json)$"
        )
        if not any(project_file_re.match(name) for name in os.listdir(project_path)):
            raise ExpectedError(
                'Error: no "Dockerfile[.*]", "docker-compose.yml" or "package.json" file\n'
                f'found in source folder "{project_path}"'
            )
        if not no_parent_check:

            def has_compose(folder: str) -> bool:
                return any(
                    os.path.exists(os.path.join(folder, name)) for name in COMPOSITION_FILE_NAMES
                )

            parent = os.path.join(project_path, "..")
            if not has_compose(project_path) and has_compose(parent):
                raise ExpectedError(
                    'Error: "docker-compose.y[a]ml" file found in parent directory: please '
                    "check that\nthe correct source folder was specified. "
                    "(Suppress with '--noparent-check'.)"
                )
    result.registry_secrets = get_registry_secrets(registry_secrets_path)
    return result


def add_canonical_docker_hub_entry(secrets: dict[str, dict[str, str]]) -> None:
    """Mirror any Docker Hub alias entry under the canonical index URL."""
    if DOCKER_HUB_CANONICAL in secrets:
        return
    for alias in DOCKER_HUB_ALIASES:
        if alias in secrets:
            secrets[DOCKER_HUB_CANONICAL] = secrets[alias]
            return


def parse_registry_secrets(secrets_path: str) -> dict[str, dict[str, str]]:
    """
    Load and validate a registry secrets file (YAML or JSON).

    Raises:
        ExpectedError: If the file name, format or content is invalid
    """
    try:
        lower = secrets_path.lower()
        if re.match(r".+\.ya?ml$", lower):
            is_yaml = True
        elif re.match(r".+\.json$", lower):
            is_yaml = False
        else:
            raise ValueError("Filename must end with .json, .yml or .yaml")
        raw = Path(secrets_path).read_text()
        data = yaml.safe_load(raw) if is_yaml else json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Expected a mapping of registry address to credentials")
        secrets: dict[str, dict[str, str]] = {}
        for registry, credentials in data.items():
            if not isinstance(credentials, dict) or set(credentials) - {"username", "password"}:
                raise ValueError(f'Invalid credentials for registry "{registry}"')
            for key in ("username", "password"):
                if not isinstance(credentials.get(key), str):
                    raise ValueError(f'Missing or invalid "{key}" for registry "{registry}"')
            secrets[str(registry)] = {
                "username": credentials["username"],
                "password": credentials["password"],
            }
        add_canonical_docker_hub_entry(secrets)
        return secrets
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ExpectedError(
            f'Error validating registry secrets file "{secrets_path}":\n{e}'
        ) from e


def get_registry_secrets(secrets_path: str | None = None) -> dict[str, dict[str, str]]:
    """Load registry secrets from the given file or the data directory default."""
    if secrets_path is not None:
        return parse_registry_secrets(secrets_path)
    data_dir = get_data_dir()
    for name in ("secrets.yml", "secrets.yaml", "secrets.json"):
        candidate = data_dir / name
        if candidate.exists():
            return parse_registry_secrets(str(candidate))
    return {}


def load_build_metadata(source_dir: str) -> tuple[dict[str, Any], str]:
    """
    Load .balena/balena.yml (or resin, yaml or json variants).

    Returns:
        Tuple of (metadata, file path); ({}, "") if there is no such file
    """
    for base in ("balena", "resin"):
        for ext in ("yml", "yaml", "json"):
            path = Path(source_dir) / f".{base}" / f"{base}.{ext}"
            try:
                raw = path.read_text()
            except FileNotFoundError:
                continue
            try:
                metadata = json.loads(raw) if ext == "json" else yaml.safe_load(raw)
            except (ValueError, yaml.YAMLError) as e:
                raise ExpectedError(f'Error parsing file "{path}":\n {e}') from e
            return metadata or {}, str(path)
    return {}, ""


def get_contract_content(contract_path: str) -> dict[str, Any] | None:
    """
    Load the release contract (balena.yml at the project root).

    Raises:
        ExpectedError: If the file cannot be parsed, has no allowed ``type``,
            or carries an invalid semver ``version``
    """
    try:
        raw = Path(contract_path).read_text()
    except FileNotFoundError:
        return None
    try:
        contract = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ExpectedError(f'Error parsing file "{contract_path}":\n {e}') from e
    if not isinstance(contract, dict) or contract.get("type") not in ALLOWED_CONTRACT_TYPES:
        raise ExpectedError(
            f"Error: application contract in '{contract_path}' needs to\n"
            'define a top level "type" field with an allowed application type.\n'
            f"Allowed application types are: {', '.join(ALLOWED_CONTRACT_TYPES)}"
        )
    version = contract.get("version")
    if version is not None and not _SEMVER_RE.match(str(version)):
        raise ExpectedError(
            f'Error: the version field in "{contract_path}"\nis not a valid semver'
        )
    return contract
