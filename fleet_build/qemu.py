"""
QEMU user-mode emulation for cross-architecture builds.

When building ARM images on an engine without built-in binfmt support, a
static QEMU binary is downloaded once into the data directory, copied into
each build context as ``.balena/qemu-execve``, and the Dockerfile is
transposed so every RUN instruction executes through it.
"""

import logging
import os
import shutil
import tarfile
from pathlib import Path
from urllib.parse import quote

import requests

from fleet_common.config import get_data_dir
from fleet_common.errors import ExpectedError

from .dockerfile import Instruction, parse_instructions
from .docker_engine import DockerEngine

logger = logging.getLogger(__name__)

QEMU_VERSION = "v7.0.0+balena1"
QEMU_BIN_NAME = "qemu-execve"
CONTAINER_QEMU_PATH = f"/tmp/{QEMU_BIN_NAME}"
DOWNLOAD_TIMEOUT = 60


def balena_arch_to_qemu_arch(arch: str) -> str:
    """
    Map a device architecture to a QEMU architecture.

    Raises:
        ExpectedError: For an unknown ARM architecture identifier
    """
    if arch in ("rpi", "arm", "armhf", "armv7hf"):
        return "arm"
    if arch in ("arm64", "aarch64"):
        return "aarch64"
    raise ExpectedError(
        f'Unknown ARM architecture identifier "{arch}".\n'
        "Known ARM identifiers: rpi arm armhf armv7hf arm64 aarch64"
    )


def qemu_path_in_context() -> str:
    """POSIX path of the QEMU binary relative to a build context."""
    return f".balena/{QEMU_BIN_NAME}"


def get_qemu_path(arch: str) -> Path:
    """Path of the cached QEMU binary for ``arch`` in the data directory."""
    qemu_arch = balena_arch_to_qemu_arch(arch)
    bin_dir = get_data_dir() / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    return bin_dir / f"{QEMU_BIN_NAME}-{qemu_arch}-{QEMU_VERSION}"


def install_qemu(arch: str, qemu_path: Path) -> None:
    """
    Download the static QEMU binary for ``arch`` to ``qemu_path``.

    A partially written file is removed if the download fails.

    Raises:
        RuntimeError: If the download fails or the archive has no binary
    """
    qemu_arch = balena_arch_to_qemu_arch(arch)
    file_version = QEMU_VERSION.replace("v", "").replace("+", ".")
    url_file = quote(f"qemu-{file_version}-{qemu_arch}.tar.gz", safe="")
    url = (
        "https://github.com/balena-io/qemu/releases/download/"
        f"{quote(QEMU_VERSION, safe='')}/{url_file}"
    )
    logger.debug(f"Downloading {url}")
    try:
        with requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as response:
            response.raise_for_status()
            response.raw.decode_content = True
            with tarfile.open(fileobj=response.raw, mode="r|gz") as tar:
                for member in tar:
                    if f"qemu-{qemu_arch}-static" in member.name and member.isfile():
                        source = tar.extractfile(member)
                        if source is None:
                            continue
                        with open(qemu_path, "wb") as f:
                            shutil.copyfileobj(source, f)
                        os.chmod(qemu_path, 0o755)
                        return
        raise RuntimeError(f"qemu-{qemu_arch}-static not found in {url}")
    except (requests.exceptions.RequestException, tarfile.TarError, OSError, RuntimeError) as e:
        qemu_path.unlink(missing_ok=True)
        raise RuntimeError(f"Failed to install qemu for {arch}: {e}") from e


async def platform_needs_qemu(engine: DockerEngine) -> bool:
    """
    Check whether the engine needs explicit QEMU setup.

    Docker Desktop and the older Docker for Mac ship binfmt_misc support.
    """
    info = await engine.info()
    operating_system = info.get("OperatingSystem") or ""
    is_desktop = "Docker Desktop" in operating_system or "Docker for Mac" in operating_system
    if is_desktop:
        logger.info(
            "Docker Desktop detected (daemon architecture: "
            f'"{info.get("Architecture")}").\n'
            "  Docker Desktop has built-in support for emulation of ARM binaries."
        )
    return not is_desktop


async def install_qemu_if_needed(emulated: bool, arch: str, engine: DockerEngine) -> bool:
    """
    Make sure a QEMU binary is cached when emulation is requested and needed.

    Returns:
        True if build contexts need the QEMU binary
    """
    # Always probe, the result is logged
    needs_qemu = await platform_needs_qemu(engine)
    if not emulated or not needs_qemu:
        return False
    qemu_path = get_qemu_path(arch)
    if qemu_path.exists() and qemu_path.stat().st_size == 0:
        qemu_path.unlink()
    if not qemu_path.exists():
        logger.info(f"Installing qemu for {arch} emulation...")
        install_qemu(arch, qemu_path)
    return True


def copy_qemu(context: str | Path, arch: str) -> str:
    """
    Copy the cached QEMU binary into ``context/.balena/``.

    Returns:
        The binary's path relative to the context
    """
    bin_dir = Path(context) / ".balena"
    bin_dir.mkdir(exist_ok=True)
    target = bin_dir / QEMU_BIN_NAME
    shutil.copyfile(get_qemu_path(arch), target)
    os.chmod(target, 0o755)
    return qemu_path_in_context()


def _transpose_run(instruction: Instruction) -> str:
    if instruction.json_args is not None:
        args = [CONTAINER_QEMU_PATH, "-execve", *instruction.json_args]
    else:
        args = [CONTAINER_QEMU_PATH, "-execve", "/bin/sh", "-c", instruction.value]
    transposed = Instruction("RUN", "", instruction.lineno, dict(instruction.flags), args)
    return transposed.to_line()


def transpose_dockerfile(content: str, host_qemu_path: str | None = None) -> str:
    """
    Rewrite a Dockerfile to run every RUN instruction through QEMU.

    The binary is copied into each stage right after its FROM.
    """
    host_qemu_path = host_qemu_path or qemu_path_in_context()
    copy_line = Instruction(
        "COPY", "", 0, {}, [host_qemu_path, CONTAINER_QEMU_PATH]
    ).to_line()
    lines = []
    for instruction in parse_instructions(content):
        if instruction.keyword == "RUN":
            lines.append(_transpose_run(instruction))
            continue
        lines.append(instruction.to_line())
        if instruction.keyword == "FROM":
            lines.append(copy_line)
    return "\n".join(lines) + "\n"


def untranspose_line(line: str) -> str:
    """Strip the QEMU wrapper from a build output line for display."""
    for prefix in (
        f'["{CONTAINER_QEMU_PATH}","-execve","/bin/sh","-c",',
        f'["{CONTAINER_QEMU_PATH}", "-execve", "/bin/sh", "-c", ',
    ):
        if prefix in line:
            head, _, tail = line.partition(prefix)
            return head + tail.strip().removeprefix('"').removesuffix("]").removesuffix('"')
    return line.replace(f"{CONTAINER_QEMU_PATH} -execve /bin/sh -c ", "")
