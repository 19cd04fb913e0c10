"""
Container engine wrapper.

Drives a local or remote Docker-compatible engine through the ``docker``
command line client. Every operation is an asyncio subprocess; output
of long-running operations (build, pull, push, exec) is streamed line by
line to a callback so one service's output never waits on another's.
"""

import asyncio
import base64
import contextlib
import json
import logging
import os
import re
import shutil
import tempfile
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from fleet_common.models import DockerOpts

logger = logging.getLogger(__name__)

LineHandler = Callable[[str], None]

_DIGEST_RE = re.compile(r"digest:\s*(sha256:[a-f0-9]{64})")


@dataclass
class ProcessResult:
    returncode: int
    stdout: bytes
    stderr: bytes


class DockerEngine:
    """
    Handle to one container engine.

    Args:
        host: Remote engine host; None for the local engine
        port: Remote engine TCP port (default 2375)
        ca, cert, key: TLS files for a remote engine
        docker_config: Directory used as DOCKER_CONFIG (registry credentials)
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        ca: str | None = None,
        cert: str | None = None,
        key: str | None = None,
        docker_config: str | None = None,
    ):
        self.host = host
        self.port = port
        self.ca = ca
        self.cert = cert
        self.key = key
        self.docker_config = docker_config

    def _base_args(self) -> list[str]:
        args = ["docker"]
        if self.docker_config:
            args += ["--config", self.docker_config]
        if self.host:
            if "://" in self.host:
                address = self.host
            else:
                address = f"tcp://{self.host}:{self.port or 2375}"
            args += ["-H", address]
        if self.ca or self.cert or self.key:
            args.append("--tlsverify")
            if self.ca:
                args += ["--tlscacert", self.ca]
            if self.cert:
                args += ["--tlscert", self.cert]
            if self.key:
                args += ["--tlskey", self.key]
        return args

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        # Classic builder output carries the "---> <id>" lines stage ids are read from
        env["DOCKER_BUILDKIT"] = "0"
        return env

    async def _run(self, *args: str, input: bytes | None = None) -> ProcessResult:
        process = await asyncio.create_subprocess_exec(
            *self._base_args(),
            *args,
            stdin=asyncio.subprocess.PIPE if input is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._env(),
        )
        stdout, stderr = await process.communicate(input)
        return ProcessResult(process.returncode, stdout, stderr)

    async def _stream(
        self,
        *args: str,
        on_line: LineHandler | None = None,
        input: bytes | None = None,
    ) -> tuple[int, list[str]]:
        """
        Run a command, handing each output line to ``on_line`` as it arrives.

        Returns:
            Tuple of (return code, all output lines)
        """
        process = await asyncio.create_subprocess_exec(
            *self._base_args(),
            *args,
            stdin=asyncio.subprocess.PIPE if input is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=self._env(),
        )
        assert process.stdout is not None

        async def feed() -> None:
            assert process.stdin is not None
            try:
                process.stdin.write(input)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
            finally:
                process.stdin.close()

        feeder = asyncio.create_task(feed()) if input is not None else None
        lines: list[str] = []
        try:
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                line = raw.decode(errors="replace").rstrip()
                if not line:
                    continue
                lines.append(line)
                if on_line is not None:
                    on_line(line)
            if feeder is not None:
                await feeder
            await process.wait()
        finally:
            # Clean up process if still running (e.g. on cancellation)
            if process.returncode is None:
                process.terminate()
                await process.wait()
            if feeder is not None and not feeder.done():
                feeder.cancel()
        return process.returncode, lines

    async def ping(self) -> bool:
        """Return True if the engine answers."""
        result = await self._run("version", "--format", "{{.Server.Version}}")
        return result.returncode == 0

    async def info(self) -> dict[str, Any]:
        """
        Return ``docker info`` as a dict.

        Raises:
            RuntimeError: If the engine cannot be reached
        """
        result = await self._run("info", "--format", "{{json .}}")
        if result.returncode != 0:
            raise RuntimeError(f"Failed to get engine info: {result.stderr.decode()}")
        return json.loads(result.stdout.decode())

    async def version(self) -> dict[str, Any]:
        result = await self._run("version", "--format", "{{json .}}")
        if result.returncode != 0:
            raise RuntimeError(f"Failed to get engine version: {result.stderr.decode()}")
        return json.loads(result.stdout.decode())

    async def is_balena_engine(self) -> bool:
        """Detect balenaEngine from the server version report."""
        server = (await self.version()).get("Server") or {}
        platform = (server.get("Platform") or {}).get("Name", "")
        components = " ".join(c.get("Name", "") for c in server.get("Components") or [])
        return "balena" in f"{platform} {components}".lower()

    async def build(
        self,
        context: bytes,
        opts: DockerOpts,
        dockerfile: str | None = None,
        on_line: LineHandler | None = None,
    ) -> list[str]:
        """
        Build an image from a context archive.

        Args:
            context: Tar archive of the build context (sent on stdin)
            opts: Tag, cache, label and build-arg options
            dockerfile: Dockerfile path inside the context
            on_line: Called with each line of build output

        Returns:
            The build output lines

        Raises:
            RuntimeError: If the build fails; the message is the last output line
        """
        args = ["build"]
        if dockerfile:
            args += ["-f", dockerfile]
        if opts.tag:
            args += ["-t", opts.tag]
        for image in opts.cache_from:
            args += ["--cache-from", image]
        for name, value in opts.labels.items():
            args += ["--label", f"{name}={value}"]
        for name, value in opts.build_args.items():
            args += ["--build-arg", f"{name}={value}"]
        if opts.nocache:
            args.append("--no-cache")
        if opts.pull:
            args.append("--pull")
        if opts.squash:
            args.append("--squash")
        args.append(f"--force-rm={'true' if opts.force_rm else 'false'}")
        args.append("-")

        returncode, lines = await self._stream(*args, on_line=on_line, input=context)
        if returncode != 0:
            message = lines[-1] if lines else f"docker build exited with code {returncode}"
            raise RuntimeError(message)
        return lines

    async def pull(self, image: str, on_line: LineHandler | None = None) -> list[str]:
        returncode, lines = await self._stream("pull", image, on_line=on_line)
        if returncode != 0:
            message = lines[-1] if lines else f"docker pull exited with code {returncode}"
            raise RuntimeError(f"Failed to pull image {image}: {message}")
        return lines

    async def push(self, image: str, on_line: LineHandler | None = None) -> str:
        """
        Push an image and return its content digest.

        Raises:
            RuntimeError: If the push fails or no digest was reported
        """
        returncode, lines = await self._stream("push", image, on_line=on_line)
        if returncode != 0:
            message = lines[-1] if lines else f"docker push exited with code {returncode}"
            raise RuntimeError(f"Failed to push image {image}: {message}")
        for line in reversed(lines):
            match = _DIGEST_RE.search(line)
            if match:
                return match.group(1)
        raise RuntimeError(
            "Unable to extract image digest (content hash) from image upload "
            f"progress stream for image:\n{image}"
        )

    async def tag(self, source: str, target: str) -> None:
        result = await self._run("tag", source, target)
        if result.returncode != 0:
            raise RuntimeError(f"Failed to tag image {source}: {result.stderr.decode()}")

    async def inspect_image(self, name: str) -> dict[str, Any] | None:
        """Return the engine's image record, or None if there is no such image."""
        result = await self._run("image", "inspect", name)
        if result.returncode != 0:
            return None
        data = json.loads(result.stdout.decode())
        return data[0] if data else None

    async def image_exists(self, name: str) -> bool:
        return await self.inspect_image(name) is not None

    async def remove_image(self, name: str, force: bool = False) -> None:
        args = ["rmi"]
        if force:
            args.append("--force")
        args.append(name)
        result = await self._run(*args)
        if result.returncode != 0:
            error = result.stderr.decode()
            if "No such image" not in error:
                raise RuntimeError(f"Failed to remove image {name}: {error}")

    async def list_image_ids(self) -> list[str]:
        """List the ids of every image on the engine, including intermediates."""
        result = await self._run("images", "--all", "--quiet", "--no-trunc")
        if result.returncode != 0:
            raise RuntimeError(f"Failed to list images: {result.stderr.decode()}")
        return sorted({line for line in result.stdout.decode().split() if line})

    async def save_image(self, name: str, path: str) -> None:
        result = await self._run("save", "-o", path, name)
        if result.returncode != 0:
            raise RuntimeError(f"Failed to save image {name}: {result.stderr.decode()}")

    async def create_container(self, image: str, command: list[str] | None = None) -> str:
        result = await self._run("create", image, *(command or []))
        if result.returncode != 0:
            raise RuntimeError(f"Failed to create container: {result.stderr.decode()}")
        return result.stdout.decode().strip()

    async def start_container(self, container_id: str) -> None:
        result = await self._run("start", container_id)
        if result.returncode != 0:
            raise RuntimeError(f"Failed to start container: {result.stderr.decode()}")

    async def restart_container(self, container_id: str) -> None:
        result = await self._run("restart", container_id)
        if result.returncode != 0:
            raise RuntimeError(f"Failed to restart container: {result.stderr.decode()}")

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(container_id)
        result = await self._run(*args)
        if result.returncode != 0:
            # Ignore "already removed" errors
            error = result.stderr.decode()
            if "No such container" not in error:
                raise RuntimeError(f"Failed to remove container: {error}")

    async def container_running(self, container_id: str) -> bool:
        result = await self._run("inspect", "--format", "{{.State.Running}}", container_id)
        return result.returncode == 0 and result.stdout.decode().strip() == "true"

    async def exec(
        self,
        container_id: str,
        command: list[str],
        workdir: str | None = None,
        env: dict[str, str] | None = None,
        on_line: LineHandler | None = None,
    ) -> int:
        """Run a command in a running container and return its exit code."""
        args = ["exec"]
        if workdir:
            args += ["--workdir", workdir]
        for name, value in (env or {}).items():
            args += ["--env", f"{name}={value}"]
        args.append(container_id)
        returncode, _ = await self._stream(*args, *command, on_line=on_line)
        return returncode

    async def copy_archive_to_container(self, container_id: str, dest: str, archive: bytes) -> None:
        """Extract a tar archive into ``dest`` inside a container."""
        result = await self._run("cp", "-", f"{container_id}:{dest}", input=archive)
        if result.returncode != 0:
            raise RuntimeError(f"Failed to copy files to container: {result.stderr.decode()}")

    async def copy_from_container(self, container_id: str, path: str) -> bytes:
        """Return a tar archive of ``path`` inside a container."""
        result = await self._run("cp", f"{container_id}:{path}", "-")
        if result.returncode != 0:
            raise RuntimeError(f"Failed to copy files from container: {result.stderr.decode()}")
        return result.stdout

    @contextlib.contextmanager
    def registry_auth(
        self,
        secrets: dict[str, dict[str, str]] | None = None,
        token_registry: str | None = None,
        token: str | None = None,
    ) -> Iterator["DockerEngine"]:
        """
        Yield an engine handle using a temporary client config with registry credentials.

        Args:
            secrets: Registry address to {username, password}
            token_registry: Registry address the token is valid for
            token: Registry token issued by the cloud API
        """
        auths: dict[str, dict[str, str]] = {}
        for registry, credentials in (secrets or {}).items():
            raw = f"{credentials['username']}:{credentials['password']}".encode()
            auths[registry] = {"auth": base64.b64encode(raw).decode()}
        if token_registry and token:
            auths[token_registry] = {"registrytoken": token}

        config_dir = tempfile.mkdtemp(prefix="fleet_docker_config_")
        try:
            with open(os.path.join(config_dir, "config.json"), "w") as f:
                json.dump({"auths": auths}, f)
            yield DockerEngine(
                host=self.host,
                port=self.port,
                ca=self.ca,
                cert=self.cert,
                key=self.key,
                docker_config=config_dir,
            )
        finally:
            shutil.rmtree(config_dir, ignore_errors=True)
