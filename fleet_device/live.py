"""
Livepush session management for a device in local mode.

One LivepushManager watches every built service's context directory. File
events are collected per service and debounced; then the change is either
applied in place by the service's Livepush handle, or, when the service's
Dockerfile changed, the service is rebuilt on the device and its container
replaced.

All per-service state is mutated on the event loop only. Watchdog's
observer thread hands events over with ``loop.call_soon_threadsafe``.
"""

import asyncio
import logging
import os
from collections.abc import Coroutine
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from fleet_build.docker_engine import DockerEngine
from fleet_build.dockerfile import Dockerfile
from fleet_build.ignore import FileIgnorer, ignorer_by_service, to_posix_path
from fleet_build.project import service_dirs_from_composition
from fleet_build.tasks import ARCH_SPECIFIC_DOCKERFILE, DOCKERFILE_TEMPLATE
from fleet_common.config import get_debounce_seconds, get_settle_interval
from fleet_common.errors import BuildError, ContainerNotRunningError
from fleet_common.events import ProgressSink, ServiceEvent
from fleet_common.models import ComposeProject, DeviceInfo, ResolvedTask

from .api import DeviceAPI
from .deploy import (
    DeviceDeployOptions,
    environment_from_input,
    generate_target_state,
    rebuild_single_task,
)
from .livepush import Livepush

logger = logging.getLogger(__name__)

SessionState = Literal["watching", "patching", "rebuilding", "cancelling"]


@dataclass
class ServiceSession:
    """Live state of one service."""

    service_name: str
    context: str  # absolute build context directory
    dockerfile_paths: list[str]  # relative to the context
    container_id: str
    livepush: Livepush
    state: SessionState = "watching"
    updated: set[str] = field(default_factory=set)
    deleted: set[str] = field(default_factory=set)
    debounce: asyncio.TimerHandle | None = None
    patch_task: asyncio.Task | None = None
    rebuilding: bool = False
    rebuild_cancelled: bool = False
    rebuild_generation: int = 0
    rebuild_container_id: str | None = None
    deferred_updated: set[str] = field(default_factory=set)  # changes seen mid-rebuild
    deferred_deleted: set[str] = field(default_factory=set)


def merge_changes(
    pending_updated: set[str], pending_deleted: set[str], updated: list[str], deleted: list[str]
) -> None:
    """Fold a batch of changes into pending sets; the latest change to a path wins."""
    for path in updated:
        pending_deleted.discard(path)
        pending_updated.add(path)
    for path in deleted:
        pending_updated.discard(path)
        pending_deleted.add(path)


def dockerfile_paths_for(task: ResolvedTask, device_info: DeviceInfo) -> list[str]:
    """Context-relative Dockerfile paths whose change requires a full rebuild."""
    if task.project_type == ARCH_SPECIFIC_DOCKERFILE:
        return [f"Dockerfile.{device_info.arch}", f"Dockerfile.{device_info.device_type}"]
    if task.dockerfile_path:
        return [task.dockerfile_path]
    if task.project_type == DOCKERFILE_TEMPLATE:
        return ["Dockerfile.template"]
    return ["Dockerfile"]


class ServiceEventHandler(FileSystemEventHandler):
    """
    Forward file events of one service's context to the manager's loop.

    Runs on the watchdog observer thread. Directories are never ignored;
    files are checked against the service's ignore filter.

    Args:
        manager: The owning LivepushManager
        service_name: Service whose context is watched
        ignorer: The service's ignore filter
        ignore_base: Directory the filter's paths are relative to
    """

    def __init__(
        self,
        manager: "LivepushManager",
        service_name: str,
        ignorer: FileIgnorer,
        ignore_base: str,
    ):
        super().__init__()
        self.manager = manager
        self.service_name = service_name
        self.ignorer = ignorer
        self.ignore_base = ignore_base

    def _post(self, path: str | bytes, deleted: bool) -> None:
        path = os.fsdecode(path)
        rel_path = to_posix_path(os.path.relpath(path, self.ignore_base))
        if self.ignorer.ignores(rel_path):
            return
        self.manager.loop.call_soon_threadsafe(
            self.manager.queue_change, self.service_name, path, deleted
        )

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._post(event.src_path, deleted=False)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._post(event.src_path, deleted=False)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._post(event.src_path, deleted=True)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._post(event.src_path, deleted=True)
            self._post(event.dest_path, deleted=False)


class LivepushManager:
    """
    Keep running device containers in sync with the project directory.

    Args:
        api: The device's supervisor API
        engine: The device's container engine
        sink: Receives livepush progress and errors per service
        project: The project that was deployed
        opts: The options it was deployed with
        tasks: The build tasks of the deploy
        stage_ids: Stage image ids per service, scanned from the build output
    """

    def __init__(
        self,
        api: DeviceAPI,
        engine: DockerEngine,
        sink: ProgressSink,
        project: ComposeProject,
        opts: DeviceDeployOptions,
        tasks: list[ResolvedTask],
        stage_ids: dict[str, list[str]],
    ):
        self.api = api
        self.engine = engine
        self.sink = sink
        self.project = project
        self.opts = opts
        self.tasks = tasks
        self.stage_ids = stage_ids
        self.sessions: dict[str, ServiceSession] = {}
        self.device_info: DeviceInfo | None = None
        self.debounce_seconds = get_debounce_seconds()
        self.settle_interval = get_settle_interval()
        self.env = environment_from_input(opts.env, list(project.composition.get("services", {})))
        self.observer: Any = None
        self._pending: set[asyncio.Task] = set()
        self.loop: asyncio.AbstractEventLoop | None = None

    def _live(self, service_name: str, message: str) -> None:
        self.sink.on_service_event(service_name, ServiceEvent("livepush", message))

    def _error(self, service_name: str, message: str) -> None:
        self.sink.on_service_event(service_name, ServiceEvent("error", message))

    def _make_livepush(
        self, task: ResolvedTask, stage_ids: list[str], container_id: str, context: str
    ) -> Livepush:
        service_name = task.service_name

        def on_event(event: ServiceEvent) -> None:
            self.sink.on_service_event(service_name, event)

        livepush = Livepush(
            Dockerfile(task.dockerfile or ""),
            context,
            container_id,
            stage_ids,
            self.engine,
            on_event,
        )
        livepush.set_build_args(dict(task.docker_opts.build_args or task.args))
        return livepush

    async def init(self) -> None:
        """Wait for the device to settle, then bind a session to each built service and start watching."""
        self.loop = asyncio.get_running_loop()
        self.device_info = await asyncio.to_thread(self.api.get_device_info)
        logger.info("Waiting for device state to settle...")
        await self.await_device_state_settle()
        logger.info("Device state settled")

        source = os.path.abspath(self.opts.source)
        service_dirs = service_dirs_from_composition(source, self.project.composition)
        ignorers = ignorer_by_service(
            source, self.opts.multi_dockerignore, service_dirs, self.opts.use_gitignore
        )
        status = await asyncio.to_thread(self.api.get_status)
        containers = {c.service_name: c.container_id for c in status.containers}

        self.observer = Observer()
        for task in self.tasks:
            if task.external:
                continue
            service_name = task.service_name
            container_id = containers.get(service_name)
            if not container_id:
                logger.warning(
                    f"No running container found for service {service_name}; "
                    "livepush is disabled for it"
                )
                continue
            context = os.path.normpath(os.path.join(source, task.context or "."))
            self.sessions[service_name] = ServiceSession(
                service_name=service_name,
                context=context,
                dockerfile_paths=dockerfile_paths_for(task, self.device_info),
                container_id=container_id,
                livepush=self._make_livepush(
                    task, self.stage_ids.get(service_name, []), container_id, context
                ),
            )
            ignore_base = context if self.opts.multi_dockerignore else source
            handler = ServiceEventHandler(self, service_name, ignorers[service_name], ignore_base)
            self.observer.schedule(handler, context, recursive=True)
        self.observer.start()

    async def await_device_state_settle(self) -> None:
        """Poll the device status at a fixed interval until its state is applied."""
        while True:
            status = await asyncio.to_thread(self.api.get_status)
            if status.app_state == "applied":
                return
            logger.debug(f"Device state not settled, retrying in {self.settle_interval}s")
            await asyncio.sleep(self.settle_interval)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def queue_change(self, service_name: str, path: str, deleted: bool) -> None:
        """Record a file change (on the loop) and restart the service's debounce timer."""
        session = self.sessions.get(service_name)
        if session is None:
            return
        rel_path = Path(os.path.relpath(path, session.context)).as_posix()
        if deleted:
            session.updated.discard(rel_path)
            session.deleted.add(rel_path)
        else:
            session.deleted.discard(rel_path)
            session.updated.add(rel_path)
        if session.debounce is not None:
            session.debounce.cancel()
        loop = asyncio.get_running_loop()
        session.debounce = loop.call_later(self.debounce_seconds, self._flush, service_name)

    def _flush(self, service_name: str) -> None:
        session = self.sessions[service_name]
        session.debounce = None
        updated, deleted = sorted(session.updated), sorted(session.deleted)
        session.updated.clear()
        session.deleted.clear()
        self._spawn(self.handle_fs_events(service_name, updated, deleted))

    async def handle_fs_events(self, service_name: str, updated: list[str], deleted: list[str]) -> None:
        """
        React to a debounced batch of changes for one service.

        A Dockerfile change triggers a full rebuild; any other change is
        handed to the service's Livepush handle if it touches the image at
        all. Errors are reported and never end the watch loop.
        """
        session = self.sessions[service_name]
        if any(path in session.dockerfile_paths for path in [*updated, *deleted]):
            self._live(
                service_name,
                f"Detected Dockerfile change, performing full rebuild of service {service_name}",
            )
            await self.handle_service_rebuild(service_name)
            return

        if session.rebuilding:
            logger.debug(
                f"Rebuild of {service_name} in progress; deferring "
                f"{len(updated) + len(deleted)} changed file(s) until it finishes"
            )
            merge_changes(session.deferred_updated, session.deferred_deleted, updated, deleted)
            return

        if not session.livepush.livepush_needed(updated, deleted):
            return

        previous = session.patch_task
        if previous is not None and not previous.done():
            await session.livepush.cancel()
            await asyncio.wait([previous])

        self._live(service_name, f"Detected changes for container {service_name}, updating...")
        session.patch_task = asyncio.current_task()
        session.state = "patching"
        try:
            await session.livepush.perform_livepush(updated, deleted)
        except ContainerNotRunningError:
            self._error(
                service_name,
                "An error occured whilst trying to perform a livepush: \n"
                "   Livepush container not running",
            )
        except Exception as e:
            logger.debug(f"Livepush of {service_name} failed", exc_info=True)
            self._error(
                service_name,
                f"An error occured whilst trying to perform a livepush: \n   {e}",
            )
        finally:
            if session.state == "patching":
                session.state = "watching"

    async def handle_service_rebuild(self, service_name: str) -> None:
        """
        Rebuild a service on the device and replace its container.

        At most one rebuild per service is in flight: a newer request cancels
        the running one and waits for it to wind down. When several requests
        wait, only the latest goes ahead.
        """
        session = self.sessions[service_name]
        session.rebuild_generation += 1
        generation = session.rebuild_generation
        if session.rebuilding:
            self._live(service_name, f"Cancelling ongoing rebuild for service {service_name}")
            await self.cancel_rebuild(service_name)
            while session.rebuilding:
                await asyncio.sleep(self.settle_interval)
            if generation != session.rebuild_generation:
                return
        session.rebuilding = True
        session.rebuild_cancelled = False
        session.state = "rebuilding"

        try:
            def record_container(container_id: str) -> None:
                session.rebuild_container_id = container_id

            if self.device_info is None:
                raise RuntimeError("Livepush session was not initialised")
            try:
                task, stage_ids = await rebuild_single_task(
                    service_name,
                    self.engine,
                    self.sink,
                    self.project,
                    self.opts,
                    self.device_info,
                    container_id_cb=record_container,
                )
            except BuildError as e:
                if not session.rebuild_cancelled:
                    self._error(service_name, f"Rebuild of service {service_name} failed!\n  Error: {e}")
                return
            finally:
                session.rebuild_container_id = None

            if session.rebuild_cancelled:
                return

            await session.livepush.cleanup_intermediate_containers()
            old_container_id = await asyncio.to_thread(self.api.get_container_id, service_name)
            logger.debug(f"Removing old container {old_container_id} of {service_name}")
            await self.engine.remove_container(old_container_id, force=True)

            current_state = await asyncio.to_thread(self.api.get_target_state)
            target_state = generate_target_state(current_state, self.project.composition, self.env)
            await asyncio.to_thread(self.api.set_target_state, target_state)
            await self.await_device_state_settle()

            status = await asyncio.to_thread(self.api.get_status)
            container_id = next(
                (
                    c.container_id
                    for c in status.containers
                    if c.service_name == service_name and c.container_id
                ),
                None,
            )
            if container_id is None:
                raise RuntimeError(f"Could not find new container for service {service_name}")

            session.container_id = container_id
            session.livepush = self._make_livepush(task, stage_ids, container_id, session.context)
        except Exception as e:
            logger.debug(f"Rebuild of {service_name} failed", exc_info=True)
            self._error(service_name, f"There was an error rebuilding the service: {e}")
        finally:
            session.rebuilding = False
            session.rebuild_cancelled = False
            session.state = "watching"
            if generation == session.rebuild_generation:
                self._replay_deferred(service_name)

    def _replay_deferred(self, service_name: str) -> None:
        session = self.sessions[service_name]
        if not session.deferred_updated and not session.deferred_deleted:
            return
        updated, deleted = sorted(session.deferred_updated), sorted(session.deferred_deleted)
        session.deferred_updated.clear()
        session.deferred_deleted.clear()
        logger.debug(f"Applying {len(updated) + len(deleted)} change(s) deferred during rebuild")
        self._spawn(self.handle_fs_events(service_name, updated, deleted))

    async def cancel_rebuild(self, service_name: str) -> None:
        """Make the running rebuild of a service stop as soon as possible."""
        session = self.sessions[service_name]
        session.rebuild_cancelled = True
        session.state = "cancelling"
        # Removing the intermediate container makes the build step fail
        if session.rebuild_container_id is not None:
            try:
                await self.engine.remove_container(session.rebuild_container_id, force=True)
            except RuntimeError as e:
                logger.debug(f"Could not remove build container: {e}")
        await session.livepush.cancel()

    def close(self) -> None:
        """Stop watching the filesystem and drop pending debounced batches."""
        for session in self.sessions.values():
            if session.debounce is not None:
                session.debounce.cancel()
                session.debounce = None
        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None
        for task in list(self._pending):
            task.cancel()

    async def cleanup(self) -> None:
        """Remove the intermediate containers livepush created on the device."""
        logger.info("Cleaning up device...")
        for session in self.sessions.values():
            await session.livepush.cleanup_intermediate_containers()
