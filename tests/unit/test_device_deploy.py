"""
Unit tests for fleet_device.deploy.

Tests environment parsing, stage id scanning, target state generation and
the supervisor checks made before a local deploy.
"""

import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest

from fleet_common.errors import BuildError, DeviceAPIError, ExpectedError
from fleet_common.models import DeviceInfo, ResolvedTask
from fleet_device.deploy import (
    DeviceDeployOptions,
    StageIdScanner,
    assign_docker_build_opts,
    check_supervisor,
    deploy_to_device,
    environment_from_input,
    extract_docker_arrow_message,
    generate_target_state,
    local_image_name,
    parse_version,
    rebuild_single_task,
    resolve_device_host,
)

COMPOSITION = {
    "version": "2.1",
    "services": {
        "web": {
            "build": {"context": "web"},
            "environment": {"PORT": "80"},
            "ports": ["80:80"],
        },
        "db": {"image": "postgres:15", "volumes": ["db-data:/var/lib/postgresql"]},
    },
    "volumes": {"db-data": {}},
}


class TestEnvironmentFromInput:
    """Test suite for environment_from_input."""

    def test_global_and_service_variables(self):
        env = environment_from_input(["DEBUG=1", "web:PORT=8080"], ["web", "db"])
        assert env == {"web": {"DEBUG": "1", "PORT": "8080"}, "db": {"DEBUG": "1"}}

    def test_unknown_service_prefix_is_part_of_name(self):
        env = environment_from_input(["cache:SIZE=10"], ["web"])
        assert env == {"web": {"cache:SIZE": "10"}}

    def test_value_may_contain_equals(self):
        env = environment_from_input(["URL=a=b"], ["web"])
        assert env["web"]["URL"] == "a=b"

    def test_unparseable(self):
        with pytest.raises(ExpectedError, match="Unable to parse"):
            environment_from_input(["NOVALUE"], ["web"])


class TestStageIdScanner:
    """Test suite for StageIdScanner."""

    def test_records_last_id_of_each_finished_stage(self):
        """Test that each FROM step closes the previous stage with its last image id."""
        scanner = StageIdScanner()
        lines = [
            "Step 1/6 : FROM node:18 AS builder",
            " ---> 1111aaaa",
            "Step 2/6 : RUN npm install",
            " ---> Running in 9999ffff",
            " ---> 2222bbbb",
            "Step 3/6 : FROM alpine AS assets",
            " ---> 3333cccc",
            "Step 4/6 : COPY x /x",
            " ---> 4444dddd",
            "Step 5/6 : FROM alpine",
            " ---> 5555eeee",
            "Step 6/6 : COPY --from=builder /app /app",
            " ---> 6666ffff",
        ]
        for line in lines:
            scanner("web", line)
        assert scanner.stage_ids == {"web": ["2222bbbb", "4444dddd"]}

    def test_single_stage_has_no_ids(self):
        scanner = StageIdScanner()
        scanner("web", "Step 1/2 : FROM alpine")
        scanner("web", " ---> 1111aaaa")
        assert scanner.stage_ids == {"web": []}

    def test_services_tracked_separately(self):
        scanner = StageIdScanner()
        scanner("a", "Step 1/2 : FROM alpine")
        scanner("a", " ---> aaaa")
        scanner("b", "Step 1/2 : FROM alpine")
        scanner("a", "Step 2/2 : FROM debian")
        assert scanner.stage_ids == {"a": ["aaaa"], "b": []}

    def test_container_ids_reported(self):
        seen = []
        scanner = StageIdScanner(on_container_id=seen.append)
        scanner("web", " ---> Running in 0123abcd")
        assert seen == ["0123abcd"]

    def test_arrow_message(self):
        assert extract_docker_arrow_message(" ---> Using cache") == "Using cache"
        assert extract_docker_arrow_message("Step 1/1 : FROM alpine") is None


class TestGenerateTargetState:
    """Test suite for generate_target_state."""

    def test_local_app_replaced(self):
        """Test that every service runs its local image and the rest of the state is kept."""
        current = {"local": {"name": "device", "config": {"A": "1"}, "apps": {"old": {}}}}
        state = generate_target_state(current, COMPOSITION, {"web": {"DEBUG": "1"}})

        assert state["local"]["config"] == {"A": "1"}
        assert current["local"]["apps"] == {"old": {}}
        [app] = state["local"]["apps"].values()
        assert app["name"] == "localapp"
        assert app["volumes"] == {"db-data": {}}
        web = app["services"]["1"]
        db = app["services"]["2"]
        assert web["serviceName"] == "web"
        assert web["image"] == "local_image_web:latest"
        assert web["environment"] == {"PORT": "80", "DEBUG": "1"}
        assert web["ports"] == ["80:80"]
        assert "build" not in web
        assert db["image"] == "local_image_db:latest"
        assert db["running"] is True

    def test_composition_not_modified(self):
        generate_target_state({}, COMPOSITION, {"web": {"X": "1"}})
        assert COMPOSITION["services"]["web"]["environment"] == {"PORT": "80"}
        assert "build" in COMPOSITION["services"]["web"]


class TestBuildOptions:
    """Test suite for device build options."""

    @pytest.mark.asyncio
    async def test_local_labels_and_cache(self):
        engine = Mock()
        engine.list_image_ids = AsyncMock(return_value=["sha256:a", "sha256:b"])
        task = ResolvedTask(index=0, service_name="web", args={"X": "1"})
        opts = DeviceDeployOptions(source=".", device_host="10.0.0.2", nocache=True)

        [result] = await assign_docker_build_opts(engine, [task], opts)

        assert result.docker_opts.tag == local_image_name("web") == "local_image_web:latest"
        assert result.docker_opts.cache_from == ["sha256:a", "sha256:b"]
        assert result.docker_opts.labels["io.resin.local.service"] == "web"
        assert result.docker_opts.build_args == {"X": "1"}
        assert result.docker_opts.nocache

    @pytest.mark.asyncio
    async def test_rebuild_unknown_service(self):
        project = Mock()
        opts = DeviceDeployOptions(source=".", device_host="10.0.0.2")
        with patch("fleet_device.deploy._project_tasks", return_value=[]):
            with pytest.raises(ExpectedError, match="Could not find build task"):
                await rebuild_single_task(
                    "web", Mock(), Mock(), project, opts, DeviceInfo("intel-nuc", "amd64")
                )


class TestSupervisorChecks:
    """Test suite for check_supervisor and host resolution."""

    def make_api(self, version="14.11.2"):
        api = Mock()
        api.host = "10.0.0.2"
        api.port = 48484
        api.get_version.return_value = version
        return api

    def test_parse_version(self):
        assert parse_version("v14.11.2+rev1") == (14, 11, 2)
        with pytest.raises(ValueError):
            parse_version("latest")

    @pytest.mark.asyncio
    async def test_live_supported(self):
        assert await check_supervisor(self.make_api(), live=True)

    @pytest.mark.asyncio
    async def test_live_disabled_on_old_supervisor(self):
        assert not await check_supervisor(self.make_api("9.6.9"), live=True)

    @pytest.mark.asyncio
    async def test_too_old_for_local_mode(self):
        with pytest.raises(ExpectedError, match="does not support multicontainer"):
            await check_supervisor(self.make_api("7.21.3"), live=False)

    @pytest.mark.asyncio
    async def test_unreachable(self):
        api = self.make_api()
        api.ping.side_effect = DeviceAPIError("connection refused")
        with pytest.raises(ExpectedError, match="local mode enabled"):
            await check_supervisor(api, live=True)

    def test_plain_address_not_resolved(self):
        assert resolve_device_host("192.168.1.10") == "192.168.1.10"

    def test_mdns_name_resolved(self):
        with patch(
            "fleet_device.deploy.socket.getaddrinfo",
            return_value=[(2, 1, 6, "", ("192.168.1.42", 0))],
        ):
            assert resolve_device_host("abc1234.local") == "192.168.1.42"


@pytest.fixture
def device_project():
    with tempfile.TemporaryDirectory() as tmpdir:
        (Path(tmpdir) / "Dockerfile").write_text("FROM alpine\nCMD [\"sleep\", \"infinity\"]\n")
        yield tmpdir


@pytest.fixture
def device_api():
    api = Mock()
    api.host = "192.168.1.10"
    api.port = 48484
    api.get_version.return_value = "14.0.0"
    api.get_device_info.return_value = DeviceInfo(device_type="raspberrypi4-64", arch="aarch64")
    api.get_target_state.return_value = {"local": {"name": "my-device"}}
    return api


@pytest.fixture
def device_engine():
    engine = Mock()
    engine.port = 2375
    engine.ping = AsyncMock(return_value=True)
    engine.list_image_ids = AsyncMock(return_value=["sha256:cached"])
    engine.build = AsyncMock(return_value=[])
    return engine


class TestDeployToDevice:
    """Test suite for deploy_to_device with a mocked supervisor and engine."""

    async def run(self, opts, device_api, device_engine):
        with patch("fleet_device.deploy.DeviceAPI", return_value=device_api), patch(
            "fleet_device.deploy.DockerEngine", return_value=device_engine
        ), patch("fleet_device.deploy.display_device_logs", AsyncMock()) as mock_logs:
            await deploy_to_device(opts, Mock())
        return mock_logs

    @pytest.mark.asyncio
    async def test_detached_build_and_target_state(self, device_project, device_api, device_engine):
        """Test that the project is built on the device and its target state applied."""
        opts = DeviceDeployOptions(
            source=device_project,
            device_host="192.168.1.10",
            nolive=True,
            detached=True,
            env=["main:PORT=80"],
        )

        mock_logs = await self.run(opts, device_api, device_engine)

        context, docker_opts = device_engine.build.await_args.args
        assert docker_opts.tag == "local_image_main:latest"
        assert docker_opts.cache_from == ["sha256:cached"]
        assert docker_opts.labels == {
            "io.resin.local.image": "1",
            "io.resin.local.service": "main",
        }

        [target_state] = device_api.set_target_state.call_args.args
        assert target_state["local"]["name"] == "my-device"
        service = target_state["local"]["apps"]["1"]["services"]["1"]
        assert service["image"] == "local_image_main:latest"
        assert service["environment"] == {"PORT": "80"}
        assert service["running"] is True
        mock_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_logs_streamed_without_livepush(self, device_project, device_api, device_engine):
        opts = DeviceDeployOptions(
            source=device_project, device_host="192.168.1.10", nolive=True, system=True
        )

        with patch("fleet_device.live.LivepushManager") as mock_manager:
            mock_logs = await self.run(opts, device_api, device_engine)

        mock_manager.assert_not_called()
        mock_logs.assert_awaited_once()
        assert mock_logs.await_args.args[0] is device_api
        assert mock_logs.await_args.args[2:] == (True, None)

    @pytest.mark.asyncio
    async def test_livepush_session_started_and_closed(
        self, device_project, device_api, device_engine
    ):
        """Test that a live session is initialised before the logs and cleaned up after."""
        manager = Mock()
        manager.init = AsyncMock()
        manager.cleanup = AsyncMock()
        async def build(context, docker_opts, dockerfile=None, on_line=None):
            for line in ["Step 1/2 : FROM alpine", " ---> 4a8bd1e5d9f2", "Step 2/2 : CMD sleep"]:
                on_line(line)
            return []

        device_engine.build.side_effect = build
        opts = DeviceDeployOptions(source=device_project, device_host="192.168.1.10")

        with patch("fleet_device.live.LivepushManager", return_value=manager) as mock_manager:
            mock_logs = await self.run(opts, device_api, device_engine)

        assert mock_manager.call_args.kwargs["stage_ids"] == {"main": []}
        manager.init.assert_awaited_once()
        mock_logs.assert_awaited_once()
        manager.close.assert_called_once()
        manager.cleanup.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_engine_unreachable(self, device_project, device_api, device_engine):
        device_engine.ping.return_value = False
        opts = DeviceDeployOptions(source=device_project, device_host="192.168.1.10", nolive=True)

        with pytest.raises(ExpectedError, match="container engine"):
            await self.run(opts, device_api, device_engine)

        device_engine.build.assert_not_awaited()
        device_api.set_target_state.assert_not_called()

    @pytest.mark.asyncio
    async def test_build_failure_leaves_state_alone(
        self, device_project, device_api, device_engine
    ):
        device_engine.build.side_effect = RuntimeError("Failed to build image: no space left")
        opts = DeviceDeployOptions(source=device_project, device_host="192.168.1.10", nolive=True)

        with pytest.raises(BuildError) as exc_info:
            await self.run(opts, device_api, device_engine)

        assert exc_info.value.failures == [("main", "Failed to build image: no space left")]
        device_api.set_target_state.assert_not_called()
