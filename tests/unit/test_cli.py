"""
Unit tests for the fleet command line.

Commands are invoked with click's CliRunner; the pipeline entry points
they call are mocked.
"""

import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, patch

import click
import pytest
from click.testing import CliRunner

from fleet_cli.cli import cli, parse_build_args
from fleet_common.errors import BuildError, ExpectedError
from fleet_common.models import BuiltImage, Release


@pytest.fixture
def project_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        (Path(tmpdir) / "Dockerfile").write_text("FROM alpine\n")
        yield tmpdir


@pytest.fixture
def runner():
    return CliRunner()


class TestParseBuildArgs:
    """Test suite for parse_build_args."""

    def test_pairs(self):
        assert parse_build_args(("A=1", "B=x=y", "C=")) == {"A": "1", "B": "x=y", "C": ""}

    def test_missing_separator(self):
        with pytest.raises(click.BadParameter):
            parse_build_args(("NOVALUE",))


class TestBuildCommand:
    """Test suite for fleet build."""

    def test_requires_fleet_or_device_type(self, runner, project_dir):
        result = runner.invoke(cli, ["build", project_dir])
        assert result.exit_code == 2
        assert "--fleet" in result.output

    def test_build_for_device_type(self, runner, project_dir):
        """Test that an explicit arch and device type build without the cloud API."""
        images = [BuiltImage(service_name="main", name="proj_main")]
        with patch("fleet_cli.cli.build_project", AsyncMock(return_value=images)) as mock_build:
            result = runner.invoke(
                cli,
                [
                    "build",
                    project_dir,
                    "--deviceType",
                    "raspberrypi4-64",
                    "--arch",
                    "aarch64",
                    "--buildArg",
                    "DEBUG=1",
                    "--nocache",
                ],
            )

        assert result.exit_code == 0, result.output
        assert "Build succeeded!" in result.output
        kwargs = mock_build.await_args.kwargs
        assert kwargs["arch"] == "aarch64"
        assert kwargs["device_type"] == "raspberrypi4-64"
        assert kwargs["build_opts"].build_args == {"DEBUG": "1"}
        assert kwargs["build_opts"].nocache
        assert kwargs["use_gitignore"] is True

    def test_build_failure_exits_1(self, runner, project_dir):
        with patch(
            "fleet_cli.cli.build_project",
            AsyncMock(side_effect=BuildError([("main", "step failed")])),
        ):
            result = runner.invoke(
                cli, ["build", project_dir, "--deviceType", "intel-nuc", "--arch", "amd64"]
            )
        assert result.exit_code == 1
        assert "Some services failed to build" in result.output


class TestDeployCommand:
    """Test suite for fleet deploy."""

    def test_options_passed_through(self, runner, project_dir):
        with patch(
            "fleet_cli.cli.deploy_to_fleet",
            AsyncMock(return_value=Release(id=1, commit="abc123")),
        ) as mock_deploy:
            result = runner.invoke(
                cli,
                [
                    "--token",
                    "tok",
                    "deploy",
                    "myorg/myfleet",
                    "--source",
                    project_dir,
                    "--release-tag",
                    "env",
                    "--release-tag",
                    "prod",
                    "--draft",
                    "--nologupload",
                ],
            )

        assert result.exit_code == 0, result.output
        assert "Release: abc123" in result.output
        engine, cloud, opts, sink = mock_deploy.await_args.args
        assert cloud.token == "tok"
        assert opts.fleet == "myorg/myfleet"
        assert opts.release_tags == ["env", "prod"]
        assert opts.draft
        assert not opts.upload_logs

    def test_bad_build_arg(self, runner, project_dir):
        result = runner.invoke(
            cli, ["deploy", "myfleet", "--source", project_dir, "--buildArg", "BROKEN"]
        )
        assert result.exit_code == 2


class TestPushCommand:
    """Test suite for fleet push."""

    def test_device_options(self, runner, project_dir):
        with patch("fleet_cli.cli.deploy_to_device", AsyncMock()) as mock_push:
            result = runner.invoke(
                cli,
                [
                    "push",
                    "192.168.1.10",
                    "--source",
                    project_dir,
                    "--env",
                    "main:PORT=80",
                    "--service",
                    "main",
                    "--nolive",
                    "--detached",
                ],
            )

        assert result.exit_code == 0, result.output
        opts, _ = mock_push.await_args.args
        assert opts.device_host == "192.168.1.10"
        assert opts.env == ["main:PORT=80"]
        assert opts.services == ["main"]
        assert opts.nolive and opts.detached
        assert opts.device_port is None

    def test_expected_error(self, runner, project_dir):
        with patch(
            "fleet_cli.cli.deploy_to_device",
            AsyncMock(side_effect=ExpectedError("Could not communicate with device supervisor")),
        ):
            result = runner.invoke(cli, ["push", "10.0.0.2", "--source", project_dir])
        assert result.exit_code == 1
        assert "Error: Could not communicate" in result.output

    def test_interrupt(self, runner, project_dir):
        with patch("fleet_cli.cli.deploy_to_device", AsyncMock(side_effect=KeyboardInterrupt())):
            result = runner.invoke(cli, ["push", "10.0.0.2", "--source", project_dir])
        assert result.exit_code == 130

    def test_missing_project_files(self, runner):
        with tempfile.TemporaryDirectory() as empty_dir:
            result = runner.invoke(cli, ["push", "10.0.0.2", "--source", empty_dir])
        assert result.exit_code == 1
        assert "Dockerfile" in result.output
