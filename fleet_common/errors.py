"""
Error taxonomy for the fleet pipeline.

ExpectedError and its subclasses are user-facing: the CLI prints their
message without a traceback and exits with status 1. Anything else is
treated as an internal error and logged with its traceback.
"""


class ExpectedError(Exception):
    """An error caused by user input or project configuration."""


class ComposeParseError(ExpectedError):
    """A compose file could not be parsed or failed validation."""


class BuildError(ExpectedError):
    """
    Aggregate error for one or more failed service builds.

    Raised once, after every build task has finished, so that each failed
    service and its message are reported together.
    """

    def __init__(self, failures: list[tuple[str, str]]):
        self.failures = failures
        lines = ["Some services failed to build:"]
        for service_name, message in failures:
            lines.append(f"\tService: {service_name}")
            lines.append(f"\tError: {message}")
        super().__init__("\n".join(lines))


class CloudAPIError(RuntimeError):
    """A cloud API request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DeviceAPIError(RuntimeError):
    """A request to a device's local supervisor API failed."""


class BadRequestDeviceAPIError(DeviceAPIError):
    """The device rejected the request (HTTP 400)."""


class ServiceUnavailableAPIError(DeviceAPIError):
    """The device supervisor is not ready (HTTP 503)."""


class ContainerNotRunningError(RuntimeError):
    """A livepush operation targeted a container that is not running."""
