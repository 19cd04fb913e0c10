"""
Client for a device supervisor's local API.

Every call has a bounded timeout and fails fast: device calls are not
retried, so a device that stops answering surfaces as an error at once.
"""

import json
import logging
import os
from collections.abc import Iterator
from typing import Any

import requests

from fleet_common.config import get_device_timeout
from fleet_common.errors import (
    BadRequestDeviceAPIError,
    DeviceAPIError,
    ServiceUnavailableAPIError,
)
from fleet_common.models import DeviceInfo, DeviceStatus

logger = logging.getLogger(__name__)

DEFAULT_SUPERVISOR_PORT = 48484

ENDPOINTS = {
    "target_state": "v2/local/target-state",
    "device_info": "v2/local/device-info",
    "logs": "v2/local/logs",
    "ping": "ping",
    "version": "v2/version",
    "status": "v2/state/status",
    "container_id": "v2/containerId",
}


class DeviceAPI:
    """
    Supervisor API of one device in local mode.

    Args:
        host: Device address
        port: Supervisor port (default 48484)
        timeout: Request timeout in seconds (default: FLEET_DEVICE_TIMEOUT)

    FLEET_SUPERVISOR_ADDRESS overrides the base URL (e.g. for a mock server).
    """

    def __init__(self, host: str, port: int = DEFAULT_SUPERVISOR_PORT, timeout: float | None = None):
        self.host = host
        self.port = port
        self.timeout = timeout if timeout is not None else get_device_timeout()
        base_url = os.environ.get("FLEET_SUPERVISOR_ADDRESS") or f"http://{host}:{port}/"
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"

    def _url(self, action: str) -> str:
        return f"{self.base_url}{ENDPOINTS[action]}"

    def _request(
        self,
        method: str,
        action: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> Any:
        """
        Send a request and return the decoded body.

        Raises:
            BadRequestDeviceAPIError: On HTTP 400
            ServiceUnavailableAPIError: On HTTP 503
            DeviceAPIError: On any other non-200 response or a connection failure
        """
        url = self._url(action)
        logger.debug(f"Sending request to {url}")
        try:
            response = requests.request(
                method, url, params=params, json=json_body, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise DeviceAPIError(f"Request to {url} failed: {e}") from e

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        if response.status_code == 200:
            return body
        message = body.get("message", "") if isinstance(body, dict) else str(body or "")
        if response.status_code == 400:
            raise BadRequestDeviceAPIError(message)
        if response.status_code == 503:
            raise ServiceUnavailableAPIError(message)
        raise DeviceAPIError(message or f"Unexpected status {response.status_code} from {url}")

    def _request_object(
        self, method: str, action: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        body = self._request(method, action, params=params)
        if not isinstance(body, dict):
            raise DeviceAPIError(f"Unexpected response from {self._url(action)}: {body!r}")
        return body

    def ping(self) -> None:
        self._request("GET", "ping")

    def get_version(self) -> str:
        body = self._request_object("GET", "version")
        if body.get("status") != "success":
            raise DeviceAPIError("Non-successful response from supervisor version endpoint")
        return body["version"]

    def get_target_state(self) -> dict[str, Any]:
        return self._request_object("GET", "target_state")["state"]

    def set_target_state(self, state: dict[str, Any]) -> None:
        self._request("POST", "target_state", json_body=state)

    def get_device_info(self) -> DeviceInfo:
        return DeviceInfo.from_dict(self._request_object("GET", "device_info")["info"])

    def get_status(self) -> DeviceStatus:
        body = self._request_object("GET", "status")
        if body.get("status") != "success":
            raise DeviceAPIError("Non-successful response from supervisor status endpoint")
        return DeviceStatus.from_dict(body)

    def get_container_id(self, service_name: str) -> str:
        body = self._request_object("GET", "container_id", params={"serviceName": service_name})
        if body.get("status") != "success":
            raise DeviceAPIError("Non-successful response from supervisor containerId endpoint")
        return body["containerId"]

    def iter_logs(self) -> Iterator[dict[str, Any]]:
        """
        Stream device logs, one decoded JSON object per line.

        The stream has no read timeout; it ends when the device closes it.
        Lines that are not valid JSON are skipped.

        Raises:
            DeviceAPIError: If the stream cannot be opened
        """
        url = self._url("logs")
        try:
            response = requests.get(url, stream=True, timeout=(self.timeout, None))
        except requests.exceptions.RequestException as e:
            raise DeviceAPIError(f"Request to {url} failed: {e}") from e
        if response.status_code != 200:
            response.close()
            raise DeviceAPIError("Non-200 response from log streaming endpoint")
        with response:
            for line in response.iter_lines(decode_unicode=True):
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except ValueError:
                    logger.debug(f"Skipping malformed log line: {line!r}")
