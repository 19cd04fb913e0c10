"""
Device log relay.

Renders the supervisor's newline-delimited JSON log stream through a
ProgressSink, one ``log`` event per line, prefixed with the service name.
"""

import asyncio
import logging
import threading
from datetime import UTC, datetime
from typing import Any

import requests

from fleet_common.errors import DeviceAPIError
from fleet_common.events import ProgressSink, ServiceEvent

from .api import DeviceAPI

logger = logging.getLogger(__name__)

_END = object()


def display_log_object(
    log: dict[str, Any],
    sink: ProgressSink,
    system: bool = False,
    filter_services: list[str] | None = None,
) -> bool:
    """
    Render one device log object.

    With ``filter_services``, only those services' logs are shown (plus
    system logs if ``system`` is set). Without it, ``system`` shows only
    system logs.

    Returns:
        Whether the log was shown
    """
    service_name = log.get("serviceName")
    if service_name is not None:
        if filter_services:
            if service_name not in filter_services:
                return False
        elif system:
            return False
    elif filter_services and not system:
        return False

    timestamp = log.get("timestamp")
    when = (
        datetime.fromtimestamp(timestamp / 1000, UTC)
        if isinstance(timestamp, (int, float))
        else datetime.now(UTC)
    )
    sink.on_service_event(
        service_name or "", ServiceEvent("log", str(log.get("message", "")), timestamp=when)
    )
    return True


async def display_device_logs(
    api: DeviceAPI,
    sink: ProgressSink,
    system: bool = False,
    filter_services: list[str] | None = None,
) -> None:
    """
    Relay device logs until the device closes the stream.

    The blocking HTTP stream is read on a daemon thread so that cancelling
    this coroutine (e.g. on interrupt) never waits for the device.

    Raises:
        DeviceAPIError: If the log stream cannot be opened
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def post(item: Any) -> None:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, item)
        except RuntimeError:
            # Loop already closed; nobody is listening any more
            pass

    def pump() -> None:
        try:
            for log in api.iter_logs():
                post(log)
        except DeviceAPIError as e:
            post(e)
        except requests.exceptions.RequestException as e:
            logger.debug(f"Log stream ended: {e}")
        finally:
            post(_END)

    threading.Thread(target=pump, name="device-logs", daemon=True).start()
    while True:
        item = await queue.get()
        if item is _END:
            logger.warning("Connection to device lost")
            return
        if isinstance(item, DeviceAPIError):
            raise item
        display_log_object(item, sink, system, filter_services)
