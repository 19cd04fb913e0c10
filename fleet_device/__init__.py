"""
Fleet Device module.

This module deploys projects to devices in local mode: the supervisor API
client, the build-on-device deploy driver, the device log relay and the
livepush engine and session manager.
"""

from .api import DeviceAPI
from .deploy import DeviceDeployOptions, deploy_to_device, generate_target_state
from .livepush import Livepush

__all__ = [
    "DeviceAPI",
    "DeviceDeployOptions",
    "Livepush",
    "deploy_to_device",
    "generate_target_state",
]
