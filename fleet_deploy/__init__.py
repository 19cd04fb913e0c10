"""
Fleet Deploy module.

This module creates releases on the cloud API from built images: the
cloud API client, the Release Manager (tag, authorize, push, record), the
legacy builder upload and the ``deploy`` command orchestration.
"""

from .cloud_client import CloudClient
from .deploy import FleetDeployOptions, deploy_to_fleet
from .release import deploy_project, parse_release_tag_keys_and_values

__all__ = [
    "CloudClient",
    "FleetDeployOptions",
    "deploy_project",
    "deploy_to_fleet",
    "parse_release_tag_keys_and_values",
]
