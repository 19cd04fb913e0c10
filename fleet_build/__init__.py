"""
Fleet Build module.

This module turns a project directory into built images: ignore filtering,
project resolution, context packaging, build task splitting and Dockerfile
resolution, QEMU emulation and concurrent build execution against a
container engine.
"""

from .builder import build_project, inspect_build_results, perform_builds
from .docker_engine import DockerEngine
from .packager import tar_directory
from .project import load_project, make_image_name
from .tasks import make_build_tasks, perform_resolution, split_build_stream

__all__ = [
    "DockerEngine",
    "build_project",
    "inspect_build_results",
    "load_project",
    "make_build_tasks",
    "make_image_name",
    "perform_builds",
    "perform_resolution",
    "split_build_stream",
    "tar_directory",
]
