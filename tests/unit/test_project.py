"""
Unit tests for fleet_build.project.

Tests composition loading, normalization and project validation.
"""

import tempfile
from pathlib import Path

import pytest

from fleet_build.project import (
    DOCKER_HUB_CANONICAL,
    create_project,
    get_contract_content,
    load_project,
    make_image_name,
    parse_registry_secrets,
    service_dirs_from_composition,
    validate_project_directory,
)
from fleet_common.errors import ComposeParseError, ExpectedError

COMPOSE_WEB_DB = """
version: "2.1"
services:
  web:
    build: ./web
    environment:
      - PORT=80
    volumes:
      - web-data:/data
  db:
    image: postgres:15
"""


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class TestMakeImageName:
    """Test suite for make_image_name."""

    def test_without_tag(self):
        assert make_image_name("MyProject", "web") == "myproject_web"

    def test_with_tag(self):
        assert make_image_name("proj", "web", "latest") == "proj_web:latest"

    def test_colon_in_parts_replaced(self):
        """Test that a colon inside a part cannot be mistaken for the tag separator."""
        assert make_image_name("a:b", "web", "v:1") == "a_b_web:v_1"


class TestCreateProject:
    """Test suite for create_project and composition normalization."""

    def test_normalizes_lists_and_declares_volumes(self):
        """Test list-form environment becomes a dict and named volumes are declared."""
        project = create_project("/src/app", COMPOSE_WEB_DB, project_name="app")
        web = project.composition["services"]["web"]
        assert web["build"] == {"context": "./web"}
        assert web["environment"] == {"PORT": "80"}
        assert "web-data" in project.composition["volumes"]

    def test_descriptors_in_composition_order(self):
        """Test one descriptor per service, build ones tagged with a generated name."""
        project = create_project("/src/app", COMPOSE_WEB_DB, project_name="app")
        assert [d.service_name for d in project.descriptors] == ["web", "db"]
        web, db = project.descriptors
        assert not web.is_external
        assert web.image["tag"] == "app_web"
        assert db.is_external
        assert db.image == "postgres:15"

    def test_image_tag_applied_to_generated_names(self):
        project = create_project("/src/app", COMPOSE_WEB_DB, project_name="app", image_tag="v2")
        assert project.descriptors[0].image["tag"] == "app_web:v2"

    def test_invalid_service_name(self):
        with pytest.raises(ComposeParseError):
            create_project("/src", "services:\n  'bad name':\n    image: alpine\n")

    def test_service_without_build_or_image(self):
        with pytest.raises(ComposeParseError):
            create_project("/src", "services:\n  web:\n    restart: always\n")

    def test_malformed_yaml(self):
        with pytest.raises(ComposeParseError):
            create_project("/src", "services: [unclosed\n")


class TestLoadProject:
    """Test suite for load_project."""

    def test_explicit_image_needs_no_files(self, temp_dir):
        """Test that an explicit image synthesizes a one-service composition."""
        project = load_project(str(temp_dir), image="alpine:3")
        assert list(project.composition["services"]) == ["main"]
        assert project.composition["services"]["main"]["image"] == "alpine:3"

    def test_alternative_dockerfile_then_compose_added(self, temp_dir):
        """Test a custom Dockerfile default composition, re-resolved once a compose file exists."""
        (temp_dir / "custom").mkdir()
        (temp_dir / "custom" / "Dockerfile.prod").write_text("FROM alpine\n")

        project = load_project(str(temp_dir), dockerfile_path="custom/Dockerfile.prod")
        build = project.composition["services"]["main"]["build"]
        assert build == {"context": ".", "dockerfile": "custom/Dockerfile.prod"}

        (temp_dir / "docker-compose.yml").write_text(COMPOSE_WEB_DB)
        project = load_project(str(temp_dir), dockerfile_path="custom/Dockerfile.prod")
        assert list(project.composition["services"]) == ["web", "db"]

    def test_project_name_defaults_to_directory(self, temp_dir):
        (temp_dir / "Dockerfile").write_text("FROM alpine\n")
        project = load_project(str(temp_dir))
        assert project.name == temp_dir.name

    def test_dev_overlay_merged_for_local(self, temp_dir):
        """Test that docker-compose.dev.yml services are merged only for local pushes."""
        (temp_dir / "docker-compose.yml").write_text(COMPOSE_WEB_DB)
        (temp_dir / "docker-compose.dev.yml").write_text(
            "services:\n  db:\n    image: postgres:16\n"
        )
        assert load_project(str(temp_dir)).composition["services"]["db"]["image"] == "postgres:15"
        local = load_project(str(temp_dir), is_local=True)
        assert local.composition["services"]["db"]["image"] == "postgres:16"


class TestServiceDirs:
    """Test suite for service_dirs_from_composition."""

    def test_maps_services_to_contexts(self):
        project = create_project("/src/app", COMPOSE_WEB_DB)
        dirs = service_dirs_from_composition("/src/app", project.composition)
        assert dirs == {"web": "web", "db": "."}


class TestValidateProjectDirectory:
    """Test suite for validate_project_directory."""

    def test_missing_directory(self, temp_dir):
        with pytest.raises(ExpectedError, match="Could not access source folder"):
            validate_project_directory(str(temp_dir / "missing"))

    def test_no_project_files(self, temp_dir):
        with pytest.raises(ExpectedError, match="no \"Dockerfile"):
            validate_project_directory(str(temp_dir))

    def test_compose_in_parent_folder(self, temp_dir):
        """Test that a compose file only in the parent folder is flagged."""
        (temp_dir / "docker-compose.yml").write_text(COMPOSE_WEB_DB)
        sub = temp_dir / "web"
        sub.mkdir()
        (sub / "Dockerfile").write_text("FROM alpine\n")
        with pytest.raises(ExpectedError, match="parent directory"):
            validate_project_directory(str(sub))
        result = validate_project_directory(str(sub), no_parent_check=True)
        assert result.dockerfile_path == ""

    def test_dockerfile_outside_project(self, temp_dir):
        with pytest.raises(ExpectedError, match="parent folder"):
            validate_project_directory(str(temp_dir), dockerfile_path="../Dockerfile")

    def test_dockerfile_normalized(self, temp_dir):
        (temp_dir / "custom").mkdir()
        (temp_dir / "custom" / "Dockerfile.prod").write_text("FROM alpine\n")
        result = validate_project_directory(
            str(temp_dir), dockerfile_path="./custom/Dockerfile.prod"
        )
        assert result.dockerfile_path == "custom/Dockerfile.prod"


class TestRegistrySecrets:
    """Test suite for registry secrets parsing."""

    def test_docker_hub_alias_mirrored(self, temp_dir):
        path = temp_dir / "secrets.yml"
        path.write_text("docker.io:\n  username: me\n  password: pw\n")
        secrets = parse_registry_secrets(str(path))
        assert secrets[DOCKER_HUB_CANONICAL] == {"username": "me", "password": "pw"}

    def test_unknown_extension(self, temp_dir):
        path = temp_dir / "secrets.txt"
        path.write_text("{}")
        with pytest.raises(ExpectedError):
            parse_registry_secrets(str(path))

    def test_missing_password(self, temp_dir):
        path = temp_dir / "secrets.json"
        path.write_text('{"registry.example.com": {"username": "me"}}')
        with pytest.raises(ExpectedError, match="password"):
            parse_registry_secrets(str(path))


class TestContract:
    """Test suite for get_contract_content."""

    def test_missing_contract(self, temp_dir):
        assert get_contract_content(str(temp_dir / "balena.yml")) is None

    def test_invalid_type(self, temp_dir):
        path = temp_dir / "balena.yml"
        path.write_text("type: something.else\n")
        with pytest.raises(ExpectedError, match="allowed application type"):
            get_contract_content(str(path))
