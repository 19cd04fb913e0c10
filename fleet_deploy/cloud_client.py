"""
HTTP client for the fleet cloud API.

Thin wrapper over ``requests`` for the handful of resources the deploy
pipeline touches: users, applications, releases, services, images, release
tags and registry tokens. Transient failures (connection errors, timeouts,
429 and 5xx responses) are retried with bounded exponential backoff.

All methods are blocking; async callers run them with ``asyncio.to_thread``.
"""

import logging
from datetime import UTC, datetime
from typing import Any

import requests

from fleet_common.config import RetryPolicy, get_api_token, get_api_url
from fleet_common.errors import CloudAPIError, ExpectedError
from fleet_common.events import RunContext
from fleet_common.models import Release, ServiceImage
from fleet_common.retry import retry_call

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


def is_transient(error: Exception) -> bool:
    """Whether a failed request is worth retrying."""
    if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True
    if isinstance(error, CloudAPIError) and error.status_code is not None:
        return error.status_code == 429 or error.status_code >= 500
    return False


def _odata_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def repo_from_image_location(location: str) -> str:
    """``registry/repo:tag`` -> ``repo``"""
    _, _, name = location.partition("/")
    if ":" in name.rsplit("/", 1)[-1]:
        name = name.rsplit(":", 1)[0]
    return name


class CloudClient:
    """
    Client for the cloud API.

    Args:
        api_url: API base URL (default: from configuration)
        token: Session or API token (default: from configuration)
        policy: Retry policy for transient failures (default: from environment)
        context: Per-run memo for device type architectures
    """

    def __init__(
        self,
        api_url: str | None = None,
        token: str | None = None,
        policy: RetryPolicy | None = None,
        context: RunContext | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.api_url = get_api_url(api_url)
        self.token = get_api_token(token)
        self.policy = policy or RetryPolicy.from_env()
        self.context = context or RunContext()
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        if not self.token:
            raise ExpectedError("Not logged in. Set FLEET_API_TOKEN or pass --token.")
        return {"Authorization": f"Bearer {self.token}"}

    def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        response = requests.request(
            method,
            f"{self.api_url}{path}",
            params=params,
            json=json,
            headers=self._headers(),
            timeout=self.timeout,
        )
        if response.status_code >= 400:
            raise CloudAPIError(
                f"{method} {path} failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        return response.json()

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        return retry_call(
            lambda: self._send(method, path, params=params, json=json),
            self.policy,
            is_transient,
            label=f"{method} {path}",
        )

    def _get_list(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        body = self._request("GET", path, params=params) or {}
        return body.get("d", [])

    # Users

    def get_user_info(self) -> dict[str, Any]:
        """Return ``{"id", "username", ...}`` for the authenticated user."""
        return self._request("GET", "/user/v1/whoami")

    def get_user_id(self) -> int:
        return self.get_user_info()["id"]

    # Applications

    def get_device_type_arch(self, device_type: str) -> str:
        """Return the CPU architecture slug of a device type, memoized per run."""
        arch = self.context.device_type_arch.get(device_type)
        if arch is not None:
            return arch
        results = self._get_list(
            "/v7/device_type",
            {
                "$select": "slug",
                "$filter": f"slug eq {_odata_string(device_type)}",
                "$expand": "is_of__cpu_architecture($select=slug)",
            },
        )
        if not results:
            raise ExpectedError(f'Invalid device type "{device_type}"')
        arch = results[0]["is_of__cpu_architecture"][0]["slug"]
        self.context.device_type_arch[device_type] = arch
        return arch

    def get_application(self, app: str | int) -> dict[str, Any]:
        """
        Look up an application by id or slug.

        Returns:
            Dict with ``id``, ``slug``, ``app_name``, ``device_type``, ``arch``
            and ``application_type`` ({slug, supports_multicontainer})

        Raises:
            ExpectedError: If the application does not exist
        """
        if isinstance(app, int) or str(app).isdigit():
            path = f"/v7/application({int(app)})"
            params: dict[str, Any] = {}
        else:
            path = "/v7/application"
            params = {"$filter": f"slug eq {_odata_string(str(app).lower())}"}
        params["$expand"] = (
            "is_for__device_type($select=slug),"
            "application_type($select=slug,supports_multicontainer)"
        )
        try:
            results = self._get_list(path, params)
        except CloudAPIError as e:
            if e.status_code == 404:
                results = []
            else:
                raise
        if not results:
            raise ExpectedError(f"Fleet not found: {app}")
        data = results[0]
        device_type = data["is_for__device_type"][0]["slug"]
        app_types = data.get("application_type") or [{}]
        return {
            "id": data["id"],
            "slug": data.get("slug"),
            "app_name": data.get("app_name"),
            "device_type": device_type,
            "arch": self.get_device_type_arch(device_type),
            "application_type": {
                "slug": app_types[0].get("slug"),
                "supports_multicontainer": bool(app_types[0].get("supports_multicontainer")),
            },
        }

    # Releases

    def create_release(
        self,
        app_id: int,
        user_id: int,
        composition: dict[str, Any],
        commit: str,
        *,
        semver: str | None = None,
        is_final: bool = True,
        contract: str | None = None,
    ) -> Release:
        body: dict[str, Any] = {
            "belongs_to__application": app_id,
            "is_created_by__user": user_id,
            "commit": commit,
            "composition": composition,
            "source": "local",
            "status": "running",
            "is_final": is_final,
            "start_timestamp": datetime.now(UTC).isoformat(),
        }
        if semver is not None:
            body["semver"] = semver
        if contract is not None:
            body["contract"] = contract
        data = self._request("POST", "/v7/release", json=body)
        return Release.from_dict({**body, **data})

    def update_release(self, release_id: int, fields: dict[str, Any]) -> None:
        """Save release fields in a single attempt; failures go to the caller."""
        self._send("PATCH", f"/v7/release({release_id})", json=fields)

    def get_release(self, release_id: int) -> Release:
        results = self._get_list(f"/v7/release({release_id})", {"$select": "id,commit,status"})
        if not results:
            raise ExpectedError(f"Release not found: {release_id}")
        return Release.from_dict(results[0])

    def set_release_note(self, release_id: int, note: str) -> None:
        self._request("PATCH", f"/v7/release({release_id})", json={"note": note})

    def set_release_tag(self, release_id: int, key: str, value: str) -> None:
        """Create or update a release tag."""
        try:
            self._request(
                "POST",
                "/v7/release_tag",
                json={"release": release_id, "tag_key": key, "value": value},
            )
        except CloudAPIError as e:
            if e.status_code != 409:
                raise
            self._request(
                "PATCH",
                "/v7/release_tag",
                params={
                    "$filter": f"release eq {release_id} and tag_key eq {_odata_string(key)}"
                },
                json={"value": value},
            )

    # Services and images

    def get_or_create_service(self, app_id: int, service_name: str) -> int:
        """Return the id of an application's service, creating it if needed."""
        results = self._get_list(
            "/v7/service",
            {
                "$select": "id",
                "$filter": (
                    f"application eq {app_id} and service_name eq {_odata_string(service_name)}"
                ),
            },
        )
        if results:
            return results[0]["id"]
        data = self._request(
            "POST", "/v7/service", json={"application": app_id, "service_name": service_name}
        )
        return data["id"]

    def create_image(self, service_id: int, service_name: str) -> ServiceImage:
        """Create an image record; the API assigns its registry location."""
        start = datetime.now(UTC)
        data = self._request(
            "POST",
            "/v7/image",
            json={
                "is_a_build_of__service": service_id,
                "status": "running",
                "start_timestamp": start.isoformat(),
            },
        )
        return ServiceImage(
            id=data["id"],
            service_name=service_name,
            location=data["is_stored_at__image_location"],
            start_timestamp=start,
        )

    def link_image_to_release(self, image_id: int, release_id: int) -> None:
        self._request(
            "POST",
            "/v7/image__is_part_of__release",
            json={"image": image_id, "is_part_of__release": release_id},
        )

    def update_image(self, image_id: int, fields: dict[str, Any]) -> None:
        self._request("PATCH", f"/v7/image({image_id})", json=fields)

    # Registry

    def get_previous_repos(self, app_id: int) -> list[str]:
        """
        Return the image repositories of the application's latest successful release.

        Failures are logged and yield an empty list.
        """
        try:
            releases = self._get_list(
                "/v7/release",
                {
                    "$select": "id",
                    "$filter": f"belongs_to__application eq {app_id} and status eq 'success'",
                    "$expand": (
                        "release_image($select=id;"
                        "$expand=image($select=is_stored_at__image_location))"
                    ),
                    "$orderby": "id desc",
                    "$top": "1",
                },
            )
        except (CloudAPIError, requests.exceptions.RequestException) as e:
            logger.debug(f"Failed to access previously pushed image repo: {e}")
            return []
        if not releases:
            return []
        repos = []
        for release_image in releases[0].get("release_image", []):
            location = release_image["image"][0].get("is_stored_at__image_location") or ""
            repo = repo_from_image_location(location)
            logger.debug(f"Requesting access to previously pushed image repo ({repo})")
            repos.append(repo)
        return repos

    def authorize_push(self, registry: str, repos: list[str], previous_repos: list[str]) -> str:
        """
        Request a registry token with pull/push scope on ``repos`` and ``previous_repos``.

        Returns:
            The token, or an empty string if the request failed
        """
        scopes = [f"repository:{repo}:pull,push" for repo in [*repos, *previous_repos]]
        try:
            body = self._request(
                "GET", "/auth/v1/token", params={"service": registry, "scope": scopes}
            )
        except (CloudAPIError, requests.exceptions.RequestException) as e:
            logger.debug(f"Failed to authorize push to {registry}: {e}")
            return ""
        return (body or {}).get("token", "")
