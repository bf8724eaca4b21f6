"""Thin wrapper around the Neon control-plane REST API (v2)."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import requests

from pgstage.config import DEFAULT_API_HOST
from pgstage.exceptions import BranchProvisioningError, NeonApiError
from pgstage.types import Branch, BranchId, ProjectId

__all__ = ["NeonApiClient"]

logger = logging.getLogger(__name__)

# Compute for staging branches: smallest autoscaling size, read-write.
STAGING_ENDPOINT = {
    "type": "read_write",
    "autoscaling_limit_min_cu": 0.25,
    "autoscaling_limit_max_cu": 0.25,
}

_FINISHED_OPERATION_STATES = {"finished", "skipped"}
_FAILED_OPERATION_STATES = {"failed", "error", "cancelled"}


class NeonApiClient:
    """Client for projects, branches and connection URIs.

    Implements the branch-provisioning interface used by the migration
    orchestrator: ``create_branch`` and ``delete_branch`` raise
    BranchProvisioningError, every other call raises NeonApiError.
    """

    def __init__(
        self,
        api_key: str,
        api_host: str = DEFAULT_API_HOST,
        timeout: int = 30,
        wait_for_operations: bool = True,
        poll_interval: float = 1.0,
        operation_timeout: float = 120.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._api_host = api_host.rstrip("/")
        self._timeout = timeout
        self._wait_for_operations = wait_for_operations
        self._poll_interval = poll_interval
        self._operation_timeout = operation_timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "NeonApiClient":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        url = f"{self._api_host}{path}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        logger.debug(f"{method} {url}")

        try:
            response = self._session.request(
                method, url, params=params, json=json, timeout=self._timeout
            )
        except requests.RequestException as exc:
            raise NeonApiError(0, f"{method} {path} failed: {exc}") from exc

        if not response.ok:
            raise NeonApiError(response.status_code, _error_message(response))

        if not response.content:
            return {}
        return response.json()

    # Projects

    def list_projects(
        self,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        search: Optional[str] = None,
        org_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        data = self._request(
            "GET",
            "/projects",
            params={"cursor": cursor, "limit": limit, "search": search, "org_id": org_id},
        )
        return data.get("projects", [])

    def create_project(self, name: Optional[str] = None) -> dict[str, Any]:
        project: dict[str, Any] = {}
        if name:
            project["name"] = name
        return self._request("POST", "/projects", json={"project": project})

    def delete_project(self, project_id: ProjectId) -> dict[str, Any]:
        return self._request("DELETE", f"/projects/{project_id}")

    def get_project(self, project_id: ProjectId) -> dict[str, Any]:
        return self._request("GET", f"/projects/{project_id}")

    # Branches

    def list_branches(self, project_id: ProjectId) -> list[dict[str, Any]]:
        data = self._request("GET", f"/projects/{project_id}/branches")
        return data.get("branches", [])

    def create_branch(
        self,
        project_id: ProjectId,
        parent_id: Optional[BranchId] = None,
        name: Optional[str] = None,
    ) -> Branch:
        """Create a branch with a read-write endpoint.

        Without ``parent_id`` Neon forks the project's primary branch.
        """
        branch: dict[str, Any] = {}
        if name:
            branch["name"] = name
        if parent_id:
            branch["parent_id"] = parent_id

        try:
            data = self._request(
                "POST",
                f"/projects/{project_id}/branches",
                json={"branch": branch, "endpoints": [dict(STAGING_ENDPOINT)]},
            )
        except NeonApiError as exc:
            raise BranchProvisioningError(
                f"Failed to create branch in project {project_id}: {exc}"
            ) from exc

        created = Branch.from_api(data["branch"])
        logger.info(f"Created branch {created.id} in project {project_id}")

        try:
            self._await_operations(project_id, data.get("operations", []))
        except NeonApiError as exc:
            raise BranchProvisioningError(
                f"Branch {created.id} was created but did not become ready: {exc}",
                branch=created,
            ) from exc
        return created

    def delete_branch(self, project_id: ProjectId, branch_id: BranchId) -> None:
        try:
            self._request("DELETE", f"/projects/{project_id}/branches/{branch_id}")
        except NeonApiError as exc:
            raise BranchProvisioningError(
                f"Failed to delete branch {branch_id} in project {project_id}: {exc}"
            ) from exc

    # Connections

    def get_connection_uri(
        self,
        project_id: ProjectId,
        database_name: str,
        role_name: str,
        branch_id: Optional[BranchId] = None,
    ) -> str:
        data = self._request(
            "GET",
            f"/projects/{project_id}/connection_uri",
            params={
                "branch_id": branch_id,
                "database_name": database_name,
                "role_name": role_name,
            },
        )
        return data["uri"]

    def _await_operations(
        self, project_id: ProjectId, operations: list[dict[str, Any]]
    ) -> None:
        """Poll until the branch's compute operations have finished."""
        if not self._wait_for_operations:
            return

        pending = [op["id"] for op in operations if "id" in op]
        deadline = time.monotonic() + self._operation_timeout

        while pending:
            still_pending = []
            for op_id in pending:
                data = self._request(
                    "GET", f"/projects/{project_id}/operations/{op_id}"
                )
                status = data.get("operation", {}).get("status")
                if status in _FAILED_OPERATION_STATES:
                    raise NeonApiError(0, f"Operation {op_id} ended with status {status}")
                if status not in _FINISHED_OPERATION_STATES:
                    still_pending.append(op_id)

            pending = still_pending
            if not pending:
                return
            if time.monotonic() >= deadline:
                raise NeonApiError(
                    0, f"Timed out waiting for operations: {', '.join(pending)}"
                )
            time.sleep(self._poll_interval)


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason
    if isinstance(body, dict) and body.get("message"):
        return body["message"]
    return response.text or response.reason
