"""Per-kind REST endpoints and state mappings for the control plane resources.

Each ``ResourceKind`` is a strategy: the orchestrator never inspects a
response body itself, it asks the kind for the identifier, the raw state and
the ``OperationStatus`` that raw state means for the current target
(``ready`` after create/update/start, ``deleted`` after delete).
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from provisioning_client.errors import ConfigurationError
from provisioning_client.models import ApiRequest, ApiResponse, OperationStatus

READY = "ready"
DELETED = "deleted"

S = OperationStatus


@dataclass(frozen=True)
class ResourceKind:
    name: str
    api_prefix: str
    id_field: str
    name_field: str
    list_field: str
    ready_states: Mapping[str, OperationStatus]
    deleted_states: Mapping[str, OperationStatus] = field(default_factory=dict)
    state_getter: Optional[Callable[[Dict[str, Any]], Optional[str]]] = None
    name_getter: Optional[Callable[[Dict[str, Any]], Optional[str]]] = None
    edit_builder: Optional[Callable[[str, Dict[str, Any]], ApiRequest]] = None
    start_endpoint: Optional[str] = None
    synchronous_delete: bool = False

    def _path(self, endpoint: str) -> str:
        return f"{self.api_prefix}/{endpoint}"

    def create_request(self, desired_spec: Dict[str, Any]) -> ApiRequest:
        return ApiRequest(method="POST", path=self._path("create"), body=dict(desired_spec))

    def status_request(self, resource_id: str) -> ApiRequest:
        return ApiRequest(
            method="GET", path=self._path("get"), params={self.id_field: str(resource_id)}
        )

    def edit_request(self, resource_id: str, desired_spec: Dict[str, Any]) -> ApiRequest:
        if self.edit_builder is not None:
            return self.edit_builder(resource_id, desired_spec)
        body = dict(desired_spec)
        body[self.id_field] = resource_id
        return ApiRequest(method="POST", path=self._path("edit"), body=body)

    def delete_request(self, resource_id: str) -> ApiRequest:
        return ApiRequest(
            method="POST", path=self._path("delete"), body={self.id_field: resource_id}
        )

    def start_request(self, resource_id: str) -> ApiRequest:
        if self.start_endpoint is None:
            raise ConfigurationError(f"{self.name} resources cannot be started")
        return ApiRequest(
            method="POST",
            path=self._path(self.start_endpoint),
            body={self.id_field: resource_id},
        )

    def list_request(self) -> ApiRequest:
        return ApiRequest(method="GET", path=self._path("list"))

    def extract_id(self, response: ApiResponse) -> Optional[str]:
        value = response.body.get(self.id_field)
        if value is None or value == "":
            return None
        return str(value)

    def resource_name(self, body: Dict[str, Any]) -> Optional[str]:
        if self.name_getter is not None:
            return self.name_getter(body)
        return body.get(self.name_field)

    def raw_state(self, body: Dict[str, Any]) -> str:
        if self.state_getter is not None:
            state = self.state_getter(body)
        else:
            state = body["state"]
        if not isinstance(state, str):
            raise TypeError(f"{self.name} state is not a string: {state!r}")
        return state

    def status_for(self, raw_state: str, target: str = READY) -> OperationStatus:
        mapping = self.deleted_states if target == DELETED else self.ready_states
        return mapping.get(raw_state, OperationStatus.unknown)

    def extract_status(
        self, response: ApiResponse, target: str = READY
    ) -> Tuple[OperationStatus, str]:
        raw_state = self.raw_state(response.body)
        return self.status_for(raw_state, target), raw_state

    def status_extractor(self, target: str = READY):
        return lambda response: self.extract_status(response, target)

    def find_existing(
        self, response: ApiResponse, name: str
    ) -> Optional[Tuple[str, Optional[str]]]:
        """Returns (id, raw state) of the first listed resource named `name`"""
        for item in response.body.get(self.list_field) or []:
            if self.resource_name(item) != name:
                continue
            resource_id = item.get(self.id_field)
            if resource_id is None:
                continue
            try:
                state = self.raw_state(item)
            except (KeyError, TypeError):
                state = None
            return str(resource_id), state
        return None


CLUSTER = ResourceKind(
    name="cluster",
    api_prefix="/api/2.0/clusters",
    id_field="cluster_id",
    name_field="cluster_name",
    list_field="clusters",
    ready_states={
        "PENDING": S.pending,
        "RESTARTING": S.running,
        "RESIZING": S.running,
        "TERMINATING": S.running,
        "RUNNING": S.succeeded,
        "ERROR": S.failed,
        "TERMINATED": S.failed,
    },
    deleted_states={
        "PENDING": S.running,
        "RUNNING": S.running,
        "RESTARTING": S.running,
        "RESIZING": S.running,
        "TERMINATING": S.running,
        "TERMINATED": S.succeeded,
        "ERROR": S.failed,
    },
    start_endpoint="start",
)

INSTANCE_POOL = ResourceKind(
    name="instance_pool",
    api_prefix="/api/2.0/instance-pools",
    id_field="instance_pool_id",
    name_field="instance_pool_name",
    list_field="instance_pools",
    ready_states={
        "ACTIVE": S.succeeded,
        "STOPPED": S.failed,
        "DELETED": S.failed,
    },
    deleted_states={
        "ACTIVE": S.running,
        "STOPPED": S.running,
        "DELETED": S.succeeded,
    },
)


def _job_state(body: Dict[str, Any]) -> Optional[str]:
    # a job definition has no lifecycle; it exists once jobs/get returns it
    return "READY" if body.get("job_id") is not None else None


def _job_name(body: Dict[str, Any]) -> Optional[str]:
    if "settings" in body:
        return (body.get("settings") or {}).get("name")
    return body.get("name")


def _job_reset(resource_id: str, desired_spec: Dict[str, Any]) -> ApiRequest:
    return ApiRequest(
        method="POST",
        path="/api/2.1/jobs/reset",
        body={"job_id": resource_id, "new_settings": dict(desired_spec)},
    )


JOB = ResourceKind(
    name="job",
    api_prefix="/api/2.1/jobs",
    id_field="job_id",
    name_field="name",
    list_field="jobs",
    ready_states={"READY": S.succeeded},
    state_getter=_job_state,
    name_getter=_job_name,
    edit_builder=_job_reset,
    synchronous_delete=True,
)


_RUN_IN_PROGRESS = {
    "PENDING": S.pending,
    "QUEUED": S.pending,
    "BLOCKED": S.pending,
    "WAITING_FOR_RETRY": S.pending,
    "RUNNING": S.running,
    "TERMINATING": S.running,
}
_RUN_RESULTS = {
    "SUCCESS": S.succeeded,
    "SUCCESS_WITH_FAILURES": S.failed,
    "FAILED": S.failed,
    "TIMEDOUT": S.failed,
    "CANCELED": S.failed,
    "MAXIMUM_CONCURRENT_RUNS_REACHED": S.failed,
    "EXCLUDED": S.failed,
    "UPSTREAM_FAILED": S.failed,
    "UPSTREAM_CANCELED": S.failed,
}


def _job_run_state(body: Dict[str, Any]) -> str:
    state = body["state"]
    life_cycle_state = state["life_cycle_state"]
    if life_cycle_state == "TERMINATED":
        return f"TERMINATED:{state.get('result_state', 'UNKNOWN')}"
    return life_cycle_state


JOB_RUN = ResourceKind(
    name="job_run",
    api_prefix="/api/2.1/jobs/runs",
    id_field="run_id",
    name_field="run_name",
    list_field="runs",
    ready_states={
        **_RUN_IN_PROGRESS,
        **{f"TERMINATED:{result}": status for result, status in _RUN_RESULTS.items()},
        "SKIPPED": S.failed,
        "INTERNAL_ERROR": S.failed,
    },
    state_getter=_job_run_state,
)


def run_now_request(job_id: str, parameters: Optional[Dict[str, Any]] = None) -> ApiRequest:
    body: Dict[str, Any] = {"job_id": job_id}
    if parameters:
        body["job_parameters"] = dict(parameters)
    return ApiRequest(method="POST", path="/api/2.1/jobs/run-now", body=body)


RESOURCE_KINDS: Dict[str, ResourceKind] = {
    kind.name: kind for kind in (CLUSTER, INSTANCE_POOL, JOB)
}


def get_resource_kind(name: str) -> ResourceKind:
    try:
        return RESOURCE_KINDS[name]
    except KeyError:
        raise ConfigurationError(
            f"unknown resource kind {name!r}, expected one of {sorted(RESOURCE_KINDS)}"
        ) from None
