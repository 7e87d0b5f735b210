import pytest
from provisioning_client.errors import ConfigurationError
from provisioning_client.models import ApiResponse, OperationStatus
from provisioning_client.resource_kinds import (
    CLUSTER,
    DELETED,
    INSTANCE_POOL,
    JOB,
    JOB_RUN,
    get_resource_kind,
    run_now_request,
)


def response(body):
    return ApiResponse(status_code=200, body=body)


@pytest.mark.parametrize(
    "state, expected",
    [
        ("PENDING", OperationStatus.pending),
        ("RESIZING", OperationStatus.running),
        ("RUNNING", OperationStatus.succeeded),
        ("ERROR", OperationStatus.failed),
        ("TERMINATED", OperationStatus.failed),
        ("UNKNOWN", OperationStatus.unknown),
    ],
)
def test_cluster_ready_mapping(state, expected):
    status, raw = CLUSTER.extract_status(response({"cluster_id": "c-1", "state": state}))
    assert status is expected
    assert raw == state


def test_cluster_delete_mapping():
    assert CLUSTER.status_for("TERMINATED", DELETED) is OperationStatus.succeeded
    assert CLUSTER.status_for("TERMINATING", DELETED) is OperationStatus.running


def test_instance_pool_mapping():
    assert INSTANCE_POOL.status_for("ACTIVE") is OperationStatus.succeeded
    assert INSTANCE_POOL.status_for("DELETED") is OperationStatus.failed
    assert INSTANCE_POOL.status_for("DELETED", DELETED) is OperationStatus.succeeded


@pytest.mark.parametrize(
    "state, expected",
    [
        ({"life_cycle_state": "QUEUED"}, OperationStatus.pending),
        ({"life_cycle_state": "RUNNING"}, OperationStatus.running),
        ({"life_cycle_state": "TERMINATED", "result_state": "SUCCESS"}, OperationStatus.succeeded),
        ({"life_cycle_state": "TERMINATED", "result_state": "FAILED"}, OperationStatus.failed),
        ({"life_cycle_state": "INTERNAL_ERROR"}, OperationStatus.failed),
    ],
)
def test_job_run_mapping(state, expected):
    status, _ = JOB_RUN.extract_status(response({"run_id": 7, "state": state}))
    assert status is expected


def test_job_definition_is_ready_once_returned():
    status, raw = JOB.extract_status(response({"job_id": 12, "settings": {"name": "etl"}}))
    assert status is OperationStatus.succeeded
    assert raw == "READY"


def test_job_without_id_fails_extraction():
    with pytest.raises(TypeError):
        JOB.extract_status(response({}))


def test_requests_are_built_per_kind():
    create = CLUSTER.create_request({"cluster_name": "etl", "num_workers": 2})
    assert (create.method, create.path) == ("POST", "/api/2.0/clusters/create")
    assert create.body == {"cluster_name": "etl", "num_workers": 2}

    get = INSTANCE_POOL.status_request("p-1")
    assert (get.method, get.path) == ("GET", "/api/2.0/instance-pools/get")
    assert get.params == {"instance_pool_id": "p-1"}

    edit = CLUSTER.edit_request("c-1", {"num_workers": 4})
    assert edit.body == {"num_workers": 4, "cluster_id": "c-1"}

    reset = JOB.edit_request("12", {"name": "etl"})
    assert reset.path == "/api/2.1/jobs/reset"
    assert reset.body == {"job_id": "12", "new_settings": {"name": "etl"}}

    run = run_now_request("12", {"date": "2024-01-01"})
    assert run.path == "/api/2.1/jobs/run-now"
    assert run.body["job_parameters"] == {"date": "2024-01-01"}


def test_start_only_for_clusters():
    assert CLUSTER.start_request("c-1").path == "/api/2.0/clusters/start"
    with pytest.raises(ConfigurationError):
        INSTANCE_POOL.start_request("p-1")


def test_extract_id():
    assert CLUSTER.extract_id(response({"cluster_id": "c-1"})) == "c-1"
    assert JOB.extract_id(response({"job_id": 12})) == "12"
    assert CLUSTER.extract_id(response({})) is None
    assert CLUSTER.extract_id(response({"cluster_id": ""})) is None


def test_find_existing_by_name():
    listing = response(
        {
            "clusters": [
                {"cluster_id": "c-1", "cluster_name": "other", "state": "RUNNING"},
                {"cluster_id": "c-2", "cluster_name": "etl", "state": "PENDING"},
            ]
        }
    )
    assert CLUSTER.find_existing(listing, "etl") == ("c-2", "PENDING")
    assert CLUSTER.find_existing(listing, "missing") is None
    assert CLUSTER.find_existing(response({}), "etl") is None

    jobs = response({"jobs": [{"job_id": 3, "settings": {"name": "etl"}}]})
    assert JOB.find_existing(jobs, "etl") == ("3", "READY")


def test_registry():
    assert get_resource_kind("cluster") is CLUSTER
    assert get_resource_kind("instance_pool") is INSTANCE_POOL
    assert get_resource_kind("job") is JOB
    with pytest.raises(ConfigurationError):
        get_resource_kind("warehouse")
