import asyncio
import random
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from aiohttp import web
from loguru import logger

# collection -> (id field, name field, list field, state while starting, ready state, deleted state)
_COLLECTIONS = {
    "clusters": ("cluster_id", "cluster_name", "clusters", "PENDING", "RUNNING", "TERMINATED"),
    "instance-pools": (
        "instance_pool_id",
        "instance_pool_name",
        "instance_pools",
        "ACTIVE",
        "ACTIVE",
        "DELETED",
    ),
}


class ControlPlaneServer:
    """In-process stand-in for the resource management API.

    Resources become ready `completion_time` seconds after they are created.
    Scripted responses queued with `script()` take precedence over the
    simulation, one per matching request.
    """

    def __init__(
        self,
        completion_time: float = 10.0,
        error_rate: float = 0.0,
        token: Optional[str] = None,
    ):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.token = token
        self.response_delay = 0.0
        self.requests = []
        self.resources: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.runs: Dict[str, Dict[str, Any]] = {}
        self._scripted = defaultdict(deque)
        self._next_id = 0
        self.runner = None
        self.app = web.Application()
        self.app.router.add_route("*", "/api/{version}/{tail:.*}", self.handle_api)
        self.logger = logger

    def script(self, method: str, path: str, *responses) -> None:
        """Queue responses given as (status, body) or (status, body, headers)"""
        for response in responses:
            self._scripted[(method.upper(), path)].append(response)

    def calls_to(self, method: str, path: str) -> int:
        return sum(
            1 for r in self.requests if r["method"] == method.upper() and r["path"] == path
        )

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    def _elapsed(self, record: Dict[str, Any]) -> float:
        return (datetime.now() - record["created_at"]).total_seconds()

    async def handle_api(self, request: web.Request) -> web.StreamResponse:
        body = None
        if request.can_read_body:
            try:
                body = await request.json()
            except ValueError:
                body = None
        self.requests.append(
            {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "body": body,
                "authorization": request.headers.get("Authorization"),
                "content_type": request.headers.get("Content-Type"),
            }
        )

        if self.response_delay:
            await asyncio.sleep(self.response_delay)

        scripted = self._scripted.get((request.method, request.path))
        if scripted:
            status, payload, *rest = scripted.popleft()
            headers = rest[0] if rest else None
            self.logger.info(f"Returning scripted {status} for {request.method} {request.path}")
            if isinstance(payload, bytes):
                return web.Response(
                    status=status,
                    body=payload,
                    headers=headers or {"Content-Type": "application/json; charset=utf-8"},
                )
            if isinstance(payload, str):
                return web.Response(status=status, text=payload, headers=headers)
            return web.json_response(payload, status=status, headers=headers)

        if self.token is not None and request.headers.get("Authorization") != f"Bearer {self.token}":
            return web.json_response(
                {"error_code": "PERMISSION_DENIED", "message": "invalid token"}, status=401
            )

        if random.random() < self.error_rate:
            self.logger.info("Returning transient error")
            return web.json_response(
                {"error_code": "TEMPORARILY_UNAVAILABLE", "message": "try again"}, status=503
            )

        collection, _, endpoint = request.match_info["tail"].rpartition("/")
        status, payload = self._simulate(collection, endpoint, request.query, body or {})
        return web.json_response(payload, status=status)

    def _simulate(
        self, collection: str, endpoint: str, query, body: Dict[str, Any]
    ) -> Tuple[int, Dict[str, Any]]:
        if collection in _COLLECTIONS:
            return self._simulate_resource(collection, endpoint, query, body)
        if collection == "jobs":
            return self._simulate_job(endpoint, query, body)
        if collection == "jobs/runs" and endpoint == "get":
            return self._simulate_run(query.get("run_id"))
        return 404, {"error_code": "ENDPOINT_NOT_FOUND", "message": f"no such endpoint {collection}/{endpoint}"}

    def _simulate_resource(self, collection, endpoint, query, body):
        id_field, _, list_field, starting, ready, deleted = _COLLECTIONS[collection]
        resources = self.resources[collection]

        def state_of(record):
            if record["deleted"]:
                return deleted
            return ready if self._elapsed(record) >= self.completion_time else starting

        def view(record):
            return {**record["spec"], id_field: record["id"], "state": state_of(record)}

        if endpoint == "create":
            resource_id = self._new_id(collection.split("-")[0].rstrip("s"))
            resources[resource_id] = {
                "id": resource_id,
                "spec": dict(body),
                "created_at": datetime.now(),
                "deleted": False,
            }
            self.logger.info(f"Created {collection} {resource_id}")
            return 200, {id_field: resource_id}

        if endpoint == "list":
            return 200, {list_field: [view(r) for r in resources.values()]}

        resource_id = query.get(id_field) if endpoint == "get" else body.get(id_field)
        record = resources.get(resource_id)
        if record is None:
            return 400, {
                "error_code": "RESOURCE_DOES_NOT_EXIST",
                "message": f"{id_field} {resource_id} does not exist",
            }

        if endpoint == "get":
            self.logger.info(
                f"Returning {state_of(record)} for {resource_id} (elapsed: {self._elapsed(record):.1f}s)"
            )
            return 200, view(record)
        if endpoint == "delete":
            record["deleted"] = True
            return 200, {}
        if endpoint in ("edit", "start"):
            record["spec"].update({k: v for k, v in body.items() if k != id_field})
            record["created_at"] = datetime.now()
            record["deleted"] = False
            return 200, {}
        return 404, {"error_code": "ENDPOINT_NOT_FOUND", "message": endpoint}

    def _simulate_job(self, endpoint, query, body):
        jobs = self.resources["jobs"]
        if endpoint == "create":
            self._next_id += 1
            job_id = self._next_id
            jobs[str(job_id)] = {"job_id": job_id, "settings": dict(body)}
            return 200, {"job_id": job_id}
        if endpoint == "list":
            return 200, {"jobs": list(jobs.values())}

        job_id = str(query.get("job_id") if endpoint == "get" else body.get("job_id"))
        job = jobs.get(job_id)
        if job is None:
            return 400, {"error_code": "RESOURCE_DOES_NOT_EXIST", "message": f"job {job_id} does not exist"}
        if endpoint == "get":
            return 200, job
        if endpoint == "reset":
            job["settings"] = dict(body.get("new_settings") or {})
            return 200, {}
        if endpoint == "delete":
            del jobs[job_id]
            return 200, {}
        if endpoint == "run-now":
            self._next_id += 1
            run_id = self._next_id
            self.runs[str(run_id)] = {"run_id": run_id, "job_id": job["job_id"], "created_at": datetime.now()}
            return 200, {"run_id": run_id}
        return 404, {"error_code": "ENDPOINT_NOT_FOUND", "message": endpoint}

    def _simulate_run(self, run_id):
        run = self.runs.get(str(run_id))
        if run is None:
            return 400, {"error_code": "RESOURCE_DOES_NOT_EXIST", "message": f"run {run_id} does not exist"}
        elapsed = self._elapsed(run)
        if elapsed >= self.completion_time:
            state = {"life_cycle_state": "TERMINATED", "result_state": "SUCCESS"}
        elif elapsed >= self.completion_time / 2:
            state = {"life_cycle_state": "RUNNING"}
        else:
            state = {"life_cycle_state": "PENDING"}
        return 200, {"run_id": run["run_id"], "job_id": run["job_id"], "state": state}

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
