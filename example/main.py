import asyncio
import json
import os

from control_plane_server import ControlPlaneServer
from provisioning_client.auth import resolve_credential
from provisioning_client.executor import RequestExecutor
from provisioning_client.models import OrchestratorConfig, PollingConfig, RetryConfig
from provisioning_client.orchestrator import ResourceOrchestrator
from provisioning_client.resource_kinds import get_resource_kind


async def status_changed(outcome):
    print(f"Status changed to: {outcome.status.value} (state {outcome.last_state})")
    print(f"Elapsed time: {outcome.elapsed:.2f}s")


async def main():
    PORT = 8000
    token = os.environ.get("CONTROL_PLANE_TOKEN", "dapi-example")
    server = ControlPlaneServer(completion_time=5.0, error_rate=0.1, token=token)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    credential = resolve_credential(
        {
            "token": token,
            "base_url": os.environ.get("CONTROL_PLANE_URL", f"http://localhost:{PORT}"),
        }
    )
    config = OrchestratorConfig(
        retry=RetryConfig(max_attempts=5, base_delay=0.5, max_delay=4.0),
        polling=PollingConfig(timeout=60.0, interval=1.0),
        budget=120.0,
        reuse_existing=True,
    )

    desired = [
        ("instance_pool", {"instance_pool_name": "shared-pool", "node_type_id": "Standard_DS3_v2"}),
        ("cluster", {"cluster_name": "etl", "spark_version": "14.3.x-scala2.12", "num_workers": 2}),
        ("cluster", {"cluster_name": "adhoc", "spark_version": "14.3.x-scala2.12", "num_workers": 1}),
    ]

    async with RequestExecutor(config=config.executor) as executor:
        orchestrators = [
            ResourceOrchestrator(
                get_resource_kind(kind),
                credential,
                executor,
                config,
                on_status_change=status_changed,
            )
            for kind, _ in desired
        ]
        results = await asyncio.gather(
            *[o.provision(spec) for o, (_, spec) in zip(orchestrators, desired)]
        )

    for result in results:
        record = result.to_record()
        print(
            json.dumps(
                {
                    "kind": record["resource_kind"],
                    "id": record["resource_id"],
                    "status": record["status"],
                    "calls": len(record["calls"]),
                    "error": record["error"],
                },
                indent=2,
            )
        )

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
