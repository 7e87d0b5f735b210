from typing import AsyncGenerator, Tuple

import pytest
import pytest_asyncio
from control_plane_server import ControlPlaneServer
from provisioning_client.auth import create_credential
from provisioning_client.executor import RequestExecutor
from provisioning_client.models import (
    OrchestratorConfig,
    PollingConfig,
    RetryConfig,
)

BASE_URL_TEMPLATE = "http://localhost:{}"
TOKEN = "dapi-test-token"


@pytest_asyncio.fixture
async def server(
    unused_tcp_port_factory,
) -> AsyncGenerator[Tuple[ControlPlaneServer, int], None]:
    """Start and yield a ControlPlaneServer instance on a random port."""
    port = unused_tcp_port_factory()
    server_instance = ControlPlaneServer(completion_time=0.2, token=TOKEN)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def credential(server):
    _, port = server
    return create_credential(TOKEN, BASE_URL_TEMPLATE.format(port))


@pytest_asyncio.fixture
async def executor() -> AsyncGenerator[RequestExecutor, None]:
    async with RequestExecutor() as instance:
        yield instance


@pytest.fixture
def config() -> OrchestratorConfig:
    """Fast retry and polling settings for the local server."""
    return OrchestratorConfig(
        retry=RetryConfig(max_attempts=3, base_delay=0.01, max_delay=0.05, jitter=0.0),
        polling=PollingConfig(timeout=5.0, interval=0.05),
    )

