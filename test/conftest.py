from typing import AsyncGenerator

import pytest
import pytest_asyncio
from nosql_client.models import PollConfig
from nosql_client.nosql_client import NosqlClient
from nosql_server import NosqlServer

BASE_URL_TEMPLATE = "http://localhost:{}"
COMPARTMENT_ID = "ocid1.compartment.oc1..test"


@pytest_asyncio.fixture
async def server(
    unused_tcp_port_factory,
) -> AsyncGenerator[tuple[NosqlServer, int], None]:
    """Start and yield a test NosqlServer instance on a random port."""
    port = unused_tcp_port_factory()
    server_instance = NosqlServer(completion_time=0.3)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def config() -> PollConfig:
    """Provide a fast polling configuration for the client."""
    return PollConfig(interval=0.05, max_interval=0.2, timeout=5.0)


@pytest_asyncio.fixture
async def client(server, config) -> AsyncGenerator[NosqlClient, None]:
    _, port = server
    async with NosqlClient(
        BASE_URL_TEMPLATE.format(port), COMPARTMENT_ID, config
    ) as nosql_client:
        yield nosql_client
