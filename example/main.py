import asyncio
import json
import sys
from typing import Any, Optional

import aiohttp
import click
from loguru import logger
from nosql_client.exceptions import WaiterError
from nosql_client.models import PollConfig, StatusResponse, TableLimits
from nosql_client.nosql_client import NosqlClient
from nosql_server import NosqlServer

AUDIENCE_ROW = {
    "cookie_id": 123,
    "audience_data": {
        "ipaddr": "10.0.0.3",
        "audience_segment": {
            "sports_lover": "2018-11-30",
            "book_reader": "2018-12-01",
        },
    },
}
ROW_KEY = ["cookie_id:123"]


async def status_changed(status_response: StatusResponse):
    print(f"Work request status: {status_response.status.value}")


async def run_example(
    client: NosqlClient, table_name: str, config: Optional[PollConfig] = None
) -> dict[str, Any]:
    """Create a table, exercise every row operation on it, then drop it."""
    # A LONG primary key and a single JSON column
    ddl = (
        f"CREATE TABLE IF NOT EXISTS {table_name} ("
        "cookie_id LONG, "
        "audience_data JSON, "
        "PRIMARY KEY(cookie_id))"
    )
    limits = TableLimits(max_read_units=50, max_write_units=50, max_storage_in_gbs=1)

    work_request_id = await client.create_table(table_name, ddl, limits)
    outcome = await client.wait_for_work_request(work_request_id, config)
    outcome.raise_for_outcome()
    print(f"Created table {table_name}")

    await client.update_row(table_name, AUDIENCE_ROW)

    row = await client.get_row(table_name, ROW_KEY)
    if row is not None:
        print(json.dumps(row))

    # The table name is taken from the statement itself
    items = await client.query(f"select * from {table_name} where cookie_id = 123")
    for item in items:
        print(json.dumps(item))

    deleted = await client.delete_row(table_name, ROW_KEY)
    print(f"Deleted key: {ROW_KEY}\nresult: {deleted}")

    work_request_id = await client.delete_table(table_name)
    drop_outcome = await client.wait_for_work_request(work_request_id, config)
    drop_outcome.raise_for_outcome()
    print(f"Dropped table {table_name}")

    return {"row": row, "items": items, "deleted": deleted}


async def run(
    compartment_id: str,
    base_url: Optional[str],
    table_name: str,
    port: int,
    config: PollConfig,
) -> dict[str, Any]:
    if base_url is None:
        server = NosqlServer(completion_time=3.0)
        await server.start(port=port)
        base_url = f"http://localhost:{port}"
        print(f"Server started on {base_url}")
    else:
        server = None

    try:
        async with NosqlClient(
            base_url, compartment_id, config, on_status_change=status_changed
        ) as client:
            return await run_example(client, table_name)
    finally:
        if server is not None:
            await server.stop()


@click.command()
@click.argument("compartment_id")
@click.option(
    "--base-url",
    envvar="NOSQL_BASE_URL",
    default=None,
    help="Service endpoint (default: start a local mock service)",
)
@click.option("--table", "table_name", default="audience", show_default=True)
@click.option("--port", default=8000, show_default=True, help="Port for the local mock")
@click.option("--interval", default=1.0, show_default=True, help="Seconds between polls")
@click.option("--timeout", default=300.0, show_default=True, help="Seconds to wait")
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v INFO, -vv DEBUG)",
)
def main(
    compartment_id: str,
    base_url: Optional[str],
    table_name: str,
    port: int,
    interval: float,
    timeout: float,
    verbose: int,
) -> None:
    """Run the table lifecycle demo against COMPARTMENT_ID."""
    logger.remove()
    logger.add(sys.stderr, level={0: "WARNING", 1: "INFO"}.get(verbose, "DEBUG"))

    config = PollConfig(interval=interval, timeout=timeout)
    try:
        asyncio.run(run(compartment_id, base_url, table_name, port, config))
    except (WaiterError, aiohttp.ClientError) as e:
        raise click.ClickException(str(e))


if __name__ == "__main__":
    main()
