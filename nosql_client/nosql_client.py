import asyncio
from typing import Any, Callable, Optional

import aiohttp
from loguru import logger
from nosql_client.models import (
    CreateTableDetails,
    PollConfig,
    StatusResponse,
    TableLimits,
    WaitOutcome,
    WorkRequest,
)
from nosql_client.waiter import AsyncOperationWaiter

API_VERSION = "20190828"


class NosqlClient:
    """Async client for the NoSQL table service REST API.

    Use it as an async context manager so the underlying session is closed:

        async with NosqlClient(base_url, compartment_id) as client:
            work_request_id = await client.create_table(...)
            outcome = await client.wait_for_work_request(work_request_id)
    """

    def __init__(
        self,
        base_url: str,
        compartment_id: str,
        config: Optional[PollConfig] = None,
        on_status_change: Optional[Callable[[StatusResponse], Any]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.compartment_id = compartment_id
        self.config = config or PollConfig()
        self.logger = logger
        self.waiter = AsyncOperationWaiter(on_status_change=on_status_change)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "NosqlClient":
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("NosqlClient must be used as an async context manager")
        return self._session

    async def _request(
        self, method: str, path: str, **kwargs: Any
    ) -> tuple[Optional[Any], Any]:
        """Sends one request and returns its decoded JSON body and headers"""
        url = f"{self.base_url}/{API_VERSION}{path}"

        try:
            async with self.session.request(method, url, **kwargs) as response:
                response.raise_for_status()
                data = None
                if response.content_type == "application/json":
                    data = await response.json()
                return data, response.headers
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {method} {url}: {e.message}")
            raise
        except aiohttp.ClientError as e:
            self.logger.error(f"Request to {url} failed: {e}")
            raise

    def _key_params(self, key: list[str]) -> list[tuple[str, str]]:
        return [("compartmentId", self.compartment_id)] + [("key", k) for k in key]

    async def create_table(
        self,
        name: str,
        ddl_statement: str,
        table_limits: Optional[TableLimits] = None,
    ) -> str:
        """Submits a CREATE TABLE statement and returns the work request id"""
        details = CreateTableDetails(
            compartment_id=self.compartment_id,
            name=name,
            ddl_statement=ddl_statement,
            table_limits=table_limits,
        )
        _, headers = await self._request(
            "POST", "/tables", json=details.model_dump(by_alias=True, exclude_none=True)
        )
        work_request_id = headers["opc-work-request-id"]
        self.logger.info(f"Requested creation of table {name} ({work_request_id})")
        return work_request_id

    async def get_work_request(self, work_request_id: str) -> WorkRequest:
        data, _ = await self._request("GET", f"/workRequests/{work_request_id}")
        return WorkRequest.model_validate(data)

    async def work_request_status(self, work_request_id: str) -> StatusResponse:
        """Fetches a work request in the shape AsyncOperationWaiter polls for"""
        start_time = asyncio.get_running_loop().time()
        data, _ = await self._request("GET", f"/workRequests/{work_request_id}")
        work_request = WorkRequest.model_validate(data)
        reason = "; ".join(error.message for error in work_request.errors) or None

        return StatusResponse(
            status=work_request.status,
            raw_response=data,
            reason=reason,
            elapsed_time=asyncio.get_running_loop().time() - start_time,
        )

    async def wait_for_work_request(
        self,
        work_request_id: str,
        config: Optional[PollConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> WaitOutcome:
        return await self.waiter.wait(
            work_request_id,
            config or self.config,
            self.work_request_status,
            cancel_event=cancel_event,
        )

    async def update_row(
        self, table_name_or_id: str, value: dict[str, Any]
    ) -> dict[str, Any]:
        """Inserts or replaces a row"""
        data, _ = await self._request(
            "PUT",
            f"/tables/{table_name_or_id}/rows",
            json={"compartmentId": self.compartment_id, "value": value},
        )
        return data

    async def get_row(
        self, table_name_or_id: str, key: list[str]
    ) -> Optional[dict[str, Any]]:
        """Looks up a row by primary key, given as ["column:value", ...]"""
        data, _ = await self._request(
            "GET", f"/tables/{table_name_or_id}/rows", params=self._key_params(key)
        )
        return data.get("value")

    async def query(
        self, statement: str, consistency: str = "EVENTUAL"
    ) -> list[dict[str, Any]]:
        data, _ = await self._request(
            "POST",
            "/query",
            json={
                "compartmentId": self.compartment_id,
                "statement": statement,
                "consistency": consistency,
            },
        )
        return data.get("items", [])

    async def delete_row(self, table_name_or_id: str, key: list[str]) -> bool:
        data, _ = await self._request(
            "DELETE",
            f"/tables/{table_name_or_id}/rows",
            params=self._key_params(key),
        )
        return bool(data.get("isSuccess"))

    async def delete_table(self, table_name_or_id: str) -> str:
        """Submits a table drop and returns the work request id"""
        _, headers = await self._request(
            "DELETE",
            f"/tables/{table_name_or_id}",
            params={"compartmentId": self.compartment_id},
        )
        work_request_id = headers["opc-work-request-id"]
        self.logger.info(
            f"Requested drop of table {table_name_or_id} ({work_request_id})"
        )
        return work_request_id
