import random
import re
import uuid
from datetime import datetime, timedelta
from typing import Optional

from aiohttp import web
from loguru import logger

API_PREFIX = "/20190828"

_PRIMARY_KEY = re.compile(r"PRIMARY\s+KEY\s*\(\s*(\w+)", re.IGNORECASE)
_TERMINAL = ("SUCCEEDED", "FAILED", "CANCELED")
_QUERY = re.compile(
    r"^\s*select\s+\*\s+from\s+(\w+)(?:\s+where\s+(\w+)\s*=\s*(.+?))?\s*;?\s*$",
    re.IGNORECASE,
)


class _WorkRequest:
    def __init__(
        self, operation_type: str, table_name: str, compartment_id: str, terminal: str
    ):
        self.id = f"ocid1.nosqlworkrequest.{uuid.uuid4().hex}"
        self.operation_type = operation_type
        self.table_name = table_name
        self.compartment_id = compartment_id
        self.terminal = terminal
        self.submitted = datetime.now()
        self.polled = False

    def status(self, completion_time: float) -> str:
        elapsed = (datetime.now() - self.submitted).total_seconds()
        if elapsed >= completion_time:
            return self.terminal
        return "IN_PROGRESS" if self.polled else "ACCEPTED"

    def to_json(self, status: str) -> dict:
        errors = []
        if status == "FAILED":
            message = f"Failed to run {self.operation_type} on {self.table_name}"
            errors.append({"code": "InternalServerError", "message": message})
        return {
            "id": self.id,
            "status": status,
            "operationType": self.operation_type,
            "compartmentId": self.compartment_id,
            "percentComplete": 100.0 if status == "SUCCEEDED" else 0.0,
            "resources": [{"entityType": "TABLE", "identifier": self.table_name}],
            "errors": errors,
        }


class NosqlServer:
    """In-memory stand-in for the NoSQL table service.

    Work requests move ACCEPTED -> IN_PROGRESS -> terminal once completion_time
    seconds have passed since submission. The terminal status is drawn when the
    work request is submitted, using failure_rate and cancel_rate. Settled work
    requests stay queryable for retention seconds.
    """

    def __init__(
        self,
        completion_time: float = 2.0,
        failure_rate: float = 0.0,
        cancel_rate: float = 0.0,
        retention: float = 3600.0,
    ):
        self.completion_time = completion_time
        self.failure_rate = failure_rate
        self.cancel_rate = cancel_rate
        self.retention = retention
        self.tables: dict[str, dict] = {}
        self.rows: dict[str, dict[str, dict]] = {}
        self.work_requests: dict[str, _WorkRequest] = {}
        self._unsettled: dict[str, _WorkRequest] = {}
        self.app = web.Application()
        self.app.router.add_routes(
            [
                web.post(f"{API_PREFIX}/tables", self.handle_create_table),
                web.delete(f"{API_PREFIX}/tables/{{table}}", self.handle_delete_table),
                web.get(f"{API_PREFIX}/workRequests/{{id}}", self.handle_work_request),
                web.put(f"{API_PREFIX}/tables/{{table}}/rows", self.handle_update_row),
                web.get(f"{API_PREFIX}/tables/{{table}}/rows", self.handle_get_row),
                web.delete(
                    f"{API_PREFIX}/tables/{{table}}/rows", self.handle_delete_row
                ),
                web.post(f"{API_PREFIX}/query", self.handle_query),
            ]
        )
        self.runner: Optional[web.AppRunner] = None
        self.logger = logger

    def _draw_terminal(self) -> str:
        roll = random.random()
        if roll < self.failure_rate:
            return "FAILED"
        if roll < self.failure_rate + self.cancel_rate:
            return "CANCELED"
        return "SUCCEEDED"

    def _submit(
        self,
        operation_type: str,
        table_name: str,
        compartment_id: str,
        terminal: Optional[str] = None,
    ) -> web.Response:
        self._prune()
        terminal = terminal or self._draw_terminal()
        work_request = _WorkRequest(
            operation_type, table_name, compartment_id, terminal
        )
        self.work_requests[work_request.id] = work_request
        self._unsettled[work_request.id] = work_request
        self.logger.info(
            f"Accepted {operation_type} work request {work_request.id} for {table_name}"
        )
        headers = {"opc-work-request-id": work_request.id}
        return web.Response(status=202, headers=headers)

    def _settle(self) -> None:
        """Applies the effect of each work request that reached a terminal status"""
        for work_request in list(self._unsettled.values()):
            status = work_request.status(self.completion_time)
            if status not in _TERMINAL:
                continue
            del self._unsettled[work_request.id]
            self._apply(work_request, status)

    def _apply(self, work_request: _WorkRequest, status: str) -> None:
        name = work_request.table_name
        if work_request.operation_type == "CREATE_TABLE":
            if status != "SUCCEEDED":
                self.tables.pop(name, None)
                self.rows.pop(name, None)
            elif name in self.tables:
                self.tables[name]["state"] = "ACTIVE"
        elif status == "SUCCEEDED":
            self.tables.pop(name, None)
            self.rows.pop(name, None)
        elif name in self.tables:
            self.tables[name]["state"] = "ACTIVE"

    def _prune(self) -> None:
        """Forgets settled work requests submitted more than retention seconds ago"""
        cutoff = datetime.now() - timedelta(seconds=self.retention)
        expired = [
            work_request_id
            for work_request_id, work_request in self.work_requests.items()
            if work_request_id not in self._unsettled
            and work_request.submitted < cutoff
        ]
        for work_request_id in expired:
            del self.work_requests[work_request_id]

    def _active_table(self, name: str) -> dict:
        self._settle()
        table = self.tables.get(name)
        if table is None or table["state"] != "ACTIVE":
            raise web.HTTPNotFound(reason="TableNotFound")
        return table

    def _row_key(self, request: web.Request, table: dict) -> str:
        for key in request.query.getall("key", []):
            column, _, value = key.partition(":")
            if column == table["primary_key"]:
                return value
        raise web.HTTPBadRequest(reason="InvalidParameter")

    @staticmethod
    def _require_compartment(compartment_id: Optional[str]) -> str:
        if not compartment_id:
            raise web.HTTPBadRequest(reason="MissingParameter")
        return compartment_id

    async def handle_create_table(self, request: web.Request) -> web.Response:
        self._settle()
        body = await request.json()
        compartment_id = self._require_compartment(body.get("compartmentId"))
        name = body.get("name")
        ddl = body.get("ddlStatement", "")
        match = _PRIMARY_KEY.search(ddl)
        if not name or match is None:
            raise web.HTTPBadRequest(reason="InvalidParameter")

        if name in self.tables:
            if self.tables[name]["state"] != "ACTIVE":
                raise web.HTTPConflict(reason="IncorrectState")
            if not re.search(r"IF\s+NOT\s+EXISTS", ddl, re.IGNORECASE):
                raise web.HTTPConflict(reason="TableAlreadyExists")
            return self._submit(
                "CREATE_TABLE", name, compartment_id, terminal="SUCCEEDED"
            )

        self.tables[name] = {"primary_key": match.group(1), "state": "CREATING"}
        self.rows[name] = {}
        return self._submit("CREATE_TABLE", name, compartment_id)

    async def handle_delete_table(self, request: web.Request) -> web.Response:
        compartment_id = self._require_compartment(request.query.get("compartmentId"))
        name = request.match_info["table"]
        table = self._active_table(name)
        table["state"] = "DELETING"
        return self._submit("DELETE_TABLE", name, compartment_id)

    async def handle_work_request(self, request: web.Request) -> web.Response:
        work_request = self.work_requests.get(request.match_info["id"])
        if work_request is None:
            raise web.HTTPNotFound(reason="WorkRequestNotFound")

        status = work_request.status(self.completion_time)
        work_request.polled = True
        self._settle()
        self.logger.info(f"Returning {status} for work request {work_request.id}")
        return web.json_response(work_request.to_json(status))

    async def handle_update_row(self, request: web.Request) -> web.Response:
        name = request.match_info["table"]
        table = self._active_table(name)
        body = await request.json()
        self._require_compartment(body.get("compartmentId"))
        value = body.get("value")
        if not isinstance(value, dict) or table["primary_key"] not in value:
            raise web.HTTPBadRequest(reason="InvalidParameter")

        self.rows[name][str(value[table["primary_key"]])] = value
        return web.json_response({"version": uuid.uuid4().hex})

    async def handle_get_row(self, request: web.Request) -> web.Response:
        name = request.match_info["table"]
        table = self._active_table(name)
        self._require_compartment(request.query.get("compartmentId"))
        row = self.rows[name].get(self._row_key(request, table))
        return web.json_response({"value": row})

    async def handle_delete_row(self, request: web.Request) -> web.Response:
        name = request.match_info["table"]
        table = self._active_table(name)
        self._require_compartment(request.query.get("compartmentId"))
        removed = self.rows[name].pop(self._row_key(request, table), None)
        return web.json_response({"isSuccess": removed is not None})

    async def handle_query(self, request: web.Request) -> web.Response:
        body = await request.json()
        self._require_compartment(body.get("compartmentId"))
        match = _QUERY.match(body.get("statement", ""))
        if match is None:
            raise web.HTTPBadRequest(reason="InvalidParameter")

        name, column, value = match.groups()
        self._active_table(name)
        items = list(self.rows[name].values())
        if column is not None:
            value = value.strip("'\"")
            items = [item for item in items if str(item.get(column)) == value]
        return web.json_response({"items": items})

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
