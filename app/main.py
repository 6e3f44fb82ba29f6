from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Body, FastAPI, Request, Response
from fastapi.responses import JSONResponse
import redis

from app.operations import Operation, OperationStore
from app.settings import Settings, settings as default_settings
from resource_ops import ReadBudget, ReadBudgetConfig, RedisConfig
from resource_ops.redis_throttle import RedisReadBudget
from resource_ops.results import retry_after_header_value
from resource_ops.throttle import Throttle

log = logging.getLogger(__name__)

STYLES = ("async", "location", "provisioning", "sync")


def _error(status_code: int, code: str, message: str, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
        headers=headers,
    )


def build_read_budget(cfg: Settings) -> Optional[Throttle]:
    if cfg.read_budget_capacity <= 0:
        return None
    budget_cfg = ReadBudgetConfig(capacity=cfg.read_budget_capacity, refill_rate=cfg.read_budget_refill_per_sec)
    if cfg.read_budget_backend == "redis":
        redis_client = redis.Redis.from_url(
            cfg.redis_url,
            decode_responses=True,
            socket_connect_timeout=1,
            socket_timeout=1,
            retry_on_timeout=True,
        )
        return RedisReadBudget(
            budget_cfg,
            RedisConfig(key_prefix=cfg.key_prefix, fail_open=cfg.failure_mode.lower() != "fail_closed"),
            client=redis_client,
        )
    return ReadBudget(budget_cfg)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    cfg = settings or default_settings
    app = FastAPI(title="Resource Manager Simulator", version="0.1.0")

    store = OperationStore(polls_to_complete=cfg.polls_to_complete)
    budget = build_read_budget(cfg)
    app.state.store = store

    def throttled(request: Request) -> Optional[JSONResponse]:
        if budget is None:
            return None
        client = request.client.host if request.client else "unknown"
        result = budget.check(client)
        if result.allowed:
            return None
        headers = {}
        retry_after = retry_after_header_value(result.retry_after_ms)
        if retry_after is not None:
            headers["Retry-After"] = retry_after
        return _error(429, "TooManyRequests", "read budget exhausted", headers)

    def style_of(style: Optional[str]) -> Optional[str]:
        style = (style or cfg.default_style).lower()
        return style if style in STYLES else None

    def progress_headers(request: Request, op: Operation) -> dict[str, str]:
        headers = {}
        if op.style == "async":
            headers["Azure-AsyncOperation"] = str(request.url_for("operation_status", op_id=op.id))
        else:
            headers["Location"] = str(request.url_for("operation_result", op_id=op.id))
        if cfg.retry_after_seconds > 0:
            headers["Retry-After"] = str(cfg.retry_after_seconds)
        return headers

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "read_budget": cfg.read_budget_backend if budget else None, **store.counts()}

    @app.put("/resources/{resource_type}/{name}")
    def put_resource(
        resource_type: str,
        name: str,
        request: Request,
        payload: Optional[dict[str, Any]] = Body(default=None),
        style: Optional[str] = None,
    ):
        chosen = style_of(style)
        if chosen is None:
            return _error(400, "InvalidStyle", f"unknown style {style!r}")

        op, resource = store.put(resource_type, name, payload or {}, chosen)
        log.info("PUT %s/%s (%s)", resource_type, name, chosen)
        if op is None:
            return JSONResponse(status_code=200, content=resource)
        if chosen == "provisioning":
            return JSONResponse(status_code=201, content=resource)
        if chosen == "async":
            return JSONResponse(status_code=201, content=resource, headers=progress_headers(request, op))
        return Response(status_code=202, headers=progress_headers(request, op))

    @app.get("/resources/{resource_type}/{name}")
    def get_resource(resource_type: str, name: str, request: Request):
        limited = throttled(request)
        if limited is not None:
            return limited
        resource = store.get_resource(resource_type, name)
        if resource is None:
            return _error(404, "ResourceNotFound", f"{resource_type} {name!r} was not found")
        return resource

    @app.delete("/resources/{resource_type}/{name}")
    def delete_resource(resource_type: str, name: str, request: Request, style: Optional[str] = None):
        chosen = style_of(style)
        if chosen is None:
            return _error(400, "InvalidStyle", f"unknown style {style!r}")

        found, op, resource = store.delete(resource_type, name, chosen)
        if not found:
            return _error(404, "ResourceNotFound", f"{resource_type} {name!r} was not found")
        log.info("DELETE %s/%s (%s)", resource_type, name, chosen)
        if op is None:
            return Response(status_code=200)
        if chosen == "provisioning":
            return JSONResponse(status_code=200, content=resource)
        return Response(status_code=202, headers=progress_headers(request, op))

    @app.get("/operations/{op_id}", name="operation_status")
    def operation_status(op_id: str, request: Request):
        limited = throttled(request)
        if limited is not None:
            return limited
        op = store.check(op_id)
        if op is None:
            return _error(404, "OperationNotFound", f"operation {op_id!r} was not found")
        return op.to_dict()

    @app.get("/operationResults/{op_id}", name="operation_result")
    def operation_result(op_id: str, request: Request):
        limited = throttled(request)
        if limited is not None:
            return limited
        op = store.check(op_id)
        if op is None:
            return _error(404, "OperationNotFound", f"operation {op_id!r} was not found")
        if not op.terminal:
            return Response(status_code=202, headers=progress_headers(request, op))
        if op.status != "Succeeded":
            return JSONResponse(status_code=200, content=op.to_dict())
        if op.kind == "delete":
            return Response(status_code=204)
        return JSONResponse(status_code=200, content=store.resource_body(op.resource_type, op.name))

    return app


app = create_app()
