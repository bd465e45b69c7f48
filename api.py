# Meridian API
# FastAPI. Dispatch, host and server catalog, execution and payment history.

import hmac
import json
import os
import time
from decimal import Decimal
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from db import PersistenceFailure
from dispatcher import DEFAULT_COST_CREDITS, ServiceUnavailable, get_dispatcher, log
from ledger import ExecutionNotFound, InvalidTransition
from registry import HostNotFound
from servers import get_server_catalog
from settlement import AlreadySettled, PaymentNotFound

app = FastAPI(title="Meridian", version="1.0.0")

MERIDIAN_ENV = os.environ.get("MERIDIAN_ENV", "dev").lower()
AUTH_REQUIRED = MERIDIAN_ENV not in {"dev", "development", "test"}
API_TOKEN = os.environ.get("MERIDIAN_API_TOKEN", "")


def _error(status_code, code, message):
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error": {"code": code, "message": message}},
    )


# ── API Token Auth ────────────────────────────────────────────────────

# Public routes, no token required
PUBLIC_PATHS = {"/", "/docs", "/openapi.json", "/healthz", "/readyz"}


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token auth outside dev/test. MERIDIAN_API_TOKEN must be set
    there, and every non-public request must carry it.
    """

    async def dispatch(self, request: Request, call_next):
        if not AUTH_REQUIRED:
            return await call_next(request)

        api_token = os.environ.get("MERIDIAN_API_TOKEN", API_TOKEN)
        if not api_token:
            return _error(
                500, "auth_config_error",
                "MERIDIAN_API_TOKEN must be set in non-dev environments",
            )

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else ""
        if not token or not hmac.compare_digest(token, api_token):
            return _error(401, "unauthorized", "Unauthorized")

        return await call_next(request)


app.add_middleware(TokenAuthMiddleware)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs for observability."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - started) * 1000, 2)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


# ── Error handlers ────────────────────────────────────────────────────


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return _error(exc.status_code, "http_error", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": json.loads(json.dumps(exc.errors(), default=str)),
            },
        },
    )


@app.exception_handler(ValueError)
async def value_error_handler(_: Request, exc: ValueError):
    return _error(400, "invalid_request", str(exc))


async def not_found_handler(_: Request, exc: LookupError):
    return _error(404, "not_found", str(exc))


for _not_found in (HostNotFound, ExecutionNotFound, PaymentNotFound):
    app.add_exception_handler(_not_found, not_found_handler)


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(_: Request, exc: InvalidTransition):
    return _error(409, "invalid_transition", str(exc))


@app.exception_handler(AlreadySettled)
async def already_settled_handler(_: Request, exc: AlreadySettled):
    return _error(409, "already_settled", str(exc))


@app.exception_handler(PersistenceFailure)
async def persistence_failure_handler(_: Request, exc: PersistenceFailure):
    log.error("API PERSISTENCE FAILURE: %s", exc)
    return _error(500, "persistence_failure", "Storage operation failed")


# ── Request models ────────────────────────────────────────────────────


class HostIn(BaseModel):
    host_id: str | None = None
    name: str = Field(min_length=1, max_length=128)
    endpoint: str = Field(min_length=1)
    owner_id: str = ""
    location: str | None = None
    server_type: str = "misc"
    compatible_server_types: list[str] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=list)
    profit_share_percentage: Decimal | None = Field(default=None, ge=0, le=100)


class HostPatch(BaseModel):
    status: str | None = None
    profit_share_percentage: Decimal | None = Field(default=None, ge=0, le=100)


class ServerIn(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    endpoint: str = Field(min_length=1)
    server_type: str | None = None
    owner_id: str = ""
    is_public: bool = False
    description: str | None = None
    code: str | None = None
    app_url: str | None = None


class ExecuteIn(BaseModel):
    requester_id: str = Field(min_length=1)
    server_name: str = Field(min_length=1)
    function_name: str = Field(min_length=1)
    parameters: Any = None
    required_capabilities: list[str] = Field(default_factory=list)
    preferred_location: str | None = None
    server_type: str | None = None
    cost_credits: Decimal = Field(default=DEFAULT_COST_CREDITS, ge=0)


# ── Dispatch ──────────────────────────────────────────────────────────


@app.post("/execute")
def api_execute(e: ExecuteIn):
    """Run one function on one host. 503 when no host can serve it."""
    outcome = get_dispatcher().dispatch(
        requester_id=e.requester_id,
        server_name=e.server_name,
        function_name=e.function_name,
        parameters=e.parameters,
        required_capabilities=e.required_capabilities,
        preferred_location=e.preferred_location,
        protocol_type=e.server_type,
        cost=e.cost_credits,
    )
    if isinstance(outcome, ServiceUnavailable):
        return _error(503, "no_host_available", outcome.reason)
    return {"ok": True, **outcome.to_dict()}


# ── Host endpoints ────────────────────────────────────────────────────


@app.put("/host")
def api_register_host(h: HostIn):
    """Register or update a host."""
    host = get_dispatcher().registry.register_host(
        name=h.name,
        endpoint=h.endpoint,
        owner_id=h.owner_id,
        host_id=h.host_id,
        location=h.location,
        server_type=h.server_type,
        compatible_server_types=h.compatible_server_types,
        capabilities=h.capabilities,
        profit_share_percentage=h.profit_share_percentage,
    )
    return {"ok": True, "host": host.to_dict()}


@app.get("/hosts")
def api_list_hosts(status: str | None = None):
    hosts = get_dispatcher().registry.list_hosts(status=status)
    return {"hosts": [h.to_dict() for h in hosts]}


@app.get("/host/{host_id}")
def api_get_host(host_id: str):
    host = get_dispatcher().registry.get_host(host_id)
    if not host:
        raise HTTPException(status_code=404, detail=f"Host {host_id} not found")
    return {"ok": True, "host": host.to_dict()}


@app.patch("/host/{host_id}")
def api_update_host(host_id: str, patch: HostPatch):
    """Operator toggles: status and profit share."""
    if patch.status is None and patch.profit_share_percentage is None:
        raise HTTPException(status_code=400, detail="Nothing to update")
    registry = get_dispatcher().registry
    host = None
    if patch.status is not None:
        host = registry.set_status(host_id, patch.status)
    if patch.profit_share_percentage is not None:
        host = registry.set_profit_share(host_id, patch.profit_share_percentage)
    return {"ok": True, "host": host.to_dict()}


# ── Server endpoints ──────────────────────────────────────────────────


@app.post("/server")
def api_register_server(s: ServerIn):
    """Register a server. Type is detected from its /info when omitted."""
    server = get_server_catalog().register_server(
        name=s.name,
        endpoint=s.endpoint,
        server_type=s.server_type,
        owner_id=s.owner_id,
        is_public=s.is_public,
        description=s.description,
        code=s.code,
        app_url=s.app_url,
    )
    return {"ok": True, "server": server.to_dict()}


@app.get("/servers")
def api_list_servers(
    server_type: str | None = None, owner_id: str | None = None, public_only: bool = False,
):
    servers = get_server_catalog().list_servers(
        server_type=server_type, owner_id=owner_id, public_only=public_only,
    )
    return {"servers": [s.to_dict() for s in servers]}


# ── Execution & payment history ───────────────────────────────────────


@app.get("/executions")
def api_list_executions(
    requester_id: str | None = None,
    host_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
):
    executions = get_dispatcher().ledger.list_executions(
        requester_id=requester_id, host_id=host_id, status=status, limit=limit,
    )
    return {"executions": [e.to_dict() for e in executions]}


@app.get("/execution/{execution_id}")
def api_get_execution(execution_id: str):
    d = get_dispatcher()
    execution = d.ledger.get(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    payment = d.settlement.get_payment_for_execution(execution_id)
    return {
        "ok": True,
        "execution": execution.to_dict(),
        "payment": payment.to_dict() if payment else None,
    }


@app.get("/payments")
def api_list_payments(host_id: str | None = None, status: str | None = None):
    payments = get_dispatcher().settlement.list_payments(host_id=host_id, status=status)
    return {"payments": [p.to_dict() for p in payments]}


@app.post("/payment/{payment_id}/paid")
def api_mark_paid(payment_id: str):
    payment = get_dispatcher().settlement.mark_paid(payment_id)
    return {"ok": True, "payment": payment.to_dict()}


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": MERIDIAN_ENV}


@app.get("/readyz")
def readyz():
    token = os.environ.get("MERIDIAN_API_TOKEN", API_TOKEN)
    if AUTH_REQUIRED and not token:
        raise HTTPException(
            status_code=503, detail="API token not configured for non-dev environment"
        )

    storage = get_dispatcher().store.healthcheck()
    if not storage.get("ok"):
        raise HTTPException(
            status_code=503, detail=f"Storage not ready: {storage.get('error', 'unknown')}"
        )

    return {"ok": True, "status": "ready", "storage": storage}


@app.get("/")
def root():
    return {"name": "Meridian", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    log.info("API STARTING on port 8000")
    uvicorn.run(app, host="0.0.0.0", port=8000)
