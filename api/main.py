"""
FastAPI Application — thin HTTP wrappers over the follow-up core.

Provides:
- Ticket follow-up control (enable / disable / skip / status / lead reply)
- Maintenance job triggers for the external cron (x-cron-secret header)
- Webhook retry queue stats
- Health check with degraded-mode flags

Run with the app factory:
    uvicorn api.main:create_app --factory
"""
from __future__ import annotations

import hmac
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.container import Services, build_services
from followup.errors import FollowUpConfigError, TicketBusyError, TicketNotFoundError
from jobs import webhook_retry
from jobs.runner import UnknownJobError
from models.schemas import SchedulerResult

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class EnableFollowUpRequest(BaseModel):
    organization_id: str


def _result_response(result: SchedulerResult) -> JSONResponse:
    body = {"success": result.ok, **result.model_dump(mode="json")}
    return JSONResponse(status_code=200 if result.ok else 409, content=body)


def _secret_matches(given: Optional[str], expected: str) -> bool:
    # Bytes: compare_digest rejects non-ASCII str
    return bool(given) and hmac.compare_digest(given.encode(), expected.encode())


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(services: Services = None, run_workers: bool = True) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.start(run_workers=run_workers)
        yield
        await services.stop()

    app = FastAPI(
        title="FollowUp Core API",
        description="Delayed follow-up scheduling and delivery guarantees",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error mapping ─────────────────────────────────────────

    @app.exception_handler(FollowUpConfigError)
    async def config_error(request: Request, exc: FollowUpConfigError):
        return JSONResponse(status_code=400, content={
            "success": False, "error": exc.code, "message": str(exc),
        })

    @app.exception_handler(TicketNotFoundError)
    async def ticket_not_found(request: Request, exc: TicketNotFoundError):
        return JSONResponse(status_code=404, content={"success": False, "error": "ticket-not-found"})

    @app.exception_handler(TicketBusyError)
    async def ticket_busy(request: Request, exc: TicketBusyError):
        return JSONResponse(status_code=409, content={"success": False, "error": "ticket-busy"})

    @app.exception_handler(UnknownJobError)
    async def unknown_job(request: Request, exc: UnknownJobError):
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        report = await services.health.run()
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **report,
        }

    # ══════════════════════════════════════════════════════════
    #  TICKET FOLLOW-UPS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/tickets/{ticket_id}/followup")
    async def followup_status(ticket_id: str, organization_id: Optional[str] = Query(None)):
        status = await services.scheduler.get_status(ticket_id, organization_id)
        return status.model_dump(mode="json")

    @app.post("/api/v1/tickets/{ticket_id}/followup")
    async def enable_followup(ticket_id: str, req: EnableFollowUpRequest):
        result = await services.scheduler.enable(ticket_id, req.organization_id)
        return _result_response(result)

    @app.delete("/api/v1/tickets/{ticket_id}/followup")
    async def disable_followup(ticket_id: str):
        result = await services.scheduler.disable(ticket_id)
        return _result_response(result)

    @app.patch("/api/v1/tickets/{ticket_id}/followup")
    async def skip_followup_step(ticket_id: str):
        has_next = await services.scheduler.skip_to_next_step(ticket_id)
        status = await services.scheduler.get_status(ticket_id)
        return {"success": True, "has_next_step": has_next, **status.model_dump(mode="json")}

    @app.post("/api/v1/tickets/{ticket_id}/followup/reply")
    async def lead_replied(ticket_id: str):
        result = await services.scheduler.cancel_on_reply(ticket_id)
        return _result_response(result)

    # ══════════════════════════════════════════════════════════
    #  MAINTENANCE JOBS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/jobs/webhook-retry")
    async def webhook_retry_stats(secret: Optional[str] = Query(None)):
        if not _secret_matches(secret, services.settings.jobs.cron_secret):
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
        stats = await services.webhook_retry.stats()
        return {
            "success": True,
            "job_type": webhook_retry.JOB_TYPE,
            "is_running": await services.runner.is_running(webhook_retry.JOB_TYPE),
            "pending_webhooks": stats["pending"],
            "dead_lettered_webhooks": stats["dead_lettered"],
        }

    @app.post("/api/v1/jobs/{job_type}")
    async def run_job(job_type: str, x_cron_secret: Optional[str] = Header(None)):
        if not _secret_matches(x_cron_secret, services.settings.jobs.cron_secret):
            logger.warning("cron_secret_invalid", job_type=job_type)
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})

        try:
            result = await services.runner.acquire_and_run(job_type)
        except UnknownJobError:
            raise
        except Exception as e:
            return JSONResponse(status_code=500, content={
                "success": False, "job_type": job_type, "error": str(e),
            })

        if not result.ran:
            return JSONResponse(status_code=429, content={
                "success": False,
                "message": f"{job_type} already running",
                **result.to_dict(),
            })
        return {"success": True, **result.to_dict()}

    return app
