"""
Operator status API.

A small FastAPI app exposing queue, pool, scheduler and recovery state, plus
the handful of actions an operator needs: admit or cancel a transfer, trigger
or reset a job scan, and run a recovery pass. Served by uvicorn in a daemon
thread next to the transfer engine.
"""
import collections
import logging
import sys
import threading
from typing import Any, Deque, Dict, List, Optional

import uvicorn
from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .errors import ConflictError, NotFoundError, QueueFullError, ValidationError
from .models import TransferPriority, TransferStatus, TransferType
from .transfer_queue import TransferFilter


class WebUILogHandler(logging.Handler):
    """Keeps the most recent formatted log lines for ``GET /api/logs``."""

    def __init__(self, capacity: int = 200):
        super().__init__()
        self.records: Deque[str] = collections.deque(maxlen=capacity)

    def emit(self, record):
        try:
            self.records.append(self.format(record))
        except Exception:
            self.handleError(record)

    def snapshot(self, limit: Optional[int] = None) -> List[str]:
        lines = list(self.records)
        return lines[-limit:] if limit else lines


def _error(status_code: int, exc: Exception, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": exc.user_message() if hasattr(exc, "user_message") else str(exc)}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def _parse_statuses(status: Optional[str]) -> Optional[List[TransferStatus]]:
    if not status:
        return None
    try:
        return [TransferStatus(s.strip().lower()) for s in status.split(',') if s.strip()]
    except ValueError:
        raise ValidationError(f"Unknown status filter: {status!r}", {"status": status}) from None


def create_app(service) -> FastAPI:
    """Builds the API around a running service.

    Args:
        service: Composition root exposing ``queue``, ``state_manager``,
            ``pool``, ``controller``, ``scheduler``, ``recovery``,
            ``recent_events`` and ``log_handler``.
    """
    app = FastAPI(title="warpsync API", version=__version__)

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return _error(400, exc, exc.details)

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return _error(404, exc)

    @app.exception_handler(ConflictError)
    async def conflict(request: Request, exc: ConflictError):
        return _error(409, exc)

    @app.exception_handler(QueueFullError)
    async def queue_full(request: Request, exc: QueueFullError):
        return _error(503, exc)

    @app.get("/api/status")
    def get_status():
        return {
            "version": __version__,
            "queue": service.queue.get_stats(),
            "scheduler": service.scheduler.get_stats().to_dict(),
            "running_scans": len(service.scheduler.get_running_executions()),
            "recovering": service.recovery.is_recovering(),
        }

    @app.get("/api/transfers")
    def list_transfers(status: Optional[str] = None, job_id: Optional[str] = None,
                       priority: Optional[str] = None, type: Optional[str] = None,
                       filename: Optional[str] = None, limit: int = 200):
        transfer_filter = TransferFilter(
            status=_parse_statuses(status),
            job_id=job_id,
            priority=TransferPriority.parse(priority) if priority else None,
            type=TransferType.parse(type) if type else None,
            filename=filename,
        )
        transfers = service.queue.get_transfers(transfer_filter)
        return {"total": len(transfers), "transfers": [t.to_public_dict() for t in transfers[:max(0, limit)]]}

    @app.post("/api/transfers", status_code=201)
    def add_transfer(payload: Dict[str, Any] = Body(...)):
        transfer_id = service.queue.add(payload)
        return {"transfer_id": transfer_id}

    @app.get("/api/transfers/{transfer_id}")
    def get_transfer(transfer_id: str):
        return service.state_manager.get_transfer(transfer_id).to_public_dict()

    @app.delete("/api/transfers/{transfer_id}")
    def cancel_transfer(transfer_id: str):
        if not service.queue.cancel(transfer_id):
            transfer = service.state_manager.get_transfer(transfer_id)
            raise ConflictError(f"Transfer {transfer_id} is already {transfer.status.value}")
        return {"transfer_id": transfer_id, "cancelled": True}

    @app.get("/api/queue/stats")
    def queue_stats():
        stats = service.queue.get_stats()
        stats["concurrency"] = service.controller.get_cache_stats()
        return stats

    @app.get("/api/pool/stats")
    def pool_stats():
        return service.pool.get_pool_stats()

    @app.get("/api/jobs")
    def list_jobs():
        return {"jobs": [job.to_dict() for job in service.scheduler.get_scheduled_jobs()]}

    @app.post("/api/jobs/{job_id}/scan", status_code=202)
    def trigger_scan(job_id: str):
        return service.scheduler.trigger_job_scan(job_id).to_dict()

    @app.post("/api/jobs/{job_id}/reset")
    def reset_job(job_id: str):
        return service.scheduler.reset_job(job_id).to_dict()

    @app.get("/api/executions")
    def running_executions():
        return {"executions": [e.to_dict() for e in service.scheduler.get_running_executions()]}

    @app.get("/api/health")
    def health():
        return {
            "scheduler": service.scheduler.health_check().to_dict(),
            "recovery": service.recovery.health_check(),
        }

    @app.get("/api/recovery/consistency")
    def consistency():
        return service.recovery.validate_state_consistency()

    @app.post("/api/recovery")
    def run_recovery():
        return service.recovery.perform_system_recovery().to_dict()

    @app.get("/api/events")
    def recent_events(limit: int = 100):
        return {"events": service.recent_events.snapshot(limit)}

    @app.get("/api/logs")
    def recent_logs(limit: int = 100):
        return {"lines": service.log_handler.snapshot(limit)}

    return app


def start_server(app: FastAPI, host: str = "127.0.0.1", port: int = 8765) -> threading.Thread:
    """Runs uvicorn for `app` in a daemon thread."""
    def _serve():
        try:
            uvicorn.run(app, host=host, port=port, log_level="warning")
        except Exception as e:
            print(f"FATAL: Could not start web server: {e}", file=sys.stderr)

    thread = threading.Thread(target=_serve, name="web-server", daemon=True)
    thread.start()
    logging.info(f"Status API listening on http://{host}:{port}")
    return thread
