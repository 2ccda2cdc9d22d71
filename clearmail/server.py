"""
HTTP trigger for processing sessions.

    GET /health                        liveness and backend reachability
    GET /process-emails?timestamp=ISO  run one session, reply with its result

The response status of /process-emails is the session's status code.
"""

import logging
from typing import Any, Dict, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .__version__ import __version__
from .core.orchestrator import Orchestrator, SessionResult
from .utils.watermark import parse_iso, utc_now_iso

logger = logging.getLogger(__name__)

router = APIRouter()


def result_payload(result: SessionResult) -> Dict[str, Any]:
    return {"statusCode": result.status_code, "message": result.message, "stats": result.stats}


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    provider = _orchestrator(request).provider
    # health_check performs a blocking HTTP request
    reachable = await run_in_threadpool(provider.health_check)
    body = {
        "status": "healthy" if reachable else "degraded",
        "mode": "server",
        "backend": provider.get_name(),
        "local": provider.is_local,
        "backend_reachable": reachable,
        "timestamp": utc_now_iso(),
    }
    return JSONResponse(body, status_code=200 if reachable else 503)


@router.get("/process-emails")
async def process_emails(request: Request, timestamp: Optional[str] = None) -> JSONResponse:
    logger.info("Manual email processing triggered")
    if timestamp is not None:
        try:
            parse_iso(timestamp)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid timestamp: {timestamp!r}")

    # Run the blocking IMAP/LLM session in a worker thread so the server stays responsive
    result = await run_in_threadpool(_orchestrator(request).run_session, since=timestamp)
    return JSONResponse(result_payload(result), status_code=result.status_code)


def create_app(orchestrator: Orchestrator) -> FastAPI:
    app = FastAPI(title="ClearMail", version=__version__)
    app.state.orchestrator = orchestrator
    app.include_router(router)
    return app


def serve(orchestrator: Orchestrator, host: str = "127.0.0.1", port: int = 3003) -> int:
    """Run the HTTP trigger until interrupted."""
    logger.info(f"Server running at http://{host}:{port}")
    logger.info(f"Health check: http://{host}:{port}/health")
    logger.info(f"Process emails: http://{host}:{port}/process-emails")
    uvicorn.run(create_app(orchestrator), host=host, port=port, log_level="info", access_log=False)
    return 0
