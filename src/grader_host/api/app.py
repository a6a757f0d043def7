from __future__ import annotations
import threading
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

log = structlog.get_logger()


class HealthRes(BaseModel):
    healthy: bool
    reason: Optional[str] = None


class HealthCheck:
    """
    Health signal polled by the process supervisor. Once flagged unhealthy
    the host stays unhealthy until it is replaced.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self.app = self._build_app()
        self._server: Optional[uvicorn.Server] = None

    @property
    def healthy(self) -> bool:
        return self._reason is None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def flag_unhealthy(self, reason: str) -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
        log.error("host_flagged_unhealthy", reason=reason)

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="grader-host health")

        @app.get("/", response_model=HealthRes, response_model_exclude_none=True)
        def health():
            if self.healthy:
                return HealthRes(healthy=True)
            return JSONResponse(
                status_code=500,
                content=HealthRes(healthy=False, reason=self.reason).model_dump(exclude_none=True),
            )

        return app

    def serve(self, port: int, host: str = "0.0.0.0") -> threading.Thread:
        config = uvicorn.Config(self.app, host=host, port=port, log_level="warning")
        self._server = uvicorn.Server(config)
        t = threading.Thread(target=self._server.run, name="health-check", daemon=True)
        t.start()
        log.info("health_check_listening", port=port)
        return t

    def shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
