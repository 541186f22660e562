"""FastAPI application entrypoint for cimigrate service mode."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..models import Diagnostic
from ..orchestrator import Orchestrator, TranslationResult
from ..security import SecurityRejected, first_blocked


class TranslateRequest(BaseModel):
    text: str
    dialect: Optional[str] = None
    name: Optional[str] = None


class DiagnosticModel(BaseModel):
    severity: str
    code: str
    category: str
    message: str
    line: Optional[int] = None
    metadata: Dict[str, Any] = {}


class TranslateResponse(BaseModel):
    dialect: str
    pipeline: str
    diagnostics: List[DiagnosticModel]


class ScanRequest(BaseModel):
    text: str


class ScanResponse(BaseModel):
    blocked: bool
    diagnostics: List[DiagnosticModel]


class HealthResponse(BaseModel):
    status: str


def _default_orchestrator() -> Orchestrator:
    return Orchestrator()


def _diagnostics(items: List[Diagnostic]) -> List[DiagnosticModel]:
    return [DiagnosticModel(**item.to_dict()) for item in items]


async def _in_executor(func: Callable[[], Any]) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func)


def create_app(
    orchestrator_factory: Callable[[], Orchestrator] = _default_orchestrator,
) -> FastAPI:
    """Create the FastAPI application exposing cimigrate operations."""
    app = FastAPI(title="cimigrate", version="1.0.0")

    async def get_orchestrator() -> Orchestrator:
        return orchestrator_factory()

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.post("/translate", response_model=TranslateResponse)
    async def translate(
        payload: TranslateRequest,
        orchestrator: Orchestrator = Depends(get_orchestrator),
    ) -> TranslateResponse:
        def _run() -> TranslationResult:
            return orchestrator.translate(payload.text, payload.dialect, name=payload.name)

        result: TranslationResult = await _in_executor(_run)
        return TranslateResponse(
            dialect=result.document.dialect.value,
            pipeline=result.text,
            diagnostics=_diagnostics(result.diagnostics),
        )

    @app.post("/scan", response_model=ScanResponse)
    async def scan(
        payload: ScanRequest,
        orchestrator: Orchestrator = Depends(get_orchestrator),
    ) -> ScanResponse:
        diagnostics: List[Diagnostic] = await _in_executor(lambda: orchestrator.scan(payload.text))
        return ScanResponse(
            blocked=first_blocked(diagnostics) is not None,
            diagnostics=_diagnostics(diagnostics),
        )

    @app.exception_handler(SecurityRejected)
    async def security_rejected_handler(_: Any, exc: SecurityRejected) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc), "rejected": exc.to_dict()})

    @app.exception_handler(ValueError)
    async def value_error_handler(_: Any, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app


def run_service(host: str = "127.0.0.1", port: int = 8000) -> None:  # pragma: no cover - integration path
    try:
        import uvicorn
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "uvicorn is required to run the service. Install it with `pip install cimigrate[service]`."
        ) from exc

    uvicorn.run(create_app(), host=host, port=port)


__all__ = ["create_app", "run_service"]
