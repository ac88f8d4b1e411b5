#!/usr/bin/env python3
"""Combined Ziwei + Holland career analysis backend (FastAPI).

- Holland classification: deterministic RIASEC scoring
- Chart: Swiss Ephemeris, fixed fallback record when unavailable
- AI analysis: DeepSeek chat completions relayed as server-sent events
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

# Support both `uvicorn backend.main:app` (repo root) and
# `uvicorn main:app` (backend directory) execution contexts.
if __package__ is None or __package__ == "":
    sys.path.append(str(Path(__file__).resolve().parent.parent))

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from backend.chart_provider import ChartProvider, PersonInfo, build_chart_summary, load_chart_provider
from backend.config import Settings, load_settings
from backend.errors import ValidationError
from backend.holland_engine import classify
from backend.prompts import compose_prompt
from backend.relay import relay_analysis

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s - %(message)s",
)

logger = logging.getLogger("career_relay")

ANALYSIS_PATHS = ("/api/combined-analysis", "/.netlify/functions/combined-analysis")

# Allow-Origin is left to CORSMiddleware so ALLOWED_ORIGINS applies to every response.
PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Request-ID",
}

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ------------------------------------------------------------------------------
# Pydantic schemas
# ------------------------------------------------------------------------------
class CombinedAnalysisRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field("", description="Subject name")
    gender: str = Field("", description="Subject gender")
    birth_year: Optional[int] = Field(None, validation_alias=AliasChoices("birthYear", "birth_year"))
    birth_month: Optional[int] = Field(None, ge=1, le=12, validation_alias=AliasChoices("birthMonth", "birth_month"))
    birth_day: Optional[int] = Field(None, ge=1, le=31, validation_alias=AliasChoices("birthDay", "birth_day"))
    birth_hour: Optional[int] = Field(None, ge=0, le=23, validation_alias=AliasChoices("birthHour", "birth_hour"))
    birth_minute: int = Field(0, ge=0, le=59, validation_alias=AliasChoices("birthMinute", "birth_minute"))
    location: Optional[str] = Field(None, description="Birth city")
    # Shape is checked by the classifier so that errors carry a descriptive message.
    holland_answers: Any = Field(None, validation_alias=AliasChoices("hollandAnswers", "holland_answers"))
    ziwei_analysis: Any = Field(None, validation_alias=AliasChoices("ziweiAnalysis", "ziwei_analysis"))

    def to_person(self, default_location: str) -> PersonInfo:
        return PersonInfo(
            name=(self.name or "").strip(),
            gender=(self.gender or "").strip(),
            birth_year=self.birth_year,
            birth_month=self.birth_month,
            birth_day=self.birth_day,
            birth_hour=self.birth_hour,
            birth_minute=self.birth_minute,
            location=(self.location or "").strip() or default_location,
        )


class HollandResultRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    holland_answers: Any = Field(None, validation_alias=AliasChoices("hollandAnswers", "holland_answers"))


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------
def _resolve_request_id(request: Optional[Request], explicit_request_id: Optional[str] = None) -> str:
    explicit = explicit_request_id.strip() if isinstance(explicit_request_id, str) else ""
    if explicit:
        return explicit
    if request is not None:
        for header in ("x-request-id", "x-correlation-id"):
            value = (request.headers.get(header) or "").strip()
            if value:
                return value
    return str(uuid4())


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message},
    )


def _format_pydantic_error(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(item) for item in err.get("loc", ()))
        parts.append(f"{location}: {err.get('msg', 'invalid value')}" if location else str(err.get("msg")))
    return "Invalid request body: " + "; ".join(parts)


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError("Invalid JSON request body") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _parse_model(model: type[BaseModel], payload: dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(_format_pydantic_error(exc)) from exc


# ------------------------------------------------------------------------------
# App factory
# ------------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    chart_provider: Optional[ChartProvider] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the API with its collaborators injected.

    ``upstream_transport`` replaces the network transport of the completion
    client; it is only set by tests.
    """
    settings = settings or load_settings()
    chart_provider = chart_provider or load_chart_provider(settings.default_location)

    app = FastAPI(title="Ziwei Holland Career Analysis")
    app.state.settings = settings
    app.state.chart_provider = chart_provider

    allowed_origins = list(settings.allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials="*" not in allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    async def _validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        logger.info("Rejected request path=%s reason=%s", request.url.path, exc)
        return _error_response(400, str(exc))

    # --------------------------------------------------------------------------
    # API endpoints: Health Check
    # --------------------------------------------------------------------------
    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "upstream_configured": settings.upstream_configured,
            "model": settings.model,
            **chart_provider.status(),
        }

    # --------------------------------------------------------------------------
    # API endpoints: Holland classification only
    # --------------------------------------------------------------------------
    @app.post("/api/holland-result")
    async def holland_result(request: Request):
        body = _parse_model(HollandResultRequest, await _read_json_object(request))
        profile = classify(body.holland_answers)
        return {"success": True, "data": profile.to_payload()}

    # --------------------------------------------------------------------------
    # API endpoints: Combined analysis stream
    # --------------------------------------------------------------------------
    async def combined_analysis(request: Request):
        request_id = _resolve_request_id(request)
        body = _parse_model(CombinedAnalysisRequest, await _read_json_object(request))
        profile = classify(body.holland_answers)
        subject = body.to_person(settings.default_location)
        chart = await asyncio.to_thread(build_chart_summary, chart_provider, subject, body.ziwei_analysis)
        prompt = compose_prompt(profile, chart, subject)
        logger.info(
            "Combined analysis started request_id=%s holland_code=%s chart_source=%s upstream_configured=%s",
            request_id,
            profile.code,
            chart.source,
            settings.upstream_configured,
        )
        return StreamingResponse(
            relay_analysis(prompt, settings, transport=upstream_transport, request_id=request_id),
            media_type="text/event-stream; charset=utf-8",
            headers={**SSE_HEADERS, "X-Holland-Code": profile.code, "X-Request-ID": request_id},
        )

    async def combined_analysis_preflight() -> Response:
        return Response(status_code=200, headers=PREFLIGHT_HEADERS)

    for path in ANALYSIS_PATHS:
        app.add_api_route(path, combined_analysis, methods=["POST"])
        app.add_api_route(path, combined_analysis_preflight, methods=["OPTIONS"])

    return app


app = create_app()
