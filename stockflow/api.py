"""
FastAPI application and endpoints for the stockflow engine
Includes CORS, request size limits, request IDs and structured error handling
"""

# Standard library imports
import asyncio
import traceback
from typing import Dict, Any, Optional

# Third-party imports
import pydantic
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

# Local application imports
from stockflow.config import get_settings
from stockflow.exceptions import EngineError, EvaluationError, SimulationError
from stockflow.models import (
    Model,
    SimulationRequest,
    SimulationResponse,
    SimulationState,
    StepRequest,
    ValidationResponse,
)
from stockflow.simulation import SimulationEngine, initial_state, step
from stockflow.validation import validate_model, get_validation_summary
from stockflow.utils.logging_config import (
    get_logger,
    set_run_id,
    setup_logging_from_settings,
)

logger = get_logger(__name__)

settings = get_settings()
setup_logging_from_settings(settings)

app = FastAPI(
    title="Stockflow Simulation API",
    version="1.0.0",
    description="Stock-and-flow model simulation engine",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

MAX_REQUEST_SIZE = settings.max_request_size
SIMULATION_TIMEOUT = settings.simulation_timeout

# Engine error codes that are not server faults
ENGINE_ERROR_STATUS = {
    "simulation_timeout": status.HTTP_408_REQUEST_TIMEOUT,
    "unknown_parameter": status.HTTP_400_BAD_REQUEST,
    "validation_failed": status.HTTP_400_BAD_REQUEST,
}


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """
    Build the {code, message, details} error body

    With DEBUG enabled the current traceback is added to the details.
    """
    body: Dict[str, Any] = {"code": code, "message": message, "details": dict(details or {})}
    if settings.debug and "traceback" not in body["details"]:
        body["details"]["traceback"] = traceback.format_exc()
    return JSONResponse(status_code=status_code, content=body)


def oversized_request(request: Request) -> Optional[int]:
    """Declared body size when it exceeds the limit, else None"""
    content_length = request.headers.get("content-length")
    if content_length and int(content_length) > MAX_REQUEST_SIZE:
        return int(content_length)
    return None


def build_model(data: Dict[str, Any]) -> Model:
    """
    Build a model from request data

    Equation errors propagate as EvaluationError (400); structural errors in
    the payload become 422.
    """
    try:
        return Model.model_validate(data)
    except pydantic.ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid model: {e}",
        )


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Tag the request, and every engine log record it produces, with a run ID"""
    request_id = set_run_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def request_size_middleware(request: Request, call_next):
    """Reject bodies larger than the configured limit"""
    size = oversized_request(request)
    if size is not None:
        return error_response(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            "http_413",
            f"Request size ({size} bytes) exceeds maximum ({MAX_REQUEST_SIZE} bytes)",
            {"status_code": 413},
        )
    return await call_next(request)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    """
    Map engine errors to responses

    Equation errors are the client's (400); simulation errors are 500 unless
    listed in ENGINE_ERROR_STATUS.
    """
    if isinstance(exc, EvaluationError):
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = ENGINE_ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.error(f"{type(exc).__name__}: {exc}", extra={"code": exc.code})
    body = exc.to_dict()
    return error_response(status_code, body["code"], body["message"], body["details"])


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request body validation errors"""
    messages = [
        f"{' -> '.join(str(x) for x in error.get('loc', []))}: {error.get('msg', 'Validation error')}"
        for error in exc.errors()
    ]
    logger.warning(f"Request validation failed: {messages}")
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "validation_error",
        "; ".join(messages),
        {"error_count": len(messages)},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")
    return error_response(
        exc.status_code,
        f"http_{exc.status_code}",
        exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        {"status_code": exc.status_code},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle anything else as an internal error"""
    logger.exception("Unhandled exception", exc_info=exc)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_error",
        str(exc) if settings.debug else "An internal error occurred",
        {"exception_type": type(exc).__name__},
    )


@app.get("/")
def read_root():
    """Root endpoint with API information"""
    logger.info("Root endpoint accessed")
    return {
        "message": "Stockflow Simulation API",
        "version": "1.0.0",
        "endpoints": {
            "simulate": "/simulate",
            "step": "/step",
            "validate": "/validate",
            "health": "/health",
        },
    }


@app.get("/health")
def health_check():
    """Health check endpoint"""
    logger.debug("Health check requested")
    return {"status": "healthy"}


@app.post("/simulate", response_model=SimulationResponse)
async def simulate(request: SimulationRequest):
    """
    Run a simulation

    Returns time series data for every stock, flow and auxiliary.
    """
    model = build_model(request.model)
    logger.info(
        f"Simulation request received: method={request.config.method}, "
        f"time_range=[{model.time.start}, {model.time.stop}], "
        f"stocks={len(model.stocks)}, flows={len(model.flows)}"
    )

    engine = SimulationEngine(model, request.config, request.parameters)
    try:
        results = await asyncio.wait_for(
            asyncio.to_thread(engine.run),
            timeout=SIMULATION_TIMEOUT,
        )
    except asyncio.TimeoutError:
        # The worker thread stops at its next step boundary
        engine.cancel()
        raise SimulationError(
            code="simulation_timeout",
            message=(
                f"Simulation ({request.config.method}) exceeded timeout of "
                f"{SIMULATION_TIMEOUT} seconds. Consider reducing the time range or "
                f"increasing dt."
            ),
            details={"timeout": SIMULATION_TIMEOUT},
        )

    data = results.to_dict()
    logger.info(f"Simulation completed: {len(data['time'])} time points")

    return SimulationResponse(
        success=True,
        time=data["time"],
        results=data["results"],
        completed=results.completed,
        unconverged_steps=results.unconverged_steps,
    )


@app.post("/step", response_model=SimulationState)
def step_endpoint(request: StepRequest):
    """
    Advance a state by one step

    Without a state, returns the model's initial state. Delay and noise
    state does not persist between requests.
    """
    model = build_model(request.model)
    if request.state is None:
        return initial_state(model, request.config)
    dt = request.dt or model.time.dt
    logger.info(f"Step request received: t={request.state.time}, dt={dt}")
    return step(model, request.state, dt, request.config)


@app.post("/validate", response_model=ValidationResponse)
def validate_model_endpoint(request: SimulationRequest):
    """
    Validate a model without running simulation

    Returns structured validation results with errors and warnings.
    """
    model = build_model(request.model)
    logger.info(
        f"Validation request received: stocks={len(model.stocks)}, "
        f"flows={len(model.flows)}, auxiliaries={len(model.auxiliaries)}"
    )

    result = validate_model(model, request.config)

    summary: Dict[str, Any] = dict(get_validation_summary(result))
    if result.valid:
        summary.update(
            {
                "stocks": len(model.stocks),
                "flows": len(model.flows),
                "auxiliaries": len(model.auxiliaries),
                "parameters": len(model.parameters),
                "lookups": len(model.lookups),
            }
        )
        logger.info(f"Validation passed: {summary}")
    else:
        logger.warning(f"Validation failed: {len(result.errors)} errors found")

    return ValidationResponse(
        valid=result.valid,
        errors=result.errors,
        warnings=result.warnings,
        summary=summary,
    )
