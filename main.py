import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import SessionLocal
from periods import Period, resolve_month
from schemas import RebalanceCommitIn, SettlementApplyIn
from services import RebalanceService, SettlementService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

app = FastAPI(title="Budget Rebalance", version=APP_VERSION)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.exception_handler(StarletteHTTPException)
async def http_error_envelope(
    _request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code, content={"ok": False, "error": exc.detail}
    )


def month_from_request(request: Request) -> Period:
    try:
        return resolve_month(request.query_params.get("month"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = str(first.get("msg", "invalid value")).removeprefix("Value error, ")
    return f"{location}: {message}" if location else message


async def _json_body(request: Request) -> dict:
    try:
        payload = await request.json()
    except Exception as exc:
        raise HTTPException(status_code=400, detail="Request body must be JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be an object")
    return payload


def _parse(model: type[BaseModel], payload: dict):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=_validation_message(exc)) from exc


def _require_month(payload: dict) -> None:
    month: Optional[object] = payload.get("month")
    if not month or not isinstance(month, str):
        raise HTTPException(status_code=400, detail="month is required (format: YYYY-MM)")


@app.get("/rebalance")
def rebalance_suggestions(request: Request, db: Session = Depends(get_db)):
    period = month_from_request(request)
    try:
        suggestions = RebalanceService(db).suggestions(period)
    except Exception as exc:
        logger.exception(f"rebalance_suggestions_failed: month={period.slug}")
        raise HTTPException(
            status_code=500, detail="Failed to load rebalance suggestions"
        ) from exc
    return {
        "ok": True,
        "data": {
            "month": period.slug,
            "total": len(suggestions),
            "suggestions": suggestions,
        },
    }


@app.post("/rebalance/commit")
async def rebalance_commit(request: Request, db: Session = Depends(get_db)):
    payload = await _json_body(request)
    _require_month(payload)
    decisions = payload.get("decisions")
    if not isinstance(decisions, list) or not decisions:
        raise HTTPException(status_code=400, detail="decisions are required")
    data: RebalanceCommitIn = _parse(RebalanceCommitIn, payload)

    try:
        results = RebalanceService(db).commit(data.month, data.decisions)
    except Exception as exc:
        logger.exception(f"rebalance_commit_failed: month={data.month}")
        raise HTTPException(
            status_code=500, detail="Failed to apply rebalance decisions"
        ) from exc
    return {"ok": True, "data": {"month": data.month, "results": results}}


@app.get("/settlements")
def settlements(request: Request, db: Session = Depends(get_db)):
    period = month_from_request(request)
    try:
        data = SettlementService(db).overview(period)
    except Exception as exc:
        logger.exception(f"settlement_overview_failed: month={period.slug}")
        raise HTTPException(
            status_code=500, detail="Failed to load settlement information"
        ) from exc
    return {"ok": True, "data": data}


@app.post("/settlements/apply")
async def settlements_apply(request: Request, db: Session = Depends(get_db)):
    payload = await _json_body(request)
    _require_month(payload)
    item_keys = payload.get("item_keys")
    if not isinstance(item_keys, list) or not item_keys:
        raise HTTPException(status_code=400, detail="item_keys are required")
    data: SettlementApplyIn = _parse(SettlementApplyIn, payload)

    try:
        result = SettlementService(db).apply(data.month, data.item_keys)
    except Exception as exc:
        logger.exception(f"settlement_apply_failed: month={data.month}")
        raise HTTPException(
            status_code=500, detail="Failed to mark settlements as completed"
        ) from exc
    return {"ok": True, "data": result}
