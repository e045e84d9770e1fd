import json
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import AuthError, user_id_from_header
from config import get_settings
from database import get_db
from models import Category, Profile
from openrouter import OpenRouterClient, OpenRouterError
from periods import ConfigurationError
from schemas import (
    AIAnalysisOut,
    CategoriesListOut,
    CategoryDeleteOut,
    CategoryIn,
    CategoryOut,
    DeleteOut,
    ErrorDetail,
    MonthlySummaryOut,
    ProfileOut,
    ProfileUpdateIn,
    SummaryQuery,
    TransactionIn,
    TransactionOut,
    TransactionsListOut,
    TransactionsQuery,
    TransactionUpdateIn,
)
from services import (
    AnalysisService,
    CategoryService,
    ConflictError,
    NotFoundError,
    PersistenceError,
    ProfileService,
    SummaryService,
    SystemCategoryError,
    TransactionService,
    as_utc,
    openrouter_client_from_settings,
    user_month_range,
)

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

app = FastAPI(title="Budget Tracker", version=APP_VERSION)


class AIUnavailableError(Exception):
    pass


class InvalidBodyError(Exception):
    pass


_STATUS_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
}


def error_response(
    status_code: int,
    message: str,
    code: Optional[str] = None,
    details: Optional[list[ErrorDetail]] = None,
) -> JSONResponse:
    error: dict[str, object] = {
        "code": code or _STATUS_CODES.get(status_code, "INTERNAL_ERROR"),
        "message": message,
    }
    if details:
        error["details"] = [d.model_dump() for d in details]
    return JSONResponse(status_code=status_code, content={"error": error})


def _validation_details(errors) -> list[ErrorDetail]:
    return [
        ErrorDetail(
            field=".".join(str(part) for part in err.get("loc", ())),
            message=err.get("msg", "Invalid value"),
        )
        for err in errors
    ]


@app.exception_handler(RequestValidationError)
def request_validation_handler(_request: Request, exc: RequestValidationError):
    return error_response(
        400, "Validation failed", details=_validation_details(exc.errors())
    )


@app.exception_handler(ValidationError)
def validation_handler(_request: Request, exc: ValidationError):
    return error_response(
        400, "Validation failed", details=_validation_details(exc.errors())
    )


@app.exception_handler(InvalidBodyError)
def invalid_body_handler(_request: Request, _exc: InvalidBodyError):
    return error_response(
        400,
        "Validation failed",
        details=[ErrorDetail(field="body", message="Invalid JSON body")],
    )


@app.exception_handler(AuthError)
def auth_error_handler(_request: Request, _exc: AuthError):
    return error_response(401, "No valid session")


@app.exception_handler(NotFoundError)
def not_found_handler(_request: Request, exc: NotFoundError):
    return error_response(404, str(exc))


@app.exception_handler(SystemCategoryError)
def system_category_handler(_request: Request, exc: SystemCategoryError):
    return error_response(403, str(exc))


@app.exception_handler(ConflictError)
def conflict_handler(_request: Request, exc: ConflictError):
    return error_response(409, str(exc))


@app.exception_handler(AIUnavailableError)
def ai_unavailable_handler(_request: Request, _exc: AIUnavailableError):
    return error_response(503, "AI service is not configured")


@app.exception_handler(PersistenceError)
@app.exception_handler(ConfigurationError)
def internal_error_handler(request: Request, exc: Exception):
    logger.error(f"request_failed: path={request.url.path} error={exc!r}")
    return error_response(500, "An unexpected error occurred")


@app.exception_handler(StarletteHTTPException)
def http_error_handler(_request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"request_failed: path={request.url.path}")
    return error_response(500, "An unexpected error occurred")


def current_user_id(authorization: Optional[str] = Header(default=None)) -> str:
    return user_id_from_header(authorization)


def get_openrouter_client() -> OpenRouterClient:
    settings = get_settings()
    if not settings.openrouter_api_key:
        raise AIUnavailableError()
    return openrouter_client_from_settings(settings)


async def read_json(request: Request) -> object:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidBodyError() from exc


def profile_out(profile: Profile) -> ProfileOut:
    return ProfileOut(
        user_id=profile.user_id,
        timezone=profile.timezone,
        created_at=as_utc(profile.created_at),
        updated_at=as_utc(profile.updated_at),
    )


def category_out(category: Category) -> CategoryOut:
    return CategoryOut(
        id=category.id,
        name=category.name,
        is_system=category.is_system,
        system_key=category.system_key,
        created_at=as_utc(category.created_at),
        updated_at=as_utc(category.updated_at),
    )


@app.get("/api/profile", response_model=ProfileOut)
def get_profile(
    user_id: str = Depends(current_user_id), db: Session = Depends(get_db)
):
    profile = ProfileService(db, user_id).get()
    if profile is None:
        raise NotFoundError("Profile not found")
    return profile_out(profile)


@app.put("/api/profile", response_model=ProfileOut)
async def update_profile(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    data = ProfileUpdateIn.model_validate(await read_json(request))
    try:
        profile = ProfileService(db, user_id).update_timezone(data.timezone)
    except ConfigurationError as exc:
        return error_response(
            400,
            "Validation failed",
            details=[ErrorDetail(field="timezone", message=str(exc))],
        )
    return profile_out(profile)


@app.get("/api/categories", response_model=CategoriesListOut)
def list_categories(
    user_id: str = Depends(current_user_id), db: Session = Depends(get_db)
):
    categories = CategoryService(db, user_id).list_all()
    return CategoriesListOut(categories=[category_out(c) for c in categories])


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
async def create_category(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    data = CategoryIn.model_validate(await read_json(request))
    return category_out(CategoryService(db, user_id).create(data))


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
async def rename_category(
    category_id: int,
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    data = CategoryIn.model_validate(await read_json(request))
    return category_out(CategoryService(db, user_id).rename(category_id, data))


@app.delete("/api/categories/{category_id}", response_model=CategoryDeleteOut)
def delete_category(
    category_id: int,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    moved = CategoryService(db, user_id).delete(category_id)
    return CategoryDeleteOut(
        message="Category deleted successfully", transactions_moved=moved
    )


@app.get("/api/transactions", response_model=TransactionsListOut)
def list_transactions(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    query = TransactionsQuery.model_validate(dict(request.query_params))
    month_range = user_month_range(db, user_id, query.month)
    return TransactionService(db, user_id).page_for_month(
        month_range,
        category_id=query.category_id,
        limit=query.limit,
        offset=query.offset,
    )


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
async def create_transaction(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    data = TransactionIn.model_validate(await read_json(request))
    service = TransactionService(db, user_id)
    return service.to_out(service.create(data))


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    service = TransactionService(db, user_id)
    return service.to_out(service.get(transaction_id))


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
async def update_transaction(
    transaction_id: int,
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    data = TransactionUpdateIn.model_validate(await read_json(request))
    service = TransactionService(db, user_id)
    return service.to_out(service.update(transaction_id, data))


@app.delete("/api/transactions/{transaction_id}", response_model=DeleteOut)
def delete_transaction(
    transaction_id: int,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    TransactionService(db, user_id).delete(transaction_id)
    return DeleteOut(message="Transaction deleted successfully")


@app.get("/api/summary", response_model=MonthlySummaryOut)
def monthly_summary(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    query = SummaryQuery.model_validate(dict(request.query_params))
    return SummaryService(db, user_id).monthly_summary(query.month)


@app.post("/api/summary/ai-analysis", response_model=AIAnalysisOut)
async def ai_analysis(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    client: OpenRouterClient = Depends(get_openrouter_client),
):
    query = SummaryQuery.model_validate(await read_json(request))
    service = AnalysisService(db, user_id, client)
    try:
        # the chat call blocks on urlopen
        return await run_in_threadpool(service.analyze, query.month)
    except OpenRouterError as exc:
        logger.warning(f"ai_analysis_failed: code={exc.code} status={exc.status_code}")
        return error_response(
            502, f"AI service error: {exc.message}", code="INTERNAL_ERROR"
        )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
