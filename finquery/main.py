"""FastAPI application for finquery."""

import logging

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from finquery.config import settings
from finquery.db.sqlite import get_database
from finquery.errors import AuthRequired, FinqueryError, InvalidInput
from finquery.models import SearchRequest
from finquery.services.search import SearchService, error_response, to_payload

logger = logging.getLogger(__name__)

app = FastAPI(
    title="finquery",
    description="Natural language search over personal finance transactions",
    version="0.1.0",
)

# CORS for the dashboard frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_search_service: SearchService | None = None


@app.on_event("startup")
async def startup():
    """Initialize on startup."""
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings.ensure_directories()
    if settings.dev_mode:
        settings.log_config()


def get_search_service() -> SearchService:
    """Shared search service wired to the application database."""
    global _search_service
    if _search_service is None:
        _search_service = SearchService(get_database())
    return _search_service


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Resolve the authenticated user; the session layer sets X-User-Id upstream."""
    if not x_user_id or not x_user_id.strip():
        raise AuthRequired()
    return x_user_id.strip()


@app.exception_handler(FinqueryError)
async def finquery_error_handler(request: Request, exc: FinqueryError):
    status_code, body = error_response(exc)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    status_code, body = error_response(InvalidInput("Request body must be JSON of the form {\"query\": string}"))
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    status_code, body = error_response(FinqueryError())
    return JSONResponse(status_code=status_code, content=body)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.post("/ai/search")
async def search(
    request: SearchRequest,
    user_id: str = Depends(get_current_user_id),
    service: SearchService = Depends(get_search_service),
):
    """Answer a natural language question about the user's transactions."""
    result = await service.search(user_id, request.query)
    return JSONResponse(content=to_payload(result))


@app.get("/ai/usage")
async def get_usage(
    user_id: str = Depends(get_current_user_id),
    service: SearchService = Depends(get_search_service),
):
    """Today's AI usage and limits for the user."""
    subscription = service.subscription_for(user_id)
    stats = service.quota.usage_stats(user_id, subscription.is_pro)
    return to_payload(stats)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "finquery.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.dev_mode,
    )
