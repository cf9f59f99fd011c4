import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from db_setup import init_db
from db_models import IdentifyRequest, FinalResponse, ContactListResponse
from errors import InternalError, InvalidRequest, RepositoryError
from repository import ContactRepository, SqliteContactRepository
from resolver import IdentityResolver
from settings import settings

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Contact database ready at %s", settings.db_path)
    yield


app = FastAPI(
    title="Bitespeed Contact Reconciliation API",
    version="1.0.0",
    lifespan=lifespan
)


def get_repository():
    """One repository (and SQLite connection) per request."""
    repository = SqliteContactRepository()
    try:
        yield repository
    finally:
        repository.close()


def get_resolver(repository: ContactRepository = Depends(get_repository)) -> IdentityResolver:
    return IdentityResolver(repository)


@app.exception_handler(InvalidRequest)
async def invalid_request_handler(request: Request, exc: InvalidRequest):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(InternalError)
@app.exception_handler(RepositoryError)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception in %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to 400."""
    errors = []
    for error in exc.errors():
        sanitized = dict(error)
        sanitized.pop("ctx", None)
        if isinstance(sanitized.get("input"), bytes):
            sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
        errors.append(sanitized)
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "detail": errors}
    )


@app.get("/")
async def root():
    return {"message": "Bitespeed API is up"}


@app.get("/identify", response_model=ContactListResponse)
def list_contacts(repository: ContactRepository = Depends(get_repository)):
    return ContactListResponse(contacts=repository.list_all())


@app.post("/identify", response_model=FinalResponse)
def identify(request: IdentifyRequest, resolver: IdentityResolver = Depends(get_resolver)):
    contact = resolver.identify(request.email, request.phoneNumber)
    return FinalResponse(contact=contact)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
