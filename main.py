import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

import config
from db_setup import ContactStore, StoreError
from db_models import IdentifyRequest, FinalResponse, HealthResponse
from identity import IdentityResolver, IdentityValidationError

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def get_store() -> ContactStore:
    return ContactStore(config.DB_NAME, timeout=config.DB_TIMEOUT)


def get_resolver(store: ContactStore = Depends(get_store)) -> IdentityResolver:
    return IdentityResolver(store, max_attempts=config.IDENTIFY_MAX_ATTEMPTS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_store().init_db()
    logger.info("Contact store ready at %s", config.DB_NAME)
    yield


app = FastAPI(
    title="Contact Identity Reconciliation API",
    version="1.1.0",
    lifespan=lifespan
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    reasons = [error["msg"].removeprefix("Value error, ") for error in exc.errors()]
    return JSONResponse(status_code=400, content={"detail": "; ".join(reasons)})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("Store failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Something went wrong"})


@app.get("/", response_model=HealthResponse)
async def root(store: ContactStore = Depends(get_store)):
    try:
        now = await run_in_threadpool(store.now)
    except StoreError:
        logger.exception("Health check failed")
        raise HTTPException(status_code=500, detail="Database connection failed")
    return HealthResponse(message="Contact identity API is up", time=now)


@app.post("/identify", response_model=FinalResponse)
async def identify(request: IdentifyRequest, resolver: IdentityResolver = Depends(get_resolver)):
    try:
        contact = await run_in_threadpool(resolver.identify, request.email, request.phoneNumber)
    except IdentityValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return FinalResponse(contact=contact)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
