import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from featureinfo.api.endpoints.features import error_response
from featureinfo.api.router import api_router
from featureinfo.core import schemas
from featureinfo.core.config import settings
from featureinfo.core.context import build_context

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


# Discover endpoints once on startup and close the shared clients on shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Attempting to load configuration settings...")
    context = build_context(settings)
    await context.start()
    app.state.context = context

    if context.ready:
        logger.info("Agent is ready to serve.")
    else:
        logger.error("Agent could not start in a valid state.")

    yield
    await context.close()


app = FastAPI(title="Feature Info Agent", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def bad_request_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Malformed request to {request.url.path}: {exc.errors()}")
    return error_response(
        "Bad request, could not parse the request parameters.",
        schemas.OutcomeCode.BAD_INPUT,
    )
