import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse

from featureinfo.core import schemas
from featureinfo.core.context import AppContext, get_context
from featureinfo.core.errors import DiscoveryError
from featureinfo.core.federation.orchestrator import NOT_READY

router = APIRouter(tags=["Feature Info"])

context_dep = Annotated[AppContext, Depends(get_context)]

HTTP_STATUS = {
    schemas.OutcomeCode.OK: status.HTTP_200_OK,
    schemas.OutcomeCode.BAD_INPUT: status.HTTP_400_BAD_REQUEST,
    schemas.OutcomeCode.NO_CONTENT: status.HTTP_204_NO_CONTENT,
    schemas.OutcomeCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    schemas.OutcomeCode.UNSUPPORTED_ROUTE: status.HTTP_501_NOT_IMPLEMENTED,
}


def error_response(description: str, code: schemas.OutcomeCode) -> JSONResponse:
    body = schemas.ErrorResponse(description=description, outcome=code)
    return JSONResponse(status_code=HTTP_STATUS[code], content=body.model_dump(mode="json"))


def outcome_response(outcome: schemas.Outcome) -> Response:
    code = outcome.code

    if code == schemas.OutcomeCode.OK:
        body = schemas.FeatureResponse(
            meta=outcome.meta or [],
            time=outcome.time,
            warnings=outcome.warnings or None,
        )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=body.model_dump(mode="json", exclude_none=True),
        )

    # 204 may not carry a body, the description only goes to the log
    if code == schemas.OutcomeCode.NO_CONTENT:
        logging.info(f"No content: {outcome.description}")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return error_response(outcome.description or "Internal error occurred.", code)


# Get meta and timeseries data for one feature
@router.get("/get")
async def get_feature(
    context: context_dep,
    iri: Optional[str] = None,
    endpoint: Optional[str] = None,
):
    logging.info("Detected request to get meta and timeseries data.")
    outcome = await context.orchestrator.handle(iri, endpoint)
    return outcome_response(outcome)


@router.post("/get")
async def post_feature(
    context: context_dep,
    payload: Optional[schemas.FeatureRequest] = None,
):
    logging.info("Detected request to get meta and timeseries data.")
    payload = payload or schemas.FeatureRequest()
    outcome = await context.orchestrator.handle(payload.iri, payload.endpoint)
    return outcome_response(outcome)


# Readiness
@router.get("/status", response_model=schemas.StatusResponse)
async def get_status(context: context_dep):
    logging.info("Detected request to get agent status...")
    if not context.ready:
        return error_response(NOT_READY, schemas.OutcomeCode.INTERNAL_ERROR)

    return schemas.StatusResponse(
        description="Ready to serve.",
        endpoints=context.registry.current.counts(),
    )


# Re-run endpoint discovery
@router.post("/refresh", response_model=schemas.StatusResponse)
async def refresh_endpoints(context: context_dep):
    if context.config is None:
        return error_response(NOT_READY, schemas.OutcomeCode.INTERNAL_ERROR)

    try:
        snapshot = await context.registry.refresh()
    except DiscoveryError as error:
        logging.error(f"Endpoint refresh failed: {error}")
        return error_response(error.description, schemas.OutcomeCode.INTERNAL_ERROR)

    return schemas.StatusResponse(
        description="Endpoints refreshed.", endpoints=snapshot.counts()
    )
