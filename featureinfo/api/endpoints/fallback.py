import logging

from fastapi import APIRouter

from featureinfo.core import schemas
from featureinfo.api.endpoints.features import error_response

router = APIRouter(tags=["Fallback"])


# Must be included last, it swallows every path the other routers did not match
@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def unknown_route(path: str):
    logging.info(f"Detected an unknown request route: /{path}")
    return error_response(
        "Unknown route, only '/get', '/status' and '/refresh' are permitted.",
        schemas.OutcomeCode.UNSUPPORTED_ROUTE,
    )
