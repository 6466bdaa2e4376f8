from fastapi import APIRouter
from featureinfo.api.endpoints import features, fallback

api_router = APIRouter()

# Combine all sub-routers into one, the fallback has to come last
api_router.include_router(features.router)
api_router.include_router(fallback.router)
