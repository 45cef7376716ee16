from fastapi import APIRouter

from chatgate.api.routes import completions, utils

api_router = APIRouter()
api_router.include_router(completions.router)
api_router.include_router(utils.models_router)
