from fastapi import APIRouter

from chatgate.api.deps import ServerStateDep, SettingsDep
from chatgate.schemas import ModelCard, ModelList

router = APIRouter(tags=["utils"])


@router.get("/health")
async def health(settings: SettingsDep, server_state: ServerStateDep):
    """Liveness plus the lifecycle phase the process is in."""
    return {
        "status": "ok",
        "state": server_state.state.value,
        "streaming": settings.STREAMING_ENABLED,
    }


models_router = APIRouter(prefix="/models", tags=["models"])


@models_router.get("", response_model=ModelList)
async def list_models(settings: SettingsDep, server_state: ServerStateDep):
    return ModelList(
        data=[
            ModelCard(
                id=settings.MODEL_ID,
                created=int(server_state.created_at),
                owned_by=settings.PROJECT_NAME,
            )
        ]
    )
