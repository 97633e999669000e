from fastapi import APIRouter, Depends

from rentalhub.container import Services
from rentalhub.dependencies import get_services

router = APIRouter(tags=["health"])


@router.get("/health")
def health(services: Services = Depends(get_services)) -> dict:
    return {
        "status": "ok",
        "environment": services.settings.environment,
        "online_devices": services.device_broker.device_count,
    }
