from fastapi import APIRouter, Depends

from pathgate.api.deps import get_services
from pathgate.core.settings import settings
from pathgate.services.container import ServiceContainer

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: ServiceContainer = Depends(get_services)):
    return {
        "status": "ok",
        "service": "pathgate-api",
        "environment": settings.app_env,
        "storage_backend": type(services.store).__name__,
        "catalog_nodes": len(services.catalog),
        "advisor": {
            "provider": services.advisor.advisor.provider_name,
            "breaker": services.advisor.breaker.status(),
        },
    }
