from fastapi import Request

from pathgate.services.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
