"""FastAPI dependencies resolving services from the app's container."""
from fastapi import Request

from caseai.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
