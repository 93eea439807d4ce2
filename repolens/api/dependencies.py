"""FastAPI dependencies shared by the routers."""

from fastapi import Request

from ..core.services import Services


def get_services(request: Request) -> Services:
    """The service container built during app startup."""
    return request.app.state.services
