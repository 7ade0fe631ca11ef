from fastapi import Request

from tastegraph.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """The service container built in the application lifespan."""
    return request.app.state.container
