"""PULSE — FastAPI dependencies."""

from typing import Generator

from fastapi import Depends, Request
from sqlmodel import Session

from pulse.services.container import Services


def get_services(request: Request) -> Services:
    """The service container built in the app lifespan."""
    return request.app.state.services


def get_session(services: Services = Depends(get_services)) -> Generator[Session, None, None]:
    with services.session_factory() as session:
        yield session
