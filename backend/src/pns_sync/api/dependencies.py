"""Request-scoped dependencies for the API routes."""

from typing import Awaitable, Callable

from fastapi import Request

from pns_sync.uow import UnitOfWork


def get_uow_factory(request: Request) -> Callable[[], Awaitable[UnitOfWork]]:
    """The unit-of-work factory the lifespan stored on ``app.state``.

    Tests swap in their own factory by assigning ``app.state.uow_factory``.
    """
    return request.app.state.uow_factory
