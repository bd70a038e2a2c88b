from fastapi import Request

from certsign.services.lifecycle import LifecycleController


def get_controller(request: Request) -> LifecycleController:
    """Return the controller the app factory attached to ``app.state``."""

    return request.app.state.controller
