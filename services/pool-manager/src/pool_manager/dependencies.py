"""FastAPI dependencies resolving the handlers built in the lifespan."""

from fastapi import Request

from .invitations import InvitationHandler
from .pool import PoolController
from .reconciler import TaskLifecycleReconciler
from .services import PoolServices
from .store import StageStore


def get_services(request: Request) -> PoolServices:
    return request.app.state.services


def get_invitations(request: Request) -> InvitationHandler:
    return get_services(request).invitations


def get_pool(request: Request) -> PoolController:
    return get_services(request).pool


def get_reconciler(request: Request) -> TaskLifecycleReconciler:
    return get_services(request).reconciler


def get_stages(request: Request) -> StageStore:
    return get_services(request).stages
