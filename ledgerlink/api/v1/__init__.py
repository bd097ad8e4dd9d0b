"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import webhooks, reconciliation, outbox, records

api_router = APIRouter()

api_router.include_router(
    webhooks.router,
    prefix="/payments/webhook",
    tags=["webhooks"]
)

api_router.include_router(
    reconciliation.router,
    prefix="/reconciliation",
    tags=["reconciliation"]
)

api_router.include_router(
    outbox.router,
    prefix="/outbox",
    tags=["outbox"]
)

api_router.include_router(
    records.router,
    prefix="/records",
    tags=["records"]
)
