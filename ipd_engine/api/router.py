# ipd_engine/api/router.py
from fastapi import APIRouter

from ipd_engine.api import (
    routes_ipd_masters,
    routes_ipd_admissions,
    routes_ipd_transfers,
)

api_router = APIRouter()

api_router.include_router(routes_ipd_masters.router, prefix="/ipd")
api_router.include_router(routes_ipd_admissions.router, prefix="/ipd")
api_router.include_router(routes_ipd_transfers.router, prefix="/ipd")
