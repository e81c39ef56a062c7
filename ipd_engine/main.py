# ipd_engine/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ipd_engine.api.exception_handlers import register_exception_handlers
from ipd_engine.api.router import api_router
from ipd_engine.core.config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title=settings.PROJECT_NAME,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(api_router, prefix=settings.API_V1_STR)


# Health
@app.get("/")
def root():
    return {"message": "IPD bed & transfer engine running", "version": "v1"}
