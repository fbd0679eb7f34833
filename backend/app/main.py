"""
ThreadPosts Backend - FastAPI application

Mounts the affiliate, billing, webhook and admin routers plus the
Inngest serve endpoint for background functions.
"""

import os
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import inngest.fast_api

from app.inngest.client import inngest_client
from app.inngest.functions import all_functions
from app.routers import affiliate, billing, webhooks
from app.routers.admin import router as admin_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", FRONTEND_URL).split(",")
    if origin.strip()
]

app = FastAPI(
    title="ThreadPosts API",
    description="Affiliate commission ledger and subscription billing",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(affiliate.router)
app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(admin_router)

# Inngest serve endpoint (/api/inngest)
inngest.fast_api.serve(app, inngest_client, all_functions)


@app.get("/health")
async def health():
    return {"status": "ok"}


logger.info(f"ThreadPosts API started with {len(all_functions)} Inngest functions")
