"""LandedCost-Engine — FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from landedcost.api import pricing
from landedcost.config import get_settings
from landedcost.database import async_session, engine
from landedcost.services.duty import SQLTariffSource
from landedcost.services.fx_rate import build_currency_cache
from landedcost.services.landed_cost import build_assembler
from landedcost.services.policy_store import SQLPolicyStore

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Policy tables are managed by the admin side; the engine only reads them
    app.state.assembler = build_assembler(
        settings,
        SQLPolicyStore(async_session),
        official_duty_sources=[SQLTariffSource(async_session)],
        currency_cache=build_currency_cache(settings),
    )
    yield
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Landed cost engine for international parcels: ranked carrier "
                "options with markup, insurance and import duty/tax",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(pricing.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "service": settings.app_name, "version": "1.0.0"}
