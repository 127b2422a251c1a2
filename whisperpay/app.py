import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.concurrency import asynccontextmanager
from fastapi.middleware.cors import CORSMiddleware

from whisperpay.config import configure_logging, load_settings
from whisperpay.helper.api_service import APIService

configure_logging()
logger = logging.getLogger(__name__)

settings = load_settings()
api_service = APIService(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await api_service.register_startup_event()
    yield
    await api_service.register_shutdown_event()


app = FastAPI(lifespan=lifespan)

# Add CORS middleware configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.post("/api/deploy-l3")
async def deploy_l3(request: Request):
    return await api_service.deploy(request=request)


@app.get("/api/deploy-l3/status")
async def deploy_l3_status(wallet: Optional[str] = None):
    return await api_service.status(wallet=wallet)


@app.post("/api/deploy-l3/encrypt")
async def deploy_l3_encrypt(request: Request, wallet: Optional[str] = None):
    return await api_service.encrypt(request=request, wallet=wallet)


@app.post("/api/bridge-to-l3")
async def bridge_to_l3(request: Request):
    return await api_service.bridge(request=request)


@app.post("/api/listener/transfer")
async def listener_transfer(request: Request):
    return await api_service.trigger_transfer(request=request)


# Add a health check endpoint for the settlement watchers
@app.get("/api/settlement_health")
async def settlement_health():
    return await api_service.settlement_health()


def main():
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
