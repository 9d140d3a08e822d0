from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import logging
from pathlib import Path
from typing import Optional
from datetime import datetime

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from ledger.config import LedgerSettings
from ledger.ledger_store import LedgerStore, MongoLedgerStore
from ledger.policy_service import LedgerPolicyService
from ledger_routes import ledger_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create router with /api prefix
api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "version": "1.0.0",
        "service": "PetroPulse Ledger"
    }


def create_app(store: Optional[LedgerStore] = None, settings: Optional[LedgerSettings] = None) -> FastAPI:
    """
    Build the API application.

    Without a store, a MongoLedgerStore is opened from MONGO_URL / DB_NAME
    (the URL must point at a replica set for multi-document transactions).
    """
    settings = settings or LedgerSettings.from_env()

    client = None
    if store is None:
        client = AsyncIOMotorClient(settings.mongo_url)
        store = MongoLedgerStore(client, client[settings.db_name])

    app = FastAPI(
        title="PetroPulse - Transaction Ledger",
        version="1.0.0",
        description="Fuel-station transaction ledger and loyalty accounting"
    )

    app.state.ledger_settings = settings
    app.state.ledger_store = store
    app.state.policy_service = LedgerPolicyService(store, settings)

    app.include_router(api_router)
    app.include_router(ledger_router)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if client is not None:
        @app.on_event("shutdown")
        async def shutdown_db_client():
            client.close()

    logger.info(f"Ledger API ready (tax_rate={settings.tax_rate}, store={type(store).__name__})")
    return app


app = create_app()
