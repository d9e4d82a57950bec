"""
Ops Workflow Hub - Main Server

Claims and leave approval workflows over FastAPI + MongoDB.

Everything is wired explicitly in build_services(): the WorkflowConfig is
read from the environment once and handed to every service. With db=None
the in-memory adapters are used (local runs, tests).
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, FastAPI
from motor.motor_asyncio import AsyncIOMotorClient
from starlette.middleware.cors import CORSMiddleware

from routes import create_approval_events_router, create_claims_router, create_leave_router
from services.approval_events import ApprovalEventBus
from services.approval_gateway import ApprovalGateway, HttpApprovalGateway, InMemoryApprovalGateway
from services.claims_service import ClaimsWorkflowService
from services.email_service import EmailService
from services.leave_service import LeaveWorkflowService
from services.notifications import EmailNotificationPort, NotificationDispatcher
from services.record_store import InMemoryRecordStore, MotorRecordStore
from services.rewards_gateway import InMemoryRewardsGateway, MotorRewardsGateway
from services.user_directory import InMemoryUserDirectory, MotorUserDirectory
from services.workflow_config import WorkflowConfig
from services.workflow_records import ClaimRecord, LeaveRecord

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


# ==================== SERVICES ====================

@dataclass
class WorkflowServices:
    config: WorkflowConfig
    claims: ClaimsWorkflowService
    leave: LeaveWorkflowService
    approvals: ApprovalGateway
    dispatcher: NotificationDispatcher
    events: ApprovalEventBus
    db: object = None

    async def create_indexes(self):
        """Create database indexes."""
        if self.db is None:
            return
        await self.claims.store.create_indexes()
        await self.leave.store.create_indexes()
        await self.db.users.create_index("id", unique=True)
        await self.db.users.create_index([("organisation_id", 1), ("role", 1)])
        await self.db.reward_accounts.create_index([("owner_ref", 1), ("organisation_id", 1)])
        await self.db.email_logs.create_index("sent_at")
        logger.info("Database indexes created")


def build_approval_gateway(config: WorkflowConfig) -> ApprovalGateway:
    if config.approvals_api_url:
        logger.info("Using approval service at %s", config.approvals_api_url)
        return HttpApprovalGateway(
            config.approvals_api_url,
            token=config.approvals_api_token,
            timeout=config.approvals_timeout_seconds,
        )
    logger.info("APPROVALS_API_URL not set; using in-process approval registry")
    return InMemoryApprovalGateway()


def build_services(config: WorkflowConfig, db=None, approvals: Optional[ApprovalGateway] = None) -> WorkflowServices:
    approvals = approvals or build_approval_gateway(config)
    email_service = EmailService(db=db, provider=config.email_provider, from_address=config.email_from_address)
    dispatcher = NotificationDispatcher(EmailNotificationPort(email_service, db))

    if db is None:
        claim_store = InMemoryRecordStore(ClaimRecord, config.record_version_guard)
        leave_store = InMemoryRecordStore(LeaveRecord, config.record_version_guard)
        users = InMemoryUserDirectory()
        rewards = InMemoryRewardsGateway()
    else:
        claim_store = MotorRecordStore(db.claims, ClaimRecord, config.record_version_guard)
        leave_store = MotorRecordStore(db.leave_requests, LeaveRecord, config.record_version_guard)
        users = MotorUserDirectory(db)
        rewards = MotorRewardsGateway(db)

    claims = ClaimsWorkflowService(claim_store, approvals, dispatcher, users, rewards, config)
    leave = LeaveWorkflowService(leave_store, approvals, dispatcher, users, config)

    events = ApprovalEventBus()
    events.subscribe(claims.on_approval_action_performed)
    events.subscribe(leave.on_approval_action_performed)
    if isinstance(approvals, InMemoryApprovalGateway):
        approvals.subscribe(events.publish)

    return WorkflowServices(
        config=config,
        claims=claims,
        leave=leave,
        approvals=approvals,
        dispatcher=dispatcher,
        events=events,
        db=db,
    )


# ==================== APP SETUP ====================

def create_app(config: Optional[WorkflowConfig] = None, services: Optional[WorkflowServices] = None) -> FastAPI:
    config = config or WorkflowConfig.from_env()
    mongo_client = None
    if services is None:
        mongo_client = AsyncIOMotorClient(config.mongo_url)
        services = build_services(config, mongo_client[config.db_name])

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown."""
        logger.info("Starting Ops Workflow Hub...")
        await services.create_indexes()
        logger.info("Ops Workflow Hub started. Version guard: %s", config.record_version_guard)

        yield

        logger.info("Shutting down Ops Workflow Hub...")
        await services.dispatcher.drain()
        if mongo_client:
            mongo_client.close()

    app = FastAPI(
        title="Ops Workflow Hub",
        description="Approval-driven claims and leave workflows",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # API Router with /api prefix
    api_router = APIRouter(prefix="/api")
    api_router.include_router(create_claims_router(services.claims))
    api_router.include_router(create_leave_router(services.leave))
    api_router.include_router(create_approval_events_router(services.events))

    @api_router.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": "ops-workflow-hub",
            "approvals": type(services.approvals).__name__,
            "pending_notifications": services.dispatcher.pending_count,
        }

    app.include_router(api_router)
    return app


app = create_app()
