"""
Shared fixtures: in-memory adapters wired the same way server.build_services
wires the MongoDB ones.
"""

import pytest

from services.approval_gateway import InMemoryApprovalGateway
from services.claims_service import ClaimsWorkflowService
from services.leave_service import LeaveWorkflowService
from services.notifications import NotificationDispatcher, RecordingNotificationPort
from services.record_store import InMemoryRecordStore
from services.rewards_gateway import InMemoryRewardsGateway
from services.user_directory import InMemoryUserDirectory, UserRef
from services.workflow_config import WorkflowConfig
from services.workflow_records import ClaimRecord, LeaveRecord
from services.workflow_service import TenantContext

ORG = "org-1"
BRANCH = "branch-1"


def seed_users(directory: InMemoryUserDirectory) -> InMemoryUserDirectory:
    directory.add(UserRef(id="user-1", name="Thandi Mokoena", email="thandi@example.com",
                          role="employee", organisation_id=ORG, branch_id=BRANCH))
    directory.add(UserRef(id="user-2", name="Sipho Dlamini", email="sipho@example.com",
                          role="employee", organisation_id=ORG, branch_id=BRANCH))
    directory.add(UserRef(id="admin-1", name="Anele Admin", email="admin@example.com",
                          role="admin", organisation_id=ORG, branch_id=BRANCH))
    directory.add(UserRef(id="manager-1", name="Lerato Manager", email="manager@example.com",
                          role="manager", organisation_id=ORG, branch_id=None))
    directory.add(UserRef(id="admin-other", name="Other Org Admin", email="other@example.com",
                          role="admin", organisation_id="org-2", branch_id="branch-9"))
    return directory


@pytest.fixture
def config():
    return WorkflowConfig()


@pytest.fixture
def users():
    return seed_users(InMemoryUserDirectory())


@pytest.fixture
def approvals():
    return InMemoryApprovalGateway()


@pytest.fixture
def port():
    return RecordingNotificationPort()


@pytest.fixture
def dispatcher(port):
    return NotificationDispatcher(port)


@pytest.fixture
def rewards():
    return InMemoryRewardsGateway()


@pytest.fixture
def ctx():
    return TenantContext(organisation_id=ORG, branch_id=BRANCH, user_ref="user-1")


@pytest.fixture
def admin_ctx():
    return TenantContext(organisation_id=ORG, branch_id=BRANCH, user_ref="admin-1")


@pytest.fixture
def claims_service(approvals, dispatcher, users, rewards, config):
    store = InMemoryRecordStore(ClaimRecord, config.record_version_guard)
    return ClaimsWorkflowService(store, approvals, dispatcher, users, rewards, config)


@pytest.fixture
def leave_service(approvals, dispatcher, users, config):
    store = InMemoryRecordStore(LeaveRecord, config.record_version_guard)
    return LeaveWorkflowService(store, approvals, dispatcher, users, config)
