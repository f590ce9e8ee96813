"""Pytest configuration and fixtures."""

from decimal import Decimal

import pytest

from labcare.billing.models import BillableItem, PaymentMethod
from labcare.config import Settings
from labcare.core.gateway import InMemoryBillingGateway
from labcare.core.repository import InMemoryEncounterRepository
from labcare.encounter.machine import EncounterStateMachine
from labcare.encounter.session import EncounterSession
from labcare.encounter.state import EncounterPhase
from labcare.extraction.allocator import ResourceAllocator, ResourcePool
from labcare.observability import ObservabilityLogger


@pytest.fixture(autouse=True)
def obs_logger(tmp_path):
    """Send workflow telemetry to a per-test directory."""
    logger = ObservabilityLogger.configure(log_dir=tmp_path / "logs", enabled=True)
    yield logger
    ObservabilityLogger._instance = None


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        observability_log_dir=tmp_path / "logs",
        extraction_box_count=3,
        branch_id="1",
    )


@pytest.fixture
def repository():
    return InMemoryEncounterRepository(branch_id="1")


@pytest.fixture
def gateway():
    return InMemoryBillingGateway()


@pytest.fixture
def pool():
    return ResourcePool.from_count(3)


@pytest.fixture
def allocator(repository, pool):
    return ResourceAllocator(repository, pool)


@pytest.fixture
def machine(repository, gateway, allocator, settings):
    return EncounterStateMachine(
        repository, gateway=gateway, allocator=allocator, settings=settings
    )


@pytest.fixture
def session():
    return EncounterSession()


@pytest.fixture
def sample_items():
    """Two analyses: one partly covered, one fully paid by the patient."""
    return [
        BillableItem(
            id="item-glucose",
            analysis_id="GLU",
            description="Glucose",
            total_amount=Decimal("1200"),
            covered_amount=Decimal("200"),
            coverage_id="cov-3",
        ),
        BillableItem(
            id="item-lipids",
            analysis_id="LIP",
            description="Lipid panel",
            total_amount=Decimal("500"),
        ),
    ]


@pytest.fixture
def drive(machine, sample_items):
    """Walk a session forward along the desk path up to ``target``."""

    async def _drive(session, target: EncounterPhase, urgent: bool = False):
        await machine.open(session)
        if target == EncounterPhase.REGISTERING_GENERAL_DATA:
            return session.encounter

        await machine.assign_general_data(session, "patient-1", "doctor-7", "coverage-3")
        if target == EncounterPhase.REGISTERING_ANALYSES:
            return session.encounter

        await machine.commit_analyses(session, sample_items, urgent=urgent, authorization_number="AUTH-9")
        if target == EncounterPhase.ON_COLLECTION_PROCESS:
            return session.encounter

        worksheet = machine.worksheet(session)
        worksheet.choose_iva(Decimal("21"))
        worksheet.add_payment(PaymentMethod.CASH, Decimal("1815"))
        await machine.commit_payment(session, worksheet, "pay-1")
        if target == EncounterPhase.ON_BILLING_PROCESS:
            return session.encounter

        machine.record_billing_reference(session, "INV-0001")
        await machine.end_billing_phase(session)
        if target == EncounterPhase.AWAITING_CONFIRMATION:
            return session.encounter

        raise ValueError(f"Cannot drive to {target}")

    return _drive
