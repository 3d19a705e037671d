"""
Shared Test Fixtures for the BMS Workflow Core
Provides an isolated in-memory database per test, valid payload builders for
every BMS entity, and mock external service adapters.
"""

import os

# Keep the module-level engine off disk and the adapters in mock mode
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EXTERNAL_SERVICES_MODE", "mock")

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import database  # noqa: F401  registers the write-once column guards
from models import Base
from services.bms_record_service import BMSRecordService
from services.external_services import MockEmailProvider, MockPaymentGateway, MockScreeningProvider

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

NOW = datetime(2025, 1, 15, 12, 0, 0)


def _valid_payloads() -> Dict[str, Callable[[], Dict[str, Any]]]:
    return {
        "executive_dashboards": lambda: {"user_id": "exec-1", "dashboard_type": "ceo"},
        "board_reports": lambda: {
            "report_type": "quarterly", "period": "2025-Q1",
            "financial_data": {"revenue": "1200000.00"}, "compliance_status": {"sar_filed": 2},
            "risk_metrics": {"var": "0.03"}, "kpi_summary": {"mau": 52000},
            "generated_by": "cfo-1",
        },
        "kyc_workflows": lambda: {"user_id": "user-100", "current_stage": "email"},
        "user_segments": lambda: {"user_id": "user-100", "segment_type": "vip"},
        "wallet_operations": lambda: {
            "wallet_type": "cold", "asset": "BTC", "operation_type": "withdrawal",
            "amount": "1.50000000", "destination_address": "bc1qexampledestination",
            "created_by": "treasurer-1",
        },
        "treasury_reports": lambda: {
            "report_date": "2025-01-15T00:00:00Z", "total_assets": {"BTC": "120.5"},
            "hot_wallet_balances": {"BTC": "10.5"}, "cold_wallet_balances": {"BTC": "110"},
            "customer_liabilities": {"BTC": "115"}, "generated_by": "treasurer-1",
        },
        "trading_pair_controls": lambda: {
            "symbol": "BTC/USDT", "base_asset": "BTC", "quote_asset": "USDT",
            "trading_fees": {"maker": "0.001", "taker": "0.002"}, "last_updated_by": "ops-1",
        },
        "risk_monitoring": lambda: {"monitoring_type": "concentration", "risk_metric": "var"},
        "compliance_reports": lambda: {
            "report_type": "sar", "jurisdiction": "US", "suspicious_activity": "Structured deposits",
            "filed_by": "mlro-1", "due_date": "2025-02-14T00:00:00",
        },
        "audit_logs": lambda: {"user_id": "admin-1", "action": "admin_action", "details": {"target": "user-100"}},
        "legal_documents": lambda: {
            "document_type": "tos", "title": "Terms of Service", "version": "3.1",
            "content": "...", "effective_date": "2025-01-01T00:00:00", "created_by": "legal-1",
        },
        "support_tickets": lambda: {
            "ticket_number": f"TKT-TEST-{uuid.uuid4().hex[:6].upper()}", "user_id": "user-100",
            "category": "account", "subject": "Cannot log in", "description": "2FA code rejected",
        },
        "ticket_messages": lambda: {
            "ticket_id": str(uuid.uuid4()), "sender_id": "agent-1", "sender_type": "agent",
            "message": "Looking into it",
        },
        "customer_profiles": lambda: {"user_id": "user-100"},
        "affiliate_programs": lambda: {
            "program_name": "Partners", "program_type": "partner",
            "commission_structure": {"type": "percentage", "rate": "0.3"}, "created_by": "growth-1",
        },
        "affiliate_tracking": lambda: {"affiliate_id": "aff-1", "program_id": str(uuid.uuid4())},
        "revenue_reports": lambda: {"report_period": "2025-01", "generated_by": "cfo-1"},
        "invoices": lambda: {
            "invoice_number": f"INV-{uuid.uuid4().hex[:8].upper()}", "client_id": "client-1",
            "client_type": "otc", "invoice_type": "otc_commission", "amount": "1000.00",
            "tax_amount": "80.00", "total_amount": "1080.00", "due_date": "2025-02-15T00:00:00",
            "issued_by": "finance-1",
        },
        "security_incidents": lambda: {
            "incident_type": "suspicious_activity", "title": "Credential stuffing",
            "description": "Burst of failed logins",
        },
        "security_alerts": lambda: {"alert_type": "brute_force", "description": "200 failed logins in 60s"},
        "custom_dashboards": lambda: {"user_id": "ops-1", "dashboard_name": "KYC backlog", "layout": {"cols": 3}},
        "system_alerts": lambda: {
            "alert_name": "KYC backlog", "alert_type": "threshold", "metric": "kyc_backlog",
            "comparison_operator": "gt", "created_by": "ops-1",
        },
        "staff_directory": lambda: {
            "employee_id": f"EMP-{uuid.uuid4().hex[:6]}", "user_id": "staff-1", "first_name": "Ada",
            "last_name": "Lovelace", "email": "ada@example.com", "department": "compliance",
            "position": "Analyst", "start_date": "2024-03-01T00:00:00",
        },
        "performance_metrics": lambda: {
            "employee_id": "EMP-1", "metric_type": "sla", "metric_name": "First response", "period": "2025-01",
        },
    }


VALID_PAYLOADS = _valid_payloads()


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database shared across threads for one test"""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def payload():
    """Build a valid insert payload for an entity type, with overrides"""
    def build(entity_type: str, **overrides) -> Dict[str, Any]:
        data = VALID_PAYLOADS[entity_type]()
        data.update(overrides)
        return data
    return build


@pytest.fixture
def create(db_session, payload):
    """Insert a valid record through the record service"""
    def build(entity_type: str, **overrides):
        return BMSRecordService.create_record(db_session, entity_type, payload(entity_type, **overrides))
    return build


@pytest.fixture
def affiliate_program(create):
    return create("affiliate_programs", minimum_payout="100.00")


@pytest.fixture
def mock_email():
    return MockEmailProvider()


@pytest.fixture
def mock_payments():
    return MockPaymentGateway()


@pytest.fixture
def mock_screening():
    return MockScreeningProvider(sanctioned={"user-sanctioned"}, politically_exposed={"user-pep"})


@pytest.fixture
def no_sleep():
    """Awaitable sleep replacement recording requested delays"""
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def later():
    def shift(**kwargs):
        return NOW + timedelta(**kwargs)
    return shift
