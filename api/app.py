"""
Benefit Ledger API - Flask Application Entry Point

This module builds the Flask application with OpenAPI 3.0 support and wires
the eligibility ledger: configuration, storage backend, slot locks, the
eligibility engine and the report use cases.
"""

import os
import atexit
import logging
from typing import Callable, Optional

from flask_openapi3 import OpenAPI, Info

from observability.config import setup_observability
from observability.middleware import add_observability_middleware
from middleware.error_handler import ErrorHandlerMiddleware
from domain.eligibility import EligibilityConfig
from services.audit import AuditService
from services.eligibility import EligibilityEngine
from services.ledger import BenefitLedger, InMemoryBenefitLedger, MongoBenefitLedger
from services.locks import create_lock_manager
from services.mongodb import get_mongodb_service
from services.reports import RegistrarConfig, ReportRegistrar, ReportUpdater
from routes.reports import reports_bp

logger = logging.getLogger(__name__)


def create_app(
    eligibility_config: Optional[EligibilityConfig] = None,
    ledger: Optional[BenefitLedger] = None,
    lock_manager=None,
    registrar_config: Optional[RegistrarConfig] = None,
    beneficiary_exists: Optional[Callable[[str], bool]] = None
) -> OpenAPI:
    """
    Build the application.

    Every collaborator can be injected; anything omitted is built from the
    environment. The eligibility configuration is validated here, so a bad
    cooldown mapping fails at startup instead of at request time.
    """
    setup_observability()

    info = Info(
        title="Benefit Ledger API",
        version=os.getenv('SERVICE_VERSION', '1.0.0'),
        description="Eligibility and delivery history for eventual social-welfare benefits"
    )
    app = OpenAPI(__name__, info=info)

    # Environment configuration
    app.config['ENVIRONMENT'] = os.getenv('ENVIRONMENT', 'development')
    app.config['DEBUG'] = app.config['ENVIRONMENT'] == 'development'
    app.config['BASE_URL'] = os.getenv('BASE_URL', 'http://localhost:5000')
    app.config['LEDGER_BACKEND'] = os.getenv('LEDGER_BACKEND', 'memory').lower()

    if app.config['ENVIRONMENT'] != 'test':
        add_observability_middleware(app)

    eligibility_config = eligibility_config or EligibilityConfig.from_env()

    mongodb_service = None
    if ledger is None:
        if app.config['LEDGER_BACKEND'] == 'mongodb':
            mongodb_service = get_mongodb_service()
            mongodb_service.create_indexes()
            atexit.register(mongodb_service.close_connection)
            ledger = MongoBenefitLedger(mongodb_service)
        else:
            ledger = InMemoryBenefitLedger()

    if lock_manager is None:
        lock_manager = create_lock_manager()

    audit_service = AuditService(mongodb_service)
    engine = EligibilityEngine(ledger, eligibility_config)
    registrar = ReportRegistrar(
        engine,
        locks=lock_manager,
        config=registrar_config or RegistrarConfig.from_env(),
        beneficiary_exists=beneficiary_exists,
        audit_service=audit_service
    )
    updater = ReportUpdater(ledger, audit_service=audit_service)

    ErrorHandlerMiddleware(app, app.config['BASE_URL'])
    app.register_api(reports_bp)

    # Make services available to routes
    app.eligibility_config = eligibility_config
    app.benefit_ledger = ledger
    app.eligibility_engine = engine
    app.report_registrar = registrar
    app.report_updater = updater
    app.audit_service = audit_service
    app.mongodb_service = mongodb_service

    logger.info(
        "Benefit ledger API initialized",
        extra={
            "environment": app.config['ENVIRONMENT'],
            "ledger_backend": ledger.__class__.__name__,
            "cooldowns": {t.value: m for t, m in eligibility_config.cooldown_months.items()},
            "count_deleted_in_eligibility": eligibility_config.count_deleted_in_eligibility
        }
    )
    return app


if __name__ == '__main__':
    app = create_app()
    port = int(os.getenv('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=app.config['DEBUG'])
