from datetime import date

from billing_collections.celery_app import celery_app
from billing_collections.db import SessionLocal
from billing_collections.services.collections import jobs as jobs_service


@celery_app.task(name="billing_collections.tasks.collections.run_anchor")
def run_anchor(target_date: str | None = None, override_fx: bool = False):
    session = SessionLocal()
    try:
        result = jobs_service.run_anchor_job(
            session,
            date.fromisoformat(target_date) if target_date else None,
            override_fx=override_fx,
        )
        session.commit()
        return result
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="billing_collections.tasks.collections.run_presentment")
def run_presentment(business_date: str | None = None):
    session = SessionLocal()
    try:
        result = jobs_service.run_presentment_job(
            session, date.fromisoformat(business_date) if business_date else None
        )
        session.commit()
        return result
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="billing_collections.tasks.collections.run_fallback_create")
def run_fallback_create(provider: str | None = None):
    session = SessionLocal()
    try:
        result = jobs_service.run_fallback_create_job(session, provider)
        session.commit()
        return result
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="billing_collections.tasks.collections.run_fallback_sync")
def run_fallback_sync():
    session = SessionLocal()
    try:
        result = jobs_service.run_fallback_sync_job(session)
        session.commit()
        return result
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@celery_app.task(name="billing_collections.tasks.collections.run_fiscal_retry")
def run_fiscal_retry():
    session = SessionLocal()
    try:
        result = jobs_service.run_fiscal_retry_job(session)
        session.commit()
        return result
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
