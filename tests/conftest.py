import io
import os
import sqlite3
import sys
import uuid
from datetime import date
from decimal import Decimal

import pytest
from botocore.exceptions import ClientError
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from billing_collections.db import Base

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)


def _patch_jsonb_for_sqlite():
    """Make JSONB compile as JSON for SQLite dialect."""
    from sqlalchemy.dialects.sqlite.base import SQLiteTypeCompiler

    if not hasattr(SQLiteTypeCompiler, "_original_visit_JSONB"):
        if hasattr(SQLiteTypeCompiler, "visit_JSONB"):
            SQLiteTypeCompiler._original_visit_JSONB = SQLiteTypeCompiler.visit_JSONB

        def visit_JSONB(self, type_, **kw):
            return self.visit_JSON(type_, **kw)

        SQLiteTypeCompiler.visit_JSONB = visit_JSONB


_patch_jsonb_for_sqlite()

from billing_collections import config
from billing_collections import models  # noqa: F401
from billing_collections.models.collections import (
    BillingMandate,
    BillingPaymentMethod,
    BillingSubscription,
    FxRate,
    MandateStatus,
    PaymentMethodStatus,
    PaymentMethodType,
    SubscriptionStatus,
)
from billing_collections.services import object_storage
from billing_collections.services.collections.mandates import hash_cbu
from billing_collections.services.common import utcnow

VALID_CBU = "0070999000000000000017"
RATE_DATE = date(2026, 3, 8)


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        # Use PostgreSQL for tests (recommended)
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

        # pysqlite manages transactions itself and breaks SAVEPOINT; hand
        # BEGIN over to SQLAlchemy so begin_nested() works.
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)

    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(bind=connection, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def override_settings(monkeypatch):
    """Replace ``settings`` in every loaded billing_collections module.

    Usage: ``override_settings(billing_dunning_enable_fallback=False)``.
    """

    def _apply(**values):
        updated = config.settings.model_copy(update=values)
        for name, module in list(sys.modules.items()):
            if not name.startswith("billing_collections") or module is None:
                continue
            if isinstance(getattr(module, "settings", None), config.Settings):
                monkeypatch.setattr(module, "settings", updated)
        return updated

    return _apply


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client methods the storage layer calls."""

    def __init__(self):
        self.objects: dict[tuple[str, str], dict] = {}
        self.buckets: set[str] = set()
        self.fail_uploads = False

    @staticmethod
    def _error(code: str, operation: str) -> ClientError:
        return ClientError({"Error": {"Code": code, "Message": code}}, operation)

    def put_object(self, Bucket, Key, Body, ContentType=None):
        if self.fail_uploads:
            raise self._error("ServiceUnavailable", "PutObject")
        self.objects[(Bucket, Key)] = {"Body": bytes(Body), "ContentType": ContentType}
        return {"ETag": uuid.uuid4().hex}

    def get_object(self, Bucket, Key):
        stored = self.objects.get((Bucket, Key))
        if stored is None:
            raise self._error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(stored["Body"]), "ContentType": stored["ContentType"]}

    def head_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise self._error("404", "HeadObject")
        return {"ContentLength": len(self.objects[(Bucket, Key)]["Body"])}

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)
        return {}

    def head_bucket(self, Bucket):
        if Bucket not in self.buckets:
            raise self._error("404", "HeadBucket")
        return {}

    def create_bucket(self, Bucket, **kwargs):
        self.buckets.add(Bucket)
        return {}


@pytest.fixture()
def s3_client():
    return FakeS3Client()


@pytest.fixture(autouse=True)
def storage(monkeypatch, s3_client):
    service = object_storage.S3StorageService(
        bucket_name="test-billing-batches",
        endpoint_url="http://storage.test",
        access_key=None,
        secret_key=None,
        region="us-east-1",
        client=s3_client,
    )
    monkeypatch.setattr(object_storage, "get_s3_storage", lambda: service)
    return service


@pytest.fixture()
def make_subscription(db_session):
    def _make(
        anchor_day: int = 8,
        plan_base_usd: Decimal | None = Decimal("100.00"),
        discount_pct: Decimal = Decimal("10.00"),
        timezone: str = "America/Argentina/Buenos_Aires",
        status: SubscriptionStatus = SubscriptionStatus.active,
        agency_id=None,
    ) -> BillingSubscription:
        subscription = BillingSubscription(
            agency_id=agency_id or uuid.uuid4(),
            status=status,
            anchor_day=anchor_day,
            timezone=timezone,
            direct_debit_discount_pct=discount_pct,
            plan_base_usd=plan_base_usd,
        )
        db_session.add(subscription)
        db_session.flush()
        return subscription

    return _make


@pytest.fixture()
def make_direct_debit_method(db_session):
    def _make(
        subscription: BillingSubscription,
        mandate_status: MandateStatus | None = MandateStatus.active,
        status: PaymentMethodStatus = PaymentMethodStatus.active,
        is_default: bool = True,
        cbu: str = VALID_CBU,
    ) -> BillingPaymentMethod:
        method = BillingPaymentMethod(
            subscription_id=subscription.id,
            method_type=PaymentMethodType.direct_debit_cbu_galicia,
            status=status,
            is_default=is_default,
            holder_name="Agencia Sur SRL",
            holder_tax_id="30712345679",
        )
        if mandate_status is not None:
            method.mandate = BillingMandate(
                status=mandate_status,
                cbu_last4=cbu[-4:],
                cbu_hash=hash_cbu(cbu),
                consent_version="v1",
                consent_accepted_at=utcnow(),
                activated_at=utcnow() if mandate_status == MandateStatus.active else None,
            )
        db_session.add(method)
        db_session.flush()
        return method

    return _make


@pytest.fixture()
def make_fx_rate(db_session):
    def _make(
        rate_date: date = RATE_DATE,
        ars_per_usd: Decimal = Decimal("1000.000000"),
        fx_type: str = "DOLAR_BSP",
    ) -> FxRate:
        rate = FxRate(fx_type=fx_type, rate_date=rate_date, ars_per_usd=ars_per_usd)
        db_session.add(rate)
        db_session.flush()
        return rate

    return _make


@pytest.fixture()
def billable_subscription(make_subscription, make_direct_debit_method, make_fx_rate):
    """Active subscription anchored on day 8, paying by direct debit, with a rate loaded."""
    subscription = make_subscription()
    make_direct_debit_method(subscription)
    make_fx_rate()
    return subscription
