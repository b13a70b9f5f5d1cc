"""
License Data Models

Two tables:
- external_licenses: mirror of the third-party license API, refreshed by
  fetch + bulk upsert on every sync.
- licenses: the internal system of record the rest of the dashboard uses.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Text
from datetime import datetime

from license_sync.models.base import Base


class ExternalLicense(Base):
    """
    Mirror of one record from the external license API

    Upserted by appid. Never deleted by the sync.
    """
    __tablename__ = "external_licenses"

    id = Column(Integer, primary_key=True, index=True)

    # External identifiers (match priority: appid > countid > mid)
    appid = Column(String(255), unique=True, index=True, nullable=False)
    countid = Column(Integer, index=True, nullable=True)
    mid = Column(String(255), index=True, nullable=True)
    email_license = Column(String(255), index=True, nullable=True)

    # Business attributes (external representation)
    dba = Column(String(255), nullable=True)
    zip = Column(String(10), nullable=True)
    status = Column(String(32), nullable=True)  # 1/0, "active", "true"... kept raw
    plan = Column(String(64), nullable=True)
    term = Column(String(32), nullable=True)
    last_payment = Column(Float, default=0)  # monthlyFee
    sms_balance = Column(Float, default=0)
    seats_total = Column(Integer, nullable=True)
    seats_used = Column(Integer, nullable=True)
    agents_name = Column(JSON, nullable=True)  # list or string
    notes = Column(Text, nullable=True)
    license_type = Column(String(50), nullable=True)
    package_data = Column(JSON, nullable=True)
    sendbat_workspace = Column(String(255), nullable=True)

    # Dates (stored as received; sanitized on the way into licenses)
    starts_at = Column(String(64), nullable=True)
    last_active = Column(String(64), nullable=True)
    cancel_date = Column(String(64), nullable=True)
    coming_expired = Column(String(64), nullable=True)

    # Sync tracking
    sync_status = Column(String(16), index=True, default="pending")  # pending, synced, failed
    sync_error = Column(Text, nullable=True)
    last_synced_at = Column(DateTime, index=True, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class License(Base):
    """
    Internal license record - system of record for the dashboard

    Rows created from external data get a generated unique key and keep
    the external identifiers so the next reconciliation finds them again.
    """
    __tablename__ = "licenses"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, index=True, nullable=False)

    product = Column(String(255), nullable=False)
    dba = Column(String(255), nullable=False)
    zip = Column(String(255), default="")
    status = Column(String(16), index=True, default="pending")  # active, cancel, pending, suspended, trial
    plan = Column(String(64), default="Basic")
    term = Column(String(32), default="monthly")

    last_payment = Column(Float, default=0)
    sms_balance = Column(Float, default=0)
    seats_total = Column(Integer, default=1)
    seats_used = Column(Integer, default=0)
    agents = Column(Integer, default=0)
    agents_name = Column(Text, default="")
    agents_cost = Column(Float, default=0)
    notes = Column(Text, default="")

    starts_at = Column(String(64), nullable=True)  # ISO 8601
    last_active = Column(String(64), nullable=True)
    cancel_date = Column(String(64), nullable=True)

    # External identifiers
    appid = Column(String(255), index=True, nullable=True)
    countid = Column(Integer, index=True, nullable=True)
    mid = Column(String(255), index=True, nullable=True)
    email_license = Column(String(255), nullable=True)
    license_type = Column(String(50), nullable=True)
    package_data = Column(JSON, nullable=True)
    sendbat_workspace = Column(String(255), nullable=True)
    coming_expired = Column(String(64), nullable=True)

    # Reconciliation tracking
    external_sync_status = Column(String(16), nullable=True)
    last_external_sync = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
