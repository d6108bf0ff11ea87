"""RemoteOptimizerJob model: durable fields of a remote optimization job."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, String, Text

from remote_optimizer.db.base import Base


class RemoteOptimizerJob(Base):
    __tablename__ = "remote_optimizer_jobs"

    id = Column(String(36), primary_key=True)  # uuid4 string, assigned at trigger time
    template_id = Column(String(255), nullable=False, index=True)
    template_name = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="queued", index=True)  # JobStatus values

    # Lifecycle timestamps (each written once)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    # Cloud VM binding, cleared once the VM is gone
    hetzner_server_id = Column(BigInteger, nullable=True)
    remote_server_ip = Column(String(64), nullable=True)

    # Audit
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
