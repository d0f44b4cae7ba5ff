from sqlalchemy import Column, BigInteger, Boolean, DateTime, Float, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class SessionTable(Base):
    __tablename__ = 'performance_sessions'

    id = Column(String, primary_key=True)
    anonymous_user_id = Column(String, nullable=False, index=True)
    device_id = Column(String)
    device_type = Column(String, nullable=False, default='unknown')
    app_version = Column(String)
    session_start = Column(DateTime(timezone=True), nullable=False, index=True)
    session_end = Column(DateTime(timezone=True))


class MetricTable(Base):
    __tablename__ = 'performance_metrics'

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey('performance_sessions.id', ondelete='CASCADE'), nullable=False)
    metric_type = Column(String, nullable=False)
    metric_value = Column(Float, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    context = Column(JSONB, nullable=False, default=dict)

    __table_args__ = (
        Index('ix_performance_metrics_session_timestamp', 'session_id', 'timestamp'),
        Index('ix_performance_metrics_type_timestamp', 'metric_type', 'timestamp'),
    )


class AlertConfigTable(Base):
    __tablename__ = 'alert_configs'

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    metric_type = Column(String, nullable=False)
    threshold_warning = Column(Float, nullable=False)
    threshold_critical = Column(Float, nullable=False)
    notification_channels = Column(JSONB, nullable=False, default=list)
    suppression_rules = Column(JSONB, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class AlertHistoryTable(Base):
    __tablename__ = 'alert_history'

    id = Column(String, primary_key=True)
    # regression alerts use synthetic config ids, so no foreign key here
    config_id = Column(String, nullable=False, index=True)
    severity = Column(String, nullable=False)
    metric_value = Column(Float, nullable=False)
    threshold_violated = Column(Float, nullable=False)
    message = Column(String, nullable=False)
    source = Column(String, nullable=False)
    status = Column(String, nullable=False, default='active', index=True)
    acknowledged_at = Column(DateTime(timezone=True))
    acknowledged_by = Column(String)
    resolved_at = Column(DateTime(timezone=True))
    resolved_by = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False)
    # `metadata` is reserved on declarative classes
    alert_metadata = Column(JSONB, nullable=False, default=dict, name='metadata')
