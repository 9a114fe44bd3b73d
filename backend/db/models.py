"""
MyInventory Database Models

20 tables for the retail loss, expiry and risk intelligence platform.
Multi-tenant via org_id on all tables.

Tables:
  Tenancy (1-4):
  1. organizations           - Tenant retail networks (plan drives feature access)
  2. organization_settings   - Per-tenant ML settings document
  3. stores                  - Physical store locations
  4. products                - Product catalog

  Operations (5-7):
  5. loss_records            - Imported/declared losses (expiry, damage, theft, ...)
  6. expiry_reports          - Near-expiry items reported on the shop floor
  7. expiry_report_actions   - Watch/confirm/resolve trail for expiry reports

  Risk Scoring (8-11):
  8. risk_scores             - Current score per store/product/category
  9. risk_score_history      - One snapshot per entity per day
  10. risk_thresholds        - Level cut-offs, component weights, alert rules
  11. risk_alerts            - Score transitions worth a human look

  Intelligence (12-20):
  12. ml_clusters            - Cluster definitions (centroid, label, risk)
  13. ml_cluster_members     - Entity assignment with distance/membership
  14. ml_cluster_runs        - Audit trail of clustering runs
  15. ml_predictions         - Forecast values with confidence intervals
  16. ml_seasonal_patterns   - Weekly/monthly indices and trend
  17. ml_calendar_events     - Holidays, promotions (org-specific or global)
  18. ml_recommendations     - Prioritized actions with estimated savings
  19. ml_recommendation_feedback - User feedback on recommendations
  20. ml_anomalies           - Detected deviations and their triage status
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from sqlalchemy.orm import relationship

from db.session import Base

RISK_LEVELS = ("low", "medium", "high", "critical")
ENTITY_TYPES = ("store", "product", "category", "supplier")

# ─── 1. Organizations ──────────────────────────────────────────────────────


class Organization(Base):
    __tablename__ = "organizations"

    org_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    plan = Column(String(50), nullable=False, default="starter")
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("plan IN ('starter', 'professional', 'enterprise')", name="ck_org_plan"),
        CheckConstraint("status IN ('active', 'inactive', 'trial', 'churned')", name="ck_org_status"),
    )

    stores = relationship("Store", back_populates="organization")


# ─── 2. Organization Settings ──────────────────────────────────────────────


class OrganizationSettings(Base):
    __tablename__ = "organization_settings"

    org_id = Column(GUID(), ForeignKey("organizations.org_id"), primary_key=True)
    ml_settings = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


# ─── 3. Stores ─────────────────────────────────────────────────────────────


class Store(Base):
    __tablename__ = "stores"

    store_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    code = Column(String(50))
    name = Column(String(255), nullable=False)
    address = Column(Text)
    city = Column(String(100))
    state = Column(String(2))
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_stores_org", "org_id"),
        CheckConstraint("status IN ('active', 'inactive', 'onboarding')", name="ck_store_status"),
    )

    organization = relationship("Organization", back_populates="stores")


# ─── 4. Products ───────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    sku = Column(String(100), nullable=False)
    ean = Column(String(14))  # barcode (EAN-8/EAN-13/GTIN-14)
    name = Column(String(255), nullable=False)
    category = Column(String(100))
    brand = Column(String(100))
    supplier = Column(String(255))
    unit_cost = Column(Float)
    unit_price = Column(Float)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("org_id", "sku", name="uq_product_sku_per_org"),
        Index("ix_products_org", "org_id"),
        Index("ix_products_category", "org_id", "category"),
        CheckConstraint("unit_cost >= 0", name="ck_product_cost_positive"),
        CheckConstraint("unit_price >= 0", name="ck_product_price_positive"),
    )


# ─── 5. Loss Records ───────────────────────────────────────────────────────


class LossRecord(Base):
    __tablename__ = "loss_records"

    record_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=True)
    ean = Column(String(14))
    product_name = Column(String(255))
    category = Column(String(100))
    supplier = Column(String(255))
    loss_type = Column(String(20), nullable=False, default="other")
    quantity = Column(Float, nullable=False, default=0)
    unit_cost = Column(Float, default=0)
    total_cost = Column(Float, nullable=False, default=0)
    sale_value = Column(Float, default=0)
    occurred_on = Column(Date, nullable=False)
    import_job_id = Column(GUID(), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_loss_records_org_date", "org_id", "occurred_on"),
        Index("ix_loss_records_store", "store_id"),
        Index("ix_loss_records_import", "import_job_id"),
        CheckConstraint(
            "loss_type IN ('expiry', 'damage', 'theft', 'shrinkage', 'other')",
            name="ck_loss_type",
        ),
        CheckConstraint("quantity >= 0", name="ck_loss_quantity_positive"),
    )


# ─── 6. Expiry Reports ─────────────────────────────────────────────────────


class ExpiryReport(Base):
    __tablename__ = "expiry_reports"

    report_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=False)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=True)
    barcode = Column(String(14), nullable=False)
    product_name = Column(String(255))
    category = Column(String(100))
    brand = Column(String(100))
    unit_price = Column(Float)
    quantity = Column(Integer, nullable=False, default=1)
    expiry_date = Column(Date, nullable=False)
    photo_url = Column(Text)
    status = Column(String(20), nullable=False, default="reported")
    created_by = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    resolved_at = Column(DateTime)
    resolved_by = Column(String(255))
    notes = Column(Text)

    __table_args__ = (
        Index("ix_expiry_reports_org_status", "org_id", "status"),
        Index("ix_expiry_reports_store_expiry", "store_id", "expiry_date"),
        CheckConstraint(
            "status IN ('reported', 'watching', 'confirmed', 'resolved', 'ignored', 'canceled')",
            name="ck_expiry_report_status",
        ),
        CheckConstraint("quantity > 0", name="ck_expiry_report_quantity_positive"),
    )


# ─── 7. Expiry Report Actions ──────────────────────────────────────────────


class ExpiryReportAction(Base):
    __tablename__ = "expiry_report_actions"

    action_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    report_id = Column(GUID(), ForeignKey("expiry_reports.report_id"), nullable=False)
    user_id = Column(String(255), nullable=False)
    action_type = Column(String(20), nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_expiry_actions_report", "report_id"),
        CheckConstraint(
            "action_type IN ('watch', 'confirmed', 'ignored', 'resolved', 'canceled')",
            name="ck_expiry_action_type",
        ),
    )


# ─── 8. Risk Scores ────────────────────────────────────────────────────────


class RiskScore(Base):
    __tablename__ = "risk_scores"

    score_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(100), nullable=False)
    entity_name = Column(String(255))
    score = Column(Integer, nullable=False, default=0)
    level = Column(String(20), nullable=False, default="low")
    trend = Column(String(20), nullable=False, default="stable")
    previous_score = Column(Integer)
    expiry_score = Column(Integer, nullable=False, default=0)
    rupture_score = Column(Integer, nullable=False, default=0)
    recurrence_score = Column(Integer, nullable=False, default=0)
    financial_score = Column(Integer, nullable=False, default=0)
    efficiency_score = Column(Integer, nullable=False, default=0)
    metrics = Column(JSON, default=dict)
    period_start = Column(Date)
    period_end = Column(Date)
    calculated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("org_id", "entity_type", "entity_id", name="uq_risk_score_entity"),
        Index("ix_risk_scores_org_level", "org_id", "level"),
        CheckConstraint("score >= 0 AND score <= 100", name="ck_risk_score_range"),
        CheckConstraint("level IN ('low', 'medium', 'high', 'critical')", name="ck_risk_score_level"),
        CheckConstraint("trend IN ('improving', 'stable', 'worsening')", name="ck_risk_score_trend"),
    )


# ─── 9. Risk Score History ─────────────────────────────────────────────────


class RiskScoreHistory(Base):
    __tablename__ = "risk_score_history"

    history_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(100), nullable=False)
    score = Column(Integer, nullable=False)
    level = Column(String(20), nullable=False)
    expiry_score = Column(Integer)
    rupture_score = Column(Integer)
    recurrence_score = Column(Integer)
    financial_score = Column(Integer)
    efficiency_score = Column(Integer)
    recorded_on = Column(Date, nullable=False)

    __table_args__ = (
        UniqueConstraint("org_id", "entity_type", "entity_id", "recorded_on", name="uq_risk_history_day"),
        Index("ix_risk_history_org_date", "org_id", "recorded_on"),
    )


# ─── 10. Risk Thresholds ───────────────────────────────────────────────────


class RiskThresholds(Base):
    __tablename__ = "risk_thresholds"

    org_id = Column(GUID(), ForeignKey("organizations.org_id"), primary_key=True)
    low_max = Column(Integer, nullable=False, default=25)
    medium_max = Column(Integer, nullable=False, default=50)
    high_max = Column(Integer, nullable=False, default=75)
    weight_expiry = Column(Integer, nullable=False, default=25)
    weight_rupture = Column(Integer, nullable=False, default=20)
    weight_recurrence = Column(Integer, nullable=False, default=20)
    weight_financial = Column(Integer, nullable=False, default=20)
    weight_efficiency = Column(Integer, nullable=False, default=15)
    alert_on_critical = Column(Boolean, nullable=False, default=True)
    alert_on_score_increase = Column(Integer, nullable=False, default=15)
    alert_on_trend_change = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by = Column(String(255))

    __table_args__ = (
        CheckConstraint("low_max < medium_max AND medium_max < high_max", name="ck_risk_thresholds_order"),
    )


# ─── 11. Risk Alerts ───────────────────────────────────────────────────────


class RiskAlert(Base):
    __tablename__ = "risk_alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    store_id = Column(GUID(), ForeignKey("stores.store_id"), nullable=True)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(100), nullable=False)
    entity_name = Column(String(255))
    alert_type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    current_score = Column(Integer)
    previous_score = Column(Integer)
    score_change = Column(Integer)
    is_active = Column(Boolean, nullable=False, default=True)
    acknowledged_at = Column(DateTime)
    acknowledged_by = Column(String(255))
    resolved_at = Column(DateTime)
    resolved_by = Column(String(255))
    alert_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime)

    __table_args__ = (
        Index("ix_risk_alerts_org_active", "org_id", "is_active"),
        CheckConstraint(
            "alert_type IN ('score_increased', 'critical_level', 'trend_worsening', "
            "'new_high_risk', 'efficiency_dropped', 'value_threshold')",
            name="ck_risk_alert_type",
        ),
        CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_risk_alert_severity"),
    )


# ─── 12. Clusters ──────────────────────────────────────────────────────────


class Cluster(Base):
    __tablename__ = "ml_clusters"

    cluster_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    run_id = Column(GUID(), ForeignKey("ml_cluster_runs.run_id"), nullable=True)
    cluster_type = Column(String(20), nullable=False)
    cluster_name = Column(String(100), nullable=False)
    cluster_label = Column(String(100), nullable=False)
    centroid = Column(JSON, default=dict)
    feature_weights = Column(JSON, default=dict)
    member_count = Column(Integer, nullable=False, default=0)
    avg_risk_score = Column(Float)
    characteristics = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_ml_clusters_org_type", "org_id", "cluster_type"),
        CheckConstraint("cluster_type IN ('store', 'product', 'category')", name="ck_cluster_type"),
    )


# ─── 13. Cluster Members ───────────────────────────────────────────────────


class ClusterMember(Base):
    __tablename__ = "ml_cluster_members"

    member_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    cluster_id = Column(GUID(), ForeignKey("ml_clusters.cluster_id", ondelete="CASCADE"), nullable=False)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(100), nullable=False)
    entity_name = Column(String(255))
    distance_to_centroid = Column(Float)
    membership_score = Column(Float)
    features = Column(JSON, default=dict)
    assigned_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_ml_cluster_members_cluster", "cluster_id"),)


# ─── 14. Cluster Runs ──────────────────────────────────────────────────────


class ClusterRun(Base):
    __tablename__ = "ml_cluster_runs"

    run_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    cluster_type = Column(String(20), nullable=False)
    algorithm = Column(String(30), nullable=False, default="kmeans")
    parameters = Column(JSON, default=dict)
    num_clusters = Column(Integer)
    silhouette_score = Column(Float)
    inertia = Column(Float)
    total_members = Column(Integer, default=0)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)
    status = Column(String(20), nullable=False, default="running")
    error_message = Column(Text)

    __table_args__ = (
        Index("ix_ml_cluster_runs_org", "org_id", "started_at"),
        CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_cluster_run_status"),
    )


# ─── 15. Predictions ───────────────────────────────────────────────────────


class Prediction(Base):
    __tablename__ = "ml_predictions"

    prediction_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    prediction_type = Column(String(30), nullable=False)
    entity_type = Column(String(20))
    entity_id = Column(String(100))
    target_date = Column(Date, nullable=False)
    horizon_days = Column(Integer, nullable=False)
    predicted_value = Column(Float, nullable=False)
    confidence_lower = Column(Float)
    confidence_upper = Column(Float)
    confidence_level = Column(Float)
    actual_value = Column(Float)
    error = Column(Float)
    model_version = Column(String(50), nullable=False, default="baseline-dow-v1")
    features_used = Column(JSON, default=list)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_ml_predictions_org_type_date", "org_id", "prediction_type", "target_date"),
        CheckConstraint(
            "prediction_type IN ('loss_amount', 'loss_volume', 'expiry_risk', 'expiry_count')",
            name="ck_prediction_type",
        ),
        CheckConstraint("predicted_value >= 0", name="ck_prediction_value_positive"),
        CheckConstraint("confidence_level >= 0 AND confidence_level <= 1", name="ck_prediction_confidence_range"),
    )


# ─── 16. Seasonal Patterns ─────────────────────────────────────────────────


class SeasonalPattern(Base):
    __tablename__ = "ml_seasonal_patterns"

    pattern_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    pattern_type = Column(String(20), nullable=False)
    entity_type = Column(String(20))
    entity_id = Column(String(100))
    metric_type = Column(String(30), nullable=False)
    pattern_data = Column(JSON, nullable=False, default=dict)
    strength = Column(Float, nullable=False, default=0)
    confidence = Column(Float, nullable=False, default=0)
    period_start = Column(Date)
    period_end = Column(Date)
    detected_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_ml_patterns_org_metric", "org_id", "metric_type"),
        CheckConstraint(
            "pattern_type IN ('daily', 'weekly', 'monthly', 'yearly', 'holiday', 'event')",
            name="ck_pattern_type",
        ),
        CheckConstraint("strength >= 0 AND strength <= 1", name="ck_pattern_strength_range"),
    )


# ─── 17. Calendar Events ───────────────────────────────────────────────────


class CalendarEvent(Base):
    __tablename__ = "ml_calendar_events"

    event_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=True)  # NULL = global event
    event_name = Column(String(255), nullable=False)
    event_type = Column(String(20), nullable=False, default="custom")
    event_date = Column(Date, nullable=False)
    recurrence = Column(String(20), nullable=False, default="none")
    impact_factor = Column(Float, nullable=False, default=1.0)
    affects_categories = Column(JSON, default=list)
    notes = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_ml_events_org_date", "org_id", "event_date"),
        CheckConstraint("event_type IN ('holiday', 'promotion', 'season', 'custom')", name="ck_event_type"),
        CheckConstraint("recurrence IN ('none', 'yearly', 'monthly', 'weekly')", name="ck_event_recurrence"),
    )


# ─── 18. Recommendations ───────────────────────────────────────────────────


class Recommendation(Base):
    __tablename__ = "ml_recommendations"

    recommendation_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    recommendation_type = Column(String(30), nullable=False)
    priority = Column(String(20), nullable=False, default="medium")
    title = Column(String(255), nullable=False)
    description = Column(Text)
    rationale = Column(Text)
    entity_type = Column(String(20))
    entity_id = Column(String(100))
    entity_name = Column(String(255))
    estimated_savings = Column(Float)
    estimated_loss_reduction = Column(Float)
    confidence_score = Column(Float)
    suggested_action = Column(JSON, default=dict)
    action_deadline = Column(Date)
    status = Column(String(20), nullable=False, default="pending")
    viewed_at = Column(DateTime)
    viewed_by = Column(String(255))
    action_taken_at = Column(DateTime)
    action_taken_by = Column(String(255))
    action_notes = Column(Text)
    actual_savings = Column(Float)
    source_data = Column(JSON, default=dict)
    expires_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_ml_recommendations_org_status", "org_id", "status"),
        CheckConstraint(
            "recommendation_type IN ('reorder', 'markdown', 'transfer', 'investigation', 'process_change', "
            "'supplier_review', 'storage_adjustment', 'training', 'audit')",
            name="ck_recommendation_type",
        ),
        CheckConstraint("priority IN ('low', 'medium', 'high', 'critical')", name="ck_recommendation_priority"),
        CheckConstraint(
            "status IN ('pending', 'viewed', 'accepted', 'rejected', 'completed', 'expired')",
            name="ck_recommendation_status",
        ),
    )


# ─── 19. Recommendation Feedback ───────────────────────────────────────────


class RecommendationFeedback(Base):
    __tablename__ = "ml_recommendation_feedback"

    feedback_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    recommendation_id = Column(GUID(), ForeignKey("ml_recommendations.recommendation_id"), nullable=False)
    user_id = Column(String(255), nullable=False)
    feedback_type = Column(String(20), nullable=False)
    comment = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "feedback_type IN ('helpful', 'not_helpful', 'irrelevant', 'already_done')",
            name="ck_recommendation_feedback_type",
        ),
    )


# ─── 20. Anomalies ─────────────────────────────────────────────────────────


class Anomaly(Base):
    __tablename__ = "ml_anomalies"

    anomaly_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(GUID(), ForeignKey("organizations.org_id"), nullable=False)
    anomaly_type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(100), nullable=False)
    entity_name = Column(String(255))
    metric_type = Column(String(30), nullable=False)
    detected_value = Column(Float)
    expected_value = Column(Float)
    expected_range_lower = Column(Float)
    expected_range_upper = Column(Float)
    deviation_score = Column(Float)
    detection_method = Column(String(30), nullable=False, default="zscore")
    detected_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    period_start = Column(Date)
    period_end = Column(Date)
    status = Column(String(20), nullable=False, default="open")
    resolved_at = Column(DateTime)
    resolved_by = Column(String(255))
    resolution_notes = Column(Text)
    anomaly_metadata = Column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("ix_ml_anomalies_org_status", "org_id", "status"),
        Index("ix_ml_anomalies_entity", "org_id", "entity_type", "entity_id", "metric_type"),
        CheckConstraint(
            "anomaly_type IN ('spike', 'drop', 'trend_change', 'pattern_break', 'outlier', "
            "'missing_data', 'correlation_break')",
            name="ck_anomaly_type",
        ),
        CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_anomaly_severity"),
        CheckConstraint(
            "status IN ('open', 'investigating', 'resolved', 'false_positive')", name="ck_anomaly_status"
        ),
    )
