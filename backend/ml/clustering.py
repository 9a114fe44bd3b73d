"""
Entity Clustering — K-Means segmentation of stores, products or categories
by loss behaviour.

Features (last 90 days of loss records, per entity):
  - total_cost: Total loss cost
  - total_quantity: Total units lost
  - record_count: Number of loss occurrences
  - loss_type_count: Number of distinct loss types (expiry, damage, ...)

Features are standardized before K-Means. Clusters are relabelled so that
cluster 0 has the highest mean loss cost:

  0  Alto Risco
  1  Risco Moderado-Alto
  2  Risco Moderado
  3  Baixo Risco
  4  Performance Excelente

avg_risk_score runs from 100 (cluster 0) down in equal steps of 100/k.
membership_score = 1 − distance / (max distance in the cluster + ε), so the
member closest to the centroid scores ~1.0.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

import numpy as np
import pandas as pd
import structlog
from sklearn.cluster import KMeans
from sklearn.metrics import silhouette_score
from sklearn.preprocessing import StandardScaler
from sqlalchemy import delete, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Cluster, ClusterMember, ClusterRun, LossRecord, Product, Store

logger = structlog.get_logger()

FEATURE_COLUMNS = ["total_cost", "total_quantity", "record_count", "loss_type_count"]
CLUSTER_LABELS = [
    "Alto Risco",
    "Risco Moderado-Alto",
    "Risco Moderado",
    "Baixo Risco",
    "Performance Excelente",
]
ENTITY_KEYS = {"store": "store_id", "product": "product_id", "category": "category"}


@dataclass
class ClusteringResult:
    """Output of a clustering pass, ordered by descending risk."""

    num_clusters: int
    clusters: list[dict[str, Any]] = field(default_factory=list)
    silhouette: float | None = None
    inertia: float | None = None


def cluster_label(index: int) -> str:
    return CLUSTER_LABELS[index] if index < len(CLUSTER_LABELS) else f"cluster_{index}"


def cluster_entities(frame: pd.DataFrame, n_clusters: int = 5) -> ClusteringResult:
    """
    Cluster entities with K-Means.

    Args:
        frame: one row per entity with entity_key, entity_name and FEATURE_COLUMNS
        n_clusters: requested k (reduced to the entity count when larger)

    Returns:
        ClusteringResult whose clusters carry centroid (original units),
        members with distance/membership, and avg_risk_score.
    """
    if frame.empty:
        raise ValueError("No entities to cluster")
    if n_clusters < 1:
        raise ValueError("n_clusters must be >= 1")

    k = min(n_clusters, len(frame))
    if k < n_clusters:
        logger.warning("clustering.insufficient_entities", n_entities=len(frame), n_clusters=n_clusters)

    X = frame[FEATURE_COLUMNS].fillna(0).astype(float).values
    scaler = StandardScaler()
    X_scaled = scaler.fit_transform(X)

    kmeans = KMeans(n_clusters=k, random_state=42, n_init=10)
    labels = kmeans.fit_predict(X_scaled)
    distances = np.linalg.norm(X_scaled - kmeans.cluster_centers_[labels], axis=1)

    # Reorder clusters so 0 = highest mean loss cost
    cluster_costs = {}
    for i in range(k):
        mask = labels == i
        cluster_costs[i] = float(frame.loc[mask, "total_cost"].mean()) if mask.any() else float("-inf")
    sorted_clusters = sorted(cluster_costs.items(), key=lambda x: x[1], reverse=True)
    label_map = {old_label: new_label for new_label, (old_label, _) in enumerate(sorted_clusters)}

    silhouette = None
    if 2 <= k < len(frame) and len(set(labels)) > 1:
        silhouette = round(float(silhouette_score(X_scaled, labels)), 4)

    step = 100 / k
    clusters = []
    for old_label, new_label in sorted(label_map.items(), key=lambda x: x[1]):
        mask = labels == old_label
        members_frame = frame.loc[mask]
        member_distances = distances[mask]
        max_distance = float(member_distances.max()) if len(member_distances) else 0.0
        centroid_original = scaler.inverse_transform(kmeans.cluster_centers_[old_label].reshape(1, -1))[0]

        members = []
        for (_, row), dist in zip(members_frame.iterrows(), member_distances):
            members.append(
                {
                    "entity_key": str(row["entity_key"]),
                    "entity_name": row.get("entity_name"),
                    "distance_to_centroid": round(float(dist), 4),
                    "membership_score": round(1 - float(dist) / (max_distance + 1e-8), 4),
                    "features": {c: float(row[c]) for c in FEATURE_COLUMNS},
                }
            )
        members.sort(key=lambda m: m["membership_score"], reverse=True)

        clusters.append(
            {
                "index": new_label,
                "cluster_name": f"cluster_{new_label}",
                "cluster_label": cluster_label(new_label),
                "centroid": {c: round(float(v), 2) for c, v in zip(FEATURE_COLUMNS, centroid_original)},
                "avg_risk_score": round(100 - new_label * step, 1),
                "members": members,
                "characteristics": {
                    "avg_total_cost": round(float(members_frame["total_cost"].mean()), 2),
                    "avg_record_count": round(float(members_frame["record_count"].mean()), 1),
                    "total_cost": round(float(members_frame["total_cost"].sum()), 2),
                },
            }
        )

    logger.info(
        "clustering.completed",
        n_entities=len(frame),
        n_clusters=k,
        silhouette=silhouette,
        cluster_sizes={c["cluster_label"]: len(c["members"]) for c in clusters},
    )
    return ClusteringResult(num_clusters=k, clusters=clusters, silhouette=silhouette, inertia=float(kmeans.inertia_))


async def build_cluster_frame(
    db: AsyncSession,
    org_id: uuid.UUID,
    cluster_type: str,
    lookback_days: int = 90,
) -> pd.DataFrame:
    """Aggregate loss records into one feature row per entity."""
    if cluster_type not in ENTITY_KEYS:
        raise ValueError(f"Unsupported cluster_type: {cluster_type}")
    key_col = getattr(LossRecord, ENTITY_KEYS[cluster_type])
    start = date.today() - timedelta(days=lookback_days)

    result = await db.execute(
        select(
            key_col.label("entity_key"),
            func.sum(LossRecord.total_cost).label("total_cost"),
            func.sum(LossRecord.quantity).label("total_quantity"),
            func.count().label("record_count"),
            func.count(distinct(LossRecord.loss_type)).label("loss_type_count"),
        )
        .where(LossRecord.org_id == org_id, LossRecord.occurred_on >= start, key_col.is_not(None))
        .group_by(key_col)
    )
    frame = pd.DataFrame([tuple(r) for r in result.all()], columns=["entity_key", *FEATURE_COLUMNS])
    if frame.empty:
        frame["entity_name"] = []
        return frame

    frame["entity_key"] = frame["entity_key"].astype(str)
    if cluster_type == "store":
        names_result = await db.execute(select(Store.store_id, Store.name).where(Store.org_id == org_id))
    elif cluster_type == "product":
        names_result = await db.execute(select(Product.product_id, Product.name).where(Product.org_id == org_id))
    else:
        names_result = None
    names = {str(r[0]): r[1] for r in names_result.all()} if names_result is not None else {}
    frame["entity_name"] = frame["entity_key"].map(lambda k: names.get(k, k if cluster_type == "category" else None))
    return frame


async def run_clustering(
    db: AsyncSession,
    org_id: uuid.UUID,
    cluster_type: str = "store",
    n_clusters: int = 5,
    algorithm: str = "kmeans",
) -> ClusterRun:
    """
    Run clustering, replace the previous clusters of this type and record
    the run. On failure the run row is committed with status "failed" and
    the error is re-raised.
    """
    run = ClusterRun(
        org_id=org_id,
        cluster_type=cluster_type,
        algorithm=algorithm,
        parameters={"n_clusters": n_clusters, "features": FEATURE_COLUMNS},
        status="running",
    )
    db.add(run)
    await db.flush()

    try:
        if algorithm != "kmeans":
            raise ValueError(f"Unsupported algorithm: {algorithm}")
        frame = await build_cluster_frame(db, org_id, cluster_type)
        result = cluster_entities(frame, n_clusters)
    except Exception as exc:
        run.status = "failed"
        run.error_message = str(exc)
        run.completed_at = datetime.utcnow()
        await db.commit()
        logger.warning("clustering.run_failed", org_id=str(org_id), cluster_type=cluster_type, error=str(exc))
        raise

    old_ids = select(Cluster.cluster_id).where(Cluster.org_id == org_id, Cluster.cluster_type == cluster_type)
    await db.execute(delete(ClusterMember).where(ClusterMember.cluster_id.in_(old_ids)))
    await db.execute(delete(Cluster).where(Cluster.org_id == org_id, Cluster.cluster_type == cluster_type))

    total_members = 0
    for spec in result.clusters:
        cluster = Cluster(
            org_id=org_id,
            run_id=run.run_id,
            cluster_type=cluster_type,
            cluster_name=spec["cluster_name"],
            cluster_label=spec["cluster_label"],
            centroid=spec["centroid"],
            feature_weights={c: 1.0 for c in FEATURE_COLUMNS},
            member_count=len(spec["members"]),
            avg_risk_score=spec["avg_risk_score"],
            characteristics=spec["characteristics"],
        )
        db.add(cluster)
        await db.flush()
        for member in spec["members"]:
            db.add(
                ClusterMember(
                    cluster_id=cluster.cluster_id,
                    org_id=org_id,
                    entity_type=cluster_type,
                    entity_id=member["entity_key"],
                    entity_name=member["entity_name"],
                    distance_to_centroid=member["distance_to_centroid"],
                    membership_score=member["membership_score"],
                    features=member["features"],
                )
            )
        total_members += len(spec["members"])

    run.num_clusters = result.num_clusters
    run.silhouette_score = result.silhouette
    run.inertia = result.inertia
    run.total_members = total_members
    run.status = "completed"
    run.completed_at = datetime.utcnow()
    await db.commit()

    logger.info(
        "clustering.run_complete",
        org_id=str(org_id),
        cluster_type=cluster_type,
        num_clusters=result.num_clusters,
        total_members=total_members,
    )
    return run
