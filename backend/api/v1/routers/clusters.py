"""
Clusters API — k-means segmentation of stores, products and categories.

Endpoints:
  GET  /api/v1/ml/clusters                 — Clusters (optionally by type), riskiest first
  GET  /api/v1/ml/clusters/{id}            — One cluster
  GET  /api/v1/ml/clusters/{id}/members    — Members by membership score
  POST /api/v1/ml/clusters/run             — Re-cluster one entity type
"""

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_org_id, get_tenant_db, require_feature
from db.models import Cluster, ClusterMember
from ml.clustering import ENTITY_KEYS, run_clustering

router = APIRouter(
    prefix="/api/v1/ml/clusters",
    tags=["clusters"],
    dependencies=[Depends(require_feature("has_ml"))],
)


class ClusterRunRequest(BaseModel):
    cluster_type: str = "store"
    num_clusters: int = Field(5, ge=2, le=10)
    algorithm: str = "kmeans"


# ── Endpoints ───────────────────────────────────────────────────────────────


@router.get("")
async def list_clusters(
    cluster_type: str | None = None,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> list[dict[str, Any]]:
    query = select(Cluster).where(Cluster.org_id == org_id)
    if cluster_type:
        query = query.where(Cluster.cluster_type == cluster_type)
    result = await db.execute(query.order_by(Cluster.avg_risk_score.desc()))
    return [_serialize_cluster(c) for c in result.scalars().all()]


@router.post("/run")
async def run_cluster_analysis(
    body: ClusterRunRequest,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> dict[str, Any]:
    """Replace the clusters of `cluster_type` with a fresh k-means run."""
    if body.cluster_type not in ENTITY_KEYS:
        raise HTTPException(status_code=400, detail=f"Invalid cluster_type: {body.cluster_type}")
    try:
        run = await run_clustering(db, org_id, body.cluster_type, body.num_clusters, body.algorithm)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return {
        "success": True,
        "run_id": str(run.run_id),
        "cluster_type": run.cluster_type,
        "num_clusters": run.num_clusters,
        "total_members": run.total_members,
        "silhouette_score": run.silhouette_score,
        "inertia": run.inertia,
        "status": run.status,
    }


@router.get("/{cluster_id}")
async def get_cluster(
    cluster_id: uuid.UUID,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> dict[str, Any]:
    return _serialize_cluster(await _get_cluster_or_404(db, org_id, cluster_id))


@router.get("/{cluster_id}/members")
async def list_cluster_members(
    cluster_id: uuid.UUID,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> list[dict[str, Any]]:
    await _get_cluster_or_404(db, org_id, cluster_id)
    result = await db.execute(
        select(ClusterMember)
        .where(ClusterMember.cluster_id == cluster_id, ClusterMember.org_id == org_id)
        .order_by(ClusterMember.membership_score.desc())
        .limit(limit)
    )
    return [
        {
            "member_id": str(m.member_id),
            "entity_type": m.entity_type,
            "entity_id": m.entity_id,
            "entity_name": m.entity_name,
            "distance_to_centroid": m.distance_to_centroid,
            "membership_score": m.membership_score,
            "features": m.features or {},
            "assigned_at": m.assigned_at,
        }
        for m in result.scalars().all()
    ]


async def _get_cluster_or_404(db: AsyncSession, org_id: uuid.UUID, cluster_id: uuid.UUID) -> Cluster:
    result = await db.execute(select(Cluster).where(Cluster.cluster_id == cluster_id, Cluster.org_id == org_id))
    cluster = result.scalar_one_or_none()
    if not cluster:
        raise HTTPException(status_code=404, detail="Cluster not found")
    return cluster


def _serialize_cluster(cluster: Cluster) -> dict[str, Any]:
    return {
        "cluster_id": str(cluster.cluster_id),
        "run_id": str(cluster.run_id) if cluster.run_id else None,
        "cluster_type": cluster.cluster_type,
        "cluster_name": cluster.cluster_name,
        "cluster_label": cluster.cluster_label,
        "centroid": cluster.centroid or {},
        "member_count": cluster.member_count,
        "avg_risk_score": cluster.avg_risk_score,
        "characteristics": cluster.characteristics or {},
        "updated_at": cluster.updated_at,
    }
