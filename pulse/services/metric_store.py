"""PULSE — Metric Store / Dedup Engine.

Turns an unordered batch of normalized metrics into at most one stored row
per identity key:

    (account_id, metric_type, date, project_id, canonical metadata)

Metadata is canonicalized as sorted-key compact JSON without the pending
flag, so metrics sub-keyed by metadata (e.g. per country) stay separate
while a finalized value replaces its provisional twin.

Batches are written in fixed-size chunks, one transaction per chunk, with a
scheduling pause between chunks so long batches do not starve readers.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from sqlmodel import Session, col, select

from pulse.connectors.base import PENDING_FLAG, NormalizedMetric
from pulse.core.clock import utcnow
from pulse.core.logging import get_logger
from pulse.models.account_models import Project
from pulse.models.metric_models import Metric

logger = get_logger("services.metric_store")

DEFAULT_CHUNK_SIZE = 100
PROJECT_NAME_KEYS = ("product_name", "project_name")


def serialize_metadata(metadata: Optional[Dict[str, str]]) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(metadata or {}, sort_keys=True, separators=(",", ":"))


def canonical_metadata(metadata: Optional[Dict[str, str]]) -> str:
    """Metadata as it participates in the identity key."""
    return serialize_metadata({k: v for k, v in (metadata or {}).items() if k != PENDING_FLAG})


def project_label(metric: NormalizedMetric) -> str:
    for key in PROJECT_NAME_KEYS:
        if metric.metadata.get(key):
            return metric.metadata[key]
    return metric.project_id or ""


@dataclass
class StoreStats:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    projects_created: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated


class MetricStore:
    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    async def store_metrics(
        self,
        session: Session,
        account_id: str,
        metrics: Iterable[NormalizedMetric],
    ) -> StoreStats:
        """Persist a batch idempotently. Later metrics in the batch win."""
        batch = list(metrics)
        stats = StoreStats()
        if not batch:
            return stats

        chunks = [batch[i : i + self.chunk_size] for i in range(0, len(batch), self.chunk_size)]
        for index, chunk in enumerate(chunks):
            try:
                self._ensure_projects(session, account_id, chunk, stats)
                for metric in chunk:
                    self._apply(session, account_id, metric, stats)
                session.commit()
            except Exception:
                session.rollback()
                logger.error(
                    f"Metric chunk {index + 1}/{len(chunks)} failed, rolled back",
                    extra={"account_id": account_id},
                )
                raise
            if index < len(chunks) - 1:
                await asyncio.sleep(0)

        logger.info(
            f"Stored {len(batch)} metrics: {stats.inserted} new, {stats.updated} updated, "
            f"{stats.deleted} removed, {stats.projects_created} projects created",
            extra={"account_id": account_id, "records": len(batch)},
        )
        return stats

    # ── Projects ──

    def _ensure_projects(
        self,
        session: Session,
        account_id: str,
        chunk: List[NormalizedMetric],
        stats: StoreStats,
    ) -> None:
        """Create any project referenced by the chunk that does not exist yet."""
        wanted: Dict[str, str] = {}
        for metric in chunk:
            if metric.project_id and metric.project_id not in wanted:
                wanted[metric.project_id] = project_label(metric)
        if not wanted:
            return

        existing = session.exec(
            select(Project).where(
                Project.account_id == account_id,
                col(Project.id).in_(list(wanted)),
            )
        ).all()
        known = {p.id: p for p in existing}

        for project_id, label in wanted.items():
            project = known.get(project_id)
            if project is None:
                session.add(Project(account_id=account_id, id=project_id, label=label))
                stats.projects_created += 1
            elif project.label == project.id and label != project_id:
                # Placeholder label from an earlier nameless metric
                project.label = label
                project.updated_at = utcnow()
                session.add(project)
        session.flush()

    # ── Metrics ──

    def _same_observation(self, account_id: str, metric: NormalizedMetric):
        """Select rows for (account, type, date, project), ignoring metadata."""
        query = select(Metric).where(
            Metric.account_id == account_id,
            Metric.metric_type == metric.metric_type,
            Metric.date == metric.date,
        )
        if metric.project_id is None:
            return query.where(col(Metric.project_id).is_(None))
        return query.where(Metric.project_id == metric.project_id)

    def _apply(
        self,
        session: Session,
        account_id: str,
        metric: NormalizedMetric,
        stats: StoreStats,
    ) -> None:
        key_meta = canonical_metadata(metric.metadata)
        full_meta = serialize_metadata(metric.metadata)

        if metric.is_pending:
            # A provisional value replaces every row for the observation,
            # whatever metadata granularity those rows were written with.
            for row in session.exec(self._same_observation(account_id, metric)).all():
                session.delete(row)
                stats.deleted += 1
            self._insert(session, account_id, metric, key_meta, full_meta)
            stats.inserted += 1
            return

        rows = session.exec(
            self._same_observation(account_id, metric)
            .where(Metric.metadata_key == key_meta)
            .order_by(col(Metric.id))
        ).all()

        if not rows:
            self._insert(session, account_id, metric, key_meta, full_meta)
            stats.inserted += 1
            return

        keep = rows[0]
        keep.value = metric.value
        keep.currency = metric.currency
        keep.metadata_json = full_meta
        keep.updated_at = utcnow()
        session.add(keep)
        stats.updated += 1

        for duplicate in rows[1:]:
            session.delete(duplicate)
            stats.deleted += 1

    @staticmethod
    def _insert(
        session: Session,
        account_id: str,
        metric: NormalizedMetric,
        key_meta: str,
        full_meta: str,
    ) -> None:
        session.add(
            Metric(
                account_id=account_id,
                project_id=metric.project_id,
                metric_type=metric.metric_type,
                value=metric.value,
                currency=metric.currency,
                date=metric.date,
                metadata_json=full_meta,
                metadata_key=key_meta,
            )
        )
        # Make the row visible to the next lookup in the same chunk.
        session.flush()
