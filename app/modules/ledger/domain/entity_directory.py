"""
Entity Directory

Answers "does entity E exist, is it active, and does it belong to tenant T"
for the ledger and the consistency auditor, and walks the organization tree
with an explicit depth bound so a corrupted parent graph cannot loop forever.
"""

from __future__ import annotations

from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.entity import Entity, EntityType
from app.shared.core.config import get_settings
from app.shared.core.exceptions import EntityNotFoundError

logger = structlog.get_logger()


class EntityDirectory:
    def __init__(self, db: AsyncSession, max_depth: int | None = None):
        self.db = db
        self.max_depth = max_depth or get_settings().ENTITY_TREE_MAX_DEPTH

    async def resolve(self, tenant_id: UUID, entity_id: UUID) -> Entity | None:
        """Return the entity if it exists, is active and belongs to the tenant."""
        result = await self.db.execute(
            select(Entity).where(
                Entity.id == entity_id,
                Entity.tenant_id == tenant_id,
                Entity.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def require(self, tenant_id: UUID, entity_id: UUID) -> Entity:
        entity = await self.resolve(tenant_id, entity_id)
        if entity is None:
            raise EntityNotFoundError(
                f"Entity {entity_id} not found for tenant {tenant_id}",
                details={"tenant_id": str(tenant_id), "entity_id": str(entity_id)},
            )
        return entity

    async def find_primary_organization(self, tenant_id: UUID) -> Entity | None:
        """Default-flagged organization first, then the oldest one."""
        result = await self.db.execute(
            select(Entity)
            .where(
                Entity.tenant_id == tenant_id,
                Entity.entity_type == EntityType.ORGANIZATION.value,
                Entity.is_active.is_(True),
            )
            .order_by(Entity.is_default.desc(), Entity.created_at.asc(), Entity.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def active_entity_ids(self, tenant_id: UUID) -> set[UUID]:
        result = await self.db.execute(
            select(Entity.id).where(
                Entity.tenant_id == tenant_id,
                Entity.is_active.is_(True),
            )
        )
        return set(result.scalars().all())

    async def descendants(self, entity_id: UUID, tenant_id: UUID) -> set[UUID]:
        """
        All active descendants of an entity (the entity itself excluded).

        Breadth-first, one query per level. Stops at max_depth and never
        revisits a node, so a parent cycle terminates.
        """
        found: set[UUID] = set()
        visited: set[UUID] = {entity_id}
        frontier = [entity_id]
        depth = 0

        while frontier and depth < self.max_depth:
            result = await self.db.execute(
                select(Entity.id).where(
                    Entity.tenant_id == tenant_id,
                    Entity.parent_id.in_(frontier),
                    Entity.is_active.is_(True),
                )
            )
            next_frontier = []
            for child_id in result.scalars().all():
                if child_id in visited:
                    continue
                visited.add(child_id)
                found.add(child_id)
                next_frontier.append(child_id)
            frontier = next_frontier
            depth += 1

        if frontier and depth >= self.max_depth:
            logger.warning(
                "entity_tree_depth_limit_reached",
                tenant_id=str(tenant_id),
                entity_id=str(entity_id),
                max_depth=self.max_depth,
            )
        return found

    async def ancestors(self, entity_id: UUID, tenant_id: UUID) -> list[UUID]:
        """Parent chain from the entity's parent up to the root, nearest first."""
        chain: list[UUID] = []
        seen: set[UUID] = {entity_id}
        current = await self.resolve(tenant_id, entity_id)

        while current is not None and current.parent_id is not None:
            if len(chain) >= self.max_depth or current.parent_id in seen:
                logger.warning(
                    "entity_ancestor_walk_aborted",
                    tenant_id=str(tenant_id),
                    entity_id=str(entity_id),
                    cycle=current.parent_id in seen,
                )
                break
            parent = await self.resolve(tenant_id, current.parent_id)
            if parent is None:
                break
            seen.add(parent.id)
            chain.append(parent.id)
            current = parent
        return chain
