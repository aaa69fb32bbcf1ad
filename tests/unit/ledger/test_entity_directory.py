from uuid import uuid4

import pytest

from app.models.entity import EntityType
from app.modules.ledger.domain.entity_directory import EntityDirectory
from app.shared.core.exceptions import EntityNotFoundError


@pytest.mark.asyncio
async def test_resolve_scopes_by_tenant_and_active_flag(db, tenant_factory):
    tenant, org = await tenant_factory("Tenant A")
    other, _ = await tenant_factory("Tenant B")
    directory = EntityDirectory(db)

    assert (await directory.resolve(tenant.id, org.id)).id == org.id
    assert await directory.resolve(other.id, org.id) is None

    org.is_active = False
    await db.commit()
    assert await directory.resolve(tenant.id, org.id) is None
    with pytest.raises(EntityNotFoundError):
        await directory.require(tenant.id, org.id)


@pytest.mark.asyncio
async def test_primary_organization_prefers_default_flag(db, tenant_factory, entity_factory):
    tenant, org = await tenant_factory()
    await entity_factory(tenant.id, name="Second Org")
    await entity_factory(tenant.id, name="Ops", entity_type=EntityType.DEPARTMENT)

    primary = await EntityDirectory(db).find_primary_organization(tenant.id)

    assert primary.id == org.id


@pytest.mark.asyncio
async def test_descendants_and_ancestors(db, tenant_factory, entity_factory):
    tenant, org = await tenant_factory()
    location = await entity_factory(
        tenant.id, name="Lagos", parent_id=org.id, entity_type=EntityType.LOCATION
    )
    team = await entity_factory(
        tenant.id, name="Sales", parent_id=location.id, entity_type=EntityType.TEAM
    )
    directory = EntityDirectory(db)

    assert await directory.descendants(org.id, tenant.id) == {location.id, team.id}
    assert await directory.ancestors(team.id, tenant.id) == [location.id, org.id]
    assert await directory.active_entity_ids(tenant.id) == {org.id, location.id, team.id}


@pytest.mark.asyncio
async def test_parent_cycle_terminates(db, tenant_factory, entity_factory):
    tenant, _ = await tenant_factory(with_org=False)
    first = await entity_factory(tenant.id, name="First")
    second = await entity_factory(tenant.id, name="Second", parent_id=first.id)
    first.parent_id = second.id
    await db.commit()
    directory = EntityDirectory(db)

    assert await directory.descendants(first.id, tenant.id) == {second.id}
    assert await directory.ancestors(first.id, tenant.id) == [second.id]


@pytest.mark.asyncio
async def test_descendant_walk_stops_at_max_depth(db, tenant_factory, entity_factory):
    tenant, org = await tenant_factory()
    parent_id = org.id
    chain = []
    for depth in range(4):
        child = await entity_factory(tenant.id, name=f"Level {depth}", parent_id=parent_id)
        chain.append(child.id)
        parent_id = child.id

    found = await EntityDirectory(db, max_depth=2).descendants(org.id, tenant.id)

    assert found == set(chain[:2])


@pytest.mark.asyncio
async def test_dangling_parent_is_treated_as_root(db, tenant_factory, entity_factory):
    tenant, _ = await tenant_factory(with_org=False)
    orphan = await entity_factory(tenant.id, name="Detached", parent_id=uuid4())

    assert await EntityDirectory(db).ancestors(orphan.id, tenant.id) == []
