import pytest


@pytest.mark.asyncio
async def test_orphan_report_clean_and_strict_verification(async_client, db, tenant_factory, entity_factory):
    tenant, org = await tenant_factory()
    branch = await entity_factory(tenant.id, parent_id=org.id)
    await async_client.post(
        f"/api/v1/credits/{tenant.id}/bulk-allocate",
        json={"allocations": [{"entity_id": str(branch.id), "amount": "12.5"}]},
    )
    branch.is_active = False
    await db.commit()
    base = f"/api/v1/consistency/{tenant.id}"

    report = await async_client.get(f"{base}/orphans")
    assert report.status_code == 200
    assert report.json()["orphaned_credits"] == "12.5"

    strict = await async_client.get(f"{base}/ledger", params={"strict": "true"})
    assert strict.status_code == 409
    assert strict.json()["error"]["code"] == "orphan_records"

    cleaned = await async_client.post(f"{base}/orphans/clean", json={"initiated_by": "ops"})
    assert cleaned.status_code == 200
    assert cleaned.json()["deleted_count"] == 1

    verified = await async_client.get(f"{base}/ledger")
    assert verified.json()["consistent"] is True
