"""HTTP-level tests for the inventory, delivery, deployment and health routes."""

import uuid

import pytest


class TestInventoryRoutes:
    @pytest.mark.asyncio
    async def test_deduction_flow(self, client, seed):
        shop = await seed.store()
        milk = await seed.stock(shop.id, "Milk", 10)
        await seed.mapping(milk, "Milk", "l")
        payload = {
            "store_id": str(shop.id),
            "transaction_id": "api-0001",
            "lines": [{"ingredient_name": "Milk", "ingredient_unit": "l", "quantity": 2, "order_multiplier": 2}],
        }

        res = await client.post("/inventory/deductions", json=payload)

        assert res.status_code == 200
        body = res.json()
        assert body["status"] == "ALL_APPLIED"
        assert body["success"] is True
        assert body["ingredients"][0]["new_quantity"] == pytest.approx(6)

        replay = (await client.post("/inventory/deductions", json=payload)).json()
        assert replay["replayed"] is True
        assert (await seed.get_stock(milk.id)).stock_quantity == 6

        movements = (await client.get("/inventory/transactions/api-0001/movements")).json()
        assert [m["movement_type"] for m in movements] == ["sale"]

        voided = (await client.post("/inventory/transactions/api-0001/void")).json()
        assert voided["items_restored"] == 1
        assert (await seed.get_stock(milk.id)).stock_quantity == 10

    @pytest.mark.asyncio
    async def test_rejected_order(self, client, seed):
        shop = await seed.store()

        res = await client.post(
            "/inventory/deductions",
            json={
                "store_id": str(shop.id),
                "transaction_id": "api-0002",
                "lines": [{"ingredient_name": "Matcha", "ingredient_unit": "g", "quantity": 3}],
            },
        )

        assert res.status_code == 200
        body = res.json()
        assert body["status"] == "REJECTED"
        assert body["errors"][0]["hint"] == "missing inventory mapping, deploy product"

    @pytest.mark.asyncio
    async def test_invalid_payload(self, client):
        res = await client.post(
            "/inventory/deductions",
            json={"store_id": str(uuid.uuid4()), "transaction_id": " ", "lines": []},
        )

        assert res.status_code == 422

    @pytest.mark.asyncio
    async def test_availability_and_validation(self, client, seed):
        shop = await seed.store()
        await seed.mapping(await seed.stock(shop.id, "Milk", 12), "Milk", "l")

        checks = (
            await client.post(
                "/inventory/availability",
                json={
                    "store_id": str(shop.id),
                    "items": [
                        {"ingredient_name": "Milk", "ingredient_unit": "l", "quantity": 5},
                        {"ingredient_name": "Cream", "ingredient_unit": "l", "quantity": 1},
                    ],
                },
            )
        ).json()
        assert [c["is_sufficient"] for c in checks] == [True, False]

        validation = (
            await client.post(
                "/inventory/validate",
                json={
                    "store_id": str(shop.id),
                    "lines": [{"ingredient_name": "Milk", "ingredient_unit": "l", "quantity": 5}],
                },
            )
        ).json()
        assert validation["is_valid"] is True
        assert validation["warnings"]

    @pytest.mark.asyncio
    async def test_mapping_crud(self, client, seed):
        shop = await seed.store()
        beans = await seed.stock(shop.id, "Beans", 5, unit="kg")
        body = {
            "inventory_stock_id": str(beans.id),
            "recipe_ingredient_name": "Espresso",
            "recipe_ingredient_unit": "g",
            "conversion_factor": 1000,
        }

        created = await client.post("/inventory/mappings", json=body)
        assert created.status_code == 201
        mapping_id = created.json()["id"]
        assert created.json()["inventory_item"] == "Beans"

        duplicate = await client.post("/inventory/mappings", json=body)
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["code"] == "mapping_conflict"

        patched = await client.patch(f"/inventory/mappings/{mapping_id}", json={"conversion_factor": 500})
        assert patched.json()["conversion_factor"] == 500

        listed = (await client.get("/inventory/mappings", params={"store_id": str(shop.id)})).json()
        assert [m["id"] for m in listed] == [mapping_id]

        deleted = await client.delete(f"/inventory/mappings/{mapping_id}")
        assert deleted.status_code == 204
        assert (await client.get("/inventory/mappings", params={"store_id": str(shop.id)})).json() == []

        missing = await client.get(f"/inventory/mappings/{uuid.uuid4()}")
        assert missing.status_code == 404


class TestDeliveryRoutes:
    @pytest.mark.asyncio
    async def test_parse(self, client):
        res = await client.post("/deliveries/parse", json={"description": "1 box/70pcs Item"})

        assert res.json() == {"bulk_quantity": 1.0, "bulk_unit": "box", "breakdown_count": 70, "serving_unit": "pieces"}

    @pytest.mark.asyncio
    async def test_preview_and_process(self, client, seed):
        shop = await seed.store()
        stock = await seed.stock(shop.id, "Bagel", 0)
        payload = {
            "store_id": str(shop.id),
            "items": [
                {
                    "inventory_stock_id": str(stock.id),
                    "bulk_quantity": 2,
                    "bulk_unit": "box",
                    "serving_unit": "pcs",
                    "breakdown_ratio": 12,
                    "unit_cost": 60,
                }
            ],
        }

        preview = (await client.post("/deliveries/preview", json=payload)).json()
        assert preview[0]["stock_quantity"] == 24
        assert (await seed.get_stock(stock.id)).stock_quantity == 0

        summary = (await client.post("/deliveries/", json=payload)).json()
        assert summary["processed"] == 1
        assert (await seed.get_stock(stock.id)).stock_quantity == 24


class TestDeploymentRoutes:
    @pytest.mark.asyncio
    async def test_preview_and_deploy(self, client, seed):
        shop = await seed.store()
        await seed.stock(shop.id, "Espresso Beans", 100, cost_per_serving=0.5)
        template = await seed.template("Espresso", [("Espresso", 18, "g", None)])

        preview = await client.get(f"/deployments/{template.id}/stores/{shop.id}/preview")
        assert preview.status_code == 200
        assert preview.json()["suggested_price"] == pytest.approx(13.5)

        deployed = (
            await client.post("/deployments/", json={"template_id": str(template.id), "store_id": str(shop.id)})
        ).json()
        assert deployed["success"] is True

        validation = (await client.get(f"/deployments/{template.id}/stores/{shop.id}/validation")).json()
        assert validation["already_deployed"] is True

    @pytest.mark.asyncio
    async def test_unknown_template(self, client):
        res = await client.get(f"/deployments/{uuid.uuid4()}/stores/{uuid.uuid4()}/mapping")

        assert res.status_code == 404


class TestHealthRoutes:
    @pytest.mark.asyncio
    async def test_report_and_metrics(self, client, seed):
        shop = await seed.store()
        await seed.mapping(await seed.stock(shop.id, "Milk", 10), "Milk", "l")

        report = (await client.get(f"/health/{shop.id}")).json()
        assert report["overall_status"] == "healthy"
        assert report["summary"]["total_checks"] == 6

        metrics = (await client.get(f"/health/{shop.id}/metrics")).json()
        assert metrics["all_time"]["total_deductions"] == 0
