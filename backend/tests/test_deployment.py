"""Tests for recipe template deployment."""

import uuid

import pytest
import pytest_asyncio

from core.errors import NotFound, RemoteIOError
from db.inventory.conversion_mapping import ConversionMapping
from db.product import Product, ProductCatalog
from db.recipe import Recipe, RecipeIngredient, RecipeIngredientMapping
from schemas.inventory import DeductionLine, DeductionRequest
from services.deployment import RecipeDeploymentMapper, availability_status, make_sku
from services.inventory_store import InventoryStore


@pytest.fixture
def mapper(store):
    return RecipeDeploymentMapper(store, markup=1.5)


class FailingIngredientsStore(InventoryStore):
    async def insert_recipe_ingredients(self, ingredients, mappings):
        raise RemoteIOError("connection lost while writing recipe ingredients")


class FailingCatalogLinkStore(InventoryStore):
    async def update_catalog_entry(self, catalog_id, values):
        if values.get("recipe_id") is not None:
            raise RemoteIOError("connection lost while linking the catalog entry")
        return await super().update_catalog_entry(catalog_id, values)


@pytest_asyncio.fixture
async def latte_store(seed):
    shop = await seed.store()
    espresso = await seed.stock(shop.id, "Espresso Beans", 50, unit="g", cost_per_serving=0.5, minimum_threshold=5)
    milk = await seed.stock(shop.id, "Milk", 40, unit="ml", cost=0.01, minimum_threshold=5)
    template = await seed.template(
        "Latte", [("Espresso", 18, "g", None), ("Milk", 200, "ml", None)], serving_size=2
    )
    return {"shop": shop, "espresso": espresso, "milk": milk, "template": template}


class TestAvailabilityStatus:
    @pytest.mark.parametrize(
        "quantity,threshold,expected",
        [
            (0, 5, "out_of_stock"),
            (-1, 5, "out_of_stock"),
            (5, 5, "low_stock"),
            (6, 5, "available"),
            (10, None, "low_stock"),
            (11, None, "available"),
        ],
    )
    def test_thresholds(self, quantity, threshold, expected):
        assert availability_status(quantity, threshold) == expected


class TestBuildMapping:
    @pytest.mark.asyncio
    async def test_exact_match_wins_over_substring(self, seed, mapper):
        shop = await seed.store()
        await seed.stock(shop.id, "Whole Milk", 20)
        milk = await seed.stock(shop.id, "Milk", 20)
        template = await seed.template("Cortado", [("milk", 60, "ml", None)])

        mapping = await mapper.build_mapping(template.id, shop.id)

        assert mapping.ingredients[0].inventory_stock_id == milk.id
        assert mapping.ingredients[0].match_type == "exact"

    @pytest.mark.asyncio
    async def test_substring_takes_first_in_declared_order(self, seed, mapper):
        shop = await seed.store()
        first = await seed.stock(shop.id, "Whole Milk", 20)
        await seed.stock(shop.id, "Milk Powder", 20)
        template = await seed.template("Cortado", [("Milk", 60, "ml", None)])

        results = [await mapper.build_mapping(template.id, shop.id) for _ in range(3)]

        assert {r.ingredients[0].inventory_stock_id for r in results} == {first.id}
        assert results[0].ingredients[0].match_type == "substring"

    @pytest.mark.asyncio
    async def test_substring_is_bidirectional(self, seed, mapper):
        shop = await seed.store()
        vanilla = await seed.stock(shop.id, "Vanilla", 20)
        template = await seed.template("Vanilla Latte", [("Vanilla Syrup", 2, "pumps", None)])

        mapping = await mapper.build_mapping(template.id, shop.id)

        assert mapping.ingredients[0].inventory_stock_id == vanilla.id

    @pytest.mark.asyncio
    async def test_missing_and_inactive_stock(self, seed, mapper):
        shop = await seed.store()
        await seed.stock(shop.id, "Cinnamon", 20, is_active=False)
        template = await seed.template("Chai", [("Cinnamon", 1, "g", None), ("Chai Concentrate", 100, "ml", None)])

        mapping = await mapper.build_mapping(template.id, shop.id)

        assert mapping.missing_ingredients == ["Cinnamon", "Chai Concentrate"]
        assert not any(i.is_mapped for i in mapping.ingredients)

    @pytest.mark.asyncio
    async def test_other_store_stock_is_not_a_candidate(self, seed, mapper):
        north = await seed.store("North")
        south = await seed.store("South")
        await seed.stock(south.id, "Milk", 20)
        template = await seed.template("Cortado", [("Milk", 60, "ml", None)])

        mapping = await mapper.build_mapping(template.id, north.id)

        assert mapping.missing_ingredients == ["Milk"]

    @pytest.mark.asyncio
    async def test_unknown_template(self, mapper):
        with pytest.raises(NotFound):
            await mapper.build_mapping(uuid.uuid4(), uuid.uuid4())


class TestValidateDeployment:
    @pytest.mark.asyncio
    async def test_deployable(self, latte_store, mapper):
        validation = await mapper.validate_deployment(latte_store["template"].id, latte_store["shop"].id)

        assert validation.is_deployable is True
        assert validation.errors == []

    @pytest.mark.asyncio
    async def test_missing_ingredient_blocks(self, seed, mapper):
        shop = await seed.store()
        template = await seed.template("Mocha", [("Chocolate Sauce", 30, "ml", None)])

        validation = await mapper.validate_deployment(template.id, shop.id)

        assert validation.is_deployable is False
        assert validation.missing_ingredients == ["Chocolate Sauce"]

    @pytest.mark.asyncio
    async def test_out_of_stock_blocks(self, seed, mapper):
        shop = await seed.store()
        await seed.stock(shop.id, "Chocolate Sauce", 0)
        template = await seed.template("Mocha", [("Chocolate Sauce", 30, "ml", None)])

        validation = await mapper.validate_deployment(template.id, shop.id)

        assert validation.is_deployable is False
        assert validation.out_of_stock_ingredients == ["Chocolate Sauce"]

    @pytest.mark.asyncio
    async def test_low_stock_only_warns(self, seed, mapper):
        shop = await seed.store()
        await seed.stock(shop.id, "Chocolate Sauce", 3, minimum_threshold=5)
        template = await seed.template("Mocha", [("Chocolate Sauce", 30, "ml", None)])

        validation = await mapper.validate_deployment(template.id, shop.id)

        assert validation.is_deployable is True
        assert validation.low_stock_ingredients == ["Chocolate Sauce"]
        assert validation.warnings


class TestDeploy:
    @pytest.mark.asyncio
    async def test_creates_rows_and_prices(self, seed, latte_store, mapper):
        result = await mapper.deploy(latte_store["template"].id, latte_store["shop"].id)

        assert result.success is True
        # 18 g x 0.5 + 200 ml x 0.01
        assert result.total_cost == pytest.approx(11.0)
        assert result.cost_per_serving == pytest.approx(5.5)
        assert result.suggested_price == pytest.approx(16.5)
        assert result.ingredient_count == 2
        assert result.sku.startswith("RCP-LATTE-")

        products = await seed.rows(Product)
        assert len(products) == 1
        assert products[0].price == pytest.approx(16.5)
        catalog = await seed.rows(ProductCatalog)
        assert catalog[0].recipe_id == result.recipe_id
        recipes = await seed.rows(Recipe)
        assert recipes[0].template_id == latte_store["template"].id
        assert len(await seed.rows(RecipeIngredient)) == 2
        statuses = {m.template_ingredient_name: m.availability_status for m in await seed.rows(RecipeIngredientMapping)}
        assert statuses == {"Espresso": "available", "Milk": "available"}

    @pytest.mark.asyncio
    async def test_deployed_recipe_can_be_sold(self, latte_store, mapper, make_executor, seed):
        shop = latte_store["shop"]
        result = await mapper.deploy(latte_store["template"].id, shop.id)
        assert result.created_conversion_mappings == 2

        sale = await make_executor().deduct_order(
            DeductionRequest(
                store_id=shop.id,
                transaction_id="first-latte",
                lines=[
                    DeductionLine(ingredient_name="Espresso", ingredient_unit="g", quantity=18),
                    DeductionLine(ingredient_name="Milk", ingredient_unit="ml", quantity=20),
                ],
            )
        )

        assert sale.status == "ALL_APPLIED"
        assert (await seed.get_stock(latte_store["espresso"].id)).stock_quantity == 32

    @pytest.mark.asyncio
    async def test_existing_conversion_mapping_is_reused(self, seed, latte_store, mapper):
        await seed.mapping(latte_store["milk"], "Milk", "ml", factor=1)

        result = await mapper.deploy(latte_store["template"].id, latte_store["shop"].id)

        assert result.created_conversion_mappings == 1
        assert len(await seed.rows(ConversionMapping)) == 2

    @pytest.mark.asyncio
    async def test_duplicate_deployment_refused(self, seed, latte_store, mapper):
        first = await mapper.deploy(latte_store["template"].id, latte_store["shop"].id)
        second = await mapper.deploy(latte_store["template"].id, latte_store["shop"].id)

        assert first.success is True
        assert second.success is False
        assert "already deployed" in second.errors[0]
        assert len(await seed.rows(Product)) == 1

    @pytest.mark.asyncio
    async def test_blocked_deployment_writes_nothing(self, seed, mapper):
        shop = await seed.store()
        template = await seed.template("Mocha", [("Chocolate Sauce", 30, "ml", None)])

        result = await mapper.deploy(template.id, shop.id)

        assert result.success is False
        assert result.errors
        assert await seed.rows(Product) == []

    @pytest.mark.asyncio
    async def test_failed_step_is_compensated(self, seed, session_maker, latte_store):
        mapper = RecipeDeploymentMapper(FailingIngredientsStore(session_maker), markup=1.5)

        result = await mapper.deploy(latte_store["template"].id, latte_store["shop"].id)

        assert result.success is False
        assert result.failed_step == "ingredients"
        assert result.compensated_steps == ["catalog_link", "recipe", "catalog", "product"]
        assert await seed.rows(Product) == []
        assert await seed.rows(ProductCatalog) == []
        assert await seed.rows(Recipe) == []
        assert await seed.rows(ConversionMapping) == []

    @pytest.mark.asyncio
    async def test_failed_catalog_link_removes_recipe(self, seed, session_maker, latte_store, mapper):
        template_id, shop_id = latte_store["template"].id, latte_store["shop"].id
        failing = RecipeDeploymentMapper(FailingCatalogLinkStore(session_maker), markup=1.5)

        result = await failing.deploy(template_id, shop_id)

        assert result.success is False
        assert result.failed_step == "catalog_link"
        assert result.compensated_steps == ["recipe", "catalog", "product"]
        assert await seed.rows(Recipe) == []
        assert await seed.rows(ProductCatalog) == []

        retry = await mapper.deploy(template_id, shop_id)

        assert retry.success is True
        assert len(await seed.rows(Recipe)) == 1

    @pytest.mark.asyncio
    async def test_deploy_to_several_stores(self, seed, latte_store, mapper):
        empty = await seed.store("Empty Kiosk")

        results = await mapper.deploy_to_stores(latte_store["template"].id, [latte_store["shop"].id, empty.id])

        assert [r.store_id for r in results] == [latte_store["shop"].id, empty.id]
        assert [r.success for r in results] == [True, False]
        assert len(await seed.rows(Recipe)) == 1


class TestPreview:
    @pytest.mark.asyncio
    async def test_preview_is_read_only(self, seed, latte_store, mapper):
        preview = await mapper.preview(latte_store["template"].id, latte_store["shop"].id)

        assert preview.validation.is_deployable is True
        assert preview.total_cost == pytest.approx(11.0)
        assert preview.suggested_price == pytest.approx(16.5)
        assert len(preview.mapping.ingredients) == 2
        assert await seed.rows(Product) == []


def test_sku_is_store_specific():
    a = make_sku("Iced Latte", uuid.uuid4())
    b = make_sku("Iced Latte", uuid.uuid4())

    assert a.startswith("RCP-ICED-LATTE-")
    assert a != b
