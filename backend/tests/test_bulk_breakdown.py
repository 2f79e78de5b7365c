"""Tests for bulk-to-serving breakdown of deliveries."""

import uuid

import pytest

from schemas.deliveries import BulkDeliveryItem
from services.bulk_breakdown import (
    BulkBreakdownProcessor,
    compute_breakdown,
    normalize_unit,
    parse_bulk_description,
)


@pytest.fixture
def processor(store, retry_policy):
    return BulkBreakdownProcessor(store, retry_policy=retry_policy)


def delivery(stock_id, bulk_quantity=1, ratio=None, unit_cost=0, description=None):
    return BulkDeliveryItem(
        inventory_stock_id=stock_id,
        bulk_quantity=bulk_quantity,
        bulk_unit="box",
        serving_unit="pcs",
        breakdown_ratio=ratio,
        unit_cost=unit_cost,
        bulk_description=description,
        reference_id="GRN-001",
    )


class TestParseBulkDescription:
    def test_box_of_pieces(self):
        parsed = parse_bulk_description("1 box/70pcs Item")

        assert parsed.bulk_quantity == 1
        assert parsed.bulk_unit == "box"
        assert parsed.breakdown_count == 70
        assert parsed.serving_unit == "pieces"

    def test_spaces_around_parts(self):
        parsed = parse_bulk_description("2 pack / 12 servings Whipped Cream")

        assert (parsed.bulk_quantity, parsed.bulk_unit, parsed.breakdown_count, parsed.serving_unit) == (
            2,
            "pack",
            12,
            "servings",
        )

    @pytest.mark.parametrize("text", [None, "", "Croissant", "box of 70", "1 box/0pcs"])
    def test_unparseable(self, text):
        assert parse_bulk_description(text) is None

    def test_unit_aliases(self):
        assert normalize_unit("PC") == "pieces"
        assert normalize_unit("kg") == "kg"


class TestComputeBreakdown:
    def test_serving_quantity_and_cost(self):
        result = compute_breakdown(1, 70, 700)

        assert result.serving_quantity == 70
        assert result.cost_per_serving == 10

    def test_multiple_bulk_units(self):
        result = compute_breakdown(3, 12, 60)

        assert result.serving_quantity == 36
        assert result.cost_per_serving == 5

    def test_half_serving_multiplier(self):
        result = compute_breakdown(1, 70, 700, multiplier=0.5)

        assert result.serving_quantity == 35
        assert result.cost_per_serving == 20

    def test_ratio_must_be_positive(self):
        with pytest.raises(ValueError):
            compute_breakdown(1, 0, 10)


class TestServingMultiplier:
    @pytest.mark.parametrize(
        "item_name,expected",
        [
            ("Regular Croissant", 0.5),
            ("Chocolate Sauce", 0.5),
            ("  Choco   Flakes ", 0.5),
            ("Marshmallow", 0.5),
            ("Chocolate Croissant", 1.0),
            ("Bagel", 1.0),
        ],
    )
    def test_mini_croffle_items_are_half_portions(self, item_name, expected):
        assert BulkBreakdownProcessor(None).multiplier_for(item_name) == expected

    def test_overrides_replace_the_table(self):
        processor = BulkBreakdownProcessor(None, serving_overrides={"Bagel": 2})

        assert processor.multiplier_for("bagel") == 2
        assert processor.multiplier_for("Peanut") == 1.0


class TestProcessDelivery:
    @pytest.mark.asyncio
    async def test_updates_stock_fields(self, seed, processor):
        shop = await seed.store()
        stock = await seed.stock(shop.id, "Chocolate Croissant", 3)

        summary = await processor.process_delivery([delivery(stock.id, bulk_quantity=2, ratio=24, unit_cost=240)])

        assert summary.processed == 1
        assert summary.failed == 0
        row = await seed.get_stock(stock.id)
        assert row.stock_quantity == 48
        assert row.fractional_stock == pytest.approx(0)
        assert row.serving_quantity == pytest.approx(48)
        assert row.cost_per_serving == pytest.approx(10)
        assert row.bulk_quantity == pytest.approx(2)
        assert row.serving_unit == "pieces"
        assert row.breakdown_ratio == pytest.approx(24)
        assert row.version == 2

    @pytest.mark.asyncio
    async def test_delivery_movement_keeps_ledger_identity(self, seed, processor):
        shop = await seed.store()
        stock = await seed.stock(shop.id, "Bagel", 3)

        await processor.process_delivery([delivery(stock.id, ratio=12)])

        movements = await seed.movements(stock.id)
        assert len(movements) == 1
        m = movements[0]
        assert m.movement_type == "delivery"
        assert m.reference_id == "GRN-001"
        assert m.previous_quantity == pytest.approx(3)
        assert m.new_quantity == pytest.approx(12)
        assert m.previous_quantity + m.quantity_change == pytest.approx(m.new_quantity)

    @pytest.mark.asyncio
    async def test_half_serving_item(self, seed, processor):
        shop = await seed.store()
        stock = await seed.stock(shop.id, "Regular Croissant", 0)

        summary = await processor.process_delivery([delivery(stock.id, ratio=5, unit_cost=50)])

        assert summary.items[0].breakdown.multiplier == 0.5
        row = await seed.get_stock(stock.id)
        assert row.stock_quantity == 2
        assert row.fractional_stock == pytest.approx(0.5)
        assert row.cost_per_serving == pytest.approx(20)

    @pytest.mark.asyncio
    async def test_ratio_from_description(self, seed, processor):
        shop = await seed.store()
        stock = await seed.stock(shop.id, "Muffin", 0)

        await processor.process_delivery([delivery(stock.id, description="1 box/70pcs Muffin", unit_cost=700)])

        row = await seed.get_stock(stock.id)
        assert row.stock_quantity == 70
        assert row.cost_per_serving == pytest.approx(10)

    @pytest.mark.asyncio
    async def test_unparseable_description_falls_back_to_ratio_one(self, seed, processor):
        shop = await seed.store()
        stock = await seed.stock(shop.id, "Muffin", 0)

        await processor.process_delivery([delivery(stock.id, bulk_quantity=4, description="assorted")])

        assert (await seed.get_stock(stock.id)).stock_quantity == 4

    @pytest.mark.asyncio
    async def test_items_are_independent(self, seed, processor):
        shop = await seed.store()
        stock = await seed.stock(shop.id, "Bagel", 0)
        missing = uuid.uuid4()

        summary = await processor.process_delivery([delivery(missing, ratio=10), delivery(stock.id, ratio=10)])

        assert summary.total_items == 2
        assert summary.processed == 1
        assert summary.failed == 1
        assert summary.items[0].success is False
        assert "not found" in summary.items[0].error
        assert summary.errors
        assert (await seed.get_stock(stock.id)).stock_quantity == 10

    @pytest.mark.asyncio
    async def test_rejects_other_store_stock(self, seed, processor):
        north = await seed.store("North")
        south = await seed.store("South")
        stock = await seed.stock(south.id, "Bagel", 1)

        summary = await processor.process_delivery([delivery(stock.id, ratio=10)], store_id=north.id)

        assert summary.failed == 1
        assert (await seed.get_stock(stock.id)).stock_quantity == 1


class TestPreviewDelivery:
    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, seed, processor):
        shop = await seed.store()
        stock = await seed.stock(shop.id, "Whipped Cream", 1)

        preview = await processor.preview_delivery([delivery(stock.id, ratio=20, unit_cost=100)])

        assert preview[0].success is True
        assert preview[0].stock_quantity == 10
        assert preview[0].breakdown.cost_per_serving == pytest.approx(10)
        row = await seed.get_stock(stock.id)
        assert row.stock_quantity == 1
        assert row.version == 1
        assert await seed.movements() == []
