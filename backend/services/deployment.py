"""
Recipe deployment: maps a store-independent recipe template onto one store's inventory and
materializes it as a sellable product.

Deployment runs as a saga (product, catalog entry, recipe, ingredient rows, conversion
mappings). When a step fails, the steps already applied are undone in reverse order so a
store never ends up with half a product.
"""

import asyncio
import logging
import re
import time
from typing import List, Optional
from uuid import UUID

from core.config import settings
from core.errors import InventoryError, NotFound
from core.locks import KeyedLocks
from core.matching import DeclaredOrderMatcher, MatchingStrategy
from core.saga import Saga
from schemas.deployments import (
    DeploymentPreview,
    DeploymentResult,
    DeploymentValidation,
    IngredientMapping,
    RecipeInventoryMapping,
    TemplateRecord,
)
from schemas.inventory import StockRecord
from services.conversion_mappings import ConversionMappingResolver
from services.inventory_store import InventoryStore

logger = logging.getLogger(__name__)

deployment_locks = KeyedLocks()


def availability_status(stock_quantity: float, threshold: Optional[float] = None) -> str:
    if threshold is None:
        threshold = settings.default_minimum_threshold
    if stock_quantity <= 0:
        return "out_of_stock"
    if stock_quantity <= threshold:
        return "low_stock"
    return "available"


def unit_cost_of(stock: Optional[StockRecord], fallback: Optional[float] = None) -> float:
    if stock is not None:
        if stock.cost_per_serving:
            return stock.cost_per_serving
        if stock.cost:
            return stock.cost
    return fallback or 0.0


def make_sku(name: str, store_id: UUID) -> str:
    slug = re.sub(r"[^A-Z0-9]+", "-", name.upper()).strip("-") or "RECIPE"
    return f"RCP-{slug}-{store_id.hex[:6].upper()}-{int(time.time() * 1000)}"


def total_cost_of(mapping: RecipeInventoryMapping) -> float:
    return round(sum(i.quantity * i.unit_cost for i in mapping.ingredients), 6)


class RecipeDeploymentMapper:
    def __init__(
        self,
        store: InventoryStore,
        resolver: Optional[ConversionMappingResolver] = None,
        matcher: Optional[MatchingStrategy] = None,
        markup: Optional[float] = None,
    ):
        self.store = store
        self.resolver = resolver or ConversionMappingResolver(store)
        self.matcher = matcher or DeclaredOrderMatcher(lambda s: s.item)
        self.markup = settings.deployment_markup if markup is None else markup

    async def _template(self, template_id: UUID) -> TemplateRecord:
        template = await self.store.get_template(template_id)
        if template is None or not template.is_active:
            raise NotFound(f"Recipe template {template_id} not found")
        return template

    async def build_mapping(
        self, template_id: UUID, store_id: UUID, template: Optional[TemplateRecord] = None
    ) -> RecipeInventoryMapping:
        template = template or await self._template(template_id)
        candidates = await self.store.list_active_stock(store_id)

        ingredients: List[IngredientMapping] = []
        missing: List[str] = []
        for ing in template.ingredients:
            row = IngredientMapping(
                template_ingredient_id=ing.id,
                ingredient_name=ing.ingredient_name,
                quantity=ing.quantity,
                unit=ing.unit,
                unit_cost=unit_cost_of(None, ing.cost_per_unit),
            )
            found = self.matcher.match(ing.ingredient_name, candidates)
            if found is None:
                missing.append(ing.ingredient_name)
            else:
                stock, match_type = found
                row = row.model_copy(
                    update={
                        "inventory_stock_id": stock.id,
                        "inventory_item": stock.item,
                        "inventory_unit": stock.unit,
                        "match_type": match_type,
                        "current_stock": stock.total_quantity,
                        "minimum_threshold": stock.minimum_threshold,
                        "unit_cost": unit_cost_of(stock, ing.cost_per_unit),
                        "availability_status": availability_status(stock.total_quantity, stock.minimum_threshold),
                    }
                )
            ingredients.append(row)

        return RecipeInventoryMapping(
            template_id=template.id,
            template_name=template.name,
            store_id=store_id,
            ingredients=ingredients,
            missing_ingredients=missing,
        )

    async def validate_deployment(
        self, template_id: UUID, store_id: UUID, mapping: Optional[RecipeInventoryMapping] = None
    ) -> DeploymentValidation:
        mapping = mapping or await self.build_mapping(template_id, store_id)
        out_of_stock = [i.ingredient_name for i in mapping.ingredients if i.availability_status == "out_of_stock"]
        low_stock = [i.ingredient_name for i in mapping.ingredients if i.availability_status == "low_stock"]

        errors = [f"No inventory item matches ingredient '{n}'" for n in mapping.missing_ingredients]
        errors += [f"Ingredient '{n}' is out of stock" for n in out_of_stock]
        warnings = [f"Ingredient '{n}' is low on stock" for n in low_stock]

        already = await self.store.find_deployed_recipe(template_id, store_id)
        if already is not None:
            warnings.append(f"Template is already deployed to this store as recipe {already.id}")

        return DeploymentValidation(
            template_id=template_id,
            store_id=store_id,
            is_deployable=not mapping.missing_ingredients and not out_of_stock,
            missing_ingredients=mapping.missing_ingredients,
            out_of_stock_ingredients=out_of_stock,
            low_stock_ingredients=low_stock,
            errors=errors,
            warnings=warnings,
            already_deployed=already is not None,
        )

    def _costs(self, template: TemplateRecord, mapping: RecipeInventoryMapping):
        total_cost = total_cost_of(mapping)
        serving_size = template.serving_size if template.serving_size and template.serving_size > 0 else 1
        return total_cost, round(total_cost / serving_size, 6), round(total_cost * self.markup, 2)

    async def preview(self, template_id: UUID, store_id: UUID) -> DeploymentPreview:
        template = await self._template(template_id)
        mapping = await self.build_mapping(template_id, store_id, template=template)
        validation = await self.validate_deployment(template_id, store_id, mapping=mapping)
        total_cost, cost_per_serving, suggested_price = self._costs(template, mapping)
        return DeploymentPreview(
            mapping=mapping,
            validation=validation,
            total_cost=total_cost,
            cost_per_serving=cost_per_serving,
            suggested_price=suggested_price,
        )

    async def deploy_to_stores(self, template_id: UUID, store_ids: List[UUID]) -> List[DeploymentResult]:
        """Each store is an independent saga; one store failing does not affect the others."""
        template = await self._template(template_id)
        return list(await asyncio.gather(*(self.deploy(template_id, s, template=template) for s in store_ids)))

    async def deploy(
        self, template_id: UUID, store_id: UUID, template: Optional[TemplateRecord] = None
    ) -> DeploymentResult:
        template = template or await self._template(template_id)
        async with deployment_locks.hold((template_id, store_id)):
            return await self._deploy(template, store_id)

    async def _deploy(self, template: TemplateRecord, store_id: UUID) -> DeploymentResult:
        try:
            mapping = await self.build_mapping(template.id, store_id, template=template)
            validation = await self.validate_deployment(template.id, store_id, mapping=mapping)
        except InventoryError as e:
            return DeploymentResult(template_id=template.id, store_id=store_id, success=False, errors=[str(e)])

        if validation.already_deployed:
            return DeploymentResult(
                template_id=template.id,
                store_id=store_id,
                success=False,
                errors=[f"Recipe template '{template.name}' is already deployed to store {store_id}"],
            )
        if not validation.is_deployable:
            logger.info(f"Deployment of '{template.name}' to store {store_id} blocked: {validation.errors}")
            return DeploymentResult(
                template_id=template.id,
                store_id=store_id,
                success=False,
                errors=validation.errors,
                warnings=validation.warnings,
            )

        total_cost, cost_per_serving, suggested_price = self._costs(template, mapping)
        saga = self._deployment_saga(template, store_id, mapping, total_cost, cost_per_serving, suggested_price)
        outcome = await saga.execute()

        if not outcome.success:
            logger.warning(
                f"Deployment of '{template.name}' to store {store_id} failed at '{outcome.failed_step}', "
                f"compensated {outcome.compensated_steps}"
            )
            return DeploymentResult(
                template_id=template.id,
                store_id=store_id,
                success=False,
                failed_step=outcome.failed_step,
                compensated_steps=outcome.compensated_steps,
                errors=[f"{outcome.failed_step}: {outcome.error}"] + outcome.compensation_errors,
                warnings=validation.warnings,
            )

        ctx = outcome.context
        logger.info(
            f"Deployed '{template.name}' to store {store_id}: recipe {ctx['recipe'].id}, "
            f"cost {total_cost:.2f}, price {suggested_price:.2f}"
        )
        return DeploymentResult(
            template_id=template.id,
            store_id=store_id,
            success=True,
            product_id=ctx["product"].id,
            catalog_id=ctx["catalog"].id,
            recipe_id=ctx["recipe"].id,
            sku=ctx["product"].sku,
            total_cost=total_cost,
            cost_per_serving=cost_per_serving,
            suggested_price=suggested_price,
            ingredient_count=ctx["ingredients"],
            created_conversion_mappings=len(ctx["conversion_mappings"]),
            warnings=validation.warnings,
        )

    def _deployment_saga(
        self,
        template: TemplateRecord,
        store_id: UUID,
        mapping: RecipeInventoryMapping,
        total_cost: float,
        cost_per_serving: float,
        suggested_price: float,
    ) -> Saga:
        store = self.store

        async def create_product(ctx):
            return await store.insert_product(
                {
                    "store_id": store_id,
                    "name": template.name,
                    "description": template.description,
                    "sku": make_sku(template.name, store_id),
                    "price": suggested_price,
                    "cost": total_cost,
                    "is_active": True,
                }
            )

        async def remove_product(ctx):
            await store.delete_product(ctx["product"].id)

        async def create_catalog(ctx):
            return await store.insert_catalog_entry(
                {
                    "store_id": store_id,
                    "product_id": ctx["product"].id,
                    "product_name": template.name,
                    "description": template.description,
                    "price": suggested_price,
                    "is_available": True,
                }
            )

        async def remove_catalog(ctx):
            await store.delete_catalog_entry(ctx["catalog"].id)

        async def create_recipe(ctx):
            return await store.insert_recipe(
                {
                    "store_id": store_id,
                    "template_id": template.id,
                    "product_id": ctx["product"].id,
                    "name": template.name,
                    "description": template.description,
                    "instructions": template.instructions,
                    "category_name": template.category_name,
                    "yield_quantity": template.yield_quantity,
                    "serving_size": template.serving_size,
                    "total_cost": total_cost,
                    "cost_per_serving": cost_per_serving,
                    "approval_status": "approved",
                }
            )

        async def remove_recipe(ctx):
            await store.delete_recipe(ctx["recipe"].id)

        async def link_catalog(ctx):
            return await store.update_catalog_entry(ctx["catalog"].id, {"recipe_id": ctx["recipe"].id})

        async def unlink_catalog(ctx):
            await store.update_catalog_entry(ctx["catalog"].id, {"recipe_id": None})

        async def create_ingredients(ctx):
            recipe_id = ctx["recipe"].id
            ingredient_rows = []
            mapping_rows = []
            for ing in mapping.ingredients:
                ingredient_rows.append(
                    {
                        "recipe_id": recipe_id,
                        "inventory_stock_id": ing.inventory_stock_id,
                        "ingredient_name": ing.ingredient_name,
                        "quantity": ing.quantity,
                        "unit": ing.unit,
                        "cost_per_unit": ing.unit_cost,
                    }
                )
                mapping_rows.append(
                    {
                        "recipe_id": recipe_id,
                        "store_id": store_id,
                        "template_ingredient_id": ing.template_ingredient_id,
                        "template_ingredient_name": ing.ingredient_name,
                        "inventory_stock_id": ing.inventory_stock_id,
                        "quantity_per_serving": ing.quantity,
                        "unit": ing.unit,
                        "match_type": ing.match_type,
                        "availability_status": ing.availability_status,
                        "current_stock": ing.current_stock,
                    }
                )
            return await store.insert_recipe_ingredients(ingredient_rows, mapping_rows)

        async def remove_ingredients(ctx):
            await store.delete_recipe_ingredients(ctx["recipe"].id)

        async def ensure_conversion_mappings(ctx):
            # Sales resolve ingredients through conversion mappings; add the missing ones
            created = []
            try:
                for ing in mapping.ingredients:
                    existing = await self.resolver.find_mapping(store_id, ing.ingredient_name, ing.unit)
                    if existing is not None:
                        continue
                    row = await store.insert_mapping(
                        {
                            "inventory_stock_id": ing.inventory_stock_id,
                            "recipe_ingredient_name": ing.ingredient_name,
                            "recipe_ingredient_unit": ing.unit,
                            "conversion_factor": 1.0,
                            "notes": f"created by deployment of '{template.name}'",
                        }
                    )
                    created.append(row.id)
            except Exception:
                # Partial progress inside this step is undone here, the saga undoes earlier steps
                await store.deactivate_mappings(created)
                raise
            return created

        async def remove_conversion_mappings(ctx):
            await store.deactivate_mappings(ctx["conversion_mappings"])

        return (
            Saga(f"deploy:{template.name}:{store_id}")
            .add_step("product", create_product, remove_product)
            .add_step("catalog", create_catalog, remove_catalog)
            .add_step("recipe", create_recipe, remove_recipe)
            .add_step("catalog_link", link_catalog, unlink_catalog)
            .add_step("ingredients", create_ingredients, remove_ingredients)
            .add_step("conversion_mappings", ensure_conversion_mappings, remove_conversion_mappings)
        )
