"""Pytest configuration and fixtures."""

import uuid
from typing import List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from core.retry import RetryPolicy
from db.database import create_db_and_tables, get_session_maker
from db.inventory.conversion_mapping import ConversionMapping
from db.inventory.movement import InventoryMovement
from db.inventory.stock import InventoryStock
from db.recipe_template import RecipeTemplate, RecipeTemplateIngredient
from db.store import Store
from main import app
from services.deduction import DeductionExecutor, DeferredQueue
from services.inventory_store import InventoryStore

# No backoff sleeps in tests
FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


class Seeder:
    """Writes fixture rows straight through the ORM."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def _add(self, obj):
        async with self.session_maker() as session:
            session.add(obj)
            await session.commit()
            await session.refresh(obj)
            return obj

    async def store(self, name: str = "Main Street") -> Store:
        return await self._add(Store(name=name))

    async def stock(
        self,
        store_id: uuid.UUID,
        item: str,
        quantity: int,
        unit: str = "pieces",
        fractional: float = 0.0,
        **fields,
    ) -> InventoryStock:
        return await self._add(
            InventoryStock(
                store_id=store_id,
                item=item,
                unit=unit,
                stock_quantity=quantity,
                fractional_stock=fractional,
                **fields,
            )
        )

    async def mapping(
        self,
        stock: InventoryStock,
        name: str,
        unit: str,
        factor: float = 1.0,
        is_active: bool = True,
    ) -> ConversionMapping:
        return await self._add(
            ConversionMapping(
                inventory_stock_id=stock.id,
                recipe_ingredient_name=name,
                recipe_ingredient_unit=unit,
                conversion_factor=factor,
                is_active=is_active,
            )
        )

    async def template(
        self,
        name: str,
        ingredients: List[Tuple[str, float, str, Optional[float]]],
        serving_size: float = 1,
    ) -> RecipeTemplate:
        template = RecipeTemplate(name=name, serving_size=serving_size)
        template.ingredients = [
            RecipeTemplateIngredient(
                ingredient_name=ing_name, quantity=qty, unit=unit, cost_per_unit=cost, sort_order=i
            )
            for i, (ing_name, qty, unit, cost) in enumerate(ingredients)
        ]
        return await self._add(template)

    async def get_stock(self, stock_id: uuid.UUID) -> InventoryStock:
        async with self.session_maker() as session:
            return await session.get(InventoryStock, stock_id)

    async def movements(self, stock_id: Optional[uuid.UUID] = None) -> List[InventoryMovement]:
        q = select(InventoryMovement).order_by(InventoryMovement.created_at)
        if stock_id is not None:
            q = q.where(InventoryMovement.inventory_stock_id == stock_id)
        async with self.session_maker() as session:
            res = await session.execute(q)
            return list(res.scalars().all())

    async def rows(self, model) -> list:
        async with self.session_maker() as session:
            res = await session.execute(select(model))
            return list(res.scalars().all())


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}")
    await create_db_and_tables(bind=eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def store(session_maker) -> InventoryStore:
    return InventoryStore(session_maker)


@pytest.fixture
def seed(session_maker) -> Seeder:
    return Seeder(session_maker)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return FAST_RETRY


@pytest.fixture
def make_executor(store):
    def _make(policy: str = "reject", offline: bool = False, inventory_store: Optional[InventoryStore] = None):
        return DeductionExecutor(
            inventory_store or store,
            retry_policy=FAST_RETRY,
            policy=policy,
            offline=offline,
            deferred=DeferredQueue(),
        )

    return _make


@pytest_asyncio.fixture
async def client(session_maker):
    """HTTP client against the app, with the session factory pointed at the test database."""
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()
