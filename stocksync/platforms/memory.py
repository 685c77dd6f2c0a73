import asyncio
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from stocksync.platforms.base import InventoryReader, InventoryWriter, PriceReader, PriceWriter, ProductRef
from stocksync.services.exceptions import NotFoundError


class InMemoryPlatform(InventoryReader, InventoryWriter, PriceReader, PriceWriter):
    """
    SKU 키 기반 메모리 플랫폼. 테스트와 dry-run 용.
    fail_next 에 예외를 넣으면 다음 호출들이 순서대로 그 예외를 던진다.
    """

    def __init__(
        self,
        quantities: Optional[Dict[str, int]] = None,
        prices: Optional[Dict[str, Decimal]] = None,
        latency: float = 0.0,
    ):
        self.quantities: Dict[str, int] = dict(quantities or {})
        self.prices: Dict[str, Decimal] = {k: Decimal(str(v)) for k, v in (prices or {}).items()}
        self.latency = latency
        self.fail_next: List[Exception] = []
        self.writes: List[Tuple[str, str, object]] = []
        self.calls = 0

    async def _tick(self) -> None:
        self.calls += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.fail_next:
            raise self.fail_next.pop(0)

    async def get_quantity(self, ref: ProductRef) -> int:
        await self._tick()
        if ref.sku not in self.quantities:
            raise NotFoundError(f"Unknown product {ref.sku}", resource="inventory", key=ref.sku)
        return self.quantities[ref.sku]

    async def set_quantity(self, ref: ProductRef, quantity: int) -> None:
        await self._tick()
        self.quantities[ref.sku] = quantity
        self.writes.append(("inventory", ref.sku, quantity))

    async def get_price(self, ref: ProductRef) -> Decimal:
        await self._tick()
        if ref.sku not in self.prices:
            raise NotFoundError(f"Unknown product {ref.sku}", resource="price", key=ref.sku)
        return self.prices[ref.sku]

    async def set_price(self, ref: ProductRef, price: Decimal) -> None:
        await self._tick()
        self.prices[ref.sku] = price
        self.writes.append(("price", ref.sku, price))
