from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from stocksync.models import ProductMapping


@dataclass(frozen=True)
class ProductRef:
    """플랫폼 안에서 상품/옵션을 가리키는 식별자"""
    sku: str
    product_id: str
    variant_id: Optional[str] = None


class InventoryReader(ABC):
    @abstractmethod
    async def get_quantity(self, ref: ProductRef) -> int:
        """
        Returns the available quantity for the product.
        """
        pass


class InventoryWriter(ABC):
    @abstractmethod
    async def set_quantity(self, ref: ProductRef, quantity: int) -> None:
        """
        Overwrites the available quantity for the product.
        """
        pass


class PriceReader(ABC):
    @abstractmethod
    async def get_price(self, ref: ProductRef) -> Decimal:
        """
        Returns the current listing price in the platform's currency.
        """
        pass


class PriceWriter(ABC):
    @abstractmethod
    async def set_price(self, ref: ProductRef, price: Decimal) -> None:
        pass


@dataclass
class PlatformConnection:
    """
    플랫폼 하나의 기능 묶음.
    가격 기능이 없는 플랫폼은 price_reader/price_writer 를 None 으로 둔다.
    """
    name: str
    inventory_reader: InventoryReader
    inventory_writer: InventoryWriter
    price_reader: Optional[PriceReader] = None
    price_writer: Optional[PriceWriter] = None

    @classmethod
    def from_adapter(cls, name: str, adapter) -> "PlatformConnection":
        """네 가지 기능을 모두 구현한 어댑터 하나로 연결을 만든다."""
        return cls(
            name=name,
            inventory_reader=adapter,
            inventory_writer=adapter,
            price_reader=adapter if isinstance(adapter, PriceReader) else None,
            price_writer=adapter if isinstance(adapter, PriceWriter) else None,
        )


def ref_for_a(mapping: ProductMapping) -> ProductRef:
    return ProductRef(mapping.sku, mapping.platform_a_product_id, mapping.platform_a_variant_id)


def ref_for_b(mapping: ProductMapping) -> ProductRef:
    return ProductRef(mapping.sku, mapping.platform_b_product_id, mapping.platform_b_variant_id)
