from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Iterable

from stocksync.models import PriceSyncRule, ProductMapping
from stocksync.services.exceptions import ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

ROUNDING_MODES = {
    "up": ROUND_CEILING,
    "down": ROUND_FLOOR,
    "nearest": ROUND_HALF_UP,
}


def parse_price(value: Any) -> Decimal:
    """플랫폼 응답 가격을 Decimal 로 변환. 숫자가 아니면 ValidationError."""
    if value is None or isinstance(value, bool):
        raise ValidationError("Price is missing", field="price", actual_value=value)
    if isinstance(value, str):
        value = value.replace(",", "").strip()
    try:
        price = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("Price is not numeric", field="price", actual_value=value)
    if not price.is_finite() or price < 0:
        raise ValidationError("Price must be a finite non-negative number", field="price", actual_value=value)
    return price


def round_price(value: Decimal, strategy: str = "nearest") -> Decimal:
    if strategy not in ROUNDING_MODES:
        raise ValidationError(f"Unknown rounding strategy {strategy}", field="rounding", actual_value=strategy)
    return value.quantize(CENT, rounding=ROUNDING_MODES[strategy])


def calculate_price(
    source_price: Any,
    rate: Any,
    margin_rate: Any,
    rounding: str = "nearest",
    min_price: Any = None,
    max_price: Any = None,
) -> Decimal:
    """
    source × rate × margin 을 소수 둘째 자리로 반올림한 뒤 min/max 로 제한.

    calculate_price(50000, 0.00075, 1.15) == Decimal("43.13")
    """
    source = parse_price(source_price)
    rate_d = Decimal(str(rate))
    margin = Decimal(str(margin_rate))
    if rate_d <= 0:
        raise ValidationError("Exchange rate must be positive", field="rate", actual_value=rate)
    if margin <= 0:
        raise ValidationError("Margin rate must be positive", field="margin_rate", actual_value=margin_rate)

    price = round_price(source * rate_d * margin, rounding)
    if min_price is not None and price < Decimal(str(min_price)):
        price = Decimal(str(min_price)).quantize(CENT)
    if max_price is not None and price > Decimal(str(max_price)):
        price = Decimal(str(max_price)).quantize(CENT)
    return price


def rule_matches(rule: PriceSyncRule, mapping: ProductMapping, source_price: Decimal) -> bool:
    if rule.rule_type == "sku":
        return (rule.value or "").strip().upper() == mapping.sku
    if rule.rule_type == "category":
        return bool(mapping.category) and rule.value == mapping.category
    if rule.rule_type == "brand":
        return bool(mapping.brand) and (rule.value or "").lower() == mapping.brand.lower()
    if rule.rule_type == "price_range":
        if rule.min_price is not None and source_price < Decimal(str(rule.min_price)):
            return False
        if rule.max_price is not None and source_price > Decimal(str(rule.max_price)):
            return False
        return True
    return False


def select_rule(rules: Iterable[PriceSyncRule], mapping: ProductMapping, source_price: Decimal) -> PriceSyncRule | None:
    candidates = [r for r in rules if r.enabled and rule_matches(r, mapping, source_price)]
    if not candidates:
        return None
    return max(candidates, key=lambda r: (r.priority, -(r.id or 0)))


@dataclass
class PriceQuote:
    price: Decimal
    source_price: Decimal
    rate: float
    margin_rate: float
    applied_rule: str | None = None
    warnings: list[str] = field(default_factory=list)


class PriceCalculationEngine:
    """
    매핑의 마진 규칙 + 덮어쓰기 규칙으로 타겟 가격을 계산한다.
    경고(너무 낮은 가격, 급격한 변동)는 기록만 하고 막지 않는다.
    """

    def __init__(
        self,
        rule_loader: Callable[[], list[PriceSyncRule]] | None = None,
        default_margin_rate: float = 1.15,
        default_rounding: str = "nearest",
        warning_floor: float = 1.0,
        swing_ratio: float = 0.5,
    ):
        self.rule_loader = rule_loader or (lambda: [])
        self.default_margin_rate = default_margin_rate
        self.default_rounding = default_rounding
        self.warning_floor = Decimal(str(warning_floor))
        self.swing_ratio = Decimal(str(swing_ratio))

    def quote(
        self,
        mapping: ProductMapping,
        source_price: Any,
        rate: float,
        last_price: Any = None,
        rules: list[PriceSyncRule] | None = None,
    ) -> PriceQuote:
        source = parse_price(source_price)
        margin = mapping.margin_rate or self.default_margin_rate
        rule = select_rule(rules if rules is not None else self.rule_loader(), mapping, source)
        if rule is not None:
            margin = rule.margin_rate

        price = calculate_price(
            source,
            rate,
            margin,
            rounding=mapping.rounding_strategy or self.default_rounding,
            min_price=mapping.min_price,
            max_price=mapping.max_price,
        )
        warnings = self.check_warnings(price, last_price)
        if warnings:
            logger.warning(f"[PRICE] {mapping.sku} {price}: {', '.join(warnings)}")
        return PriceQuote(
            price=price,
            source_price=source,
            rate=float(rate),
            margin_rate=float(margin),
            applied_rule=rule.name if rule is not None else None,
            warnings=warnings,
        )

    def check_warnings(self, price: Decimal, last_price: Any = None) -> list[str]:
        warnings = []
        if price < self.warning_floor:
            warnings.append(f"price_below_floor:{self.warning_floor}")
        if last_price is not None:
            last = Decimal(str(last_price))
            if last > 0 and abs(price - last) / last > self.swing_ratio:
                warnings.append(f"price_swing:{last}->{price}")
        return warnings
