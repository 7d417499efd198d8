"""
Pricing Engine - turns pizza item specifications into priced line items
and aggregates them into order totals.

Rules:
    - Whole pizza base price is the pizza's base price; a half-and-half
      base price is the mean of both pizzas' base prices.
    - Every added extra is charged its full price, whichever half it is on.
    - Every removed ingredient takes a flat REMOVAL_DISCOUNT off the unit.
    - The unit price is clamped at zero and multiplied by quantity.
    - The order discount is capped at the subtotal so totals never go
      negative.
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Tuple

from django.conf import settings

from core.exceptions import OrderValidationError

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

WHOLE = 'whole'
FIRST_HALF = 'first_half'
SECOND_HALF = 'second_half'
BOTH_HALVES = 'both_halves'


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def get_removal_discount() -> Decimal:
    return money(settings.PIZZERIA.get('REMOVAL_DISCOUNT', Decimal('50')))


@dataclass(frozen=True)
class ItemSpec:
    """
    Raw specification of one line item.

    For half-and-half items extras/removed_ingredients belong to the first
    half, second_* to the second half and shared_* to both halves.
    """
    pizza_id: int
    quantity: int = 1
    extras: Tuple[int, ...] = ()
    removed_ingredients: Tuple[str, ...] = ()
    is_half_and_half: bool = False
    second_pizza_id: Optional[int] = None
    second_extras: Tuple[int, ...] = ()
    second_removed_ingredients: Tuple[str, ...] = ()
    shared_extras: Tuple[int, ...] = ()
    shared_removed_ingredients: Tuple[str, ...] = ()
    notes: str = ''

    @classmethod
    def from_dict(cls, data: dict) -> 'ItemSpec':
        return cls(
            pizza_id=data['pizza_id'],
            quantity=data.get('quantity', 1),
            extras=tuple(data.get('extras') or ()),
            removed_ingredients=tuple(data.get('removed_ingredients') or ()),
            is_half_and_half=bool(data.get('is_half_and_half', False)),
            second_pizza_id=data.get('second_pizza_id'),
            second_extras=tuple(data.get('second_extras') or ()),
            second_removed_ingredients=tuple(data.get('second_removed_ingredients') or ()),
            shared_extras=tuple(data.get('shared_extras') or ()),
            shared_removed_ingredients=tuple(data.get('shared_removed_ingredients') or ()),
            notes=data.get('notes') or '',
        )

    @classmethod
    def from_order_item(cls, item) -> 'ItemSpec':
        """Rebuild the specification of a persisted OrderItem."""
        return cls(
            pizza_id=item.pizza_id,
            quantity=item.quantity,
            extras=tuple(item.extras or ()),
            removed_ingredients=tuple(item.removed_ingredients or ()),
            is_half_and_half=item.is_half_and_half,
            second_pizza_id=item.second_pizza_id,
            second_extras=tuple(item.second_extras or ()),
            second_removed_ingredients=tuple(item.second_removed_ingredients or ()),
            shared_extras=tuple(item.shared_extras or ()),
            shared_removed_ingredients=tuple(item.shared_removed_ingredients or ()),
            notes=item.notes or '',
        )

    def validate(self) -> None:
        if not isinstance(self.quantity, int) or self.quantity < 1:
            raise OrderValidationError("quantity must be a positive integer")
        if self.is_half_and_half:
            if not self.second_pizza_id:
                raise OrderValidationError("Half-and-half items require second_pizza_id")
        elif (self.second_pizza_id or self.second_extras or self.second_removed_ingredients
              or self.shared_extras or self.shared_removed_ingredients):
            raise OrderValidationError(
                "Second-half and shared fields require is_half_and_half"
            )

    @property
    def pizza_ids(self) -> List[int]:
        if self.is_half_and_half:
            return [self.pizza_id, self.second_pizza_id]
        return [self.pizza_id]

    @property
    def extra_ids(self) -> List[int]:
        return [*self.extras, *self.second_extras, *self.shared_extras]


@dataclass(frozen=True)
class AppliedExtra:
    extra_id: int
    name: str
    price: Decimal
    placement: str


@dataclass(frozen=True)
class AppliedRemoval:
    ingredient: str
    placement: str
    discount: Decimal


@dataclass(frozen=True)
class PricedItem:
    """Priced line item plus the breakdown that produced it."""
    spec: ItemSpec
    base_price: Decimal
    extras_price: Decimal
    removal_discount: Decimal
    unit_price: Decimal
    line_total: Decimal
    pizza_names: Tuple[str, ...] = ()
    applied_extras: Tuple[AppliedExtra, ...] = ()
    applied_removals: Tuple[AppliedRemoval, ...] = ()

    @property
    def quantity(self) -> int:
        return self.spec.quantity

    @property
    def is_half_and_half(self) -> bool:
        return self.spec.is_half_and_half

    def price_fields(self) -> dict:
        """Priced columns of an OrderItem."""
        return {
            'base_price': self.base_price,
            'extras_price': self.extras_price,
            'removal_discount': self.removal_discount,
            'unit_price': self.unit_price,
            'line_total': self.line_total,
        }

    def breakdown(self) -> dict:
        return {
            'pizzas': list(self.pizza_names),
            'is_half_and_half': self.is_half_and_half,
            'quantity': self.quantity,
            'base_price': str(self.base_price),
            'extras_price': str(self.extras_price),
            'removal_discount': str(self.removal_discount),
            'unit_price': str(self.unit_price),
            'line_total': str(self.line_total),
            'extras': [
                {'id': e.extra_id, 'name': e.name, 'price': str(e.price), 'placement': e.placement}
                for e in self.applied_extras
            ],
            'removed_ingredients': [
                {'ingredient': r.ingredient, 'placement': r.placement}
                for r in self.applied_removals
            ],
        }

    def describe(self) -> str:
        """Human-readable breakdown, one line per component."""
        title = ' / '.join(self.pizza_names)
        if self.is_half_and_half:
            title = f"Half-and-half {title}"
        lines = [f"{self.quantity}x {title}: base ${self.base_price}"]
        for extra in self.applied_extras:
            where = '' if extra.placement == WHOLE else f" ({extra.placement.replace('_', ' ')})"
            lines.append(f"  + {extra.name}{where} ${extra.price}")
        for removal in self.applied_removals:
            where = '' if removal.placement == WHOLE else f" ({removal.placement.replace('_', ' ')})"
            lines.append(f"  - no {removal.ingredient}{where} -${removal.discount}")
        lines.append(f"  = ${self.unit_price} each, ${self.line_total} total")
        return '\n'.join(lines)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount: Decimal
    applied_discount: Decimal
    total: Decimal
    item_count: int
    items: Tuple[PricedItem, ...] = field(default=(), repr=False)


def _applied_extras(catalog, extra_ids, placement) -> List[AppliedExtra]:
    return [
        AppliedExtra(extra_id=extra.id, name=extra.name, price=money(extra.price), placement=placement)
        for extra in catalog.get_extras(extra_ids)
    ]


def _applied_removals(ingredients, placement, unit_discount) -> List[AppliedRemoval]:
    return [
        AppliedRemoval(ingredient=name, placement=placement, discount=unit_discount)
        for name in ingredients
    ]


def _unknown(ingredients, recipe) -> List[str]:
    known = {name.strip().casefold() for name in recipe or ()}
    return [name for name in ingredients if name.strip().casefold() not in known]


def check_removals(spec: ItemSpec, catalog) -> None:
    """
    Reject removed ingredients that are not on the pizza they come off.

    A shared removal must be on at least one of the two halves.

    Raises:
        OrderValidationError: If any removed ingredient is unknown
    """
    first = catalog.get_pizza(spec.pizza_id)
    unknown = _unknown(spec.removed_ingredients, first.ingredients)
    if spec.is_half_and_half:
        second = catalog.get_pizza(spec.second_pizza_id)
        unknown += _unknown(spec.second_removed_ingredients, second.ingredients)
        unknown += _unknown(
            spec.shared_removed_ingredients,
            list(first.ingredients or ()) + list(second.ingredients or ()),
        )
    if unknown:
        raise OrderValidationError(
            f"Cannot remove ingredients not on the pizza: {', '.join(unknown)}"
        )


def price_item(spec: ItemSpec, catalog, removal_discount: Optional[Decimal] = None) -> PricedItem:
    """
    Price one line item.

    Args:
        spec: Item specification
        catalog: Object exposing get_pizza(id) and get_extras(ids), usually
            a catalog.services.CatalogReader
        removal_discount: Discount per removed ingredient; defaults to the
            PIZZERIA['REMOVAL_DISCOUNT'] setting

    Raises:
        OrderValidationError: If the spec is malformed
        CatalogIntegrityError: If a pizza or extra id is unknown
    """
    spec.validate()
    unit_discount = get_removal_discount() if removal_discount is None else money(removal_discount)

    pizza = catalog.get_pizza(spec.pizza_id)
    if spec.is_half_and_half:
        second = catalog.get_pizza(spec.second_pizza_id)
        base_price = money((money(pizza.base_price) + money(second.base_price)) / 2)
        pizza_names = (pizza.name, second.name)
        extras = (
            _applied_extras(catalog, spec.extras, FIRST_HALF)
            + _applied_extras(catalog, spec.second_extras, SECOND_HALF)
            + _applied_extras(catalog, spec.shared_extras, BOTH_HALVES)
        )
        removals = (
            _applied_removals(spec.removed_ingredients, FIRST_HALF, unit_discount)
            + _applied_removals(spec.second_removed_ingredients, SECOND_HALF, unit_discount)
            + _applied_removals(spec.shared_removed_ingredients, BOTH_HALVES, unit_discount)
        )
    else:
        base_price = money(pizza.base_price)
        pizza_names = (pizza.name,)
        extras = _applied_extras(catalog, spec.extras, WHOLE)
        removals = _applied_removals(spec.removed_ingredients, WHOLE, unit_discount)

    extras_price = money(sum((e.price for e in extras), ZERO))
    discount = money(unit_discount * len(removals))
    unit_price = max(ZERO, base_price + extras_price - discount)

    return PricedItem(
        spec=spec,
        base_price=base_price,
        extras_price=extras_price,
        removal_discount=discount,
        unit_price=unit_price,
        line_total=money(unit_price * spec.quantity),
        pizza_names=pizza_names,
        applied_extras=tuple(extras),
        applied_removals=tuple(removals),
    )


def price_items(specs: Iterable[ItemSpec], catalog,
                removal_discount: Optional[Decimal] = None) -> List[PricedItem]:
    specs = list(specs)
    if hasattr(catalog, 'prefetch'):
        catalog.prefetch(
            [pid for spec in specs for pid in spec.pizza_ids],
            [eid for spec in specs for eid in spec.extra_ids],
        )
    return [price_item(spec, catalog, removal_discount) for spec in specs]


def price_order(items: Iterable[PricedItem], discount=ZERO) -> OrderTotals:
    """
    Aggregate priced items into order totals.

    The discount is capped at the subtotal, so total is never negative.
    """
    items = tuple(items)
    discount = money(discount or ZERO)
    if discount < ZERO:
        raise OrderValidationError("discount cannot be negative")

    subtotal = money(sum((item.line_total for item in items), ZERO))
    applied_discount = min(discount, subtotal)
    return OrderTotals(
        subtotal=subtotal,
        discount=discount,
        applied_discount=applied_discount,
        total=subtotal - applied_discount,
        item_count=len(items),
        items=items,
    )
