from decimal import Decimal, InvalidOperation
from typing import Iterable, Tuple

from ordersync.errors import ValidationError
from ordersync.types.order_types import CartLine, Customization, OrderLine

CENTS = Decimal("0.01")


def money(value) -> Decimal:
    try:
        return Decimal(str(value)).quantize(CENTS)
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount {value!r}") from e


def to_minor_units(amount: Decimal) -> int:
    return int((money(amount) * 100).to_integral_value())


def price_line(line: CartLine) -> OrderLine:
    if line.quantity < 1:
        raise ValidationError(f"Quantity for {line.name} must be at least 1")
    price = money(line.price)
    if price < 0:
        raise ValidationError(f"Price for {line.name} cannot be negative")
    customizations = tuple(
        Customization(id=c.id, name=c.name, price=money(c.price)) for c in line.customizations
    )
    if any(c.price < 0 for c in customizations):
        raise ValidationError(f"Customization prices for {line.name} cannot be negative")
    unit = price + sum((c.price for c in customizations), Decimal("0"))
    return OrderLine(
        food_item_id=line.food_item_id,
        name=line.name,
        price=price,
        quantity=line.quantity,
        customizations=customizations,
        total_price=money(unit * line.quantity),
    )


def price_cart(cart_lines: Iterable[CartLine], max_items: int) -> Tuple[Tuple[OrderLine, ...], Decimal]:
    lines = tuple(price_line(line) for line in cart_lines or ())
    if not lines:
        raise ValidationError("Cart is empty")
    item_count = sum(line.quantity for line in lines)
    if item_count > max_items:
        raise ValidationError(f"Orders are limited to {max_items} items, this cart has {item_count}")
    subtotal = sum((line.total_price for line in lines), Decimal("0"))
    return lines, money(subtotal)


def validate_address(address: str, min_length: int) -> str:
    cleaned = (address or "").strip()
    if len(cleaned) < min_length:
        raise ValidationError("Please provide a valid delivery address")
    return cleaned
