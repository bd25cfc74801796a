"""
Pricing utilities for domain registration and renewal
Decimal money handling and currency formatting functions
"""

import logging
from typing import Union, Optional
from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING, InvalidOperation

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')

Number = Union[float, int, str, Decimal]

def to_decimal(amount: Optional[Number], default: Optional[Decimal] = None) -> Decimal:
    """
    Convert a monetary value to Decimal without float artifacts

    Args:
        amount: Value from the database, an API response or configuration
        default: Returned when amount is None or empty

    Returns:
        Decimal: Exact decimal value
    """
    if amount is None or amount == '':
        if default is None:
            raise ValueError("Monetary amount is required")
        return default
    if isinstance(amount, Decimal):
        return amount
    try:
        # str() first so 0.1 becomes Decimal('0.1') not the binary float expansion
        return Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid monetary amount: {amount!r}") from e

def round_money(amount: Number) -> Decimal:
    """Round to cents, half up"""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)

def round_up_to_cents(amount: Number) -> Decimal:
    """Round up to the next cent (63.1579 -> 63.16)"""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_CEILING)

def format_money(amount: Union[float, int, Decimal], currency: str = "USD", show_currency: bool = True) -> str:
    """
    Format monetary amount for display

    Args:
        amount: Amount to format
        currency: Currency code (default: USD)
        show_currency: Whether to show currency symbol

    Returns:
        str: Formatted money string
    """
    try:
        rounded_amount = round_money(amount)
        formatted = f"{rounded_amount:.2f}"

        if show_currency:
            currency_symbols = {
                'USD': '$',
                'EUR': '€',
                'GBP': '£',
            }
            symbol = currency_symbols.get(currency.upper(), currency.upper() + ' ')
            return f"{symbol}{formatted}"

        return formatted

    except Exception as e:
        logger.warning(f"Error formatting money: {e}")
        return str(amount)

def money_to_cents(amount: Number) -> int:
    """Convert a dollar amount to integer cents for payment processor APIs"""
    return int((round_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))

def get_tld_prices(pricing_row: Optional[dict], default_price: Number = '15.00', default_cost: Number = '10.00') -> tuple:
    """
    Extract customer renewal price and registry renewal cost from a tld_pricing row

    Args:
        pricing_row: Row with price_renew / cost_renew columns, or None
        default_price: Fallback customer price when the TLD is not priced
        default_cost: Fallback registry cost when the TLD is not priced

    Returns:
        tuple: (customer_price, registry_cost) as Decimals
    """
    row = pricing_row or {}
    customer_price = to_decimal(row.get('price_renew'), to_decimal(default_price))
    registry_cost = to_decimal(row.get('cost_renew'), to_decimal(default_cost))
    if not pricing_row:
        logger.warning(f"⚠️ No TLD pricing found - using defaults price={format_money(customer_price)} cost={format_money(registry_cost)}")
    return customer_price, registry_cost
