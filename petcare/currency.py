import re

USD_TO_BDT_RATE = 120

_PRICE_NOISE = re.compile(r"[$৳,]")


def usd_to_bdt(usd: float) -> int:
    return round(usd * USD_TO_BDT_RATE)


def bdt_to_usd(bdt: float) -> float:
    return round(bdt / USD_TO_BDT_RATE, 2)


def to_minor_units(usd: float) -> int:
    """USD amount to Stripe cents."""
    return round(usd * 100)


def format_bdt(amount: float) -> str:
    return f"৳{round(amount):,}"


def format_usd(amount: float) -> str:
    return f"${float(amount):.2f}"


def parse_price(price) -> float:
    if isinstance(price, (int, float)):
        return float(price)
    return float(_PRICE_NOISE.sub("", price))
