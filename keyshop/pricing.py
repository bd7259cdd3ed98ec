# keyshop/pricing.py
"""Price resolution collaborator. Geo lookup is injected; it is not ours."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from keyshop.errors import ErrorKind, ShopError
from keyshop.models import Price

GeoResolver = Callable[[Optional[str]], Optional[str]]


@dataclass(frozen=True)
class Quote:
    amount: Decimal
    currency: str
    country_code: Optional[str]


class PricingProvider(Protocol):
    def quote(self, db: Session, product_id: int, client_ip: Optional[str]) -> Quote: ...


def no_geo(client_ip: Optional[str]) -> Optional[str]:
    return None


class TablePricing:
    """Country price row when one exists for the client's country, else the default row."""

    def __init__(self, geo: GeoResolver = no_geo):
        self.geo = geo

    def quote(self, db: Session, product_id: int, client_ip: Optional[str]) -> Quote:
        country = self.geo(client_ip)
        country = country.upper() if country else None
        price = None
        if country:
            price = db.execute(
                select(Price).where(Price.product_id == product_id, Price.country_code == country)
            ).scalar_one_or_none()
        if price is None:
            price = db.execute(
                select(Price).where(Price.product_id == product_id, Price.country_code.is_(None))
            ).scalar_one_or_none()
        if price is None:
            raise ShopError(ErrorKind.VALIDATION, f"Product {product_id} has no price configured")
        return Quote(amount=price.amount, currency=price.currency, country_code=country)
