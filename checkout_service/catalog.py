"""
catalog.py — Authoritative product prices

The Price Resolver turns untrusted cart lines into priced lines using only the
product documents in the store. Nothing but the product id and the quantity
is taken from the request.
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from .errors import InvalidQuantity, ProductNotFound
from .logging_config import get_logger
from .models import MAX_QUANTITY, MIN_QUANTITY, CartItem, ResolvedLineItem
from .store import DOCUMENT_ID, IN_QUERY_LIMIT, Document, DocumentStore

log = get_logger(__name__)

PRODUCTS_COLLECTION = "products"

_NON_PRICE_CHARS = re.compile(r"[^\d.]")


def parse_price(raw) -> Optional[int]:
    """
    Converts a stored price into whole rupees.

    Product documents hold either a number or a display string such as
    "₹1,599". Everything except digits and the decimal point is stripped.
    Fractional rupees round half-up.

    Returns:
        int: The price, or None when it is missing, unparseable or not positive.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float, Decimal)):
        text = str(raw)
    else:
        text = _NON_PRICE_CHARS.sub("", str(raw))
    if not text:
        return None
    try:
        value = Decimal(text)
        if not value.is_finite():
            return None
        value = value.quantize(Decimal(1), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None
    if value <= 0:
        return None
    return int(value)


def _batches(values: List[str], size: int = IN_QUERY_LIMIT) -> Iterable[List[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class PriceResolver:
    """
    Looks up unit prices for cart lines.

    Product ids are not used consistently across the catalog: some documents
    are keyed by their native id, others carry the storefront id in an explicit
    `id` field. Both schemes are queried and every price is indexed under both
    keys.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def resolve(self, items: List[CartItem]) -> List[ResolvedLineItem]:
        """
        Prices every requested line.

        Args:
            items (List[CartItem]): Untrusted cart lines.

        Returns:
            List[ResolvedLineItem]: One priced line per requested line, in order.

        Raises:
            InvalidQuantity: If a quantity is outside [1, 100].
            ProductNotFound: If a product id has no usable price.
            StoreUnavailable: If the store cannot be queried.
        """
        for item in items:
            if not MIN_QUANTITY <= item.quantity <= MAX_QUANTITY:
                raise InvalidQuantity(item.id, item.quantity)

        product_ids = list(dict.fromkeys(item.id for item in items))
        prices, names = self._load_prices(product_ids)

        resolved = []
        for item in items:
            unit_price = prices.get(item.id)
            if unit_price is None:
                log.warning(f"[Pricing] Unknown or unpriced product requested: {item.id}")
                raise ProductNotFound(item.id)
            resolved.append(
                ResolvedLineItem(
                    productId=item.id,
                    quantity=item.quantity,
                    unitPrice=unit_price,
                    lineTotal=unit_price * item.quantity,
                    name=names.get(item.id),
                )
            )
        return resolved

    def _load_prices(self, product_ids: List[str]):
        prices: Dict[str, int] = {}
        names: Dict[str, str] = {}
        for batch in _batches(product_ids):
            documents = self.store.find_in(PRODUCTS_COLLECTION, "id", batch)
            documents += self.store.find_in(PRODUCTS_COLLECTION, DOCUMENT_ID, batch)
            for doc in documents:
                self._index(doc, prices, names)
        return prices, names

    @staticmethod
    def _index(doc: Document, prices: Dict[str, int], names: Dict[str, str]):
        price = parse_price(doc.data.get("price"))
        if price is None:
            log.error(f"[Pricing] Product {doc.id} has no usable price: {doc.data.get('price')!r}")
            return
        keys = [doc.id]
        if doc.data.get("id") is not None:
            keys.append(str(doc.data["id"]))
        name = doc.data.get("name")
        for key in keys:
            prices[key] = price
            if name:
                names[key] = name
