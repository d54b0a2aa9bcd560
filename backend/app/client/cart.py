from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from ..schemas.subscriptions import CamelModel, CouponValidationResult

logger = logging.getLogger(__name__)


class CartItem(CamelModel):
    service_id: int
    name: str
    price: int = 0
    is_pending_payment: bool = False
    pending_subscription_id: Optional[str] = None


class CartStorage(Protocol):
    def load(self) -> Optional[dict[str, Any]]: ...

    def save(self, data: dict[str, Any]) -> None: ...


class MemoryCartStorage:
    def __init__(self, data: Optional[dict[str, Any]] = None) -> None:
        self.data = data

    def load(self) -> Optional[dict[str, Any]]:
        return self.data

    def save(self, data: dict[str, Any]) -> None:
        self.data = data


class JsonFileCartStorage:
    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> Optional[dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read cart from %s: %s", self.path, exc)
            return None

    def save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")


def format_cents(amount: int) -> str:
    return f"${amount / 100:.2f}"


class CartStore:
    """Explicit cart state: loaded from storage once, persisted after every change."""

    def __init__(self, storage: Optional[CartStorage] = None) -> None:
        self._storage = storage or MemoryCartStorage()
        self._items: list[CartItem] = []
        self.coupon_code: str = ""
        self.coupon_data: Optional[CouponValidationResult] = None
        self._load()

    def _load(self) -> None:
        stored = self._storage.load() or {}
        try:
            self._items = [CartItem.model_validate(raw) for raw in stored.get("items", [])]
            coupon = stored.get("coupon")
            self.coupon_data = (
                CouponValidationResult.model_validate(coupon) if coupon else None
            )
        except ValidationError as exc:
            logger.warning("Discarding unreadable stored cart: %s", exc)
            self._items = []
            self.coupon_data = None
        self.coupon_code = stored.get("couponCode") or ""

    def _persist(self) -> None:
        self._storage.save(
            {
                "items": [item.model_dump(by_alias=True) for item in self._items],
                "couponCode": self.coupon_code,
                "coupon": self.coupon_data.model_dump(by_alias=True)
                if self.coupon_data
                else None,
            }
        )

    @property
    def items(self) -> list[CartItem]:
        return list(self._items)

    @property
    def item_count(self) -> int:
        return len(self._items)

    @property
    def total_price(self) -> int:
        return sum(item.price for item in self._items)

    @property
    def discount_amount(self) -> int:
        if not self.coupon_code or self.coupon_data is None:
            return 0
        total = self.total_price
        if self.coupon_data.percent_off:
            return round(total * self.coupon_data.percent_off / 100)
        if self.coupon_data.amount_off:
            return min(self.coupon_data.amount_off, total)
        return 0

    @property
    def final_price(self) -> int:
        return self.total_price - self.discount_amount

    def is_in_cart(self, service_id: int) -> bool:
        return any(item.service_id == service_id for item in self._items)

    def add_item(self, item: CartItem) -> bool:
        if self.is_in_cart(item.service_id):
            return False
        self._items.append(item)
        self._persist()
        return True

    def remove_item(self, service_id: int) -> None:
        self._items = [item for item in self._items if item.service_id != service_id]
        self._persist()

    def clear_cart(self) -> None:
        self._items = []
        self.coupon_code = ""
        self.coupon_data = None
        self._persist()

    def set_coupon(self, code: str, data: Optional[CouponValidationResult] = None) -> None:
        self.coupon_code = code.strip().upper()
        self.coupon_data = data if self.coupon_code else None
        self._persist()

    def mark_pending(self, service_id: int, subscription_id: str) -> None:
        """Flag an item whose subscription awaits payment so checkout retries it."""
        for index, item in enumerate(self._items):
            if item.service_id == service_id:
                self._items[index] = item.model_copy(
                    update={
                        "is_pending_payment": True,
                        "pending_subscription_id": subscription_id,
                    }
                )
        self._persist()

    def keep_only(self, service_ids: set[int]) -> None:
        self._items = [item for item in self._items if item.service_id in service_ids]
        self._persist()


__all__ = [
    "CartItem",
    "CartStorage",
    "CartStore",
    "JsonFileCartStorage",
    "MemoryCartStorage",
    "format_cents",
]
