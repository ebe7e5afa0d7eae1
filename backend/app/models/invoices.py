from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


PaymentStatus = Literal["pending", "confirmed", "failed"]

# 网关回调里表示“已支付”的状态值（兼容不同网关/历史前端）
CONFIRMED_GATEWAY_STATUSES = frozenset({"confirmed", "success", "paid"})


class PublicationCharges(BaseModel):
    """版面费（由页数确定性计算，永不为负）"""

    base_amount: int = Field(0, ge=0)
    extra_pages: int = Field(0, ge=0)
    total_amount: int = Field(0, ge=0)
    is_paid: bool = False


class PaymentEntry(BaseModel):
    """
    支付记录

    中文注释:
    - payment_id 存网关的 order id（创建订单时生成）。
    - 非 pending 的记录视为不可变，只允许 pending -> confirmed/failed 一次。
    """

    payment_id: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0)
    currency: str = "INR"
    timestamp: datetime
    status: PaymentStatus = "pending"
    metadata: dict[str, Any] = Field(default_factory=dict)


def compute_publication_charges(
    pages: int | None,
    *,
    base_amount: int = 5,
    free_pages: int = 6,
    per_extra_page: int = 10,
) -> PublicationCharges:
    """
    版面费规则：base + max(0, pages - free_pages) * per_extra_page。

    >>> compute_publication_charges(10).total_amount
    45
    """
    try:
        page_count = int(pages or 0)
    except (TypeError, ValueError):
        page_count = 0
    extra_pages = max(0, page_count - max(0, free_pages))
    base = max(0, base_amount)
    return PublicationCharges(
        base_amount=base,
        extra_pages=extra_pages,
        total_amount=base + extra_pages * max(0, per_extra_page),
        is_paid=False,
    )
