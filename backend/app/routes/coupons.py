from __future__ import annotations

from fastapi import APIRouter

from ..auth import CurrentUser
from ..schemas.subscriptions import CouponValidationRequest, CouponValidationResult
from ..services import coupon_service

router = APIRouter(prefix="/api", tags=["coupons"])


@router.post("/validate-coupon", response_model=CouponValidationResult)
async def validate_coupon(
    payload: CouponValidationRequest, current: CurrentUser
) -> CouponValidationResult:
    return await coupon_service.validate_coupon(payload.coupon_code)
