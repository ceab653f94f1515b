"""Pydantic models for reward catalog and redemption endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


# --- Catalog ---


class RewardResponse(BaseModel):
    id: int
    name: str
    description: str
    category: str
    point_cost: int
    stock_quantity: int | None = None
    available_quantity: int | None = None
    min_level: int
    max_redemptions_per_student: int | None = None
    fulfillment_type: str
    is_active: bool


class RewardListResponse(BaseModel):
    rewards: list[RewardResponse]


class RewardCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str = ""
    category: str = "general"
    point_cost: int = Field(gt=0)
    stock_quantity: int | None = Field(default=None, ge=0)
    min_level: int = Field(default=1, ge=1)
    max_redemptions_per_student: int | None = Field(default=None, gt=0)
    fulfillment_type: str = "manual"
    display_order: int = 0


# --- Redemptions ---


class RedeemRequest(BaseModel):
    student_id: int = Field(gt=0)
    reward_id: int = Field(gt=0)
    quantity: int = Field(default=1, ge=1, le=100)
    request_key: str | None = Field(default=None, max_length=128)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=256)


class ApproveRequest(BaseModel):
    approved_by: str | None = Field(default=None, max_length=64)


class FulfillRequest(BaseModel):
    fulfillment_notes: str | None = None
    tracking_number: str | None = Field(default=None, max_length=64)


class RedemptionResponse(BaseModel):
    id: int
    student_id: int
    reward_id: int
    quantity: int
    points_spent: int
    status: str
    spend_entry_id: int | None = None
    refund_entry_id: int | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    fulfilled_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    fulfillment_notes: str | None = None
    tracking_number: str | None = None
    created_at: datetime


class RedemptionListResponse(BaseModel):
    redemptions: list[RedemptionResponse]
