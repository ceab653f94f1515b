"""Pydantic response models for the notification feed."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class NotificationItem(BaseModel):
    id: int
    type: str
    title: str
    message: str
    data: dict = {}
    delivered: bool
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: list[NotificationItem]
    total: int
    page: int
    per_page: int
