"""Pydantic schemas for orders and driver locations.

Learn: Only request bodies are modelled. Responses are plain dicts shaped
like the frames clients already parse (camelCase keys), so a polled
status and a pushed status_update read the same way.
"""

from typing import Optional

from pydantic import BaseModel, Field


# ─── Orders ──────────────────────────────────────────────

class OrderItemIn(BaseModel):
    menu_item_id: int
    quantity: int = Field(..., ge=1, le=100)


class OrderCreate(BaseModel):
    restaurant_id: int
    items: list[OrderItemIn] = Field(..., min_length=1)
    delivery_address: str = Field(..., min_length=1)
    special_instructions: Optional[str] = None


class OrderStatusChange(BaseModel):
    """Restaurant or driver moving an order along. Checked by the lifecycle."""
    status: str = Field(..., pattern=r"^(confirmed|preparing|ready|picked_up|delivered|cancelled)$")
    estimated_time: Optional[str] = None


# ─── Driver location ─────────────────────────────────────

class LocationUpdate(BaseModel):
    order_id: int
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
