"""
membership/models/usage.py

Usage counter for a metered capability within one period.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UsageCounter(BaseModel):
    """
    Consumed quantity for (user, feature, period_key).

    Period keys:
    - p-YYYYMMDDTHHMMSS: billing period starting at that instant
    - YYYY-MM: calendar month (no billing period)
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    feature: str
    period_key: str
    consumed: int = 0
    updated_at: Optional[datetime] = None
