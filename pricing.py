import math
from datetime import datetime
from typing import Dict

from pydantic import BaseModel

from errors import ValidationError

MS_PER_DAY = 24 * 60 * 60 * 1000


class Quote(BaseModel):
    total_days: int
    insurance_cost: float
    total_amount: float


def rental_days(start_date: datetime, end_date: datetime) -> int:
    # ceil to next day if any partial day; at least one day
    duration_ms = (end_date - start_date).total_seconds() * 1000
    return max(1, math.ceil(duration_ms / MS_PER_DAY))


def price(daily_rate: float, start_date: datetime, end_date: datetime, insurance_tier: str,
          insurance_costs: Dict[str, float]) -> Quote:
    """
    totalAmount = dailyRate * totalDays + insuranceCost.
    Pure: call again whenever dates, vehicle or insurance tier change.
    """
    if insurance_tier not in insurance_costs:
        raise ValidationError.single("insurance.type", f"Unknown insurance tier: {insurance_tier}")
    days = rental_days(start_date, end_date)
    insurance_cost = float(insurance_costs[insurance_tier])
    total = round(float(daily_rate) * days + insurance_cost, 2)
    return Quote(total_days=days, insurance_cost=insurance_cost, total_amount=total)
