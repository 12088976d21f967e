"""
Cálculo de períodos de facturación y de intervalos de resurtido.
"""
from datetime import datetime, timedelta
from typing import Optional
import re

from dateutil.relativedelta import relativedelta

# 1 vial = mensual, 3 viales = trimestral, 6 viales = semestral
VIAL_TO_INTERVAL_DAYS = {
    1: 30,
    3: 90,
    6: 180,
}
DEFAULT_VIAL_COUNT = 1
DEFAULT_REFILL_INTERVAL_DAYS = 30


def calculate_period_end(start: datetime, interval: str, interval_count: int = 1) -> datetime:
    """
    Fin del período que empieza en `start`.

    month -> +interval_count meses, quarter -> +3 meses, semiannual -> +6 meses,
    year -> +1 año. Si el día no existe en el mes destino se usa el último día
    de ese mes (31 ene + 3 meses = 30 abr; 29 feb + 1 año = 28 feb).
    """
    if interval == "year":
        delta = relativedelta(years=1)
    elif interval == "semiannual":
        delta = relativedelta(months=6)
    elif interval == "quarter":
        delta = relativedelta(months=3)
    else:
        delta = relativedelta(months=interval_count or 1)
    return start + delta


def calculate_interval_days(vial_count: int) -> int:
    return VIAL_TO_INTERVAL_DAYS.get(vial_count, DEFAULT_REFILL_INTERVAL_DAYS)


def calculate_next_refill_date(from_date: datetime, interval_days: int) -> datetime:
    return from_date + timedelta(days=interval_days)


def plan_tag(plan_name: str) -> str:
    """'Semaglutide Monthly' -> 'subscription-semaglutide-monthly'"""
    return "subscription-" + re.sub(r"\s+", "-", plan_name.strip().lower())


def extract_medication_name(plan_name: Optional[str]) -> Optional[str]:
    """Nombre del medicamento a partir del nombre del plan, si se reconoce."""
    if not plan_name:
        return None
    lower = plan_name.lower()
    if "semaglutide" in lower:
        return "Semaglutide"
    if "tirzepatide" in lower:
        return "Tirzepatide"
    return None
