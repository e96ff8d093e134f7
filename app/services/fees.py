"""Fee calculation.

Cost structure for a service request (all configurable via settings):

1. **Service fee**: flat booking charge paid before the escrow deposit. It unlocks
   the artisan's contact details together with the deposit and is never refunded.

2. **Platform commission**: ``commission_rate`` of the job amount, withheld from the
   artisan's payout when escrowed funds are released.

Rounding policy: every amount is quantized to 0.01 with ROUND_HALF_UP. Multi-part
splits (milestone amounts, per-milestone commission) use largest-remainder allocation
so the parts always add up to their total exactly.

Query GET /fees for the current schedule.
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from app.config import settings

CENT = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CostBreakdown:
    """Itemized cost of a job to the customer and payout to the artisan."""
    job_amount: Decimal
    service_fee: Decimal
    platform_fee: Decimal
    artisan_amount: Decimal
    total_customer_payment: Decimal

    def to_dict(self) -> dict:
        return {
            "job_amount": str(self.job_amount),
            "service_fee": str(self.service_fee),
            "platform_fee": str(self.platform_fee),
            "artisan_amount": str(self.artisan_amount),
            "total_customer_payment": str(self.total_customer_payment),
        }


def calculate_total_cost(
    job_amount: Decimal,
    *,
    commission_rate: Decimal | None = None,
    service_fee: Decimal | None = None,
) -> CostBreakdown:
    """Split a job amount into commission and payout and add the service fee.

    ``platform_fee + artisan_amount == job_amount`` holds exactly because the artisan
    amount is derived by subtraction after rounding the commission.
    """
    job_amount = round_money(Decimal(job_amount))
    if job_amount <= 0:
        raise ValueError("job_amount must be positive")
    rate = settings.commission_rate if commission_rate is None else commission_rate
    fee = settings.service_fee_amount if service_fee is None else service_fee

    platform_fee = round_money(job_amount * rate)
    return CostBreakdown(
        job_amount=job_amount,
        service_fee=round_money(fee),
        platform_fee=platform_fee,
        artisan_amount=job_amount - platform_fee,
        total_customer_payment=round_money(fee) + job_amount,
    )


def allocate(total: Decimal, weights: list[Decimal]) -> list[Decimal]:
    """Split ``total`` proportionally to ``weights`` in whole cents.

    Each share is first rounded down; the leftover cents go one at a time to the
    shares with the largest truncated remainder (earliest index wins ties).
    """
    if not weights:
        return []
    weight_sum = sum(weights, Decimal("0"))
    if weight_sum <= 0:
        raise ValueError("weights must sum to a positive value")

    total = round_money(Decimal(total))
    exact = [total * w / weight_sum for w in weights]
    floors = [e.quantize(CENT, rounding=ROUND_DOWN) for e in exact]
    leftover = int(((total - sum(floors, Decimal("0"))) / CENT).to_integral_value())

    by_remainder = sorted(range(len(weights)), key=lambda i: (-(exact[i] - floors[i]), i))
    for i in by_remainder[:leftover]:
        floors[i] += CENT
    return floors


def get_fee_schedule() -> dict:
    """Return the current fee schedule for display to customers and artisans."""
    example = calculate_total_cost(Decimal("15000"))
    return {
        "currency": settings.currency,
        "service_fee": {
            "amount": str(settings.service_fee_amount),
            "charged_to": "Customer",
            "charged_at": "Before the escrow deposit",
            "refundable": False,
        },
        "platform_commission": {
            "rate_percent": str(settings.commission_rate * 100),
            "charged_to": "Artisan (withheld from the payout)",
            "charged_at": "Escrow or milestone release",
            "rounding": "half-up to 0.01",
        },
        "example": example.to_dict(),
    }
