"""Milestone planner: validate and materialize a job's payment breakdown.

A plan is a list of templates, each naming a slice of the job total by
percentage (and optionally an explicit amount) plus the orders of the milestones
it depends on. A template's order is its 1-based position in the list.
Validation is all-or-nothing: the first failing rule raises
``PlanValidationError`` naming it and nothing is persisted.

Rules, in the order they are checked:

    empty               at least one milestone
    evidence_kind       evidence kinds are known
    percentage          every percentage is positive
    percentage_total    percentages add up to 100 (+/- 0.01)
    amount              explicit amounts are positive
    amount_total        amounts add up to the job total (+/- 0.01)
    milestone_cap       no milestone exceeds the per-milestone cap
    dependency_unknown  every dependency names a milestone in the plan
    dependency_cycle    the dependency graph is acyclic
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from graphlib import CycleError, TopologicalSorter

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import InvalidState, PlanValidationError
from app.models.escrow import EscrowPayment, EscrowStatus
from app.models.milestone import EscrowMilestone, EvidenceKind, MilestoneStatus
from app.services.fees import allocate, round_money

logger = logging.getLogger(__name__)

EPSILON = Decimal("0.01")
DEFAULT_EVIDENCE = ["photos", "description"]
# Milestones this large need the customer's explicit sign-off
APPROVAL_THRESHOLD = Decimal("30")


@dataclass
class MilestoneTemplate:
    title: str
    percentage: Decimal
    amount: Decimal | None = None
    description: str | None = None
    # Orders of prerequisite milestones. None means "the previous milestone".
    dependencies: list[int] | None = None
    evidence_required: list[str] | None = None
    approval_required: bool | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "MilestoneTemplate":
        amount = data.get("amount")
        return cls(
            title=data["title"],
            percentage=Decimal(str(data["percentage"])),
            amount=Decimal(str(amount)) if amount is not None else None,
            description=data.get("description"),
            dependencies=data.get("dependencies"),
            evidence_required=data.get("evidence_required"),
            approval_required=data.get("approval_required"),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["percentage"] = str(self.percentage)
        data["amount"] = str(self.amount) if self.amount is not None else None
        return data


@dataclass
class PlannedMilestone:
    order: int
    title: str
    amount: Decimal
    percentage: Decimal
    status: MilestoneStatus
    dependencies: list[int] = field(default_factory=list)
    evidence_required: list[str] = field(default_factory=list)
    approval_required: bool = True
    description: str | None = None


def _resolve_dependencies(templates: list[MilestoneTemplate]) -> list[list[int]]:
    deps = []
    for i, t in enumerate(templates, start=1):
        if t.dependencies is None:
            deps.append([i - 1] if i > 1 else [])
        else:
            deps.append(sorted(set(t.dependencies)))
    return deps


def _resolve_amounts(job_total: Decimal, templates: list[MilestoneTemplate]) -> list[Decimal]:
    given = [t.amount for t in templates]
    if all(a is None for a in given):
        return allocate(job_total, [t.percentage for t in templates])

    for t in templates:
        if t.amount is not None and t.amount <= 0:
            raise PlanValidationError(
                "amount", f"Milestone '{t.title}' must have a positive amount"
            )
    missing = [i for i, a in enumerate(given) if a is None]
    amounts = [round_money(a) if a is not None else None for a in given]
    if missing:
        remaining = job_total - sum((a for a in amounts if a is not None), Decimal("0"))
        if remaining <= 0:
            raise PlanValidationError(
                "amount_total",
                f"Explicit amounts leave nothing for {len(missing)} remaining milestone(s)",
            )
        shares = allocate(remaining, [templates[i].percentage for i in missing])
        for i, share in zip(missing, shares):
            amounts[i] = share
    return amounts


def create_plan(
    job_total: Decimal,
    templates: list[MilestoneTemplate],
    *,
    max_milestone_amount: Decimal | None = None,
) -> list[PlannedMilestone]:
    """Validate ``templates`` against ``job_total`` and lay out the milestones.

    Orders follow list position. Amounts within the tolerance of the job total are
    accepted, with the last milestone absorbing the residual so the persisted
    amounts always add up exactly.
    """
    job_total = round_money(Decimal(job_total))
    cap = settings.max_milestone_amount if max_milestone_amount is None else max_milestone_amount

    if not templates:
        raise PlanValidationError("empty", "A milestone plan needs at least one milestone")
    n = len(templates)

    known_kinds = {k.value for k in EvidenceKind}
    for t in templates:
        unknown = set(t.evidence_required or []) - known_kinds
        if unknown:
            raise PlanValidationError(
                "evidence_kind",
                f"Unknown evidence kind(s) for '{t.title}': {', '.join(sorted(unknown))}",
            )

    for t in templates:
        if t.percentage <= 0:
            raise PlanValidationError(
                "percentage", f"Milestone '{t.title}' must have a positive percentage"
            )
    total_pct = sum((t.percentage for t in templates), Decimal("0"))
    if abs(total_pct - 100) > EPSILON:
        raise PlanValidationError(
            "percentage_total",
            f"Milestone percentages must total 100%, got {total_pct}%",
            total=str(total_pct),
        )

    amounts = _resolve_amounts(job_total, templates)
    total_amount = sum(amounts, Decimal("0"))
    if abs(total_amount - job_total) > EPSILON:
        raise PlanValidationError(
            "amount_total",
            f"Milestone amounts total {total_amount}, expected {job_total}",
            total=str(total_amount),
        )
    amounts[-1] += job_total - total_amount

    for t, amount in zip(templates, amounts):
        if amount > cap:
            raise PlanValidationError(
                "milestone_cap",
                f"Milestone '{t.title}' exceeds maximum amount of {cap}",
                cap=str(cap),
            )

    deps = _resolve_dependencies(templates)
    for i, dep_orders in enumerate(deps, start=1):
        dangling = [d for d in dep_orders if not 1 <= d <= n]
        if dangling:
            raise PlanValidationError(
                "dependency_unknown",
                f"Milestone {i} depends on unknown milestone(s) {dangling}",
            )
    try:
        TopologicalSorter({i: d for i, d in enumerate(deps, start=1)}).prepare()
    except CycleError as e:
        raise PlanValidationError(
            "dependency_cycle",
            f"Milestone dependencies form a cycle: {e.args[1]}",
        ) from e

    plan = []
    for i, (t, amount, dep_orders) in enumerate(zip(templates, amounts, deps), start=1):
        plan.append(PlannedMilestone(
            order=i,
            title=t.title,
            description=t.description,
            amount=amount,
            percentage=round_money(t.percentage),
            status=(
                MilestoneStatus.READY if i == 1 and not dep_orders else MilestoneStatus.PENDING
            ),
            dependencies=dep_orders,
            evidence_required=list(
                t.evidence_required if t.evidence_required is not None else DEFAULT_EVIDENCE
            ),
            approval_required=(
                t.approval_required if t.approval_required is not None
                else t.percentage >= APPROVAL_THRESHOLD
            ),
        ))
    return plan


async def materialize_plan(
    db: AsyncSession,
    escrow: EscrowPayment,
    templates: list[MilestoneTemplate] | list[dict],
) -> list[EscrowMilestone]:
    """Persist the plan for an escrowed escrow. Runs once per escrow. Does not commit.

    Each milestone is also given its share of the escrow's platform fee, allocated
    so the shares add up to the fee exactly.
    """
    if escrow.status != EscrowStatus.ESCROWED:
        raise InvalidState(
            f"Milestones are created once funds are escrowed, currently {escrow.status.value}",
        )
    existing = await db.scalar(
        select(func.count()).select_from(EscrowMilestone)
        .where(EscrowMilestone.escrow_id == escrow.escrow_id)
    )
    if existing:
        raise InvalidState("Escrow already has a milestone plan")

    parsed = [t if isinstance(t, MilestoneTemplate) else MilestoneTemplate.from_dict(t)
              for t in templates]
    plan = create_plan(escrow.total_amount, parsed)
    commissions = allocate(escrow.platform_fee, [p.amount for p in plan])

    ids = {p.order: uuid.uuid4() for p in plan}
    milestones = []
    for p, commission in zip(plan, commissions):
        m = EscrowMilestone(
            milestone_id=ids[p.order],
            escrow_id=escrow.escrow_id,
            order=p.order,
            title=p.title,
            description=p.description,
            amount=p.amount,
            percentage=p.percentage,
            commission=commission,
            status=p.status,
            dependencies=[str(ids[d]) for d in p.dependencies],
            evidence_required=p.evidence_required,
            approval_required=p.approval_required,
        )
        db.add(m)
        milestones.append(m)
    await db.flush()
    logger.info("Escrow %s: created %d milestones", escrow.escrow_id, len(milestones))
    return milestones


_RECOMMENDED: dict[str, list[tuple[str, str, int, list[str] | None]]] = {
    "plumbing": [
        ("Material Purchase & Setup", "Purchase materials and prepare work area", 30,
         ["photos", "documents"]),
        ("Main Installation Work", "Complete primary plumbing installation", 50,
         ["photos", "description"]),
        ("Testing & Cleanup", "Test system and clean work area", 20,
         ["photos", "customer_approval"]),
    ],
    "electrical": [
        ("Planning & Materials", "Electrical planning and material acquisition", 25, None),
        ("Rough-in Work", "Install wiring and rough electrical components", 40, None),
        ("Finish & Testing", "Install fixtures and test all connections", 35, None),
    ],
    "construction": [
        ("Foundation & Materials", "Site preparation and material delivery", 20, None),
        ("Structural Work", "Main construction phase", 50, None),
        ("Finishing Work", "Finishing touches and final inspection", 30, None),
    ],
    "default": [
        ("Project Start", "Initial work and material preparation", 40, None),
        ("Project Completion", "Complete work and final delivery", 60, None),
    ],
}


def recommend_templates(job_type: str | None) -> list[MilestoneTemplate]:
    """Suggested breakdown for a job category. Unknown categories get the default."""
    rows = _RECOMMENDED.get((job_type or "").lower(), _RECOMMENDED["default"])
    return [
        MilestoneTemplate(
            title=title,
            description=description,
            percentage=Decimal(pct),
            evidence_required=list(evidence) if evidence else list(DEFAULT_EVIDENCE),
            approval_required=pct >= APPROVAL_THRESHOLD,
        )
        for title, description, pct, evidence in rows
    ]
