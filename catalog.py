"""Read-only access to the rent plan catalog.

Plans are authored elsewhere; this module only reads them.  Every call is
a fresh query.
"""

from models import RentPlan, RentSlab, PlanType, db
from errors import NotFoundError, ValidationError


def parse_plan_type(value) -> PlanType:
    try:
        return PlanType(value)
    except ValueError:
        raise ValidationError(f"Invalid plan type {value!r}. Must be weekly or daily") from None


def list_plans(plan_type) -> list:
    """Return plans offering at least one slab of ``plan_type``, ordered by id."""
    plan_type = parse_plan_type(plan_type)
    return (RentPlan.query
            .filter(RentPlan.slabs.any(RentSlab.plan_type == plan_type.value))
            .order_by(RentPlan.id.asc())
            .all())


def get_plan(plan_id: int) -> RentPlan:
    plan = db.session.get(RentPlan, plan_id)
    if plan is None:
        raise NotFoundError(f'Rent plan {plan_id} not found')
    return plan


def find_slab(plan: RentPlan, plan_type, position: int) -> dict:
    """Return a copy of the ``position``-th slab of the given type."""
    kind = parse_plan_type(plan_type)
    slabs = plan.slabs_of(kind)
    if position < 0 or position >= len(slabs):
        raise NotFoundError(f'Plan {plan.id} has no {kind.value} slab at position {position}')
    return slabs[position].to_dict()
