"""
Plan Catalog Resolver.

Plans live in the plans table as one ``PLAN#<plan_id>`` item plus one
``PRICE#<price_id>`` lookup item per currency. Lookups by name go through the
``name-index`` GSI on the lower-cased name.
"""

import logging
from typing import Dict, Optional

from boto3.dynamodb.conditions import Key

from shared.aws_clients import get_dynamodb
from shared.constants import PLANS_TABLE
from shared.models import Plan, ResolvedPrice

logger = logging.getLogger(__name__)

PLAN_SK = "PLAN"
PRICE_SK = "PRICE"


def _plan_pk(plan_id: str) -> str:
    return f"PLAN#{plan_id}"


def _price_pk(price_id: str) -> str:
    return f"PRICE#{price_id}"


class PlanCatalog:
    """Read-mostly access to plans, cached per instance."""

    def __init__(self, table=None):
        self._table = table
        self._plans: Dict[str, Optional[Plan]] = {}
        self._prices: Dict[str, Optional[ResolvedPrice]] = {}

    @property
    def table(self):
        if self._table is None:
            self._table = get_dynamodb().Table(PLANS_TABLE)
        return self._table

    def get_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        if plan_id not in self._plans:
            item = self.table.get_item(Key={"pk": _plan_pk(plan_id), "sk": PLAN_SK}).get("Item")
            self._plans[plan_id] = Plan.from_item(item) if item else None
        return self._plans[plan_id]

    def find_by_name(self, name: Optional[str]) -> Optional[Plan]:
        """Case-insensitive plan lookup by display name."""
        if not name or not name.strip():
            return None
        response = self.table.query(
            IndexName="name-index",
            KeyConditionExpression=Key("name_key").eq(name.strip().lower()),
            Limit=1,
        )
        items = response.get("Items", [])
        if not items:
            return None
        plan = Plan.from_item(items[0])
        self._plans[plan.plan_id] = plan
        return plan

    def resolve_price(self, price_id: Optional[str]) -> Optional[ResolvedPrice]:
        """Map a Stripe price id to its plan and currency, or None if unknown."""
        if not price_id:
            return None
        if price_id in self._prices:
            return self._prices[price_id]

        resolved = None
        item = self.table.get_item(Key={"pk": _price_pk(price_id), "sk": PRICE_SK}).get("Item")
        if item:
            plan = self.get_plan(item["plan_id"])
            if plan:
                resolved = ResolvedPrice(price_id=price_id, plan=plan, currency=item["currency"].upper())
            else:
                logger.warning(f"Price {price_id} points at missing plan {item['plan_id']}")
        else:
            logger.warning(f"Unknown Stripe price id: {price_id}")

        self._prices[price_id] = resolved
        return resolved

    def put_plan(self, plan: Plan) -> None:
        """Write a plan and its price lookup items."""
        plan_item = {
            "pk": _plan_pk(plan.plan_id),
            "sk": PLAN_SK,
            "plan_id": plan.plan_id,
            "name": plan.name,
            "name_key": plan.name.lower(),
            "monthly_limit": plan.monthly_limit,
            "limits": dict(plan.limits),
            "prices": dict(plan.prices),
        }
        if plan.price_display:
            plan_item["price_display"] = dict(plan.price_display)

        with self.table.batch_writer() as batch:
            batch.put_item(Item=plan_item)
            for currency, price_id in plan.prices.items():
                batch.put_item(
                    Item={
                        "pk": _price_pk(price_id),
                        "sk": PRICE_SK,
                        "plan_id": plan.plan_id,
                        "currency": currency.upper(),
                    }
                )

        self._plans.pop(plan.plan_id, None)
        self._prices.clear()
        logger.info(f"Stored plan {plan.plan_id} ({plan.name}) with {len(plan.prices)} prices")
