from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel

from ..models.account import DEFAULT_SUBSCRIPTION_CAP
from ..models.subscription import SubscriptionPlan

if TYPE_CHECKING:
    from ..config import Settings


PlanSource = Literal["price_id", "app_key", "default"]


class PlanResolution(BaseModel):
    """Outcome of resolving a subscription to a plan, and which rule matched."""

    plan: Optional[SubscriptionPlan] = None
    source: PlanSource = "default"


class TopUpPack(BaseModel):
    key: str
    name: str
    credits: int
    price: int


DEFAULT_TOPUP_PACKS: List[TopUpPack] = [
    TopUpPack(key="starter", name="Starter Boost", credits=75, price=9),
    TopUpPack(key="builder", name="Builder Pack", credits=270, price=29),
    TopUpPack(key="power", name="Power Pack", credits=980, price=99),
    TopUpPack(key="pro", name="Pro Pack", credits=2500, price=249),
    TopUpPack(key="max", name="Max Pack", credits=5250, price=499),
]


class PlanCatalog:
    """
    Static plan configuration: what each subscription grants monthly and how
    much it contributes to the subscription cap.

    `resolve` is the one ordered lookup used everywhere a subscription has to
    be matched to a plan: exact price id first, then the first plan for the
    app key, then the platform defaults.
    """

    def __init__(
        self,
        plans: Iterable[SubscriptionPlan],
        default_cap: int = DEFAULT_SUBSCRIPTION_CAP,
        default_monthly_credits: int = 300,
        trial_credits: int = 100,
        default_app_key: str = "keywords",
        topup_packs: Iterable[TopUpPack] = DEFAULT_TOPUP_PACKS,
    ) -> None:
        self._plans: List[SubscriptionPlan] = list(plans)
        self.default_cap = default_cap
        self.default_monthly_credits = default_monthly_credits
        self._trial_credits = trial_credits
        self.default_app_key = default_app_key
        self._packs: Dict[str, TopUpPack] = {p.key: p for p in topup_packs}

    @property
    def plans(self) -> List[SubscriptionPlan]:
        return list(self._plans)

    def find_by_price_id(self, price_id: Optional[str]) -> Optional[SubscriptionPlan]:
        if not price_id:
            return None
        return next((p for p in self._plans if p.matches_price(price_id)), None)

    def find_plan(self, app_key: Optional[str], tier: Optional[str] = None) -> Optional[SubscriptionPlan]:
        if not app_key:
            return None
        return next(
            (p for p in self._plans if p.app_key == app_key and (not tier or p.tier == tier)),
            None,
        )

    def resolve(self, app_key: Optional[str], price_id: Optional[str] = None) -> PlanResolution:
        plan = self.find_by_price_id(price_id)
        if plan is not None:
            return PlanResolution(plan=plan, source="price_id")
        plan = self.find_plan(app_key)
        if plan is not None:
            return PlanResolution(plan=plan, source="app_key")
        return PlanResolution()

    def cap_contribution(self, app_key: Optional[str], price_id: Optional[str] = None) -> int:
        plan = self.resolve(app_key, price_id).plan
        return plan.credit_cap if plan else self.default_cap

    def monthly_credits(self, app_key: Optional[str], price_id: Optional[str] = None) -> int:
        plan = self.resolve(app_key, price_id).plan
        return plan.monthly_credits if plan else self.default_monthly_credits

    def trial_credits(self, app_key: Optional[str] = None) -> int:
        # Same grant for every app today
        return self._trial_credits

    def find_topup_pack(self, key: Optional[str]) -> Optional[TopUpPack]:
        return self._packs.get(key) if key else None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PlanCatalog":
        plans = [
            SubscriptionPlan(
                app_key="keywords",
                tier="standard",
                monthly_price=29,
                monthly_credits=300,
                credit_cap=900,
                stripe_price_id_monthly=settings.STRIPE_PRICE_KEYWORDS_MONTHLY or None,
                stripe_price_id_yearly=settings.STRIPE_PRICE_KEYWORDS_YEARLY or None,
            ),
            SubscriptionPlan(
                app_key="labs",
                tier="base_tracker",
                monthly_price=29,
                monthly_credits=300,
                credit_cap=900,
                stripe_price_id_monthly=settings.STRIPE_PRICE_LABS_BASE_MONTHLY or None,
                stripe_price_id_yearly=settings.STRIPE_PRICE_LABS_BASE_YEARLY or None,
            ),
            SubscriptionPlan(
                app_key="labs",
                tier="aeo_consultant",
                monthly_price=79,
                monthly_credits=900,
                credit_cap=2700,
                stripe_price_id_monthly=settings.STRIPE_PRICE_LABS_AEO_MONTHLY or None,
                stripe_price_id_yearly=settings.STRIPE_PRICE_LABS_AEO_YEARLY or None,
            ),
        ]
        return cls(
            plans,
            default_cap=settings.DEFAULT_SUBSCRIPTION_CAP,
            default_monthly_credits=settings.DEFAULT_MONTHLY_CREDITS,
            trial_credits=settings.TRIAL_CREDITS,
            default_app_key=settings.DEFAULT_APP_KEY,
        )
