"""
Pricing calculations and credit catalog.

Maps image models to credit costs and purchase tiers to credit bundles.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .errors import ValidationError

# Unknown models are charged this many credits per image rather than rejected
DEFAULT_MODEL_COST = 1


@dataclass(frozen=True)
class PricingTier:
    """Purchasable bundle of credits at a fixed price."""
    id: str
    name: str
    credits: int
    price_cents: int
    description: str

    def __post_init__(self):
        """Validate tier values are positive."""
        if self.credits <= 0:
            raise ValueError("credits must be > 0")
        if self.price_cents <= 0:
            raise ValueError("price_cents must be > 0")


@dataclass(frozen=True)
class ModelOptions:
    """Sizes and qualities an image model accepts, with its defaults."""
    sizes: Tuple[str, ...]
    qualities: Tuple[str, ...]
    default_size: str
    default_quality: str


@dataclass(frozen=True)
class PricingTable:
    """Static credit costs per model and purchasable tiers."""
    model_costs: Dict[str, int]
    tiers: Tuple[PricingTier, ...]

    def cost_of(self, model: str) -> int:
        """Credit cost of one image from ``model``.

        Unknown models fall back to DEFAULT_MODEL_COST.
        """
        return self.model_costs.get(model, DEFAULT_MODEL_COST)

    def calculate_cost(self, model: str, unit_count: int) -> int:
        """Total credit cost for ``unit_count`` images from ``model``.

        Raises:
            ValidationError: If unit_count is not a positive integer
        """
        if isinstance(unit_count, bool) or not isinstance(unit_count, int) or unit_count < 1:
            raise ValidationError(f"unit_count must be a positive integer, got {unit_count!r}")
        return self.cost_of(model) * unit_count

    def get_tier(self, tier_id: str) -> PricingTier:
        """Get a purchase tier by id.

        Raises:
            ValidationError: If the tier does not exist
        """
        tier = self.find_tier(tier_id)
        if tier is None:
            raise ValidationError(f"Invalid tier: {tier_id}")
        return tier

    def find_tier(self, tier_id: str) -> Optional[PricingTier]:
        for tier in self.tiers:
            if tier.id == tier_id:
                return tier
        return None


DEFAULT_MODEL_COSTS: Dict[str, int] = {
    "dall-e-2": 1,
    "dall-e-3": 2,
    "gpt-image-1": 3,
    "gpt-image-1-mini": 1,
}

DEFAULT_TIERS: Tuple[PricingTier, ...] = (
    PricingTier(id="starter", name="Starter", credits=10, price_cents=500,
                description="10 images"),
    PricingTier(id="pro", name="Pro", credits=50, price_cents=2000,
                description="50 images (20% off)"),
    PricingTier(id="business", name="Business", credits=200, price_cents=6000,
                description="200 images (40% off)"),
)

MODEL_OPTIONS: Dict[str, ModelOptions] = {
    "dall-e-3": ModelOptions(
        sizes=("1024x1024", "1792x1024", "1024x1792"),
        qualities=("standard", "hd"),
        default_size="1024x1024",
        default_quality="standard",
    ),
    "dall-e-2": ModelOptions(
        sizes=("256x256", "512x512", "1024x1024"),
        qualities=("standard",),
        default_size="1024x1024",
        default_quality="standard",
    ),
    "gpt-image-1": ModelOptions(
        sizes=("1024x1024", "1536x1024", "1024x1536"),
        qualities=("low", "medium", "high", "auto"),
        default_size="1024x1024",
        default_quality="high",
    ),
    "gpt-image-1-mini": ModelOptions(
        sizes=("1024x1024",),
        qualities=("low", "medium", "high", "auto"),
        default_size="1024x1024",
        default_quality="high",
    ),
}

# Fixed pricing table - overridable only through config
PRICING_TABLE = PricingTable(model_costs=dict(DEFAULT_MODEL_COSTS), tiers=DEFAULT_TIERS)
