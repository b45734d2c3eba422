"""Credit cost lookup."""

from typing import Any, Dict, List, Mapping, Optional

from studio_jobs.config import DEFAULT_CREDIT_COSTS

DEFAULT_MODEL_COST = 5


class CreditCostTable:
    """Maps (model, turbo, resolution) to an integer credit cost.

    The table is the ``credit_costs`` entry of ``system_config``; missing keys
    fall back to the built-in defaults.
    """

    def __init__(self, costs: Optional[Mapping[str, Any]] = None):
        merged = dict(DEFAULT_CREDIT_COSTS)
        for key, value in (costs or {}).items():
            merged[key] = int(value)
        self.costs: Dict[str, int] = merged

    def unit_cost(self, model: Optional[str], turbo: bool = False, image_size: Optional[str] = None) -> int:
        if turbo:
            size = (image_size or "1K").strip().lower()
            return self.costs.get(f"turbo-{size}", self.costs["turbo-4k"])
        if model is None:
            return DEFAULT_MODEL_COST
        return self.costs.get(model, DEFAULT_MODEL_COST)

    def compute_cost(
        self,
        model: Optional[str],
        turbo: bool = False,
        image_size: Optional[str] = None,
        unit_count: int = 1,
    ) -> int:
        """Total cost of ``unit_count`` images at the given settings."""
        if unit_count < 0:
            raise ValueError("unit_count must not be negative")
        return self.unit_cost(model, turbo, image_size) * unit_count

    def to_dict(self) -> Dict[str, int]:
        return dict(self.costs)


def clamp_int(value: Any, low: int, high: int, fallback: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return max(low, min(high, number))


def non_empty_strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def style_replicate_image_size(image_size: Optional[str]) -> str:
    # Style replication never renders below 2K.
    size = (image_size or "2K").upper()
    return "2K" if size == "1K" else size
