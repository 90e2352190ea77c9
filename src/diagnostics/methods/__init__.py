"""
Baseline scoring methods registry and factory.
"""

from .base import BaselineMethod
from .baseline_zscore import BaselineZScoreMethod

# Registry of available methods
METHOD_REGISTRY = {
    "baseline_zscore": BaselineZScoreMethod,
}


def get_method(method_name: str, config: dict | None = None) -> BaselineMethod:
    """Factory to create a baseline scoring method

    Args:
        method_name: Name of the method (e.g., 'baseline_zscore')
        config: Configuration dict for the method

    Returns:
        Instance of the scoring method

    Raises:
        ValueError: If method_name is not registered
    """
    if method_name not in METHOD_REGISTRY:
        available = ", ".join(METHOD_REGISTRY.keys())
        raise ValueError(f"Unknown method '{method_name}'. Available methods: {available}")

    method_class = METHOD_REGISTRY[method_name]
    return method_class(config or {})


def list_methods() -> list[str]:
    """List all available scoring methods"""
    return list(METHOD_REGISTRY.keys())


__all__ = [
    "BaselineMethod",
    "BaselineZScoreMethod",
    "get_method",
    "list_methods",
]
