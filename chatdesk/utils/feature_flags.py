"""
Simple feature flags implementation for chatdesk.
"""
import os
from typing import Dict

__all__ = ["FEATURE_FLAGS", "init_feature_flags", "is_feature_enabled"]

# Defaults; each flag can be overridden with ENABLE_<FLAG_NAME>=true|false.
_DEFAULTS: Dict[str, bool] = {
    # Ask the provider for a short title after the first exchange of an untitled chat.
    "auto_title": True,
    # Charge the system message's own tokens against the context budget.
    "count_system_message": False,
}

# Global feature flags dictionary
FEATURE_FLAGS: Dict[str, bool] = dict(_DEFAULTS)


def init_feature_flags() -> None:
    """Initialize feature flags from environment variables."""
    for flag_name, default in _DEFAULTS.items():
        env_var_name = f"ENABLE_{flag_name.upper()}"
        FEATURE_FLAGS[flag_name] = os.getenv(env_var_name, str(default)).lower() == "true"


def is_feature_enabled(feature_name: str) -> bool:
    """Check if a feature is enabled."""
    return FEATURE_FLAGS.get(feature_name, False)
