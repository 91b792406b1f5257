"""Common infra helpers (logger, error handling, feature flags).

Re-exported here so callers can simply do ``from chatdesk.utils import ...``.
"""

from .logger import *  # noqa: F401,F403
from .error_handler import *  # noqa: F401,F403
from .feature_flags import *  # noqa: F401,F403
