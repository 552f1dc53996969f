"""Discovery loop and per-drive flashing sessions."""

from multiwrite.hub.service import GAUGE_TEMPLATE, Hub, qualifies
from multiwrite.hub.session import TRANSITIONS, Session, format_progress

__all__ = [
    "GAUGE_TEMPLATE",
    "Hub",
    "Session",
    "TRANSITIONS",
    "format_progress",
    "qualifies",
]
