"""
Click-to-join correlation strategies.

A join event does not carry the invite code that was used, so the matcher
asks a strategy for an ordered list of candidate clicks and claims the first
one it can.
"""

from abc import ABC, abstractmethod
from typing import List

from src.models.funnel_record import FunnelRecord
from src.repositories.funnel_repository import FunnelRepository


class AttributionStrategy(ABC):
    """Chooses which pending clicks a join may be credited to."""

    name: str = "abstract"

    @abstractmethod
    def candidates(self, funnel: FunnelRepository, server_id: str) -> List[FunnelRecord]:
        """Return claimable clicks in preference order."""
        pass


class MostRecentPendingClick(AttributionStrategy):
    """
    Credit the join to the newest unresolved click on the server.

    Only the most recent `window` clicks are considered. Under concurrent
    click bursts from several affiliates this can credit the wrong one.
    """

    name = "most_recent_pending_click"

    def __init__(self, window: int = 10):
        if window < 1:
            raise ValueError("window must be at least 1")
        self.window = window

    def candidates(self, funnel: FunnelRepository, server_id: str) -> List[FunnelRecord]:
        return funnel.list_pending_clicks(server_id, self.window)
