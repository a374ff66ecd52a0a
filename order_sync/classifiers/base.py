"""
Abstract base class for order matching backends.
"""

from abc import ABC, abstractmethod
from typing import Any

from order_sync.core.models import CorrectionExample, Message, OrderSummary


class BaseClassifier(ABC):
    """Abstract matching backend."""

    @abstractmethod
    def match(
        self,
        messages: list[Message],
        open_orders: list[OrderSummary],
        corrections: list[CorrectionExample],
    ) -> Any:
        """
        Match a batch of messages against open orders.

        Args:
            messages: Messages to classify, in batch order
            open_orders: Orders that can still advance
            corrections: Recent manual links, used as examples

        Returns:
            Decoded backend output, expected to be a list of verdict dicts
            with message_id, matched_order_id, detected_stage and summary

        Raises:
            ClassificationUnavailable: backend unreachable or failed
        """
        pass
