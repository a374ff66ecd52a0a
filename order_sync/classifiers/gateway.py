"""
Classifier gateway: one batch call per cycle, normalized verdicts out.

The gateway owns the contract with the engine: exactly one verdict per
input message in input order, terminal orders never shown to the backend,
and any backend failure surfaced as ClassificationUnavailable.
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any

from order_sync.config import settings
from order_sync.core.exceptions import ClassificationUnavailable
from order_sync.core.logging import get_logger
from order_sync.core.models import CorrectionExample, MatchVerdict, Message, OrderSummary
from order_sync.core.stages import is_terminal
from order_sync.classifiers.base import BaseClassifier

log = get_logger(__name__)


class ClassifierGateway:
    """Bounded, normalizing wrapper around a matching backend."""

    def __init__(self, backend: BaseClassifier, timeout: float | None = None):
        self.backend = backend
        self.timeout = timeout or settings.classifier_timeout_seconds

    def classify(
        self,
        messages: list[Message],
        open_orders: list[OrderSummary],
        corrections: list[CorrectionExample] | None = None,
    ) -> list[MatchVerdict]:
        """
        Classify a batch of messages.

        Raises:
            ClassificationUnavailable: backend failed, timed out, or
                returned something other than a list of verdicts
        """
        if not messages:
            return []

        orders = [order for order in open_orders if not is_terminal(order.current_stage)]
        raw = self._call_backend(messages, orders, corrections or [])

        if not isinstance(raw, list):
            log.error("classifier_malformed_output", output_type=type(raw).__name__)
            raise ClassificationUnavailable("Malformed classifier output: expected a list")

        return self._normalize(messages, raw)

    def _call_backend(
        self,
        messages: list[Message],
        orders: list[OrderSummary],
        corrections: list[CorrectionExample],
    ) -> Any:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="classifier")
        try:
            future = executor.submit(self.backend.match, messages, orders, corrections)
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            log.error("classifier_timeout", timeout=self.timeout, messages=len(messages))
            raise ClassificationUnavailable(
                f"Classifier did not answer within {self.timeout}s"
            ) from e
        finally:
            executor.shutdown(wait=False)

    def _normalize(self, messages: list[Message], raw: list[Any]) -> list[MatchVerdict]:
        known_ids = {message.provider_message_id for message in messages}
        by_id: dict[str, MatchVerdict] = {}

        for item in raw:
            if not isinstance(item, dict):
                log.warning("classifier_item_skipped", item_type=type(item).__name__)
                continue
            verdict = MatchVerdict.from_dict(item)
            if verdict.provider_message_id not in known_ids:
                log.warning("classifier_unknown_message_id", message_id=verdict.provider_message_id)
                continue
            # First verdict for an id wins
            by_id.setdefault(verdict.provider_message_id, verdict)

        missing = len(known_ids) - len(by_id)
        if missing:
            log.warning("classifier_verdicts_missing", count=missing)

        return [
            by_id.get(message.provider_message_id) or MatchVerdict.empty(message.provider_message_id)
            for message in messages
        ]
