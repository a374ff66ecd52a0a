"""
Remote classifier client for a matching service.

Provides the same interface as the Gemini backend but calls a remote
classifier service via HTTP.
"""

from typing import Any

import httpx

from order_sync.config import settings
from order_sync.core.exceptions import ClassificationUnavailable
from order_sync.core.logging import get_logger
from order_sync.core.models import CorrectionExample, Message, OrderSummary
from order_sync.classifiers.base import BaseClassifier

log = get_logger(__name__)


class RemoteClassifierClient(BaseClassifier):
    """HTTP client for the remote classifier service."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url or settings.classifier_service_url
        self.timeout = timeout or settings.classifier_timeout_seconds
        self._client = httpx.Client(timeout=self.timeout, transport=transport)

    def match(
        self,
        messages: list[Message],
        open_orders: list[OrderSummary],
        corrections: list[CorrectionExample],
    ) -> Any:
        """
        Match a batch using the remote classifier service.

        Returns:
            The service's `results` list
        """
        payload = {
            "emails": [
                {
                    "message_id": message.provider_message_id,
                    "from_email": message.sender_email,
                    "from_name": message.sender_name,
                    "to_email": message.recipient_email,
                    "subject": message.subject,
                    "date": message.message_date.isoformat() if message.message_date else None,
                    "has_attachment": message.has_attachment,
                    "body": (message.body or "")[:settings.prompt_body_cap],
                }
                for message in messages
            ],
            "orders": [order.to_prompt_dict() for order in open_orders],
            "corrections": [
                {
                    "subject": example.subject,
                    "from_email": example.sender_email,
                    "order_id": example.order_id,
                }
                for example in corrections
            ],
        }

        try:
            response = self._client.post(
                f"{self.base_url}/match",
                json=payload,
            )
            response.raise_for_status()
            data = response.json()

        except httpx.HTTPStatusError as e:
            log.error(
                "classifier_http_error",
                status=e.response.status_code,
                error=str(e),
            )
            raise ClassificationUnavailable(f"Classifier service error: {e}") from e

        except httpx.RequestError as e:
            log.error("classifier_request_error", error=str(e))
            raise ClassificationUnavailable(f"Failed to reach classifier service: {e}") from e

        except ValueError as e:
            log.error("classifier_invalid_json", error=str(e))
            raise ClassificationUnavailable(f"Malformed classifier output: {e}") from e

        if not isinstance(data, dict):
            raise ClassificationUnavailable("Malformed classifier output: expected an object")

        # Check for error in response
        if data.get("error"):
            error = data["error"]
            log.warning("classifier_returned_error", error=error)
            raise ClassificationUnavailable(f"Classifier error: {error}")

        results = data.get("results")
        log.info(
            "remote_match_success",
            messages=len(messages),
            verdicts=len(results) if isinstance(results, list) else None,
        )
        return results

    def health_check(self) -> bool:
        """Check if the classifier service is healthy."""
        try:
            response = self._client.get(f"{self.base_url}/health")
            response.raise_for_status()
            return response.json().get("status") == "healthy"
        except (httpx.HTTPError, ValueError) as e:
            log.warning("classifier_health_check_failed", error=str(e))
            return False

    def close(self):
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
