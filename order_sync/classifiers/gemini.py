"""
Gemini AI matching backend.
"""

import json
from typing import Any

from google import genai

from order_sync.config import settings
from order_sync.core.exceptions import ClassificationUnavailable
from order_sync.core.logging import get_logger
from order_sync.core.models import CorrectionExample, Message, OrderSummary
from order_sync.core.stages import stage_triggers_text
from order_sync.classifiers.base import BaseClassifier
from order_sync.classifiers.prompts import matching as matching_prompts

log = get_logger(__name__)


def build_prompt(
    messages: list[Message],
    open_orders: list[OrderSummary],
    corrections: list[CorrectionExample],
    body_cap: int | None = None,
) -> str:
    """Format the batch matching prompt."""
    body_cap = body_cap or settings.prompt_body_cap

    emails = []
    for index, message in enumerate(messages, start=1):
        is_outgoing = settings.is_own_email(message.sender_email)
        emails.append(matching_prompts.EMAIL_BLOCK.format(
            index=index,
            message_id=message.provider_message_id,
            direction="SENT BY Ganesh International" if is_outgoing else "RECEIVED",
            sender_name=message.sender_name,
            sender_email=message.sender_email,
            recipient=message.recipient,
            subject=message.subject,
            date=message.message_date.isoformat() if message.message_date else "",
            has_attachment=message.has_attachment,
            body_cap=body_cap,
            body=(message.body or "")[:body_cap],
        ))

    corrections_text = ""
    if corrections:
        lines = []
        for example in corrections:
            order_label = example.order_id
            if example.company or example.product:
                order_label = f"{example.order_id} ({example.company} - {example.product})"
            lines.append(matching_prompts.CORRECTION_LINE.format(
                sender_email=example.sender_email,
                subject=example.subject,
                order_label=order_label,
            ))
        corrections_text = matching_prompts.CORRECTIONS_HEADER.format(examples="\n".join(lines))

    return matching_prompts.PROMPT.format(
        orders=json.dumps([order.to_prompt_dict() for order in open_orders], indent=2),
        stage_triggers=stage_triggers_text(),
        corrections=corrections_text,
        emails="\n".join(emails),
        count=len(messages),
    )


class GeminiClassifier(BaseClassifier):
    """Gemini AI-based order matcher."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        client: genai.Client | None = None,
    ):
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model or settings.gemini_model

        if client is None:
            if not self.api_key:
                raise ValueError("GEMINI_API_KEY is required")
            client = genai.Client(api_key=self.api_key)
        self.client = client

    def match(
        self,
        messages: list[Message],
        open_orders: list[OrderSummary],
        corrections: list[CorrectionExample],
    ) -> Any:
        prompt = build_prompt(messages, open_orders, corrections)

        try:
            response = self.client.models.generate_content(
                model=self.model_name,
                contents=prompt,
            )
        except Exception as e:
            error_str = str(e).lower()
            if any(x in error_str for x in ["rate", "429", "quota"]):
                log.error("gemini_rate_limit", error=str(e))
            elif any(x in error_str for x in ["api key", "auth", "401", "403"]):
                log.error("gemini_auth_error", error=str(e))
            else:
                log.error("gemini_error", error=str(e))
            raise ClassificationUnavailable(f"Gemini request failed: {e}") from e

        data = self._parse_response(response.text or "")
        log.info(
            "gemini_batch_matched",
            messages=len(messages),
            verdicts=len(data) if isinstance(data, list) else None,
        )
        return data

    def _parse_response(self, response_text: str) -> Any:
        """Parse JSON from Gemini response."""
        text = response_text.strip()

        # Remove markdown code blocks if present
        if text.startswith("```"):
            lines = text.split("\n")
            lines = lines[1:]  # Remove opening ```
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]  # Remove closing ```
            text = "\n".join(lines)

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            log.error("gemini_parse_error", error=str(e), response=text[:500])
            raise ClassificationUnavailable(f"Malformed classifier output: {e}") from e
