"""
Batch matching prompt for purchase order stage emails.
"""

PROMPT = """You are an AI assistant for a frozen seafood trading company called Ganesh International. Match each email below to an existing purchase order.

ACTIVE ORDERS:
{orders}

STAGE DEFINITIONS:
{stage_triggers}
{corrections}
EMAILS TO MATCH:
{emails}

INSTRUCTIONS - Process each email ONE AT A TIME:
For each email above, determine:
1. Which order it matches (by PO number, company, supplier, or product references in the email body/subject). Use the order "id" field.
2. What stage this email represents (the stage the email is evidence of).
3. A brief summary of what THIS specific email is about, describing its own subject and body.

ACCURACY RULES:
- Copy the MESSAGE_ID exactly from each email header above. Do NOT swap or mix up IDs between emails.
- The "summary" field must describe the email with THAT message_id.
- Process each email independently.
- If an email is about banking, compliance, or non-trade matters, set matched_order_id to null.
- If no order matches, set matched_order_id to null.
- If no stage is detected, set detected_stage to null.

Return VALID JSON only, no markdown fences. Return exactly {count} results, one per email, in the same order:
[{{"message_id": "EXACT_ID_FROM_ABOVE", "matched_order_id": "ORDER-ID or null", "detected_stage": 3 or null, "summary": "What THIS specific email is about"}}]"""

EMAIL_BLOCK = """
=== EMAIL #{index} ===
MESSAGE_ID: "{message_id}"
Direction: {direction}
From: {sender_name} <{sender_email}>
To: {recipient}
Subject: {subject}
Date: {date}
Has Attachment: {has_attachment}
Body (first {body_cap} chars): {body}
=== END EMAIL #{index} ==="""

CORRECTIONS_HEADER = "\nRECENT USER CORRECTIONS (learn from these):\n{examples}\n"

CORRECTION_LINE = '- Email from "{sender_email}" with subject "{subject}" was manually linked to order {order_label}'
