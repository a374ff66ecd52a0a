"""
Order stage mail sync for Ganesh International.

Keeps the 8-stage purchase order lifecycle in step with the mailbox:
- Fetches new messages incrementally from IMAP or Gmail
- Classifies them against open orders (Gemini or the remote classifier)
- Advances an order by exactly one stage when a message proves it
- Records history and notifies organization members
"""

__version__ = "1.0.0"
