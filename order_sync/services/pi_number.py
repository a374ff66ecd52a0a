"""
Proforma invoice number extraction from email subjects.
"""

import re

# Most specific supplier formats first
PI_PATTERNS = (
    re.compile(r"GI/PI/[\d\-]+/[A-Za-z0-9]+", re.IGNORECASE),
    re.compile(r"PEI/PI/[A-Za-z0-9]+/[\d\-]+", re.IGNORECASE),
    re.compile(r"PI/SSI/[A-Za-z0-9]+/[\d\-]+", re.IGNORECASE),
    re.compile(r"SLS-[A-Za-z0-9]+", re.IGNORECASE),
    re.compile(r"PI[\s\-#:]+([A-Za-z0-9/-]+)", re.IGNORECASE),
)


def extract_pi_number(subject: str) -> str | None:
    """
    Find a proforma invoice number in a subject line.

    >>> extract_pi_number("NEW PROFORMA INVOICE - PI GI/PI/25-26/I02013 - PO 3004")
    'GI/PI/25-26/I02013'
    """
    if not subject:
        return None
    for pattern in PI_PATTERNS:
        match = pattern.search(subject)
        if match:
            return match.group(0)
    return None
