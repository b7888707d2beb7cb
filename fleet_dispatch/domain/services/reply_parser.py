"""
Chat reply parsing - find the order reference a driver replied with
"""
import re
from typing import Optional

# CJK text counts as word characters, so \b would miss "接單ORD-..." replies
ORDER_REFERENCE_RE = re.compile(
    r"(?<![0-9A-Za-z])ORD-([0-9A-F]{8})(?![0-9A-Za-z])", re.IGNORECASE
)


def extract_order_reference(text: Optional[str]) -> Optional[str]:
    """
    Return the single order reference in ``text``, upper-cased.

    Text with no reference, or naming two different orders, is ambiguous and
    yields None. Repeating the same reference is fine.
    """
    if not text:
        return None
    references = {f"ORD-{match.upper()}" for match in ORDER_REFERENCE_RE.findall(text)}
    if len(references) != 1:
        return None
    return references.pop()
