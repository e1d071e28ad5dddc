"""
JSON repair for raw model output

Models wrap their JSON in markdown fences, add chatter around it, or stop
before the closing braces. repair_json() trims that down to text
json.loads() can take. Parsing itself stays with the caller.
"""

import logging

logger = logging.getLogger(__name__)

FENCES = ("```json", "```")


def repair_json(text: str) -> str:
    """
    Trim model output down to something json.loads() can take.

    Drops markdown fences and chatter outside the outermost {...}, then
    balances braces. Text with no opening brace comes back stripped and
    will fail to parse; the extraction adapter treats that as no information.
    """
    text = text.strip()
    for fence in FENCES:
        if text.startswith(fence):
            text = text[len(fence):]
            break
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    start = text.find('{')
    if start == -1:
        logger.warning("Model output has no JSON object")
        return text

    end = text.rfind('}')
    text = text[start:end + 1] if end > start else text[start:]

    # Counts braces inside string values too
    missing = text.count('{') - text.count('}')
    if missing > 0:
        text += '}' * missing
    while missing < 0:
        cut = text.rfind('}')
        text = text[:cut] + text[cut + 1:]
        missing += 1

    return text
